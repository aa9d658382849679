"""
pathdiag - Network Path Diagnostics

Discovers the routers between the local host and a destination and
measures per-hop latency using ICMP probes with increasing hop limits,
falling back to the platform traceroute utility when raw sockets are
not available.

Copyright (c) 2025 DNS Science.io, an After Dark Systems, LLC company.
All rights reserved.
"""

__version__ = "0.1.0"
__author__ = "DNS Science.io"
__copyright__ = "Copyright (c) 2025 DNS Science.io, an After Dark Systems, LLC company"
