"""
Traceroute Module

Discovers the routers on the path to a destination and measures
per-hop latency, using raw ICMP sockets or the platform traceroute
utility.
"""

from pathdiag.traceroute.core import (
    traceroute,
    parse_destination,
    select_strategy,
    make_tracer,
    SocketTracer,
)
from pathdiag.traceroute.native import (
    NativeTracer,
    parse_tracert_line,
    parse_traceroute_line,
)
from pathdiag.traceroute.models import (
    Hop,
    Observation,
    TraceResult,
    TraceStatus,
    TraceError,
    TraceSetupError,
    TraceTransmitError,
    TraceReceiveError,
    TraceProcessError,
    TraceCancelled,
)

__all__ = [
    "traceroute",
    "parse_destination",
    "select_strategy",
    "make_tracer",
    "SocketTracer",
    "NativeTracer",
    "parse_tracert_line",
    "parse_traceroute_line",
    "Hop",
    "Observation",
    "TraceResult",
    "TraceStatus",
    "TraceError",
    "TraceSetupError",
    "TraceTransmitError",
    "TraceReceiveError",
    "TraceProcessError",
    "TraceCancelled",
]
