"""
Raw ICMP sockets for IPv4 and IPv6 behind one interface.

Copyright (c) 2025 DNS Science.io, an After Dark Systems, LLC company.
All rights reserved.
"""

import logging
import socket
import struct
from abc import ABC, abstractmethod
from dataclasses import dataclass

from netaddr import AddrFormatError, IPAddress

from pathdiag.traceroute.icmp import IPPROTO_ICMP, IPPROTO_ICMPV6, strip_ipv4_header
from pathdiag.traceroute.models import TraceSetupError

logger = logging.getLogger(__name__)

RECV_BUFSIZE = 1500
# Reads wake up this often so a closed connection is noticed
READ_POLL_INTERVAL = 0.2

_INT_SIZE = struct.calcsize("i")


@dataclass(frozen=True)
class ReceivedPacket:
    """An inbound ICMP message with its delivery information."""
    data: bytes                    # ICMP message, starting at the ICMP header
    source: IPAddress | None
    hop_limit: int | None = None   # TTL / hop limit the packet arrived with


class PacketConn(ABC):
    """Send/receive ICMP messages for one address family.

    ``read`` raises TimeoutError when nothing arrived within the poll
    interval and OSError once the connection is closed.
    """

    family: int

    @abstractmethod
    def write(self, data: bytes, destination: IPAddress) -> int:
        """Send an ICMP message to destination."""

    @abstractmethod
    def read(self) -> ReceivedPacket:
        """Receive the next ICMP message."""

    @abstractmethod
    def set_hop_limit(self, hop_limit: int) -> None:
        """Set TTL / hop limit for subsequent writes."""

    @abstractmethod
    def close(self) -> None:
        """Release the socket; pending reads fail."""

    @property
    @abstractmethod
    def closed(self) -> bool:
        """True once close() was called."""

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


def _enable_option(sock: socket.socket, level: int, name: str) -> None:
    """Turn on a boolean socket option if this platform defines it."""
    option = getattr(socket, name, None)
    if option is None:
        logger.debug(f"{name} not supported on this platform")
        return
    try:
        sock.setsockopt(level, option, 1)
    except OSError as e:
        logger.debug(f"Could not enable {name}: {e}")


def _parse_source(addr) -> IPAddress | None:
    if not addr:
        return None
    # Link-local IPv6 sources come back with a %scope suffix
    host = addr[0].split("%", 1)[0]
    try:
        return IPAddress(host)
    except (AddrFormatError, ValueError):
        return None


class _RawPacketConn(PacketConn):
    """Shared socket handling for both families."""

    _hop_limit_level: int
    _hop_limit_option: int
    _hop_limit_cmsg: tuple[int, int | None]

    def __init__(self, sock: socket.socket):
        self._sock = sock
        self._sock.settimeout(READ_POLL_INTERVAL)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def write(self, data: bytes, destination: IPAddress) -> int:
        return self._sock.sendto(data, (str(destination), 0))

    def set_hop_limit(self, hop_limit: int) -> None:
        self._sock.setsockopt(self._hop_limit_level, self._hop_limit_option, hop_limit)

    def _recv(self) -> tuple[bytes, IPAddress | None, int | None]:
        data, ancdata, _flags, addr = self._sock.recvmsg(
            RECV_BUFSIZE, socket.CMSG_SPACE(_INT_SIZE) * 4
        )
        return data, _parse_source(addr), self._hop_limit_from(ancdata)

    def _hop_limit_from(self, ancdata) -> int | None:
        level, cmsg_type = self._hop_limit_cmsg
        if cmsg_type is None:
            return None
        for cmsg_level, ctype, cdata in ancdata:
            if cmsg_level == level and ctype == cmsg_type and len(cdata) >= 1:
                if len(cdata) >= _INT_SIZE:
                    return struct.unpack("i", cdata[:_INT_SIZE])[0]
                # BSD delivers the IPv4 TTL as a single byte
                return cdata[0]
        return None

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            # Wakes a reader blocked in recvmsg on platforms that honour it
            self._sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        self._sock.close()


class PacketConn4(_RawPacketConn):
    """ICMP over IPv4. Raw IPv4 sockets deliver the IP header, which is removed."""

    family = 4
    _hop_limit_level = socket.IPPROTO_IP
    _hop_limit_option = socket.IP_TTL
    _hop_limit_cmsg = (socket.IPPROTO_IP, socket.IP_TTL)

    def read(self) -> ReceivedPacket:
        packet, source, hop_limit = self._recv()
        # A malformed header yields an empty message, which decodes to nothing
        data = strip_ipv4_header(packet) or b""
        return ReceivedPacket(data=data, source=source, hop_limit=hop_limit)


class PacketConn6(_RawPacketConn):
    """ICMPv6. The kernel strips the IPv6 header and fills in checksums."""

    family = 6
    _hop_limit_level = socket.IPPROTO_IPV6
    _hop_limit_option = socket.IPV6_UNICAST_HOPS
    _hop_limit_cmsg = (socket.IPPROTO_IPV6, getattr(socket, "IPV6_HOPLIMIT", None))

    def read(self) -> ReceivedPacket:
        data, source, hop_limit = self._recv()
        return ReceivedPacket(data=data, source=source, hop_limit=hop_limit)


def open_packet_conn(family: int) -> PacketConn:
    """Open a raw ICMP socket for the family, bound to the any address.

    Raises:
        TraceSetupError: if the socket cannot be created (usually missing privilege)
    """
    if family == 4:
        af, proto, bind_addr = socket.AF_INET, IPPROTO_ICMP, "0.0.0.0"
    elif family == 6:
        af, proto, bind_addr = socket.AF_INET6, IPPROTO_ICMPV6, "::"
    else:
        raise TraceSetupError(f"unsupported address family: {family}")

    try:
        sock = socket.socket(af, socket.SOCK_RAW, proto)
    except PermissionError as e:
        raise TraceSetupError(
            f"permission denied opening raw ICMP socket (IPv{family}); "
            "run with root/administrator privileges"
        ) from e
    except OSError as e:
        raise TraceSetupError(f"cannot open raw ICMP socket (IPv{family}): {e}") from e

    try:
        sock.bind((bind_addr, 0))
        if family == 4:
            _enable_option(sock, socket.IPPROTO_IP, "IP_RECVTTL")
            _enable_option(sock, socket.IPPROTO_IP, "IP_PKTINFO")
            conn: PacketConn = PacketConn4(sock)
        else:
            _enable_option(sock, socket.IPPROTO_IPV6, "IPV6_RECVHOPLIMIT")
            _enable_option(sock, socket.IPPROTO_IPV6, "IPV6_RECVPKTINFO")
            conn = PacketConn6(sock)
    except OSError as e:
        sock.close()
        raise TraceSetupError(f"cannot configure raw ICMP socket (IPv{family}): {e}") from e

    logger.debug(f"Opened raw ICMP socket for IPv{family}")
    return conn


def raw_sockets_available(family: int = 4) -> bool:
    """Check whether this process may open raw ICMP sockets."""
    try:
        conn = open_packet_conn(family)
    except TraceSetupError:
        return False
    conn.close()
    return True
