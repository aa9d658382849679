"""
ICMP and ICMPv6 wire codec for traceroute probes.

Builds echo requests and decodes the replies a traceroute cares about:
echo reply, time exceeded and destination unreachable. Error messages
carry the start of the offending datagram, which is unwrapped to
recover the identifier and sequence of the probe that caused them.

Copyright (c) 2025 DNS Science.io, an After Dark Systems, LLC company.
All rights reserved.
"""

import struct
from dataclasses import dataclass
from enum import Enum, IntEnum

from netaddr import IPAddress

IPPROTO_ICMP = 1
IPPROTO_ICMPV6 = 58

ICMP_HEADER_LEN = 8  # type, code, checksum, identifier, sequence
IPV4_MIN_HEADER_LEN = 20
IPV6_HEADER_LEN = 40

# Time exceeded / unreachable: 4 bytes after the checksum before the datagram
ERROR_BODY_OFFSET = 8


class ICMPType(IntEnum):
    """ICMP (RFC 792) message types."""
    ECHO_REPLY = 0
    DESTINATION_UNREACHABLE = 3
    ECHO_REQUEST = 8
    TIME_EXCEEDED = 11


class ICMPv6Type(IntEnum):
    """ICMPv6 (RFC 4443) message types."""
    DESTINATION_UNREACHABLE = 1
    TIME_EXCEEDED = 3
    ECHO_REQUEST = 128
    ECHO_REPLY = 129


class ReplyKind(str, Enum):
    """ICMP message kinds relevant to a traceroute."""
    ECHO_REPLY = "echo_reply"
    TIME_EXCEEDED = "time_exceeded"
    DESTINATION_UNREACHABLE = "destination_unreachable"


_KINDS = {
    4: {
        ICMPType.ECHO_REPLY: ReplyKind.ECHO_REPLY,
        ICMPType.TIME_EXCEEDED: ReplyKind.TIME_EXCEEDED,
        ICMPType.DESTINATION_UNREACHABLE: ReplyKind.DESTINATION_UNREACHABLE,
    },
    6: {
        ICMPv6Type.ECHO_REPLY: ReplyKind.ECHO_REPLY,
        ICMPv6Type.TIME_EXCEEDED: ReplyKind.TIME_EXCEEDED,
        ICMPv6Type.DESTINATION_UNREACHABLE: ReplyKind.DESTINATION_UNREACHABLE,
    },
}

_ECHO_TYPES = {
    4: (ICMPType.ECHO_REQUEST, ICMPType.ECHO_REPLY),
    6: (ICMPv6Type.ECHO_REQUEST, ICMPv6Type.ECHO_REPLY),
}


@dataclass(frozen=True)
class ProbeReply:
    """A decoded inbound message attributed to an echo probe."""
    identifier: int
    sequence: int
    kind: ReplyKind

    @property
    def terminal(self) -> bool:
        """Echo replies and unreachables end the trace; time exceeded does not."""
        return self.kind != ReplyKind.TIME_EXCEEDED


def _check_family(family: int) -> None:
    if family not in (4, 6):
        raise ValueError(f"unsupported address family: {family}")


def echo_request_type(family: int) -> int:
    _check_family(family)
    return ICMPType.ECHO_REQUEST if family == 4 else ICMPv6Type.ECHO_REQUEST


def checksum(data: bytes) -> int:
    """Internet checksum (RFC 1071)."""
    if len(data) % 2:
        data += b"\x00"

    total = sum(int.from_bytes(data[i : i + 2], "big") for i in range(0, len(data), 2))
    total = (total >> 16) + (total & 0xFFFF)
    total += total >> 16
    return ~total & 0xFFFF


def ipv6_pseudo_header(src: IPAddress, dst: IPAddress, length: int) -> bytes:
    """Pseudo-header prepended to ICMPv6 messages for checksumming (RFC 8200 8.1)."""
    return (
        src.packed
        + dst.packed
        + struct.pack("!I", length)
        + b"\x00\x00\x00"
        + bytes([IPPROTO_ICMPV6])
    )


def build_echo_request(
    family: int,
    identifier: int,
    sequence: int,
    payload_size: int,
    src: IPAddress | None = None,
    dst: IPAddress | None = None,
) -> bytes:
    """Create an ICMP echo request carrying a zero-filled payload.

    IPv4 messages are always checksummed here. ICMPv6 checksums cover a
    pseudo-header with both addresses; when ``src`` and ``dst`` are not
    given the checksum field is left zero for the kernel to fill in, as
    raw ICMPv6 sockets do by default.
    """
    # ICMP Echo Request Packet Structure (RFC 792 / RFC 4443)
    #
    #  0                            15                               31
    # +-------------------------------+-------------------------------+
    # |     Type                      |     Code (0)                  |
    # +-------------------------------+-------------------------------+
    # |          Checksum             |       Identifier              |
    # +-------------------------------+-------------------------------+
    # |        Sequence Number        |                               |
    # +-------------------------------+         Payload (zeros)       |
    # |                                                               |
    # +---------------------------------------------------------------+
    msg_type = echo_request_type(family)
    if not 0 <= identifier <= 0xFFFF or not 0 <= sequence <= 0xFFFF:
        raise ValueError("identifier and sequence must be 16-bit values")
    if payload_size < 0:
        raise ValueError(f"payload size must be non-negative, got {payload_size}")

    payload = bytes(payload_size)
    header = struct.pack("!BBHHH", msg_type, 0, 0, identifier, sequence)

    if family == 4:
        csum = checksum(header + payload)
    elif src is not None and dst is not None:
        message = header + payload
        csum = checksum(ipv6_pseudo_header(src, dst, len(message)) + message)
    else:
        return header + payload

    header = struct.pack("!BBHHH", msg_type, 0, csum, identifier, sequence)
    return header + payload


def ip_payload_offset(family: int, data: bytes) -> int | None:
    """Offset of the transport payload inside an IP datagram.

    IPv4 uses the header length field. For IPv6 the offset is whatever
    precedes the payload announced by the fixed header, which also skips
    extension headers.
    """
    _check_family(family)
    if family == 4:
        if len(data) < IPV4_MIN_HEADER_LEN or data[0] >> 4 != 4:
            return None
        offset = (data[0] & 0x0F) * 4
        if offset < IPV4_MIN_HEADER_LEN:
            return None
    else:
        if len(data) < IPV6_HEADER_LEN or data[0] >> 4 != 6:
            return None
        (payload_len,) = struct.unpack_from("!H", data, 4)
        offset = len(data) - payload_len
    if offset < 0 or offset >= len(data):
        return None
    return offset


def strip_ipv4_header(packet: bytes) -> bytes | None:
    """Drop the IPv4 header that raw IPv4 sockets deliver with each packet."""
    offset = ip_payload_offset(4, packet)
    if offset is None:
        return None
    return packet[offset:]


def parse_echo(family: int, data: bytes) -> tuple[int, int] | None:
    """Identifier and sequence of an echo request/reply, or None."""
    _check_family(family)
    if len(data) < ICMP_HEADER_LEN:
        return None
    msg_type, _code, _csum, identifier, sequence = struct.unpack_from("!BBHHH", data)
    if msg_type not in _ECHO_TYPES[family]:
        return None
    return identifier, sequence


def unwrap_embedded_echo(family: int, datagram: bytes) -> tuple[int, int] | None:
    """Recover the probe identity from the datagram quoted in an ICMP error.

    Returns None when the quoted packet is truncated or is not an echo
    message (for instance UDP traffic from another tool).
    """
    offset = ip_payload_offset(family, datagram)
    if offset is None:
        return None
    return parse_echo(family, datagram[offset:])


def decode_reply(family: int, data: bytes) -> ProbeReply | None:
    """Decode an inbound ICMP message starting at the ICMP header.

    Returns None for message types a traceroute does not use and for
    error messages that do not quote one of our echo requests.
    """
    _check_family(family)
    if len(data) < 4:
        return None
    kind = _KINDS[family].get(data[0])
    if kind is None:
        return None

    if kind == ReplyKind.ECHO_REPLY:
        ids = parse_echo(family, data)
    else:
        ids = unwrap_embedded_echo(family, data[ERROR_BODY_OFFSET:])
    if ids is None:
        return None

    identifier, sequence = ids
    return ProbeReply(identifier=identifier, sequence=sequence, kind=kind)
