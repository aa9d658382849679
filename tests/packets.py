"""Packet builders and a scripted PacketConn for tests."""

import queue
import struct

from netaddr import IPAddress

from pathdiag.traceroute.conn import PacketConn, ReceivedPacket
from pathdiag.traceroute.icmp import (
    ICMPType,
    ICMPv6Type,
    build_echo_request,
)

_REPLY = {4: ICMPType.ECHO_REPLY, 6: ICMPv6Type.ECHO_REPLY}
_TIME_EXCEEDED = {4: ICMPType.TIME_EXCEEDED, 6: ICMPv6Type.TIME_EXCEEDED}
_UNREACHABLE = {4: ICMPType.DESTINATION_UNREACHABLE, 6: ICMPv6Type.DESTINATION_UNREACHABLE}


def echo_reply(family, identifier, sequence, payload_size=52):
    return struct.pack("!BBHHH", _REPLY[family], 0, 0, identifier, sequence) + bytes(payload_size)


def ip_header(family, payload_len, ihl=5):
    """Minimal IPv4/IPv6 header as quoted in ICMP errors."""
    if family == 4:
        header = bytearray(ihl * 4)
        header[0] = 0x40 | ihl
        struct.pack_into("!H", header, 2, ihl * 4 + payload_len)
        header[9] = 1
        return bytes(header)
    header = bytearray(40)
    header[0] = 0x60
    struct.pack_into("!H", header, 4, payload_len)
    header[6] = 58
    return bytes(header)


def quoted_probe(family, identifier, sequence, payload_size=52, ihl=5):
    probe = build_echo_request(family, identifier, sequence, payload_size)
    return ip_header(family, len(probe), ihl=ihl) + probe


def time_exceeded(family, identifier, sequence, **kwargs):
    header = struct.pack("!BBHI", _TIME_EXCEEDED[family], 0, 0, 0)
    return header + quoted_probe(family, identifier, sequence, **kwargs)


def unreachable(family, identifier, sequence, code=3, **kwargs):
    header = struct.pack("!BBHI", _UNREACHABLE[family], code, 0, 0)
    return header + quoted_probe(family, identifier, sequence, **kwargs)


def probe_ids(packet):
    """(identifier, sequence) of an echo request written by the tracer."""
    _type, _code, _csum, identifier, sequence = struct.unpack_from("!BBHHH", packet)
    return identifier, sequence


FAIL_READ = object()
_CLOSED = object()


class FakeConn(PacketConn):
    """PacketConn whose replies come from a responder callback.

    The responder is called as responder(hop_limit, identifier, sequence)
    for every probe written and returns a list of (icmp_bytes, source)
    tuples to deliver, or FAIL_READ entries to make read() fail.
    """

    def __init__(self, family=4, responder=None, fail_write_at=None, fail_hop_limit_at=None):
        self.family = family
        self.responder = responder or (lambda hop_limit, identifier, sequence: [])
        self.fail_write_at = fail_write_at
        self.fail_hop_limit_at = fail_hop_limit_at
        self.hop_limit = None
        self.hop_limits = []
        self.written = []
        self._inbox = queue.Queue()
        self._closed = False

    @property
    def closed(self):
        return self._closed

    def write(self, data, destination):
        if self.fail_write_at is not None and self.hop_limit == self.fail_write_at:
            raise OSError("network is unreachable")
        self.written.append((self.hop_limit, data, destination))
        identifier, sequence = probe_ids(data)
        for item in self.responder(self.hop_limit, identifier, sequence):
            self._inbox.put(item)
        return len(data)

    def deliver(self, data, source):
        self._inbox.put((data, source))

    def read(self):
        item = self._inbox.get()
        if item is _CLOSED:
            raise OSError("socket closed")
        if item is FAIL_READ:
            raise OSError("connection reset")
        data, source = item
        return ReceivedPacket(data=data, source=IPAddress(source) if source else None)

    def set_hop_limit(self, hop_limit):
        if self.fail_hop_limit_at is not None and hop_limit == self.fail_hop_limit_at:
            raise OSError("invalid argument")
        self.hop_limit = hop_limit
        self.hop_limits.append(hop_limit)

    def close(self):
        if not self._closed:
            self._closed = True
            self._inbox.put(_CLOSED)
