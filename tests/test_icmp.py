"""Tests for the ICMP wire codec."""

import struct

import pytest
from netaddr import IPAddress

from packets import echo_reply, ip_header, quoted_probe, time_exceeded, unreachable
from pathdiag.traceroute.icmp import (
    ICMPType,
    ICMPv6Type,
    ReplyKind,
    build_echo_request,
    checksum,
    decode_reply,
    ip_payload_offset,
    ipv6_pseudo_header,
    parse_echo,
    strip_ipv4_header,
    unwrap_embedded_echo,
)


class TestChecksum:
    """Tests for checksum function."""

    def test_known_value(self):
        """Test checksum of an echo request header with no payload."""
        data = b"\x08\x00\x00\x00\x00\x01\x00\x01"
        assert checksum(data) == 0xF7FD

    def test_odd_length(self):
        """Test odd length data is zero padded."""
        assert checksum(b"\x08\x00\x00") == checksum(b"\x08\x00\x00\x00")

    def test_verifies_to_zero(self):
        """Test a checksummed message sums to zero."""
        packet = build_echo_request(4, 0x1234, 7, 52)
        assert checksum(packet) == 0


class TestBuildEchoRequest:
    """Tests for build_echo_request function."""

    def test_ipv4_structure(self):
        """Test IPv4 echo request layout."""
        packet = build_echo_request(4, 0xBEEF, 42, 52)

        assert len(packet) == 8 + 52
        msg_type, code, _csum, identifier, sequence = struct.unpack_from("!BBHHH", packet)
        assert msg_type == ICMPType.ECHO_REQUEST
        assert code == 0
        assert identifier == 0xBEEF
        assert sequence == 42
        assert packet[8:] == bytes(52)

    def test_ipv6_type(self):
        """Test ICMPv6 echo request type."""
        packet = build_echo_request(6, 1, 2, 16)
        assert packet[0] == ICMPv6Type.ECHO_REQUEST
        assert len(packet) == 8 + 16

    def test_ipv6_checksum_left_to_kernel(self):
        """Test ICMPv6 checksum is zero without addresses."""
        packet = build_echo_request(6, 1, 2, 16)
        assert packet[2:4] == b"\x00\x00"

    def test_ipv6_checksum_with_pseudo_header(self):
        """Test ICMPv6 checksum covers the pseudo-header."""
        src = IPAddress("2001:db8::1")
        dst = IPAddress("2a07:a8c0::")
        packet = build_echo_request(6, 1, 2, 16, src=src, dst=dst)

        assert packet[2:4] != b"\x00\x00"
        assert checksum(ipv6_pseudo_header(src, dst, len(packet)) + packet) == 0

    def test_zero_payload(self):
        """Test an empty payload is allowed."""
        assert len(build_echo_request(4, 1, 1, 0)) == 8

    def test_rejects_wide_identifier(self):
        """Test identifier must fit 16 bits."""
        with pytest.raises(ValueError):
            build_echo_request(4, 0x10000, 1, 52)

    def test_rejects_unknown_family(self):
        """Test only families 4 and 6 are supported."""
        with pytest.raises(ValueError, match="family"):
            build_echo_request(5, 1, 1, 52)


class TestIpPayloadOffset:
    """Tests for ip_payload_offset function."""

    def test_ipv4_plain_header(self):
        """Test a 20 byte IPv4 header."""
        assert ip_payload_offset(4, ip_header(4, 8) + bytes(8)) == 20

    def test_ipv4_header_with_options(self):
        """Test IPv4 header length field is honoured."""
        assert ip_payload_offset(4, ip_header(4, 8, ihl=6) + bytes(8)) == 24

    def test_ipv6_offset_from_payload_length(self):
        """Test IPv6 offset is what precedes the announced payload."""
        assert ip_payload_offset(6, ip_header(6, 60) + bytes(60)) == 40

    def test_truncated(self):
        """Test headers that are too short."""
        assert ip_payload_offset(4, b"\x45" + bytes(10)) is None
        assert ip_payload_offset(6, b"\x60" + bytes(20)) is None

    def test_wrong_version(self):
        """Test a header of the other family is rejected."""
        assert ip_payload_offset(4, ip_header(6, 8) + bytes(8)) is None

    def test_no_payload(self):
        """Test a header with nothing after it."""
        assert ip_payload_offset(4, ip_header(4, 0)) is None

    def test_strip_ipv4_header(self):
        """Test raw IPv4 packets lose their header."""
        message = echo_reply(4, 1, 2)
        assert strip_ipv4_header(ip_header(4, len(message)) + message) == message


class TestUnwrapEmbeddedEcho:
    """Tests for unwrap_embedded_echo function."""

    @pytest.mark.parametrize("family", [4, 6])
    def test_recovers_identity(self, family):
        """Test identifier and sequence come back from the quoted probe."""
        assert unwrap_embedded_echo(family, quoted_probe(family, 0xABCD, 9)) == (0xABCD, 9)

    def test_quoted_udp_is_not_ours(self):
        """Test a quoted UDP datagram does not match."""
        udp = struct.pack("!HHHH", 33434, 33434, 8, 0)
        header = bytearray(ip_header(4, len(udp)))
        header[9] = 17
        assert unwrap_embedded_echo(4, bytes(header) + udp) is None

    def test_truncated_icmp(self):
        """Test a quoted ICMP header shorter than eight bytes."""
        datagram = quoted_probe(4, 1, 1)[:24]
        assert unwrap_embedded_echo(4, datagram) is None


class TestDecodeReply:
    """Tests for decode_reply function."""

    @pytest.mark.parametrize("family", [4, 6])
    def test_echo_reply_round_trip(self, family):
        """Test identity of a probe survives encode then reply decode."""
        probe = build_echo_request(family, 0x4242, 65535, 52)
        identifier, sequence = parse_echo(family, probe)

        reply = decode_reply(family, echo_reply(family, identifier, sequence))

        assert reply.identifier == 0x4242
        assert reply.sequence == 65535
        assert reply.kind == ReplyKind.ECHO_REPLY
        assert reply.terminal is True

    @pytest.mark.parametrize("family", [4, 6])
    def test_time_exceeded_is_not_terminal(self, family):
        """Test time exceeded unwraps the probe and does not end the trace."""
        reply = decode_reply(family, time_exceeded(family, 77, 1000))

        assert (reply.identifier, reply.sequence) == (77, 1000)
        assert reply.kind == ReplyKind.TIME_EXCEEDED
        assert reply.terminal is False

    @pytest.mark.parametrize("family", [4, 6])
    def test_unreachable_is_terminal(self, family):
        """Test destination unreachable ends the trace."""
        reply = decode_reply(family, unreachable(family, 5, 6))

        assert (reply.identifier, reply.sequence) == (5, 6)
        assert reply.terminal is True

    def test_time_exceeded_with_ip_options(self):
        """Test quoted IPv4 headers with options."""
        reply = decode_reply(4, time_exceeded(4, 3, 4, ihl=7))
        assert (reply.identifier, reply.sequence) == (3, 4)

    def test_echo_request_is_not_interesting(self):
        """Test our own echo requests seen on the socket are ignored."""
        assert decode_reply(4, build_echo_request(4, 1, 1, 52)) is None

    def test_other_types_are_not_interesting(self):
        """Test router advertisements, redirects and similar are ignored."""
        assert decode_reply(4, struct.pack("!BBHI", 5, 1, 0, 0) + bytes(28)) is None
        assert decode_reply(6, struct.pack("!BBHI", 134, 0, 0, 0) + bytes(8)) is None

    def test_family_type_numbers_do_not_mix(self):
        """Test an IPv4 echo reply type is not an ICMPv6 echo reply."""
        assert decode_reply(6, echo_reply(4, 1, 1)) is None

    @pytest.mark.parametrize("data", [b"", b"\x00", b"\x0b\x00\x00\x00", bytes(3), b"\xff" * 64])
    def test_garbage_never_raises(self, data):
        """Test malformed packets decode to nothing."""
        assert decode_reply(4, data) is None
        assert decode_reply(6, data) is None
