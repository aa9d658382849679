"""
Core traceroute functionality.

Probes a destination with ICMP echo requests of increasing hop limit,
one probe at a time, and matches the replies collected by a background
reader to the probe that caused them.

Copyright (c) 2025 DNS Science.io, an After Dark Systems, LLC company.
All rights reserved.
"""

import logging
import platform
import queue
import random
import threading
import time
from dataclasses import dataclass
from typing import Callable, Protocol

from netaddr import AddrFormatError, IPAddress

from pathdiag.config import TraceConfig, get_config
from pathdiag.traceroute.conn import PacketConn, open_packet_conn, raw_sockets_available
from pathdiag.traceroute.correlator import ProbeEvent, ReaderStopped, ReplyReader
from pathdiag.traceroute.icmp import build_echo_request
from pathdiag.traceroute.models import (
    Hop,
    Observation,
    TraceCancelled,
    TraceReceiveError,
    TraceResult,
    TraceStatus,
    TraceTransmitError,
)
from pathdiag.traceroute.native import NativeTracer

logger = logging.getLogger(__name__)

# Granularity at which a pending probe notices cancellation
_CANCEL_POLL_INTERVAL = 0.05
# How long close() may take to stop the reader thread
_READER_JOIN_TIMEOUT = 2.0

STRATEGIES = ("auto", "socket", "native")


class Tracer(Protocol):
    """Anything that can run a trace and stream its hops."""

    strategy: str

    def trace(
        self,
        destination: IPAddress,
        on_hop: Callable[[Hop], None] | None = None,
        cancel: threading.Event | None = None,
    ) -> TraceResult:
        ...


@dataclass
class PendingProbe:
    """The single probe currently awaiting a reply."""
    identifier: int
    sequence: int
    issued_at: float = 0.0  # time.monotonic() when written

    def matches(self, event: ProbeEvent) -> bool:
        return event.identifier == self.identifier and event.sequence == self.sequence


def _check_cancel(cancel: threading.Event | None) -> None:
    if cancel is not None and cancel.is_set():
        raise TraceCancelled("trace cancelled")


def parse_destination(destination: str | IPAddress) -> IPAddress:
    """Validate that destination is an IP address.

    Raises:
        ValueError: destination is a hostname or otherwise not an address
    """
    if isinstance(destination, IPAddress):
        return destination
    try:
        return IPAddress(str(destination).strip().split("%", 1)[0])
    except (AddrFormatError, ValueError):
        raise ValueError(f"{destination!r} is not an IP address; resolve it before tracing") from None


class SocketTracer:
    """Traceroute over raw ICMP sockets.

    Each call to trace() owns its socket, identifier and reader thread,
    so one tracer may run several traces concurrently.

    Usage:
        tracer = SocketTracer(TraceConfig(max_hops=30))
        result = tracer.trace(IPAddress("45.90.28.0"), on_hop=print)
    """

    strategy = "socket"

    def __init__(
        self,
        config: TraceConfig | None = None,
        conn_factory: Callable[[int], PacketConn] = open_packet_conn,
    ):
        self.config = config or get_config()
        self._conn_factory = conn_factory

    def trace(
        self,
        destination: IPAddress,
        on_hop: Callable[[Hop], None] | None = None,
        cancel: threading.Event | None = None,
    ) -> TraceResult:
        """Trace the route to destination, calling on_hop as each hop completes.

        Raises:
            TraceSetupError: the raw socket could not be opened
            TraceTransmitError: a probe could not be built or sent
            TraceReceiveError: the socket failed while awaiting replies
            TraceCancelled: cancel was set; the hop in progress is discarded
        """
        conn = self._conn_factory(destination.version)
        reader = ReplyReader(conn, name=f"icmp-reader-{destination}")
        reader.start()
        try:
            return self._run(conn, reader, destination, on_hop, cancel)
        finally:
            conn.close()
            reader.join(_READER_JOIN_TIMEOUT)
            if reader.running:
                logger.warning(f"Reader thread for {destination} did not stop")

    def _run(
        self,
        conn: PacketConn,
        reader: ReplyReader,
        destination: IPAddress,
        on_hop: Callable[[Hop], None] | None,
        cancel: threading.Event | None,
    ) -> TraceResult:
        config = self.config
        identifier = random.randint(0, 0xFFFF)
        sequence = random.randint(0, 0xFFFF)
        hops: list[Hop] = []

        logger.info(
            f"Tracing route to {destination} (IPv{destination.version}), "
            f"{config.max_hops} hops max, {config.probe_payload_size} byte payload"
        )

        for hop_limit in range(1, config.max_hops + 1):
            _check_cancel(cancel)
            try:
                conn.set_hop_limit(hop_limit)
            except OSError as e:
                raise TraceTransmitError(f"cannot set hop limit {hop_limit}: {e}") from e

            hop = Hop(sequence=hop_limit)
            for _ in range(config.probes_per_hop):
                _check_cancel(cancel)
                probe = PendingProbe(identifier=identifier, sequence=sequence)
                sequence = (sequence + 1) & 0xFFFF

                observation, terminal = self._probe(conn, reader, destination, probe, cancel)
                hop.observations.append(observation)
                if terminal:
                    hop.terminal = True

            hops.append(hop)
            if on_hop is not None:
                on_hop(hop)

            if hop.terminal:
                logger.info(f"Reached {destination} at hop {hop_limit}")
                return TraceResult(str(destination), TraceStatus.REACHED, hops, self.strategy)

        logger.info(f"No terminal reply from {destination} within {config.max_hops} hops")
        return TraceResult(str(destination), TraceStatus.EXHAUSTED, hops, self.strategy)

    def _probe(
        self,
        conn: PacketConn,
        reader: ReplyReader,
        destination: IPAddress,
        probe: PendingProbe,
        cancel: threading.Event | None,
    ) -> tuple[Observation, bool]:
        try:
            packet = build_echo_request(
                destination.version,
                probe.identifier,
                probe.sequence,
                self.config.probe_payload_size,
            )
        except ValueError as e:
            raise TraceTransmitError(f"cannot marshal ICMP packet: {e}") from e

        probe.issued_at = time.monotonic()
        try:
            conn.write(packet, destination)
        except OSError as e:
            raise TraceTransmitError(f"cannot write ICMP packet: {e}") from e
        logger.debug(f"Sent probe id={probe.identifier} seq={probe.sequence}")

        return self._await_reply(reader, probe, cancel)

    def _await_reply(
        self,
        reader: ReplyReader,
        probe: PendingProbe,
        cancel: threading.Event | None,
    ) -> tuple[Observation, bool]:
        deadline = probe.issued_at + self.config.per_probe_timeout
        while True:
            _check_cancel(cancel)

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                logger.debug(f"Probe seq={probe.sequence} timed out")
                return Observation.timeout(), False

            wait = remaining if cancel is None else min(remaining, _CANCEL_POLL_INTERVAL)
            try:
                event = reader.events.get(timeout=wait)
            except queue.Empty:
                continue

            if isinstance(event, ReaderStopped):
                raise TraceReceiveError(f"socket read failed during trace: {event.error}")
            if not probe.matches(event):
                # Late reply to an earlier probe or someone else's traffic
                continue

            rtt_ms = max(0.0, (event.received_at - probe.issued_at) * 1000)
            return Observation(address=event.source, rtt_ms=rtt_ms), event.terminal


def select_strategy(system: str | None = None, family: int = 4) -> str:
    """Pick "socket" or "native" for this host."""
    system = (system or platform.system()).lower()
    if system == "windows":
        return "native"
    if raw_sockets_available(family):
        return "socket"
    if NativeTracer(system=system).available():
        logger.warning("Raw ICMP sockets unavailable, falling back to the traceroute utility")
        return "native"
    # Let the socket tracer report the privilege problem
    return "socket"


def make_tracer(strategy: str, config: TraceConfig | None = None, family: int = 4) -> Tracer:
    """Build the tracer for a strategy name ("auto", "socket" or "native")."""
    if strategy not in STRATEGIES:
        raise ValueError(f"unknown strategy {strategy!r}; expected one of {', '.join(STRATEGIES)}")
    if strategy == "auto":
        strategy = select_strategy(family=family)
    if strategy == "native":
        return NativeTracer(config)
    return SocketTracer(config)


def traceroute(
    destination: str | IPAddress,
    config: TraceConfig | None = None,
    on_hop: Callable[[Hop], None] | None = None,
    cancel: threading.Event | None = None,
    strategy: str = "auto",
) -> TraceResult:
    """Perform a traceroute to an IP address.

    Args:
        destination: IPv4 or IPv6 address; hostnames must be resolved first
        config: Trace parameters (defaults from get_config())
        on_hop: Called with each Hop as soon as it completes
        cancel: Event that aborts the trace when set
        strategy: "auto", "socket" or "native"

    Returns:
        TraceResult with every hop emitted and how the trace ended

    Raises:
        ValueError: destination is not an IP address
        TraceError: setup, transmit, receive or process failure, or TraceCancelled
    """
    dest = parse_destination(destination)
    tracer = make_tracer(strategy, config, family=dest.version)
    return tracer.trace(dest, on_hop=on_hop, cancel=cancel)
