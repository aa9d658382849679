"""
Reader loop that turns inbound ICMP traffic into probe events.

Copyright (c) 2025 DNS Science.io, an After Dark Systems, LLC company.
All rights reserved.
"""

import logging
import queue
import threading
import time
from dataclasses import dataclass

from netaddr import IPAddress

from pathdiag.traceroute.conn import PacketConn
from pathdiag.traceroute.icmp import decode_reply

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProbeEvent:
    """A reply attributed to an (identifier, sequence) probe."""
    identifier: int
    sequence: int
    source: IPAddress | None
    terminal: bool
    received_at: float  # time.monotonic() when read off the socket


@dataclass(frozen=True)
class ReaderStopped:
    """Published once when the reader loop exits."""
    error: Exception | None = None


class ReplyReader:
    """Drains a PacketConn on a background thread.

    Every decodable reply is put on ``events`` as a ProbeEvent. The queue
    is unbounded so the reader never blocks on a slow consumer. When the
    connection fails or is closed a final ReaderStopped is published; the
    error is None when the stop was caused by close().

    Usage:
        reader = ReplyReader(conn)
        reader.start()
        event = reader.events.get(timeout=1.0)
        ...
        conn.close()
        reader.join()
    """

    def __init__(self, conn: PacketConn, name: str = "icmp-reader"):
        self.conn = conn
        self.events: queue.Queue = queue.Queue()
        self.dropped = 0
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)

    def start(self) -> None:
        self._thread.start()

    def join(self, timeout: float | None = None) -> None:
        self._thread.join(timeout)

    @property
    def running(self) -> bool:
        return self._thread.is_alive()

    def _run(self) -> None:
        family = self.conn.family
        error: Exception | None = None
        while True:
            try:
                packet = self.conn.read()
            except TimeoutError:
                if self.conn.closed:
                    break
                continue
            except OSError as e:
                if not self.conn.closed:
                    error = e
                break
            received_at = time.monotonic()

            reply = decode_reply(family, packet.data)
            if reply is None or packet.source is None:
                self.dropped += 1
                continue
            logger.debug(
                f"{reply.kind.value} id={reply.identifier} seq={reply.sequence} "
                f"from {packet.source} (hop limit {packet.hop_limit})"
            )

            self.events.put(ProbeEvent(
                identifier=reply.identifier,
                sequence=reply.sequence,
                source=packet.source,
                terminal=reply.terminal,
                received_at=received_at,
            ))

        if error is not None:
            logger.debug(f"Reader stopped on socket error: {error}")
        else:
            logger.debug(f"Reader stopped ({self.dropped} packets dropped)")
        self.events.put(ReaderStopped(error=error))
