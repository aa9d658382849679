"""
Traceroute through the operating system's own utility.

Used where raw ICMP sockets are unavailable: Windows always, and Unix
hosts without the privilege to open them. The utility's output is
parsed line by line as it is produced.

Copyright (c) 2025 DNS Science.io, an After Dark Systems, LLC company.
All rights reserved.
"""

import logging
import platform
import re
import shutil
import subprocess
import threading
from collections import deque
from typing import Callable

from netaddr import AddrFormatError, IPAddress

from pathdiag.config import TraceConfig, get_config
from pathdiag.traceroute.models import (
    Hop,
    Observation,
    TraceCancelled,
    TraceProcessError,
    TraceResult,
    TraceSetupError,
    TraceStatus,
)

logger = logging.getLogger(__name__)

_CANCEL_POLL_INTERVAL = 0.1

# Windows tracert: "  1    <1 ms     6 ms     *     45.90.28.0"
_TRACERT_FIELD = r"(?:<?(\d+)\s*ms|(\*))"
_TRACERT_LINE = re.compile(
    r"^\s*(\d+)\s+"
    + r"\s+".join([_TRACERT_FIELD] * 3)
    + r"\s+(\S+)"
)

# Unix traceroute -n: " 3  10.0.0.1  5.104 ms 10.0.0.2  6.012 ms *"
_UNIX_HOP = re.compile(r"^\s*(\d+)\s+(.*)$")
_UNIX_TOKEN = re.compile(r"\*|(\d+(?:\.\d+)?)\s*ms\b|(!\S*)|(\S+)")


def _parse_address(token: str) -> IPAddress | None:
    try:
        return IPAddress(token.split("%", 1)[0])
    except (AddrFormatError, ValueError):
        return None


def parse_tracert_line(line: str) -> Hop | None:
    """Parse one line of Windows ``tracert -d`` output.

    Returns None for headers, blank lines and anything else that is
    not a hop row, including rows with a round-trip time but no
    responding address.
    """
    match = _TRACERT_LINE.match(line)
    if not match:
        return None

    groups = match.groups()
    address = _parse_address(groups[-1])
    if address is None and any(groups[1 + 2 * i] for i in range(3)):
        # Answered fields need a responder; the trailer is not one
        return None
    hop = Hop(sequence=int(groups[0]))
    for i in range(3):
        ms, star = groups[1 + 2 * i], groups[2 + 2 * i]
        if star:
            hop.observations.append(Observation.timeout())
        else:
            hop.observations.append(Observation(address=address, rtt_ms=float(ms)))
    return hop


def parse_traceroute_line(line: str) -> Hop | None:
    """Parse one line of Unix ``traceroute -n`` output.

    A row may name several responders; each RTT belongs to the address
    printed before it. ``!H``-style annotations mark an unreachable
    reply, which ends the trace.
    """
    match = _UNIX_HOP.match(line)
    if not match:
        return None

    hop = Hop(sequence=int(match.group(1)))
    current: IPAddress | None = None
    for token in _UNIX_TOKEN.finditer(match.group(2)):
        ms, annotation, word = token.groups()
        if token.group(0) == "*":
            hop.observations.append(Observation.timeout())
        elif ms is not None:
            if current is None:
                return None
            hop.observations.append(Observation(address=current, rtt_ms=float(ms)))
        elif annotation is not None:
            hop.terminal = True
        else:
            address = _parse_address(word)
            if address is not None:
                current = address

    if not hop.observations:
        return None
    return hop


class NativeTracer:
    """Run the platform traceroute utility and stream its hops.

    Usage:
        tracer = NativeTracer()
        result = tracer.trace("45.90.28.0", on_hop=print)
    """

    strategy = "native"

    def __init__(self, config: TraceConfig | None = None, system: str | None = None):
        self.config = config or get_config()
        self.system = (system or platform.system()).lower()

    def build_command(self, destination: IPAddress) -> list[str]:
        """Command line for the utility on this platform."""
        if self.system == "windows":
            return ["tracert", "-d", "-h", str(self.config.max_hops), str(destination)]

        binary = "traceroute"
        if destination.version == 6 and self.system == "darwin":
            binary = "traceroute6"
        return [
            binary, "-n",
            "-q", str(self.config.probes_per_hop),
            "-m", str(self.config.max_hops),
            str(destination),
        ]

    def parse_line(self, line: str) -> Hop | None:
        if self.system == "windows":
            return parse_tracert_line(line)
        return parse_traceroute_line(line)

    def available(self) -> bool:
        """Check whether the utility is on PATH."""
        binary = "tracert" if self.system == "windows" else "traceroute"
        return shutil.which(binary) is not None

    def trace(
        self,
        destination: IPAddress,
        on_hop: Callable[[Hop], None] | None = None,
        cancel: threading.Event | None = None,
    ) -> TraceResult:
        """Trace the route to destination.

        Raises:
            TraceSetupError: utility missing or cannot be started
            TraceProcessError: utility failed without printing any hop
            TraceCancelled: cancel was set; the utility is terminated
        """
        cmd = self.build_command(destination)
        logger.debug(f"Running {' '.join(cmd)}")

        try:
            proc = subprocess.Popen(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                errors="replace",
                bufsize=1,
            )
        except FileNotFoundError as e:
            raise TraceSetupError(f"{cmd[0]} command not found") from e
        except OSError as e:
            raise TraceSetupError(f"cannot run {cmd[0]}: {e}") from e

        watcher: threading.Thread | None = None
        if cancel is not None:
            watcher = threading.Thread(
                target=self._watch_cancel,
                args=(proc, cancel),
                name="native-trace-cancel",
                daemon=True,
            )
            watcher.start()

        hops: list[Hop] = []
        unparsed: deque[str] = deque(maxlen=5)
        try:
            for line in proc.stdout:
                if cancel is not None and cancel.is_set():
                    proc.terminate()
                    break
                line = line.rstrip("\r\n")
                hop = self.parse_line(line)
                if hop is None:
                    if line.strip():
                        unparsed.append(line.strip())
                    continue
                if destination in hop.addresses():
                    hop.terminal = True
                hops.append(hop)
                if on_hop is not None:
                    on_hop(hop)
            returncode = proc.wait()
        finally:
            if proc.poll() is None:
                proc.kill()
                proc.wait()
            proc.stdout.close()
            if watcher is not None:
                watcher.join()

        if cancel is not None and cancel.is_set():
            raise TraceCancelled(f"trace to {destination} cancelled")

        if returncode != 0:
            if not hops:
                detail = unparsed[-1] if unparsed else "no output"
                raise TraceProcessError(f"{cmd[0]} exited with status {returncode}: {detail}")
            logger.warning(f"{cmd[0]} exited with status {returncode} after {len(hops)} hops")
            status = TraceStatus.PARTIAL
        elif any(hop.terminal for hop in hops):
            status = TraceStatus.REACHED
        else:
            status = TraceStatus.EXHAUSTED

        return TraceResult(
            destination=str(destination),
            status=status,
            hops=hops,
            strategy=self.strategy,
        )

    @staticmethod
    def _watch_cancel(proc: subprocess.Popen, cancel: threading.Event) -> None:
        while proc.poll() is None:
            if cancel.wait(_CANCEL_POLL_INTERVAL):
                logger.debug("Cancellation requested, terminating traceroute utility")
                proc.terminate()
                return
