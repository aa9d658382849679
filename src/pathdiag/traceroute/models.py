"""
Result model for traceroute operations.

Copyright (c) 2025 DNS Science.io, an After Dark Systems, LLC company.
All rights reserved.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from netaddr import IPAddress


class TraceStatus(str, Enum):
    """How a trace that produced a result ended."""
    REACHED = "reached"      # Terminal reply (echo reply / unreachable) observed
    EXHAUSTED = "exhausted"  # max_hops attempted without a terminal reply
    PARTIAL = "partial"      # Native utility failed after producing some hops


class TraceError(Exception):
    """Base exception for trace failures."""
    pass


class TraceSetupError(TraceError):
    """Raw socket or native utility could not be set up."""
    pass


class TraceTransmitError(TraceError):
    """A probe could not be marshalled or sent."""
    pass


class TraceReceiveError(TraceError):
    """The socket stopped delivering packets while the trace was running."""
    pass


class TraceProcessError(TraceError):
    """Native traceroute utility failed before producing any hop."""
    pass


class TraceCancelled(TraceError):
    """The trace was aborted through its cancellation signal."""
    pass


@dataclass(frozen=True)
class Observation:
    """Outcome of a single probe.

    A timed-out probe has no address and ``rtt_ms`` set to None; an
    answered probe always has both.
    """
    address: IPAddress | None = None
    rtt_ms: float | None = None

    def __post_init__(self):
        if self.rtt_ms is None and self.address is not None:
            raise ValueError("timed-out observation cannot carry an address")
        if self.rtt_ms is not None and self.address is None:
            raise ValueError("answered observation must carry an address")
        if self.rtt_ms is not None and self.rtt_ms < 0:
            raise ValueError(f"rtt_ms must be non-negative, got {self.rtt_ms}")

    @classmethod
    def timeout(cls) -> "Observation":
        return cls()

    @property
    def timed_out(self) -> bool:
        return self.rtt_ms is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "address": str(self.address) if self.address is not None else None,
            "rtt_ms": self.rtt_ms,
        }


@dataclass
class Hop:
    """All observations collected for one hop limit."""
    sequence: int
    observations: list[Observation] = field(default_factory=list)
    terminal: bool = False  # A probe of this hop got a terminal reply

    def addresses(self) -> list[IPAddress]:
        """Distinct responding addresses in order of first appearance."""
        seen: list[IPAddress] = []
        for obs in self.observations:
            if obs.address is not None and obs.address not in seen:
                seen.append(obs.address)
        return seen

    def rtts(self) -> list[float | None]:
        """RTTs in probe order, None for timed-out probes."""
        return [obs.rtt_ms for obs in self.observations]

    @property
    def is_timeout(self) -> bool:
        """True when no probe of this hop got an answer."""
        return all(obs.timed_out for obs in self.observations)

    def __str__(self) -> str:
        parts = [f"{self.sequence:3d} "]
        addrs = self.addresses()
        if addrs:
            parts.append(", ".join(f"{str(ip):>14}" for ip in addrs))
            parts.append(" ")
        else:
            parts.append(" " * 15)
        for rtt in self.rtts():
            if rtt is None:
                parts.append("   *  ")
            else:
                parts.append(f" {int(rtt):3d}ms")
        return "".join(parts)

    def to_dict(self) -> dict[str, Any]:
        return {
            "sequence": self.sequence,
            "terminal": self.terminal,
            "observations": [obs.to_dict() for obs in self.observations],
        }


@dataclass
class TraceResult:
    """Hops produced by a completed trace and how it ended."""
    destination: str
    status: TraceStatus
    hops: list[Hop] = field(default_factory=list)
    strategy: str = "socket"

    @property
    def reached(self) -> bool:
        return self.status == TraceStatus.REACHED

    def to_dict(self) -> dict[str, Any]:
        return {
            "destination": self.destination,
            "status": self.status.value,
            "strategy": self.strategy,
            "hops": [hop.to_dict() for hop in self.hops],
        }
