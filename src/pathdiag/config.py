"""
Configuration management for pathdiag.

Loads trace defaults from environment variables or a .env file.

Copyright (c) 2025 DNS Science.io, an After Dark Systems, LLC company.
All rights reserved.
"""

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

# Check common locations for .env
env_locations = [
    Path.home() / ".pathdiag" / ".env",
    Path.home() / ".config" / "pathdiag" / ".env",
    Path.cwd() / ".env",
]
for env_path in env_locations:
    if env_path.exists():
        load_dotenv(env_path)
        break


DEFAULT_PACKET_SIZE = 52
DEFAULT_HOP_TIMEOUT = 5.0
DEFAULT_MAX_HOPS = 20
DEFAULT_PROBES_PER_HOP = 3

# Largest echo payload that still fits an IPv4 datagram with headers
MAX_PACKET_SIZE = 65000


@dataclass(frozen=True)
class TraceConfig:
    """Tunable parameters for a single trace."""

    probe_payload_size: int = DEFAULT_PACKET_SIZE  # bytes of zero payload per probe
    per_probe_timeout: float = DEFAULT_HOP_TIMEOUT  # seconds
    max_hops: int = DEFAULT_MAX_HOPS
    probes_per_hop: int = DEFAULT_PROBES_PER_HOP

    def __post_init__(self):
        if not 0 <= self.probe_payload_size <= MAX_PACKET_SIZE:
            raise ValueError(
                f"probe_payload_size must be between 0 and {MAX_PACKET_SIZE}, "
                f"got {self.probe_payload_size}"
            )
        if self.per_probe_timeout <= 0:
            raise ValueError(f"per_probe_timeout must be positive, got {self.per_probe_timeout}")
        if not 1 <= self.max_hops <= 255:
            raise ValueError(f"max_hops must be between 1 and 255, got {self.max_hops}")
        if self.probes_per_hop < 1:
            raise ValueError(f"probes_per_hop must be at least 1, got {self.probes_per_hop}")

    @classmethod
    def from_env(cls) -> "TraceConfig":
        """Load configuration from environment variables."""
        return cls(
            probe_payload_size=int(os.getenv("PATHDIAG_PACKET_SIZE", DEFAULT_PACKET_SIZE)),
            per_probe_timeout=float(os.getenv("PATHDIAG_HOP_TIMEOUT", DEFAULT_HOP_TIMEOUT)),
            max_hops=int(os.getenv("PATHDIAG_MAX_HOPS", DEFAULT_MAX_HOPS)),
            probes_per_hop=int(os.getenv("PATHDIAG_PROBES_PER_HOP", DEFAULT_PROBES_PER_HOP)),
        )


# Global config instance
_config: TraceConfig | None = None


def get_config() -> TraceConfig:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = TraceConfig.from_env()
    return _config


def set_config(config: TraceConfig | None) -> None:
    """Set the global configuration instance (None reloads from the environment)."""
    global _config
    _config = config
