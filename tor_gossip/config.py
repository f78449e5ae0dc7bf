"""Start-time configuration for a gossip node.

Values come from keyword arguments or from the process environment via
:meth:`NodeConfig.from_env`. A config is frozen once built; every restart of
a node reuses the same config.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional, Tuple

DEFAULT_FANOUT = 3
DEFAULT_DEDUP_CAPACITY = 2000
DEFAULT_MAX_FAILURES = 3
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_RETRY_BACKOFF_S = 5.0


def _split_peers(value: str) -> Tuple[str, ...]:
    return tuple(p.strip() for p in value.split(",") if p.strip())


@dataclass(frozen=True)
class NodeConfig:
    host: str = "127.0.0.1"
    port: int = 8080
    control_port: int = 8081
    bootstrap_peers: Tuple[str, ...] = ()
    proxy: Optional[str] = None
    onion_address: Optional[str] = None
    hostname_file: Optional[str] = None
    fanout: int = DEFAULT_FANOUT
    dedup_capacity: int = DEFAULT_DEDUP_CAPACITY
    max_failures: int = DEFAULT_MAX_FAILURES
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    retry_backoff: float = DEFAULT_RETRY_BACKOFF_S
    connect_timeout: float = 20.0
    request_timeout: float = 30.0
    bootstrap_timeout: float = 120.0

    def __post_init__(self) -> None:
        for name in ("fanout", "dedup_capacity", "max_failures", "max_attempts"):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be at least 1")
        if self.retry_backoff < 0:
            raise ValueError("retry_backoff must not be negative")
        # Lists passed by callers are frozen along with the rest of the config.
        object.__setattr__(self, "bootstrap_peers", tuple(self.bootstrap_peers))

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "NodeConfig":
        """Build a config from ``P2P_*``, ``GOSSIP_*`` and ``TOR_*`` variables."""

        env = os.environ if environ is None else environ
        return cls(
            host=env.get("P2P_HOST", "127.0.0.1"),
            port=int(env.get("P2P_PORT", "8080")),
            control_port=int(env.get("P2P_CONTROL_PORT", "8081")),
            bootstrap_peers=_split_peers(env.get("PEERS", "")),
            proxy=env.get("PROXY") or None,
            onion_address=env.get("ONION_ADDRESS") or None,
            hostname_file=env.get("TOR_HOSTNAME_FILE") or None,
            fanout=int(env.get("GOSSIP_FANOUT", str(DEFAULT_FANOUT))),
            dedup_capacity=int(env.get("GOSSIP_DEDUP_CAPACITY", str(DEFAULT_DEDUP_CAPACITY))),
            max_failures=int(env.get("GOSSIP_MAX_FAILURES", str(DEFAULT_MAX_FAILURES))),
            max_attempts=int(env.get("GOSSIP_MAX_ATTEMPTS", str(DEFAULT_MAX_ATTEMPTS))),
            retry_backoff=float(env.get("GOSSIP_RETRY_BACKOFF_S", str(DEFAULT_RETRY_BACKOFF_S))),
            connect_timeout=float(env.get("GOSSIP_CONNECT_TIMEOUT_S", "20")),
            request_timeout=float(env.get("GOSSIP_REQUEST_TIMEOUT_S", "30")),
            bootstrap_timeout=float(env.get("TOR_BOOTSTRAP_TIMEOUT_S", "120")),
        )


__all__ = ["NodeConfig"]
