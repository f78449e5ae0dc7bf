"""Peer book: the node's local view of reachable onion peers."""

from __future__ import annotations

import logging
import random
import re
import threading
from typing import Dict, Iterable, List, Optional, Set, Tuple
from urllib.parse import urlsplit

log = logging.getLogger(__name__)

# Tor v3 onion service: 56 base32 characters plus the .onion suffix.
ONION_RE = re.compile(r"^[a-z2-7]{56}\.onion$")

DEFAULT_MAX_FAILURES = 3

_rng = random.SystemRandom()


def sanitize_onion(value: str) -> Optional[str]:
    """Return the bare, lower-case onion host in *value*, or ``None``.

    Accepts ``abc...onion``, ``http://abc...onion:9050/gossip`` and the like;
    scheme, port and path are stripped before validation.
    """

    if not isinstance(value, str):
        return None
    s = value.strip().lower()
    if "://" in s:
        try:
            host = urlsplit(s).hostname
        except ValueError:
            return None
        s = host or s.split("://", 1)[1].split("/", 1)[0]
    else:
        s = s.split("/", 1)[0]
    s = s.split(":", 1)[0].strip()
    if ONION_RE.match(s):
        return s
    return None


class PeerBook:
    """Validated peer addresses with per-peer failure counters.

    Every mutation takes the book's lock for the mutation only; callers never
    hold it across network I/O.
    """

    def __init__(self, bootstrap_peers: Iterable[str] = (), max_failures: int = DEFAULT_MAX_FAILURES):
        if max_failures < 1:
            raise ValueError("max_failures must be at least 1")
        self.max_failures = max_failures
        self._peers: Set[str] = set()
        self._failures: Dict[str, int] = {}
        self._lock = threading.Lock()
        for peer in bootstrap_peers:
            self.add_peer(peer)

    sanitize = staticmethod(sanitize_onion)

    def add_peer(self, address: str) -> bool:
        """Add *address* if it is valid and unknown; return whether it was added."""

        clean = sanitize_onion(address)
        if clean is None:
            log.warning("Ignored invalid onion address: %r", address)
            return False
        with self._lock:
            if clean in self._peers:
                return False
            self._peers.add(clean)
            self._failures.pop(clean, None)
        log.debug("Added peer %s", clean)
        return True

    def remove_peer(self, address: str) -> None:
        # Fall back to the raw text so malformed entries can still be removed.
        clean = sanitize_onion(address) or address
        with self._lock:
            self._peers.discard(clean)
            self._failures.pop(clean, None)
        log.debug("Removed peer %s", clean)

    def random_peers(self, count: int, exclude: Iterable[str] = ()) -> List[str]:
        """Return up to *count* distinct peers sampled uniformly, skipping *exclude*."""

        skip = set(exclude)
        with self._lock:
            candidates = [p for p in self._peers if p not in skip]
        if not candidates or count <= 0:
            return []
        return _rng.sample(candidates, min(count, len(candidates)))

    def report_failure(self, address: str) -> bool:
        """Count one failed send to *address*; return True if it was evicted."""

        clean = sanitize_onion(address) or address
        with self._lock:
            # Sends still in flight for an evicted peer must not count.
            if clean not in self._peers:
                return False
            failures = self._failures.get(clean, 0) + 1
            if failures < self.max_failures:
                self._failures[clean] = failures
                return False
            self._peers.discard(clean)
            self._failures.pop(clean, None)
        log.info("Peer %s failed %d times, removed", clean, failures)
        return True

    def report_success(self, address: str) -> None:
        clean = sanitize_onion(address) or address
        with self._lock:
            self._failures.pop(clean, None)

    def failures(self, address: str) -> int:
        clean = sanitize_onion(address) or address
        return self._failures.get(clean, 0)

    def snapshot(self) -> Tuple[str, ...]:
        with self._lock:
            return tuple(sorted(self._peers))

    def __contains__(self, address: object) -> bool:
        if not isinstance(address, str):
            return False
        return (sanitize_onion(address) or address) in self._peers

    def __len__(self) -> int:
        return len(self._peers)


__all__ = ["PeerBook", "sanitize_onion", "ONION_RE"]
