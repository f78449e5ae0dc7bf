"""Exception types raised by the gossip engine."""

from __future__ import annotations


class GossipError(Exception):
    """Base class for every error raised by this package."""


class NodeNotStartedError(GossipError, RuntimeError):
    """Raised when an operation needs a running node."""

    def __init__(self, message: str = "Node not started") -> None:
        super().__init__(message)


class EnvelopeFormatError(GossipError, ValueError):
    """Raised when a wire envelope is structurally invalid."""


class InvalidAddressError(GossipError, ValueError):
    """Raised when a peer address cannot be canonicalised."""


class TransportError(GossipError):
    """Raised by a transport when an outbound request fails."""


class PeerUnreachableError(TransportError):
    """Raised when a direct send to a single peer does not succeed."""

    def __init__(self, address: str, reason: str) -> None:
        super().__init__(f"{address} unreachable: {reason}")
        self.address = address
        self.reason = reason


__all__ = [
    "GossipError",
    "NodeNotStartedError",
    "EnvelopeFormatError",
    "InvalidAddressError",
    "TransportError",
    "PeerUnreachableError",
]
