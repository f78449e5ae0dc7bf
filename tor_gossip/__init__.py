"""Signed flood gossip over Tor onion services."""

from .config import NodeConfig
from .crypto_utils import Identity, verify_envelope
from .envelope import HANDSHAKE_TOPIC, Envelope
from .errors import (
    EnvelopeFormatError,
    GossipError,
    InvalidAddressError,
    NodeNotStartedError,
    PeerUnreachableError,
    TransportError,
)

__version__ = "0.1.0"

__all__ = [
    "NodeConfig",
    "Identity",
    "verify_envelope",
    "Envelope",
    "HANDSHAKE_TOPIC",
    "GossipError",
    "EnvelopeFormatError",
    "InvalidAddressError",
    "NodeNotStartedError",
    "PeerUnreachableError",
    "TransportError",
]
