"""Signing primitives for gossip envelopes.

Every running node owns one Ed25519 keypair, generated in memory when the
node starts and discarded when it stops. Keys and signatures travel as hex
strings inside the envelope.
"""

from __future__ import annotations

import binascii
from typing import TYPE_CHECKING

from nacl.encoding import HexEncoder
from nacl.exceptions import CryptoError
from nacl.signing import SigningKey, VerifyKey

from .utils.serialization import signing_bytes

if TYPE_CHECKING:  # pragma: no cover
    from .envelope import Envelope


class Identity:
    """An ephemeral node identity that signs outbound envelopes."""

    def __init__(self, signing_key: SigningKey):
        self._signing_key = signing_key
        self._public_hex = signing_key.verify_key.encode(encoder=HexEncoder).decode("ascii")

    @classmethod
    def generate(cls) -> "Identity":
        """Return an identity backed by a fresh random keypair."""

        return cls(SigningKey.generate())

    @property
    def public_key(self) -> str:
        """The hex encoded Ed25519 public key attached to outbound envelopes."""

        return self._public_hex

    def sign(self, envelope_id: str, topic: str, payload: str, timestamp: int) -> str:
        """Return a hex detached signature over the four signed envelope fields."""

        message = signing_bytes(envelope_id, topic, payload, timestamp)
        return self._signing_key.sign(message).signature.hex()


def verify_envelope(envelope: "Envelope") -> bool:
    """Check *envelope*'s signature against its declared public key.

    Inbound fields are attacker controlled, so every decode problem (bad hex,
    wrong key or signature length, text that cannot be encoded) returns
    ``False`` instead of raising.
    """

    if not envelope.sender_pub or not envelope.signature:
        return False
    try:
        message = signing_bytes(envelope.id, envelope.topic, envelope.payload, envelope.timestamp)
        verify_key = VerifyKey(bytes.fromhex(envelope.sender_pub))
        verify_key.verify(message, bytes.fromhex(envelope.signature))
    except (CryptoError, ValueError, TypeError, binascii.Error):
        return False
    return True


__all__ = ["Identity", "verify_envelope"]
