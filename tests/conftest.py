import base64
import hashlib

import pytest

from tor_gossip.config import NodeConfig


def _onion(name: str) -> str:
    # 35 bytes of base32 is exactly 56 characters with no padding.
    raw = hashlib.sha256(name.encode("utf-8")).digest() + b"tor"
    return base64.b32encode(raw).decode("ascii").lower() + ".onion"


@pytest.fixture
def onion():
    """Factory returning a deterministic, valid v3 onion address for a name."""
    return _onion


@pytest.fixture
def fast_config():
    """Config factory with no retry backoff so failure paths finish instantly."""

    def make(**overrides) -> NodeConfig:
        overrides.setdefault("retry_backoff", 0)
        return NodeConfig(**overrides)

    return make
