# P2P gossip package
#
# Provides:
#  - GossipNode: signed flood gossip with dedup and failure-driven peer eviction
#  - PeerBook / DedupIndex: the node's bounded local state
#  - Tor and in-memory transports
#  - FastAPI receive and control apps
#
# See tor_gossip/p2p/server.py for the entry point.
from .broadcast import Broadcast, Subscription
from .dedup import DedupIndex
from .node import GossipNode, NodeState
from .peers import PeerBook, sanitize_onion
from .transport import MemoryNetwork, MemoryTransport, TorTransport, Transport

__all__ = [
    "Broadcast",
    "Subscription",
    "DedupIndex",
    "GossipNode",
    "NodeState",
    "PeerBook",
    "sanitize_onion",
    "MemoryNetwork",
    "MemoryTransport",
    "TorTransport",
    "Transport",
]
