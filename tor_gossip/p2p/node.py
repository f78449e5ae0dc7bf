import asyncio
import enum
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Set, Tuple

from ..config import NodeConfig
from ..crypto_utils import Identity, verify_envelope
from ..envelope import HANDSHAKE_TOPIC, Envelope
from ..errors import (
    EnvelopeFormatError,
    InvalidAddressError,
    NodeNotStartedError,
    PeerUnreachableError,
    TransportError,
)
from .broadcast import Broadcast
from .dedup import DedupIndex
from .peers import PeerBook, sanitize_onion
from .transport import Transport

log = logging.getLogger(__name__)

ACK = {"status": "received"}


class NodeState(enum.Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"


@dataclass
class _Session:
    """Everything that lives for exactly one run of the node."""

    address: str
    identity: Identity
    dedup: DedupIndex
    peers: PeerBook


# ------------------------------------------------------------------------------
# Gossip node
# ------------------------------------------------------------------------------
class GossipNode:
    """
    Flood-gossip engine for one node.

    Outbound: publish -> sign -> mark seen -> fan out to random peers.
    Inbound: dedup -> verify -> mark seen -> learn origin -> deliver -> fan out.

    Fanout sends run as independent tasks; a slow or dead peer never delays
    the caller or the other targets.
    """

    def __init__(self, config: NodeConfig, transport: Transport):
        self.config = config
        self.transport = transport
        self.messages: Broadcast[Envelope] = Broadcast()
        self.logs: Broadcast[str] = Broadcast()
        self._state = NodeState.STOPPED
        self._session: Optional[_Session] = None
        self._tasks: Set[asyncio.Task] = set()

    # --------------------------------------------------------------------------
    # Lifecycle
    # --------------------------------------------------------------------------
    @property
    def state(self) -> NodeState:
        return self._state

    @property
    def address(self) -> Optional[str]:
        return self._session.address if self._session else None

    @property
    def public_key(self) -> Optional[str]:
        return self._session.identity.public_key if self._session else None

    @property
    def peers(self) -> Tuple[str, ...]:
        """Read-only snapshot of the current peer addresses."""

        return self._session.peers.snapshot() if self._session else ()

    async def start(self) -> None:
        if self._state is not NodeState.STOPPED:
            return
        self._state = NodeState.STARTING
        self._log("Starting gossip node...")
        try:
            raw_address = await self.transport.start()
            address = sanitize_onion(raw_address)
            if address is None:
                raise TransportError(f"transport reported an invalid onion address: {raw_address!r}")
        except BaseException:
            self._state = NodeState.STOPPED
            raise
        if self._state is not NodeState.STARTING:
            # stop() ran while the transport was bootstrapping.
            await self.transport.stop()
            return

        peers = PeerBook(max_failures=self.config.max_failures)
        for peer in self.config.bootstrap_peers:
            if sanitize_onion(peer) == address:
                continue
            peers.add_peer(peer)
        self._session = _Session(
            address=address,
            identity=Identity.generate(),
            dedup=DedupIndex(self.config.dedup_capacity),
            peers=peers,
        )
        self._state = NodeState.RUNNING
        self._log(f"My address: {address} ({len(peers)} bootstrap peers)")

    async def stop(self) -> None:
        if self._state is NodeState.STOPPED:
            return
        # In-flight sends are left to fail once the transport goes away.
        self._state = NodeState.STOPPED
        self._session = None
        await self.transport.stop()
        self._log("Node stopped.")

    @property
    def pending_sends(self) -> int:
        return len(self._tasks)

    async def flush(self) -> None:
        """Wait until every in-flight send task has finished."""

        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _require_session(self) -> _Session:
        if self._state is not NodeState.RUNNING or self._session is None:
            raise NodeNotStartedError()
        return self._session

    # --------------------------------------------------------------------------
    # Actions
    # --------------------------------------------------------------------------
    async def publish(self, topic: str, payload: str) -> Envelope:
        """Sign and gossip a new message; unreachable peers never fail the call."""

        session = self._require_session()
        envelope = Envelope.build(topic, payload, origin=session.address).signed_by(session.identity)
        # An echo of our own message must not come back to us as a delivery.
        session.dedup.mark_seen(envelope.id)
        self._gossip_to_peers(session, envelope)
        return envelope

    def add_peer(self, address: str) -> bool:
        session = self._require_session()
        added = session.peers.add_peer(address)
        if added:
            self._log(f"Manually added peer: {session.peers.sanitize(address)}")
        return added

    async def ping_peer(self, address: str) -> Envelope:
        """Send a signed handshake straight to *address* and nobody else.

        Raises :class:`PeerUnreachableError` if the single send fails.
        """

        session = self._require_session()
        peer = sanitize_onion(address)
        if peer is None:
            raise InvalidAddressError(f"invalid onion address: {address!r}")
        if session.peers.add_peer(peer):
            self._log(f"Manually added peer: {peer}")

        envelope = Envelope.build(HANDSHAKE_TOPIC, "", origin=session.address).signed_by(session.identity)
        session.dedup.mark_seen(envelope.id)
        self._log(f"Pinging {peer}...")
        try:
            status = await self.transport.send_envelope(peer, envelope.to_bytes())
        except Exception as exc:
            reason = str(exc) or type(exc).__name__
        else:
            if 200 <= status < 300:
                session.peers.report_success(peer)
                self._log(f"Handshake delivered to {peer}")
                return envelope
            reason = f"HTTP {status}"
        session.peers.report_failure(peer)
        self._log(f"Ping to {peer} failed: {reason}", logging.WARNING)
        raise PeerUnreachableError(peer, reason)

    # --------------------------------------------------------------------------
    # Inbound
    # --------------------------------------------------------------------------
    async def on_envelope_received(self, raw_body: bytes) -> Dict[str, str]:
        """Entry point for the receive server; always acks immediately."""

        try:
            envelope = Envelope.from_bytes(raw_body)
        except EnvelopeFormatError as exc:
            self._log(f"Dropped malformed envelope: {exc}", logging.WARNING)
            return dict(ACK)
        if self._state is not NodeState.RUNNING:
            self._log(f"Dropped envelope {envelope.short_id}: node not running", logging.DEBUG)
            return dict(ACK)
        await self.ingest(envelope)
        return dict(ACK)

    async def ingest(self, envelope: Envelope) -> bool:
        """Process one inbound envelope; return True if it was accepted."""

        session = self._require_session()
        if session.dedup.is_duplicate(envelope.id):
            return False

        if not verify_envelope(envelope):
            # Forged traffic must not reach the peer book or the flood.
            self._log(
                f"Signature check failed for {envelope.short_id} claiming origin {envelope.origin!r}; dropped",
                logging.WARNING,
            )
            return False

        session.dedup.mark_seen(envelope.id)

        origin = sanitize_onion(envelope.origin)
        if origin != session.address and envelope.origin not in session.peers:
            if session.peers.add_peer(envelope.origin):
                self._log(f"Discovered new peer from message: {origin}")

        if envelope.topic != HANDSHAKE_TOPIC:
            self.messages.publish(envelope)
        else:
            self._log(f"Handshake from {envelope.origin}", logging.DEBUG)

        # Handshakes are forwarded as well.
        self._gossip_to_peers(session, envelope)
        return True

    # --------------------------------------------------------------------------
    # Propagation
    # --------------------------------------------------------------------------
    def _gossip_to_peers(self, session: _Session, envelope: Envelope) -> List[str]:
        exclude = {sanitize_onion(envelope.origin) or envelope.origin, session.address}
        targets = session.peers.random_peers(self.config.fanout, exclude=exclude)
        if not targets:
            self._log("No peers to gossip to.", logging.DEBUG)
            return []

        self._log(f"Gossiping msg {envelope.short_id} to {len(targets)} peers...")
        body = envelope.to_bytes()
        for peer in targets:
            self._spawn(self._send_to_peer(session, peer, envelope.short_id, body))
        return targets

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _send_to_peer(self, session: _Session, peer: str, short_id: str, body: bytes) -> bool:
        attempts = self.config.max_attempts
        for attempt in range(1, attempts + 1):
            try:
                status = await self.transport.send_envelope(peer, body)
            except Exception as exc:
                # Any transport fault is as retryable as a bad status.
                reason = str(exc) or type(exc).__name__
            else:
                if 200 <= status < 300:
                    session.peers.report_success(peer)
                    return True
                reason = f"HTTP {status}"

            if attempt < attempts:
                self._log(
                    f"Send of {short_id} to {peer} failed ({reason}); "
                    f"retry {attempt}/{attempts - 1} in {self.config.retry_backoff:g}s",
                    logging.DEBUG,
                )
                await asyncio.sleep(self.config.retry_backoff)
            else:
                self._log(f"Failed to reach {peer} after {attempts} attempts ({reason})", logging.WARNING)

        if session.peers.report_failure(peer):
            self._log(f"Peer {peer} is dead. Removed.")
        return False

    def _log(self, msg: str, level: int = logging.INFO) -> None:
        log.log(level, msg)
        self.logs.publish(msg)


__all__ = ["GossipNode", "NodeState"]
