import asyncio
from dataclasses import replace

import pytest

from tor_gossip.crypto_utils import Identity
from tor_gossip.envelope import HANDSHAKE_TOPIC, Envelope
from tor_gossip.errors import (
    InvalidAddressError,
    NodeNotStartedError,
    PeerUnreachableError,
    TransportError,
)
from tor_gossip.p2p.node import GossipNode, NodeState
from tor_gossip.p2p.transport import MemoryNetwork


async def start_node(network, address, config):
    node = GossipNode(config, network.transport(address))
    network.listen(address, node.on_envelope_received)
    await node.start()
    return node


async def settle(*nodes):
    while any(node.pending_sends for node in nodes):
        for node in nodes:
            await node.flush()


def sends_from(network, address):
    return [dest for src, dest, _ in network.sent if src == address]


class RaisingTransport:
    """Transport whose sends blow up with a non-transport exception."""

    def __init__(self, address):
        self.address = address
        self.calls = 0

    async def start(self):
        return self.address

    async def send_envelope(self, address, body):
        self.calls += 1
        raise RuntimeError("socket exploded")

    async def stop(self):
        pass


def test_operations_require_running_node(onion, fast_config):
    node = GossipNode(fast_config(), MemoryNetwork().transport(onion("a")))

    async def scenario():
        with pytest.raises(NodeNotStartedError):
            await node.publish("chat", "hi")
        with pytest.raises(NodeNotStartedError):
            await node.ping_peer(onion("b"))
        with pytest.raises(NodeNotStartedError):
            await node.ingest(Envelope.build("chat", "hi", origin=onion("b")))
        with pytest.raises(NodeNotStartedError):
            node.add_peer(onion("b"))

    asyncio.run(scenario())
    assert node.state is NodeState.STOPPED
    assert node.peers == ()


def test_start_creates_fresh_session(onion, fast_config):
    network = MemoryNetwork()
    config = fast_config(bootstrap_peers=(f"http://{onion('b')}:80/gossip", "junk", onion("a")))

    async def scenario():
        node = await start_node(network, onion("a").upper(), config)
        first_key = node.public_key
        node.add_peer(onion("c"))
        await node.publish("chat", "hi")
        await settle(node)
        await node.start()  # no-op while running
        assert node.public_key == first_key

        await node.stop()
        assert node.state is NodeState.STOPPED
        with pytest.raises(NodeNotStartedError):
            await node.publish("chat", "again")

        await node.start()
        return node, first_key

    node, first_key = asyncio.run(scenario())
    assert node.state is NodeState.RUNNING
    assert node.address == onion("a")
    assert node.public_key != first_key
    assert node.peers == (onion("b"),)


def test_start_rejects_invalid_own_address(fast_config):
    node = GossipNode(fast_config(), MemoryNetwork().transport("not-an-onion"))
    with pytest.raises(TransportError):
        asyncio.run(node.start())
    assert node.state is NodeState.STOPPED


def test_end_to_end_delivery_and_refanout(onion, fast_config):
    network = MemoryNetwork()
    a_addr, b_addr, c_addr = onion("a"), onion("b"), onion("c")

    async def scenario():
        a = await start_node(network, a_addr, fast_config(bootstrap_peers=(b_addr,)))
        b = await start_node(network, b_addr, fast_config(bootstrap_peers=(c_addr,)))
        c = await start_node(network, c_addr, fast_config())
        b_messages = b.messages.subscribe()
        c_messages = c.messages.subscribe()
        a_messages = a.messages.subscribe()

        envelope = await a.publish("chat", "hi")
        await settle(a, b, c)
        return envelope, a, b, c, a_messages.drain(), b_messages.drain(), c_messages.drain()

    envelope, a, b, c, at_a, at_b, at_c = asyncio.run(scenario())

    assert len(at_b) == 1
    assert at_b[0].payload == "hi"
    assert at_b[0].origin == a_addr
    assert at_b[0].id == envelope.id
    assert [e.id for e in at_c] == [envelope.id]
    assert at_a == []

    # B learned A passively and forwarded only to C.
    assert a_addr in b.peers
    assert sends_from(network, b_addr) == [c_addr]
    assert a_addr in c.peers


def test_ingesting_twice_delivers_and_forwards_once(onion, fast_config):
    network = MemoryNetwork()
    origin = onion("origin")
    envelope = Envelope.build("chat", "hi", origin=origin).signed_by(Identity.generate())

    async def scenario():
        node = await start_node(network, onion("me"), fast_config(bootstrap_peers=(onion("p1"),)))
        network.statuses[onion("p1")] = 200
        sub = node.messages.subscribe()
        first = await node.ingest(envelope)
        second = await node.ingest(envelope)
        await settle(node)
        return first, second, sub.drain()

    first, second, delivered = asyncio.run(scenario())
    assert (first, second) == (True, False)
    assert len(delivered) == 1
    assert sends_from(network, onion("me")) == [onion("p1")]


def test_own_echo_is_not_redelivered(onion, fast_config):
    network = MemoryNetwork()

    async def scenario():
        node = await start_node(network, onion("a"), fast_config())
        sub = node.messages.subscribe()
        envelope = await node.publish("chat", "hi")
        accepted = await node.ingest(envelope)
        return accepted, sub.drain()

    accepted, delivered = asyncio.run(scenario())
    assert accepted is False
    assert delivered == []


def test_forged_envelope_is_dropped_without_side_effects(onion, fast_config):
    network = MemoryNetwork()
    attacker = Identity.generate()
    genuine = Envelope.build("chat", "pay alice", origin=onion("mallory"))
    forged_sig = attacker.sign(genuine.id, genuine.topic, "pay mallory", genuine.timestamp)
    forged = replace(genuine, sender_pub=attacker.public_key, signature=forged_sig)

    async def scenario():
        node = await start_node(network, onion("me"), fast_config(bootstrap_peers=(onion("p1"),)))
        network.statuses[onion("p1")] = 200
        messages = node.messages.subscribe()
        logs = node.logs.subscribe()
        accepted = await node.ingest(forged)
        await settle(node)
        after_forgery = (accepted, messages.drain(), node.peers, list(network.sent), logs.drain())

        # The forged copy was not marked seen, so a valid one still gets through.
        valid = genuine.signed_by(attacker)
        accepted_valid = await node.ingest(valid)
        await settle(node)
        return after_forgery, accepted_valid, messages.drain()

    (accepted, delivered, peers, sent, logs), accepted_valid, later = asyncio.run(scenario())
    assert accepted is False
    assert delivered == []
    assert onion("mallory") not in peers
    assert sent == []
    assert any("Signature check failed" in line for line in logs)
    assert accepted_valid is True
    assert [e.payload for e in later] == ["pay alice"]


def test_unsigned_envelope_is_rejected(onion, fast_config):
    network = MemoryNetwork()
    unsigned = Envelope.build("chat", "hi", origin=onion("x"))

    async def scenario():
        node = await start_node(network, onion("me"), fast_config())
        return await node.ingest(unsigned), node.peers

    accepted, peers = asyncio.run(scenario())
    assert accepted is False
    assert peers == ()


def test_invalid_origin_still_delivers(fast_config, onion):
    network = MemoryNetwork()
    envelope = Envelope.build("chat", "hi", origin="not-an-onion").signed_by(Identity.generate())

    async def scenario():
        node = await start_node(network, onion("me"), fast_config())
        sub = node.messages.subscribe()
        accepted = await node.ingest(envelope)
        return accepted, sub.drain(), node.peers

    accepted, delivered, peers = asyncio.run(scenario())
    assert accepted is True
    assert len(delivered) == 1
    assert peers == ()


def test_fanout_is_bounded(onion, fast_config):
    network = MemoryNetwork()
    peers = [onion(f"peer-{i}") for i in range(10)]
    for peer in peers:
        network.statuses[peer] = 200

    async def scenario():
        node = await start_node(network, onion("me"), fast_config(bootstrap_peers=tuple(peers)))
        await node.publish("chat", "hi")
        await settle(node)

    asyncio.run(scenario())
    targets = sends_from(network, onion("me"))
    assert len(targets) == 3
    assert len(set(targets)) == 3
    assert set(targets) <= set(peers)


def test_failed_sends_retry_then_evict(onion, fast_config):
    network = MemoryNetwork()
    dead = onion("dead")
    network.statuses[dead] = 503

    async def scenario():
        node = await start_node(network, onion("me"), fast_config(bootstrap_peers=(dead,)))
        await node.publish("chat", "1")
        await settle(node)
        after_one = (len(network.sent_to(dead)), node._session.peers.failures(dead))
        await node.publish("chat", "2")
        await node.publish("chat", "3")
        await settle(node)
        return after_one, node.peers

    (attempts, failures), peers = asyncio.run(scenario())
    assert attempts == 3
    assert failures == 1
    assert len(network.sent_to(dead)) == 9
    assert dead not in peers


def test_rediscovered_peer_is_not_evicted_early(onion, fast_config):
    network = MemoryNetwork()
    dead = onion("dead")
    network.statuses[dead] = 503
    hello = Envelope.build("chat", "back online", origin=dead).signed_by(Identity.generate())

    async def scenario():
        node = await start_node(network, onion("me"), fast_config(bootstrap_peers=(dead,)))
        for i in range(4):
            await node.publish("chat", str(i))
        await settle(node)
        after_eviction = (node.peers, node._session.peers.failures(dead))

        await node.ingest(hello)
        await node.publish("chat", "4")
        await node.publish("chat", "5")
        await settle(node)
        after_two = node.peers

        await node.publish("chat", "6")
        await settle(node)
        return after_eviction, after_two, node.peers

    (evicted_peers, stale), after_two, after_three = asyncio.run(scenario())
    assert evicted_peers == ()
    assert stale == 0
    assert after_two == (dead,)
    assert after_three == ()


class GatedTransport:
    """Transport whose bootstrap waits until the test releases it."""

    def __init__(self, address):
        self.address = address
        self.release = asyncio.Event()
        self.stops = 0

    async def start(self):
        await self.release.wait()
        return self.address

    async def send_envelope(self, address, body):
        return 200

    async def stop(self):
        self.stops += 1


def test_stop_during_start_leaves_node_stopped(onion, fast_config):
    async def scenario():
        transport = GatedTransport(onion("me"))
        node = GossipNode(fast_config(), transport)
        starting = asyncio.ensure_future(node.start())
        await asyncio.sleep(0)
        assert node.state is NodeState.STARTING
        await node.stop()
        transport.release.set()
        await starting
        with pytest.raises(NodeNotStartedError):
            await node.publish("chat", "hi")
        return node, transport

    node, transport = asyncio.run(scenario())
    assert node.state is NodeState.STOPPED
    assert node.address is None
    assert transport.stops == 2


def test_success_resets_failures(onion, fast_config):
    network = MemoryNetwork()
    flaky = onion("flaky")
    network.unreachable.add(flaky)

    async def scenario():
        node = await start_node(network, onion("me"), fast_config(bootstrap_peers=(flaky,)))
        await node.publish("chat", "1")
        await node.publish("chat", "2")
        await settle(node)
        before = node._session.peers.failures(flaky)
        network.unreachable.discard(flaky)
        network.statuses[flaky] = 200
        await node.publish("chat", "3")
        await settle(node)
        return before, node._session.peers.failures(flaky), node.peers

    before, after, peers = asyncio.run(scenario())
    assert before == 2
    assert after == 0
    assert flaky in peers


def test_any_transport_exception_is_retryable(onion, fast_config):
    transport = RaisingTransport(onion("me"))
    node = GossipNode(fast_config(bootstrap_peers=(onion("p1"),)), transport)

    async def scenario():
        await node.start()
        envelope = await node.publish("chat", "hi")
        await settle(node)
        return envelope

    envelope = asyncio.run(scenario())
    assert envelope.payload == "hi"
    assert transport.calls == 3
    assert node._session.peers.failures(onion("p1")) == 1


def test_publish_returns_before_sends_finish(onion, fast_config):
    network = MemoryNetwork()
    network.unreachable.add(onion("slow"))

    async def scenario():
        node = await start_node(
            network, onion("me"), fast_config(bootstrap_peers=(onion("slow"),), retry_backoff=0.05)
        )
        await node.publish("chat", "hi")
        pending = node.pending_sends
        await settle(node)
        return pending, node.pending_sends

    pending, after = asyncio.run(scenario())
    assert pending == 1
    assert after == 0


def test_ping_peer_handshakes_and_spreads_knowledge(onion, fast_config):
    network = MemoryNetwork()
    a_addr, b_addr, c_addr = onion("a"), onion("b"), onion("c")

    async def scenario():
        a = await start_node(network, a_addr, fast_config())
        b = await start_node(network, b_addr, fast_config(bootstrap_peers=(c_addr,)))
        c = await start_node(network, c_addr, fast_config())
        b_messages = b.messages.subscribe()
        envelope = await a.ping_peer(f"http://{b_addr.upper()}:80/gossip")
        await settle(a, b, c)
        return envelope, a.peers, b.peers, c.peers, b_messages.drain()

    envelope, a_peers, b_peers, c_peers, delivered = asyncio.run(scenario())
    assert envelope.topic == HANDSHAKE_TOPIC
    assert envelope.payload == ""
    assert a_peers == (b_addr,)
    assert a_addr in b_peers
    assert a_addr in c_peers
    assert delivered == []
    assert network.sent[0][:2] == (a_addr, b_addr)


def test_ping_unreachable_peer_raises(onion, fast_config):
    network = MemoryNetwork()
    network.unreachable.add(onion("gone"))

    async def scenario():
        node = await start_node(network, onion("me"), fast_config())
        with pytest.raises(PeerUnreachableError) as excinfo:
            await node.ping_peer(onion("gone"))
        return excinfo.value, node._session.peers.failures(onion("gone"))

    error, failures = asyncio.run(scenario())
    assert error.address == onion("gone")
    assert failures == 1
    assert len(network.sent_to(onion("gone"))) == 1


def test_ping_invalid_address_raises(onion, fast_config):
    async def scenario():
        node = await start_node(MemoryNetwork(), onion("me"), fast_config())
        with pytest.raises(InvalidAddressError):
            await node.ping_peer("example.com")

    asyncio.run(scenario())


def test_add_peer_reports_insertion(onion, fast_config):
    async def scenario():
        node = await start_node(MemoryNetwork(), onion("me"), fast_config())
        return node.add_peer(onion("x")), node.add_peer(onion("x")), node.add_peer("bad"), node.peers

    first, second, bad, peers = asyncio.run(scenario())
    assert (first, second, bad) == (True, False, False)
    assert peers == (onion("x"),)


def test_on_envelope_received_always_acks(onion, fast_config):
    network = MemoryNetwork()
    signed = Envelope.build("chat", "hi", origin=onion("x")).signed_by(Identity.generate())

    async def scenario():
        node = GossipNode(fast_config(), network.transport(onion("me")))
        before_start = await node.on_envelope_received(signed.to_bytes())
        await node.start()
        logs = node.logs.subscribe()
        malformed = await node.on_envelope_received(b"{not json")
        missing = await node.on_envelope_received(b'{"id": "1"}')
        valid = await node.on_envelope_received(signed.to_bytes())
        return before_start, malformed, missing, valid, logs.drain(), node.peers

    before_start, malformed, missing, valid, logs, peers = asyncio.run(scenario())
    for ack in (before_start, malformed, missing, valid):
        assert ack == {"status": "received"}
    assert sum("malformed" in line for line in logs) == 2
    assert peers == (onion("x"),)
