import asyncio
import random

import pytest

from forum.core.errors import TransportError
from forum.services.registry import ConnectionRegistry


class FakePeer:
    def __init__(self, name, fail=False):
        self.name = name
        self.fail = fail
        self.received = []
        self.closed = False

    async def send_json(self, payload):
        # yield so concurrent register/unregister calls interleave with fan-out
        await asyncio.sleep(0)
        if self.fail:
            raise TransportError(f"{self.name} is gone")
        self.received.append(payload)

    async def close(self):
        self.closed = True

    def __repr__(self):
        return f"<FakePeer {self.name}>"


@pytest.mark.asyncio
async def test_register_and_unregister_are_idempotent():
    registry = ConnectionRegistry()
    peer = FakePeer("a")

    await registry.register(peer)
    await registry.register(peer)
    assert len(registry) == 1
    assert peer in registry

    assert await registry.unregister(peer) is True
    assert await registry.unregister(peer) is False
    assert len(registry) == 0


@pytest.mark.asyncio
async def test_broadcast_skips_sender():
    registry = ConnectionRegistry()
    sender, other = FakePeer("sender"), FakePeer("other")
    await registry.register(sender)
    await registry.register(other)

    delivered = await registry.broadcast(sender, {"type": "message", "content": "hi"})

    assert delivered == 1
    assert sender.received == []
    assert other.received == [{"type": "message", "content": "hi"}]


@pytest.mark.asyncio
async def test_broadcast_to_unregistered_sender_reaches_everyone():
    registry = ConnectionRegistry()
    peers = [FakePeer(str(i)) for i in range(3)]
    for p in peers:
        await registry.register(p)

    assert await registry.broadcast(FakePeer("outsider"), {"n": 1}) == 3


@pytest.mark.asyncio
async def test_failed_peer_is_pruned_and_others_still_receive():
    registry = ConnectionRegistry()
    sender = FakePeer("sender")
    p1, p2, p3 = FakePeer("1"), FakePeer("2", fail=True), FakePeer("3")
    for p in (sender, p1, p2, p3):
        await registry.register(p)

    delivered = await registry.broadcast(sender, {"n": 1})

    assert delivered == 2
    assert p1.received == [{"n": 1}]
    assert p3.received == [{"n": 1}]
    assert p2 not in registry
    assert p2.closed is True
    assert len(registry) == 3

    # the dead peer is not tried again
    p2.fail = False
    await registry.broadcast(sender, {"n": 2})
    assert p2.received == []
    assert p1.received == [{"n": 1}, {"n": 2}]
    assert p3.received == [{"n": 1}, {"n": 2}]


@pytest.mark.asyncio
async def test_for_each_except_counts_successes():
    registry = ConnectionRegistry()
    peers = [FakePeer(str(i), fail=(i % 2 == 0)) for i in range(6)]
    for p in peers:
        await registry.register(p)
    seen = []

    async def visit(peer):
        if peer.fail:
            raise RuntimeError("write failed")
        seen.append(peer.name)

    assert await registry.for_each_except(peers[1], visit) == 2
    assert sorted(seen) == ["3", "5"]
    assert registry.count() == 3


@pytest.mark.asyncio
async def test_concurrent_membership_changes_and_broadcasts_stay_consistent():
    rng = random.Random(1234)
    registry = ConnectionRegistry()
    sender = FakePeer("sender")
    peers = [FakePeer(str(i), fail=rng.random() < 0.2) for i in range(60)]
    leaving = peers[45:]
    staying = peers[:45]
    rounds = 25

    await registry.register(sender)
    await asyncio.gather(*(registry.register(p) for p in peers))
    assert len(registry) == 61

    async def churn():
        for p in leaving:
            await registry.unregister(p)
            await asyncio.sleep(0)

    async def chatter():
        for n in range(rounds):
            await registry.broadcast(sender, {"n": n})

    await asyncio.gather(churn(), chatter(), chatter())

    expected = {sender} | {p for p in staying if not p.fail}
    assert {p for p in staying + leaving + [sender] if p in registry} == expected
    assert len(registry) == len(expected)

    for p in staying:
        if p.fail:
            assert p.closed and p.received == []
        else:
            # two chatters, each round delivered exactly once per chatter
            numbers = [m["n"] for m in p.received]
            assert sorted(numbers) == sorted(list(range(rounds)) * 2)
    for p in leaving:
        assert len(p.received) <= rounds * 2
    assert sender.received == []


class StuckClosePeer(FakePeer):
    async def close(self):
        await asyncio.sleep(30)


@pytest.mark.asyncio
async def test_stalled_close_of_dead_peer_does_not_hold_the_registry():
    registry = ConnectionRegistry(close_timeout=0.05)
    sender, stuck, live = FakePeer("sender"), StuckClosePeer("stuck", fail=True), FakePeer("live")
    for p in (sender, stuck, live):
        await registry.register(p)

    delivered = await asyncio.wait_for(registry.broadcast(sender, {"n": 1}), timeout=2)

    assert delivered == 1
    assert stuck not in registry
    assert live.received == [{"n": 1}]

    # lock was released: membership changes go through right away
    newcomer = FakePeer("new")
    await asyncio.wait_for(registry.register(newcomer), timeout=1)
    assert newcomer in registry
