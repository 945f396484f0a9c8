import asyncio

import pytest

from helpers.fakes import Settle, update
from term_engine.routing.router import OrderingRouter, lane_for
from term_engine.utils.config import RouterConfig


def test_lane_for_is_stable_and_in_range():
    keys = [f"INSTR-{i}" for i in range(200)]
    first = [lane_for(k, 8) for k in keys]
    assert first == [lane_for(k, 8) for k in keys]
    assert set(first) <= set(range(8))
    assert len(set(first)) > 1
    with pytest.raises(ValueError):
        lane_for("X", 0)


class Recorder:
    def __init__(self, delay=0.0):
        self.delay = delay
        self.seen = []
        self.active = {}
        self.max_active_per_key = 0
        self.max_active_total = 0

    async def __call__(self, msg):
        key = msg.update.instrument
        self.active[key] = self.active.get(key, 0) + 1
        self.max_active_per_key = max(self.max_active_per_key, self.active[key])
        self.max_active_total = max(self.max_active_total, sum(self.active.values()))
        await asyncio.sleep(self.delay)
        self.seen.append((key, msg.update.seq, msg.out_of_order))
        self.active[key] -= 1
        await msg.ack()


@pytest.mark.asyncio
async def test_per_key_order_and_no_concurrency_within_a_key():
    rec = Recorder(delay=0.001)
    router = OrderingRouter(RouterConfig(lanes=4, resequence_window=8), rec)
    router.start()
    settle = Settle()
    arrivals = [("A", 1), ("B", 1), ("A", 3), ("A", 2), ("B", 2), ("C", 1), ("A", 4)]
    for instr, seq in arrivals:
        await router.submit(settle.message(update(seq, instrument=instr)))
    assert await router.drain(timeout=5)
    await router.stop()

    for key in "ABC":
        seqs = [s for k, s, _ in rec.seen if k == key]
        assert seqs == sorted(seqs)
    assert [s for k, s, _ in rec.seen if k == "A"] == [1, 2, 3, 4]
    assert rec.max_active_per_key == 1
    assert len(settle.acked) == len(arrivals)


@pytest.mark.asyncio
async def test_different_keys_run_concurrently():
    rec = Recorder(delay=0.05)
    router = OrderingRouter(RouterConfig(lanes=16), rec)
    router.start()
    keys = [f"K{i}" for i in range(32)]
    lanes_used = {router.lane_index(k) for k in keys}
    for k in keys:
        await router.submit(Settle().message(update(1, instrument=k)))
    assert await router.drain(timeout=5)
    await router.stop()
    assert rec.max_active_total > 1
    assert len(lanes_used) > 1


@pytest.mark.asyncio
async def test_drain_flushes_held_gaps():
    rec = Recorder()
    router = OrderingRouter(RouterConfig(lanes=2, resequence_window=8, max_hold_ms=0), rec)
    router.start()
    await router.submit(Settle().message(update(1)))
    await router.submit(Settle().message(update(3)))
    await asyncio.sleep(0.01)
    assert [s for _, s, _ in rec.seen] == [1]
    assert await router.drain(timeout=5)
    assert [s for _, s, _ in rec.seen] == [1, 3]
    await router.stop()


@pytest.mark.asyncio
async def test_tick_expires_old_holds():
    rec = Recorder()
    router = OrderingRouter(RouterConfig(lanes=1, resequence_window=8, max_hold_ms=10), rec)
    router.start()
    await router.submit(Settle().message(update(1)))
    await router.submit(Settle().message(update(5)))
    await asyncio.sleep(0.03)
    assert await router.tick() == 1
    assert await router.drain(timeout=5)
    assert [s for _, s, _ in rec.seen] == [1, 5]
    await router.stop()


@pytest.mark.asyncio
async def test_handler_exception_rejects_message_and_lane_survives():
    async def handler(msg):
        if msg.update.seq == 1:
            raise RuntimeError("boom")
        await msg.ack()

    router = OrderingRouter(RouterConfig(lanes=1), handler)
    router.start()
    settle = Settle()
    await router.submit(settle.message(update(1)))
    await router.submit(settle.message(update(2)))
    assert await router.drain(timeout=5)
    assert settle.acked == ["USD-SWAP#2"]
    assert settle.rejected[0][0] == "USD-SWAP#1"
    assert router.crashed_lane() is None
    health = router.health()[0]
    assert health.crashed == 1 and health.processed == 2 and health.last_seq == 2
    await router.stop()


@pytest.mark.asyncio
async def test_submit_before_start_is_an_error():
    router = OrderingRouter(RouterConfig(lanes=1), Recorder())
    with pytest.raises(RuntimeError):
        await router.submit(Settle().message(update(1)))
