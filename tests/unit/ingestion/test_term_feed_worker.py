import asyncio
import threading

import pytest

from ingestion.term_feed.source import StaticTermFeed
from ingestion.term_feed.worker import TermFeedWorker
from term_engine.contracts.term import TermStatus
from term_engine.exceptions.core import TransientIOError
from term_engine.registry.registry import TermRegistry
from term_engine.utils.config import TermFeedConfig


def _raw(term_id="RATE_CAP_5PCT", version=1, status="active", scope="USD-SWAP"):
    return {
        "term_id": term_id,
        "version": version,
        "status": status,
        "scope": scope,
        "rule": {"type": "threshold", "field": "rate", "operator": ">", "limit": 5},
    }


@pytest.mark.asyncio
async def test_bootstrap_is_one_snapshot_then_changes_apply_in_order():
    reg = TermRegistry()
    feed = StaticTermFeed(
        initial=[_raw("A"), _raw("B"), {"junk": True}],
        changes=[_raw("A", version=2, status="suspended"), _raw("C")],
    )
    worker = TermFeedWorker(registry=reg, source=feed)
    await worker.run()

    assert worker.applied == 4
    assert worker.malformed == 1
    # one snapshot for the bootstrap batch, one per change
    assert reg.version == 3
    assert [t.term_id for t in reg.get_active_terms("USD-SWAP")] == ["B", "C"]
    assert reg.snapshot().term("A").status is TermStatus.SUSPENDED


@pytest.mark.asyncio
async def test_async_source_and_stop_event():
    class AsyncFeed:
        def __init__(self, rows):
            self.rows = rows

        async def __aiter__(self):
            for r in self.rows:
                yield r

    stop = threading.Event()
    reg = TermRegistry()
    worker = TermFeedWorker(registry=reg, source=AsyncFeed([_raw("A"), _raw("B")]), stop_event=stop)
    await worker.run()
    assert [t.term_id for t in reg.get_active_terms("USD-SWAP")] == ["A", "B"]

    stop.set()
    reg2 = TermRegistry()
    await TermFeedWorker(registry=reg2, source=AsyncFeed([_raw("A")]), stop_event=stop).run()
    assert not reg2.is_ready


@pytest.mark.asyncio
async def test_non_iterable_source_raises():
    with pytest.raises(TypeError):
        await TermFeedWorker(registry=TermRegistry(), source=object()).run()


class _FlakyBootstrap:
    """Raises TransientIOError for the first `failures` bootstrap calls."""

    def __init__(self, failures, rows, *, on_call=None):
        self.failures = failures
        self.rows = rows
        self.calls = 0
        self.on_call = on_call

    def bootstrap(self):
        self.calls += 1
        if self.on_call is not None:
            self.on_call(self.calls)
        if self.calls <= self.failures:
            raise TransientIOError(f"term service hiccup #{self.calls}")
        return list(self.rows)

    def __iter__(self):
        return iter(())


@pytest.mark.asyncio
async def test_transient_bootstrap_failure_is_retried_until_it_succeeds():
    reg = TermRegistry()
    feed = _FlakyBootstrap(2, [_raw("A")])
    worker = TermFeedWorker(registry=reg, source=feed, config=TermFeedConfig(retry_base_ms=1, retry_max_ms=2))
    await worker.run()
    assert feed.calls == 3
    assert reg.version == 1
    assert [t.term_id for t in reg.get_active_terms("USD-SWAP")] == ["A"]


@pytest.mark.asyncio
async def test_stop_during_bootstrap_backoff_publishes_nothing():
    stop = threading.Event()
    reg = TermRegistry()
    feed = _FlakyBootstrap(100, [_raw("A")], on_call=lambda n: stop.set() if n == 2 else None)
    worker = TermFeedWorker(
        registry=reg,
        source=feed,
        config=TermFeedConfig(retry_base_ms=1, retry_max_ms=1),
        stop_event=stop,
    )
    await asyncio.wait_for(worker.run(), timeout=5)
    assert feed.calls == 2
    assert not reg.is_ready


@pytest.mark.asyncio
async def test_non_transient_bootstrap_failure_propagates():
    class Down:
        def bootstrap(self):
            raise ConnectionError("term service down")

        def __iter__(self):
            return iter(())

    with pytest.raises(ConnectionError):
        await TermFeedWorker(registry=TermRegistry(), source=Down()).run()
