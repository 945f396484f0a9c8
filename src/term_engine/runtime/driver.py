from __future__ import annotations

import asyncio
import contextlib
import threading
import traceback
from typing import Any, AsyncIterator

from ingestion.contracts.message import InboundMessage, MessageSource, Normalizer
from ingestion.market_data.normalize import MarketDataNormalizer
from ingestion.term_feed.worker import TermFeedWorker
from term_engine.engine.engine import EvaluationEngine
from term_engine.engine.health import EngineHealth, latency_percentiles
from term_engine.exceptions.core import FatalError, MalformedEventError, RegistryUnavailable
from term_engine.registry.registry import TermRegistry
from term_engine.routing.router import OrderingRouter
from term_engine.runtime.lifecycle import LifecycleGuard, RuntimePhase
from term_engine.utils.logger import get_logger, log_error, log_heartbeat, log_info, log_warn

_STOP_POLL_S = 0.1


class EvaluationDriver:
    """
    Runtime owner of the evaluation engine.

    Responsibilities:
      - own lifecycle ordering: BOOTSTRAP -> RUNNING -> DRAINING -> STOPPED
      - hold inbound consumption until the first term snapshot exists
      - normalize inbound payloads and hand them to the ordering router
      - on shutdown: stop accepting, flush and drain lanes, stop workers

    Never owns evaluation or publishing logic.
    """

    def __init__(
        self,
        *,
        engine: EvaluationEngine,
        registry: TermRegistry,
        source: MessageSource,
        term_feed: TermFeedWorker | None = None,
        normalizer: Normalizer | None = None,
        stop_event: threading.Event | None = None,
    ):
        self.engine = engine
        self.registry = registry
        self.config = engine.config
        self.guard = LifecycleGuard()
        self._source = source
        self._term_feed = term_feed
        self._normalizer = normalizer or MarketDataNormalizer()
        self._stop_event = stop_event or threading.Event()
        self._router = OrderingRouter(self.config.router, self.engine.process)
        self._background: list[asyncio.Task[Any]] = []
        self._feed_task: asyncio.Task[None] | None = None
        self._alerted = False
        self._logger = get_logger(self.__class__.__name__)

    @property
    def stop_event(self) -> threading.Event:
        return self._stop_event

    @property
    def router(self) -> OrderingRouter:
        return self._router

    def request_stop(self) -> None:
        """Process-wide shutdown signal: stop intake, drain in-flight lanes."""
        if not self._stop_event.is_set():
            log_info(self._logger, "runtime.stop_requested", phase=self.guard.phase.value)
        self._stop_event.set()

    # -------------------------------------------------
    # Canonical runtime loop
    # -------------------------------------------------

    async def run(self) -> None:
        try:
            self.guard.enter(RuntimePhase.BOOTSTRAP)
            self._router.start()
            if self._term_feed is not None:
                self._feed_task = asyncio.create_task(self._term_feed.run(), name="term-feed")
            self._background.append(asyncio.create_task(self._ticker(), name="router-ticker"))

            if self.config.allow_empty_registry:
                self.registry.mark_ready()
            if not await self._wait_for_registry():
                # stop requested before any snapshot arrived; nothing was received
                self.guard.enter(RuntimePhase.DRAINING)
                await self._shutdown_components()
                self.guard.enter(RuntimePhase.STOPPED)
                return

            self.guard.enter(RuntimePhase.RUNNING)
            log_info(self._logger, "runtime.running", snapshot_version=self.registry.version, lanes=len(self._router.lanes))

            async for msg in self._iter_until_stopped():
                try:
                    msg.update = self._normalizer.normalize(msg.payload)
                except MalformedEventError as exc:
                    await self.engine.handle_malformed(msg, exc)
                    continue
                await self._router.submit(msg)

                crashed = self._router.crashed_lane()
                if crashed is not None:
                    raise FatalError(f"lane {crashed.lane_id} worker exited")

            self.guard.enter(RuntimePhase.DRAINING)
            drained = await self._router.drain(timeout=self.config.drain_timeout_s)
            log_info(self._logger, "runtime.drained", complete=drained, **self.engine.counters.to_dict())
            await self._shutdown_components()
            self.guard.enter(RuntimePhase.STOPPED)
        except asyncio.CancelledError:
            await self._shutdown_components()
            raise
        except Exception as exc:
            await self._handle_fatal(exc)

    async def _wait_for_registry(self) -> bool:
        """True once a snapshot exists; False if stop was requested first."""
        if self.registry.is_ready:
            return True
        log_warn(self._logger, "runtime.waiting_for_terms", timeout_s=self.config.registry_wait_timeout_s)
        loop = asyncio.get_running_loop()
        deadline = None
        if self.config.registry_wait_timeout_s is not None:
            deadline = loop.time() + self.config.registry_wait_timeout_s
        while not self.registry.is_ready:
            if self._stop_event.is_set():
                return False
            if self._feed_task is not None and self._feed_task.done():
                exc = self._feed_task.exception() if not self._feed_task.cancelled() else None
                raise FatalError(f"term feed ended before the first snapshot: {exc!r}") from exc
            if deadline is not None and loop.time() >= deadline:
                raise RegistryUnavailable(
                    f"no term snapshot after {self.config.registry_wait_timeout_s}s"
                )
            await asyncio.sleep(_STOP_POLL_S / 2)
        return True

    async def _iter_until_stopped(self) -> AsyncIterator[InboundMessage]:
        """Iterate the source, abandoning a pending receive once stop is set."""
        it = self._source.__aiter__()
        while not self._stop_event.is_set():
            nxt = asyncio.ensure_future(it.__anext__())
            while not nxt.done():
                await asyncio.wait({nxt}, timeout=_STOP_POLL_S)
                if self._stop_event.is_set() and not nxt.done():
                    nxt.cancel()
                    with contextlib.suppress(asyncio.CancelledError, StopAsyncIteration):
                        await nxt
                    return
            try:
                msg = nxt.result()
            except StopAsyncIteration:
                return
            yield msg

    async def _ticker(self) -> None:
        """Expire held resequencer entries, watch the term feed, emit heartbeats."""
        hold_ms = self.config.router.max_hold_ms
        interval = max(0.05, hold_ms / 2000.0) if hold_ms > 0 else 1.0
        interval = min(interval, self.config.heartbeat_interval_s)
        loop = asyncio.get_running_loop()
        next_beat = loop.time() + self.config.heartbeat_interval_s
        feed_reported = False
        while True:
            await asyncio.sleep(interval)
            await self._router.tick()
            if not feed_reported and self._feed_task is not None and self._feed_task.done():
                feed_reported = True
                if not self._feed_task.cancelled() and self._feed_task.exception() is not None:
                    log_error(
                        self._logger,
                        "runtime.term_feed_failed",
                        err=str(self._feed_task.exception()),
                        snapshot_version=self.registry.version,
                    )
            if loop.time() >= next_beat:
                next_beat = loop.time() + self.config.heartbeat_interval_s
                h = self.health()
                log_heartbeat(
                    self._logger,
                    "runtime.heartbeat",
                    phase=h.phase,
                    lanes=len(h.lanes),
                    max_lag_ms=h.max_lag_ms,
                    snapshot_version=h.snapshot_version,
                    failed=h.counters.get("failed", 0),
                    budget_exhausted=h.budget_exhausted,
                )

    # -------------------------------------------------
    # Administrative query
    # -------------------------------------------------

    def health(self) -> EngineHealth:
        pub = self.engine.publisher
        reseq = self._router.resequencer
        return EngineHealth(
            phase=self.guard.phase.value,
            registry_ready=self.registry.is_ready,
            snapshot_version=self.registry.version,
            lanes=tuple(self._router.health()),
            counters=self.engine.counters.to_dict(),
            publisher={
                "sent": pub.sent,
                "retries": pub.retries,
                "exhausted": pub.exhausted,
                "fatal": pub.fatal,
                "short_circuited": pub.short_circuited,
            },
            resequencer={
                "buffered": reseq.buffered(),
                "out_of_order": reseq.out_of_order,
                "gaps_skipped": reseq.gaps_skipped,
            },
            publish_latency_ms=latency_percentiles(self.engine.publish_latencies_ms),
        )

    # -------------------------------------------------
    # Shutdown
    # -------------------------------------------------

    async def _shutdown_components(self) -> None:
        self._stop_event.set()
        tasks = list(self._background)
        if self._feed_task is not None:
            tasks.append(self._feed_task)
        for t in tasks:
            t.cancel()
        for t in tasks:
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await t
        self._background.clear()
        await self._router.stop()
        for obj in (self._source, self._term_feed):
            fn = getattr(obj, "close", None)
            if callable(fn):
                try:
                    fn()
                except Exception as exc:
                    log_warn(self._logger, "runtime.close_error", component=type(obj).__name__, err=str(exc))

    def _alert_once(self, exc: BaseException) -> None:
        if self._alerted:
            return
        self._alerted = True
        stack = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
        log_error(
            self._logger,
            "runtime.fatal_error",
            err_type=type(exc).__name__,
            err=str(exc),
            stack=stack,
        )

    async def _handle_fatal(self, exc: BaseException) -> None:
        await self._shutdown_components()
        self._alert_once(exc)
        self.guard.phase = RuntimePhase.STOPPED
        if isinstance(exc, FatalError):
            raise exc
        raise FatalError(str(exc)) from exc
