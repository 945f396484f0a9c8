from __future__ import annotations

import asyncio
import time
import zlib

from ingestion.contracts.message import InboundMessage
from term_engine.exceptions.core import FatalError
from term_engine.routing.lane import Handler, Lane, LaneHealth
from term_engine.routing.resequencer import Resequencer
from term_engine.utils.config import RouterConfig
from term_engine.utils.logger import get_logger, log_info, log_warn


def lane_for(key: str, lanes: int) -> int:
    """Static partition: the same key maps to the same lane for the process lifetime."""
    if lanes < 1:
        raise ValueError("lanes must be >= 1")
    return zlib.crc32(key.encode("utf-8")) % lanes


class OrderingRouter:
    """
    Assigns inbound messages to sequential lanes by partition key.

    Guarantees:
        - same key -> same lane, handled one at a time in release order
        - release order per key is non-decreasing seq (resequenced within a
          bounded window); late events are released flagged out_of_order
        - different keys run concurrently across lanes

    Release and dispatch happen under one lock so a timer-driven expiry cannot
    interleave with an in-progress submit for the same key.
    """

    def __init__(self, config: RouterConfig, handler: Handler):
        self._config = config
        self._handler = handler
        self._lanes: list[Lane] = []
        self._reseq = Resequencer(config.resequence_window)
        self._lock = asyncio.Lock()
        self._logger = get_logger(__name__)
        self.submitted = 0

    @property
    def lanes(self) -> list[Lane]:
        return list(self._lanes)

    @property
    def resequencer(self) -> Resequencer:
        return self._reseq

    def start(self) -> None:
        if self._lanes:
            return
        n = int(self._config.lanes)
        try:
            if n < 1:
                raise ValueError(f"lane count must be >= 1, got {n}")
            lanes = [Lane(i, self._handler, maxsize=self._config.queue_maxsize) for i in range(n)]
            for lane in lanes:
                lane.start()
        except Exception as exc:
            raise FatalError(f"cannot allocate {n} lanes: {exc}") from exc
        self._lanes = lanes
        log_info(self._logger, "router.started", lanes=n, window=self._config.resequence_window)

    def lane_index(self, key: str) -> int:
        return lane_for(key, len(self._lanes) or int(self._config.lanes))

    async def submit(self, msg: InboundMessage) -> None:
        if not self._lanes:
            raise RuntimeError("router not started")
        async with self._lock:
            self.submitted += 1
            released = self._reseq.accept(msg, now_ms=time.monotonic() * 1000.0)
            await self._dispatch(released)

    async def tick(self) -> int:
        """Release buffered events held longer than max_hold_ms."""
        async with self._lock:
            released = self._reseq.expire(
                now_ms=time.monotonic() * 1000.0,
                max_hold_ms=self._config.max_hold_ms,
            )
            await self._dispatch(released)
        return len(released)

    async def _dispatch(self, msgs: list[InboundMessage]) -> None:
        for m in msgs:
            assert m.update is not None
            await self._lanes[self.lane_index(m.update.partition_key)].put(m)

    async def drain(self, timeout: float | None = None) -> bool:
        """Flush resequencer buffers and wait until every lane queue is empty."""
        async with self._lock:
            await self._dispatch(self._reseq.flush())
        try:
            await asyncio.wait_for(
                asyncio.gather(*(lane.join() for lane in self._lanes)),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            log_warn(
                self._logger,
                "router.drain_timeout",
                timeout_s=timeout,
                pending=sum(lane.depth() for lane in self._lanes),
            )
            return False
        return True

    async def stop(self) -> None:
        for lane in self._lanes:
            await lane.stop()
        log_info(self._logger, "router.stopped", submitted=self.submitted)

    def crashed_lane(self) -> Lane | None:
        """A lane whose worker task ended on its own (never expected)."""
        for lane in self._lanes:
            if not lane.running:
                return lane
        return None

    def health(self) -> list[LaneHealth]:
        return [lane.health() for lane in self._lanes]
