from __future__ import annotations

import asyncio
import time
from collections import deque
from dataclasses import dataclass
from typing import Awaitable, Callable

from ingestion.contracts.message import InboundMessage
from term_engine.utils.logger import bind_context, get_logger, log_exception

Handler = Callable[[InboundMessage], Awaitable[object]]


@dataclass(frozen=True)
class LaneHealth:
    lane_id: int
    queue_depth: int
    lag_ms: float
    processed: int
    crashed: int
    last_seq: int | None
    last_instrument: str | None
    last_latency_ms: float


class Lane:
    """
    One sequential worker over a bounded queue.

    Semantics:
        - exactly one message of this lane is being handled at any instant
        - messages are handled in queue order
        - `put` suspends while the queue is full (backpressure point)
        - an exception escaping the handler is logged, the message rejected
          and the worker continues with the next message
    """

    def __init__(self, lane_id: int, handler: Handler, *, maxsize: int):
        self.lane_id = int(lane_id)
        self._handler = handler
        self._queue: asyncio.Queue[InboundMessage] = asyncio.Queue(maxsize=maxsize)
        self._enqueued_at: deque[float] = deque()
        self._task: asyncio.Task[None] | None = None
        self._logger = get_logger(__name__)
        self.processed = 0
        self.crashed = 0
        self.last_seq: int | None = None
        self.last_instrument: str | None = None
        self.last_latency_ms = 0.0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> asyncio.Task[None]:
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name=f"lane-{self.lane_id}")
        return self._task

    async def put(self, msg: InboundMessage) -> None:
        await self._queue.put(msg)
        self._enqueued_at.append(time.monotonic())

    def depth(self) -> int:
        return self._queue.qsize()

    async def join(self) -> None:
        await self._queue.join()

    async def _run(self) -> None:
        while True:
            msg = await self._queue.get()
            enqueued = self._enqueued_at.popleft() if self._enqueued_at else time.monotonic()
            update = msg.update
            try:
                with bind_context(
                    lane=self.lane_id,
                    instrument=None if update is None else update.instrument,
                    seq=None if update is None else update.seq,
                ):
                    await self._handler(msg)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self.crashed += 1
                log_exception(
                    self._logger,
                    "lane.handler_error",
                    lane=self.lane_id,
                    instrument=None if update is None else update.instrument,
                    seq=None if update is None else update.seq,
                    err_type=type(exc).__name__,
                    err=str(exc),
                )
                try:
                    await msg.reject(f"handler error: {type(exc).__name__}")
                except Exception as reject_exc:
                    log_exception(self._logger, "lane.reject_error", lane=self.lane_id, err=str(reject_exc))
            finally:
                self.processed += 1
                self.last_latency_ms = (time.monotonic() - enqueued) * 1000.0
                if msg.update is not None:
                    self.last_seq = msg.update.seq
                    self.last_instrument = msg.update.instrument
                self._queue.task_done()

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    def health(self) -> LaneHealth:
        lag_ms = (time.monotonic() - self._enqueued_at[0]) * 1000.0 if self._enqueued_at else 0.0
        return LaneHealth(
            lane_id=self.lane_id,
            queue_depth=self.depth(),
            lag_ms=round(lag_ms, 3),
            processed=self.processed,
            crashed=self.crashed,
            last_seq=self.last_seq,
            last_instrument=self.last_instrument,
            last_latency_ms=round(self.last_latency_ms, 3),
        )
