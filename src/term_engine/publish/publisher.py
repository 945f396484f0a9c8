from __future__ import annotations

import asyncio
import time
from collections import OrderedDict
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Protocol

from term_engine.contracts.decision import ViolationAlert
from term_engine.exceptions.core import FatalPublishError, TransientIOError
from term_engine.utils.config import PublisherConfig
from term_engine.utils.logger import get_logger, log_debug, log_delivery, log_warn


class AlertSink(Protocol):
    """Outbound broker boundary.

    `send` must tag the outbound message with `alert.idempotency_key`.
    Raise TransientIOError for retryable failures and FatalPublishError when
    the broker refuses the alert permanently.
    """

    async def send(self, alert: ViolationAlert) -> None:
        ...


class PublishStatus(str, Enum):
    SUCCESS = "success"
    RETRYABLE = "retryable"
    FATAL = "fatal"


@dataclass(frozen=True)
class PublishResult:
    status: PublishStatus
    dedup_key: str
    attempts: int
    error: str | None = None
    latency_ms: float = 0.0
    cached: bool = False

    @property
    def ok(self) -> bool:
        return self.status is PublishStatus.SUCCESS


def backoff_delay_ms(attempt: int, base_ms: int, max_ms: int) -> int:
    """Delay before retry number `attempt` (1-based): base * 2**(attempt-1), capped."""
    if attempt < 1 or base_ms <= 0:
        return 0
    return int(min(base_ms * (2 ** (attempt - 1)), max_ms))


class AlertPublisher:
    """
    Delivers alerts to an `AlertSink` with bounded retries.

    Per call:
        - every attempt is bounded by `attempt_timeout_ms`; a timeout counts
          against the budget like a transient failure
        - transient failures back off exponentially up to `max_backoff_ms`
        - budget exhaustion returns RETRYABLE; the engine decides what next
        - FatalPublishError or any unexpected exception returns FATAL

    Keys confirmed by the sink are remembered (bounded LRU) and not sent again.
    """

    def __init__(
        self,
        sink: AlertSink,
        config: PublisherConfig | None = None,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._sink = sink
        self._config = config or PublisherConfig()
        self._sleep = sleep
        self._confirmed: OrderedDict[str, None] = OrderedDict()
        self._logger = get_logger(__name__)
        self.sent = 0
        self.retries = 0
        self.exhausted = 0
        self.fatal = 0
        self.short_circuited = 0

    @property
    def config(self) -> PublisherConfig:
        return self._config

    def is_confirmed(self, dedup_key: str) -> bool:
        return dedup_key in self._confirmed

    def _remember(self, dedup_key: str) -> None:
        cap = self._config.confirmed_cache_size
        if cap <= 0:
            return
        self._confirmed[dedup_key] = None
        self._confirmed.move_to_end(dedup_key)
        while len(self._confirmed) > cap:
            self._confirmed.popitem(last=False)

    async def publish(self, alert: ViolationAlert) -> PublishResult:
        key = alert.idempotency_key
        if key in self._confirmed:
            self._confirmed.move_to_end(key)
            self.short_circuited += 1
            return PublishResult(PublishStatus.SUCCESS, key, attempts=0, cached=True)

        cfg = self._config
        timeout_s = cfg.attempt_timeout_ms / 1000.0
        started = time.perf_counter()
        last_error: str | None = None
        current = alert

        for attempt in range(1, cfg.max_attempts + 1):
            current = current.next_attempt()
            try:
                await asyncio.wait_for(self._sink.send(current), timeout=timeout_s)
            except asyncio.TimeoutError:
                last_error = f"timeout after {cfg.attempt_timeout_ms}ms"
            except TransientIOError as exc:
                last_error = f"{type(exc).__name__}: {exc}"
            except asyncio.CancelledError:
                raise
            except FatalPublishError as exc:
                self.fatal += 1
                log_delivery(
                    self._logger,
                    "publish.fatal",
                    dedup_key=key,
                    attempts=attempt,
                    err_type=type(exc).__name__,
                    err=str(exc),
                )
                return PublishResult(PublishStatus.FATAL, key, attempts=attempt, error=str(exc))
            except Exception as exc:
                self.fatal += 1
                log_delivery(
                    self._logger,
                    "publish.sink_defect",
                    dedup_key=key,
                    attempts=attempt,
                    err_type=type(exc).__name__,
                    err=str(exc),
                )
                return PublishResult(PublishStatus.FATAL, key, attempts=attempt, error=f"{type(exc).__name__}: {exc}")
            else:
                self.sent += 1
                self._remember(key)
                latency_ms = (time.perf_counter() - started) * 1000.0
                log_debug(self._logger, "publish.sent", dedup_key=key, attempts=attempt, latency_ms=round(latency_ms, 3))
                return PublishResult(PublishStatus.SUCCESS, key, attempts=attempt, latency_ms=latency_ms)

            if attempt < cfg.max_attempts:
                self.retries += 1
                delay_ms = backoff_delay_ms(attempt, cfg.base_backoff_ms, cfg.max_backoff_ms)
                log_warn(
                    self._logger,
                    "publish.retry",
                    dedup_key=key,
                    attempt=attempt,
                    backoff_ms=delay_ms,
                    err=last_error,
                )
                if delay_ms > 0:
                    await self._sleep(delay_ms / 1000.0)

        self.exhausted += 1
        log_warn(
            self._logger,
            "publish.attempts_exhausted",
            dedup_key=key,
            attempts=cfg.max_attempts,
            err=last_error,
        )
        return PublishResult(PublishStatus.RETRYABLE, key, attempts=cfg.max_attempts, error=last_error)
