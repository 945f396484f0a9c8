from __future__ import annotations

import asyncio
import logging
import threading
from typing import Any

from ingestion.term_feed.normalize import TermChangeNormalizer
from term_engine.contracts.term import TermChangeEvent
from term_engine.exceptions.core import MalformedEventError, TransientIOError
from term_engine.publish.publisher import backoff_delay_ms
from term_engine.registry.registry import TermRegistry
from term_engine.utils.config import TermFeedConfig
from term_engine.utils.logger import get_logger, log_data_integrity, log_info, log_warn

_DONE = object()
_STOP_POLL_S = 0.1


class TermFeedWorker:
    """Term-change feed worker.

    Responsibility:
        raw change -> normalize -> registry.apply_change (in arrival order)

    Non-responsibilities:
        - version arbitration (the registry rejects stale versions)
        - IO policy (delegated to `source`)

    Source compatibility:
        - optional `bootstrap()` returning the initial term set; applied as one
          batch so the first snapshot is complete
        - async sources: `__aiter__`; sync sources: `__iter__` (pulled in a
          worker thread so blocking polls never stall the event loop)
    """

    def __init__(
        self,
        *,
        registry: TermRegistry,
        source: Any,
        normalizer: TermChangeNormalizer | None = None,
        config: TermFeedConfig | None = None,
        stop_event: threading.Event | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._registry = registry
        self._source = source
        self._normalizer = normalizer or TermChangeNormalizer()
        self._config = config or TermFeedConfig()
        self._stop_event = stop_event
        self._logger = logger or get_logger(f"ingestion.term_feed.{self.__class__.__name__}")
        self.applied = 0
        self.malformed = 0

    def _normalize(self, raw: Any) -> TermChangeEvent | None:
        try:
            return self._normalizer.normalize(raw)
        except MalformedEventError as exc:
            self.malformed += 1
            log_data_integrity(
                self._logger,
                "term_feed.malformed_change",
                err=str(exc),
                field=exc.field,
            )
            return None

    def _stopped(self) -> bool:
        return self._stop_event is not None and self._stop_event.is_set()

    async def _wait_or_stop(self, seconds: float) -> bool:
        """Sleep up to `seconds`; True if stop was requested meanwhile."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + max(0.0, seconds)
        while True:
            if self._stopped():
                return True
            remaining = deadline - loop.time()
            if remaining <= 0:
                return False
            await asyncio.sleep(min(_STOP_POLL_S, remaining))

    async def bootstrap(self) -> bool:
        """Load the initial term set; False if stop was requested first.

        TransientIOError from the source is retried with exponential backoff
        until it succeeds. The caller owns the overall deadline.
        """
        boot = getattr(self._source, "bootstrap", None)
        if not callable(boot):
            return True
        attempt = 0
        while True:
            if self._stopped():
                return False
            try:
                rows = await asyncio.to_thread(boot)
                break
            except TransientIOError as exc:
                attempt += 1
                delay_ms = backoff_delay_ms(attempt, self._config.retry_base_ms, self._config.retry_max_ms)
                log_warn(
                    self._logger,
                    "term_feed.bootstrap_retry",
                    attempt=attempt,
                    backoff_ms=delay_ms,
                    err=str(exc),
                )
                if await self._wait_or_stop(delay_ms / 1000.0):
                    return False
        changes = [c for c in (self._normalize(r) for r in rows) if c is not None]
        snap = self._registry.apply_changes(changes)
        self.applied += len(changes)
        log_info(
            self._logger,
            "term_feed.bootstrapped",
            terms=len(changes),
            attempts=attempt + 1,
            snapshot_version=snap.version,
        )
        return True

    def _apply(self, raw: Any) -> None:
        change = self._normalize(raw)
        if change is None:
            return
        self._registry.apply_change(change)
        self.applied += 1

    def close(self) -> None:
        fn = getattr(self._source, "close", None)
        if callable(fn):
            fn()

    async def run(self) -> None:
        log_info(
            self._logger,
            "term_feed.worker_start",
            source_type=type(self._source).__name__,
        )
        stop_reason = "exit"
        try:
            if not await self.bootstrap():
                stop_reason = "stopped"
                return

            if hasattr(self._source, "__aiter__"):
                async for raw in self._source:
                    if self._stopped():
                        stop_reason = "stopped"
                        return
                    self._apply(raw)
                    await asyncio.sleep(0)
                return

            if hasattr(self._source, "__iter__"):
                it = iter(self._source)
                while not self._stopped():
                    raw = await asyncio.to_thread(next, it, _DONE)
                    if raw is _DONE:
                        return
                    self._apply(raw)
                stop_reason = "stopped"
                return

            raise TypeError(
                "TermFeedWorker source must be an async-iterable or iterable; "
                f"got {type(self._source)!r}"
            )
        except asyncio.CancelledError:
            stop_reason = "cancelled"
            raise
        except Exception as exc:
            stop_reason = "error"
            log_warn(
                self._logger,
                "term_feed.source_error",
                err_type=type(exc).__name__,
                err=str(exc),
            )
            raise
        finally:
            log_info(
                self._logger,
                "term_feed.worker_stop",
                reason=stop_reason,
                applied=self.applied,
                malformed=self.malformed,
            )
