from __future__ import annotations

import time
from collections import deque
from dataclasses import asdict, dataclass
from typing import Any, Callable, Protocol

from ingestion.contracts.message import InboundMessage
from term_engine.contracts.decision import ViolationAlert
from term_engine.engine.state import EventRecord, EventState
from term_engine.exceptions.core import MalformedEventError, PublishBudgetExhausted, RegistryUnavailable
from term_engine.publish.publisher import AlertPublisher, PublishStatus
from term_engine.registry.registry import TermRegistry
from term_engine.rules.evaluator import evaluate
from term_engine.utils.config import EngineConfig
from term_engine.utils.logger import (
    get_logger,
    log_data_integrity,
    log_decision,
    log_delivery,
    log_error,
    log_exception,
    log_warn,
)


class DeadLetterSink(Protocol):
    async def put(self, entry: dict[str, Any]) -> None:
        ...


@dataclass
class EngineCounters:
    received: int = 0
    acknowledged: int = 0
    failed: int = 0
    skipped: int = 0
    malformed: int = 0
    out_of_order: int = 0
    decisions: int = 0
    published: int = 0
    defects: int = 0
    budget_exhausted: int = 0
    dead_lettered: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


def _now_ms() -> int:
    return int(time.time() * 1000)


class EvaluationEngine:
    """
    Drives one event through resolve -> evaluate -> publish -> acknowledge.

    The inbound message is acknowledged only after every decision for it is
    published. Publishing retries only the still-unpublished decisions, for at
    most `publish_rounds` rounds; anything left after that (or refused as
    fatal) fails the event: it is dead-lettered, rejected at the source and
    counted, never acknowledged and never silently dropped.

    All failures stay inside the event being processed.
    """

    def __init__(
        self,
        *,
        registry: TermRegistry,
        publisher: AlertPublisher,
        config: EngineConfig | None = None,
        dead_letters: DeadLetterSink | None = None,
        clock: Callable[[], int] = _now_ms,
        history_size: int = 1_000,
    ) -> None:
        self._registry = registry
        self._publisher = publisher
        self._config = config or EngineConfig()
        self._dead_letters = dead_letters
        self._clock = clock
        self._logger = get_logger(__name__)
        self.counters = EngineCounters()
        self.recent: deque[EventRecord] = deque(maxlen=history_size)
        self.publish_latencies_ms: deque[float] = deque(maxlen=4_096)

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def publisher(self) -> AlertPublisher:
        return self._publisher

    # ------------------------------------------------------------------
    # Main path
    # ------------------------------------------------------------------

    async def process(self, msg: InboundMessage) -> EventRecord:
        update = msg.update
        if update is None:
            raise ValueError("process() requires a normalized message")

        record = EventRecord(instrument=update.instrument, seq=update.seq, out_of_order=msg.out_of_order)
        self.counters.received += 1
        if msg.out_of_order:
            self.counters.out_of_order += 1

        # -------- resolve --------
        try:
            snap = self._registry.snapshot()
        except RegistryUnavailable as exc:
            # never evaluate against an empty term set; leave it for redelivery
            record.error = str(exc)
            record.advance(EventState.FAILED)
            self.counters.failed += 1
            log_warn(
                self._logger,
                "engine.registry_unavailable",
                instrument=update.instrument,
                seq=update.seq,
                err=str(exc),
            )
            await msg.reject("registry_unavailable")
            self.recent.append(record)
            return record
        terms = snap.terms_for(update)
        record.snapshot_version = snap.version
        record.advance(EventState.RESOLVED)

        # -------- evaluate --------
        result = evaluate(update, terms, decided_ts=self._clock(), out_of_order=msg.out_of_order)
        for defect in result.defects:
            self.counters.defects += 1
            record.defects.append(defect.term_id)
            log_error(
                self._logger,
                "engine.rule_defect",
                term_id=defect.term_id,
                instrument=update.instrument,
                seq=update.seq,
                err_type=type(defect.cause).__name__,
                err=str(defect.cause),
            )
        record.decisions = result.decisions
        record.skipped_terms = result.skipped
        record.skipped = result.all_skipped
        if record.skipped:
            self.counters.skipped += 1
            log_data_integrity(
                self._logger,
                "engine.event_skipped",
                instrument=update.instrument,
                seq=update.seq,
                reason="missing or non-numeric fields for every applicable term",
                terms=list(result.skipped),
            )
        record.advance(EventState.EVALUATED)

        self.counters.decisions += len(result.decisions)
        for d in result.decisions:
            log_decision(
                self._logger,
                "engine.violation",
                term_id=d.term_id,
                term_version=d.term_version,
                instrument=d.instrument,
                seq=d.event_seq,
                dedup_key=d.dedup_key,
                observed=d.observed,
                limit=d.limit,
                severity=d.severity,
                out_of_order=d.out_of_order,
            )

        # -------- publish --------
        pending: dict[str, ViolationAlert] = {d.dedup_key: ViolationAlert(decision=d) for d in result.decisions}
        refused: list[str] = []
        for round_no in range(1, self._config.publish_rounds + 1):
            for key, alert in list(pending.items()):
                res = await self._publisher.publish(alert)
                if res.ok:
                    del pending[key]
                    record.published.append(key)
                    self.counters.published += 1
                    if not res.cached:
                        self.publish_latencies_ms.append(res.latency_ms)
                elif res.status is PublishStatus.FATAL:
                    del pending[key]
                    refused.append(key)
            if not pending:
                break
            log_warn(
                self._logger,
                "engine.publish_round_incomplete",
                instrument=update.instrument,
                seq=update.seq,
                round=round_no,
                unpublished=len(pending),
            )

        if pending or refused:
            record.unpublished = list(pending) + refused
            await self._fail(msg, record, PublishBudgetExhausted(update.instrument, update.seq, record.unpublished))
            return record
        record.advance(EventState.PUBLISHED)

        # -------- acknowledge --------
        await msg.ack()
        record.advance(EventState.ACKNOWLEDGED)
        self.counters.acknowledged += 1
        self.recent.append(record)
        return record

    async def _fail(self, msg: InboundMessage, record: EventRecord, exc: PublishBudgetExhausted) -> None:
        record.error = str(exc)
        record.advance(EventState.FAILED)
        self.counters.failed += 1
        self.counters.budget_exhausted += 1
        log_delivery(
            self._logger,
            "engine.event_failed",
            instrument=exc.instrument,
            seq=exc.seq,
            unpublished=exc.pending,
            published=record.published,
            err=str(exc),
        )
        await self._dead_letter(
            msg,
            reason="publish_budget_exhausted",
            error=str(exc),
            decisions=[d.to_dict() for d in record.decisions if d.dedup_key in set(exc.pending)],
        )
        await msg.reject("publish_budget_exhausted")
        self.recent.append(record)

    # ------------------------------------------------------------------
    # Malformed payloads
    # ------------------------------------------------------------------

    async def handle_malformed(self, msg: InboundMessage, exc: MalformedEventError) -> EventRecord:
        """Skip an unparseable payload: ack it, or dead-letter and reject it."""
        self.counters.malformed += 1
        record = EventRecord(instrument=None, seq=None, state=EventState.SKIPPED, history=[EventState.SKIPPED])
        record.error = str(exc)
        log_data_integrity(
            self._logger,
            "engine.malformed_event",
            err=str(exc),
            field=exc.field,
            policy="skip_and_ack" if self._config.skip_malformed_and_ack else "dead_letter",
        )
        if self._config.skip_malformed_and_ack:
            await msg.ack()
        else:
            await self._dead_letter(msg, reason="malformed", error=str(exc))
            await msg.reject("malformed")
        self.recent.append(record)
        return record

    async def _dead_letter(self, msg: InboundMessage, *, reason: str, error: str, **extra: Any) -> None:
        if self._dead_letters is None:
            return
        entry: dict[str, Any] = {
            "reason": reason,
            "error": error,
            "payload": msg.payload,
            "dead_lettered_ts": self._clock(),
        }
        if msg.update is not None:
            entry["instrument"] = msg.update.instrument
            entry["seq"] = msg.update.seq
        entry.update(extra)
        try:
            await self._dead_letters.put(entry)
            self.counters.dead_lettered += 1
        except Exception as exc:
            log_exception(self._logger, "engine.dead_letter_error", reason=reason, err=str(exc))
