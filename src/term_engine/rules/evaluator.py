from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Iterable

from term_engine.contracts.decision import ViolationDecision
from term_engine.contracts.market import MarketDataUpdate
from term_engine.contracts.term import Term
from term_engine.exceptions.core import RuleEvaluationDefect
from term_engine.rules.variants import check_rule


@dataclass(frozen=True)
class EvaluationResult:
    decisions: tuple[ViolationDecision, ...] = ()
    # terms that could not be evaluated (missing/non-numeric field)
    skipped: tuple[str, ...] = ()
    defects: tuple[RuleEvaluationDefect, ...] = field(default=(), compare=False)
    evaluated: int = 0

    @property
    def all_skipped(self) -> bool:
        return bool(self.skipped) and self.evaluated == 0 and not self.defects


def evaluate(
    update: MarketDataUpdate,
    terms: Iterable[Term],
    *,
    decided_ts: int | None = None,
    out_of_order: bool = False,
) -> EvaluationResult:
    """Evaluate every term against one update.

    Input terms are expected to be pre-filtered (active, in scope, effective);
    inactive or not-yet-effective terms are still ignored here. Returns one
    decision per firing term in term-id order. A term that raises is recorded
    as a defect and does not stop the remaining terms.
    """
    ts = int(time.time() * 1000) if decided_ts is None else int(decided_ts)

    decisions: list[ViolationDecision] = []
    skipped: list[str] = []
    defects: list[RuleEvaluationDefect] = []
    evaluated = 0

    for term in sorted(terms, key=lambda t: t.term_id):
        if not term.applies_at(update.source_ts):
            continue
        try:
            outcome = check_rule(term.rule, update.fields)
        except Exception as exc:
            defects.append(RuleEvaluationDefect(term.term_id, update.seq, exc))
            continue
        if outcome is None:
            skipped.append(term.term_id)
            continue
        evaluated += 1
        if not outcome.fired:
            continue
        decisions.append(
            ViolationDecision(
                term_id=term.term_id,
                term_version=term.version,
                instrument=update.instrument,
                event_seq=update.seq,
                event_ts=update.source_ts,
                field=outcome.field,
                observed=outcome.observed,
                limit=outcome.limit,
                severity=term.severity,
                decided_ts=ts,
                out_of_order=out_of_order,
                account=update.account,
                desk=update.desk,
            )
        )

    return EvaluationResult(
        decisions=tuple(decisions),
        skipped=tuple(skipped),
        defects=tuple(defects),
        evaluated=evaluated,
    )
