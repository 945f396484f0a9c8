from __future__ import annotations

import hashlib
import json
import time
from dataclasses import dataclass, replace
from typing import Any

from term_engine.contracts.term import Severity


def make_dedup_key(term_id: str, term_version: int, instrument: str, seq: int) -> str:
    """Deterministic key for one (term version, event) pair.

    Identical inputs always give the same key, across processes and restarts,
    so downstream consumers can collapse redelivered alerts.
    """
    material = json.dumps([term_id, int(term_version), instrument, int(seq)], separators=(",", ":"))
    return hashlib.sha256(material.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class ViolationDecision:
    term_id: str
    term_version: int
    instrument: str
    event_seq: int
    event_ts: int
    field: str
    observed: Any
    limit: str
    severity: Severity
    decided_ts: int
    out_of_order: bool = False
    account: str | None = None
    desk: str | None = None

    @property
    def dedup_key(self) -> str:
        return make_dedup_key(self.term_id, self.term_version, self.instrument, self.event_seq)

    def to_dict(self) -> dict[str, Any]:
        return {
            "dedup_key": self.dedup_key,
            "term_id": self.term_id,
            "term_version": int(self.term_version),
            "instrument": self.instrument,
            "account": self.account,
            "desk": self.desk,
            "event_seq": int(self.event_seq),
            "event_ts": int(self.event_ts),
            "field": self.field,
            "observed": self.observed if isinstance(self.observed, (int, float, str, bool)) or self.observed is None else str(self.observed),
            "limit": self.limit,
            "severity": self.severity.value,
            "decided_ts": int(self.decided_ts),
            "out_of_order": bool(self.out_of_order),
        }


@dataclass(frozen=True)
class ViolationAlert:
    """Wire form of a decision plus delivery metadata."""

    decision: ViolationDecision
    attempt: int = 0
    published_ts: int | None = None

    @property
    def idempotency_key(self) -> str:
        return self.decision.dedup_key

    def next_attempt(self) -> "ViolationAlert":
        return replace(self, attempt=self.attempt + 1, published_ts=int(time.time() * 1000))

    def to_wire(self) -> dict[str, Any]:
        body = self.decision.to_dict()
        body["idempotency_key"] = self.idempotency_key
        body["attempt"] = int(self.attempt)
        body["published_ts"] = self.published_ts
        return body
