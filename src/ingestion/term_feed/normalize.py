from __future__ import annotations

import datetime as _dt
from typing import Any, Mapping

import pandas as pd

from term_engine.contracts.term import Scope, ScopeKind, Severity, TermChangeEvent, TermStatus
from term_engine.exceptions.core import MalformedEventError
from term_engine.rules.variants import parse_rule


def _coerce_ms(x: Any) -> int:
    """Coerce a timestamp-like value to epoch milliseconds int."""
    if x is None:
        raise TypeError("timestamp is None")
    if isinstance(x, bool):
        raise TypeError("timestamp is bool")
    if isinstance(x, (int, float)):
        v = float(x)
        # heuristic: seconds ~ 1e9, ms ~ 1e12
        if v < 10_000_000_000:
            v *= 1000.0
        return int(round(v))
    if isinstance(x, str):
        try:
            return _coerce_ms(float(x))
        except ValueError:
            pass
        dt = pd.to_datetime(x, utc=True, errors="coerce")
        if pd.isna(dt):
            raise ValueError(f"Cannot parse timestamp: {x!r}")
        return int(dt.value // 1_000_000)
    if isinstance(x, (_dt.datetime, pd.Timestamp)):
        dt = pd.to_datetime(x, utc=True, errors="coerce")
        if pd.isna(dt):
            raise ValueError(f"Cannot parse timestamp: {x!r}")
        return int(dt.value // 1_000_000)
    raise TypeError(f"Unsupported timestamp type: {type(x)!r}")


def parse_scope(raw: Any) -> Scope:
    """Scope wire forms:

        "USD-SWAP"                                 -> instrument USD-SWAP
        "account:ACC-1"                            -> account ACC-1
        ["USD-SWAP", "EUR-SWAP"]                   -> instruments
        {"kind": "desk", "values": ["RATES"]}      -> desk RATES
        "*"                                        -> every instrument
    """
    if isinstance(raw, str):
        head, sep, tail = raw.partition(":")
        if sep and head in {k.value for k in ScopeKind}:
            return Scope(kind=ScopeKind(head), values=frozenset([tail]))
        return Scope.instruments(raw)
    if isinstance(raw, (list, tuple, set, frozenset)):
        values = [str(v) for v in raw]
        if not values:
            raise ValueError("scope list is empty")
        return Scope.instruments(*values)
    if isinstance(raw, Mapping):
        kind = ScopeKind(str(raw.get("kind", ScopeKind.INSTRUMENT.value)))
        values = raw.get("values")
        if values is None and raw.get("value") is not None:
            values = [raw["value"]]
        if not values:
            raise ValueError("scope requires 'values'")
        if isinstance(values, str):
            values = [values]
        return Scope(kind=kind, values=frozenset(str(v) for v in values))
    raise ValueError(f"unsupported scope: {raw!r}")


def _get(raw: Mapping[str, Any], *keys: str) -> Any:
    for k in keys:
        if k in raw:
            return raw[k]
    return None


class TermChangeNormalizer:
    """Normalize term-service change payloads into `TermChangeEvent`.

    Accepts camelCase (`termId`, `effectiveFrom`) and snake_case keys.
    """

    def normalize(self, raw: Any) -> TermChangeEvent:
        if not isinstance(raw, Mapping):
            raise MalformedEventError(f"term change must be a mapping, got {type(raw).__name__}", raw=raw)

        term_id = _get(raw, "term_id", "termId", "id")
        if not isinstance(term_id, str) or not term_id:
            raise MalformedEventError("missing term id", raw=raw, field="term_id")

        try:
            version = int(_get(raw, "version"))
            if version < 1:
                raise ValueError(f"version must be >= 1, got {version}")
            status = TermStatus(str(_get(raw, "status")).lower())
            scope = parse_scope(_get(raw, "scope"))
            rule = parse_rule(_get(raw, "rule") or {})
            eff_any = _get(raw, "effective_from", "effectiveFrom")
            effective_from = _coerce_ms(eff_any) if eff_any is not None else 0
            sev_any = _get(raw, "severity")
            severity = Severity(str(sev_any).lower()) if sev_any is not None else Severity.HIGH
        except (TypeError, ValueError) as exc:
            raise MalformedEventError(f"bad term change for {term_id!r}: {exc}", raw=raw) from exc

        return TermChangeEvent(
            term_id=term_id,
            version=version,
            status=status,
            scope=scope,
            rule=rule,
            effective_from=effective_from,
            severity=severity,
        )

    __call__ = normalize
