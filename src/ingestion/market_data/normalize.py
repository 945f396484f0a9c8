from __future__ import annotations

import time
from typing import Any, Mapping

from term_engine.contracts.market import MarketDataUpdate
from term_engine.exceptions.core import MalformedEventError


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _now_ms() -> int:
    return int(time.time() * 1000.0)


def _to_int_ms(x: Any) -> int:
    """Coerce seconds-or-ms epoch into epoch-ms int."""
    if x is None:
        raise TypeError("timestamp is None")
    if isinstance(x, bool):
        raise TypeError("timestamp is bool")
    if isinstance(x, int):
        # heuristic: seconds ~ 1e9, ms ~ 1e12
        return x * 1000 if x < 10_000_000_000 else x
    if isinstance(x, float):
        v = x * 1000.0 if x < 10_000_000_000 else x
        return int(round(v))
    if isinstance(x, str):
        return _to_int_ms(float(x))
    return _to_int_ms(int(x))


def _to_seq(x: Any) -> int:
    if x is None or isinstance(x, bool):
        raise TypeError(f"sequence must be an int, got {x!r}")
    if isinstance(x, float):
        if not x.is_integer():
            raise ValueError(f"sequence must be integral, got {x!r}")
        return int(x)
    return int(x)


# Accepted aliases -> canonical keys
_INSTRUMENT_KEYS = ("instrument", "instrument_key", "symbol")
_SEQ_KEYS = ("seq", "sequence", "sequence_number")
_TS_KEYS = ("source_ts", "timestamp", "ts", "data_ts")
_RESERVED = set(_INSTRUMENT_KEYS) | set(_SEQ_KEYS) | set(_TS_KEYS) | {
    "fields", "account", "desk", "received_ts", "source_id",
}


def _first(raw: Mapping[str, Any], keys: tuple[str, ...]) -> Any:
    for k in keys:
        if k in raw and raw[k] is not None:
            return raw[k]
    return None


# ---------------------------------------------------------------------------
# Normalizer
# ---------------------------------------------------------------------------


class MarketDataNormalizer:
    """Normalize raw inbound payloads into `MarketDataUpdate`.

    Accepted shapes:
        {"instrument": "USD-SWAP", "seq": 42, "source_ts": ..., "fields": {"rate": 5.01}}
        {"instrument": "USD-SWAP", "seq": 42, "ts": ..., "rate": 5.01}   # flat

    Required: instrument, sequence number, source timestamp. Anything else
    missing is left to rule evaluation (a term needing an absent field does
    not fire). Raises MalformedEventError otherwise.
    """

    def __init__(self, *, source_id: str | None = None, clock=_now_ms):
        self.source_id = source_id
        self._clock = clock

    def normalize(self, raw: Any) -> MarketDataUpdate:
        if not isinstance(raw, Mapping):
            raise MalformedEventError(f"payload must be a mapping, got {type(raw).__name__}", raw=raw)

        instrument = _first(raw, _INSTRUMENT_KEYS)
        if not isinstance(instrument, str) or not instrument.strip():
            raise MalformedEventError("missing instrument key", raw=raw, field="instrument")

        seq_any = _first(raw, _SEQ_KEYS)
        try:
            seq = _to_seq(seq_any)
        except (TypeError, ValueError) as exc:
            raise MalformedEventError(f"bad sequence number: {exc}", raw=raw, field="seq") from exc

        ts_any = _first(raw, _TS_KEYS)
        try:
            source_ts = _to_int_ms(ts_any)
        except (TypeError, ValueError) as exc:
            raise MalformedEventError(f"bad source timestamp: {exc}", raw=raw, field="source_ts") from exc

        nested = raw.get("fields")
        if nested is not None:
            if not isinstance(nested, Mapping):
                raise MalformedEventError("'fields' must be a mapping", raw=raw, field="fields")
            fields = dict(nested)
        else:
            fields = {k: v for k, v in raw.items() if k not in _RESERVED}

        received_any = raw.get("received_ts")
        try:
            received_ts = _to_int_ms(received_any) if received_any is not None else self._clock()
        except (TypeError, ValueError):
            received_ts = self._clock()

        account = raw.get("account")
        desk = raw.get("desk")
        return MarketDataUpdate(
            instrument=instrument.strip(),
            seq=seq,
            source_ts=source_ts,
            fields=fields,
            received_ts=received_ts,
            account=str(account) if account is not None else None,
            desk=str(desk) if desk is not None else None,
            source_id=raw.get("source_id") or self.source_id,
        )

    __call__ = normalize
