from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping

from term_engine.contracts.term import ScopeKind, scope_key


@dataclass(frozen=True)
class MarketDataUpdate:
    """
    Canonical market-data event.

    Semantics:
        - `instrument` : partition key and primary scope key
        - `seq`        : monotonically increasing per instrument
        - `source_ts`  : event time from the source (epoch ms int)
        - `received_ts`: arrival time at the engine (epoch ms int)
        - `fields`     : read-only field/value mapping evaluated by rules
        - `account` / `desk` : optional secondary scope values
    """

    instrument: str
    seq: int
    source_ts: int
    fields: Mapping[str, Any]
    received_ts: int = 0
    account: str | None = None
    desk: str | None = None
    source_id: str | None = field(default=None, compare=False)

    def __post_init__(self) -> None:
        if not isinstance(self.fields, MappingProxyType):
            object.__setattr__(self, "fields", MappingProxyType(dict(self.fields)))

    @property
    def partition_key(self) -> str:
        return self.instrument

    def scope_keys(self) -> tuple[str, ...]:
        keys = [scope_key(ScopeKind.INSTRUMENT, self.instrument)]
        if self.account:
            keys.append(scope_key(ScopeKind.ACCOUNT, self.account))
        if self.desk:
            keys.append(scope_key(ScopeKind.DESK, self.desk))
        return tuple(keys)

    def ref(self) -> str:
        return f"{self.instrument}#{self.seq}"
