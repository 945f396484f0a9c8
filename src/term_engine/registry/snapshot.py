from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping

from term_engine.contracts.market import MarketDataUpdate
from term_engine.contracts.term import WILDCARD, ScopeKind, Term, normalize_scope_key, scope_key


@dataclass(frozen=True)
class RegistrySnapshot:
    """
    Immutable point-in-time view of the term set.

    `terms` keeps every known term (any status) so versions can be checked;
    `index` maps a scope key to the ACTIVE terms selecting it, ordered by id.
    A snapshot is never mutated after publication.
    """

    version: int
    terms: Mapping[str, Term] = field(default_factory=lambda: MappingProxyType({}))
    index: Mapping[str, tuple[Term, ...]] = field(default_factory=lambda: MappingProxyType({}))
    created_ts: int = 0

    def get_active_terms(self, key: str) -> tuple[Term, ...]:
        """Active terms whose scope selects `key`, wildcard scopes of its kind included."""
        key = normalize_scope_key(key)
        kind = key.partition(":")[0]
        seen: dict[str, Term] = {}
        for k in (key, scope_key(kind, WILDCARD)):
            for term in self.index.get(k, ()):
                seen.setdefault(term.term_id, term)
        return tuple(t for _, t in sorted(seen.items()))

    def terms_for(self, update: MarketDataUpdate) -> tuple[Term, ...]:
        """Active, effective terms selecting any scope key of the update."""
        seen: dict[str, Term] = {}
        keys = list(update.scope_keys())
        for kind in ScopeKind:
            keys.append(scope_key(kind, WILDCARD))
        for key in keys:
            for term in self.index.get(key, ()):
                seen.setdefault(term.term_id, term)
        return tuple(
            t for _, t in sorted(seen.items()) if t.applies_at(update.source_ts)
        )

    def term(self, term_id: str) -> Term | None:
        return self.terms.get(term_id)

    @property
    def active_count(self) -> int:
        return sum(1 for t in self.terms.values() if t.is_active)

    def __len__(self) -> int:
        return len(self.terms)
