from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from term_engine.rules.variants import Rule

WILDCARD = "*"


class TermStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    SUSPENDED = "suspended"
    RETIRED = "retired"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ScopeKind(str, Enum):
    INSTRUMENT = "instrument"
    ACCOUNT = "account"
    DESK = "desk"


def scope_key(kind: ScopeKind | str, value: str) -> str:
    """Canonical scope key, e.g. ``instrument:USD-SWAP``."""
    return f"{ScopeKind(kind).value}:{value}"


def normalize_scope_key(key: str) -> str:
    """Accept a bare instrument (``USD-SWAP``) or a qualified key."""
    head, sep, tail = key.partition(":")
    if sep and head in {k.value for k in ScopeKind}:
        return f"{head}:{tail}"
    return scope_key(ScopeKind.INSTRUMENT, key)


@dataclass(frozen=True)
class Scope:
    """Selector over one scope kind: a set of values or the wildcard."""

    kind: ScopeKind = ScopeKind.INSTRUMENT
    values: frozenset[str] = frozenset()

    @classmethod
    def instruments(cls, *values: str) -> "Scope":
        return cls(kind=ScopeKind.INSTRUMENT, values=frozenset(values))

    def keys(self) -> tuple[str, ...]:
        return tuple(scope_key(self.kind, v) for v in sorted(self.values))


@dataclass(frozen=True)
class Term:
    """Read-only projection of a term owned by the term service."""

    term_id: str
    version: int
    status: TermStatus
    scope: Scope
    rule: Rule
    effective_from: int  # epoch ms
    severity: Severity = Severity.HIGH

    @property
    def is_active(self) -> bool:
        return self.status is TermStatus.ACTIVE

    def applies_at(self, ts: int) -> bool:
        return self.is_active and self.effective_from <= int(ts)


@dataclass(frozen=True)
class TermChangeEvent:
    """One change notification from the term-change feed."""

    term_id: str
    version: int
    status: TermStatus
    scope: Scope
    rule: Rule
    effective_from: int
    severity: Severity = Severity.HIGH

    def to_term(self) -> Term:
        return Term(
            term_id=self.term_id,
            version=self.version,
            status=self.status,
            scope=self.scope,
            rule=self.rule,
            effective_from=self.effective_from,
            severity=self.severity,
        )
