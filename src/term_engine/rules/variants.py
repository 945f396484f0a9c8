"""Rule variants and their pure check functions.

A rule is one of a closed set of frozen, tagged dataclasses. Each variant
registers a check function under its ``kind``; new variants are added by
registering a new pair, never by subclassing an existing one.

Check semantics:
    - ``check_rule`` returns ``None`` when the rule cannot be evaluated on the
      given fields (missing field, non-numeric value). Callers treat that as
      "not firing", never as an error.
    - Numeric comparisons quantize both sides to the rule's declared
      ``precision`` (decimal places, half-even). ``precision=None`` compares
      exact decimal values.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from decimal import ROUND_HALF_EVEN, Decimal, InvalidOperation, localcontext
from enum import Enum
from typing import Any, Callable, Mapping, Union


class Operator(str, Enum):
    GT = ">"
    GE = ">="
    LT = "<"
    LE = "<="

    def holds(self, value: Decimal, limit: Decimal) -> bool:
        if self is Operator.GT:
            return value > limit
        if self is Operator.GE:
            return value >= limit
        if self is Operator.LT:
            return value < limit
        return value <= limit


@dataclass(frozen=True)
class ThresholdRule:
    """Fires when ``fields[field] <operator> limit`` holds."""

    field: str
    operator: Operator
    limit: Decimal
    precision: int | None = None

    kind = "threshold"

    def describe(self) -> str:
        return f"{self.field} {self.operator.value} {self.limit}"


@dataclass(frozen=True)
class RangeRule:
    """Permitted band; fires when the value falls outside it."""

    field: str
    low: Decimal | None = None
    high: Decimal | None = None
    low_inclusive: bool = True
    high_inclusive: bool = True
    precision: int | None = None

    kind = "range"

    def describe(self) -> str:
        lo = "(-inf" if self.low is None else ("[" if self.low_inclusive else "(") + str(self.low)
        hi = "+inf)" if self.high is None else str(self.high) + ("]" if self.high_inclusive else ")")
        return f"{self.field} in {lo}, {hi}"


@dataclass(frozen=True)
class SetMembershipRule:
    """Fires on a value outside ``allowed`` or inside ``denied``."""

    field: str
    allowed: frozenset[str] | None = None
    denied: frozenset[str] | None = None

    kind = "set_membership"

    def describe(self) -> str:
        if self.allowed is not None:
            return f"{self.field} in {sorted(self.allowed)}"
        return f"{self.field} not in {sorted(self.denied or ())}"


Rule = Union[ThresholdRule, RangeRule, SetMembershipRule]


@dataclass(frozen=True)
class RuleOutcome:
    fired: bool
    field: str
    observed: Any
    limit: str


# ----------------------------------------------------------------------
# Numeric helpers
# ----------------------------------------------------------------------

def to_decimal(x: Any) -> Decimal | None:
    """Coerce a field value to Decimal; ``None`` for anything non-numeric."""
    if x is None or isinstance(x, bool):
        return None
    if isinstance(x, Decimal):
        d = x
    elif isinstance(x, int):
        d = Decimal(x)
    elif isinstance(x, float):
        if math.isnan(x) or math.isinf(x):
            return None
        # str() keeps the shortest repr: 5.01 stays 5.01, not 5.0099999...
        d = Decimal(str(x))
    elif isinstance(x, str):
        try:
            d = Decimal(x.strip())
        except InvalidOperation:
            return None
    else:
        try:
            d = Decimal(str(float(x)))
        except (TypeError, ValueError, InvalidOperation):
            return None
    if not d.is_finite():
        return None
    return d


def quantize(x: Decimal, precision: int | None) -> Decimal:
    if precision is None:
        return x
    places = int(precision)
    # the default 28-digit context cannot hold large values at fine precision
    with localcontext() as ctx:
        ctx.prec = max(ctx.prec, x.adjusted() + places + 2)
        return x.quantize(Decimal(1).scaleb(-places), rounding=ROUND_HALF_EVEN)


# ----------------------------------------------------------------------
# Per-variant checks
# ----------------------------------------------------------------------

RULE_VARIANTS: dict[str, type] = {}
_CHECKS: dict[str, Callable[[Any, Mapping[str, Any]], RuleOutcome | None]] = {}


def register_rule(cls: type):
    def decorator(fn):
        RULE_VARIANTS[cls.kind] = cls
        _CHECKS[cls.kind] = fn
        return fn
    return decorator


@register_rule(ThresholdRule)
def _check_threshold(rule: ThresholdRule, fields: Mapping[str, Any]) -> RuleOutcome | None:
    if rule.field not in fields:
        return None
    raw = fields[rule.field]
    value = to_decimal(raw)
    if value is None:
        return None
    fired = rule.operator.holds(
        quantize(value, rule.precision),
        quantize(rule.limit, rule.precision),
    )
    return RuleOutcome(fired=fired, field=rule.field, observed=raw, limit=rule.describe())


@register_rule(RangeRule)
def _check_range(rule: RangeRule, fields: Mapping[str, Any]) -> RuleOutcome | None:
    if rule.field not in fields:
        return None
    raw = fields[rule.field]
    value = to_decimal(raw)
    if value is None:
        return None
    v = quantize(value, rule.precision)
    below = False
    above = False
    if rule.low is not None:
        lo = quantize(rule.low, rule.precision)
        below = v < lo if rule.low_inclusive else v <= lo
    if rule.high is not None:
        hi = quantize(rule.high, rule.precision)
        above = v > hi if rule.high_inclusive else v >= hi
    return RuleOutcome(fired=below or above, field=rule.field, observed=raw, limit=rule.describe())


@register_rule(SetMembershipRule)
def _check_membership(rule: SetMembershipRule, fields: Mapping[str, Any]) -> RuleOutcome | None:
    if rule.field not in fields:
        return None
    raw = fields[rule.field]
    if raw is None:
        return None
    value = str(raw)
    fired = False
    if rule.allowed is not None and value not in rule.allowed:
        fired = True
    if rule.denied is not None and value in rule.denied:
        fired = True
    return RuleOutcome(fired=fired, field=rule.field, observed=raw, limit=rule.describe())


def check_rule(rule: Rule, fields: Mapping[str, Any]) -> RuleOutcome | None:
    check = _CHECKS.get(getattr(rule, "kind", ""))
    if check is None:
        raise TypeError(f"unsupported rule variant: {type(rule).__name__}")
    return check(rule, fields)


# ----------------------------------------------------------------------
# Wire form
# ----------------------------------------------------------------------

def _required_decimal(raw: Mapping[str, Any], key: str) -> Decimal:
    d = to_decimal(raw.get(key))
    if d is None:
        raise ValueError(f"rule field {key!r} must be numeric, got {raw.get(key)!r}")
    return d


def _optional_decimal(raw: Mapping[str, Any], key: str) -> Decimal | None:
    if raw.get(key) is None:
        return None
    return _required_decimal(raw, key)


def _precision(raw: Mapping[str, Any]) -> int | None:
    p = raw.get("precision")
    if p is None:
        return None
    if isinstance(p, bool) or int(p) < 0:
        raise ValueError(f"precision must be a non-negative int, got {p!r}")
    return int(p)


def parse_rule(raw: Mapping[str, Any]) -> Rule:
    """Build a rule variant from its wire mapping (``type`` selects the variant)."""
    if not isinstance(raw, Mapping):
        raise ValueError(f"rule must be a mapping, got {type(raw).__name__}")
    kind = str(raw.get("type") or raw.get("kind") or "")
    field = raw.get("field")
    if not isinstance(field, str) or not field:
        raise ValueError("rule requires a non-empty 'field'")

    if kind == ThresholdRule.kind:
        try:
            op = Operator(str(raw.get("operator")))
        except ValueError:
            raise ValueError(f"unknown operator {raw.get('operator')!r}") from None
        return ThresholdRule(field=field, operator=op, limit=_required_decimal(raw, "limit"), precision=_precision(raw))

    if kind == RangeRule.kind:
        low = _optional_decimal(raw, "low")
        high = _optional_decimal(raw, "high")
        if low is None and high is None:
            raise ValueError("range rule requires 'low' and/or 'high'")
        if low is not None and high is not None and low > high:
            raise ValueError(f"range rule low {low} > high {high}")
        return RangeRule(
            field=field,
            low=low,
            high=high,
            low_inclusive=bool(raw.get("low_inclusive", True)),
            high_inclusive=bool(raw.get("high_inclusive", True)),
            precision=_precision(raw),
        )

    if kind == SetMembershipRule.kind:
        allowed = raw.get("allowed")
        denied = raw.get("denied")
        if allowed is None and denied is None:
            raise ValueError("set_membership rule requires 'allowed' or 'denied'")
        return SetMembershipRule(
            field=field,
            allowed=frozenset(str(v) for v in allowed) if allowed is not None else None,
            denied=frozenset(str(v) for v in denied) if denied is not None else None,
        )

    raise ValueError(f"unknown rule type {kind!r}; expected one of {sorted(RULE_VARIANTS)}")


def rule_to_dict(rule: Rule) -> dict[str, Any]:
    if isinstance(rule, ThresholdRule):
        out: dict[str, Any] = {"type": rule.kind, "field": rule.field, "operator": rule.operator.value, "limit": str(rule.limit)}
        if rule.precision is not None:
            out["precision"] = rule.precision
        return out
    if isinstance(rule, RangeRule):
        out = {
            "type": rule.kind,
            "field": rule.field,
            "low": None if rule.low is None else str(rule.low),
            "high": None if rule.high is None else str(rule.high),
            "low_inclusive": rule.low_inclusive,
            "high_inclusive": rule.high_inclusive,
        }
        if rule.precision is not None:
            out["precision"] = rule.precision
        return out
    if isinstance(rule, SetMembershipRule):
        return {
            "type": rule.kind,
            "field": rule.field,
            "allowed": None if rule.allowed is None else sorted(rule.allowed),
            "denied": None if rule.denied is None else sorted(rule.denied),
        }
    raise TypeError(f"unsupported rule variant: {type(rule).__name__}")
