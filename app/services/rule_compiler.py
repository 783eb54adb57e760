"""Segment rule parsing and compilation.

A segment rule is a tree of boolean groups (``AND``/``OR``) over leaf
comparisons on a fixed set of recipient attributes. ``parse_rule`` turns the
JSON document stored on a segment into the typed tree, and ``compile_rule``
lowers that tree into a storage-neutral predicate that the campaign store
translates into a query.
"""

import re
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Union

from app.core.clock import ensure_utc
from app.core.errors import InvalidRule

GROUP_OPERATORS = ("AND", "OR")
COMPARISON_OPERATORS = (">", ">=", "<", "<=", "==", "!=")
SINCE_OPERATOR = "since"
LEAF_OPERATORS = COMPARISON_OPERATORS + (SINCE_OPERATOR,)
_OPERATOR_ALIASES = {"=": "=="}
_CHILDREN_KEYS = ("children", "rules", "conditions")

_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(s|m|h|d|w|mo|y)?\s*$", re.IGNORECASE)
_DURATION_UNITS = {
    "s": timedelta(seconds=1),
    "m": timedelta(minutes=1),
    "h": timedelta(hours=1),
    "d": timedelta(days=1),
    "w": timedelta(weeks=1),
    "mo": timedelta(days=30),
    "y": timedelta(days=365),
}


@dataclass(frozen=True)
class RuleField:
    name: str
    attribute: str
    kind: str  # "number" | "timestamp"


RULE_FIELDS: dict[str, RuleField] = {
    "totalSpend": RuleField(name="totalSpend", attribute="total_spend", kind="number"),
    "visitCount": RuleField(name="visitCount", attribute="visit_count", kind="number"),
    "lastPurchase": RuleField(name="lastPurchase", attribute="last_purchase_at", kind="timestamp"),
}
_FIELD_ALIASES = {
    "total_spend": "totalSpend",
    "visit_count": "visitCount",
    "last_purchase": "lastPurchase",
    "last_purchase_at": "lastPurchase",
}


@dataclass(frozen=True)
class RuleLeaf:
    field: str
    operator: str
    value: Any


@dataclass(frozen=True)
class RuleGroup:
    operator: str
    children: tuple["Rule", ...]


Rule = Union[RuleLeaf, RuleGroup]


@dataclass(frozen=True)
class MatchAll:
    pass


@dataclass(frozen=True)
class Comparison:
    attribute: str
    operator: str
    value: Any


@dataclass(frozen=True)
class Conjunction:
    operands: tuple["Predicate", ...]


@dataclass(frozen=True)
class Disjunction:
    operands: tuple["Predicate", ...]


Predicate = Union[MatchAll, Comparison, Conjunction, Disjunction]


def parse_rule(document: Any, *, path: str = "$") -> Rule:
    """Validate a raw rule document and return the typed rule tree.

    Raises ``InvalidRule`` naming the path of the first offending node.
    """
    if isinstance(document, (RuleLeaf, RuleGroup)):
        return document
    if not isinstance(document, Mapping):
        raise InvalidRule("Rule node must be an object", path=path)

    raw_operator = document.get("operator")
    operator = str(raw_operator).strip() if raw_operator is not None else ""
    children_key = next((key for key in _CHILDREN_KEYS if key in document), None)

    if children_key is not None or operator.upper() in GROUP_OPERATORS:
        if operator.upper() not in GROUP_OPERATORS:
            raise InvalidRule(f"Unknown group operator {raw_operator!r}", path=path)
        raw_children = document.get(children_key) if children_key else []
        children_path = f"{path}.{children_key or 'children'}"
        if not isinstance(raw_children, list):
            raise InvalidRule("Group children must be a list", path=children_path)
        children = tuple(
            parse_rule(child, path=f"{children_path}[{index}]")
            for index, child in enumerate(raw_children)
        )
        return RuleGroup(operator=operator.upper(), children=children)

    rule_field = _lookup_field(document.get("field"), path=path)
    normalized_operator = _OPERATOR_ALIASES.get(operator, operator)
    if normalized_operator not in LEAF_OPERATORS:
        raise InvalidRule(f"Unknown operator {raw_operator!r}", path=path)
    value = _coerce_value(rule_field, normalized_operator, document.get("value"), path=path)
    return RuleLeaf(field=rule_field.name, operator=normalized_operator, value=value)


def compile_rule(rule: Rule, *, now: datetime, path: str = "$") -> Predicate:
    """Lower a rule tree into a predicate, resolving ``since`` against ``now``."""
    if isinstance(rule, RuleGroup):
        if not rule.children:
            return MatchAll()
        operands = tuple(
            compile_rule(child, now=now, path=f"{path}.children[{index}]")
            for index, child in enumerate(rule.children)
        )
        if rule.operator == "AND":
            return Conjunction(operands=operands)
        if rule.operator == "OR":
            return Disjunction(operands=operands)
        raise InvalidRule(f"Unknown group operator {rule.operator!r}", path=path)

    if isinstance(rule, RuleLeaf):
        rule_field = _lookup_field(rule.field, path=path)
        if rule.operator == SINCE_OPERATOR:
            if isinstance(rule.value, timedelta):
                cutoff = ensure_utc(now) - rule.value
            elif isinstance(rule.value, datetime):
                cutoff = ensure_utc(rule.value)
            else:
                raise InvalidRule("'since' needs a duration or an instant", path=path)
            return Comparison(attribute=rule_field.attribute, operator="<=", value=cutoff)
        if rule.operator in COMPARISON_OPERATORS:
            return Comparison(attribute=rule_field.attribute, operator=rule.operator, value=rule.value)
        raise InvalidRule(f"Unknown operator {rule.operator!r}", path=path)

    raise InvalidRule(f"Unsupported rule node {type(rule).__name__}", path=path)


def compile_document(document: Any, *, now: datetime) -> Predicate:
    return compile_rule(parse_rule(document), now=now)


def parse_duration(value: Any) -> timedelta | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, timedelta):
        return value
    if isinstance(value, (int, float)):
        return timedelta(days=value) if value >= 0 else None
    if not isinstance(value, str):
        return None
    match = _DURATION_RE.match(value)
    if not match:
        return None
    amount = float(match.group(1))
    unit = (match.group(2) or "d").lower()
    return _DURATION_UNITS[unit] * amount


def _lookup_field(name: Any, *, path: str) -> RuleField:
    key = str(name or "").strip()
    key = _FIELD_ALIASES.get(key, key)
    rule_field = RULE_FIELDS.get(key)
    if rule_field is None:
        available = ", ".join(sorted(RULE_FIELDS))
        raise InvalidRule(f"Unknown field {name!r} (available: {available})", path=path)
    return rule_field


def _coerce_value(rule_field: RuleField, operator: str, value: Any, *, path: str) -> Any:
    if operator == SINCE_OPERATOR:
        if rule_field.kind != "timestamp":
            raise InvalidRule(f"'since' only applies to timestamp fields, not {rule_field.name}", path=path)
        duration = parse_duration(value)
        if duration is not None:
            return duration
        instant = _parse_instant(value)
        if instant is not None:
            return instant
        raise InvalidRule(f"Invalid duration {value!r} for 'since'", path=path)

    if rule_field.kind == "number":
        number = _parse_number(value)
        if number is None:
            raise InvalidRule(f"Field {rule_field.name} needs a numeric value, got {value!r}", path=path)
        return number

    instant = _parse_instant(value)
    if instant is None:
        raise InvalidRule(f"Field {rule_field.name} needs an ISO-8601 timestamp, got {value!r}", path=path)
    return instant


def _parse_number(value: Any) -> int | float | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, str):
        try:
            parsed = Decimal(value.strip())
        except InvalidOperation:
            return None
        return int(parsed) if parsed == parsed.to_integral_value() else float(parsed)
    return None


def _parse_instant(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return ensure_utc(value)
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return ensure_utc(datetime.fromisoformat(text))
    except ValueError:
        return None
