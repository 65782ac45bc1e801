"""
Rule Evaluator: boolean rule trees for automatic / conditional criteria.

A rule is an immutable tree of two node kinds:

    RuleLeaf   {domain, field, operator, value}
    RuleGroup  {logic: AND | OR, children: (Rule, ...)}   non-empty

``parse_rule`` compiles stored JSON into that tree and is the only place a
malformed rule is reported (``ConfigurationError``).  ``evaluate`` is total
and side-effect free: a field that cannot be resolved makes the leaf false
(``not-exists`` true) instead of raising.

Leaf domains:
    entity-field         resolved against the lead snapshot
    activity-metric      resolved against the caller-supplied context
    time-metric          (days_in_stage, overdue_days, …)
    relationship-metric  (has_active_deal, total_deal_value, …)

Usage:
    from leadflow.services.rule_evaluator import parse_rule, evaluate

    rule = parse_rule({"domain": "entity-field", "field": "lead_score",
                       "operator": ">=", "value": 75})
    evaluate(rule, {"lead_score": 80}, {})   # -> True
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Union

from leadflow.core.exceptions import ConfigurationError

DOMAIN_ENTITY = "entity-field"
DOMAIN_ACTIVITY = "activity-metric"
DOMAIN_TIME = "time-metric"
DOMAIN_RELATIONSHIP = "relationship-metric"

DOMAINS = (DOMAIN_ENTITY, DOMAIN_ACTIVITY, DOMAIN_TIME, DOMAIN_RELATIONSHIP)
OPERATORS = (">", "<", ">=", "<=", "==", "!=", "contains", "exists", "not-exists")
ORDERING_OPERATORS = frozenset({">", "<", ">=", "<="})
VALUELESS_OPERATORS = frozenset({"exists", "not-exists"})
LOGICS = ("AND", "OR")

MAX_RULE_DEPTH = 32

# Legacy spellings accepted on input; stored rules use the canonical names.
_DOMAIN_ALIASES = {
    "lead_data": DOMAIN_ENTITY,
    "entity_field": DOMAIN_ENTITY,
    "activity": DOMAIN_ACTIVITY,
    "activity_metric": DOMAIN_ACTIVITY,
    "time": DOMAIN_TIME,
    "time_metric": DOMAIN_TIME,
    "relationship": DOMAIN_RELATIONSHIP,
    "relationship_metric": DOMAIN_RELATIONSHIP,
}
_OPERATOR_ALIASES = {"not_exists": "not-exists", "=": "=="}

_MISSING = object()


@dataclass(frozen=True)
class RuleLeaf:
    domain: str
    field: str
    operator: str
    value: Any = None


@dataclass(frozen=True)
class RuleGroup:
    logic: str
    children: tuple

    def __post_init__(self):
        if not self.children:
            raise ConfigurationError("composite rule must have at least one child")


Rule = Union[RuleLeaf, RuleGroup]


# ═════════════════════════════════════════════════════════════════════════════
# Parsing - configuration time
# ═════════════════════════════════════════════════════════════════════════════


def parse_rule(data: Any, path: str = "rule") -> Rule:
    """Compile a JSON-like rule definition into an immutable rule tree.

    Raises:
        ConfigurationError: unknown domain/operator/logic, missing field or
            operator, missing comparison value, non-scalar value, empty
            composite, a cycle, or nesting deeper than ``MAX_RULE_DEPTH``.
    """
    return _parse(data, path, depth=0, ancestors=frozenset())


def _parse(data: Any, path: str, depth: int, ancestors: frozenset) -> Rule:
    if isinstance(data, (RuleLeaf, RuleGroup)):
        return data
    if not isinstance(data, dict):
        raise ConfigurationError("rule node must be an object", path=path)
    if id(data) in ancestors:
        raise ConfigurationError("rule tree contains a cycle", path=path)
    if depth > MAX_RULE_DEPTH:
        raise ConfigurationError(f"rule tree deeper than {MAX_RULE_DEPTH} levels", path=path)

    is_group = "children" in data or "rules" in data or data.get("type") == "composite"
    if is_group:
        return _parse_group(data, path, depth, ancestors | {id(data)})
    return _parse_leaf(data, path)


def _parse_group(data: dict, path: str, depth: int, ancestors: frozenset) -> RuleGroup:
    logic = str(data.get("logic") or "").upper()
    if logic not in LOGICS:
        raise ConfigurationError(f"logic must be one of {list(LOGICS)}", path=f"{path}.logic")

    key = "children" if "children" in data else "rules"
    children = data.get(key)
    if not isinstance(children, (list, tuple)):
        raise ConfigurationError("children must be a list", path=f"{path}.{key}")
    if not children:
        raise ConfigurationError("composite rule must have at least one child", path=f"{path}.{key}")

    parsed = tuple(
        _parse(child, f"{path}.children[{i}]", depth + 1, ancestors)
        for i, child in enumerate(children)
    )
    return RuleGroup(logic=logic, children=parsed)


def _parse_leaf(data: dict, path: str) -> RuleLeaf:
    raw_domain = data.get("domain", data.get("type"))
    if not raw_domain:
        raise ConfigurationError("leaf is missing 'domain'", path=f"{path}.domain")
    domain = _DOMAIN_ALIASES.get(raw_domain, raw_domain)
    if domain not in DOMAINS:
        raise ConfigurationError(f"unknown domain {raw_domain!r}", path=f"{path}.domain")

    field_name = data.get("field")
    if not isinstance(field_name, str) or not field_name.strip():
        raise ConfigurationError("leaf is missing 'field'", path=f"{path}.field")

    raw_operator = data.get("operator")
    if not raw_operator:
        raise ConfigurationError("leaf is missing 'operator'", path=f"{path}.operator")
    operator = _OPERATOR_ALIASES.get(raw_operator, raw_operator)
    if operator not in OPERATORS:
        raise ConfigurationError(f"unknown operator {raw_operator!r}", path=f"{path}.operator")

    value = data.get("value")
    if operator not in VALUELESS_OPERATORS and "value" not in data:
        raise ConfigurationError(f"operator {operator!r} requires a 'value'", path=f"{path}.value")
    if value is not None and not isinstance(value, (str, int, float, bool)):
        raise ConfigurationError("value must be a scalar", path=f"{path}.value")

    return RuleLeaf(domain=domain, field=field_name.strip(), operator=operator, value=value)


def rule_to_dict(rule: Rule) -> dict:
    """Canonical JSON form of a compiled rule (what gets stored)."""
    if isinstance(rule, RuleGroup):
        return {"logic": rule.logic, "children": [rule_to_dict(c) for c in rule.children]}
    data = {"domain": rule.domain, "field": rule.field, "operator": rule.operator}
    if rule.operator not in VALUELESS_OPERATORS:
        data["value"] = rule.value
    return data


# ═════════════════════════════════════════════════════════════════════════════
# Evaluation - pure
# ═════════════════════════════════════════════════════════════════════════════


def evaluate(rule: Rule, snapshot: dict | None, context: dict | None = None) -> bool:
    """Evaluate a compiled rule against a lead snapshot and metric context."""
    if isinstance(rule, RuleGroup):
        results = (evaluate(child, snapshot, context) for child in rule.children)
        return all(results) if rule.logic == "AND" else any(results)
    return _evaluate_leaf(rule, snapshot or {}, context or {})


def _evaluate_leaf(leaf: RuleLeaf, snapshot: dict, context: dict) -> bool:
    source = snapshot if leaf.domain == DOMAIN_ENTITY else context
    actual = resolve_field(source, leaf.field)

    if leaf.operator == "exists":
        return _exists(actual)
    if leaf.operator == "not-exists":
        return not _exists(actual)
    if actual is _MISSING:
        return False

    if leaf.operator in ORDERING_OPERATORS:
        left, right = _to_number(actual), _to_number(leaf.value)
        if left is None or right is None:
            return False
        if leaf.operator == ">":
            return left > right
        if leaf.operator == "<":
            return left < right
        if leaf.operator == ">=":
            return left >= right
        return left <= right

    if leaf.operator == "==":
        return loose_equals(actual, leaf.value)
    if leaf.operator == "!=":
        return not loose_equals(actual, leaf.value)

    # contains
    if actual is None or leaf.value is None:
        return False
    return _as_text(leaf.value).lower() in _as_text(actual).lower()


def resolve_field(source: dict, field_name: str) -> Any:
    """Look up ``field_name`` in ``source``; dotted names walk nested dicts.

    An exact key match wins over dotted traversal.  Returns the module
    sentinel ``_MISSING`` when the field cannot be resolved.
    """
    if field_name in source:
        return source[field_name]
    if "." not in field_name:
        return _MISSING
    current: Any = source
    for part in field_name.split("."):
        if not isinstance(current, dict) or part not in current:
            return _MISSING
        current = current[part]
    return current


def _exists(value: Any) -> bool:
    return value is not _MISSING and value is not None and value != ""


def _to_number(value: Any) -> float | None:
    if value is None or value is _MISSING:
        return None
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, (int, float, Decimal)):
        number = float(value)
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            number = float(text)
        except ValueError:
            return None
    else:
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


def _to_bool(value: Any) -> bool | None:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ("true", "false"):
        return value.strip().lower() == "true"
    return None


def _as_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def loose_equals(left: Any, right: Any) -> bool:
    """Equality after coercing both sides to one primitive type when possible.

    Order of attempts: null, boolean, number, then string form.
    """
    if left is None or right is None:
        return left is None and right is None

    if isinstance(left, bool) or isinstance(right, bool):
        lb, rb = _to_bool(left), _to_bool(right)
        if lb is not None and rb is not None:
            return lb == rb

    ln, rn = _to_number(left), _to_number(right)
    if ln is not None and rn is not None:
        return ln == rn

    return _as_text(left) == _as_text(right)
