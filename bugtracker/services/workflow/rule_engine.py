"""
Condition evaluation for auto-check steps.

A rule is stored on the step as JSON:

    {
        "conditions": [
            {"condition_id": "c1", "field": "versionAffected",
             "operator": "equals", "value": true, "logic": "and"},
            ...
        ],
        "note_field": "versionCheckNotes"
    }

Conditions are combined left to right: ``and`` folds into the running group,
``or`` starts a new group; the rule holds when any group holds.  A condition's
``logic`` joins it to the *next* condition.  Fields are looked up in the task
context with dotted paths (``bug.severity``).  Comparisons are numeric when
both sides are numbers, version-aware when both look like dotted versions,
and case-insensitive string comparisons otherwise.

An empty condition list evaluates to True.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

OPERATORS = (
    "equals",
    "not_equals",
    "greater_than",
    "less_than",
    "greater_than_or_equal",
    "less_than_or_equal",
    "contains",
    "not_contains",
    "starts_with",
    "ends_with",
    "in",
    "not_in",
    "is_null",
    "is_not_null",
)

_VERSION_RE = re.compile(r"^\d+(\.\d+)+$")


@dataclass
class RuleOutcome:
    result: bool
    evaluations: list[dict] = field(default_factory=list)
    note: str | None = None


# ── Value helpers ────────────────────────────────────────────────────────────


def get_field(context: dict, path: str):
    """Resolve a dotted path inside nested dicts / objects; None when missing."""
    current = context
    for part in (path or "").split("."):
        if current is None:
            return None
        if isinstance(current, dict):
            current = current.get(part)
        else:
            current = getattr(current, part, None)
    return current


def _as_number(value):
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def _as_version(value):
    if isinstance(value, str) and _VERSION_RE.match(value.strip()):
        return tuple(int(p) for p in value.strip().split("."))
    return None


def _as_text(value) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value).lower()


def _equal(actual, expected) -> bool:
    if actual is None or expected is None:
        return actual is None and expected is None
    if isinstance(actual, bool) or isinstance(expected, bool):
        return _as_text(actual) == _as_text(expected)
    a_num, e_num = _as_number(actual), _as_number(expected)
    if a_num is not None and e_num is not None:
        return a_num == e_num
    return _as_text(actual) == _as_text(expected)


def _compare(actual, expected) -> int:
    if actual is None and expected is None:
        return 0
    if actual is None:
        return -1
    if expected is None:
        return 1
    a_ver, e_ver = _as_version(actual), _as_version(expected)
    if a_ver is not None and e_ver is not None:
        return (a_ver > e_ver) - (a_ver < e_ver)
    a_num, e_num = _as_number(actual), _as_number(expected)
    if a_num is not None and e_num is not None:
        return (a_num > e_num) - (a_num < e_num)
    a_txt, e_txt = _as_text(actual), _as_text(expected)
    return (a_txt > e_txt) - (a_txt < e_txt)


def _contains(actual, expected) -> bool:
    if actual is None or expected is None:
        return False
    if isinstance(actual, (list, tuple, set)):
        return any(_equal(item, expected) for item in actual)
    return _as_text(expected) in _as_text(actual)


def _members(expected) -> list:
    if isinstance(expected, (list, tuple, set)):
        return list(expected)
    if isinstance(expected, str):
        return [part.strip() for part in expected.split(",")]
    return [expected]


def _is_in(actual, expected) -> bool:
    if actual is None or expected is None:
        return False
    return any(_equal(actual, item) for item in _members(expected))


_OPS = {
    "equals": _equal,
    "not_equals": lambda a, e: not _equal(a, e),
    "greater_than": lambda a, e: _compare(a, e) > 0,
    "less_than": lambda a, e: _compare(a, e) < 0,
    "greater_than_or_equal": lambda a, e: _compare(a, e) >= 0,
    "less_than_or_equal": lambda a, e: _compare(a, e) <= 0,
    "contains": _contains,
    "not_contains": lambda a, e: not _contains(a, e),
    "starts_with": lambda a, e: a is not None and e is not None and _as_text(a).startswith(_as_text(e)),
    "ends_with": lambda a, e: a is not None and e is not None and _as_text(a).endswith(_as_text(e)),
    "in": _is_in,
    "not_in": lambda a, e: not _is_in(a, e),
    "is_null": lambda a, e: a is None,
    "is_not_null": lambda a, e: a is not None,
}


# ── Public API ───────────────────────────────────────────────────────────────


def evaluate_condition(condition: dict, context: dict) -> dict:
    """Evaluate one condition; the returned dict is what the audit trail stores."""
    operator = (condition.get("operator") or "equals").strip().lower()
    field_path = condition.get("field") or ""
    actual = get_field(context, field_path)
    expected = condition.get("value")

    op = _OPS.get(operator)
    if op is None:
        logger.warning("Unknown rule operator %r on field %s", operator, field_path)
        result = False
    else:
        result = bool(op(actual, expected))

    logger.debug("Condition %s %s %r = %s (actual %r)", field_path, operator, expected, result, actual)
    return {
        "condition_id": condition.get("condition_id"),
        "field": field_path,
        "operator": operator,
        "expected": expected,
        "actual": actual,
        "result": result,
    }


def evaluate_conditions(conditions: list[dict], context: dict) -> tuple[bool, list[dict]]:
    """Combine conditions left to right with their ``logic`` connectors."""
    if not conditions:
        return True, []

    evaluations = []
    groups: list[bool] = []
    pending_logic = None
    for condition in conditions:
        evaluation = evaluate_condition(condition, context)
        evaluations.append(evaluation)
        if pending_logic == "and" and groups:
            groups[-1] = groups[-1] and evaluation["result"]
        else:
            groups.append(evaluation["result"])
        pending_logic = (condition.get("logic") or "and").strip().lower()

    return any(groups), evaluations


def evaluate_rule(rule: dict | None, context: dict) -> RuleOutcome:
    """Evaluate an auto-check rule and pick up its pre-written note, if any."""
    rule = rule or {}
    result, evaluations = evaluate_conditions(rule.get("conditions") or [], context)
    note = None
    note_field = rule.get("note_field")
    if note_field:
        value = get_field(context, note_field)
        note = str(value) if value is not None else None
    return RuleOutcome(result=result, evaluations=evaluations, note=note)
