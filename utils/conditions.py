"""
Shared condition evaluator — used by the Rule Evaluator's entity filters.

Evaluates RuleCondition objects and due-date criteria against entity dicts.
Supports nested dot-notation field access and type coercion.
"""
from __future__ import annotations

import math
import re
import operator as op
from datetime import date, datetime, time
from typing import Any, Optional

from models.schemas import DueDateCriterion, RuleCondition


OPERATORS: dict[str, Any] = {
    "eq": op.eq,
    "neq": op.ne,
    "gt": op.gt,
    "gte": op.ge,
    "lt": op.lt,
    "lte": op.le,
    "in": lambda a, b: a in b,
    "contains": lambda a, b: b in str(a),
    "regex": lambda a, b: bool(re.search(str(b), str(a))),
    "exists": lambda a, b: a is not None,
    "not_exists": lambda a, b: a is None,
}


def get_nested_value(data: dict, field: str) -> Any:
    """Get a value from nested dict using dot notation. e.g. 'fee.status'"""
    current = data
    for part in field.split("."):
        if isinstance(current, dict):
            current = current.get(part)
        else:
            return None
    return current


def evaluate_condition(condition: RuleCondition, data: dict[str, Any]) -> bool:
    """Evaluate a single condition against data."""
    val = get_nested_value(data, condition.field)
    fn = OPERATORS.get(condition.operator)
    if fn is None:
        return False
    try:
        if isinstance(condition.value, (int, float)) and not isinstance(condition.value, bool) and isinstance(val, str):
            val = float(val)
        return fn(val, condition.value)
    except (TypeError, ValueError):
        return False


def evaluate_conditions(conditions: list[RuleCondition], data: dict[str, Any]) -> bool:
    """Evaluate all conditions (AND logic). Returns True if all pass."""
    if not conditions:
        return True
    return all(evaluate_condition(c, data) for c in conditions)


# ── Due dates ─────────────────────────────────────────────────

def parse_due(value: Any, tzinfo) -> Optional[datetime]:
    """Accept a date, datetime or ISO string; date-only values mean local midnight."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=tzinfo)
    if isinstance(value, date):
        return datetime.combine(value, time.min, tzinfo=tzinfo)
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=tzinfo)


def days_until(value: Any, now: datetime) -> Optional[int]:
    """Whole days from now to the due date, floored; negative once it has passed."""
    due = parse_due(value, now.tzinfo)
    if due is None:
        return None
    return math.floor((due - now).total_seconds() / 86400)


def evaluate_due_date(criterion: DueDateCriterion, data: dict[str, Any], now: datetime) -> bool:
    """
    overdue: the due date has passed
    before:  due within `days` days from now (past due included)
    after:   due at least `days` days from now
    """
    diff = days_until(get_nested_value(data, criterion.field), now)
    if diff is None:
        return False
    if criterion.condition == "overdue":
        return diff < 0
    if criterion.condition == "before":
        return diff <= criterion.days
    if criterion.condition == "after":
        return diff >= criterion.days
    return False
