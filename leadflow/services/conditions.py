"""Condition evaluation, condition-set folding, and trigger matching.

Everything here is pure: no I/O, no database, and no exceptions escape.
Session values and condition values are untyped JSON data; each operator
coerces them explicitly with the helpers below.
"""

import logging
import math
import re
from typing import Any, Optional

from leadflow.schemas import LogicCondition, LogicTrigger

logger = logging.getLogger(__name__)

# Decimal or exponent notation only: no "inf", "nan" or "1_000"
PLAIN_NUMBER = re.compile(r"^[+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?$")


# ── Coercion helpers ──────────────────────────────────
def to_text(value: Any) -> str:
    """String form used by contains / not_contains / regex."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float):
        if math.isnan(value):
            return "NaN"
        if value.is_integer():
            return str(int(value))
        return repr(value)
    if isinstance(value, (list, tuple)):
        return ",".join(to_text(v) for v in value)
    return str(value)


def to_number(value: Any) -> float:
    """Numeric form used by greater_than / less_than. Non-numeric → NaN."""
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str) and PLAIN_NUMBER.match(value.strip()):
        return float(value.strip())
    return math.nan


def strict_equals(left: Any, right: Any) -> bool:
    """Equality without cross-type coercion (True is not 1, "1" is not 1)."""
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left is right
    left_num = isinstance(left, (int, float))
    right_num = isinstance(right, (int, float))
    if left_num or right_num:
        return left_num and right_num and left == right
    if type(left) is not type(right):
        return False
    return left == right


def is_empty(value: Any) -> bool:
    """Only None, "" and [] are empty — 0 and False count as present."""
    if value is None:
        return True
    if isinstance(value, str):
        return value == ""
    if isinstance(value, (list, tuple)):
        return len(value) == 0
    return False


def _regex_matches(pattern: Any, value: Any) -> bool:
    try:
        return re.search(to_text(pattern), to_text(value)) is not None
    except (re.error, RecursionError, OverflowError) as e:
        logger.debug(f"Invalid regex {pattern!r}: {e}")
        return False


# ── Condition Evaluator ───────────────────────────────
def evaluate_condition(session_state: dict, condition: LogicCondition) -> bool:
    """Evaluate a single condition against the session state.

    Unknown operators evaluate to False. Numeric comparisons against
    non-numeric data are False rather than an error, since NaN is never
    greater or less than anything.
    """
    field_value = session_state.get(condition.field)
    expected = condition.value
    operator = condition.operator

    if operator == "equals":
        return strict_equals(field_value, expected)
    elif operator == "not_equals":
        return not strict_equals(field_value, expected)
    elif operator == "contains":
        return to_text(expected) in to_text(field_value)
    elif operator == "not_contains":
        return to_text(expected) not in to_text(field_value)
    elif operator == "greater_than":
        return to_number(field_value) > to_number(expected)
    elif operator == "less_than":
        return to_number(field_value) < to_number(expected)
    elif operator == "in":
        return isinstance(expected, list) and any(strict_equals(field_value, v) for v in expected)
    elif operator == "not_in":
        # A non-list value fails both in and not_in
        return isinstance(expected, list) and not any(strict_equals(field_value, v) for v in expected)
    elif operator == "regex":
        return _regex_matches(expected, field_value)
    elif operator == "is_empty":
        return is_empty(field_value)
    elif operator == "is_not_empty":
        return not is_empty(field_value)
    return False


# ── Condition Set Combinator ──────────────────────────
def evaluate_conditions(session_state: dict, conditions: list[LogicCondition]) -> bool:
    """Left-fold a condition list into one boolean.

    Each condition's logical_operator joins it to the result accumulated so
    far, so ``A OR B AND C`` means ``(A OR B) AND C``. The first condition's
    operator is ignored and an empty list is vacuously true.
    """
    if not conditions:
        return True

    result = evaluate_condition(session_state, conditions[0])
    for condition in conditions[1:]:
        current = evaluate_condition(session_state, condition)
        if condition.logical_operator == "OR":
            result = result or current
        else:
            result = result and current
    return result


# ── Trigger Matcher ───────────────────────────────────
def matches_trigger(rule_trigger: LogicTrigger, fired: Optional[LogicTrigger]) -> bool:
    """Does a fired runtime event satisfy a rule's declared trigger?

    A step_id / field_id left unset on the rule matches any step / field.
    ``delay`` is not compared: timers are matched after they have fired.
    """
    if fired is None or rule_trigger.event != fired.event:
        return False
    if rule_trigger.step_id and rule_trigger.step_id != fired.step_id:
        return False
    if rule_trigger.field_id and rule_trigger.field_id != fired.field_id:
        return False
    return True
