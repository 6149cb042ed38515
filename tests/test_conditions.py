"""Tests for condition evaluation, condition-set folding, and trigger matching."""

import pytest

from leadflow.schemas import LogicCondition, LogicTrigger
from leadflow.services.conditions import (
    evaluate_condition,
    evaluate_conditions,
    is_empty,
    matches_trigger,
    strict_equals,
    to_number,
    to_text,
)


def cond(field, operator, value=None, logical_operator=None):
    return LogicCondition(field=field, operator=operator, value=value, logical_operator=logical_operator)


# ── Coercion helpers ─────────────────────────────────────
def test_to_text():
    assert to_text(None) == ""
    assert to_text(True) == "true"
    assert to_text(5.0) == "5"
    assert to_text(2.5) == "2.5"
    assert to_text(["a", 1]) == "a,1"


def test_to_number():
    assert to_number("42") == 42.0
    assert to_number(" 3.5 ") == 3.5
    assert to_number(True) == 1.0
    assert to_number("abc") != to_number("abc")  # NaN
    assert to_number(None) != to_number(None)


def test_strict_equals_no_cross_type():
    assert strict_equals(1, 1.0)
    assert not strict_equals("1", 1)
    assert not strict_equals(True, 1)
    assert strict_equals(None, None)
    assert strict_equals("a", "a")


def test_is_empty_only_none_blank_and_empty_list():
    assert is_empty(None)
    assert is_empty("")
    assert is_empty([])
    assert not is_empty(0)
    assert not is_empty(False)
    assert not is_empty(" ")


# ── Operators ────────────────────────────────────────────
@pytest.mark.parametrize("state,condition,expected", [
    ({"plan": "pro"}, cond("plan", "equals", "pro"), True),
    ({"plan": "pro"}, cond("plan", "not_equals", "pro"), False),
    ({"email": "a@corp.com"}, cond("email", "contains", "corp"), True),
    ({"email": "a@corp.com"}, cond("email", "not_contains", "corp"), False),
    ({}, cond("email", "contains", "x"), False),
    ({"age": "30"}, cond("age", "greater_than", 18), True),
    ({"age": 10}, cond("age", "less_than", "18"), True),
    ({"country": "US"}, cond("country", "in", ["US", "CA"]), True),
    ({"country": "FR"}, cond("country", "not_in", ["US", "CA"]), True),
    ({"zip": "90210"}, cond("zip", "regex", r"^9\d{4}$"), True),
    ({"company": ""}, cond("company", "is_empty"), True),
    ({"company": "Acme"}, cond("company", "is_not_empty"), True),
    ({"count": 0}, cond("count", "is_empty"), False),
])
def test_operators(state, condition, expected):
    assert evaluate_condition(state, condition) is expected


def test_unknown_operator_is_false():
    assert evaluate_condition({"x": 1}, cond("x", "between", [0, 2])) is False


def test_in_and_not_in_require_a_list():
    state = {"country": "US"}
    assert evaluate_condition(state, cond("country", "in", "US")) is False
    assert evaluate_condition(state, cond("country", "not_in", "US")) is False


def test_non_numeric_comparisons_are_false():
    state = {"age": "unknown"}
    assert evaluate_condition(state, cond("age", "greater_than", 18)) is False
    assert evaluate_condition(state, cond("age", "less_than", 18)) is False


def test_invalid_regex_is_false():
    assert evaluate_condition({"x": "abc"}, cond("x", "regex", "([")) is False


def test_boolean_does_not_equal_number():
    assert evaluate_condition({"opt_in": True}, cond("opt_in", "equals", 1)) is False
    assert evaluate_condition({"opt_in": True}, cond("opt_in", "equals", True)) is True


# ── Condition set ────────────────────────────────────────
def test_empty_condition_list_is_true():
    assert evaluate_conditions({}, []) is True


def test_first_logical_operator_ignored():
    conditions = [cond("a", "equals", 1, logical_operator="OR")]
    assert evaluate_conditions({"a": 2}, conditions) is False


def test_left_fold_without_precedence():
    # A OR B AND C evaluates as (A OR B) AND C
    state = {"a": 1, "b": 0, "c": 0}
    conditions = [
        cond("a", "equals", 1),
        cond("b", "equals", 1, logical_operator="OR"),
        cond("c", "equals", 1, logical_operator="AND"),
    ]
    assert evaluate_conditions(state, conditions) is False

    state["c"] = 1
    assert evaluate_conditions(state, conditions) is True


def test_missing_logical_operator_means_and():
    conditions = [cond("a", "equals", 1), cond("b", "equals", 1)]
    assert evaluate_conditions({"a": 1, "b": 2}, conditions) is False
    assert evaluate_conditions({"a": 1, "b": 1}, conditions) is True


# ── Triggers ─────────────────────────────────────────────
def test_trigger_event_must_match():
    rule = LogicTrigger(event="step_complete")
    assert matches_trigger(rule, LogicTrigger(event="step_complete", step_id="s1"))
    assert not matches_trigger(rule, LogicTrigger(event="step_enter", step_id="s1"))


def test_trigger_step_filter():
    rule = LogicTrigger(event="step_complete", step_id="s1")
    assert matches_trigger(rule, LogicTrigger(event="step_complete", step_id="s1"))
    assert not matches_trigger(rule, LogicTrigger(event="step_complete", step_id="s2"))
    assert not matches_trigger(rule, LogicTrigger(event="step_complete"))


def test_trigger_field_filter():
    rule = LogicTrigger(event="field_change", field_id="email")
    assert matches_trigger(rule, LogicTrigger(event="field_change", field_id="email"))
    assert not matches_trigger(rule, LogicTrigger(event="field_change", field_id="name"))


def test_no_fired_trigger_never_matches():
    assert not matches_trigger(LogicTrigger(event="flow_start"), None)


@pytest.mark.parametrize("raw", ["inf", "-Infinity", "nan", "1_000", "0x10", "12abc", ""])
def test_to_number_rejects_non_decimal_strings(raw):
    assert to_number(raw) != to_number(raw)  # NaN


@pytest.mark.parametrize("raw,expected", [("1e3", 1000.0), (".5", 0.5), ("5.", 5.0), ("-2.5", -2.5), ("+7", 7.0)])
def test_to_number_accepts_decimal_and_exponent(raw, expected):
    assert to_number(raw) == expected


def test_infinity_string_is_not_greater_than_anything():
    assert evaluate_condition({"budget": "inf"}, cond("budget", "greater_than", 1000)) is False
