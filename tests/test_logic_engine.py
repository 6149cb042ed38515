"""Tests for rule validation, CRUD, execution, personalization and analytics."""

import json

import pytest

from leadflow.models.logic import LogicRule
from leadflow.schemas import LogicTrigger, PersonalizationProfileCreate
from leadflow.services.logic_engine import LogicEngine, validate_logic_rule

FLOW_ID = "flow-1"


def make_rule(**overrides):
    rule = {
        "flow_id": FLOW_ID,
        "name": "Skip pricing for students",
        "type": "conditional_step",
        "trigger": {"event": "step_complete", "step_id": "about-you"},
        "conditions": [{"field": "role", "operator": "equals", "value": "student"}],
        "actions": [{"type": "skip_to_step", "config": {"target_step_id": "thanks"}}],
        "priority": 0,
    }
    rule.update(overrides)
    return rule


FIRED = LogicTrigger(event="step_complete", step_id="about-you")


# ── Validation ───────────────────────────────────────────
def test_valid_rule_has_no_errors():
    assert validate_logic_rule(make_rule()) == []


def test_validation_reports_every_problem():
    errors = validate_logic_rule({"name": " ", "type": "", "trigger": None, "conditions": [], "actions": []})
    assert "Rule name is required" in errors
    assert "Rule type is required" in errors
    assert "Trigger is required" in errors
    assert "At least one condition is required" in errors
    assert "At least one action is required" in errors


def test_validation_condition_messages():
    errors = validate_logic_rule(make_rule(conditions=[
        {"operator": "equals", "value": 1},
        {"field": "x", "operator": "approximately"},
        {"field": "y", "operator": "equals", "logical_operator": "XOR"},
    ]))
    assert "Condition 1: Field is required" in errors
    assert any(e.startswith("Condition 2: Unknown operator") for e in errors)
    assert "Condition 3: Logical operator must be AND or OR" in errors


def test_validation_action_messages():
    errors = validate_logic_rule(make_rule(actions=[
        {"type": "show_step", "config": {}},
        {"type": "hide_field", "config": {}},
        {"type": "teleport", "config": {}},
        {"config": {}},
        {"type": "update_styling", "config": {}},
    ]))
    assert "Action 1: Target step ID is required" in errors
    assert "Action 2: Target field ID is required" in errors
    assert any(e.startswith("Action 3: Unknown action type") for e in errors)
    assert "Action 4: Type is required" in errors
    assert any(e.startswith("Action 5:") and "css or class_name" in e for e in errors)


def test_validation_rejects_unknown_rule_type():
    errors = validate_logic_rule(make_rule(type="magic"))
    assert any(e.startswith("Unknown rule type") for e in errors)


# ── CRUD ─────────────────────────────────────────────────
@pytest.mark.asyncio
async def test_create_and_get_rule(db):
    engine = LogicEngine(db)
    result = await engine.create_logic_rule(make_rule())
    assert result.success
    assert result.rule_id

    rule = await engine.get_logic_rule(result.rule_id)
    assert rule.name == "Skip pricing for students"
    assert rule.enabled is True
    assert json.loads(rule.trigger)["step_id"] == "about-you"


@pytest.mark.asyncio
async def test_create_rule_requires_flow(db):
    result = await LogicEngine(db).create_logic_rule(make_rule(flow_id=""))
    assert not result.success
    assert result.errors[0] == "Flow ID is required"


@pytest.mark.asyncio
async def test_invalid_rule_is_not_stored(db):
    engine = LogicEngine(db)
    result = await engine.create_logic_rule(make_rule(actions=[]))
    assert not result.success
    assert await engine.get_flow_logic_rules(FLOW_ID) == []


@pytest.mark.asyncio
async def test_update_rule_revalidates(db):
    engine = LogicEngine(db)
    rule_id = (await engine.create_logic_rule(make_rule())).rule_id

    bad = await engine.update_logic_rule(rule_id, {"conditions": []})
    assert not bad.success
    assert "At least one condition is required" in bad.errors

    ok = await engine.update_logic_rule(rule_id, {"name": "Renamed", "priority": 3})
    assert ok.success
    rule = await engine.get_logic_rule(rule_id)
    assert rule.name == "Renamed"
    assert rule.priority == 3


@pytest.mark.asyncio
async def test_update_and_delete_missing_rule(db):
    engine = LogicEngine(db)
    assert (await engine.update_logic_rule("nope", {"name": "x"})).errors == ["Rule not found"]
    assert not (await engine.delete_logic_rule("nope")).success


@pytest.mark.asyncio
async def test_delete_rule(db):
    engine = LogicEngine(db)
    rule_id = (await engine.create_logic_rule(make_rule())).rule_id
    assert (await engine.delete_logic_rule(rule_id)).success
    assert await engine.get_logic_rule(rule_id) is None


# ── Execution ────────────────────────────────────────────
@pytest.mark.asyncio
async def test_matching_rule_returns_its_actions(db):
    engine = LogicEngine(db)
    await engine.create_logic_rule(make_rule())

    result = await engine.execute_logic_rules(FLOW_ID, {"role": "student"}, FIRED)
    assert result.errors == []
    assert len(result.actions) == 1
    assert result.actions[0].type == "skip_to_step"
    assert result.actions[0].config.target_step_id == "thanks"


@pytest.mark.asyncio
async def test_non_matching_conditions_and_triggers(db):
    engine = LogicEngine(db)
    await engine.create_logic_rule(make_rule())

    no_match = await engine.execute_logic_rules(FLOW_ID, {"role": "manager"}, FIRED)
    assert no_match.actions == []

    other_step = LogicTrigger(event="step_complete", step_id="contact")
    assert (await engine.execute_logic_rules(FLOW_ID, {"role": "student"}, other_step)).actions == []


@pytest.mark.asyncio
async def test_actions_follow_priority_order(db):
    engine = LogicEngine(db)
    await engine.create_logic_rule(make_rule(
        name="Late", priority=10,
        actions=[{"type": "show_message", "config": {"message": "second"}}],
    ))
    await engine.create_logic_rule(make_rule(
        name="Early", priority=1,
        actions=[
            {"type": "set_field_value", "config": {"target_field_id": "segment", "value": "edu"}},
            {"type": "show_message", "config": {"message": "first"}},
        ],
    ))

    result = await engine.execute_logic_rules(FLOW_ID, {"role": "student"}, FIRED)
    assert [a.type for a in result.actions] == ["set_field_value", "show_message", "show_message"]
    assert result.actions[1].config.message == "first"
    assert result.actions[2].config.message == "second"


@pytest.mark.asyncio
async def test_disabled_rules_are_skipped(db):
    engine = LogicEngine(db)
    await engine.create_logic_rule(make_rule(enabled=False))
    result = await engine.execute_logic_rules(FLOW_ID, {"role": "student"}, FIRED)
    assert result.actions == []


@pytest.mark.asyncio
async def test_broken_rule_does_not_stop_others(db):
    engine = LogicEngine(db)
    await engine.create_logic_rule(make_rule(name="Healthy", priority=2))
    db.add(LogicRule(
        flow_id=FLOW_ID,
        name="Broken",
        priority=1,
        trigger=json.dumps({"event": "step_complete"}),
        conditions="[{not json",
        actions=json.dumps([]),
    ))
    await db.commit()

    result = await engine.execute_logic_rules(FLOW_ID, {"role": "student"}, FIRED)
    assert len(result.actions) == 1
    assert len(result.errors) == 1
    assert result.errors[0].startswith("Rule 'Broken':")


@pytest.mark.asyncio
async def test_execution_is_tracked(db):
    engine = LogicEngine(db)
    rule_id = (await engine.create_logic_rule(make_rule())).rule_id

    await engine.execute_logic_rules(FLOW_ID, {"role": "student"}, FIRED)
    await engine.execute_logic_rules(FLOW_ID, {"role": "student"}, FIRED)

    analytics = await engine.get_logic_analytics(FLOW_ID)
    assert len(analytics) == 1
    assert analytics[0]["rule_id"] == rule_id
    assert analytics[0]["rule_name"] == "Skip pricing for students"
    assert analytics[0]["executions"] == 2
    assert analytics[0]["success_rate"] == 100
    assert analytics[0]["last_executed"] is not None


# ── Personalization ──────────────────────────────────────
@pytest.mark.asyncio
async def test_personalizations_ordered_by_profile_priority(db):
    engine = LogicEngine(db)
    await engine.create_personalization_profile(FLOW_ID, PersonalizationProfileCreate(
        name="Everyone",
        priority=5,
        personalizations=[{"element": "button_text", "value": "Continue"}],
    ))
    await engine.create_personalization_profile(FLOW_ID, PersonalizationProfileCreate(
        name="Enterprise",
        priority=1,
        conditions=[{"field": "company_size", "operator": "greater_than", "value": 500}],
        personalizations=[{"element": "step_title", "step_id": "s1", "value": "Welcome, enterprise team"}],
    ))

    big = await engine.execute_logic_rules(FLOW_ID, {"company_size": "1000"}, FIRED)
    assert [p.value for p in big.personalizations] == ["Welcome, enterprise team", "Continue"]

    small = await engine.execute_logic_rules(FLOW_ID, {"company_size": "20"}, FIRED)
    assert [p.value for p in small.personalizations] == ["Continue"]


@pytest.mark.asyncio
async def test_profile_requires_name(db):
    result = await LogicEngine(db).create_personalization_profile(
        FLOW_ID, PersonalizationProfileCreate(name="  ")
    )
    assert not result.success


@pytest.mark.asyncio
async def test_rule_without_conditions_always_fires(db):
    db.add(LogicRule(
        flow_id=FLOW_ID,
        name="Always greet",
        trigger=json.dumps({"event": "flow_start"}),
        conditions=json.dumps([]),
        actions=json.dumps([{"type": "show_message", "config": {"message": "Hi there"}}]),
    ))
    await db.commit()

    result = await LogicEngine(db).execute_logic_rules(FLOW_ID, {}, LogicTrigger(event="flow_start"))
    assert [a.config.message for a in result.actions] == ["Hi there"]
