"""Logic rule engine — selects, evaluates, and orders flow rules and personalizations."""

import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Optional

from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from leadflow.models import utcnow
from leadflow.models.logic import LogicRule, LogicRuleAnalytics, PersonalizationProfile
from leadflow.schemas import (
    ACTION_TYPES,
    CONDITION_OPERATORS,
    ExecutionResult,
    LogicAction,
    LogicCondition,
    LogicTrigger,
    OperationResult,
    PersonalizationProfileCreate,
    PersonalizationRule,
    action_adapter,
    actions_adapter,
    conditions_adapter,
    personalizations_adapter,
)
from leadflow.services.conditions import evaluate_conditions, matches_trigger

logger = logging.getLogger(__name__)

RULE_TYPES = {"conditional_step", "field_population", "routing", "personalization", "validation"}

STEP_ACTIONS = {"show_step", "hide_step", "skip_to_step"}
FIELD_ACTIONS = {"set_field_value", "show_field", "hide_field"}

EDITABLE_FIELDS = ("name", "description", "type", "trigger", "conditions", "actions", "priority", "enabled", "step_id")
JSON_FIELDS = ("trigger", "conditions", "actions")


def describe_error(exc: Exception) -> str:
    """One-line, human-readable message for an exception."""
    if isinstance(exc, ValidationError):
        parts = []
        for err in exc.errors():
            loc = ".".join(str(p) for p in err.get("loc", ()))
            parts.append(f"{loc}: {err['msg']}" if loc else err["msg"])
        return "; ".join(parts)
    return str(exc) or exc.__class__.__name__


# ── Validation ─────────────────────────────────────────
def validate_logic_rule(rule: dict) -> list[str]:
    """Check a rule definition before it is written. Returns error messages."""
    errors: list[str] = []

    if not (rule.get("name") or "").strip():
        errors.append("Rule name is required")

    rule_type = rule.get("type")
    if not rule_type:
        errors.append("Rule type is required")
    elif rule_type not in RULE_TYPES:
        errors.append(f"Unknown rule type '{rule_type}'")

    trigger = rule.get("trigger")
    if not trigger:
        errors.append("Trigger is required")
    else:
        try:
            LogicTrigger.model_validate(trigger)
        except ValidationError as e:
            errors.append(f"Trigger: {describe_error(e)}")

    conditions = rule.get("conditions") or []
    actions = rule.get("actions") or []
    if not conditions:
        errors.append("At least one condition is required")
    if not actions:
        errors.append("At least one action is required")

    for index, condition in enumerate(conditions, start=1):
        if not isinstance(condition, dict):
            errors.append(f"Condition {index}: must be an object")
            continue
        if not condition.get("field"):
            errors.append(f"Condition {index}: Field is required")
        operator = condition.get("operator")
        if not operator:
            errors.append(f"Condition {index}: Operator is required")
        elif operator not in CONDITION_OPERATORS:
            errors.append(f"Condition {index}: Unknown operator '{operator}'")
        if condition.get("logical_operator") not in (None, "AND", "OR"):
            errors.append(f"Condition {index}: Logical operator must be AND or OR")

    for index, action in enumerate(actions, start=1):
        if not isinstance(action, dict):
            errors.append(f"Action {index}: must be an object")
            continue
        action_type = action.get("type")
        config = action.get("config") or {}
        if not action_type:
            errors.append(f"Action {index}: Type is required")
            continue
        if action_type not in ACTION_TYPES:
            errors.append(f"Action {index}: Unknown action type '{action_type}'")
            continue
        if action_type in STEP_ACTIONS and not config.get("target_step_id"):
            errors.append(f"Action {index}: Target step ID is required")
            continue
        if action_type in FIELD_ACTIONS and not config.get("target_field_id"):
            errors.append(f"Action {index}: Target field ID is required")
            continue
        try:
            action_adapter.validate_python({**action, "config": config})
        except ValidationError as e:
            errors.append(f"Action {index}: {describe_error(e)}")

    return errors


# ── Parsed rule snapshots ──────────────────────────────
@dataclass
class _LoadedRule:
    """Plain snapshot of a stored rule, detached from the session."""
    id: str
    flow_id: str
    name: str
    priority: int
    trigger_raw: Any
    conditions_raw: Any
    actions_raw: Any

    def trigger(self) -> LogicTrigger:
        return LogicTrigger.model_validate(_decode(self.trigger_raw))

    def conditions(self) -> list[LogicCondition]:
        return conditions_adapter.validate_python(_decode(self.conditions_raw))

    def actions(self) -> list[LogicAction]:
        return actions_adapter.validate_python(_decode(self.actions_raw))


@dataclass
class _LoadedProfile:
    id: str
    name: str
    priority: int
    conditions_raw: Any
    personalizations_raw: Any

    def conditions(self) -> list[LogicCondition]:
        return conditions_adapter.validate_python(_decode(self.conditions_raw))

    def personalizations(self) -> list[PersonalizationRule]:
        return personalizations_adapter.validate_python(_decode(self.personalizations_raw))


def _decode(raw):
    # Stored rules are JSON text; bad JSON must surface as a rule error
    if isinstance(raw, str):
        return json.loads(raw)
    return raw


# ── Rule Engine ────────────────────────────────────────
class LogicEngine:
    """Loads flow rules and profiles and resolves them against session state."""

    def __init__(self, db: AsyncSession):
        self.db = db

    # -- Rules CRUD -------------------------------------------------
    async def get_flow_logic_rules(self, flow_id: str) -> list[LogicRule]:
        result = await self.db.execute(
            select(LogicRule)
            .where(LogicRule.flow_id == flow_id)
            .order_by(LogicRule.priority.asc(), LogicRule.created_at.asc())
        )
        return list(result.scalars().all())

    async def get_logic_rule(self, rule_id: str) -> Optional[LogicRule]:
        result = await self.db.execute(select(LogicRule).where(LogicRule.id == rule_id))
        return result.scalar_one_or_none()

    async def create_logic_rule(self, data: dict) -> OperationResult:
        """Validate and store a new rule."""
        errors = validate_logic_rule(data)
        if not data.get("flow_id"):
            errors.insert(0, "Flow ID is required")
        if errors:
            return OperationResult(success=False, errors=errors)

        try:
            rule = LogicRule(
                flow_id=data["flow_id"],
                step_id=data.get("step_id"),
                name=data["name"].strip(),
                description=data.get("description") or "",
                type=data["type"],
                trigger=json.dumps(data["trigger"]),
                conditions=json.dumps(data["conditions"]),
                actions=json.dumps(data["actions"]),
                priority=data.get("priority") or 0,
                enabled=data.get("enabled", True),
            )
            self.db.add(rule)
            await self.db.commit()
        except Exception as e:
            await self.db.rollback()
            logger.error(f"Failed to create logic rule: {e}")
            return OperationResult.fail(describe_error(e))

        return OperationResult(success=True, rule_id=rule.id)

    async def update_logic_rule(self, rule_id: str, updates: dict) -> OperationResult:
        """Apply a partial update. Conditions/actions changes are re-validated."""
        rule = await self.get_logic_rule(rule_id)
        if not rule:
            return OperationResult.fail("Rule not found")

        updates = {k: v for k, v in updates.items() if k in EDITABLE_FIELDS}
        if "conditions" in updates or "actions" in updates:
            merged = {
                "name": rule.name,
                "type": rule.type,
                "trigger": _safe_decode(rule.trigger, {}),
                "conditions": _safe_decode(rule.conditions, []),
                "actions": _safe_decode(rule.actions, []),
            }
            merged.update(updates)
            errors = validate_logic_rule(merged)
            if errors:
                return OperationResult(success=False, errors=errors)

        try:
            for key, value in updates.items():
                setattr(rule, key, json.dumps(value) if key in JSON_FIELDS else value)
            await self.db.commit()
        except Exception as e:
            await self.db.rollback()
            logger.error(f"Failed to update logic rule {rule_id}: {e}")
            return OperationResult.fail(describe_error(e))

        return OperationResult(success=True, rule_id=rule_id)

    async def delete_logic_rule(self, rule_id: str) -> OperationResult:
        rule = await self.get_logic_rule(rule_id)
        if not rule:
            return OperationResult.fail("Rule not found")
        await self.db.delete(rule)
        await self.db.commit()
        return OperationResult(success=True, rule_id=rule_id)

    # -- Personalization profiles -----------------------------------
    async def get_personalization_profiles(self, flow_id: str) -> list[PersonalizationProfile]:
        result = await self.db.execute(
            select(PersonalizationProfile)
            .where(PersonalizationProfile.flow_id == flow_id)
            .order_by(PersonalizationProfile.priority.asc(), PersonalizationProfile.created_at.asc())
        )
        return list(result.scalars().all())

    async def create_personalization_profile(
        self, flow_id: str, data: PersonalizationProfileCreate
    ) -> OperationResult:
        if not data.name.strip():
            return OperationResult.fail("Profile name is required")

        try:
            profile = PersonalizationProfile(
                flow_id=flow_id,
                name=data.name.strip(),
                description=data.description,
                conditions=json.dumps([c.model_dump() for c in data.conditions]),
                personalizations=json.dumps([p.model_dump() for p in data.personalizations]),
                priority=data.priority,
                enabled=data.enabled,
            )
            self.db.add(profile)
            await self.db.commit()
        except Exception as e:
            await self.db.rollback()
            logger.error(f"Failed to create personalization profile: {e}")
            return OperationResult.fail(describe_error(e))

        return OperationResult(success=True, profile_id=profile.id)

    # -- Execution --------------------------------------------------
    async def execute_logic_rules(
        self, flow_id: str, session_state: dict, trigger: LogicTrigger
    ) -> ExecutionResult:
        """Resolve the actions and personalizations for a fired trigger.

        Enabled rules whose trigger matches are evaluated in ascending
        priority; each matching rule contributes its actions in stored order.
        A rule that fails is reported in ``errors`` and skipped. Enabled
        profiles are matched on conditions alone. Nothing is executed here:
        the caller applies the returned actions in order, so on conflicts the
        last one wins.
        """
        output = ExecutionResult()
        try:
            rules = [
                _LoadedRule(
                    id=r.id,
                    flow_id=r.flow_id,
                    name=r.name,
                    priority=r.priority or 0,
                    trigger_raw=r.trigger,
                    conditions_raw=r.conditions,
                    actions_raw=r.actions,
                )
                for r in await self.get_flow_logic_rules(flow_id)
                if r.enabled
            ]
            profiles = [
                _LoadedProfile(
                    id=p.id,
                    name=p.name,
                    priority=p.priority or 0,
                    conditions_raw=p.conditions,
                    personalizations_raw=p.personalizations,
                )
                for p in await self.get_personalization_profiles(flow_id)
                if p.enabled
            ]
        except Exception as e:
            logger.error(f"Failed to load logic for flow {flow_id}: {e}")
            output.errors.append(describe_error(e))
            return output

        output.personalizations.extend(self._resolve_personalizations(profiles, session_state, output.errors))

        triggered = []
        for rule in rules:
            try:
                if matches_trigger(rule.trigger(), trigger):
                    triggered.append(rule)
            except Exception as e:
                logger.error(f"Rule {rule.id} has an invalid trigger: {e}")
                output.errors.append(f"Rule '{rule.name}': {describe_error(e)}")

        for rule in sorted(triggered, key=lambda r: r.priority):
            start = time.monotonic()
            try:
                conditions = rule.conditions()
                actions = rule.actions()
                if evaluate_conditions(session_state, conditions):
                    output.actions.extend(actions)
                    elapsed = int((time.monotonic() - start) * 1000)
                    await self.track_rule_execution(rule.id, rule.flow_id, True, elapsed)
            except Exception as e:
                logger.error(f"Failed to execute rule {rule.id}: {e}")
                output.errors.append(f"Rule '{rule.name}': {describe_error(e)}")
                await self.track_rule_execution(rule.id, rule.flow_id, False, 0)

        return output

    def _resolve_personalizations(
        self, profiles: list[_LoadedProfile], session_state: dict, errors: list[str]
    ) -> list[PersonalizationRule]:
        active = []
        for profile in profiles:
            try:
                if evaluate_conditions(session_state, profile.conditions()):
                    active.append((profile, profile.personalizations()))
            except Exception as e:
                logger.error(f"Failed to evaluate personalization profile {profile.id}: {e}")
                errors.append(f"Profile '{profile.name}': {describe_error(e)}")

        resolved = []
        for _, personalizations in sorted(active, key=lambda item: item[0].priority):
            resolved.extend(personalizations)
        return resolved

    # -- Analytics --------------------------------------------------
    async def track_rule_execution(
        self, rule_id: str, flow_id: Optional[str], success: bool, execution_ms: int
    ) -> None:
        """Update a rule's running counters. Never raises."""
        try:
            result = await self.db.execute(
                select(LogicRuleAnalytics).where(LogicRuleAnalytics.rule_id == rule_id)
            )
            stats = result.scalar_one_or_none()
            now = utcnow()

            if stats:
                executions = (stats.executions or 0) + 1
                successful = (stats.successful_executions or 0) + (1 if success else 0)
                stats.avg_execution_time = round(
                    ((stats.avg_execution_time or 0) * (stats.executions or 0) + execution_ms) / executions
                )
                stats.executions = executions
                stats.successful_executions = successful
                stats.success_rate = round(successful / executions * 100)
                stats.last_executed = now
            else:
                self.db.add(LogicRuleAnalytics(
                    rule_id=rule_id,
                    flow_id=flow_id,
                    executions=1,
                    successful_executions=1 if success else 0,
                    success_rate=100 if success else 0,
                    avg_execution_time=execution_ms,
                    last_executed=now,
                ))
            await self.db.commit()
        except Exception as e:
            logger.warning(f"Failed to track execution of rule {rule_id}: {e}")
            try:
                await self.db.rollback()
            except Exception as rollback_error:
                logger.warning(f"Rollback after tracking failure also failed: {rollback_error}")

    async def get_logic_analytics(self, flow_id: str) -> list[dict]:
        """Execution stats for every tracked rule of a flow, busiest first."""
        try:
            result = await self.db.execute(
                select(LogicRuleAnalytics, LogicRule.name)
                .outerjoin(LogicRule, LogicRule.id == LogicRuleAnalytics.rule_id)
                .where(LogicRuleAnalytics.flow_id == flow_id)
                .order_by(LogicRuleAnalytics.executions.desc())
            )
            rows = result.all()
        except Exception as e:
            logger.error(f"Failed to get logic analytics for flow {flow_id}: {e}")
            return []

        return [
            {
                "rule_id": stats.rule_id,
                "rule_name": name or "Unknown Rule",
                "executions": stats.executions or 0,
                "success_rate": stats.success_rate or 0,
                "avg_execution_time": stats.avg_execution_time or 0,
                "last_executed": stats.last_executed.isoformat() if stats.last_executed else None,
                "impact_on_conversion": stats.impact_on_conversion or 0.0,
            }
            for stats, name in rows
        ]


def _safe_decode(raw, default):
    try:
        return _decode(raw)
    except (json.JSONDecodeError, TypeError):
        return default
