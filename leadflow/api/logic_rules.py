"""Logic Rules API — rule CRUD, rule execution, personalization, analytics, smart fields."""

from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from leadflow.database import get_db
from leadflow.models import load_json
from leadflow.schemas import (
    AutoPopulateRequest,
    ExecuteRulesRequest,
    ExecutionResult,
    LogicRuleCreate,
    LogicRuleOut,
    LogicRuleUpdate,
    OperationResult,
    PersonalizationProfileCreate,
    SmartFieldRuleCreate,
    SuggestionRequest,
)
from leadflow.services.logic_engine import LogicEngine
from leadflow.services.smart_fields import SmartFieldService

router = APIRouter(prefix="/logic-rules", tags=["logic-rules"])


def _raise_on_failure(result: OperationResult, status: int = 400) -> OperationResult:
    if not result.success:
        raise HTTPException(status, result.errors or ["Operation failed"])
    return result


# ── Rules ────────────────────────────────────────────────
@router.get("/flow/{flow_id}", response_model=list[LogicRuleOut])
async def list_flow_rules(flow_id: str, db: AsyncSession = Depends(get_db)):
    rules = await LogicEngine(db).get_flow_logic_rules(flow_id)
    return [LogicRuleOut.from_model(r) for r in rules]


@router.post("/", response_model=OperationResult, status_code=201)
async def create_rule(data: LogicRuleCreate, db: AsyncSession = Depends(get_db)):
    result = await LogicEngine(db).create_logic_rule(data.model_dump())
    return _raise_on_failure(result)


@router.post("/execute", response_model=ExecutionResult)
async def execute_rules(data: ExecuteRulesRequest, db: AsyncSession = Depends(get_db)):
    """Resolve the actions and personalizations for a fired trigger."""
    return await LogicEngine(db).execute_logic_rules(data.flow_id, data.session_state, data.trigger)


@router.get("/analytics/{flow_id}")
async def rule_analytics(flow_id: str, db: AsyncSession = Depends(get_db)):
    return await LogicEngine(db).get_logic_analytics(flow_id)


# ── Personalization profiles ────────────────────────────
@router.get("/profiles/{flow_id}")
async def list_profiles(flow_id: str, db: AsyncSession = Depends(get_db)):
    profiles = await LogicEngine(db).get_personalization_profiles(flow_id)
    return [
        {
            "id": p.id,
            "flow_id": p.flow_id,
            "name": p.name,
            "description": p.description or "",
            "conditions": load_json(p.conditions, []),
            "personalizations": load_json(p.personalizations, []),
            "priority": p.priority,
            "enabled": p.enabled,
        }
        for p in profiles
    ]


@router.post("/profiles/{flow_id}", response_model=OperationResult, status_code=201)
async def create_profile(flow_id: str, data: PersonalizationProfileCreate, db: AsyncSession = Depends(get_db)):
    result = await LogicEngine(db).create_personalization_profile(flow_id, data)
    return _raise_on_failure(result)


# ── Smart fields ─────────────────────────────────────────
class SuggestionsOut(BaseModel):
    suggestions: list[str]


class AutoPopulateOut(BaseModel):
    value: Optional[Any] = None


@router.post("/smart-fields/suggestions", response_model=SuggestionsOut)
async def smart_field_suggestions(data: SuggestionRequest, db: AsyncSession = Depends(get_db)):
    suggestions = await SmartFieldService(db).get_smart_field_suggestions(
        data.flow_id, data.field_id, data.current_value, data.session_state
    )
    return SuggestionsOut(suggestions=suggestions)


@router.post("/smart-fields/auto-populate", response_model=AutoPopulateOut)
async def auto_populate(data: AutoPopulateRequest, db: AsyncSession = Depends(get_db)):
    value = await SmartFieldService(db).auto_populate_field(data.flow_id, data.field_id, data.session_state)
    return AutoPopulateOut(value=value)


@router.post("/smart-fields/{flow_id}", response_model=OperationResult, status_code=201)
async def create_smart_fields(
    flow_id: str, rules: list[SmartFieldRuleCreate], db: AsyncSession = Depends(get_db)
):
    result = await SmartFieldService(db).create_smart_field_rules(flow_id, rules)
    return _raise_on_failure(result)


# ── Single rule ──────────────────────────────────────────
@router.get("/{rule_id}", response_model=LogicRuleOut)
async def get_rule(rule_id: str, db: AsyncSession = Depends(get_db)):
    rule = await LogicEngine(db).get_logic_rule(rule_id)
    if not rule:
        raise HTTPException(404, "Rule not found")
    return LogicRuleOut.from_model(rule)


@router.patch("/{rule_id}", response_model=OperationResult)
async def update_rule(rule_id: str, data: LogicRuleUpdate, db: AsyncSession = Depends(get_db)):
    result = await LogicEngine(db).update_logic_rule(rule_id, data.model_dump(exclude_unset=True))
    if result.errors == ["Rule not found"]:
        raise HTTPException(404, "Rule not found")
    return _raise_on_failure(result)


@router.delete("/{rule_id}", status_code=204)
async def delete_rule(rule_id: str, db: AsyncSession = Depends(get_db)):
    result = await LogicEngine(db).delete_logic_rule(rule_id)
    if not result.success:
        raise HTTPException(404, "Rule not found")
