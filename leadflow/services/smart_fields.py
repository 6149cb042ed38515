"""Smart field rules — suggestions and auto-population for individual form fields."""

import json
import logging
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from leadflow.config import get_settings
from leadflow.models import Lead, load_json
from leadflow.models.logic import SmartFieldRule
from leadflow.schemas import OperationResult, SmartFieldRuleCreate
from leadflow.services.external import expand_url, fetch_json
from leadflow.services.formula import evaluate_formula

logger = logging.getLogger(__name__)

PER_SOURCE_LIMIT = 5
LEAD_SAMPLE_SIZE = 100


class SmartFieldService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def create_smart_field_rules(
        self, flow_id: str, rules: list[SmartFieldRuleCreate]
    ) -> OperationResult:
        try:
            for rule in rules:
                self.db.add(SmartFieldRule(
                    flow_id=flow_id,
                    field_id=rule.field_id,
                    type=rule.type,
                    config=json.dumps(rule.config.model_dump(exclude_none=True)),
                ))
            await self.db.commit()
        except Exception as e:
            await self.db.rollback()
            logger.error(f"Failed to create smart field rules for flow {flow_id}: {e}")
            return OperationResult.fail(str(e))
        return OperationResult(success=True, flow_id=flow_id)

    async def _rules_for(self, flow_id: str, field_id: str, rule_type: str) -> list[SmartFieldRule]:
        result = await self.db.execute(
            select(SmartFieldRule).where(
                SmartFieldRule.flow_id == flow_id,
                SmartFieldRule.field_id == field_id,
                SmartFieldRule.type == rule_type,
            ).order_by(SmartFieldRule.created_at.asc())
        )
        return list(result.scalars().all())

    async def get_smart_field_suggestions(
        self, flow_id: str, field_id: str, current_value: str, session_state: dict
    ) -> list[str]:
        """Collect suggestions from every suggestion rule on the field, de-duplicated."""
        try:
            rules = await self._rules_for(flow_id, field_id, "smart_suggestions")
            suggestions: list[str] = []
            for rule in rules:
                config = load_json(rule.config, {})
                source = config.get("data_source")
                if source == "previous_response":
                    suggestions.extend(await self.previous_response_suggestions(field_id, current_value))
                elif source == "external_api":
                    if config.get("api_url"):
                        suggestions.extend(
                            await self.api_suggestions(config["api_url"], current_value, session_state)
                        )
                else:
                    needle = current_value.lower()
                    suggestions.extend(
                        s for s in config.get("suggestions") or [] if needle in s.lower()
                    )
        except Exception as e:
            logger.error(f"Failed to get smart field suggestions for {field_id}: {e}")
            return []

        return list(dict.fromkeys(suggestions))[: get_settings().max_suggestions]

    async def previous_response_suggestions(self, field_id: str, current_value: str) -> list[str]:
        result = await self.db.execute(
            select(Lead.responses).order_by(Lead.created_at.desc()).limit(LEAD_SAMPLE_SIZE)
        )
        needle = current_value.lower()
        found: list[str] = []
        for (raw,) in result.all():
            response = load_json(raw, {})
            value = response.get(field_id) if isinstance(response, dict) else None
            if isinstance(value, str) and value and needle in value.lower() and value not in found:
                found.append(value)
                if len(found) >= PER_SOURCE_LIMIT:
                    break
        return found

    async def api_suggestions(self, api_url: str, current_value: str, session_state: dict) -> list[str]:
        data = await fetch_json(expand_url(api_url, session_state), params={"q": current_value})
        if not isinstance(data, list):
            return []
        return [str(item) for item in data[:PER_SOURCE_LIMIT]]

    async def auto_populate_field(self, flow_id: str, field_id: str, session_state: dict) -> Optional[Any]:
        """Value for a field from its first auto-populate rule, or None."""
        try:
            rules = await self._rules_for(flow_id, field_id, "auto_populate")
            if not rules:
                return None
            config = load_json(rules[0].config, {})
            source = config.get("data_source")

            if source == "previous_response":
                return session_state.get(config.get("source_field") or "") or None
            if source == "calculation":
                return evaluate_formula(config["formula"], session_state) if config.get("formula") else None
            if source == "external_api":
                if not config.get("api_url"):
                    return None
                return await fetch_json(expand_url(config["api_url"], session_state))
            return None
        except Exception as e:
            logger.error(f"Failed to auto-populate field {field_id}: {e}")
            return None
