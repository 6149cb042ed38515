"""Pydantic schemas for the logic engine and API request/response."""

from datetime import datetime
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, model_validator


# ── Result envelope ──────────────────────────────────────
class OperationResult(BaseModel):
    """Uniform outcome of every mutating operation."""

    success: bool
    errors: Optional[list[str]] = None
    rule_id: Optional[str] = None
    profile_id: Optional[str] = None
    test_id: Optional[str] = None
    flow_id: Optional[str] = None
    version: Optional[int] = None

    @classmethod
    def fail(cls, *errors: str) -> "OperationResult":
        return cls(success=False, errors=list(errors))


# ── Logic: triggers & conditions ─────────────────────────
TriggerEvent = Literal[
    "flow_start", "step_enter", "step_complete", "field_change", "timer", "external_event",
]

RuleType = Literal[
    "conditional_step", "field_population", "routing", "personalization", "validation",
]

CONDITION_OPERATORS = {
    "equals", "not_equals", "contains", "not_contains", "greater_than", "less_than",
    "in", "not_in", "regex", "is_empty", "is_not_empty",
}


class LogicTrigger(BaseModel):
    event: TriggerEvent
    step_id: Optional[str] = None
    field_id: Optional[str] = None
    delay: Optional[int] = None  # ms, timer triggers only


class LogicCondition(BaseModel):
    id: Optional[str] = None
    field: str = Field(min_length=1)
    # Kept as a plain string: unknown operators evaluate to False instead of failing
    operator: str = Field(min_length=1)
    value: Any = None
    data_type: Literal["string", "number", "boolean", "date", "array"] = "string"
    logical_operator: Optional[Literal["AND", "OR"]] = None


# ── Logic: action configs, one per action type ───────────
class StepTargetConfig(BaseModel):
    target_step_id: str = Field(min_length=1)


class FieldTargetConfig(BaseModel):
    target_field_id: str = Field(min_length=1)


class FieldValueConfig(FieldTargetConfig):
    value: Any = None


class EmailConfig(BaseModel):
    email_template: str = Field(min_length=1)
    email_recipient: Optional[str] = None


class WebhookConfig(BaseModel):
    webhook_url: str = Field(min_length=1)


class StylingConfig(BaseModel):
    css: Optional[dict[str, str]] = None
    class_name: Optional[str] = None

    @model_validator(mode="after")
    def _require_style(self):
        if not self.css and not self.class_name:
            raise ValueError("css or class_name is required")
        return self


class MessageConfig(BaseModel):
    message: str = Field(min_length=1)
    message_type: Literal["info", "success", "warning", "error"] = "info"
    duration: Optional[int] = None


class RedirectConfig(BaseModel):
    url: str = Field(min_length=1)
    target: Literal["_blank", "_self"] = "_self"


class ScoreConfig(BaseModel):
    formula: str = Field(min_length=1)
    target_field: Optional[str] = None


class StepAction(BaseModel):
    id: Optional[str] = None
    type: Literal["show_step", "hide_step", "skip_to_step"]
    config: StepTargetConfig


class SetFieldValueAction(BaseModel):
    id: Optional[str] = None
    type: Literal["set_field_value"]
    config: FieldValueConfig


class FieldVisibilityAction(BaseModel):
    id: Optional[str] = None
    type: Literal["show_field", "hide_field"]
    config: FieldTargetConfig


class SendEmailAction(BaseModel):
    id: Optional[str] = None
    type: Literal["send_email"]
    config: EmailConfig


class CallWebhookAction(BaseModel):
    id: Optional[str] = None
    type: Literal["call_webhook"]
    config: WebhookConfig


class UpdateStylingAction(BaseModel):
    id: Optional[str] = None
    type: Literal["update_styling"]
    config: StylingConfig


class ShowMessageAction(BaseModel):
    id: Optional[str] = None
    type: Literal["show_message"]
    config: MessageConfig


class RedirectAction(BaseModel):
    id: Optional[str] = None
    type: Literal["redirect"]
    config: RedirectConfig


class CalculateScoreAction(BaseModel):
    id: Optional[str] = None
    type: Literal["calculate_score"]
    config: ScoreConfig


LogicAction = Annotated[
    Union[
        StepAction,
        SetFieldValueAction,
        FieldVisibilityAction,
        SendEmailAction,
        CallWebhookAction,
        UpdateStylingAction,
        ShowMessageAction,
        RedirectAction,
        CalculateScoreAction,
    ],
    Field(discriminator="type"),
]

ACTION_TYPES = {
    "show_step", "hide_step", "skip_to_step", "set_field_value", "show_field",
    "hide_field", "send_email", "call_webhook", "update_styling", "show_message",
    "redirect", "calculate_score",
}

action_adapter = TypeAdapter(LogicAction)
actions_adapter = TypeAdapter(list[LogicAction])
conditions_adapter = TypeAdapter(list[LogicCondition])


# ── Personalization ──────────────────────────────────────
class PersonalizationRule(BaseModel):
    element: Literal[
        "step_title", "step_subtitle", "button_text", "placeholder",
        "help_text", "css_class", "image_src",
    ]
    step_id: Optional[str] = None
    field_id: Optional[str] = None
    value: str
    type: Literal["text", "html", "css", "url"] = "text"


personalizations_adapter = TypeAdapter(list[PersonalizationRule])


class ExecutionResult(BaseModel):
    """Declarative output of one rule pass — applied by the flow runtime."""

    actions: list[LogicAction] = Field(default_factory=list)
    personalizations: list[PersonalizationRule] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)


# ── Logic rule API ───────────────────────────────────────
class LogicRuleCreate(BaseModel):
    # Loosely typed on purpose: validate_logic_rule reports every problem at once
    flow_id: str
    name: str = ""
    description: str = ""
    type: Optional[str] = "conditional_step"
    trigger: Optional[dict] = None
    conditions: list[dict] = Field(default_factory=list)
    actions: list[dict] = Field(default_factory=list)
    priority: int = 0
    enabled: bool = True
    step_id: Optional[str] = None


class LogicRuleUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    type: Optional[str] = None
    trigger: Optional[dict] = None
    conditions: Optional[list[dict]] = None
    actions: Optional[list[dict]] = None
    priority: Optional[int] = None
    enabled: Optional[bool] = None
    step_id: Optional[str] = None


class LogicRuleOut(BaseModel):
    id: str
    flow_id: str
    step_id: Optional[str] = None
    name: str
    description: str
    type: str
    trigger: dict
    conditions: list
    actions: list
    priority: int
    enabled: bool
    created_at: datetime
    updated_at: Optional[datetime] = None

    @classmethod
    def from_model(cls, rule):
        from leadflow.models import load_json

        trigger = load_json(rule.trigger, {})
        return cls(
            id=rule.id,
            flow_id=rule.flow_id,
            step_id=rule.step_id,
            name=rule.name,
            description=rule.description or "",
            type=rule.type,
            trigger=trigger if isinstance(trigger, dict) else {},
            conditions=load_json(rule.conditions, []),
            actions=load_json(rule.actions, []),
            priority=rule.priority or 0,
            enabled=rule.enabled,
            created_at=rule.created_at,
            updated_at=rule.updated_at,
        )


class ExecuteRulesRequest(BaseModel):
    flow_id: str
    session_state: dict = Field(default_factory=dict)
    trigger: LogicTrigger


class PersonalizationProfileCreate(BaseModel):
    name: str
    description: str = ""
    conditions: list[LogicCondition] = Field(default_factory=list)
    personalizations: list[PersonalizationRule] = Field(default_factory=list)
    priority: int = 0
    enabled: bool = True


class SmartFieldConfig(BaseModel):
    data_source: Optional[Literal["previous_response", "external_api", "database", "calculation"]] = None
    source_field: Optional[str] = None
    api_url: Optional[str] = None
    formula: Optional[str] = None
    format: Optional[str] = None
    suggestions: Optional[list[str]] = None
    validation_rule: Optional[str] = None
    error_message: Optional[str] = None


class SmartFieldRuleCreate(BaseModel):
    field_id: str
    type: Literal["auto_populate", "smart_suggestions", "validation", "formatting"]
    config: SmartFieldConfig = Field(default_factory=SmartFieldConfig)


class SuggestionRequest(BaseModel):
    flow_id: str
    field_id: str
    current_value: str = ""
    session_state: dict = Field(default_factory=dict)


class AutoPopulateRequest(BaseModel):
    flow_id: str
    field_id: str
    session_state: dict = Field(default_factory=dict)


# ── Flow ─────────────────────────────────────────────────
class FlowCreate(BaseModel):
    name: str
    slug: str
    description: str = ""
    settings: dict = Field(default_factory=dict)
    payload: dict = Field(default_factory=dict)


class FlowVersionOut(BaseModel):
    id: str
    version: int
    status: str
    created_at: datetime

    model_config = {"from_attributes": True}


class FlowOut(BaseModel):
    id: str
    name: str
    slug: str
    description: str
    status: str
    versions: list[FlowVersionOut] = Field(default_factory=list)
    created_at: datetime

    model_config = {"from_attributes": True}


class FlowAssignment(BaseModel):
    """Which flow a visitor should see for a base flow."""

    flow_id: str
    is_variant: bool = False
    test_id: Optional[str] = None
    variant_id: Optional[str] = None


# ── A/B testing ──────────────────────────────────────────
class ABTestCreate(BaseModel):
    name: str = Field(min_length=1)
    description: str = ""
    hypothesis: str = ""
    # Share of traffic for the challenger; the control gets the rest
    traffic_split: float = Field(50.0, ge=0.0, le=100.0)
    min_sample_size: Optional[int] = Field(None, ge=1)
    confidence_level: Optional[Literal[90, 95, 99]] = None
    success_metric: Literal["conversion_rate", "completion_time", "lead_quality"] = "conversion_rate"
    variant_flow_payload: Optional[dict] = None


class ABTestVariantOut(BaseModel):
    id: str
    name: str
    flow_id: str
    traffic_allocation: float
    is_control: bool
    position: int
    is_winner: bool

    model_config = {"from_attributes": True}


class ABTestOut(BaseModel):
    id: str
    base_flow_id: str
    name: str
    description: str
    hypothesis: str
    status: str
    traffic_split: float
    min_sample_size: int
    confidence_level: int
    success_metric: str
    variants: list[ABTestVariantOut] = Field(default_factory=list)
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    created_at: datetime

    model_config = {"from_attributes": True}
