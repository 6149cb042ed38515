"""Logic builder models — rules, personalization profiles, smart fields, analytics."""

from sqlalchemy import Boolean, Column, DateTime, Float, ForeignKey, Integer, String, Text

from leadflow.database import Base
from leadflow.models import new_uuid, utcnow


class LogicRule(Base):
    """Trigger → conditions → actions rule attached to a flow."""

    __tablename__ = "logic_rules"

    id = Column(String(36), primary_key=True, default=new_uuid)
    flow_id = Column(String(36), ForeignKey("flows.id"), nullable=False, index=True)
    step_id = Column(String(100), nullable=True)
    name = Column(String(300), nullable=False)
    description = Column(Text, default="")
    # conditional_step|field_population|routing|personalization|validation
    type = Column(String(30), default="conditional_step")
    trigger = Column(Text, default="{}")
    # JSON: {"event": "step_complete", "step_id": "s1", "field_id": null, "delay": null}
    conditions = Column(Text, default="[]")
    # JSON: [{"field": "budget", "operator": "greater_than", "value": 1000, "logical_operator": "AND"}]
    actions = Column(Text, default="[]")
    # JSON: [{"type": "skip_to_step", "config": {"target_step_id": "s4"}}]
    priority = Column(Integer, default=0)  # Lower = evaluated first
    enabled = Column(Boolean, default=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class PersonalizationProfile(Base):
    """Condition-gated set of content overrides, applied regardless of trigger."""

    __tablename__ = "personalization_profiles"

    id = Column(String(36), primary_key=True, default=new_uuid)
    flow_id = Column(String(36), ForeignKey("flows.id"), nullable=False, index=True)
    name = Column(String(300), nullable=False)
    description = Column(Text, default="")
    conditions = Column(Text, default="[]")
    personalizations = Column(Text, default="[]")
    # JSON: [{"element": "step_title", "step_id": "s1", "value": "Hi!", "type": "text"}]
    priority = Column(Integer, default=0)
    enabled = Column(Boolean, default=True)
    created_at = Column(DateTime, default=utcnow)


class LogicRuleAnalytics(Base):
    """Running execution counters for a single rule."""

    __tablename__ = "logic_rule_analytics"

    id = Column(String(36), primary_key=True, default=new_uuid)
    rule_id = Column(String(36), unique=True, nullable=False, index=True)
    flow_id = Column(String(36), nullable=True, index=True)
    executions = Column(Integer, default=0)
    successful_executions = Column(Integer, default=0)
    success_rate = Column(Integer, default=0)  # percent
    avg_execution_time = Column(Integer, default=0)  # ms
    impact_on_conversion = Column(Float, default=0.0)
    last_executed = Column(DateTime, nullable=True)


class SmartFieldRule(Base):
    """Auto-populate / suggestion behaviour for a single form field."""

    __tablename__ = "smart_field_rules"

    id = Column(String(36), primary_key=True, default=new_uuid)
    flow_id = Column(String(36), ForeignKey("flows.id"), nullable=False, index=True)
    field_id = Column(String(100), nullable=False, index=True)
    type = Column(String(30), nullable=False)  # auto_populate|smart_suggestions|validation|formatting
    config = Column(Text, default="{}")
    # JSON: {"data_source": "calculation", "formula": "price * qty"}
    created_at = Column(DateTime, default=utcnow)
