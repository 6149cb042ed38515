"""SQLAlchemy models — portable across SQLite and PostgreSQL."""

import json
import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text

from leadflow.database import Base


def utcnow():
    return datetime.now(timezone.utc)


def new_uuid():
    return str(uuid.uuid4())


def load_json(raw, default):
    """Decode a JSON text column, falling back to ``default`` on bad data."""
    if raw is None:
        return default
    if not isinstance(raw, str):
        return raw
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return default


# ── Flow ────────────────────────────────────────────────
class Flow(Base):
    """A lead-capture flow. Its content lives in versioned payloads."""

    __tablename__ = "flows"

    id = Column(String(36), primary_key=True, default=new_uuid)
    name = Column(String(300), nullable=False)
    slug = Column(String(300), unique=True, nullable=False, index=True)
    description = Column(Text, default="")
    status = Column(String(20), default="draft")  # draft|published|archived
    settings = Column(Text, default="{}")  # JSON stored as text for portability
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


# ── Flow Version ────────────────────────────────────────
class FlowVersion(Base):
    """Immutable snapshot of a flow's full configuration."""

    __tablename__ = "flow_versions"

    id = Column(String(36), primary_key=True, default=new_uuid)
    flow_id = Column(String(36), ForeignKey("flows.id"), nullable=False, index=True)
    slug = Column(String(300), nullable=False)
    version = Column(Integer, nullable=False, default=1)
    status = Column(String(20), default="draft")  # draft|published|archived
    payload = Column(Text, default="{}")
    created_at = Column(DateTime, default=utcnow)


# ── Flow Audit ──────────────────────────────────────────
class FlowAudit(Base):
    """Append-only audit trail of changes made to a flow."""

    __tablename__ = "flow_audit"

    id = Column(String(36), primary_key=True, default=new_uuid)
    flow_id = Column(String(36), ForeignKey("flows.id"), nullable=False, index=True)
    action = Column(String(50), nullable=False)  # ab_test_promotion|...
    meta = Column(Text, default="{}")
    created_at = Column(DateTime, default=utcnow)


# ── Lead ────────────────────────────────────────────────
class Lead(Base):
    """A captured lead: the responses a visitor gave while going through a flow."""

    __tablename__ = "leads"

    id = Column(String(36), primary_key=True, default=new_uuid)
    flow_id = Column(String(36), ForeignKey("flows.id"), nullable=True, index=True)
    visitor_id = Column(String(200), default="")
    responses = Column(Text, default="{}")  # JSON: {field_id: value}
    created_at = Column(DateTime, default=utcnow)
