"""A/B Testing models."""

from sqlalchemy import Boolean, Column, DateTime, Float, ForeignKey, Integer, String, Text

from leadflow.database import Base
from leadflow.models import new_uuid, utcnow


class ABTest(Base):
    """A/B test splitting visitors of a base flow between flow variants."""

    __tablename__ = "ab_tests"

    id = Column(String(36), primary_key=True, default=new_uuid)
    base_flow_id = Column(String(36), ForeignKey("flows.id"), nullable=False, index=True)
    name = Column(String(300), nullable=False)
    description = Column(Text, default="")
    hypothesis = Column(Text, default="")
    status = Column(String(20), default="draft")  # draft|running|paused|completed
    # Percentage of traffic routed to the non-control variant
    traffic_split = Column(Float, default=50.0)
    min_sample_size = Column(Integer, default=100)
    confidence_level = Column(Integer, default=95)  # 90|95|99
    success_metric = Column(String(30), default="conversion_rate")  # conversion_rate|completion_time|lead_quality
    start_date = Column(DateTime, nullable=True)
    end_date = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class ABTestVariant(Base):
    """A variant within an A/B test, backed by its own flow."""

    __tablename__ = "ab_test_variants"

    id = Column(String(36), primary_key=True, default=new_uuid)
    test_id = Column(String(36), ForeignKey("ab_tests.id"), nullable=False, index=True)
    name = Column(String(100), nullable=False)  # e.g., "Control", "Variant A"
    flow_id = Column(String(36), ForeignKey("flows.id"), nullable=False)
    traffic_allocation = Column(Float, default=50.0)  # percent of visitors
    is_control = Column(Boolean, default=False)
    position = Column(Integer, default=0)  # allocation walk order
    is_winner = Column(Boolean, default=False)
    created_at = Column(DateTime, default=utcnow)


class ABTestInteraction(Base):
    """Append-only log of variant views and conversions."""

    __tablename__ = "ab_test_interactions"

    id = Column(String(36), primary_key=True, default=new_uuid)
    test_id = Column(String(36), ForeignKey("ab_tests.id"), nullable=False, index=True)
    variant_id = Column(String(36), ForeignKey("ab_test_variants.id"), nullable=False, index=True)
    visitor_id = Column(String(200), nullable=False)
    event = Column(String(20), nullable=False)  # view|conversion
    metadata_ = Column("metadata", Text, default="{}")
    created_at = Column(DateTime, default=utcnow)


class ABTestResult(Base):
    """Cached results snapshot — derived data, recomputed on demand."""

    __tablename__ = "ab_test_results"

    id = Column(String(36), primary_key=True, default=new_uuid)
    test_id = Column(String(36), ForeignKey("ab_tests.id"), unique=True, nullable=False, index=True)
    results = Column(Text, default="{}")
    last_calculated = Column(DateTime, default=utcnow)
