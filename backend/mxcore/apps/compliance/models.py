# backend/mxcore/apps/compliance/models.py
#
# ORM models for compliance tracking:
# - ComplianceBaseline : usage / date at which a trigger was last complied
#                        with on a subject (rewritten on aircraft release).
# - ComplianceStatus   : derived per (subject, trigger) status. Written only
#                        by the evaluator; versioned so two evaluators racing
#                        on one subject cannot both emit the same edge.
# - ComplianceCursor   : usage sequence each subject was last evaluated at,
#                        triggers or not; lets the runner catch up on
#                        subjects whose UsageChanged event it never saw.

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import (
    Column,
    Date,
    DateTime,
    Enum as SQLEnum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)

from ...database import Base
from ..maintenance_program.models import MetricEnum


class ComplianceStateEnum(str, Enum):
    GOOD = "GOOD"
    WARNING = "WARNING"
    CRITICAL = "CRITICAL"
    OVERDUE = "OVERDUE"


STATE_RANK = {
    ComplianceStateEnum.GOOD: 0,
    ComplianceStateEnum.WARNING: 1,
    ComplianceStateEnum.CRITICAL: 2,
    ComplianceStateEnum.OVERDUE: 3,
}

# remaining_margin <= 0
DUE_STATES = frozenset({ComplianceStateEnum.CRITICAL, ComplianceStateEnum.OVERDUE})


class ComplianceBaseline(Base):
    __tablename__ = "compliance_baselines"
    __table_args__ = (
        UniqueConstraint("subject_id", "trigger_id", name="uq_compliance_baselines_subject_trigger"),
    )

    id = Column(Integer, primary_key=True, index=True)
    subject_id = Column(String(64), nullable=False, index=True)
    trigger_id = Column(
        Integer,
        ForeignKey("maintenance_triggers.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    baseline_flight_minutes = Column(Integer, nullable=False, default=0)
    baseline_cycles = Column(Integer, nullable=False, default=0)
    baseline_date = Column(Date, nullable=False)
    last_compliance_event_seq = Column(Integer, nullable=False, default=0)

    # Work order whose release produced this baseline (NULL for seeded baselines).
    work_order_id = Column(Integer, nullable=True)
    recorded_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )


class ComplianceStatus(Base):
    __tablename__ = "compliance_statuses"
    __table_args__ = (
        UniqueConstraint("subject_id", "trigger_id", name="uq_compliance_statuses_subject_trigger"),
        Index("ix_compliance_statuses_state", "state"),
    )

    id = Column(Integer, primary_key=True, index=True)
    subject_id = Column(String(64), nullable=False, index=True)
    trigger_id = Column(
        Integer,
        ForeignKey("maintenance_triggers.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    # Governing limit (the one that crossed first).
    metric = Column(
        SQLEnum(MetricEnum, name="compliance_metric_enum", native_enum=False),
        nullable=False,
    )
    last_compliance_event_seq = Column(Integer, nullable=False, default=0)
    due_at_metric_value = Column(Float, nullable=False)
    current_metric_value = Column(Float, nullable=False)
    remaining_margin = Column(Float, nullable=False)
    percentage_used = Column(Float, nullable=False, default=0.0)
    state = Column(
        SQLEnum(ComplianceStateEnum, name="compliance_state_enum", native_enum=False),
        nullable=False,
    )

    evaluated_event_seq = Column(Integer, nullable=False, default=0)
    evaluated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    version = Column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self) -> str:
        return (
            f"<ComplianceStatus subject={self.subject_id} trigger={self.trigger_id} "
            f"{self.metric} remaining={self.remaining_margin} state={self.state}>"
        )


class ComplianceCursor(Base):
    __tablename__ = "compliance_cursors"

    subject_id = Column(String(64), primary_key=True)
    evaluated_event_seq = Column(Integer, nullable=False, default=0)
    evaluated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    version = Column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self) -> str:
        return f"<ComplianceCursor subject={self.subject_id} seq={self.evaluated_event_seq}>"
