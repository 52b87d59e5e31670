# backend/mxcore/apps/maintenance_program/models.py
#
# ORM models for the maintenance program (read-only input to the engine):
# - MaintenanceProgram : named set of triggers (e.g. "ATR72-AMP-REV12").
# - MaintenanceTrigger : usage / calendar threshold. Each configured
#                        (interval, tolerance) pair is one limit; a trigger
#                        may carry hours, cycles and days limits at once.
# - TaskTemplate       : task lines materialised into a work order opened
#                        from the trigger.
#
# Schema notes:
# - Non-native enums.
# - Non-negative check constraints on every interval / tolerance.
# - Timezone-aware UTC timestamps.

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum as SQLEnum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from ...database import Base
from ..fleet.models import SubjectKindEnum


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class MetricEnum(str, Enum):
    FLIGHT_HOURS = "FLIGHT_HOURS"
    CYCLES = "CYCLES"
    CALENDAR_DAYS = "CALENDAR_DAYS"


class WorkOrderTypeEnum(str, Enum):
    SCHEDULED = "SCHEDULED"
    INSPECTION = "INSPECTION"
    REPAIR = "REPAIR"
    MODIFICATION = "MODIFICATION"
    EMERGENCY = "EMERGENCY"


class PriorityEnum(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


# ---------------------------------------------------------------------------
# MaintenanceProgram
# ---------------------------------------------------------------------------


class MaintenanceProgram(Base):
    __tablename__ = "maintenance_programs"

    id = Column(Integer, primary_key=True, index=True)
    code = Column(String(64), nullable=False, unique=True, index=True)
    name = Column(String(255), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    triggers = relationship(
        "MaintenanceTrigger",
        back_populates="program",
        cascade="all, delete-orphan",
        passive_deletes=True,
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return f"<MaintenanceProgram id={self.id} code={self.code}>"


# ---------------------------------------------------------------------------
# MaintenanceTrigger
# ---------------------------------------------------------------------------


class MaintenanceTrigger(Base):
    """
    Usage / calendar threshold that makes maintenance due.

    ``interval_*`` is measured from the last compliance baseline;
    ``tolerance_*`` widens the WARNING band before due and the CRITICAL
    band after it.
    """

    __tablename__ = "maintenance_triggers"

    __table_args__ = (
        UniqueConstraint("program_id", "name", name="uq_maintenance_triggers_program_name"),
        Index("ix_maintenance_triggers_subject_kind", "subject_kind", "applicable_component_type"),
        CheckConstraint("interval_hours IS NULL OR interval_hours > 0", name="ck_mt_interval_hours_pos"),
        CheckConstraint("interval_cycles IS NULL OR interval_cycles > 0", name="ck_mt_interval_cycles_pos"),
        CheckConstraint("interval_days IS NULL OR interval_days > 0", name="ck_mt_interval_days_pos"),
        CheckConstraint("tolerance_hours >= 0", name="ck_mt_tolerance_hours_nonneg"),
        CheckConstraint("tolerance_cycles >= 0", name="ck_mt_tolerance_cycles_nonneg"),
        CheckConstraint("tolerance_days >= 0", name="ck_mt_tolerance_days_nonneg"),
    )

    id = Column(Integer, primary_key=True, index=True)
    program_id = Column(
        Integer,
        ForeignKey("maintenance_programs.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)

    subject_kind = Column(
        SQLEnum(SubjectKindEnum, name="trigger_subject_kind_enum", native_enum=False),
        nullable=False,
    )
    # Component triggers may be narrowed to one component type (ENGINE, PROPELLER ...).
    applicable_component_type = Column(String(32), nullable=True)

    interval_hours = Column(Float, nullable=True)
    tolerance_hours = Column(Float, nullable=False, default=0.0)
    interval_cycles = Column(Float, nullable=True)
    tolerance_cycles = Column(Float, nullable=False, default=0.0)
    interval_days = Column(Integer, nullable=True)
    tolerance_days = Column(Integer, nullable=False, default=0)

    priority = Column(
        SQLEnum(PriorityEnum, name="trigger_priority_enum", native_enum=False),
        nullable=False,
        default=PriorityEnum.MEDIUM,
    )
    work_order_type = Column(
        SQLEnum(WorkOrderTypeEnum, name="trigger_work_order_type_enum", native_enum=False),
        nullable=False,
        default=WorkOrderTypeEnum.SCHEDULED,
    )
    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    program = relationship("MaintenanceProgram", back_populates="triggers", lazy="joined")
    task_templates = relationship(
        "TaskTemplate",
        back_populates="trigger",
        cascade="all, delete-orphan",
        passive_deletes=True,
        lazy="selectin",
        order_by="TaskTemplate.sequence",
    )

    def __repr__(self) -> str:
        return f"<MaintenanceTrigger id={self.id} name={self.name} subject_kind={self.subject_kind}>"


# ---------------------------------------------------------------------------
# TaskTemplate
# ---------------------------------------------------------------------------


class TaskTemplate(Base):
    __tablename__ = "task_templates"

    __table_args__ = (
        UniqueConstraint("trigger_id", "sequence", name="uq_task_templates_trigger_sequence"),
    )

    id = Column(Integer, primary_key=True, index=True)
    trigger_id = Column(
        Integer,
        ForeignKey("maintenance_triggers.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    sequence = Column(Integer, nullable=False)
    description = Column(Text, nullable=False)
    required = Column(Boolean, nullable=False, default=True)
    is_rii = Column(Boolean, nullable=False, default=False)

    trigger = relationship("MaintenanceTrigger", back_populates="task_templates")
