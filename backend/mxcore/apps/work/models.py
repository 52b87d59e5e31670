# backend/mxcore/apps/work/models.py

"""
Work module ORM models.

- WorkOrder: unit of maintenance work on an aircraft (or one of its
  components), opened from a maintenance trigger or by manual request,
  driven through the transition table in ``mxcore.apps.workflow``.
- Task: task line of a work order; RII tasks additionally need an
  inspector distinct from the performer.
- WorkOrderPart: value reference to an inventory reservation (ids +
  quantity). The inventory ledger resolves it on demand.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import relationship

from ...database import Base
from ..fleet.models import SubjectKindEnum
from ..maintenance_program.models import PriorityEnum, WorkOrderTypeEnum


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class WorkOrderStatusEnum(str, Enum):
    """Lifecycle state of the work order."""

    DRAFT = "DRAFT"
    OPEN = "OPEN"
    IN_PROGRESS = "IN_PROGRESS"
    PENDING_PARTS = "PENDING_PARTS"
    PENDING_INSPECTION = "PENDING_INSPECTION"
    COMPLETED = "COMPLETED"
    RELEASED = "RELEASED"
    CANCELLED = "CANCELLED"


class TaskStatusEnum(str, Enum):
    PENDING = "PENDING"
    DONE = "DONE"


# Unfinished work; an order in one of these keeps another order on the same
# aircraft from being released. COMPLETED orders only await their own sign-off.
BLOCKING_STATUSES = frozenset(
    {
        WorkOrderStatusEnum.OPEN,
        WorkOrderStatusEnum.IN_PROGRESS,
        WorkOrderStatusEnum.PENDING_PARTS,
        WorkOrderStatusEnum.PENDING_INSPECTION,
    }
)
# Work has started and is not yet signed off; the aircraft is not airworthy.
GROUNDING_STATUSES = frozenset(
    {
        WorkOrderStatusEnum.IN_PROGRESS,
        WorkOrderStatusEnum.PENDING_PARTS,
        WorkOrderStatusEnum.PENDING_INSPECTION,
        WorkOrderStatusEnum.COMPLETED,
    }
)
CLOSED_STATUSES = frozenset({WorkOrderStatusEnum.RELEASED, WorkOrderStatusEnum.CANCELLED})
OPEN_ORDER_INDEX = "uq_work_orders_open_per_trigger"


# ---------------------------------------------------------------------------
# WorkOrder
# ---------------------------------------------------------------------------


class WorkOrder(Base):
    __tablename__ = "work_orders"
    __table_args__ = (
        # One open order per (aircraft, subject, trigger).
        Index(
            OPEN_ORDER_INDEX,
            "aircraft_id",
            "subject_id",
            "trigger_id",
            unique=True,
            sqlite_where=text("status NOT IN ('RELEASED', 'CANCELLED')"),
            postgresql_where=text("status NOT IN ('RELEASED', 'CANCELLED')"),
        ),
        Index("ix_work_orders_aircraft_status", "aircraft_id", "status"),
    )

    id = Column(Integer, primary_key=True, index=True)
    wo_number = Column(String(32), nullable=False, unique=True, index=True)

    aircraft_id = Column(String(64), ForeignKey("aircraft.id", ondelete="RESTRICT"), nullable=False)
    subject_id = Column(String(64), nullable=False)
    subject_kind = Column(
        SQLEnum(SubjectKindEnum, name="work_order_subject_kind_enum", native_enum=False),
        nullable=False,
    )

    wo_type = Column(
        SQLEnum(WorkOrderTypeEnum, name="work_order_type_enum", native_enum=False),
        nullable=False,
        default=WorkOrderTypeEnum.SCHEDULED,
    )
    priority = Column(
        SQLEnum(PriorityEnum, name="work_order_priority_enum", native_enum=False),
        nullable=False,
        default=PriorityEnum.MEDIUM,
    )
    status = Column(
        SQLEnum(WorkOrderStatusEnum, name="work_order_status_enum", native_enum=False),
        nullable=False,
        default=WorkOrderStatusEnum.DRAFT,
        index=True,
    )
    description = Column(Text, nullable=True)

    trigger_id = Column(Integer, ForeignKey("maintenance_triggers.id", ondelete="RESTRICT"), nullable=True, index=True)
    # Neither holds up nor is held up by other orders on the same aircraft at release.
    concurrent_safe = Column(Boolean, nullable=False, default=False)

    # Usage of the subject when the order was opened (audit baseline).
    baseline_flight_minutes = Column(Integer, nullable=True)
    baseline_cycles = Column(Integer, nullable=True)
    baseline_event_seq = Column(Integer, nullable=True)

    created_by = Column(String(64), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    released_at = Column(DateTime(timezone=True), nullable=True)
    released_by = Column(String(64), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    cancel_reason = Column(Text, nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    version = Column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    tasks = relationship(
        "Task",
        back_populates="work_order",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="Task.sequence",
    )
    parts = relationship(
        "WorkOrderPart",
        back_populates="work_order",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="WorkOrderPart.id",
    )

    @property
    def required_inspection_items(self) -> set:
        return {task.id for task in self.tasks if task.is_rii}

    @property
    def outstanding_shortfall(self) -> int:
        return sum(part.shortfall or 0 for part in self.parts)

    def __repr__(self) -> str:
        return f"<WorkOrder id={self.id} wo_number={self.wo_number} status={self.status}>"


# ---------------------------------------------------------------------------
# Task
# ---------------------------------------------------------------------------


class Task(Base):
    __tablename__ = "work_order_tasks"
    __table_args__ = (
        UniqueConstraint("work_order_id", "sequence", name="uq_work_order_tasks_sequence"),
    )

    id = Column(Integer, primary_key=True, index=True)
    work_order_id = Column(Integer, ForeignKey("work_orders.id", ondelete="CASCADE"), nullable=False, index=True)
    sequence = Column(Integer, nullable=False)
    description = Column(Text, nullable=False)
    required = Column(Boolean, nullable=False, default=True)
    is_rii = Column(Boolean, nullable=False, default=False)
    template_id = Column(Integer, ForeignKey("task_templates.id", ondelete="SET NULL"), nullable=True)

    status = Column(
        SQLEnum(TaskStatusEnum, name="work_order_task_status_enum", native_enum=False),
        nullable=False,
        default=TaskStatusEnum.PENDING,
    )
    completed_by = Column(String(64), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    inspected_by = Column(String(64), nullable=True)
    inspected_at = Column(DateTime(timezone=True), nullable=True)

    work_order = relationship("WorkOrder", back_populates="tasks")

    @property
    def is_done(self) -> bool:
        return self.status == TaskStatusEnum.DONE


# ---------------------------------------------------------------------------
# WorkOrderPart
# ---------------------------------------------------------------------------


class WorkOrderPart(Base):
    __tablename__ = "work_order_parts"

    id = Column(Integer, primary_key=True, index=True)
    work_order_id = Column(Integer, ForeignKey("work_orders.id", ondelete="CASCADE"), nullable=False, index=True)
    part_number = Column(String(64), nullable=False)
    warehouse_id = Column(String(32), nullable=False)
    requested_quantity = Column(Integer, nullable=False)
    # reservation_id / quantity: NULL / 0 when nothing could be reserved.
    reservation_id = Column(Integer, nullable=True)
    quantity = Column(Integer, nullable=False, default=0)
    shortfall = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    work_order = relationship("WorkOrder", back_populates="parts")
