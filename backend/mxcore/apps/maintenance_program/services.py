# backend/mxcore/apps/maintenance_program/services.py
#
# Maintenance program configuration.
#
# Responsibilities:
# - Admin / seeding helpers for programs, triggers and task templates.
# - Read helpers the compliance evaluator and work orders rely on.

from __future__ import annotations

from typing import List, Optional

from sqlalchemy import and_, or_, select
from sqlalchemy.orm import Session

from ...errors import NotFoundError, ValidationError
from ..fleet.models import SubjectKindEnum
from .models import MaintenanceProgram, MaintenanceTrigger, MetricEnum, TaskTemplate
from .schemas import (
    MaintenanceProgramCreate,
    MaintenanceTriggerCreate,
    TaskTemplateCreate,
    TriggerLimit,
)


# ---------------------------------------------------------------------------
# CRUD – programs / triggers / templates
# ---------------------------------------------------------------------------


def create_program(db: Session, *, payload: MaintenanceProgramCreate) -> MaintenanceProgram:
    existing = db.execute(
        select(MaintenanceProgram).where(MaintenanceProgram.code == payload.code)
    ).scalar_one_or_none()
    if existing is not None:
        raise ValidationError(
            f"Maintenance program {payload.code} already exists.",
            detail=[{"field": "code", "reason": "duplicate program code"}],
        )
    program = MaintenanceProgram(**payload.model_dump())
    db.add(program)
    db.flush()
    return program


def get_program(db: Session, program_id: int) -> MaintenanceProgram:
    program = db.get(MaintenanceProgram, program_id)
    if program is None:
        raise NotFoundError(f"Maintenance program {program_id} not found.")
    return program


def add_trigger(
    db: Session,
    *,
    program_id: int,
    payload: MaintenanceTriggerCreate,
) -> MaintenanceTrigger:
    """
    Add a trigger (and its task templates) to a program.
    """
    get_program(db, program_id)
    data = payload.model_dump(exclude={"tasks"})
    trigger = MaintenanceTrigger(program_id=program_id, **data)
    db.add(trigger)
    db.flush()

    for task in payload.tasks:
        add_task_template(db, trigger_id=trigger.id, payload=task)
    return trigger


def add_task_template(
    db: Session,
    *,
    trigger_id: int,
    payload: TaskTemplateCreate,
) -> TaskTemplate:
    trigger = get_trigger(db, trigger_id)
    template = TaskTemplate(trigger_id=trigger.id, **payload.model_dump())
    db.add(template)
    db.flush()
    db.expire(trigger, ["task_templates"])
    return template


def get_trigger(db: Session, trigger_id: int) -> MaintenanceTrigger:
    trigger = db.get(MaintenanceTrigger, trigger_id)
    if trigger is None:
        raise NotFoundError(f"Maintenance trigger {trigger_id} not found.")
    return trigger


# ---------------------------------------------------------------------------
# Engine reads
# ---------------------------------------------------------------------------


def applicable_triggers(
    db: Session,
    *,
    subject_kind: SubjectKindEnum,
    component_type: Optional[str] = None,
) -> List[MaintenanceTrigger]:
    """
    Active triggers of active programs that apply to a subject kind.

    Component triggers without ``applicable_component_type`` apply to every
    component.
    """
    conditions = [
        MaintenanceTrigger.subject_kind == subject_kind,
        MaintenanceTrigger.is_active.is_(True),
        MaintenanceProgram.is_active.is_(True),
    ]
    if subject_kind == SubjectKindEnum.COMPONENT:
        conditions.append(
            or_(
                MaintenanceTrigger.applicable_component_type.is_(None),
                MaintenanceTrigger.applicable_component_type == component_type,
            )
        )

    stmt = (
        select(MaintenanceTrigger)
        .join(MaintenanceProgram, MaintenanceProgram.id == MaintenanceTrigger.program_id)
        .where(and_(*conditions))
        .order_by(MaintenanceTrigger.id)
    )
    return list(db.execute(stmt).scalars().unique().all())


def trigger_limits(trigger: MaintenanceTrigger) -> List[TriggerLimit]:
    limits = []
    if trigger.interval_hours:
        limits.append(TriggerLimit(MetricEnum.FLIGHT_HOURS, float(trigger.interval_hours), float(trigger.tolerance_hours or 0)))
    if trigger.interval_cycles:
        limits.append(TriggerLimit(MetricEnum.CYCLES, float(trigger.interval_cycles), float(trigger.tolerance_cycles or 0)))
    if trigger.interval_days:
        limits.append(TriggerLimit(MetricEnum.CALENDAR_DAYS, float(trigger.interval_days), float(trigger.tolerance_days or 0)))
    return limits


def task_templates_for(db: Session, trigger_id: int) -> List[TaskTemplate]:
    stmt = (
        select(TaskTemplate)
        .where(TaskTemplate.trigger_id == trigger_id)
        .order_by(TaskTemplate.sequence)
    )
    return list(db.execute(stmt).scalars().all())
