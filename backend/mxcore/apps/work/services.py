from __future__ import annotations

import logging
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ...concurrency import ensure_version, flush_versioned, is_unique_violation, violates
from ...errors import (
    AlreadyInspectedBySameUserError,
    ConcurrentModificationError,
    DuplicateOpenOrderError,
    NotFoundError,
    SeparationOfDutiesError,
    ValidationError,
)
from ...time_utils import utcnow
from ...utils.identifiers import generate_wo_number
from ..audit import schemas as audit_schemas
from ..audit import services as audit_services
from ..compliance import services as compliance_services
from ..events import broker as events
from ..events import outbox
from ..fleet import services as fleet_services
from ..inventory import schemas as inventory_schemas
from ..inventory import services as inventory_services
from ..maintenance_program import services as program_services
from ..release import gate
from ..usage import services as usage_services
from ..workflow import engine as workflow
from . import models, schemas

logger = logging.getLogger(__name__)

ENTITY = "work_order"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _record_audit(
    db: Session,
    *,
    entity_type: str,
    entity_id: str,
    aircraft_id: str,
    action: str,
    actor_user_id: Optional[str],
    before: Optional[dict],
    after: Optional[dict],
) -> None:
    audit_services.create_audit_event(
        db,
        data=audit_schemas.AuditEventCreate(
            aircraft_id=aircraft_id,
            entity_type=entity_type,
            entity_id=entity_id,
            action=action,
            actor_user_id=actor_user_id,
            before=before,
            after=after,
        ),
    )


def _flush(db: Session, work_order: models.WorkOrder) -> None:
    try:
        flush_versioned(db, entity="WorkOrder", entity_id=str(work_order.id))
    except IntegrityError as exc:
        db.rollback()
        if not is_unique_violation(exc):
            raise
        # Postgres names the index; SQLite lists the indexed columns.
        if work_order.trigger_id is not None and violates(exc, models.OPEN_ORDER_INDEX, "work_orders.trigger_id"):
            raise DuplicateOpenOrderError(
                f"An open work order already exists for trigger {work_order.trigger_id} "
                f"on {work_order.subject_id}.",
                detail=[{"field": "trigger_id", "reason": "open order exists"}],
            ) from exc
        if violates(exc, "wo_number"):
            raise ConcurrentModificationError(
                f"Work order number {work_order.wo_number} is already taken; retry.",
                detail=[{"field": "wo_number", "reason": "number collision"}],
            ) from exc
        raise


def _touch(work_order: models.WorkOrder) -> None:
    # Task / part changes must bump the order's version too.
    work_order.updated_at = utcnow()


def _load(db: Session, work_order_id: int, expected_version: Optional[int]) -> models.WorkOrder:
    work_order = get_work_order(db, work_order_id)
    ensure_version(
        entity="WorkOrder",
        entity_id=str(work_order_id),
        current=work_order.version,
        expected=expected_version,
    )
    return work_order


def _transition(
    db: Session,
    work_order: models.WorkOrder,
    action: str,
    *,
    actor_user_id: Optional[str],
    after_obj=None,
) -> models.WorkOrderStatusEnum:
    from_state = work_order.status.value
    to_state = workflow.apply_transition(
        db,
        actor_user_id=actor_user_id,
        entity_type=ENTITY,
        entity_id=str(work_order.id),
        from_state=from_state,
        action=action,
        before_obj={"wo_number": work_order.wo_number},
        after_obj=work_order if after_obj is None else after_obj,
        aircraft_id=work_order.aircraft_id,
    )
    new_status = models.WorkOrderStatusEnum(to_state)
    if new_status != work_order.status:
        work_order.status = new_status
        logger.info(
            "Work order transition",
            extra={
                "work_order_id": work_order.id,
                "action": action,
                "from_state": from_state,
                "to_state": to_state,
                "actor_user_id": actor_user_id,
            },
        )
        _flush(db, work_order)
    return new_status


def _get_task(work_order: models.WorkOrder, task_id: int) -> models.Task:
    for task in work_order.tasks:
        if task.id == task_id:
            return task
    raise NotFoundError(f"Task {task_id} is not part of work order {work_order.id}.")


def find_open_trigger_order(
    db: Session,
    *,
    subject_id: str,
    trigger_id: int,
    aircraft_id: Optional[str] = None,
) -> Optional[models.WorkOrder]:
    """The unreleased, uncancelled order opened for a trigger on a subject, if any."""
    query = db.query(models.WorkOrder).filter(
        models.WorkOrder.subject_id == subject_id,
        models.WorkOrder.trigger_id == trigger_id,
        models.WorkOrder.status.notin_(list(models.CLOSED_STATUSES)),
    )
    if aircraft_id is not None:
        query = query.filter(models.WorkOrder.aircraft_id == aircraft_id)
    return query.order_by(models.WorkOrder.id.asc()).first()


def _ensure_no_open_order(db: Session, *, aircraft_id: str, subject_id: str, trigger_id: Optional[int]) -> None:
    if trigger_id is None:
        return
    existing = find_open_trigger_order(db, subject_id=subject_id, trigger_id=trigger_id, aircraft_id=aircraft_id)
    if existing is not None:
        raise DuplicateOpenOrderError(
            f"Work order {existing.wo_number} is already open for trigger {trigger_id} on {subject_id}.",
            detail=[{"field": "trigger_id", "reason": f"open order {existing.wo_number}"}],
        )


def _new_work_order(
    db: Session,
    *,
    status: models.WorkOrderStatusEnum,
    aircraft_id: str,
    subject_id: str,
    payload_tasks: List[schemas.TaskCreate],
    trigger_id: Optional[int],
    wo_type,
    priority,
    description: Optional[str],
    concurrent_safe: bool,
    actor_user_id: Optional[str],
    template_ids: Optional[List[Optional[int]]] = None,
) -> models.WorkOrder:
    fleet_services.get_aircraft(db, aircraft_id)
    subject_kind = fleet_services.get_subject_kind(db, subject_id)
    _ensure_no_open_order(db, aircraft_id=aircraft_id, subject_id=subject_id, trigger_id=trigger_id)

    snapshot = usage_services.get_snapshot(db, subject_id)
    work_order = models.WorkOrder(
        wo_number=generate_wo_number(),
        aircraft_id=aircraft_id,
        subject_id=subject_id,
        subject_kind=subject_kind,
        wo_type=wo_type,
        priority=priority,
        status=status,
        description=description,
        trigger_id=trigger_id,
        concurrent_safe=concurrent_safe,
        baseline_flight_minutes=snapshot.total_flight_minutes,
        baseline_cycles=snapshot.total_cycles,
        baseline_event_seq=snapshot.as_of_event_seq,
        created_by=actor_user_id,
    )
    template_ids = template_ids or [None] * len(payload_tasks)
    for sequence, (task, template_id) in enumerate(zip(payload_tasks, template_ids), start=1):
        work_order.tasks.append(
            models.Task(
                sequence=sequence,
                description=task.description,
                required=task.required,
                is_rii=task.is_rii,
                template_id=template_id,
                status=models.TaskStatusEnum.PENDING,
            )
        )
    db.add(work_order)
    _flush(db, work_order)

    _record_audit(
        db,
        aircraft_id=work_order.aircraft_id,
        entity_type=ENTITY,
        entity_id=str(work_order.id),
        action="create",
        actor_user_id=actor_user_id,
        before=None,
        after={
            "wo_number": work_order.wo_number,
            "status": work_order.status.value,
            "aircraft_id": aircraft_id,
            "subject_id": subject_id,
            "trigger_id": trigger_id,
            "baseline_flight_minutes": work_order.baseline_flight_minutes,
            "baseline_cycles": work_order.baseline_cycles,
        },
    )
    logger.info(
        "Work order created",
        extra={
            "work_order_id": work_order.id,
            "wo_number": work_order.wo_number,
            "aircraft_id": aircraft_id,
            "trigger_id": trigger_id,
            "status": work_order.status.value,
        },
    )
    return work_order


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


def get_work_order(db: Session, work_order_id: int) -> models.WorkOrder:
    work_order = db.get(models.WorkOrder, work_order_id)
    if work_order is None:
        raise NotFoundError(f"Work order {work_order_id} not found.")
    return work_order


def list_work_orders(
    db: Session,
    *,
    aircraft_id: Optional[str] = None,
    status: Optional[models.WorkOrderStatusEnum] = None,
) -> List[models.WorkOrder]:
    query = db.query(models.WorkOrder)
    if aircraft_id:
        query = query.filter(models.WorkOrder.aircraft_id == aircraft_id)
    if status:
        query = query.filter(models.WorkOrder.status == status)
    return query.order_by(models.WorkOrder.id.asc()).all()


def reservation_refs(work_order: models.WorkOrder) -> List[inventory_schemas.ReservationRef]:
    return [
        inventory_schemas.ReservationRef(
            reservation_id=part.reservation_id,
            work_order_id=work_order.id,
            part_number=part.part_number,
            quantity=part.quantity,
        )
        for part in work_order.parts
        if part.reservation_id is not None
    ]


# ---------------------------------------------------------------------------
# Opening
# ---------------------------------------------------------------------------


def open_from_trigger(
    db: Session,
    *,
    trigger_id: int,
    subject_id: str,
    actor_user_id: Optional[str] = None,
    concurrent_safe: bool = False,
) -> models.WorkOrder:
    """
    Open a work order for a fired trigger, with tasks materialised from
    the trigger's templates.
    """
    trigger = program_services.get_trigger(db, trigger_id)
    aircraft_id = fleet_services.aircraft_for_subject(db, subject_id)
    if aircraft_id is None:
        raise ValidationError(
            f"{subject_id} is not installed on an aircraft.",
            detail=[{"field": "subject_id", "reason": "component not installed"}],
        )

    templates = program_services.task_templates_for(db, trigger_id)
    if templates:
        tasks = [
            schemas.TaskCreate(description=t.description, required=t.required, is_rii=t.is_rii)
            for t in templates
        ]
        template_ids = [t.id for t in templates]
    else:
        tasks = [schemas.TaskCreate(description=f"Accomplish {trigger.name}")]
        template_ids = [None]

    return _new_work_order(
        db,
        status=models.WorkOrderStatusEnum.OPEN,
        aircraft_id=aircraft_id,
        subject_id=subject_id,
        payload_tasks=tasks,
        template_ids=template_ids,
        trigger_id=trigger.id,
        wo_type=trigger.work_order_type,
        priority=trigger.priority,
        description=trigger.description or trigger.name,
        concurrent_safe=concurrent_safe,
        actor_user_id=actor_user_id,
    )


def _from_payload(
    db: Session,
    *,
    payload: schemas.WorkOrderCreate,
    status: models.WorkOrderStatusEnum,
    actor_user_id: Optional[str],
) -> models.WorkOrder:
    if payload.trigger_id is not None:
        program_services.get_trigger(db, payload.trigger_id)
    fleet_services.get_aircraft(db, payload.aircraft_id)
    subject_id = payload.subject_id or payload.aircraft_id
    if fleet_services.aircraft_for_subject(db, subject_id) != payload.aircraft_id:
        raise ValidationError(
            f"{subject_id} is not on aircraft {payload.aircraft_id}.",
            detail=[{"field": "subject_id", "reason": "subject not installed on aircraft"}],
        )
    return _new_work_order(
        db,
        status=status,
        aircraft_id=payload.aircraft_id,
        subject_id=subject_id,
        payload_tasks=payload.tasks,
        trigger_id=payload.trigger_id,
        wo_type=payload.wo_type,
        priority=payload.priority,
        description=payload.description,
        concurrent_safe=payload.concurrent_safe,
        actor_user_id=actor_user_id,
    )


def open_manual(
    db: Session,
    *,
    payload: schemas.WorkOrderCreate,
    actor_user_id: Optional[str] = None,
) -> models.WorkOrder:
    if not payload.tasks:
        raise ValidationError(
            "A manual work order needs at least one task.",
            detail=[{"field": "tasks", "reason": "at least one task required"}],
        )
    return _from_payload(db, payload=payload, status=models.WorkOrderStatusEnum.OPEN, actor_user_id=actor_user_id)


def create_draft(
    db: Session,
    *,
    payload: schemas.WorkOrderCreate,
    actor_user_id: Optional[str] = None,
) -> models.WorkOrder:
    return _from_payload(db, payload=payload, status=models.WorkOrderStatusEnum.DRAFT, actor_user_id=actor_user_id)


def add_task(
    db: Session,
    *,
    work_order_id: int,
    payload: schemas.TaskCreate,
    expected_version: Optional[int] = None,
    actor_user_id: Optional[str] = None,
) -> models.Task:
    """Add a task line to a draft."""
    work_order = _load(db, work_order_id, expected_version)
    if work_order.status != models.WorkOrderStatusEnum.DRAFT:
        raise ValidationError(
            "Tasks can only be added to a draft work order.",
            detail=[{"field": "status", "reason": f"work order is {work_order.status.value}"}],
        )
    task = models.Task(
        sequence=max((t.sequence for t in work_order.tasks), default=0) + 1,
        description=payload.description,
        required=payload.required,
        is_rii=payload.is_rii,
        status=models.TaskStatusEnum.PENDING,
    )
    work_order.tasks.append(task)
    _touch(work_order)
    _flush(db, work_order)
    return task


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


def submit(
    db: Session,
    *,
    work_order_id: int,
    expected_version: Optional[int] = None,
    actor_user_id: Optional[str] = None,
) -> models.WorkOrder:
    work_order = _load(db, work_order_id, expected_version)
    _transition(db, work_order, "submit", actor_user_id=actor_user_id)
    _flush(db, work_order)
    return work_order


def start_work(
    db: Session,
    *,
    work_order_id: int,
    expected_version: Optional[int] = None,
    actor_user_id: Optional[str] = None,
) -> models.WorkOrder:
    """OPEN -> IN_PROGRESS; the aircraft is out of service until release."""
    work_order = _load(db, work_order_id, expected_version)
    _transition(db, work_order, "start", actor_user_id=actor_user_id)
    work_order.started_at = utcnow()
    fleet_services.set_airworthiness(
        db,
        aircraft_id=work_order.aircraft_id,
        airworthy=False,
        actor_user_id=actor_user_id,
        work_order_id=work_order.id,
    )
    _flush(db, work_order)
    return work_order


def request_parts(
    db: Session,
    *,
    work_order_id: int,
    part_number: str,
    quantity: int,
    warehouse_id: Optional[str] = None,
    expected_version: Optional[int] = None,
    actor_user_id: Optional[str] = None,
) -> inventory_schemas.ReservationResult:
    """
    Reserve parts for the order. A shortfall moves IN_PROGRESS to
    PENDING_PARTS; a full reservation leaves the status alone.
    """
    work_order = _load(db, work_order_id, expected_version)
    _transition(db, work_order, "request_parts", actor_user_id=actor_user_id)

    result = inventory_services.reserve(
        db,
        part_number=part_number,
        quantity=quantity,
        work_order_id=work_order.id,
        warehouse_id=warehouse_id,
        actor_user_id=actor_user_id,
    )
    _add_part_line(work_order, part_number=part_number, warehouse_id=warehouse_id, result=result)

    if result.shortfall and work_order.status == models.WorkOrderStatusEnum.IN_PROGRESS:
        _transition(db, work_order, "await_parts", actor_user_id=actor_user_id)
    _touch(work_order)
    _flush(db, work_order)
    return result


def _add_part_line(
    work_order: models.WorkOrder,
    *,
    part_number: str,
    warehouse_id: Optional[str],
    result: inventory_schemas.ReservationResult,
) -> models.WorkOrderPart:
    line = models.WorkOrderPart(
        part_number=(part_number or "").strip().upper(),
        warehouse_id=(warehouse_id or inventory_services.DEFAULT_WAREHOUSE).strip().upper(),
        requested_quantity=result.requested,
        reservation_id=result.reservation.reservation_id if result.reservation else None,
        quantity=result.reserved,
        shortfall=result.shortfall,
    )
    work_order.parts.append(line)
    return line


def fill_shortfalls(
    db: Session,
    *,
    work_order_id: int,
    expected_version: Optional[int] = None,
    actor_user_id: Optional[str] = None,
) -> List[inventory_schemas.ReservationResult]:
    """
    Retry reservations for every line with an outstanding shortfall (after
    stock was received). Resumes PENDING_PARTS once nothing is missing.
    """
    work_order = _load(db, work_order_id, expected_version)
    _transition(db, work_order, "request_parts", actor_user_id=actor_user_id)

    results = []
    for line in [p for p in work_order.parts if p.shortfall > 0]:
        result = inventory_services.reserve(
            db,
            part_number=line.part_number,
            quantity=line.shortfall,
            work_order_id=work_order.id,
            warehouse_id=line.warehouse_id,
            actor_user_id=actor_user_id,
        )
        results.append(result)
        if result.reserved:
            line.shortfall = 0
            _add_part_line(work_order, part_number=line.part_number, warehouse_id=line.warehouse_id, result=result)

    if work_order.status == models.WorkOrderStatusEnum.PENDING_PARTS and work_order.outstanding_shortfall == 0:
        _transition(db, work_order, "resume", actor_user_id=actor_user_id)
    _touch(work_order)
    _flush(db, work_order)
    return results


def complete_task(
    db: Session,
    *,
    work_order_id: int,
    task_id: int,
    by: str,
    expected_version: Optional[int] = None,
) -> models.Task:
    """
    Mark a task DONE. On an RII task the performer may not be whoever
    already inspected it.
    """
    work_order = _load(db, work_order_id, expected_version)
    _transition(db, work_order, "complete_task", actor_user_id=by)
    task = _get_task(work_order, task_id)

    if task.is_done:
        raise ValidationError(
            f"Task {task.sequence} is already done.",
            detail=[{"field": "task_id", "reason": "already done"}],
        )
    if task.is_rii and task.inspected_by and task.inspected_by == by:
        logger.warning(
            "RII performer is the recorded inspector",
            extra={"work_order_id": work_order.id, "task_id": task.id, "user": by},
        )
        raise AlreadyInspectedBySameUserError(
            f"{by} already inspected task {task.sequence} and cannot also perform it.",
            detail=[{"field": "completed_by", "reason": "performer must differ from inspector"}],
        )

    task.status = models.TaskStatusEnum.DONE
    task.completed_by = by
    task.completed_at = utcnow()
    _record_audit(
        db,
        aircraft_id=work_order.aircraft_id,
        entity_type="work_order_task",
        entity_id=str(task.id),
        action="complete",
        actor_user_id=by,
        before={"status": models.TaskStatusEnum.PENDING.value},
        after={"status": task.status.value, "completed_by": by},
    )

    if work_order.status == models.WorkOrderStatusEnum.IN_PROGRESS and _awaiting_inspection_only(work_order):
        _transition(db, work_order, "await_inspection", actor_user_id=by)
    _touch(work_order)
    _flush(db, work_order)
    return task


def _awaiting_inspection_only(work_order: models.WorkOrder) -> bool:
    required_done = all(t.is_done for t in work_order.tasks if t.required)
    rii_outstanding = any(t.is_rii and not t.inspected_by for t in work_order.tasks)
    return required_done and rii_outstanding


def inspect_task(
    db: Session,
    *,
    work_order_id: int,
    task_id: int,
    by: str,
    expected_version: Optional[int] = None,
) -> models.Task:
    """
    Record the independent inspection of an RII task. Valid before or
    after completion; never by the task's performer.
    """
    work_order = _load(db, work_order_id, expected_version)
    _transition(db, work_order, "inspect_task", actor_user_id=by)
    task = _get_task(work_order, task_id)

    if not task.is_rii:
        raise ValidationError(
            f"Task {task.sequence} is not a required inspection item.",
            detail=[{"field": "task_id", "reason": "not an RII task"}],
        )
    if task.completed_by and task.completed_by == by:
        logger.warning(
            "RII inspector is the performer",
            extra={"work_order_id": work_order.id, "task_id": task.id, "user": by},
        )
        raise SeparationOfDutiesError(
            f"{by} performed task {task.sequence} and cannot inspect it.",
            detail=[{"field": "inspected_by", "reason": "inspector must differ from performer"}],
        )
    if task.inspected_by:
        raise ValidationError(
            f"Task {task.sequence} was already inspected by {task.inspected_by}.",
            detail=[{"field": "task_id", "reason": "already inspected"}],
        )

    task.inspected_by = by
    task.inspected_at = utcnow()
    _record_audit(
        db,
        aircraft_id=work_order.aircraft_id,
        entity_type="work_order_task",
        entity_id=str(task.id),
        action="inspect",
        actor_user_id=by,
        before=None,
        after={"inspected_by": by},
    )
    _touch(work_order)
    _flush(db, work_order)
    return task


def complete(
    db: Session,
    *,
    work_order_id: int,
    by: Optional[str] = None,
    expected_version: Optional[int] = None,
) -> models.WorkOrder:
    work_order = _load(db, work_order_id, expected_version)
    _transition(db, work_order, "complete", actor_user_id=by)
    work_order.completed_at = utcnow()
    _flush(db, work_order)
    return work_order


def release(
    db: Session,
    *,
    work_order_id: int,
    by: str,
    expected_version: Optional[int] = None,
) -> models.WorkOrder:
    """
    COMPLETED -> RELEASED. Passes the release gate, consumes every open
    reservation, re-baselines the opening trigger and returns the aircraft
    to service.
    """
    work_order = _load(db, work_order_id, expected_version)
    workflow.resolve_transition(ENTITY, work_order.status.value, "release")
    gate.can_release(db, work_order)
    _transition(db, work_order, "release", actor_user_id=by)

    for reservation in inventory_services.active_reservations(db, work_order_id=work_order.id):
        inventory_services.consume(db, ref=inventory_services.to_ref(reservation), actor_user_id=by)

    snapshot = usage_services.get_snapshot(db, work_order.subject_id)
    if work_order.trigger_id is not None:
        compliance_services.record_compliance(
            db,
            subject_id=work_order.subject_id,
            trigger_id=work_order.trigger_id,
            snapshot=snapshot,
            work_order_id=work_order.id,
        )

    work_order.released_at = utcnow()
    work_order.released_by = by
    _flush(db, work_order)

    if not gate.outstanding_orders(db, work_order.aircraft_id):
        fleet_services.set_airworthiness(
            db,
            aircraft_id=work_order.aircraft_id,
            airworthy=True,
            actor_user_id=by,
            work_order_id=work_order.id,
        )

    outbox.enqueue(
        db,
        events.aircraft_released(
            work_order.aircraft_id,
            work_order_id=work_order.id,
            baseline={
                "subjectId": work_order.subject_id,
                "triggerId": work_order.trigger_id,
                "totalFlightMinutes": snapshot.total_flight_minutes,
                "totalCycles": snapshot.total_cycles,
                "asOfEventSeq": snapshot.as_of_event_seq,
            },
        ),
    )
    if work_order.trigger_id is not None:
        compliance_services.evaluate(db, subject_id=work_order.subject_id)
    return work_order


def cancel(
    db: Session,
    *,
    work_order_id: int,
    reason: str,
    by: Optional[str] = None,
    expected_version: Optional[int] = None,
) -> models.WorkOrder:
    """Any non-terminal state -> CANCELLED; reservations go back to stock."""
    work_order = _load(db, work_order_id, expected_version)
    _transition(db, work_order, "cancel", actor_user_id=by, after_obj={"cancel_reason": reason})
    work_order.cancel_reason = reason.strip()

    for reservation in inventory_services.active_reservations(db, work_order_id=work_order.id):
        inventory_services.release(
            db,
            ref=inventory_services.to_ref(reservation),
            reason=f"work order {work_order.wo_number} cancelled",
            actor_user_id=by,
        )
    work_order.cancelled_at = utcnow()
    _flush(db, work_order)
    return work_order
