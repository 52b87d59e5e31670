# backend/mxcore/apps/compliance/services.py
#
# Compliance evaluator.
#
# Responsibilities:
# - Pure margin / band computation per trigger (compute_status).
# - Persist ComplianceStatus per (subject, trigger) and publish
#   ComplianceStatusChanged / TriggerFired edges after commit.
# - Re-baseline a trigger when maintenance is signed off.

from __future__ import annotations

from datetime import date, datetime
import logging
import os
from typing import Iterable, List, Optional

from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ...concurrency import flush_versioned, is_unique_violation
from ...errors import ConcurrentModificationError
from ...time_utils import as_utc, utcnow
from ..events import broker as events
from ..events import outbox
from ..fleet import services as fleet_services
from ..fleet.models import Aircraft, Component, SubjectKindEnum
from ..maintenance_program import services as program_services
from ..maintenance_program.models import MaintenanceTrigger, MetricEnum
from ..usage import services as usage_services
from ..usage.models import UsageSubjectHead
from .models import (
    DUE_STATES,
    STATE_RANK,
    ComplianceBaseline,
    ComplianceCursor,
    ComplianceStateEnum,
    ComplianceStatus,
)
from .schemas import EvaluationResult, FiredTrigger, LifeLimitStatus, LimitStatus, StatusComputation

logger = logging.getLogger(__name__)

# Share of an LLP life limit at which the part is reported as approaching retirement.
LLP_WARNING_FRACTION = float(os.getenv("LLP_WARNING_FRACTION", "0.9"))


# ---------------------------------------------------------------------------
# Pure computation
# ---------------------------------------------------------------------------


def classify(remaining_margin: float, tolerance_value: float) -> ComplianceStateEnum:
    """
    GOOD     remaining > tolerance
    WARNING  0 < remaining <= tolerance
    CRITICAL -tolerance <= remaining <= 0
    OVERDUE  remaining < -tolerance
    """
    if remaining_margin > tolerance_value:
        return ComplianceStateEnum.GOOD
    if remaining_margin > 0:
        return ComplianceStateEnum.WARNING
    if remaining_margin >= -tolerance_value:
        return ComplianceStateEnum.CRITICAL
    return ComplianceStateEnum.OVERDUE


def _baseline_value(
    metric: MetricEnum,
    trigger: MaintenanceTrigger,
    baseline: Optional[ComplianceBaseline],
) -> float:
    if metric == MetricEnum.FLIGHT_HOURS:
        return (baseline.baseline_flight_minutes or 0) / 60.0 if baseline else 0.0
    if metric == MetricEnum.CYCLES:
        return float(baseline.baseline_cycles or 0) if baseline else 0.0
    # Never complied: the calendar clock starts when the trigger was configured.
    if baseline is not None:
        return float(baseline.baseline_date.toordinal())
    created = as_utc(trigger.created_at) or utcnow()
    return float(created.date().toordinal())


def _current_value(metric: MetricEnum, snapshot, as_of: date) -> float:
    if metric == MetricEnum.FLIGHT_HOURS:
        return (snapshot.total_flight_minutes or 0) / 60.0
    if metric == MetricEnum.CYCLES:
        return float(snapshot.total_cycles or 0)
    return float(as_of.toordinal())


def compute_status(
    trigger: MaintenanceTrigger,
    snapshot,
    baseline: Optional[ComplianceBaseline],
    as_of: date,
) -> StatusComputation:
    """
    Margin of every configured limit of ``trigger`` against ``snapshot``.

    The governing limit is the one that crossed first: highest band wins,
    ties go to the smallest fraction of its interval remaining.
    """
    limits: List[LimitStatus] = []
    for limit in program_services.trigger_limits(trigger):
        base = _baseline_value(limit.metric, trigger, baseline)
        current = _current_value(limit.metric, snapshot, as_of)
        due_at = base + limit.interval_value
        remaining = due_at - current
        limits.append(
            LimitStatus(
                metric=limit.metric,
                baseline_value=base,
                due_at_metric_value=due_at,
                current_metric_value=current,
                remaining_margin=remaining,
                tolerance_value=limit.tolerance_value,
                interval_value=limit.interval_value,
                percentage_used=(current - base) / limit.interval_value * 100.0,
                state=classify(remaining, limit.tolerance_value),
            )
        )
    if not limits:
        raise ValueError(f"Trigger {trigger.id} has no configured limit.")

    governing = max(limits, key=lambda s: (STATE_RANK[s.state], -s.fraction_remaining))
    return StatusComputation(trigger_id=trigger.id, governing=governing, limits=limits)


def overall_state(statuses: Iterable) -> ComplianceStateEnum:
    worst = ComplianceStateEnum.GOOD
    for status in statuses:
        if STATE_RANK[status.state] > STATE_RANK[worst]:
            worst = status.state
    return worst


def most_urgent(statuses: Iterable):
    """Highest band first, then the most consumed interval."""
    items = list(statuses)
    if not items:
        return None
    return max(items, key=lambda s: (STATE_RANK[s.state], s.percentage_used))


# ---------------------------------------------------------------------------
# Baselines
# ---------------------------------------------------------------------------


def get_baseline(db: Session, *, subject_id: str, trigger_id: int) -> Optional[ComplianceBaseline]:
    stmt = select(ComplianceBaseline).where(
        ComplianceBaseline.subject_id == subject_id,
        ComplianceBaseline.trigger_id == trigger_id,
    )
    return db.execute(stmt).scalar_one_or_none()


def record_compliance(
    db: Session,
    *,
    subject_id: str,
    trigger_id: int,
    snapshot=None,
    on_date: Optional[date] = None,
    work_order_id: Optional[int] = None,
) -> ComplianceBaseline:
    """
    Re-baseline a trigger on a subject at the given usage snapshot
    (default: the subject's current snapshot) and date.
    """
    program_services.get_trigger(db, trigger_id)
    if snapshot is None:
        snapshot = usage_services.get_snapshot(db, subject_id)
    on_date = on_date or utcnow().date()

    baseline = get_baseline(db, subject_id=subject_id, trigger_id=trigger_id)
    if baseline is None:
        baseline = ComplianceBaseline(subject_id=subject_id, trigger_id=trigger_id)
        db.add(baseline)
    baseline.baseline_flight_minutes = snapshot.total_flight_minutes or 0
    baseline.baseline_cycles = snapshot.total_cycles or 0
    baseline.baseline_date = on_date
    baseline.last_compliance_event_seq = snapshot.as_of_event_seq or 0
    baseline.work_order_id = work_order_id
    db.flush()

    logger.info(
        "Compliance baseline recorded",
        extra={
            "subject_id": subject_id,
            "trigger_id": trigger_id,
            "baseline_flight_minutes": baseline.baseline_flight_minutes,
            "baseline_cycles": baseline.baseline_cycles,
            "work_order_id": work_order_id,
        },
    )
    return baseline


def hypothetical_status_after_compliance(
    db: Session,
    *,
    subject_id: str,
    trigger_id: int,
    as_of: Optional[datetime] = None,
) -> StatusComputation:
    """
    Status the trigger would have if compliance were recorded now. Nothing
    is persisted.
    """
    trigger = program_services.get_trigger(db, trigger_id)
    snapshot = usage_services.get_snapshot(db, subject_id)
    on_date = as_utc(as_of or utcnow()).date()
    assumed = ComplianceBaseline(
        subject_id=subject_id,
        trigger_id=trigger_id,
        baseline_flight_minutes=snapshot.total_flight_minutes or 0,
        baseline_cycles=snapshot.total_cycles or 0,
        baseline_date=on_date,
        last_compliance_event_seq=snapshot.as_of_event_seq or 0,
    )
    return compute_status(trigger, snapshot, assumed, on_date)


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------


def get_status(db: Session, *, subject_id: str, trigger_id: int) -> Optional[ComplianceStatus]:
    stmt = select(ComplianceStatus).where(
        ComplianceStatus.subject_id == subject_id,
        ComplianceStatus.trigger_id == trigger_id,
    )
    return db.execute(stmt).scalar_one_or_none()


def list_statuses(db: Session, *, subject_id: str) -> List[ComplianceStatus]:
    stmt = (
        select(ComplianceStatus)
        .where(ComplianceStatus.subject_id == subject_id)
        .order_by(ComplianceStatus.trigger_id)
    )
    return list(db.execute(stmt).scalars().all())


def _apply(
    status: ComplianceStatus,
    computed: StatusComputation,
    *,
    baseline: Optional[ComplianceBaseline],
    event_seq: int,
) -> bool:
    governing = computed.governing
    values = {
        "metric": governing.metric,
        "last_compliance_event_seq": baseline.last_compliance_event_seq if baseline else 0,
        "due_at_metric_value": governing.due_at_metric_value,
        "current_metric_value": governing.current_metric_value,
        "remaining_margin": governing.remaining_margin,
        "percentage_used": governing.percentage_used,
        "state": governing.state,
        "evaluated_event_seq": event_seq,
    }
    changed = False
    for field_name, value in values.items():
        if getattr(status, field_name) != value:
            setattr(status, field_name, value)
            changed = True
    if changed:
        status.evaluated_at = utcnow()
    return changed


def _subject_triggers(db: Session, subject_id: str) -> List[MaintenanceTrigger]:
    kind = fleet_services.get_subject_kind(db, subject_id)
    component_type = None
    if kind == SubjectKindEnum.COMPONENT:
        component_type = fleet_services.get_component(db, subject_id).component_type
    return program_services.applicable_triggers(db, subject_kind=kind, component_type=component_type)


def evaluate(db: Session, *, subject_id: str, as_of: Optional[datetime] = None) -> EvaluationResult:
    """
    Recompute the status of every applicable trigger on a subject.

    TriggerFired is edge-triggered: it is enqueued only when a status
    enters the due band (CRITICAL / OVERDUE) from outside it. Evaluating
    again with unchanged usage writes nothing and enqueues nothing.
    """
    triggers = _subject_triggers(db, subject_id)
    snapshot = usage_services.get_snapshot(db, subject_id)
    on_date = as_utc(as_of or utcnow()).date()
    event_seq = snapshot.as_of_event_seq or 0

    result = EvaluationResult(subject_id=subject_id)
    for trigger in triggers:
        baseline = get_baseline(db, subject_id=subject_id, trigger_id=trigger.id)
        computed = compute_status(trigger, snapshot, baseline, on_date)

        status = get_status(db, subject_id=subject_id, trigger_id=trigger.id)
        previous_state = status.state if status is not None else None
        if status is None:
            status = ComplianceStatus(subject_id=subject_id, trigger_id=trigger.id)
            db.add(status)

        if _apply(status, computed, baseline=baseline, event_seq=event_seq):
            result.changed.append(trigger.id)
        result.statuses.append(status)

        if previous_state != computed.state:
            outbox.enqueue(
                db,
                events.compliance_status_changed(
                    subject_id,
                    trigger.id,
                    previous_state=previous_state.value if previous_state else None,
                    state=computed.state.value,
                ),
            )

        if computed.state in DUE_STATES and previous_state not in DUE_STATES:
            fired = FiredTrigger(
                subject_id=subject_id,
                trigger_id=trigger.id,
                state=computed.state,
                remaining_margin=computed.remaining_margin,
            )
            result.fired.append(fired)
            outbox.enqueue(
                db,
                events.trigger_fired(
                    subject_id,
                    trigger.id,
                    state=computed.state.value,
                    remaining_margin=computed.remaining_margin,
                ),
            )
            logger.info(
                "Maintenance trigger fired",
                extra={
                    "subject_id": subject_id,
                    "trigger_id": trigger.id,
                    "state": computed.state.value,
                    "metric": computed.metric.value,
                    "remaining_margin": computed.remaining_margin,
                },
            )

    _advance_cursor(db, subject_id, event_seq)

    try:
        flush_versioned(db, entity="ComplianceStatus", entity_id=subject_id)
    except IntegrityError as exc:
        db.rollback()
        if is_unique_violation(exc):
            raise ConcurrentModificationError(
                f"Compliance for {subject_id} was evaluated concurrently; retry.",
                detail=[{"field": "trigger_id", "reason": "status already created"}],
            ) from exc
        raise
    return result


def _advance_cursor(db: Session, subject_id: str, event_seq: int) -> None:
    cursor = db.get(ComplianceCursor, subject_id)
    if cursor is None:
        db.add(ComplianceCursor(subject_id=subject_id, evaluated_event_seq=event_seq))
    elif cursor.evaluated_event_seq != event_seq:
        cursor.evaluated_event_seq = event_seq
        cursor.evaluated_at = utcnow()


def lagging_subjects(db: Session, *, limit: int) -> List[str]:
    """Registered subjects with usage recorded after their last evaluation (or never evaluated)."""
    registered = or_(
        select(Aircraft.id).where(Aircraft.id == UsageSubjectHead.subject_id).exists(),
        select(Component.id).where(Component.id == UsageSubjectHead.subject_id).exists(),
    )
    stmt = (
        select(UsageSubjectHead.subject_id)
        .outerjoin(ComplianceCursor, ComplianceCursor.subject_id == UsageSubjectHead.subject_id)
        .where(
            registered,
            or_(
                ComplianceCursor.subject_id.is_(None),
                ComplianceCursor.evaluated_event_seq < UsageSubjectHead.last_seq,
            ),
        )
        .order_by(UsageSubjectHead.subject_id)
        .limit(limit)
    )
    return list(db.execute(stmt).scalars().all())


def due_statuses(db: Session, *, subject_id: str) -> List[ComplianceStatus]:
    """Statuses of a subject currently in the due band."""
    stmt = (
        select(ComplianceStatus)
        .where(
            ComplianceStatus.subject_id == subject_id,
            ComplianceStatus.state.in_(list(DUE_STATES)),
        )
        .order_by(ComplianceStatus.trigger_id)
    )
    return list(db.execute(stmt).scalars().all())


# ---------------------------------------------------------------------------
# Life-limited parts
# ---------------------------------------------------------------------------


def life_limit_status(db: Session, component: Component) -> LifeLimitStatus:
    snapshot = usage_services.get_snapshot(db, component.id)
    return LifeLimitStatus(
        component_id=component.id,
        aircraft_id=fleet_services.aircraft_for_subject(db, component.id),
        hours_used=(snapshot.total_flight_minutes or 0) / 60.0,
        cycles_used=snapshot.total_cycles or 0,
        life_limit_hours=component.life_limit_hours,
        life_limit_cycles=component.life_limit_cycles,
    )


def components_near_life_limit(
    db: Session,
    *,
    threshold: float = LLP_WARNING_FRACTION,
    aircraft_id: Optional[str] = None,
) -> List[LifeLimitStatus]:
    """
    Life-limited parts that have used at least ``threshold`` of any of their
    limits, most consumed first. A part at 1.0 or more has reached its
    ceiling and must be retired; inspection does not extend it.
    """
    if aircraft_id is not None:
        components = [c for c in fleet_services.installed_components(db, aircraft_id=aircraft_id) if c.is_llp]
    else:
        components = list(
            db.execute(select(Component).where(Component.is_llp.is_(True)).order_by(Component.id)).scalars().all()
        )

    flagged = []
    for component in components:
        status = life_limit_status(db, component)
        if status.fraction_used >= threshold:
            flagged.append(status)
    flagged.sort(key=lambda s: s.fraction_used, reverse=True)
    if flagged:
        logger.info(
            "Life-limited parts near retirement",
            extra={"count": len(flagged), "threshold": threshold, "aircraft_id": aircraft_id},
        )
    return flagged
