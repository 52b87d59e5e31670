"""
Release gate.

Last check before an aircraft is returned to service. Everything is
re-derived from persisted rows; the work order's own bookkeeping is not
trusted.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy.orm import Session

from ...errors import ReleaseBlockedError
from ..compliance import services as compliance_services
from ..compliance.models import ComplianceStateEnum
from ..work import models as work_models
from ..workflow.guards import GuardResult, task_failures

logger = logging.getLogger(__name__)


def blocking_orders(db: Session, work_order: work_models.WorkOrder) -> List[work_models.WorkOrder]:
    """Unfinished orders on the same aircraft that hold up releasing ``work_order``."""
    if work_order.concurrent_safe:
        return []
    return (
        db.query(work_models.WorkOrder)
        .filter(
            work_models.WorkOrder.aircraft_id == work_order.aircraft_id,
            work_models.WorkOrder.id != work_order.id,
            work_models.WorkOrder.status.in_(list(work_models.BLOCKING_STATUSES)),
            work_models.WorkOrder.concurrent_safe.is_(False),
        )
        .order_by(work_models.WorkOrder.id.asc())
        .all()
    )


def outstanding_orders(db: Session, aircraft_id: str) -> List[work_models.WorkOrder]:
    """Started orders awaiting sign-off; the aircraft stays grounded while any remain."""
    return (
        db.query(work_models.WorkOrder)
        .filter(
            work_models.WorkOrder.aircraft_id == aircraft_id,
            work_models.WorkOrder.status.in_(list(work_models.GROUNDING_STATUSES)),
            work_models.WorkOrder.concurrent_safe.is_(False),
        )
        .order_by(work_models.WorkOrder.id.asc())
        .all()
    )


def evaluate_release(
    db: Session,
    work_order: work_models.WorkOrder,
    *,
    as_of: Optional[datetime] = None,
) -> GuardResult:
    failures: GuardResult = []

    tasks = (
        db.query(work_models.Task)
        .filter(work_models.Task.work_order_id == work_order.id)
        .order_by(work_models.Task.sequence.asc())
        .all()
    )
    if not tasks:
        failures.append({"field": "tasks", "reason": "work order has no tasks"})
    failures.extend(task_failures(tasks))

    for other in blocking_orders(db, work_order):
        failures.append(
            {
                "field": f"work_order:{other.wo_number}",
                "reason": f"blocking order in {other.status.value} on aircraft {work_order.aircraft_id}",
            }
        )

    for llp in compliance_services.components_near_life_limit(db, threshold=1.0, aircraft_id=work_order.aircraft_id):
        failures.append(
            {
                "field": f"component:{llp.component_id}",
                "reason": "life limit reached; part must be retired",
            }
        )

    if work_order.trigger_id is not None:
        projected = compliance_services.hypothetical_status_after_compliance(
            db,
            subject_id=work_order.subject_id,
            trigger_id=work_order.trigger_id,
            as_of=as_of,
        )
        if projected.state == ComplianceStateEnum.OVERDUE:
            failures.append(
                {
                    "field": f"trigger:{work_order.trigger_id}",
                    "reason": f"still OVERDUE on {projected.metric.value} after compliance",
                }
            )
    return failures


def can_release(
    db: Session,
    work_order: work_models.WorkOrder,
    *,
    as_of: Optional[datetime] = None,
) -> None:
    failures = evaluate_release(db, work_order, as_of=as_of)
    if failures:
        logger.warning(
            "Release blocked",
            extra={
                "work_order_id": work_order.id,
                "aircraft_id": work_order.aircraft_id,
                "reasons": [f["reason"] for f in failures],
            },
        )
        raise ReleaseBlockedError(
            f"Work order {work_order.wo_number} cannot be released.",
            detail=failures,
        )
