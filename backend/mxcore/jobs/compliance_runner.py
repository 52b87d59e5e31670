"""Compliance runner.

Consumes UsageChanged events, re-evaluates the affected subjects and opens
a work order for every due trigger that has none. Subjects whose events
were missed are picked up from their evaluation cursors. Safe to run from
cron: a second pass over the same usage fires nothing, and an already-open
order for a trigger is left alone.
"""

from __future__ import annotations

import logging
import os
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from mxcore.database import session_scope
from mxcore.apps.compliance import services as compliance_services
from mxcore.apps.events import broker as events
from mxcore.apps.work import services as work_services
from mxcore.errors import ConcurrentModificationError, DuplicateOpenOrderError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

COMPLIANCE_RUNNER_BATCH = int(os.getenv("COMPLIANCE_RUNNER_BATCH", "500"))
RUNNER_ACTOR = os.getenv("COMPLIANCE_RUNNER_ACTOR", "compliance-runner")


class ComplianceRunner:
    """Long-lived subscriber; ``run`` processes whatever has queued up."""

    def __init__(self, event_broker: Optional[events.EventBroker] = None) -> None:
        self.broker = event_broker or events.broker
        self.queue = self.broker.subscribe({events.USAGE_CHANGED})

    def pending_subjects(self, db: Session, limit: int) -> List[str]:
        """Queued subjects first, then any whose usage moved past their last evaluation."""
        subjects: List[str] = []
        for envelope in events.drain(self.queue, limit):
            subject_id = envelope.payload.get("subjectId")
            if subject_id and subject_id not in subjects:
                subjects.append(subject_id)
        # The queue drops its oldest entries when full; the cursors do not.
        for subject_id in compliance_services.lagging_subjects(db, limit=limit):
            if len(subjects) >= limit:
                break
            if subject_id not in subjects:
                subjects.append(subject_id)
        return subjects

    def run(self, db: Session, *, limit: int = COMPLIANCE_RUNNER_BATCH) -> Dict[str, int]:
        summary = {"subjects": 0, "fired": 0, "opened": 0, "duplicates": 0, "skipped": 0}
        for subject_id in self.pending_subjects(db, limit):
            summary["subjects"] += 1
            try:
                result = compliance_services.evaluate(db, subject_id=subject_id)
                db.commit()
            except (ConcurrentModificationError, NotFoundError) as exc:
                db.rollback()
                summary["skipped"] += 1
                logger.warning(
                    "Compliance evaluation skipped",
                    extra={"subject_id": subject_id, "error": str(exc)},
                )
                continue

            summary["fired"] += len(result.fired)
            fresh = {fired.trigger_id for fired in result.fired}
            # Every due trigger without an open order gets one, not only fresh
            # edges, so an order that failed to open earlier is retried here.
            for status in compliance_services.due_statuses(db, subject_id=subject_id):
                existing = work_services.find_open_trigger_order(
                    db, subject_id=subject_id, trigger_id=status.trigger_id
                )
                if existing is not None:
                    if status.trigger_id in fresh:
                        summary["duplicates"] += 1
                        logger.info(
                            "Work order already open for trigger",
                            extra={
                                "subject_id": subject_id,
                                "trigger_id": status.trigger_id,
                                "wo_number": existing.wo_number,
                            },
                        )
                    continue
                self._open(db, subject_id=subject_id, trigger_id=status.trigger_id, summary=summary)
        return summary

    def _open(self, db: Session, *, subject_id: str, trigger_id: int, summary: Dict[str, int]) -> None:
        try:
            work_order = work_services.open_from_trigger(
                db,
                trigger_id=trigger_id,
                subject_id=subject_id,
                actor_user_id=RUNNER_ACTOR,
            )
            db.commit()
        except DuplicateOpenOrderError:
            db.rollback()
            summary["duplicates"] += 1
            logger.info(
                "Work order already open for trigger",
                extra={"subject_id": subject_id, "trigger_id": trigger_id},
            )
        except (ConcurrentModificationError, ValidationError) as exc:
            db.rollback()
            summary["skipped"] += 1
            logger.warning(
                "Work order not opened",
                extra={"subject_id": subject_id, "trigger_id": trigger_id, "error": str(exc)},
            )
        else:
            summary["opened"] += 1
            logger.info(
                "Work order opened for due trigger",
                extra={"subject_id": subject_id, "trigger_id": trigger_id, "wo_number": work_order.wo_number},
            )


_runner: Optional[ComplianceRunner] = None


def run() -> dict:
    global _runner
    if _runner is None:
        _runner = ComplianceRunner()
    with session_scope() as db:
        return _runner.run(db)


if __name__ == "__main__":
    result = run()
    print("Compliance runner completed:", result)
