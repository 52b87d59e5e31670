# backend/mxcore/apps/usage/services.py
#
# Usage ledger operations.
#
# Responsibilities:
# - Append usage events (single, batch, or fanned out from one flight log).
# - Keep the per-subject sequence so same-subject writers serialise.
# - Fold events into UsageSnapshot lazily, on read, never on write.
# - Publish UsageChanged after commit.

from __future__ import annotations

from datetime import datetime, timedelta
import logging
import os
from typing import Iterable, List, Optional, Sequence

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ...concurrency import flush_versioned, is_unique_violation
from ...errors import ConcurrentModificationError, OutOfOrderEventError, ValidationError
from ...time_utils import as_utc, utcnow
from ..events import broker as events
from ..events import outbox
from ..fleet import services as fleet_services
from ..fleet.models import SubjectKindEnum
from . import models, schemas

logger = logging.getLogger(__name__)

OUT_OF_ORDER_GRACE = timedelta(minutes=int(os.getenv("USAGE_OUT_OF_ORDER_GRACE_MINUTES", "1440")))
STRICT_ORDERING = os.getenv("USAGE_STRICT_ORDERING", "0") == "1"


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------


def _validate_event(db: Session, payload: schemas.UsageEventCreate) -> None:
    missing = []
    if not (payload.subject_id or "").strip():
        missing.append({"field": "subject_id", "reason": "subject required"})
    if payload.corrects_event_id is None:
        if payload.delta_flight_minutes < 0:
            missing.append({"field": "delta_flight_minutes", "reason": "negative usage requires a correcting event"})
        if payload.delta_cycles < 0:
            missing.append({"field": "delta_cycles", "reason": "negative usage requires a correcting event"})
    else:
        corrected = db.get(models.UsageEvent, payload.corrects_event_id)
        if corrected is None or corrected.subject_id != payload.subject_id:
            missing.append({"field": "corrects_event_id", "reason": "corrected event not found for subject"})
    if missing:
        raise ValidationError("Usage event rejected.", detail=missing)

    if payload.source and payload.corrects_event_id is None:
        duplicate = (
            db.query(models.UsageEvent.id)
            .filter(
                models.UsageEvent.subject_id == payload.subject_id,
                models.UsageEvent.source == payload.source,
                models.UsageEvent.corrects_event_id.is_(None),
            )
            .first()
        )
        if duplicate is not None:
            raise ValidationError(
                f"Usage from {payload.source} is already recorded for {payload.subject_id}.",
                detail=[{"field": "source", "reason": "already recorded; submit a correcting event instead"}],
            )


def _get_or_create_head(db: Session, payload: schemas.UsageEventCreate) -> models.UsageSubjectHead:
    head = db.get(models.UsageSubjectHead, payload.subject_id)
    if head is not None:
        return head
    head = models.UsageSubjectHead(
        subject_id=payload.subject_id,
        subject_kind=payload.subject_kind,
        last_seq=0,
        max_event_time=None,
    )
    db.add(head)
    db.add(
        models.UsageSnapshot(
            subject_id=payload.subject_id,
            subject_kind=payload.subject_kind,
            total_flight_minutes=0,
            total_cycles=0,
            as_of_event_seq=0,
        )
    )
    return head


def _is_out_of_order(head: models.UsageSubjectHead, event_time: datetime) -> bool:
    latest = as_utc(head.max_event_time)
    if latest is None:
        return False
    return as_utc(event_time) < latest - OUT_OF_ORDER_GRACE


def record_usage(db: Session, *, event: schemas.UsageEventCreate) -> models.UsageEvent:
    """
    Append one usage event. O(1): the snapshot is only invalidated (its
    as_of_event_seq falls behind the head), never refolded here.

    Events older than the grace window are accepted and flagged
    ``requires_recompute``; with USAGE_STRICT_ORDERING they are rejected.
    """
    _validate_event(db, event)
    head = _get_or_create_head(db, event)

    late = _is_out_of_order(head, event.event_time)
    if late and STRICT_ORDERING:
        raise OutOfOrderEventError(
            f"Usage event for {event.subject_id} predates recorded usage beyond the grace window.",
            detail=[{"field": "event_time", "reason": "older than grace window"}],
        )

    head.last_seq = (head.last_seq or 0) + 1
    if head.max_event_time is None or as_utc(event.event_time) > as_utc(head.max_event_time):
        head.max_event_time = event.event_time

    row = models.UsageEvent(
        subject_id=event.subject_id,
        subject_kind=event.subject_kind,
        subject_seq=head.last_seq,
        event_time=event.event_time,
        delta_flight_minutes=event.delta_flight_minutes,
        delta_cycles=event.delta_cycles,
        source=event.source,
        corrects_event_id=event.corrects_event_id,
        requires_recompute=late,
    )
    db.add(row)
    try:
        flush_versioned(db, entity="UsageSubjectHead", entity_id=event.subject_id)
    except IntegrityError as exc:
        # Two first-ever writers for one subject, or a duplicate subject_seq.
        db.rollback()
        if is_unique_violation(exc):
            raise ConcurrentModificationError(
                f"Concurrent usage write for {event.subject_id}; retry.",
                detail=[{"field": "subject_seq", "reason": "sequence already taken"}],
            ) from exc
        raise

    if late:
        logger.info(
            "Late usage event flagged for recompute",
            extra={"subject_id": event.subject_id, "subject_seq": row.subject_seq, "source": event.source},
        )

    outbox.enqueue(
        db,
        events.usage_changed(event.subject_id, subject_kind=event.subject_kind.value, event_seq=row.subject_seq),
    )
    return row


def record_usage_batch(
    db: Session,
    *,
    events_in: Sequence[schemas.UsageEventCreate],
) -> List[models.UsageEvent]:
    return [record_usage(db, event=event) for event in events_in]


def record_flight(
    db: Session,
    *,
    aircraft_id: str,
    flight_log_id: str,
    event_time: datetime,
    flight_minutes: int,
    cycles: int,
) -> List[models.UsageEvent]:
    """
    Flight log finalisation: one event for the aircraft plus one for every
    component installed on it at ``event_time``.
    """
    fleet_services.get_aircraft(db, aircraft_id)
    subjects = [(aircraft_id, SubjectKindEnum.AIRCRAFT)]
    for component in fleet_services.installed_components(db, aircraft_id=aircraft_id, at=event_time):
        subjects.append((component.id, SubjectKindEnum.COMPONENT))

    recorded = []
    for subject_id, kind in subjects:
        recorded.append(
            record_usage(
                db,
                event=schemas.UsageEventCreate(
                    subject_id=subject_id,
                    subject_kind=kind,
                    event_time=event_time,
                    delta_flight_minutes=flight_minutes,
                    delta_cycles=cycles,
                    source=flight_log_id,
                ),
            )
        )
    return recorded


# ---------------------------------------------------------------------------
# Reads / folding
# ---------------------------------------------------------------------------


def _fold(snapshot: models.UsageSnapshot, rows: Iterable[models.UsageEvent]) -> None:
    for row in rows:
        snapshot.total_flight_minutes = (snapshot.total_flight_minutes or 0) + (row.delta_flight_minutes or 0)
        snapshot.total_cycles = (snapshot.total_cycles or 0) + (row.delta_cycles or 0)
        if row.subject_seq > (snapshot.as_of_event_seq or 0):
            snapshot.as_of_event_seq = row.subject_seq
        if snapshot.as_of_event_time is None or as_utc(row.event_time) > as_utc(snapshot.as_of_event_time):
            snapshot.as_of_event_time = row.event_time


def _events_for(db: Session, subject_id: str, *, after_seq: int = 0) -> List[models.UsageEvent]:
    return (
        db.query(models.UsageEvent)
        .filter(
            models.UsageEvent.subject_id == subject_id,
            models.UsageEvent.subject_seq > after_seq,
        )
        .order_by(models.UsageEvent.subject_seq.asc())
        .all()
    )


def rebuild_snapshot(db: Session, subject_id: str) -> models.UsageSnapshot:
    """
    Full refold from an empty snapshot, in event-time order (ties by
    subject sequence). Idempotent.
    """
    snapshot = db.get(models.UsageSnapshot, subject_id)
    head = db.get(models.UsageSubjectHead, subject_id)
    if snapshot is None:
        if head is None:
            return _empty_snapshot(db, subject_id)
        snapshot = models.UsageSnapshot(subject_id=subject_id, subject_kind=head.subject_kind)
        db.add(snapshot)

    rows = (
        db.query(models.UsageEvent)
        .filter(models.UsageEvent.subject_id == subject_id)
        .order_by(models.UsageEvent.event_time.asc(), models.UsageEvent.subject_seq.asc())
        .all()
    )
    snapshot.total_flight_minutes = 0
    snapshot.total_cycles = 0
    snapshot.as_of_event_seq = 0
    snapshot.as_of_event_time = None
    _fold(snapshot, rows)
    snapshot.refreshed_at = utcnow()
    db.flush()
    return snapshot


def _empty_snapshot(db: Session, subject_id: str) -> models.UsageSnapshot:
    """Transient zero snapshot for a subject with no recorded usage."""
    kind = fleet_services.get_subject_kind(db, subject_id)
    return models.UsageSnapshot(
        subject_id=subject_id,
        subject_kind=kind,
        total_flight_minutes=0,
        total_cycles=0,
        as_of_event_seq=0,
        as_of_event_time=None,
    )


def get_snapshot(db: Session, subject_id: str) -> models.UsageSnapshot:
    """
    Latest folded snapshot. Staleness is decided by sequence numbers: an
    in-order tail is folded incrementally, a tail containing a late event
    forces a full rebuild.
    """
    head = db.get(models.UsageSubjectHead, subject_id)
    if head is None:
        return _empty_snapshot(db, subject_id)

    snapshot = db.get(models.UsageSnapshot, subject_id)
    if snapshot is None:
        return rebuild_snapshot(db, subject_id)
    if (snapshot.as_of_event_seq or 0) >= head.last_seq:
        return snapshot

    tail = _events_for(db, subject_id, after_seq=snapshot.as_of_event_seq or 0)
    if any(row.requires_recompute for row in tail):
        logger.debug("Rebuilding usage snapshot after late event", extra={"subject_id": subject_id})
        return rebuild_snapshot(db, subject_id)

    _fold(snapshot, tail)
    snapshot.refreshed_at = utcnow()
    db.flush()
    return snapshot


def usage_as_of(db: Session, subject_id: str, at: datetime) -> schemas.UsageTotals:
    """
    Totals from every event whose event_time is not after ``at``, corrections
    included. Not cached.
    """
    row = (
        db.query(
            func.coalesce(func.sum(models.UsageEvent.delta_flight_minutes), 0),
            func.coalesce(func.sum(models.UsageEvent.delta_cycles), 0),
            func.coalesce(func.max(models.UsageEvent.subject_seq), 0),
        )
        .filter(
            models.UsageEvent.subject_id == subject_id,
            models.UsageEvent.event_time <= at,
        )
        .one()
    )
    return schemas.UsageTotals(
        subject_id=subject_id,
        total_flight_minutes=int(row[0]),
        total_cycles=int(row[1]),
        as_of_event_seq=int(row[2]),
    )


def list_events(db: Session, subject_id: str) -> List[models.UsageEvent]:
    return _events_for(db, subject_id)


def latest_seq(db: Session, subject_id: str) -> int:
    head: Optional[models.UsageSubjectHead] = db.get(models.UsageSubjectHead, subject_id)
    return head.last_seq if head else 0
