from __future__ import annotations

import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy.orm import Query, Session

from . import models, schemas

logger = logging.getLogger(__name__)


def create_audit_event(
    db: Session,
    *,
    data: schemas.AuditEventCreate,
) -> models.AuditEvent:
    """Add one audit row and flush it with the caller's transaction."""
    event = models.AuditEvent(
        aircraft_id=data.aircraft_id,
        entity_type=data.entity_type,
        entity_id=data.entity_id,
        action=data.action,
        actor_user_id=data.actor_user_id,
        before=data.before,
        after=data.after,
        correlation_id=data.correlation_id,
        metadata_json=data.metadata,
    )
    if data.occurred_at is not None:
        event.occurred_at = data.occurred_at
    db.add(event)
    db.flush()
    return event


def log_event(
    db: Session,
    *,
    actor_user_id: Optional[str],
    entity_type: str,
    entity_id: str,
    action: str,
    aircraft_id: Optional[str] = None,
    before: Optional[dict] = None,
    after: Optional[dict] = None,
    correlation_id: Optional[str] = None,
    metadata: Optional[dict] = None,
    critical: bool = False,
) -> Optional[models.AuditEvent]:
    """
    Record an audit event.

    Critical events (transitions, sign-offs, airworthiness, integrity
    alarms) must land with the change they describe, so a failure is
    re-raised and the caller's transaction fails with it. Anything else
    is logged and dropped.
    """
    try:
        return create_audit_event(
            db,
            data=schemas.AuditEventCreate(
                aircraft_id=aircraft_id,
                entity_type=entity_type,
                entity_id=entity_id,
                action=action,
                actor_user_id=actor_user_id,
                before=before,
                after=after,
                correlation_id=correlation_id,
                metadata=metadata,
            ),
        )
    except Exception:
        logger.warning(
            "Failed to record audit event",
            extra={
                "aircraft_id": aircraft_id,
                "entity_type": entity_type,
                "entity_id": entity_id,
                "action": action,
                "critical": critical,
            },
        )
        if critical:
            raise
        return None


def _in_window(query: Query, start: Optional[datetime], end: Optional[datetime]) -> Query:
    if start:
        query = query.filter(models.AuditEvent.occurred_at >= start)
    if end:
        query = query.filter(models.AuditEvent.occurred_at <= end)
    return query


def list_audit_events(
    db: Session,
    *,
    aircraft_id: Optional[str] = None,
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    action: Optional[str] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> List[models.AuditEvent]:
    query = db.query(models.AuditEvent)
    if aircraft_id:
        query = query.filter(models.AuditEvent.aircraft_id == aircraft_id)
    if entity_type:
        query = query.filter(models.AuditEvent.entity_type == entity_type)
    if entity_id:
        query = query.filter(models.AuditEvent.entity_id == entity_id)
    if action:
        query = query.filter(models.AuditEvent.action == action)
    query = _in_window(query, start, end)
    return query.order_by(models.AuditEvent.occurred_at.asc(), models.AuditEvent.id.asc()).all()


def aircraft_history(
    db: Session,
    aircraft_id: str,
    *,
    limit: Optional[int] = None,
) -> List[schemas.AuditEventRead]:
    """Newest-first technical history of one tail."""
    query = (
        db.query(models.AuditEvent)
        .filter(models.AuditEvent.aircraft_id == aircraft_id)
        .order_by(models.AuditEvent.occurred_at.desc(), models.AuditEvent.id.desc())
    )
    if limit:
        query = query.limit(limit)
    return [schemas.AuditEventRead.model_validate(event) for event in query.all()]
