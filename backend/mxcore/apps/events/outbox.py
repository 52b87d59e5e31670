"""
Transactional hand-off from services to the broker.

Envelopes are parked in ``Session.info`` and published once the
surrounding transaction commits; a rollback discards them.
"""

from __future__ import annotations

import logging
from typing import List

from sqlalchemy import event
from sqlalchemy.orm import Session

from .broker import EventEnvelope, publish_event

logger = logging.getLogger(__name__)

_PENDING_KEY = "mxcore.pending_events"


def enqueue(db: Session, envelope: EventEnvelope) -> None:
    db.info.setdefault(_PENDING_KEY, []).append(envelope)


def pending(db: Session) -> List[EventEnvelope]:
    return list(db.info.get(_PENDING_KEY, []))


@event.listens_for(Session, "after_commit")
def _publish_pending(session: Session) -> None:
    envelopes = session.info.pop(_PENDING_KEY, [])
    for envelope in envelopes:
        try:
            publish_event(envelope)
        except Exception:  # noqa: BLE001
            logger.warning(
                "Failed to publish domain event",
                extra={"event_type": envelope.type, "entity_id": envelope.entityId},
            )


@event.listens_for(Session, "after_rollback")
def _discard_pending(session: Session) -> None:
    dropped = session.info.pop(_PENDING_KEY, [])
    if dropped:
        logger.debug("Discarded %d unpublished domain events after rollback", len(dropped))
