from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Index, JSON, String

from ...database import Base
from ...utils.identifiers import generate_uuid7


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuditEvent(Base):
    """
    One row per recorded change. Rows are never updated or deleted.

    ``aircraft_id`` scopes the row to a tail so the aircraft's technical
    history can be read back in one query; stock movements and other
    fleet-wide changes leave it empty.
    """

    __tablename__ = "audit_events"
    __table_args__ = (
        Index("ix_audit_events_entity", "entity_type", "entity_id"),
        Index("ix_audit_events_aircraft_time", "aircraft_id", "occurred_at"),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid7)
    aircraft_id = Column(String(64), nullable=True, index=True)
    entity_type = Column(String(64), nullable=False)
    entity_id = Column(String(64), nullable=False)
    action = Column(String(64), nullable=False, index=True)
    actor_user_id = Column(String(64), nullable=True, index=True)
    occurred_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, index=True)

    # Snapshots of the changed fields only, not whole rows.
    before = Column(JSON, nullable=True)
    after = Column(JSON, nullable=True)

    correlation_id = Column(String(64), nullable=True, index=True)
    metadata_json = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    def __repr__(self) -> str:
        return f"<AuditEvent {self.action} {self.entity_type}:{self.entity_id} by={self.actor_user_id}>"
