# backend/mxcore/apps/usage/models.py
#
# ORM models for the usage ledger:
# - UsageEvent        : immutable usage delta (flight minutes / cycles).
#                       Corrections are new events pointing at the one they
#                       correct; nothing is ever edited.
# - UsageSubjectHead  : per-subject sequence counter. Versioned, so two
#                       writers racing on the same subject cannot both take
#                       the same subject_seq.
# - UsageSnapshot     : derived totals cache, stale whenever
#                       as_of_event_seq < head.last_seq.

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)

from ...database import Base
from ..fleet.models import SubjectKindEnum


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UsageEvent(Base):
    __tablename__ = "usage_events"
    __table_args__ = (
        UniqueConstraint("subject_id", "subject_seq", name="uq_usage_events_subject_seq"),
        Index("ix_usage_events_subject_time", "subject_id", "event_time"),
        Index("ix_usage_events_subject_source", "subject_id", "source"),
    )

    # Global event sequence.
    id = Column(Integer, primary_key=True, autoincrement=True)

    subject_id = Column(String(64), nullable=False, index=True)
    subject_kind = Column(
        SAEnum(SubjectKindEnum, name="usage_subject_kind_enum", native_enum=False),
        nullable=False,
    )
    subject_seq = Column(Integer, nullable=False)

    event_time = Column(DateTime(timezone=True), nullable=False)
    delta_flight_minutes = Column(Integer, nullable=False, default=0)
    delta_cycles = Column(Integer, nullable=False, default=0)
    source = Column(String(64), nullable=True)  # flight log id
    corrects_event_id = Column(Integer, ForeignKey("usage_events.id", ondelete="RESTRICT"), nullable=True)

    requires_recompute = Column(Boolean, nullable=False, default=False)
    recorded_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    def __repr__(self) -> str:
        return (
            f"<UsageEvent id={self.id} subject={self.subject_id}#{self.subject_seq} "
            f"min={self.delta_flight_minutes} cyc={self.delta_cycles}>"
        )


class UsageSubjectHead(Base):
    __tablename__ = "usage_subject_heads"

    subject_id = Column(String(64), primary_key=True)
    subject_kind = Column(
        SAEnum(SubjectKindEnum, name="usage_head_subject_kind_enum", native_enum=False),
        nullable=False,
    )
    last_seq = Column(Integer, nullable=False, default=0)
    max_event_time = Column(DateTime(timezone=True), nullable=True)
    version = Column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}


class UsageSnapshot(Base):
    __tablename__ = "usage_snapshots"

    subject_id = Column(String(64), primary_key=True)
    subject_kind = Column(
        SAEnum(SubjectKindEnum, name="usage_snapshot_subject_kind_enum", native_enum=False),
        nullable=False,
    )
    total_flight_minutes = Column(Integer, nullable=False, default=0)
    total_cycles = Column(Integer, nullable=False, default=0)
    as_of_event_seq = Column(Integer, nullable=False, default=0)
    as_of_event_time = Column(DateTime(timezone=True), nullable=True)
    refreshed_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    @property
    def total_flight_hours(self) -> float:
        return (self.total_flight_minutes or 0) / 60.0
