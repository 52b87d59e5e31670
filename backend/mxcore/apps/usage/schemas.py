from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict

from ..fleet.models import SubjectKindEnum


class UsageEventCreate(BaseModel):
    subject_id: str
    subject_kind: SubjectKindEnum
    event_time: datetime
    delta_flight_minutes: int = 0
    delta_cycles: int = 0
    source: Optional[str] = None
    corrects_event_id: Optional[int] = None


class UsageEventRead(UsageEventCreate):
    model_config = ConfigDict(from_attributes=True)

    id: int
    subject_seq: int
    requires_recompute: bool
    recorded_at: datetime


class UsageSnapshotRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    subject_id: str
    subject_kind: SubjectKindEnum
    total_flight_minutes: int
    total_cycles: int
    as_of_event_seq: int
    as_of_event_time: Optional[datetime] = None


@dataclass(frozen=True)
class UsageTotals:
    """Point-in-time fold result (not cached)."""

    subject_id: str
    total_flight_minutes: int
    total_cycles: int
    as_of_event_seq: int

    @property
    def total_flight_hours(self) -> float:
        return self.total_flight_minutes / 60.0
