from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict

from ..maintenance_program.models import MetricEnum
from .models import ComplianceStateEnum


class ComplianceStatusRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    subject_id: str
    trigger_id: int
    metric: MetricEnum
    last_compliance_event_seq: int
    due_at_metric_value: float
    current_metric_value: float
    remaining_margin: float
    percentage_used: float
    state: ComplianceStateEnum
    evaluated_event_seq: int
    evaluated_at: datetime


class ComplianceBaselineRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    subject_id: str
    trigger_id: int
    baseline_flight_minutes: int
    baseline_cycles: int
    baseline_date: date
    last_compliance_event_seq: int
    work_order_id: Optional[int] = None


@dataclass(frozen=True)
class LimitStatus:
    """Margin of one limit of a trigger."""

    metric: MetricEnum
    baseline_value: float
    due_at_metric_value: float
    current_metric_value: float
    remaining_margin: float
    tolerance_value: float
    interval_value: float
    percentage_used: float
    state: ComplianceStateEnum

    @property
    def fraction_remaining(self) -> float:
        return self.remaining_margin / self.interval_value


@dataclass(frozen=True)
class StatusComputation:
    """Result of the pure status computation for one trigger."""

    trigger_id: int
    governing: LimitStatus
    limits: List[LimitStatus] = field(default_factory=list)

    @property
    def state(self) -> ComplianceStateEnum:
        return self.governing.state

    @property
    def metric(self) -> MetricEnum:
        return self.governing.metric

    @property
    def remaining_margin(self) -> float:
        return self.governing.remaining_margin

    @property
    def percentage_used(self) -> float:
        return self.governing.percentage_used


@dataclass(frozen=True)
class FiredTrigger:
    subject_id: str
    trigger_id: int
    state: ComplianceStateEnum
    remaining_margin: float


@dataclass
class EvaluationResult:
    subject_id: str
    statuses: list = field(default_factory=list)
    fired: List[FiredTrigger] = field(default_factory=list)
    changed: List[int] = field(default_factory=list)


@dataclass(frozen=True)
class LifeLimitStatus:
    """Consumption of a life-limited part against its hard ceiling."""

    component_id: str
    aircraft_id: Optional[str]
    hours_used: float
    cycles_used: int
    life_limit_hours: Optional[float] = None
    life_limit_cycles: Optional[int] = None

    @property
    def fraction_used(self) -> float:
        fractions = []
        if self.life_limit_hours:
            fractions.append(self.hours_used / self.life_limit_hours)
        if self.life_limit_cycles:
            fractions.append(self.cycles_used / self.life_limit_cycles)
        return max(fractions, default=0.0)

    @property
    def reached(self) -> bool:
        return self.fraction_used >= 1.0
