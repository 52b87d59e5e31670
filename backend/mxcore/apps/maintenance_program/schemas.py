from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from ..fleet.models import SubjectKindEnum
from .models import MetricEnum, PriorityEnum, WorkOrderTypeEnum


class MaintenanceProgramCreate(BaseModel):
    code: str
    name: str
    is_active: bool = True


class MaintenanceProgramRead(MaintenanceProgramCreate):
    model_config = ConfigDict(from_attributes=True)

    id: int
    created_at: datetime


class TaskTemplateCreate(BaseModel):
    sequence: int = Field(ge=1)
    description: str
    required: bool = True
    is_rii: bool = False


class TaskTemplateRead(TaskTemplateCreate):
    model_config = ConfigDict(from_attributes=True)

    id: int
    trigger_id: int


class MaintenanceTriggerCreate(BaseModel):
    name: str
    description: Optional[str] = None
    subject_kind: SubjectKindEnum
    applicable_component_type: Optional[str] = None

    interval_hours: Optional[float] = Field(default=None, gt=0)
    tolerance_hours: float = Field(default=0.0, ge=0)
    interval_cycles: Optional[float] = Field(default=None, gt=0)
    tolerance_cycles: float = Field(default=0.0, ge=0)
    interval_days: Optional[int] = Field(default=None, gt=0)
    tolerance_days: int = Field(default=0, ge=0)

    priority: PriorityEnum = PriorityEnum.MEDIUM
    work_order_type: WorkOrderTypeEnum = WorkOrderTypeEnum.SCHEDULED

    tasks: List[TaskTemplateCreate] = Field(default_factory=list)

    @model_validator(mode="after")
    def _needs_a_limit(self) -> "MaintenanceTriggerCreate":
        if self.interval_hours is None and self.interval_cycles is None and self.interval_days is None:
            raise ValueError("a trigger needs at least one of interval_hours, interval_cycles, interval_days")
        return self


class MaintenanceTriggerRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    program_id: int
    name: str
    subject_kind: SubjectKindEnum
    applicable_component_type: Optional[str] = None
    interval_hours: Optional[float] = None
    tolerance_hours: float
    interval_cycles: Optional[float] = None
    tolerance_cycles: float
    interval_days: Optional[int] = None
    tolerance_days: int
    priority: PriorityEnum
    work_order_type: WorkOrderTypeEnum
    is_active: bool
    created_at: datetime
    task_templates: List[TaskTemplateRead] = Field(default_factory=list)


@dataclass(frozen=True)
class TriggerLimit:
    """One (metric, interval, tolerance) triple of a trigger."""

    metric: MetricEnum
    interval_value: float
    tolerance_value: float
