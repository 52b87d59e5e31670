from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..fleet.models import SubjectKindEnum
from ..maintenance_program.models import PriorityEnum, WorkOrderTypeEnum
from .models import TaskStatusEnum, WorkOrderStatusEnum


class TaskCreate(BaseModel):
    description: str
    required: bool = True
    is_rii: bool = False


class TaskRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    sequence: int
    description: str
    required: bool
    is_rii: bool
    status: TaskStatusEnum
    completed_by: Optional[str] = None
    completed_at: Optional[datetime] = None
    inspected_by: Optional[str] = None
    inspected_at: Optional[datetime] = None


class WorkOrderPartRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    part_number: str
    warehouse_id: str
    requested_quantity: int
    reservation_id: Optional[int] = None
    quantity: int
    shortfall: int


class WorkOrderCreate(BaseModel):
    """Manual work request."""

    aircraft_id: str
    # Defaults to the aircraft itself.
    subject_id: Optional[str] = None
    wo_type: WorkOrderTypeEnum = WorkOrderTypeEnum.REPAIR
    priority: PriorityEnum = PriorityEnum.MEDIUM
    description: Optional[str] = None
    trigger_id: Optional[int] = None
    concurrent_safe: bool = False
    tasks: List[TaskCreate] = Field(default_factory=list)


class WorkOrderRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    wo_number: str
    aircraft_id: str
    subject_id: str
    subject_kind: SubjectKindEnum
    wo_type: WorkOrderTypeEnum
    priority: PriorityEnum
    status: WorkOrderStatusEnum
    description: Optional[str] = None
    trigger_id: Optional[int] = None
    concurrent_safe: bool
    baseline_flight_minutes: Optional[int] = None
    baseline_cycles: Optional[int] = None
    created_at: datetime
    released_at: Optional[datetime] = None
    released_by: Optional[str] = None
    cancel_reason: Optional[str] = None
    version: int
    tasks: List[TaskRead] = Field(default_factory=list)
    parts: List[WorkOrderPartRead] = Field(default_factory=list)
