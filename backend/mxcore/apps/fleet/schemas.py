from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class AircraftCreate(BaseModel):
    id: str
    registration: str
    model: Optional[str] = None


class AircraftRead(AircraftCreate):
    model_config = ConfigDict(from_attributes=True)

    airworthy: bool
    created_at: datetime


class ComponentCreate(BaseModel):
    id: str
    part_number: str
    serial_number: str
    component_type: str
    description: Optional[str] = None
    is_llp: bool = False
    life_limit_hours: Optional[float] = Field(default=None, gt=0)
    life_limit_cycles: Optional[int] = Field(default=None, gt=0)


class ComponentRead(ComponentCreate):
    model_config = ConfigDict(from_attributes=True)

    created_at: datetime
