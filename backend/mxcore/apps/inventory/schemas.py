from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from .models import ReservationStatusEnum, StockMovementTypeEnum


class InventoryItemCreate(BaseModel):
    part_number: str
    warehouse_id: Optional[str] = None
    description: Optional[str] = None
    min_stock: int = Field(default=0, ge=0)
    reorder_point: Optional[int] = Field(default=None, ge=0)


class InventoryItemRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    part_number: str
    warehouse_id: str
    description: Optional[str] = None
    quantity_on_hand: int
    quantity_reserved: int
    quantity_available: int
    min_stock: int
    reorder_point: Optional[int] = None
    version: int


class StockMovementRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    movement_type: StockMovementTypeEnum
    part_number: str
    warehouse_id: str
    quantity: int
    reservation_id: Optional[int] = None
    reference_work_order_id: Optional[int] = None
    reference: Optional[str] = None
    reason: Optional[str] = None
    occurred_at: datetime


class ReservationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    part_number: str
    warehouse_id: str
    work_order_id: int
    quantity: int
    status: ReservationStatusEnum


@dataclass(frozen=True)
class ReservationRef:
    """Value reference a work order keeps to a reservation."""

    reservation_id: int
    work_order_id: int
    part_number: str
    quantity: int


@dataclass(frozen=True)
class ReservationResult:
    """Outcome of ``reserve``; a shortfall is a result, not an error."""

    requested: int
    reserved: int
    shortfall: int
    reservation: Optional[ReservationRef] = None

    @property
    def fully_reserved(self) -> bool:
        return self.shortfall == 0


@dataclass(frozen=True)
class ReconciliationResult:
    part_number: str
    warehouse_id: str
    projected_on_hand: int
    projected_reserved: int
    folded_on_hand: int
    folded_reserved: int

    @property
    def matches(self) -> bool:
        return (
            self.projected_on_hand == self.folded_on_hand
            and self.projected_reserved == self.folded_reserved
        )
