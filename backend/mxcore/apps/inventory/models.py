from __future__ import annotations

import enum
from datetime import datetime, timezone

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)

from ...database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StockMovementTypeEnum(str, enum.Enum):
    RECEIPT = "RECEIPT"
    RESERVE = "RESERVE"
    CONSUME = "CONSUME"
    RELEASE_RESERVATION = "RELEASE_RESERVATION"
    RETURN = "RETURN"
    SCRAP = "SCRAP"
    ADJUST = "ADJUST"


# Movement types folded into quantity_on_hand / quantity_reserved.
# CONSUME counts against both.
ON_HAND_MOVEMENTS = frozenset(
    {
        StockMovementTypeEnum.RECEIPT,
        StockMovementTypeEnum.CONSUME,
        StockMovementTypeEnum.RETURN,
        StockMovementTypeEnum.SCRAP,
        StockMovementTypeEnum.ADJUST,
    }
)
RESERVED_MOVEMENTS = frozenset(
    {
        StockMovementTypeEnum.RESERVE,
        StockMovementTypeEnum.CONSUME,
        StockMovementTypeEnum.RELEASE_RESERVATION,
    }
)


class ReservationStatusEnum(str, enum.Enum):
    ACTIVE = "ACTIVE"
    CONSUMED = "CONSUMED"
    RELEASED = "RELEASED"


class InventoryItem(Base):
    """
    Materialised (on hand, reserved) projection of the stock movement
    ledger for one part in one warehouse.
    """

    __tablename__ = "inventory_items"
    __table_args__ = (
        UniqueConstraint("part_number", "warehouse_id", name="uq_inventory_items_part_warehouse"),
        CheckConstraint("quantity_reserved >= 0", name="ck_inventory_items_reserved_nonneg"),
        CheckConstraint("quantity_on_hand >= quantity_reserved", name="ck_inventory_items_on_hand_covers_reserved"),
    )

    id = Column(Integer, primary_key=True, index=True)
    part_number = Column(String(64), nullable=False, index=True)
    warehouse_id = Column(String(32), nullable=False, index=True)
    description = Column(String(255), nullable=True)

    quantity_on_hand = Column(Integer, nullable=False, default=0)
    quantity_reserved = Column(Integer, nullable=False, default=0)
    min_stock = Column(Integer, nullable=False, default=0)
    reorder_point = Column(Integer, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)
    version = Column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    @property
    def quantity_available(self) -> int:
        return (self.quantity_on_hand or 0) - (self.quantity_reserved or 0)

    def __repr__(self) -> str:
        return (
            f"<InventoryItem {self.part_number}@{self.warehouse_id} "
            f"on_hand={self.quantity_on_hand} reserved={self.quantity_reserved}>"
        )


class Reservation(Base):
    __tablename__ = "inventory_reservations"
    __table_args__ = (
        Index("ix_inventory_reservations_work_order", "work_order_id", "status"),
        CheckConstraint("quantity > 0", name="ck_inventory_reservations_qty_pos"),
    )

    id = Column(Integer, primary_key=True, index=True)
    part_number = Column(String(64), nullable=False, index=True)
    warehouse_id = Column(String(32), nullable=False)
    # Weak reference: no foreign key back into work orders.
    work_order_id = Column(Integer, nullable=False)
    quantity = Column(Integer, nullable=False)
    status = Column(
        SAEnum(ReservationStatusEnum, name="inventory_reservation_status_enum", native_enum=False),
        nullable=False,
        default=ReservationStatusEnum.ACTIVE,
        index=True,
    )
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    closed_at = Column(DateTime(timezone=True), nullable=True)
    version = Column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}


class StockMovement(Base):
    """
    Append-only ledger row. ``quantity`` is signed: positive when it adds to
    the affected counter(s), negative when it removes (CONSUME, SCRAP,
    RELEASE_RESERVATION, negative ADJUST).
    """

    __tablename__ = "stock_movements"
    __table_args__ = (
        Index("ix_stock_movements_part", "part_number", "warehouse_id", "id"),
        Index("ix_stock_movements_work_order", "reference_work_order_id"),
    )

    id = Column(Integer, primary_key=True, index=True)
    movement_type = Column(
        SAEnum(StockMovementTypeEnum, name="stock_movement_type_enum", native_enum=False),
        nullable=False,
        index=True,
    )
    part_number = Column(String(64), nullable=False)
    warehouse_id = Column(String(32), nullable=False)
    quantity = Column(Integer, nullable=False)

    reservation_id = Column(Integer, ForeignKey("inventory_reservations.id", ondelete="RESTRICT"), nullable=True)
    reference_work_order_id = Column(Integer, nullable=True)
    reference = Column(String(64), nullable=True)  # receiving document, PO, etc.
    reason = Column(Text, nullable=True)
    actor_user_id = Column(String(64), nullable=True)

    occurred_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
