from __future__ import annotations

import logging
import os
from typing import Iterable, List, Optional, Tuple

from sqlalchemy import or_
from sqlalchemy.orm import Session

from ...concurrency import flush_versioned
from ...errors import (
    InventoryInvariantError,
    LedgerIntegrityError,
    NotFoundError,
    UnknownReservationError,
    ValidationError,
)
from ...time_utils import utcnow
from ..audit import schemas as audit_schemas
from ..audit import services as audit_services
from . import models, schemas

logger = logging.getLogger(__name__)

DEFAULT_WAREHOUSE = os.getenv("INVENTORY_DEFAULT_WAREHOUSE", "MAIN")
VERIFY_FOLD_ON_WRITE = os.getenv("INVENTORY_VERIFY_FOLD_ON_WRITE", "1") == "1"


def _normalize_part_number(part_number: str) -> str:
    return (part_number or "").strip().upper()


def _warehouse(warehouse_id: Optional[str]) -> str:
    return (warehouse_id or DEFAULT_WAREHOUSE).strip().upper()


def _require_positive(quantity: int, field: str = "quantity") -> None:
    if quantity is None or quantity <= 0:
        raise ValidationError(
            f"{field} must be a positive integer.",
            detail=[{"field": field, "reason": "must be > 0"}],
        )


# ---------------------------------------------------------------------------
# Items
# ---------------------------------------------------------------------------


def get_item(db: Session, part_number: str, warehouse_id: Optional[str] = None) -> Optional[models.InventoryItem]:
    return (
        db.query(models.InventoryItem)
        .filter(
            models.InventoryItem.part_number == _normalize_part_number(part_number),
            models.InventoryItem.warehouse_id == _warehouse(warehouse_id),
        )
        .first()
    )


def _ensure_item(db: Session, part_number: str, warehouse_id: Optional[str]) -> models.InventoryItem:
    item = get_item(db, part_number, warehouse_id)
    if item:
        return item
    item = models.InventoryItem(
        part_number=_normalize_part_number(part_number),
        warehouse_id=_warehouse(warehouse_id),
        quantity_on_hand=0,
        quantity_reserved=0,
    )
    db.add(item)
    db.flush()
    return item


def _require_item(db: Session, part_number: str, warehouse_id: Optional[str]) -> models.InventoryItem:
    item = get_item(db, part_number, warehouse_id)
    if item is None:
        raise NotFoundError(f"No stock record for {part_number} in {_warehouse(warehouse_id)}.")
    return item


def upsert_item(db: Session, *, payload: schemas.InventoryItemCreate) -> models.InventoryItem:
    """Create the stock record for a part, or update its stock levels."""
    item = _ensure_item(db, payload.part_number, payload.warehouse_id)
    item.description = payload.description or item.description
    item.min_stock = payload.min_stock
    item.reorder_point = payload.reorder_point
    flush_versioned(db, entity="InventoryItem", entity_id=item.part_number)
    return item


# ---------------------------------------------------------------------------
# Ledger helpers
# ---------------------------------------------------------------------------


def _append_movement(
    db: Session,
    *,
    item: models.InventoryItem,
    movement_type: models.StockMovementTypeEnum,
    quantity: int,
    reservation_id: Optional[int] = None,
    work_order_id: Optional[int] = None,
    reference: Optional[str] = None,
    reason: Optional[str] = None,
    actor_user_id: Optional[str] = None,
) -> models.StockMovement:
    movement = models.StockMovement(
        movement_type=movement_type,
        part_number=item.part_number,
        warehouse_id=item.warehouse_id,
        quantity=quantity,
        reservation_id=reservation_id,
        reference_work_order_id=work_order_id,
        reference=reference,
        reason=reason,
        actor_user_id=actor_user_id,
        occurred_at=utcnow(),
    )
    db.add(movement)
    return movement


def _audit_event(
    db: Session,
    *,
    movement: models.StockMovement,
    actor_user_id: Optional[str],
    item: models.InventoryItem,
) -> None:
    audit_services.create_audit_event(
        db,
        data=audit_schemas.AuditEventCreate(
            entity_type="StockMovement",
            entity_id=str(movement.id),
            action=movement.movement_type.value.lower(),
            actor_user_id=actor_user_id,
            after={
                "part_number": item.part_number,
                "warehouse_id": item.warehouse_id,
                "quantity": movement.quantity,
                "quantity_on_hand": item.quantity_on_hand,
                "quantity_reserved": item.quantity_reserved,
                "reference_work_order_id": movement.reference_work_order_id,
            },
        ),
    )


def _apply_deltas(item: models.InventoryItem, *, on_hand: int = 0, reserved: int = 0) -> None:
    """Move the projection by the given deltas, refusing before any change lands."""
    new_on_hand = item.quantity_on_hand + on_hand
    new_reserved = item.quantity_reserved + reserved
    if new_reserved < 0 or new_on_hand < new_reserved:
        logger.warning(
            "Inventory invariant violated",
            extra={
                "part_number": item.part_number,
                "warehouse_id": item.warehouse_id,
                "quantity_on_hand": new_on_hand,
                "quantity_reserved": new_reserved,
            },
        )
        raise InventoryInvariantError(
            f"{item.part_number}@{item.warehouse_id} would hold on_hand={new_on_hand}, "
            f"reserved={new_reserved}.",
            detail=[{"field": "quantity_on_hand", "reason": "on_hand >= reserved >= 0 violated"}],
        )


def _commit_mutation(
    db: Session,
    *,
    item: models.InventoryItem,
    movement: models.StockMovement,
    actor_user_id: Optional[str],
) -> models.StockMovement:
    flush_versioned(db, entity="InventoryItem", entity_id=f"{item.part_number}@{item.warehouse_id}")
    _audit_event(db, movement=movement, actor_user_id=actor_user_id, item=item)
    if VERIFY_FOLD_ON_WRITE:
        result = reconcile(db, part_number=item.part_number, warehouse_id=item.warehouse_id)
        if not result.matches:
            raise LedgerIntegrityError(
                f"Stock ledger for {item.part_number}@{item.warehouse_id} does not fold to its projection.",
                detail=[
                    {"field": "quantity_on_hand", "reason": f"projected {result.projected_on_hand}, folded {result.folded_on_hand}"},
                    {"field": "quantity_reserved", "reason": f"projected {result.projected_reserved}, folded {result.folded_reserved}"},
                ],
            )
    return movement


# ---------------------------------------------------------------------------
# Mutations
# ---------------------------------------------------------------------------


def receive(
    db: Session,
    *,
    part_number: str,
    quantity: int,
    warehouse_id: Optional[str] = None,
    reference: Optional[str] = None,
    actor_user_id: Optional[str] = None,
) -> models.StockMovement:
    """Goods in from procurement; the only mutation not tied to a work order."""
    _require_positive(quantity)
    item = _ensure_item(db, part_number, warehouse_id)
    _apply_deltas(item, on_hand=quantity)
    movement = _append_movement(
        db,
        item=item,
        movement_type=models.StockMovementTypeEnum.RECEIPT,
        quantity=quantity,
        reference=reference,
        actor_user_id=actor_user_id,
    )
    return _commit_mutation(db, item=item, movement=movement, actor_user_id=actor_user_id)


def reserve(
    db: Session,
    *,
    part_number: str,
    quantity: int,
    work_order_id: int,
    warehouse_id: Optional[str] = None,
    actor_user_id: Optional[str] = None,
) -> schemas.ReservationResult:
    """
    Reserve up to ``quantity``. Whatever is not available comes back as
    ``shortfall``; nothing is reserved when nothing is available.
    """
    _require_positive(quantity)
    item = get_item(db, part_number, warehouse_id)
    available = item.quantity_available if item else 0
    reservable = max(0, min(available, quantity))
    shortfall = quantity - reservable

    if reservable == 0:
        logger.info(
            "Reservation not satisfiable",
            extra={"part_number": _normalize_part_number(part_number), "requested": quantity, "work_order_id": work_order_id},
        )
        return schemas.ReservationResult(requested=quantity, reserved=0, shortfall=shortfall)

    _apply_deltas(item, reserved=reservable)
    reservation = models.Reservation(
        part_number=item.part_number,
        warehouse_id=item.warehouse_id,
        work_order_id=work_order_id,
        quantity=reservable,
        status=models.ReservationStatusEnum.ACTIVE,
    )
    db.add(reservation)
    flush_versioned(db, entity="InventoryItem", entity_id=f"{item.part_number}@{item.warehouse_id}")

    movement = _append_movement(
        db,
        item=item,
        movement_type=models.StockMovementTypeEnum.RESERVE,
        quantity=reservable,
        reservation_id=reservation.id,
        work_order_id=work_order_id,
        actor_user_id=actor_user_id,
    )
    _commit_mutation(db, item=item, movement=movement, actor_user_id=actor_user_id)

    if shortfall:
        logger.info(
            "Partial reservation",
            extra={"part_number": item.part_number, "requested": quantity, "reserved": reservable, "work_order_id": work_order_id},
        )
    return schemas.ReservationResult(
        requested=quantity,
        reserved=reservable,
        shortfall=shortfall,
        reservation=to_ref(reservation),
    )


def to_ref(reservation: models.Reservation) -> schemas.ReservationRef:
    return schemas.ReservationRef(
        reservation_id=reservation.id,
        work_order_id=reservation.work_order_id,
        part_number=reservation.part_number,
        quantity=reservation.quantity,
    )


def resolve(db: Session, ref: schemas.ReservationRef) -> models.Reservation:
    """Active reservation behind a reference, or UnknownReservationError."""
    reservation = db.get(models.Reservation, ref.reservation_id)
    if (
        reservation is None
        or reservation.work_order_id != ref.work_order_id
        or reservation.part_number != _normalize_part_number(ref.part_number)
    ):
        raise UnknownReservationError(
            f"Reservation {ref.reservation_id} does not exist for work order {ref.work_order_id}.",
            detail=[{"field": "reservation_id", "reason": "unknown reservation"}],
        )
    if reservation.status != models.ReservationStatusEnum.ACTIVE:
        raise UnknownReservationError(
            f"Reservation {ref.reservation_id} is already {reservation.status.value}.",
            detail=[{"field": "reservation_id", "reason": f"reservation {reservation.status.value.lower()}"}],
        )
    return reservation


def consume(
    db: Session,
    *,
    ref: schemas.ReservationRef,
    actor_user_id: Optional[str] = None,
) -> models.StockMovement:
    """Turn a reservation into a CONSUME: on hand and reserved both drop."""
    reservation = resolve(db, ref)
    item = _require_item(db, reservation.part_number, reservation.warehouse_id)

    _apply_deltas(item, on_hand=-reservation.quantity, reserved=-reservation.quantity)
    reservation.status = models.ReservationStatusEnum.CONSUMED
    reservation.closed_at = utcnow()
    movement = _append_movement(
        db,
        item=item,
        movement_type=models.StockMovementTypeEnum.CONSUME,
        quantity=-reservation.quantity,
        reservation_id=reservation.id,
        work_order_id=reservation.work_order_id,
        actor_user_id=actor_user_id,
    )
    return _commit_mutation(db, item=item, movement=movement, actor_user_id=actor_user_id)


def release(
    db: Session,
    *,
    ref: schemas.ReservationRef,
    reason: Optional[str] = None,
    actor_user_id: Optional[str] = None,
) -> models.StockMovement:
    """Hand an unconsumed reservation back to available stock."""
    reservation = resolve(db, ref)
    item = _require_item(db, reservation.part_number, reservation.warehouse_id)

    _apply_deltas(item, reserved=-reservation.quantity)
    reservation.status = models.ReservationStatusEnum.RELEASED
    reservation.closed_at = utcnow()
    movement = _append_movement(
        db,
        item=item,
        movement_type=models.StockMovementTypeEnum.RELEASE_RESERVATION,
        quantity=-reservation.quantity,
        reservation_id=reservation.id,
        work_order_id=reservation.work_order_id,
        reason=reason,
        actor_user_id=actor_user_id,
    )
    return _commit_mutation(db, item=item, movement=movement, actor_user_id=actor_user_id)


def return_to_stock(
    db: Session,
    *,
    part_number: str,
    quantity: int,
    warehouse_id: Optional[str] = None,
    work_order_id: Optional[int] = None,
    reason: Optional[str] = None,
    actor_user_id: Optional[str] = None,
) -> models.StockMovement:
    """Unused, serviceable parts coming back from the hangar floor."""
    _require_positive(quantity)
    item = _ensure_item(db, part_number, warehouse_id)
    _apply_deltas(item, on_hand=quantity)
    movement = _append_movement(
        db,
        item=item,
        movement_type=models.StockMovementTypeEnum.RETURN,
        quantity=quantity,
        work_order_id=work_order_id,
        reason=reason,
        actor_user_id=actor_user_id,
    )
    return _commit_mutation(db, item=item, movement=movement, actor_user_id=actor_user_id)


def scrap(
    db: Session,
    *,
    part_number: str,
    quantity: int,
    reason: str,
    warehouse_id: Optional[str] = None,
    actor_user_id: Optional[str] = None,
) -> models.StockMovement:
    _require_positive(quantity)
    if not (reason or "").strip():
        raise ValidationError("reason is required for scrap.", detail=[{"field": "reason", "reason": "required"}])
    item = _require_item(db, part_number, warehouse_id)
    if quantity > item.quantity_available:
        raise ValidationError(
            f"Only {item.quantity_available} unreserved units of {item.part_number} can be scrapped.",
            detail=[{"field": "quantity", "reason": "exceeds available quantity"}],
        )
    _apply_deltas(item, on_hand=-quantity)
    movement = _append_movement(
        db,
        item=item,
        movement_type=models.StockMovementTypeEnum.SCRAP,
        quantity=-quantity,
        reason=reason,
        actor_user_id=actor_user_id,
    )
    return _commit_mutation(db, item=item, movement=movement, actor_user_id=actor_user_id)


def adjust(
    db: Session,
    *,
    part_number: str,
    delta: int,
    reason: str,
    warehouse_id: Optional[str] = None,
    actor_user_id: Optional[str] = None,
) -> models.StockMovement:
    """Stock-count correction of quantity on hand (positive or negative)."""
    if not delta:
        raise ValidationError("delta must be non-zero.", detail=[{"field": "delta", "reason": "must be != 0"}])
    if not (reason or "").strip():
        raise ValidationError("reason is required for adjustments.", detail=[{"field": "reason", "reason": "required"}])
    item = _ensure_item(db, part_number, warehouse_id)
    _apply_deltas(item, on_hand=delta)
    movement = _append_movement(
        db,
        item=item,
        movement_type=models.StockMovementTypeEnum.ADJUST,
        quantity=delta,
        reason=reason,
        actor_user_id=actor_user_id,
    )
    return _commit_mutation(db, item=item, movement=movement, actor_user_id=actor_user_id)


# ---------------------------------------------------------------------------
# Reads / reconciliation
# ---------------------------------------------------------------------------


def list_movements(db: Session, *, part_number: str, warehouse_id: Optional[str] = None) -> List[models.StockMovement]:
    return (
        db.query(models.StockMovement)
        .filter(
            models.StockMovement.part_number == _normalize_part_number(part_number),
            models.StockMovement.warehouse_id == _warehouse(warehouse_id),
        )
        .order_by(models.StockMovement.id.asc())
        .all()
    )


def fold_movements(movements: Iterable[models.StockMovement]) -> Tuple[int, int]:
    """(on_hand, reserved) rebuilt from empty."""
    on_hand = 0
    reserved = 0
    for movement in movements:
        if movement.movement_type in models.ON_HAND_MOVEMENTS:
            on_hand += movement.quantity
        if movement.movement_type in models.RESERVED_MOVEMENTS:
            reserved += movement.quantity
    return on_hand, reserved


def reconcile(db: Session, *, part_number: str, warehouse_id: Optional[str] = None) -> schemas.ReconciliationResult:
    """
    Re-fold the ledger for one part and compare with the projection. A
    mismatch raises the operator integrity alarm (critical log + audit row).
    """
    item = _require_item(db, part_number, warehouse_id)
    on_hand, reserved = fold_movements(list_movements(db, part_number=item.part_number, warehouse_id=item.warehouse_id))
    result = schemas.ReconciliationResult(
        part_number=item.part_number,
        warehouse_id=item.warehouse_id,
        projected_on_hand=item.quantity_on_hand,
        projected_reserved=item.quantity_reserved,
        folded_on_hand=on_hand,
        folded_reserved=reserved,
    )
    if not result.matches:
        logger.critical(
            "Stock ledger integrity alarm",
            extra={
                "part_number": result.part_number,
                "warehouse_id": result.warehouse_id,
                "projected_on_hand": result.projected_on_hand,
                "projected_reserved": result.projected_reserved,
                "folded_on_hand": result.folded_on_hand,
                "folded_reserved": result.folded_reserved,
            },
        )
        audit_services.log_event(
            db,
            actor_user_id=None,
            entity_type="InventoryItem",
            entity_id=f"{result.part_number}@{result.warehouse_id}",
            action="ledger_integrity_alarm",
            before={"quantity_on_hand": result.projected_on_hand, "quantity_reserved": result.projected_reserved},
            after={"quantity_on_hand": result.folded_on_hand, "quantity_reserved": result.folded_reserved},
        )
    return result


def reconcile_all(db: Session) -> List[schemas.ReconciliationResult]:
    items = db.query(models.InventoryItem).order_by(models.InventoryItem.id.asc()).all()
    return [reconcile(db, part_number=item.part_number, warehouse_id=item.warehouse_id) for item in items]


def list_low_stock(db: Session, *, warehouse_id: Optional[str] = None) -> List[models.InventoryItem]:
    """Items whose available quantity is at or below their reorder point or minimum stock."""
    available = models.InventoryItem.quantity_on_hand - models.InventoryItem.quantity_reserved
    query = db.query(models.InventoryItem).filter(
        or_(
            (models.InventoryItem.reorder_point.isnot(None)) & (available <= models.InventoryItem.reorder_point),
            (models.InventoryItem.min_stock > 0) & (available < models.InventoryItem.min_stock),
        )
    )
    if warehouse_id:
        query = query.filter(models.InventoryItem.warehouse_id == _warehouse(warehouse_id))
    return query.order_by(models.InventoryItem.part_number.asc()).all()


def get_reservation(db: Session, reservation_id: int) -> models.Reservation:
    reservation = db.get(models.Reservation, reservation_id)
    if reservation is None:
        raise NotFoundError(f"Reservation {reservation_id} not found.")
    return reservation


def active_reservations(db: Session, *, work_order_id: int) -> List[models.Reservation]:
    return (
        db.query(models.Reservation)
        .filter(
            models.Reservation.work_order_id == work_order_id,
            models.Reservation.status == models.ReservationStatusEnum.ACTIVE,
        )
        .order_by(models.Reservation.id.asc())
        .all()
    )
