"""
Transaction log: append-only movement records that justify every stock change.

Records are written once and never updated. Each record is interpreted
through its tagged variant (see schemas.Movement); `stock_effect` is the single
place that decides what a variant does to the balance at its location.
"""

from __future__ import annotations

from typing import Iterable, List, Optional, Sequence

from sqlalchemy.orm import Session

from opsdb.errors import NotFoundError
from opsdb.utils.identifiers import generate_uuid7

from . import models, schemas


def stock_effect(movement: schemas.Movement) -> int:
    """Signed quantity change at `movement.location_id`."""
    quantity = int(movement.quantity)
    if isinstance(movement, (schemas.StockIn, schemas.TransferIn, schemas.Return)):
        return quantity
    if isinstance(movement, (schemas.StockOut, schemas.TransferOut, schemas.Scrap)):
        return -quantity
    if isinstance(movement, (schemas.Adjustment, schemas.AuditCount)):
        if movement.direction == models.AdjustmentDirectionEnum.INCREASE:
            return quantity
        return -quantity
    if isinstance(movement, schemas.Depreciation):
        return 0
    raise TypeError(f"Unhandled movement variant: {type(movement).__name__}")


def to_row(movement: schemas.Movement) -> models.InventoryMovement:
    row = models.InventoryMovement(
        item_id=movement.item_id,
        location_id=movement.location_id,
        occurred_at=movement.occurred_at,
        type=models.MovementTypeEnum(movement.type),
        quantity=movement.quantity,
        delta=stock_effect(movement),
        reference=movement.reference,
        related_location_id=getattr(movement, "related_location_id", None),
        direction=getattr(movement, "direction", None),
        reason=getattr(movement, "reason", None),
        item_name_en=movement.item_name_en,
        item_name_ar=movement.item_name_ar,
        note=movement.note,
        created_by_id=movement.created_by_id,
    )
    # ids are taken at append time so same-timestamp records keep write order
    row.id = movement.id or generate_uuid7()
    return row


def from_row(row: models.InventoryMovement) -> schemas.Movement:
    return schemas.MOVEMENT_ADAPTER.validate_python(
        {
            "id": row.id,
            "type": row.type.value,
            "item_id": row.item_id,
            "location_id": row.location_id,
            "occurred_at": row.occurred_at,
            "quantity": row.quantity,
            "reference": row.reference,
            "related_location_id": row.related_location_id,
            "direction": row.direction,
            "reason": row.reason,
            "item_name_en": row.item_name_en,
            "item_name_ar": row.item_name_ar,
            "note": row.note,
            "created_by_id": row.created_by_id,
        }
    )


def append(db: Session, movement: schemas.Movement) -> models.InventoryMovement:
    row = to_row(movement)
    db.add(row)
    return row


def append_many(db: Session, batch: Iterable[schemas.Movement]) -> List[models.InventoryMovement]:
    return [append(db, movement) for movement in batch]


def list_for(db: Session, *, item_id: str, location_id: Optional[str] = None) -> List[schemas.Movement]:
    """
    Movements for an item (optionally one location), oldest first. Records
    sharing `occurred_at` come back in the order they were appended.
    """
    query = db.query(models.InventoryMovement).filter(models.InventoryMovement.item_id == item_id)
    if location_id is not None:
        query = query.filter(models.InventoryMovement.location_id == location_id)
    rows = query.order_by(
        models.InventoryMovement.occurred_at.asc(),
        models.InventoryMovement.id.asc(),
    ).all()
    return [from_row(row) for row in rows]


def list_by_reference(db: Session, reference: str) -> List[schemas.Movement]:
    rows = (
        db.query(models.InventoryMovement)
        .filter(models.InventoryMovement.reference == reference)
        .order_by(models.InventoryMovement.occurred_at.asc(), models.InventoryMovement.id.asc())
        .all()
    )
    return [from_row(row) for row in rows]


def reconstruct_balances(
    current_balance: int,
    history: Sequence[schemas.Movement],
) -> tuple[int, List[schemas.BalanceEntry]]:
    """
    Derive the starting balance (current minus the net effect of every known
    record) and walk the records forward to a running balance per record.
    """
    net = sum(stock_effect(movement) for movement in history)
    starting_balance = current_balance - net
    running = starting_balance
    entries: List[schemas.BalanceEntry] = []
    for movement in history:
        running += stock_effect(movement)
        entries.append(schemas.BalanceEntry(movement=movement, balance=running))
    return starting_balance, entries


def item_history(db: Session, *, item_id: str, location_id: Optional[str] = None) -> schemas.ItemHistory:
    item = db.get(models.InventoryItem, item_id)
    if item is None:
        raise NotFoundError(f"Item not found: {item_id}", detail=[{"field": "item_id", "item_id": item_id}])
    current = item.quantity_at(location_id) if location_id is not None else int(item.stock or 0)
    history = list_for(db, item_id=item_id, location_id=location_id)
    starting_balance, entries = reconstruct_balances(current, history)
    return schemas.ItemHistory(
        item_id=item_id,
        location_id=location_id,
        current_balance=current,
        starting_balance=starting_balance,
        entries=entries,
    )
