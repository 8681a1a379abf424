"""
Stock ledger: the current per-location quantity state of every item.

All mutation goes through `apply_delta` / `apply_deltas` on an item that was
read earlier in the same transaction. The aggregate `stock` is recomputed from
the full per-location mapping on every write.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from sqlalchemy.orm import Session

from opsdb.errors import NotFoundError, ValidationError

from . import models, movements, schemas

logger = logging.getLogger(__name__)

NEGATIVE_FIX_REFERENCE = "AUTO-FIX-NEGATIVE"


def aggregate_quantities(pairs: Iterable[Tuple[str, int]]) -> Dict[str, int]:
    """Sum quantities per item id, keeping first-seen order."""
    totals: Dict[str, int] = {}
    for item_id, quantity in pairs:
        totals[item_id] = totals.get(item_id, 0) + int(quantity)
    return totals


def recompute_stock(stock_by_location: Mapping[str, int]) -> int:
    return sum(int(value or 0) for value in stock_by_location.values())


def load_items(db: Session, item_ids: Iterable[str]) -> Dict[str, models.InventoryItem]:
    """One read per distinct item; every id must exist."""
    items: Dict[str, models.InventoryItem] = {}
    missing: List[str] = []
    for item_id in dict.fromkeys(item_ids):
        item = db.get(models.InventoryItem, item_id)
        if item is None:
            missing.append(item_id)
        else:
            items[item_id] = item
    if missing:
        raise NotFoundError(
            f"Item not found: {', '.join(missing)}",
            detail=[{"field": "item_id", "item_id": item_id, "reason": "not found"} for item_id in missing],
        )
    return items


def check_available(
    items: Mapping[str, models.InventoryItem],
    *,
    location_id: str,
    totals: Mapping[str, int],
) -> None:
    shortfalls = []
    for item_id, requested in totals.items():
        item = items[item_id]
        available = max(0, item.quantity_at(location_id))
        if available < requested:
            shortfalls.append(
                {
                    "item_id": item_id,
                    "item_name": item.name_en or item.name_ar or item_id,
                    "location_id": location_id,
                    "available": available,
                    "requested": requested,
                }
            )
    if shortfalls:
        first = shortfalls[0]
        raise ValidationError(
            f"Insufficient stock for {first['item_name']} at {location_id}. "
            f"Available: {first['available']} | Requested: {first['requested']}",
            code="insufficient_stock",
            detail=shortfalls,
        )


def apply_deltas(item: models.InventoryItem, deltas: Mapping[str, int]) -> int:
    """
    Apply signed deltas at one or more locations in a single write and return
    the new aggregate. No location may end below zero.
    """
    stock_by_location = {key: int(value or 0) for key, value in (item.stock_by_location or {}).items()}
    for location_id, delta in deltas.items():
        new_quantity = stock_by_location.get(location_id, 0) + int(delta)
        if new_quantity < 0:
            raise ValidationError(
                f"Stock for {item.id} at {location_id} would become negative ({new_quantity}).",
                code="insufficient_stock",
                detail=[
                    {
                        "item_id": item.id,
                        "location_id": location_id,
                        "available": stock_by_location.get(location_id, 0),
                        "requested": -int(delta),
                    }
                ],
            )
        stock_by_location[location_id] = new_quantity
    # assign a fresh dict so the JSON column is flagged dirty
    item.stock_by_location = stock_by_location
    item.stock = recompute_stock(stock_by_location)
    return item.stock


def apply_delta(item: models.InventoryItem, location_id: str, delta: int) -> int:
    return apply_deltas(item, {location_id: delta})


def scan_negative_balances(db: Session) -> schemas.NegativeStockReport:
    entries: List[schemas.NegativeStockEntry] = []
    affected = set()
    for item in db.query(models.InventoryItem).order_by(models.InventoryItem.id.asc()).all():
        for location_id, value in sorted((item.stock_by_location or {}).items()):
            if int(value or 0) < 0:
                entries.append(
                    schemas.NegativeStockEntry(item_id=item.id, location_id=location_id, quantity=int(value))
                )
                affected.add(item.id)
    return schemas.NegativeStockReport(items=len(affected), entries=entries)


def normalize_negative_balances(
    db: Session,
    *,
    now: datetime,
    actor_id: Optional[str] = None,
) -> List[str]:
    """
    Clamp negative per-location quantities (written outside the engine) to
    zero and log one ADJUSTMENT per clamped location. Returns affected item ids.
    """
    affected: List[str] = []
    for item in db.query(models.InventoryItem).order_by(models.InventoryItem.id.asc()).all():
        negatives = {
            location_id: int(value or 0)
            for location_id, value in (item.stock_by_location or {}).items()
            if int(value or 0) < 0
        }
        if not negatives:
            continue
        apply_deltas(item, {location_id: -value for location_id, value in negatives.items()})
        db.add(item)
        for location_id, value in negatives.items():
            movements.append(
                db,
                schemas.Adjustment(
                    item_id=item.id,
                    location_id=location_id,
                    occurred_at=now,
                    quantity=abs(value),
                    direction=models.AdjustmentDirectionEnum.INCREASE,
                    reason="Clamped negative stock to zero",
                    reference=NEGATIVE_FIX_REFERENCE,
                    item_name_en=item.name_en,
                    item_name_ar=item.name_ar,
                    note="System auto-fix",
                    created_by_id=actor_id,
                ),
            )
        logger.info(
            "Clamped negative stock",
            extra={"item_id": item.id, "locations": sorted(negatives)},
        )
        affected.append(item.id)
    return affected
