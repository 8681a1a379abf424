"""
Audit & repair of transfer history.

A completed transfer must be justified by a TRANSFER_OUT at its source and a
TRANSFER_IN at its destination, per item, for the full transferred quantity.
The scan reports shortfalls; `repair` backfills them. Neither ever touches
item balances: the stock moved when the transfer was approved, only its
history is incomplete.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional, Tuple

from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import flag_modified

from . import ledger, models, movements, schemas

logger = logging.getLogger(__name__)

MovementType = models.MovementTypeEnum


def _completed_transfers(db: Session) -> List[models.InventoryOrder]:
    return (
        db.query(models.InventoryOrder)
        .filter(
            models.InventoryOrder.kind == models.OrderKindEnum.TRANSFER,
            models.InventoryOrder.status == models.OrderStatusEnum.COMPLETED,
        )
        .order_by(models.InventoryOrder.created_at.asc(), models.InventoryOrder.code.asc())
        .all()
    )


def _recorded(db: Session, order: models.InventoryOrder) -> Tuple[Dict[str, int], Dict[str, int]]:
    """Per-item quantities already logged out of the source and into the destination."""
    outs: Dict[str, int] = {}
    ins: Dict[str, int] = {}
    for record in movements.list_by_reference(db, order.code):
        if record.type == MovementType.TRANSFER_OUT.value and record.location_id == order.source_location_id:
            outs[record.item_id] = outs.get(record.item_id, 0) + record.quantity
        elif record.type == MovementType.TRANSFER_IN.value and record.location_id == order.destination_location_id:
            ins[record.item_id] = ins.get(record.item_id, 0) + record.quantity
    return outs, ins


def _gaps_for(db: Session, order: models.InventoryOrder) -> List[schemas.TransferGap]:
    lines = [schemas.OrderLine(**line) for line in order.lines or []]
    names = {line.item_id: line for line in lines}
    expected = ledger.aggregate_quantities((line.item_id, line.sent) for line in lines)
    outs, ins = _recorded(db, order)

    gaps: List[schemas.TransferGap] = []
    for item_id, quantity in expected.items():
        missing_out = max(0, quantity - outs.get(item_id, 0))
        missing_in = max(0, quantity - ins.get(item_id, 0))
        if not (missing_out or missing_in):
            continue
        gaps.append(
            schemas.TransferGap(
                order_id=order.id,
                code=order.code,
                item_id=item_id,
                item_name_en=names[item_id].name_en,
                item_name_ar=names[item_id].name_ar,
                source_location_id=order.source_location_id,
                destination_location_id=order.destination_location_id,
                quantity=quantity,
                effective_at=order.effective_at,
                missing_out=missing_out,
                missing_in=missing_in,
            )
        )
    return gaps


def scan_for_gaps(db: Session) -> schemas.GapReport:
    orders = _completed_transfers(db)
    gaps: List[schemas.TransferGap] = []
    for order in orders:
        gaps.extend(_gaps_for(db, order))
    return schemas.GapReport(scanned_orders=len(orders), gaps=gaps)


def repair(
    db: Session,
    report: schemas.GapReport,
    *,
    actor_id: Optional[str] = None,
) -> int:
    """
    Backfill the records listed in `report` and return how many were written.

    Every reported order is re-scanned first, so a stale or replayed report
    only writes what is still missing. Each touched order has its version
    bumped; two repairs racing on the same order conflict at commit instead
    of both inserting.
    """
    order_ids = list(dict.fromkeys(gap.order_id for gap in report.gaps))
    orders = [order for order in (db.get(models.InventoryOrder, order_id) for order_id in order_ids) if order]

    batch: List[schemas.Movement] = []
    touched: List[models.InventoryOrder] = []
    for order in orders:
        if order.kind != models.OrderKindEnum.TRANSFER or order.status != models.OrderStatusEnum.COMPLETED:
            continue
        current = _gaps_for(db, order)
        if not current:
            continue
        touched.append(order)
        for gap in current:
            fields = {
                "item_id": gap.item_id,
                "occurred_at": gap.effective_at,
                "reference": gap.code,
                "item_name_en": gap.item_name_en,
                "item_name_ar": gap.item_name_ar,
                "note": "Backfilled by transfer audit",
                "created_by_id": actor_id,
            }
            if gap.missing_out:
                batch.append(
                    schemas.TransferOut(
                        location_id=gap.source_location_id,
                        related_location_id=gap.destination_location_id,
                        quantity=gap.missing_out,
                        **fields,
                    )
                )
            if gap.missing_in:
                batch.append(
                    schemas.TransferIn(
                        location_id=gap.destination_location_id,
                        related_location_id=gap.source_location_id,
                        quantity=gap.missing_in,
                        **fields,
                    )
                )

    for order in touched:
        flag_modified(order, "lines")
        db.add(order)
    movements.append_many(db, batch)
    if batch:
        logger.info(
            "Backfilled transfer movements",
            extra={"orders": [order.code for order in touched], "records": len(batch)},
        )
    return len(batch)
