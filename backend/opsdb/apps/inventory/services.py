"""
Transaction bodies for every inventory operation.

Each public function takes an open session and performs one business
operation in the order the ledger needs: read everything (order, items),
validate, then write (counter, stock, movements, order). None of them commit;
`transactions.run_in_transaction` owns the commit and re-runs the body on a
concurrency conflict, so nothing here may cache state between calls.
"""

from __future__ import annotations

import hashlib
import json
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy.orm import Session

from opsdb.apps import workflow
from opsdb.errors import NotFoundError, ValidationError
from opsdb.utils.identifiers import generate_uuid7, normalize_identifier

from . import ledger, models, movements, schemas, sequences

OrderKind = models.OrderKindEnum
OrderStatus = models.OrderStatusEnum
Direction = models.AdjustmentDirectionEnum


def _hash_payload(payload: dict) -> str:
    return hashlib.sha256(json.dumps(payload, sort_keys=True).encode("utf-8")).hexdigest()


def _require(value: Optional[str], field: str) -> str:
    value = normalize_identifier(value)
    if not value:
        raise ValidationError(
            f"{field} is required.",
            code="missing_field",
            detail=[{"field": field, "reason": "required"}],
        )
    return value


def _positive_lines(lines: Iterable[schemas.OrderLineCreate]) -> List[schemas.OrderLineCreate]:
    kept = [line for line in lines if line.quantity > 0]
    if not kept:
        raise ValidationError(
            "At least one line with a positive quantity is required.",
            code="missing_lines",
            detail=[{"field": "lines", "reason": "no positive quantities"}],
        )
    for line in kept:
        line.item_id = _require(line.item_id, "item_id")
    return kept


def _consolidate(
    lines: Iterable[schemas.OrderLineCreate],
    items: Dict[str, models.InventoryItem],
    quantity_field: str,
) -> List[schemas.OrderLine]:
    """One order line per distinct item, quantities summed, names falling back to the item's."""
    merged: Dict[str, schemas.OrderLine] = {}
    for line in lines:
        existing = merged.get(line.item_id)
        if existing is None:
            item = items[line.item_id]
            existing = schemas.OrderLine(
                item_id=line.item_id,
                name_en=line.name_en or item.name_en,
                name_ar=line.name_ar or item.name_ar,
            )
            merged[line.item_id] = existing
        setattr(existing, quantity_field, getattr(existing, quantity_field) + line.quantity)
    return list(merged.values())


def _dump_lines(lines: Iterable[schemas.OrderLine]) -> List[Dict[str, Any]]:
    return [line.model_dump() for line in lines]


def _new_order(
    db: Session,
    *,
    kind: OrderKind,
    now: datetime,
    lines: List[schemas.OrderLine],
    created_by_id: Optional[str],
    action: Optional[str] = None,
    **fields: Any,
) -> models.InventoryOrder:
    code = sequences.reserve_order_code(db, kind=kind, now=now)
    order = models.InventoryOrder(
        id=generate_uuid7(),
        code=code,
        kind=kind,
        lines=_dump_lines(lines),
        receipt_keys={},
        created_by_id=created_by_id,
        created_at=now,
        **fields,
    )
    workflow.enter_initial_state(order, actor_id=created_by_id, now=now, action=action)
    db.add(order)
    return order


def _movement_fields(
    line: schemas.OrderLine,
    *,
    order_code: str,
    now: datetime,
    actor_id: Optional[str],
) -> Dict[str, Any]:
    return {
        "item_id": line.item_id,
        "occurred_at": now,
        "reference": order_code,
        "item_name_en": line.name_en,
        "item_name_ar": line.name_ar,
        "created_by_id": actor_id,
    }


def _apply_to_items(
    db: Session,
    items: Dict[str, models.InventoryItem],
    deltas: Dict[str, Dict[str, int]],
) -> None:
    """One ledger write per item, even when the item moves at several locations."""
    for item_id, per_location in deltas.items():
        if not any(per_location.values()):
            continue
        item = items[item_id]
        ledger.apply_deltas(item, per_location)
        db.add(item)


# ---------------------------------------------------------------------------
# Items
# ---------------------------------------------------------------------------


def create_item(db: Session, payload: schemas.ItemCreate, *, now: datetime) -> models.InventoryItem:
    name_en = _require(payload.name_en, "name_en")
    item_id = normalize_identifier(payload.id) or generate_uuid7()
    if db.get(models.InventoryItem, item_id) is not None:
        raise ValidationError(
            f"Item already exists: {item_id}",
            code="item_exists",
            detail=[{"field": "id", "reason": "already exists"}],
        )
    item = models.InventoryItem(
        id=item_id,
        name_en=name_en,
        name_ar=payload.name_ar,
        category=payload.category,
        unit=payload.unit or "EA",
        stock_by_location={},
        stock=0,
        created_at=now,
        updated_at=now,
    )
    db.add(item)
    return item


def get_item(db: Session, item_id: str) -> models.InventoryItem:
    return ledger.load_items(db, [item_id])[item_id]


# ---------------------------------------------------------------------------
# Orders: reads
# ---------------------------------------------------------------------------


def get_order(db: Session, order_id: str) -> models.InventoryOrder:
    order = db.get(models.InventoryOrder, order_id)
    if order is None:
        raise NotFoundError(f"Order not found: {order_id}", detail=[{"field": "order_id", "order_id": order_id}])
    return order


def get_order_by_code(db: Session, code: str) -> models.InventoryOrder:
    code = normalize_identifier(code).upper()
    sequences.parse_order_code(code)
    order = db.query(models.InventoryOrder).filter(models.InventoryOrder.code == code).first()
    if order is None:
        raise NotFoundError(f"Order not found: {code}", detail=[{"field": "code", "code": code}])
    return order


def list_orders(
    db: Session,
    *,
    kind: Optional[OrderKind] = None,
    status: Optional[OrderStatus] = None,
    limit: int = 200,
) -> List[models.InventoryOrder]:
    query = db.query(models.InventoryOrder)
    if kind is not None:
        query = query.filter(models.InventoryOrder.kind == kind)
    if status is not None:
        query = query.filter(models.InventoryOrder.status == status)
    return (
        query.order_by(models.InventoryOrder.created_at.desc(), models.InventoryOrder.code.desc())
        .limit(limit)
        .all()
    )


# ---------------------------------------------------------------------------
# Service orders
# ---------------------------------------------------------------------------


def create_and_dispatch(
    db: Session,
    payload: schemas.ServiceOrderCreate,
    *,
    now: datetime,
) -> models.InventoryOrder:
    source = _require(payload.source_location_id, "source_location_id")
    lines = _positive_lines(payload.lines)
    totals = ledger.aggregate_quantities((line.item_id, line.quantity) for line in lines)

    items = ledger.load_items(db, totals)
    ledger.check_available(items, location_id=source, totals=totals)

    order_lines = _consolidate(lines, items, "sent")
    actor_id = payload.dispatched_by_id or payload.created_by_id
    order = _new_order(
        db,
        kind=OrderKind.SERVICE,
        now=now,
        lines=order_lines,
        created_by_id=payload.created_by_id or actor_id,
        action="dispatch",
        source_location_id=source,
        destination=payload.destination.model_dump(),
        transport_info=payload.transport_info.model_dump() if payload.transport_info else None,
        notes=payload.notes,
    )
    if actor_id:
        order.dispatched_by_id = actor_id

    _apply_to_items(db, items, {item_id: {source: -qty} for item_id, qty in totals.items()})
    movements.append_many(
        db,
        (
            schemas.StockOut(
                location_id=source,
                quantity=line.sent,
                note=f"Dispatched to {payload.destination.name}",
                **_movement_fields(line, order_code=order.code, now=now, actor_id=actor_id),
            )
            for line in order_lines
        ),
    )
    return order


# ---------------------------------------------------------------------------
# Transfers and material requests
# ---------------------------------------------------------------------------


def create_transfer(db: Session, payload: schemas.TransferCreate, *, now: datetime) -> models.InventoryOrder:
    source = _require(payload.source_location_id, "source_location_id")
    destination = _require(payload.destination_location_id, "destination_location_id")
    if source == destination:
        raise ValidationError(
            "Source and destination locations must differ.",
            code="same_location",
            detail=[{"field": "destination_location_id", "reason": "equals source_location_id"}],
        )
    lines = _positive_lines(payload.lines)
    items = ledger.load_items(db, (line.item_id for line in lines))
    return _new_order(
        db,
        kind=OrderKind.TRANSFER,
        now=now,
        lines=_consolidate(lines, items, "sent"),
        created_by_id=payload.created_by_id,
        source_location_id=source,
        destination_location_id=destination,
        notes=payload.notes,
    )


def create_material_request(
    db: Session,
    payload: schemas.MaterialRequestCreate,
    *,
    now: datetime,
) -> models.InventoryOrder:
    destination = _require(payload.destination_location_id, "destination_location_id")
    lines = _positive_lines(payload.lines)
    items = ledger.load_items(db, (line.item_id for line in lines))
    return _new_order(
        db,
        kind=OrderKind.MATERIAL_REQUEST,
        now=now,
        lines=_consolidate(lines, items, "requested"),
        created_by_id=payload.created_by_id,
        destination_location_id=destination,
        notes=payload.notes,
    )


def approve(
    db: Session,
    order_id: str,
    *,
    actor_id: Optional[str],
    now: datetime,
) -> models.InventoryOrder:
    order = get_order(db, order_id)
    if order.kind == OrderKind.MATERIAL_REQUEST:
        workflow.apply_transition(order, to_state="DISPATCHED", actor_id=actor_id, now=now, action="approve")
        return order
    if order.kind != OrderKind.TRANSFER:
        raise workflow.TransitionError(
            code="invalid_transition",
            detail=[{"field": "kind", "reason": f"{order.kind.value} orders are not approval-gated"}],
        )

    order_lines = [schemas.OrderLine(**line) for line in order.lines or []]
    source, destination = order.source_location_id, order.destination_location_id
    totals = ledger.aggregate_quantities((line.item_id, line.sent) for line in order_lines)

    items = ledger.load_items(db, totals)
    workflow.apply_transition(order, to_state="COMPLETED", actor_id=actor_id, now=now, action="approve")
    ledger.check_available(items, location_id=source, totals=totals)

    _apply_to_items(
        db,
        items,
        {item_id: {source: -qty, destination: qty} for item_id, qty in totals.items()},
    )
    batch: List[schemas.Movement] = []
    for line in order_lines:
        fields = _movement_fields(line, order_code=order.code, now=now, actor_id=actor_id)
        batch.append(
            schemas.TransferOut(
                location_id=source, related_location_id=destination, quantity=line.sent, **fields
            )
        )
        batch.append(
            schemas.TransferIn(
                location_id=destination, related_location_id=source, quantity=line.sent, **fields
            )
        )
    movements.append_many(db, batch)
    db.add(order)
    return order


# ---------------------------------------------------------------------------
# Receive / cancel
# ---------------------------------------------------------------------------


def _receipt_payload(request: schemas.ReceiveRequest) -> dict:
    return {
        "lines": sorted(
            ([d.item_id, d.add_returned, d.add_scrapped, d.add_received] for d in request.lines),
        ),
        "force_complete": bool(request.force_complete),
    }


def _merge_deltas(deltas: Iterable[schemas.ReceiveLineDelta]) -> Dict[str, schemas.ReceiveLineDelta]:
    merged: Dict[str, schemas.ReceiveLineDelta] = {}
    for delta in deltas:
        if not (delta.add_returned or delta.add_scrapped or delta.add_received):
            continue
        item_id = _require(delta.item_id, "item_id")
        current = merged.get(item_id)
        if current is None:
            merged[item_id] = delta.model_copy(update={"item_id": item_id})
            continue
        current.add_returned += delta.add_returned
        current.add_scrapped += delta.add_scrapped
        current.add_received += delta.add_received
    return merged


def _apply_receive_deltas(
    order: models.InventoryOrder,
    lines: List[schemas.OrderLine],
    deltas: Dict[str, schemas.ReceiveLineDelta],
) -> None:
    """Add deltas onto the order lines in place; every line is checked before any is rejected."""
    by_item = {line.item_id: line for line in lines}
    problems: List[Dict[str, Any]] = []
    for item_id, delta in deltas.items():
        line = by_item.get(item_id)
        if line is None:
            problems.append({"item_id": item_id, "reason": "item is not on this order"})
            continue
        if order.kind == OrderKind.SERVICE:
            if delta.add_received:
                problems.append({"item_id": item_id, "reason": "add_received applies to material requests"})
                continue
            total = line.returned + delta.add_returned + line.scrapped + delta.add_scrapped
            if total > line.sent:
                problems.append(
                    {
                        "item_id": item_id,
                        "reason": "returned + scrapped would exceed sent",
                        "sent": line.sent,
                        "returned": line.returned,
                        "scrapped": line.scrapped,
                        "add_returned": delta.add_returned,
                        "add_scrapped": delta.add_scrapped,
                    }
                )
                continue
            line.returned += delta.add_returned
            line.scrapped += delta.add_scrapped
        else:
            if delta.add_returned or delta.add_scrapped:
                problems.append({"item_id": item_id, "reason": "only add_received applies to material requests"})
                continue
            if line.received + delta.add_received > line.requested:
                problems.append(
                    {
                        "item_id": item_id,
                        "reason": "received would exceed requested",
                        "requested": line.requested,
                        "received": line.received,
                        "add_received": delta.add_received,
                    }
                )
                continue
            line.received += delta.add_received
    if problems:
        first = problems[0]
        raise ValidationError(
            f"Cannot receive against {order.code}: {first['item_id']} {first['reason']}.",
            code="over_receipt",
            detail=problems,
        )


def receive(
    db: Session,
    order_id: str,
    request: schemas.ReceiveRequest,
    *,
    actor_id: Optional[str],
    now: datetime,
) -> models.InventoryOrder:
    """
    Apply additive line deltas to a dispatched service order or material
    request. The order is always re-read inside the transaction.
    """
    order = get_order(db, order_id)
    key = normalize_identifier(request.idempotency_key) or None
    payload_hash = _hash_payload(_receipt_payload(request))
    if key is not None and key in (order.receipt_keys or {}):
        if order.receipt_keys[key] != payload_hash:
            raise ValidationError(
                "Idempotency key reuse with different payload.",
                code="idempotency_key_reused",
                detail=[{"field": "idempotency_key", "reason": "already used with a different payload"}],
            )
        return order

    if order.kind not in (OrderKind.SERVICE, OrderKind.MATERIAL_REQUEST):
        raise workflow.TransitionError(
            code="invalid_transition",
            detail=[{"field": "kind", "reason": f"{order.kind.value} orders cannot be received"}],
        )
    if order.status not in (OrderStatus.DISPATCHED, OrderStatus.PARTIAL_RETURN):
        raise workflow.TransitionError(
            code="invalid_transition",
            detail=[{"field": "status", "reason": f"Cannot receive against a {order.status.value} order"}],
        )
    if request.force_complete and order.kind != OrderKind.MATERIAL_REQUEST:
        raise ValidationError(
            "force_complete applies to material requests only.",
            detail=[{"field": "force_complete", "reason": "not allowed for this order kind"}],
        )

    deltas = _merge_deltas(request.lines)
    stocked = {
        item_id: (delta.add_returned if order.kind == OrderKind.SERVICE else delta.add_received)
        for item_id, delta in deltas.items()
    }
    stocked = {item_id: qty for item_id, qty in stocked.items() if qty > 0}
    if not stocked and not any(d.add_scrapped for d in deltas.values()) and not request.force_complete:
        raise ValidationError(
            "Nothing to receive.",
            code="empty_receipt",
            detail=[{"field": "lines", "reason": "no positive quantities"}],
        )

    lines = [schemas.OrderLine(**line) for line in order.lines or []]
    _apply_receive_deltas(order, lines, deltas)
    items = ledger.load_items(db, stocked)

    kind = order.kind.value
    settled = all(workflow.guards.line_settled(kind, line.model_dump()) for line in lines)
    to_state = "COMPLETED" if settled or request.force_complete else "PARTIAL_RETURN"
    order.lines = _dump_lines(lines)
    workflow.apply_transition(
        order,
        to_state=to_state,
        actor_id=actor_id,
        now=now,
        action="receive",
        context={"force_complete": request.force_complete},
    )

    location = order.source_location_id if order.kind == OrderKind.SERVICE else order.destination_location_id
    _apply_to_items(db, items, {item_id: {location: qty} for item_id, qty in stocked.items()})

    by_item = {line.item_id: line for line in lines}
    batch: List[schemas.Movement] = []
    for item_id, delta in deltas.items():
        fields = _movement_fields(by_item[item_id], order_code=order.code, now=now, actor_id=actor_id)
        if stocked.get(item_id):
            batch.append(schemas.StockIn(location_id=location, quantity=stocked[item_id], **fields))
        if delta.add_scrapped:
            batch.append(
                schemas.Depreciation(
                    location_id=location,
                    quantity=delta.add_scrapped,
                    reason="Scrapped during service",
                    **fields,
                )
            )
    movements.append_many(db, batch)

    if key is not None:
        order.receipt_keys = {**(order.receipt_keys or {}), key: payload_hash}
    db.add(order)
    return order


def cancel(
    db: Session,
    order_id: str,
    *,
    actor_id: Optional[str],
    now: datetime,
) -> models.InventoryOrder:
    """
    Cancel a draft order, or a dispatched service order / material request
    with nothing received yet. A dispatched service order gets its stock back
    at the source, one RETURN record per line.
    """
    order = get_order(db, order_id)
    reverses_dispatch = order.kind == OrderKind.SERVICE and order.status == OrderStatus.DISPATCHED
    lines = [schemas.OrderLine(**line) for line in order.lines or []]
    items = ledger.load_items(db, (line.item_id for line in lines)) if reverses_dispatch else {}

    workflow.apply_transition(order, to_state="CANCELLED", actor_id=actor_id, now=now, action="cancel")
    if reverses_dispatch:
        source = order.source_location_id
        totals = ledger.aggregate_quantities((line.item_id, line.sent) for line in lines)
        _apply_to_items(db, items, {item_id: {source: qty} for item_id, qty in totals.items()})
        movements.append_many(
            db,
            (
                schemas.Return(
                    location_id=source,
                    quantity=line.sent,
                    note="Service order cancelled",
                    **_movement_fields(line, order_code=order.code, now=now, actor_id=actor_id),
                )
                for line in lines
                if line.sent > 0
            ),
        )
    db.add(order)
    return order


# ---------------------------------------------------------------------------
# Direct vouchers
# ---------------------------------------------------------------------------


def receive_stock(db: Session, payload: schemas.StockReceiptCreate, *, now: datetime) -> models.InventoryOrder:
    destination = _require(payload.destination_location_id, "destination_location_id")
    lines = _positive_lines(payload.lines)
    totals = ledger.aggregate_quantities((line.item_id, line.quantity) for line in lines)
    items = ledger.load_items(db, totals)

    order_lines = _consolidate(lines, items, "received")
    order = _new_order(
        db,
        kind=OrderKind.RECEIPT,
        now=now,
        lines=order_lines,
        created_by_id=payload.created_by_id,
        action="receive",
        destination_location_id=destination,
        document_info={"supplier_name": payload.supplier_name, "invoice_no": payload.invoice_no},
        notes=payload.notes,
    )
    _apply_to_items(db, items, {item_id: {destination: qty} for item_id, qty in totals.items()})
    movements.append_many(
        db,
        (
            schemas.StockIn(
                location_id=destination,
                quantity=line.received,
                note=payload.supplier_name,
                **_movement_fields(line, order_code=order.code, now=now, actor_id=payload.created_by_id),
            )
            for line in order_lines
        ),
    )
    return order


def issue_stock(db: Session, payload: schemas.StockIssueCreate, *, now: datetime) -> models.InventoryOrder:
    source = _require(payload.source_location_id, "source_location_id")
    lines = _positive_lines(payload.lines)
    totals = ledger.aggregate_quantities((line.item_id, line.quantity) for line in lines)
    items = ledger.load_items(db, totals)
    ledger.check_available(items, location_id=source, totals=totals)

    order_lines = _consolidate(lines, items, "sent")
    order = _new_order(
        db,
        kind=OrderKind.ISSUE,
        now=now,
        lines=order_lines,
        created_by_id=payload.created_by_id,
        action="dispatch",
        source_location_id=source,
        document_info={"issued_to": payload.issued_to},
        notes=payload.notes,
    )
    _apply_to_items(db, items, {item_id: {source: -qty} for item_id, qty in totals.items()})
    movements.append_many(
        db,
        (
            schemas.StockOut(
                location_id=source,
                quantity=line.sent,
                note=payload.issued_to,
                **_movement_fields(line, order_code=order.code, now=now, actor_id=payload.created_by_id),
            )
            for line in order_lines
        ),
    )
    return order


def scrap_stock(db: Session, payload: schemas.StockScrapCreate, *, now: datetime) -> models.InventoryOrder:
    source = _require(payload.source_location_id, "source_location_id")
    reason = _require(payload.reason, "reason")
    lines = _positive_lines(payload.lines)
    totals = ledger.aggregate_quantities((line.item_id, line.quantity) for line in lines)
    items = ledger.load_items(db, totals)
    ledger.check_available(items, location_id=source, totals=totals)

    order_lines = _consolidate(lines, items, "scrapped")
    order = _new_order(
        db,
        kind=OrderKind.SCRAP,
        now=now,
        lines=order_lines,
        created_by_id=payload.created_by_id,
        source_location_id=source,
        document_info={"reason": reason},
        notes=payload.notes,
    )
    _apply_to_items(db, items, {item_id: {source: -qty} for item_id, qty in totals.items()})
    movements.append_many(
        db,
        (
            schemas.Scrap(
                location_id=source,
                quantity=line.scrapped,
                reason=reason,
                **_movement_fields(line, order_code=order.code, now=now, actor_id=payload.created_by_id),
            )
            for line in order_lines
        ),
    )
    return order


def reconcile(db: Session, payload: schemas.ReconciliationCreate, *, now: datetime) -> models.InventoryOrder:
    """Bring per-location quantities in line with a physical count; one AUDIT record per difference."""
    location = _require(payload.location_id, "location_id")
    if not payload.counts:
        raise ValidationError(
            "At least one counted item is required.",
            code="missing_lines",
            detail=[{"field": "counts", "reason": "empty"}],
        )
    counts: Dict[str, int] = {}
    for count in payload.counts:
        item_id = _require(count.item_id, "item_id")
        if item_id in counts:
            raise ValidationError(
                f"Item counted twice: {item_id}",
                detail=[{"field": "counts", "item_id": item_id, "reason": "duplicate"}],
            )
        counts[item_id] = count.counted

    items = ledger.load_items(db, counts)
    order_lines = [
        schemas.OrderLine(
            item_id=item_id,
            name_en=items[item_id].name_en,
            name_ar=items[item_id].name_ar,
            expected=items[item_id].quantity_at(location),
            counted=counted,
        )
        for item_id, counted in counts.items()
    ]
    order = _new_order(
        db,
        kind=OrderKind.RECONCILIATION,
        now=now,
        lines=order_lines,
        created_by_id=payload.created_by_id,
        source_location_id=location,
        notes=payload.notes,
    )

    differences = {line.item_id: line.counted - line.expected for line in order_lines}
    _apply_to_items(db, items, {item_id: {location: diff} for item_id, diff in differences.items()})
    movements.append_many(
        db,
        (
            schemas.AuditCount(
                location_id=location,
                quantity=abs(differences[line.item_id]),
                direction=Direction.INCREASE if differences[line.item_id] > 0 else Direction.DECREASE,
                note=f"Counted {line.counted}, expected {line.expected}",
                **_movement_fields(line, order_code=order.code, now=now, actor_id=payload.created_by_id),
            )
            for line in order_lines
            if differences[line.item_id] != 0
        ),
    )
    return order
