from __future__ import annotations

import pytest

from opsdb.apps.inventory import models, schemas
from opsdb.apps.workflow import TransitionError
from opsdb.errors import ValidationError

Status = models.OrderStatusEnum
MovementType = models.MovementTypeEnum


def _seed(engine, item_id: str = "X", location_id: str = "A", quantity: int = 10) -> None:
    engine.create_item(schemas.ItemCreate(id=item_id, name_en=f"Item {item_id}", name_ar="صنف"))
    engine.receive_stock(
        schemas.StockReceiptCreate(
            destination_location_id=location_id,
            lines=[schemas.OrderLineCreate(item_id=item_id, quantity=quantity)],
        )
    )


def _transfer(engine, *lines, source: str = "A", destination: str = "B") -> schemas.OrderRead:
    code = engine.create_transfer(
        schemas.TransferCreate(
            source_location_id=source,
            destination_location_id=destination,
            lines=[schemas.OrderLineCreate(item_id=item_id, quantity=qty) for item_id, qty in lines],
            created_by_id="user-1",
        )
    )
    return engine.get_order_by_code(code)


def _drop_records(session_factory, code: str, movement_type: MovementType) -> None:
    with session_factory() as db:
        db.query(models.InventoryMovement).filter(
            models.InventoryMovement.reference == code,
            models.InventoryMovement.type == movement_type,
        ).delete()
        db.commit()


def test_transfer_waits_for_approval_then_moves_stock(engine):
    _seed(engine)
    order = _transfer(engine, ("X", 4))

    assert order.code.startswith("TRS-2508-")
    assert order.status == Status.DRAFT
    assert engine.get_item("X").stock_by_location == {"A": 10}

    assert engine.approve(order.id, actor_id="manager-1") == Status.COMPLETED

    item = engine.get_item("X")
    assert item.stock_by_location == {"A": 6, "B": 4}
    assert item.stock == 10
    records = [m for m in engine.list_movements("X") if m.reference == order.code]
    assert sorted((r.type, r.location_id, r.related_location_id, r.quantity) for r in records) == [
        ("TRANSFER_IN", "B", "A", 4),
        ("TRANSFER_OUT", "A", "B", 4),
    ]
    approved = engine.get_order(order.id)
    assert approved.approved_by_id == "manager-1"
    assert approved.completed_at == approved.approved_at


def test_transfer_approval_rechecks_stock(engine):
    _seed(engine)
    order = _transfer(engine, ("X", 8))
    engine.issue_stock(
        schemas.StockIssueCreate(source_location_id="A", lines=[schemas.OrderLineCreate(item_id="X", quantity=5)])
    )

    with pytest.raises(ValidationError) as excinfo:
        engine.approve(order.id)

    assert excinfo.value.code == "insufficient_stock"
    assert engine.get_order(order.id).status == Status.DRAFT
    assert engine.get_item("X").stock_by_location == {"A": 5}


def test_transfer_requires_distinct_locations(engine):
    _seed(engine)

    with pytest.raises(ValidationError) as excinfo:
        _transfer(engine, ("X", 1), destination="A")

    assert excinfo.value.code == "same_location"


def test_draft_transfer_can_be_cancelled_without_stock_effect(engine):
    _seed(engine)
    order = _transfer(engine, ("X", 4))

    assert engine.cancel(order.id) == Status.CANCELLED
    assert engine.get_item("X").stock_by_location == {"A": 10}
    with pytest.raises(TransitionError):
        engine.approve(order.id)


def test_service_orders_are_not_approval_gated(engine):
    _seed(engine)
    code = engine.create_and_dispatch(
        schemas.ServiceOrderCreate(
            source_location_id="A",
            destination=schemas.DestinationInfo(type="Vendor", name="OEM"),
            lines=[schemas.OrderLineCreate(item_id="X", quantity=1)],
        )
    )

    with pytest.raises(TransitionError):
        engine.approve(engine.get_order_by_code(code).id)


def test_scan_reports_nothing_for_complete_history(engine):
    _seed(engine)
    engine.approve(_transfer(engine, ("X", 4)).id)
    _transfer(engine, ("X", 1))  # still a draft, not scanned

    report = engine.scan_for_gaps()

    assert report.scanned_orders == 1
    assert report.gaps == []


def test_missing_transfer_in_is_found_and_backfilled(engine, session_factory, published):
    _seed(engine)
    order = _transfer(engine, ("X", 4))
    engine.approve(order.id)
    approved_at = engine.get_order(order.id).approved_at
    _drop_records(session_factory, order.code, MovementType.TRANSFER_IN)
    stock_before = engine.get_item("X").stock_by_location

    report = engine.scan_for_gaps()

    assert len(report.gaps) == 1
    gap = report.gaps[0]
    assert (gap.code, gap.item_id, gap.missing_out, gap.missing_in) == (order.code, "X", 0, 4)
    assert report.missing_records == 1

    assert engine.repair(report, actor_id="auditor") == 1

    assert engine.get_item("X").stock_by_location == stock_before
    backfilled = [
        m for m in engine.list_movements("X", "B") if m.reference == order.code and m.type == "TRANSFER_IN"
    ]
    assert len(backfilled) == 1
    assert backfilled[0].quantity == 4
    assert backfilled[0].related_location_id == "A"
    assert backfilled[0].occurred_at == approved_at
    assert engine.scan_for_gaps().gaps == []
    assert published[-1].type == "inventory.movements.repaired"


def test_replaying_a_stale_report_writes_nothing(engine, session_factory):
    _seed(engine)
    order = _transfer(engine, ("X", 4))
    engine.approve(order.id)
    _drop_records(session_factory, order.code, MovementType.TRANSFER_OUT)
    report = engine.scan_for_gaps()

    assert engine.repair(report) == 1
    assert engine.repair(report) == 0

    outs = [m for m in engine.list_movements("X", "A") if m.type == "TRANSFER_OUT"]
    assert len(outs) == 1


def test_both_sides_missing_across_duplicate_lines(engine, session_factory):
    _seed(engine)
    order = _transfer(engine, ("X", 2), ("X", 3))
    engine.approve(order.id)
    _drop_records(session_factory, order.code, MovementType.TRANSFER_OUT)
    _drop_records(session_factory, order.code, MovementType.TRANSFER_IN)

    report = engine.scan_for_gaps()

    assert [(g.quantity, g.missing_out, g.missing_in) for g in report.gaps] == [(5, 5, 5)]
    assert engine.repair(report) == 2
    assert engine.item_history("X", "B").starting_balance == 0
