from __future__ import annotations

import pytest

from opsdb.apps.inventory import models, schemas
from opsdb.errors import NotFoundError, ValidationError

Kind = models.OrderKindEnum


def _items(engine, *item_ids: str) -> None:
    for item_id in item_ids:
        engine.create_item(schemas.ItemCreate(id=item_id, name_en=f"Item {item_id}"))


def _lines(*pairs):
    return [schemas.OrderLineCreate(item_id=item_id, quantity=qty) for item_id, qty in pairs]


def test_receipt_voucher_adds_stock(engine):
    _items(engine, "X")

    code = engine.receive_stock(
        schemas.StockReceiptCreate(
            destination_location_id="A",
            lines=_lines(("X", 6), ("X", 4)),
            supplier_name="Acme Supplies",
            invoice_no="INV-77",
        )
    )

    order = engine.get_order_by_code(code)
    assert code == "MRV-2508-0001"
    assert order.status == models.OrderStatusEnum.COMPLETED
    assert order.document_info == {"supplier_name": "Acme Supplies", "invoice_no": "INV-77"}
    assert engine.get_item("X").stock_by_location == {"A": 10}
    assert [(m.type, m.quantity) for m in engine.list_movements("X", "A")] == [("IN", 10)]


def test_issue_voucher_checks_and_removes_stock(engine):
    _items(engine, "X")
    engine.receive_stock(schemas.StockReceiptCreate(destination_location_id="A", lines=_lines(("X", 5))))

    with pytest.raises(ValidationError):
        engine.issue_stock(schemas.StockIssueCreate(source_location_id="A", lines=_lines(("X", 6))))

    code = engine.issue_stock(
        schemas.StockIssueCreate(source_location_id="A", lines=_lines(("X", 2)), issued_to="Line maintenance")
    )
    assert code.startswith("MIV-")
    assert engine.get_item("X").stock == 3


def test_scrap_voucher_requires_a_reason(engine):
    _items(engine, "X")
    engine.receive_stock(schemas.StockReceiptCreate(destination_location_id="A", lines=_lines(("X", 5))))

    with pytest.raises(ValidationError) as excinfo:
        engine.scrap_stock(schemas.StockScrapCreate(source_location_id="A", reason="   ", lines=_lines(("X", 1))))
    assert excinfo.value.detail[0]["field"] == "reason"

    code = engine.scrap_stock(
        schemas.StockScrapCreate(source_location_id="A", reason="Corroded", lines=_lines(("X", 2)))
    )
    scraps = [m for m in engine.list_movements("X", "A") if m.reference == code]
    assert [(m.type, m.quantity, m.reason) for m in scraps] == [("SCRAP", 2, "Corroded")]
    assert engine.get_item("X").stock == 3


def test_reconciliation_logs_count_differences(engine):
    _items(engine, "X", "Y", "Z")
    engine.receive_stock(
        schemas.StockReceiptCreate(destination_location_id="A", lines=_lines(("X", 10), ("Y", 5), ("Z", 1)))
    )

    code = engine.reconcile(
        schemas.ReconciliationCreate(
            location_id="A",
            counts=[
                schemas.CountLine(item_id="X", counted=8),
                schemas.CountLine(item_id="Y", counted=7),
                schemas.CountLine(item_id="Z", counted=1),
            ],
        )
    )

    order = engine.get_order_by_code(code)
    assert code.startswith("CON-")
    assert [(l.item_id, l.expected, l.counted) for l in order.lines] == [("X", 10, 8), ("Y", 5, 7), ("Z", 1, 1)]
    assert engine.get_item("X").stock_by_location == {"A": 8}
    assert engine.get_item("Y").stock_by_location == {"A": 7}
    audits = {
        m.item_id: (m.direction.value, m.quantity)
        for item_id in ("X", "Y", "Z")
        for m in engine.list_movements(item_id, "A")
        if m.type == "AUDIT"
    }
    assert audits == {"X": ("DECREASE", 2), "Y": ("INCREASE", 2)}


def test_reconciliation_rejects_duplicate_counts(engine):
    _items(engine, "X")

    with pytest.raises(ValidationError):
        engine.reconcile(
            schemas.ReconciliationCreate(
                location_id="A",
                counts=[schemas.CountLine(item_id="X", counted=1), schemas.CountLine(item_id="X", counted=2)],
            )
        )


def test_order_lookup_and_listing(engine):
    _items(engine, "X")
    receipt = engine.receive_stock(schemas.StockReceiptCreate(destination_location_id="A", lines=_lines(("X", 5))))
    issue = engine.issue_stock(schemas.StockIssueCreate(source_location_id="A", lines=_lines(("X", 1))))

    assert engine.get_order_by_code(receipt.lower()).code == receipt
    assert [o.code for o in engine.list_orders(kind=Kind.ISSUE)] == [issue]
    assert {o.code for o in engine.list_orders(status=models.OrderStatusEnum.COMPLETED)} == {receipt, issue}
    with pytest.raises(ValidationError):
        engine.get_order_by_code("not-a-code")
    with pytest.raises(NotFoundError):
        engine.get_order("missing")


def test_items_are_created_once(engine):
    item = engine.create_item(schemas.ItemCreate(id=" X ", name_en="Seal"))
    assert item.id == "X"
    assert item.stock == 0

    with pytest.raises(ValidationError) as excinfo:
        engine.create_item(schemas.ItemCreate(id="X", name_en="Seal"))
    assert excinfo.value.code == "item_exists"

    with pytest.raises(NotFoundError):
        engine.get_item("Y")
