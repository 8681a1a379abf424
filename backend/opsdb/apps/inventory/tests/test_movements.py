from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from opsdb.apps.inventory import models, movements, schemas
from opsdb.errors import NotFoundError
from opsdb.utils.identifiers import generate_uuid7

T0 = datetime(2025, 8, 4, 9, 0, 0)
INCREASE = models.AdjustmentDirectionEnum.INCREASE
DECREASE = models.AdjustmentDirectionEnum.DECREASE


def _fields(minutes: int = 0, **extra):
    return {"item_id": "X", "location_id": "A", "occurred_at": T0 + timedelta(minutes=minutes), **extra}


@pytest.mark.parametrize(
    "movement, expected",
    [
        (schemas.StockIn(quantity=5, **_fields()), 5),
        (schemas.StockOut(quantity=5, **_fields()), -5),
        (schemas.TransferIn(quantity=5, related_location_id="B", **_fields()), 5),
        (schemas.TransferOut(quantity=5, related_location_id="B", **_fields()), -5),
        (schemas.Return(quantity=5, **_fields()), 5),
        (schemas.Scrap(quantity=5, reason="damaged", **_fields()), -5),
        (schemas.Depreciation(quantity=5, **_fields()), 0),
        (schemas.Adjustment(quantity=5, direction=INCREASE, **_fields()), 5),
        (schemas.Adjustment(quantity=5, direction=DECREASE, **_fields()), -5),
        (schemas.AuditCount(quantity=5, direction=DECREASE, **_fields()), -5),
    ],
)
def test_stock_effect_per_variant(movement, expected):
    assert movements.stock_effect(movement) == expected


def test_movement_payload_is_dispatched_on_type():
    parsed = schemas.MOVEMENT_ADAPTER.validate_python(
        {"type": "TRANSFER_OUT", "quantity": 3, "related_location_id": "B", **_fields()}
    )
    assert isinstance(parsed, schemas.TransferOut)
    assert parsed.related_location_id == "B"


def test_reconstruct_balances_walks_forward_from_derived_start():
    history = [
        schemas.StockIn(quantity=10, **_fields(0)),
        schemas.StockOut(quantity=10, **_fields(1)),
        schemas.StockIn(quantity=7, **_fields(2)),
        schemas.Depreciation(quantity=3, **_fields(3)),
    ]

    starting, entries = movements.reconstruct_balances(7, history)

    assert starting == 0
    assert [entry.balance for entry in entries] == [10, 0, 7, 7]


def test_appended_rows_read_back_in_time_order(db_session):
    movements.append_many(
        db_session,
        [
            schemas.StockOut(quantity=2, reference="SVC-2508-0001", **_fields(5)),
            schemas.StockIn(quantity=9, reference="MRV-2508-0001", **_fields(1)),
            schemas.StockIn(quantity=4, **_fields(3, location_id="B")),
        ],
    )
    db_session.commit()

    records = movements.list_for(db_session, item_id="X", location_id="A")
    assert [(r.type, r.quantity) for r in records] == [("IN", 9), ("OUT", 2)]
    assert len(movements.list_for(db_session, item_id="X")) == 3
    assert [r.type for r in movements.list_by_reference(db_session, "SVC-2508-0001")] == ["OUT"]

    row = db_session.query(models.InventoryMovement).filter_by(type=models.MovementTypeEnum.OUT).one()
    assert row.delta == -2


def test_item_history_requires_known_item(db_session):
    with pytest.raises(NotFoundError):
        movements.item_history(db_session, item_id="nope")


def test_history_replays_to_current_balance(engine):
    engine.create_item(schemas.ItemCreate(id="X", name_en="Hydraulic filter"))
    engine.receive_stock(
        schemas.StockReceiptCreate(
            destination_location_id="A",
            lines=[schemas.OrderLineCreate(item_id="X", quantity=10)],
        )
    )
    code = engine.create_and_dispatch(
        schemas.ServiceOrderCreate(
            source_location_id="A",
            destination=schemas.DestinationInfo(type="ExternalWorkshop", name="Workshop"),
            lines=[schemas.OrderLineCreate(item_id="X", quantity=6)],
        )
    )
    order = engine.get_order_by_code(code)
    engine.receive(order.id, [schemas.ReceiveLineDelta(item_id="X", add_returned=4, add_scrapped=2)])
    engine.issue_stock(
        schemas.StockIssueCreate(source_location_id="A", lines=[schemas.OrderLineCreate(item_id="X", quantity=3)])
    )

    history = engine.item_history("X", "A")

    assert history.current_balance == 5
    assert history.starting_balance == 0
    assert [e.balance for e in history.entries] == [10, 4, 8, 8, 5]
    assert [e.movement.type for e in history.entries] == ["IN", "OUT", "IN", "DEPRECIATION", "OUT"]
    assert history.entries[-1].balance == history.current_balance


def test_generated_ids_sort_in_generation_order():
    ids = [generate_uuid7() for _ in range(5000)]

    assert ids == sorted(ids)
    assert len(set(ids)) == len(ids)


def test_same_timestamp_records_read_back_in_write_order(db_session):
    written = []
    for _ in range(10):
        written.append(schemas.TransferOut(quantity=10, related_location_id="B", **_fields()))
        written.append(schemas.TransferIn(quantity=10, related_location_id="A", **_fields(location_id="B")))
        written.append(schemas.TransferOut(quantity=10, related_location_id="A", **_fields(location_id="B")))
        written.append(schemas.TransferIn(quantity=10, related_location_id="B", **_fields()))
    movements.append_many(db_session, written)
    db_session.commit()

    records = movements.list_for(db_session, item_id="X")

    assert [(r.type, r.location_id) for r in records] == [(m.type, m.location_id) for m in written]
    _, entries = movements.reconstruct_balances(10, records)
    assert [e.balance for e in entries] == [0, 10, 0, 10] * 10


def test_round_trip_transfers_never_report_phantom_stock(engine):
    engine.create_item(schemas.ItemCreate(id="X", name_en="Torque wrench"))
    engine.receive_stock(
        schemas.StockReceiptCreate(destination_location_id="A", lines=[schemas.OrderLineCreate(item_id="X", quantity=10)])
    )
    for source, destination in [("A", "B"), ("B", "A")] * 10:
        code = engine.create_transfer(
            schemas.TransferCreate(
                source_location_id=source,
                destination_location_id=destination,
                lines=[schemas.OrderLineCreate(item_id="X", quantity=10)],
            )
        )
        engine.approve(engine.get_order_by_code(code).id)

    history = engine.item_history("X")

    balances = [e.balance for e in history.entries]
    assert balances == [10] + [0, 10] * 20
    assert max(balances) <= 10
    assert history.current_balance == 10
