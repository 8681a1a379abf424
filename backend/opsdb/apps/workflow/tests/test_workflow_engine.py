from __future__ import annotations

from datetime import datetime

import pytest

from opsdb.apps.inventory import models
from opsdb.apps.workflow import WORKFLOWS, TransitionError, apply_transition, enter_initial_state
from opsdb.errors import ValidationError

NOW = datetime(2025, 8, 4, 9, 0, 0)


def _order(kind: str, status: str, lines) -> models.InventoryOrder:
    return models.InventoryOrder(
        code="SVC-2508-0001",
        kind=models.OrderKindEnum(kind),
        status=models.OrderStatusEnum(status),
        lines=lines,
    )


def test_every_order_kind_has_a_workflow():
    assert set(WORKFLOWS) == {kind.value for kind in models.OrderKindEnum}


def test_completion_requires_settled_lines():
    order = _order("SERVICE", "DISPATCHED", [{"item_id": "X", "sent": 10, "returned": 6, "scrapped": 0}])

    with pytest.raises(TransitionError) as excinfo:
        apply_transition(order, to_state="COMPLETED", actor_id="u1", now=NOW)

    assert excinfo.value.code == "missing_requirements"
    assert excinfo.value.detail == [{"field": "lines.X", "reason": "line not settled"}]
    assert isinstance(excinfo.value, ValidationError)
    assert order.status == models.OrderStatusEnum.DISPATCHED


def test_completion_stamps_actor_and_time():
    order = _order("SERVICE", "DISPATCHED", [{"item_id": "X", "sent": 10, "returned": 7, "scrapped": 3}])

    previous = apply_transition(order, to_state="COMPLETED", actor_id="u1", now=NOW)

    assert previous == "DISPATCHED"
    assert order.status == models.OrderStatusEnum.COMPLETED
    assert order.received_by_id == "u1"
    assert order.received_at == NOW
    assert order.completed_at == NOW


def test_force_complete_skips_the_settlement_guard():
    order = _order("MATERIAL_REQUEST", "PARTIAL_RETURN", [{"item_id": "X", "requested": 10, "received": 3}])

    apply_transition(order, to_state="COMPLETED", actor_id=None, now=NOW, context={"force_complete": True})

    assert order.status == models.OrderStatusEnum.COMPLETED


def test_cancel_guard_lists_every_received_line():
    order = _order(
        "MATERIAL_REQUEST",
        "DISPATCHED",
        [{"item_id": "X", "requested": 2, "received": 1}, {"item_id": "Y", "requested": 2, "received": 2}],
    )

    with pytest.raises(TransitionError) as excinfo:
        apply_transition(order, to_state="CANCELLED", actor_id="u1", now=NOW)

    assert {item["field"] for item in excinfo.value.detail} == {"lines.X", "lines.Y"}


def test_unknown_transition_is_rejected():
    order = _order("TRANSFER", "COMPLETED", [{"item_id": "X", "sent": 1}])

    with pytest.raises(TransitionError) as excinfo:
        apply_transition(order, to_state="DRAFT", actor_id="u1", now=NOW)

    assert excinfo.value.code == "invalid_transition"
    assert excinfo.value.detail[0]["field"] == "status"


def test_approval_stamps_approver():
    order = _order("MATERIAL_REQUEST", "DRAFT", [{"item_id": "X", "requested": 2}])

    apply_transition(order, to_state="DISPATCHED", actor_id="mgr", now=NOW, action="approve")

    assert order.approved_by_id == "mgr"
    assert order.approved_at == NOW
    assert order.dispatched_at is None


def test_initial_state_follows_kind_and_needs_lines():
    service = _order("SERVICE", "DRAFT", [{"item_id": "X", "sent": 1}])
    assert enter_initial_state(service, actor_id="u1", now=NOW) == "DISPATCHED"
    assert service.dispatched_by_id == "u1"

    receipt = _order("RECEIPT", "DRAFT", [{"item_id": "X", "received": 1}])
    assert enter_initial_state(receipt, actor_id="u1", now=NOW) == "COMPLETED"
    assert receipt.completed_at == NOW

    empty = _order("TRANSFER", "DRAFT", [])
    with pytest.raises(TransitionError) as excinfo:
        enter_initial_state(empty, actor_id="u1", now=NOW)
    assert excinfo.value.detail == [{"field": "lines", "reason": "at least one line required"}]
