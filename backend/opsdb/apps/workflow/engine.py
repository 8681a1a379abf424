from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

from opsdb.apps.inventory.models import OrderStatusEnum
from opsdb.errors import ValidationError

from .guards import guard_has_lines
from .registry import WORKFLOWS

logger = logging.getLogger(__name__)

# action -> (actor field, timestamp field)
_ACTION_STAMPS = {
    "dispatch": ("dispatched_by_id", "dispatched_at"),
    "approve": ("approved_by_id", "approved_at"),
    "receive": ("received_by_id", "received_at"),
    "cancel": ("cancelled_by_id", "cancelled_at"),
}

_DEFAULT_ACTIONS = {
    "DISPATCHED": "dispatch",
    "PARTIAL_RETURN": "receive",
    "COMPLETED": "receive",
    "CANCELLED": "cancel",
}


class TransitionError(ValidationError):
    def __init__(self, code: str, detail: List[Dict[str, str]], message: Optional[str] = None) -> None:
        reason = detail[0]["reason"] if detail else code
        super().__init__(message or f"Transition rejected: {reason}", code=code, detail=detail)


def _state(value: Any) -> str:
    return getattr(value, "value", value)


def _workflow_for(order: Any) -> Mapping[str, Any]:
    kind = _state(order.kind)
    workflow = WORKFLOWS.get(kind)
    if not workflow:
        raise TransitionError(
            code="invalid_transition",
            detail=[{"field": "kind", "reason": f"No workflow registered for {kind}"}],
        )
    return workflow


def _stamp(order: Any, *, action: Optional[str], to_state: str, actor_id: Optional[str], now: datetime) -> None:
    fields = _ACTION_STAMPS.get(action or "")
    if fields:
        actor_field, time_field = fields
        if actor_id:
            setattr(order, actor_field, actor_id)
        setattr(order, time_field, now)
    if to_state == OrderStatusEnum.COMPLETED.value:
        order.completed_at = now


def enter_initial_state(
    order: Any,
    *,
    actor_id: Optional[str],
    now: datetime,
    action: Optional[str] = None,
) -> str:
    """Put a new order into its kind's initial state."""
    workflow = _workflow_for(order)
    initial = workflow["initial"][0]
    failures = guard_has_lines(order, from_state=None, to_state=initial, context={})
    if failures:
        raise TransitionError(code="missing_requirements", detail=failures)
    order.status = OrderStatusEnum(initial)
    if action is None and initial == OrderStatusEnum.DISPATCHED.value:
        action = "dispatch"
    _stamp(order, action=action, to_state=initial, actor_id=actor_id, now=now)
    return initial


def apply_transition(
    order: Any,
    *,
    to_state: str,
    actor_id: Optional[str],
    now: datetime,
    action: Optional[str] = None,
    context: Optional[Mapping[str, Any]] = None,
) -> str:
    """
    Validate and apply a status change on an order, returning the previous
    status. Guards see the order as it will be after the change (lines
    already updated by the caller). Raises TransitionError and leaves the
    order untouched when the move is not allowed.
    """
    workflow = _workflow_for(order)
    from_state = _state(order.status)
    to_state = _state(to_state)

    allowed = workflow.get("transitions", {}).get(from_state, {})
    guards = allowed.get(to_state)
    if guards is None:
        raise TransitionError(
            code="invalid_transition",
            detail=[{"field": "status", "reason": f"Cannot transition from {from_state} to {to_state}"}],
        )

    ctx = dict(context or {})
    failures: List[Dict[str, str]] = []
    for guard in guards:
        failures.extend(guard(order, from_state=from_state, to_state=to_state, context=ctx))
    if failures:
        raise TransitionError(code="missing_requirements", detail=failures)

    order.status = OrderStatusEnum(to_state)
    _stamp(order, action=action or _DEFAULT_ACTIONS.get(to_state), to_state=to_state, actor_id=actor_id, now=now)
    logger.debug(
        "Order transition",
        extra={"order_code": getattr(order, "code", None), "from_state": from_state, "to_state": to_state},
    )
    return from_state
