"""
InventoryEngine: the operations other components call.

Every mutating call runs its transaction body from `services` under
`run_in_transaction` against the injected session factory, then (only after
a successful commit) hands an event to the optional publisher. Reads open a
plain session.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, TypeVar

from sqlalchemy.orm import Session, sessionmaker

from opsdb.apps.events.broker import EventEnvelope, build_envelope
from opsdb.errors import ConfigurationError

from . import ledger, models, movements, repair as repair_ops, schemas, services
from .transactions import run_in_transaction

logger = logging.getLogger(__name__)

T = TypeVar("T")
Publisher = Callable[[EventEnvelope], None]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _order_read(order: models.InventoryOrder) -> schemas.OrderRead:
    return schemas.OrderRead.model_validate(order)


class InventoryEngine:
    def __init__(
        self,
        session_factory: sessionmaker,
        *,
        publisher: Optional[Publisher] = None,
        max_attempts: Optional[int] = None,
        backoff_ms: Optional[int] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        if session_factory is None:
            raise ConfigurationError("InventoryEngine requires a session factory.", code="store_missing")
        self._session_factory = session_factory
        self._publisher = publisher
        self._max_attempts = max_attempts
        self._backoff_ms = backoff_ms
        self._clock = clock

    # -- plumbing ---------------------------------------------------------

    def _write(self, operation: str, body: Callable[[Session], T]) -> T:
        return run_in_transaction(
            self._session_factory,
            body,
            max_attempts=self._max_attempts,
            backoff_ms=self._backoff_ms,
            operation=operation,
        )

    def _read(self, body: Callable[[Session], T]) -> T:
        with self._session_factory() as db:
            return body(db)

    def _publish(
        self,
        event_type: str,
        *,
        entity_type: str,
        entity_id: str,
        action: str,
        actor_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        if self._publisher is None:
            return
        try:
            self._publisher(
                build_envelope(
                    type=event_type,
                    entity_type=entity_type,
                    entity_id=entity_id,
                    action=action,
                    actor_id=actor_id,
                    metadata=metadata,
                )
            )
        except Exception as exc:
            logger.warning(
                "Event publication failed",
                extra={"event_type": event_type, "entity_id": entity_id, "error": str(exc)},
            )

    def _order_committed(self, order: schemas.OrderRead, action: str, actor_id: Optional[str]) -> None:
        logger.info(
            "Inventory order %s",
            action,
            extra={"order_code": order.code, "kind": order.kind.value, "status": order.status.value},
        )
        self._publish(
            f"inventory.order.{action}",
            entity_type="inventory.order",
            entity_id=order.id,
            action=action,
            actor_id=actor_id,
            metadata={"code": order.code, "kind": order.kind.value, "status": order.status.value},
        )

    def _create(
        self,
        operation: str,
        create: Callable[..., models.InventoryOrder],
        payload: Any,
        *,
        action: str = "created",
    ) -> str:
        now = self._clock()
        order = self._write(operation, lambda db: _order_read(create(db, payload, now=now)))
        self._order_committed(order, action, order.created_by_id)
        return order.code

    # -- items ------------------------------------------------------------

    def create_item(self, payload: schemas.ItemCreate) -> schemas.ItemRead:
        now = self._clock()
        item = self._write(
            "create_item",
            lambda db: schemas.ItemRead.model_validate(services.create_item(db, payload, now=now)),
        )
        self._publish("inventory.item.created", entity_type="inventory.item", entity_id=item.id, action="created")
        return item

    def get_item(self, item_id: str) -> schemas.ItemRead:
        return self._read(lambda db: schemas.ItemRead.model_validate(services.get_item(db, item_id)))

    # -- orders -----------------------------------------------------------

    def create_and_dispatch(self, payload: schemas.ServiceOrderCreate) -> str:
        return self._create("create_and_dispatch", services.create_and_dispatch, payload, action="dispatched")

    def create_transfer(self, payload: schemas.TransferCreate) -> str:
        return self._create("create_transfer", services.create_transfer, payload)

    def create_material_request(self, payload: schemas.MaterialRequestCreate) -> str:
        return self._create("create_material_request", services.create_material_request, payload)

    def receive_stock(self, payload: schemas.StockReceiptCreate) -> str:
        return self._create("receive_stock", services.receive_stock, payload)

    def issue_stock(self, payload: schemas.StockIssueCreate) -> str:
        return self._create("issue_stock", services.issue_stock, payload)

    def scrap_stock(self, payload: schemas.StockScrapCreate) -> str:
        return self._create("scrap_stock", services.scrap_stock, payload)

    def reconcile(self, payload: schemas.ReconciliationCreate) -> str:
        return self._create("reconcile", services.reconcile, payload)

    def approve(self, order_id: str, actor_id: Optional[str] = None) -> models.OrderStatusEnum:
        now = self._clock()
        order = self._write(
            "approve",
            lambda db: _order_read(services.approve(db, order_id, actor_id=actor_id, now=now)),
        )
        self._order_committed(order, "approved", actor_id)
        return order.status

    def receive(
        self,
        order_id: str,
        line_deltas: List[schemas.ReceiveLineDelta],
        actor_id: Optional[str] = None,
        *,
        force_complete: bool = False,
        idempotency_key: Optional[str] = None,
    ) -> models.OrderStatusEnum:
        request = schemas.ReceiveRequest(
            lines=list(line_deltas),
            force_complete=force_complete,
            idempotency_key=idempotency_key,
        )
        now = self._clock()

        def body(db: Session) -> tuple[schemas.OrderRead, bool]:
            seen = services.get_order(db, order_id).receipt_keys or {}
            replayed = bool(idempotency_key) and idempotency_key.strip() in seen
            order = services.receive(db, order_id, request, actor_id=actor_id, now=now)
            return _order_read(order), replayed

        order, replayed = self._write("receive", body)
        if not replayed:
            self._order_committed(order, "received", actor_id)
        return order.status

    def cancel(self, order_id: str, actor_id: Optional[str] = None) -> models.OrderStatusEnum:
        now = self._clock()
        order = self._write(
            "cancel",
            lambda db: _order_read(services.cancel(db, order_id, actor_id=actor_id, now=now)),
        )
        self._order_committed(order, "cancelled", actor_id)
        return order.status

    def get_order(self, order_id: str) -> schemas.OrderRead:
        return self._read(lambda db: _order_read(services.get_order(db, order_id)))

    def get_order_by_code(self, code: str) -> schemas.OrderRead:
        return self._read(lambda db: _order_read(services.get_order_by_code(db, code)))

    def list_orders(
        self,
        *,
        kind: Optional[models.OrderKindEnum] = None,
        status: Optional[models.OrderStatusEnum] = None,
        limit: int = 200,
    ) -> List[schemas.OrderRead]:
        return self._read(
            lambda db: [_order_read(order) for order in services.list_orders(db, kind=kind, status=status, limit=limit)]
        )

    # -- transaction log --------------------------------------------------

    def list_movements(self, item_id: str, location_id: Optional[str] = None) -> List[schemas.Movement]:
        def body(db: Session) -> List[schemas.Movement]:
            services.get_item(db, item_id)
            return movements.list_for(db, item_id=item_id, location_id=location_id)

        return self._read(body)

    def item_history(self, item_id: str, location_id: Optional[str] = None) -> schemas.ItemHistory:
        return self._read(lambda db: movements.item_history(db, item_id=item_id, location_id=location_id))

    # -- audit & repair ---------------------------------------------------

    def scan_for_gaps(self) -> schemas.GapReport:
        return self._read(repair_ops.scan_for_gaps)

    def repair(self, report: schemas.GapReport, actor_id: Optional[str] = None) -> int:
        repaired = self._write("repair", lambda db: repair_ops.repair(db, report, actor_id=actor_id))
        if repaired:
            self._publish(
                "inventory.movements.repaired",
                entity_type="inventory.movement",
                entity_id=",".join(sorted({gap.code for gap in report.gaps})),
                action="repaired",
                actor_id=actor_id,
                metadata={"repaired": repaired},
            )
        return repaired

    def scan_negative_stock(self) -> schemas.NegativeStockReport:
        return self._read(ledger.scan_negative_balances)

    def normalize_negative_stock(self, actor_id: Optional[str] = None) -> List[str]:
        now = self._clock()
        fixed = self._write(
            "normalize_negative_stock",
            lambda db: ledger.normalize_negative_balances(db, now=now, actor_id=actor_id),
        )
        if fixed:
            self._publish(
                "inventory.stock.normalized",
                entity_type="inventory.item",
                entity_id=",".join(fixed),
                action="normalized",
                actor_id=actor_id,
                metadata={"items": len(fixed)},
            )
        return fixed
