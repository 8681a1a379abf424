from __future__ import annotations

from typing import Any, Callable, List, Optional, TypeVar

from fastapi import APIRouter, Body, Depends, Header, HTTPException, Query, Request, status

from opsdb.errors import ConcurrencyConflict, ConfigurationError, LedgerError, NotFoundError, ValidationError

from . import models, schemas
from .engine import InventoryEngine

router = APIRouter(prefix="/inventory", tags=["inventory"])

T = TypeVar("T")

_STATUS_BY_ERROR = (
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (ConcurrencyConflict, status.HTTP_409_CONFLICT),
    (ConfigurationError, status.HTTP_503_SERVICE_UNAVAILABLE),
)


def get_engine(request: Request) -> InventoryEngine:
    return request.app.state.inventory_engine


def _call(fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    try:
        return fn(*args, **kwargs)
    except LedgerError as exc:
        for error_type, status_code in _STATUS_BY_ERROR:
            if isinstance(exc, error_type):
                raise HTTPException(status_code=status_code, detail=exc.to_dict()) from exc
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=exc.to_dict()) from exc


def _created(engine: InventoryEngine, create: Callable[[Any], str], payload: Any, actor_id: Optional[str]):
    if not payload.created_by_id and actor_id:
        payload.created_by_id = actor_id
    code = _call(create, payload)
    return _call(engine.get_order_by_code, code)


def _status_of(engine: InventoryEngine, order_id: str) -> schemas.OrderStatusRead:
    order = _call(engine.get_order, order_id)
    return schemas.OrderStatusRead(id=order.id, code=order.code, status=order.status)


# ---------------------------------------------------------------------------
# Items
# ---------------------------------------------------------------------------


@router.post("/items", response_model=schemas.ItemRead, status_code=status.HTTP_201_CREATED)
def create_item(payload: schemas.ItemCreate, engine: InventoryEngine = Depends(get_engine)):
    return _call(engine.create_item, payload)


@router.get("/items/{item_id}", response_model=schemas.ItemRead)
def get_item(item_id: str, engine: InventoryEngine = Depends(get_engine)):
    return _call(engine.get_item, item_id)


@router.get("/items/{item_id}/movements", response_model=List[schemas.Movement])
def list_movements(
    item_id: str,
    location_id: Optional[str] = None,
    engine: InventoryEngine = Depends(get_engine),
):
    return _call(engine.list_movements, item_id, location_id)


@router.get("/items/{item_id}/history", response_model=schemas.ItemHistory)
def item_history(
    item_id: str,
    location_id: Optional[str] = None,
    engine: InventoryEngine = Depends(get_engine),
):
    return _call(engine.item_history, item_id, location_id)


# ---------------------------------------------------------------------------
# Order creation
# ---------------------------------------------------------------------------


@router.post("/service-orders", response_model=schemas.OrderRead, status_code=status.HTTP_201_CREATED)
def create_service_order(
    payload: schemas.ServiceOrderCreate,
    engine: InventoryEngine = Depends(get_engine),
    actor_id: Optional[str] = Header(None, alias="X-Actor-Id"),
):
    if not payload.dispatched_by_id and actor_id:
        payload.dispatched_by_id = actor_id
    return _created(engine, engine.create_and_dispatch, payload, actor_id)


@router.post("/transfers", response_model=schemas.OrderRead, status_code=status.HTTP_201_CREATED)
def create_transfer(
    payload: schemas.TransferCreate,
    engine: InventoryEngine = Depends(get_engine),
    actor_id: Optional[str] = Header(None, alias="X-Actor-Id"),
):
    return _created(engine, engine.create_transfer, payload, actor_id)


@router.post("/material-requests", response_model=schemas.OrderRead, status_code=status.HTTP_201_CREATED)
def create_material_request(
    payload: schemas.MaterialRequestCreate,
    engine: InventoryEngine = Depends(get_engine),
    actor_id: Optional[str] = Header(None, alias="X-Actor-Id"),
):
    return _created(engine, engine.create_material_request, payload, actor_id)


@router.post("/receipts", response_model=schemas.OrderRead, status_code=status.HTTP_201_CREATED)
def receive_stock(
    payload: schemas.StockReceiptCreate,
    engine: InventoryEngine = Depends(get_engine),
    actor_id: Optional[str] = Header(None, alias="X-Actor-Id"),
):
    return _created(engine, engine.receive_stock, payload, actor_id)


@router.post("/issues", response_model=schemas.OrderRead, status_code=status.HTTP_201_CREATED)
def issue_stock(
    payload: schemas.StockIssueCreate,
    engine: InventoryEngine = Depends(get_engine),
    actor_id: Optional[str] = Header(None, alias="X-Actor-Id"),
):
    return _created(engine, engine.issue_stock, payload, actor_id)


@router.post("/scraps", response_model=schemas.OrderRead, status_code=status.HTTP_201_CREATED)
def scrap_stock(
    payload: schemas.StockScrapCreate,
    engine: InventoryEngine = Depends(get_engine),
    actor_id: Optional[str] = Header(None, alias="X-Actor-Id"),
):
    return _created(engine, engine.scrap_stock, payload, actor_id)


@router.post("/reconciliations", response_model=schemas.OrderRead, status_code=status.HTTP_201_CREATED)
def reconcile(
    payload: schemas.ReconciliationCreate,
    engine: InventoryEngine = Depends(get_engine),
    actor_id: Optional[str] = Header(None, alias="X-Actor-Id"),
):
    return _created(engine, engine.reconcile, payload, actor_id)


# ---------------------------------------------------------------------------
# Orders: reads and transitions
# ---------------------------------------------------------------------------


@router.get("/orders", response_model=List[schemas.OrderRead])
def list_orders(
    kind: Optional[models.OrderKindEnum] = None,
    status_filter: Optional[models.OrderStatusEnum] = Query(None, alias="status"),
    limit: int = Query(200, ge=1, le=1000),
    engine: InventoryEngine = Depends(get_engine),
):
    return _call(engine.list_orders, kind=kind, status=status_filter, limit=limit)


@router.get("/orders/by-code/{code}", response_model=schemas.OrderRead)
def get_order_by_code(code: str, engine: InventoryEngine = Depends(get_engine)):
    return _call(engine.get_order_by_code, code)


@router.get("/orders/{order_id}", response_model=schemas.OrderRead)
def get_order(order_id: str, engine: InventoryEngine = Depends(get_engine)):
    return _call(engine.get_order, order_id)


@router.post("/orders/{order_id}/approve", response_model=schemas.OrderStatusRead)
def approve_order(
    order_id: str,
    engine: InventoryEngine = Depends(get_engine),
    actor_id: Optional[str] = Header(None, alias="X-Actor-Id"),
):
    _call(engine.approve, order_id, actor_id)
    return _status_of(engine, order_id)


@router.post("/orders/{order_id}/receive", response_model=schemas.OrderStatusRead)
def receive_order(
    order_id: str,
    payload: schemas.ReceiveRequest,
    engine: InventoryEngine = Depends(get_engine),
    actor_id: Optional[str] = Header(None, alias="X-Actor-Id"),
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
):
    if not payload.idempotency_key and idempotency_key:
        payload.idempotency_key = idempotency_key
    _call(
        engine.receive,
        order_id,
        payload.lines,
        actor_id,
        force_complete=payload.force_complete,
        idempotency_key=payload.idempotency_key,
    )
    return _status_of(engine, order_id)


@router.post("/orders/{order_id}/cancel", response_model=schemas.OrderStatusRead)
def cancel_order(
    order_id: str,
    engine: InventoryEngine = Depends(get_engine),
    actor_id: Optional[str] = Header(None, alias="X-Actor-Id"),
):
    _call(engine.cancel, order_id, actor_id)
    return _status_of(engine, order_id)


# ---------------------------------------------------------------------------
# Audit & repair
# ---------------------------------------------------------------------------


@router.get("/audit/transfer-gaps", response_model=schemas.GapReport)
def scan_transfer_gaps(engine: InventoryEngine = Depends(get_engine)):
    return _call(engine.scan_for_gaps)


@router.post("/audit/transfer-gaps/repair", response_model=schemas.RepairResult)
def repair_transfer_gaps(
    report: Optional[schemas.GapReport] = Body(None),
    engine: InventoryEngine = Depends(get_engine),
    actor_id: Optional[str] = Header(None, alias="X-Actor-Id"),
):
    if report is None:
        report = _call(engine.scan_for_gaps)
    return schemas.RepairResult(repaired=_call(engine.repair, report, actor_id))


@router.get("/audit/negative-stock", response_model=schemas.NegativeStockReport)
def scan_negative_stock(engine: InventoryEngine = Depends(get_engine)):
    return _call(engine.scan_negative_stock)


@router.post("/audit/negative-stock/normalize")
def normalize_negative_stock(
    engine: InventoryEngine = Depends(get_engine),
    actor_id: Optional[str] = Header(None, alias="X-Actor-Id"),
):
    fixed = _call(engine.normalize_negative_stock, actor_id)
    return {"items": fixed, "count": len(fixed)}
