from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter

from . import models


# ---------------------------------------------------------------------------
# Items
# ---------------------------------------------------------------------------


class ItemCreate(BaseModel):
    id: Optional[str] = None
    name_en: str
    name_ar: Optional[str] = None
    category: Optional[str] = None
    unit: str = "EA"


class ItemRead(ItemCreate):
    id: str
    stock_by_location: Dict[str, int] = Field(default_factory=dict)
    stock: int
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


# ---------------------------------------------------------------------------
# Movements (tagged by `type`)
# ---------------------------------------------------------------------------


class MovementBase(BaseModel):
    id: Optional[str] = None
    item_id: str
    location_id: str
    occurred_at: datetime
    quantity: int = Field(..., gt=0)
    reference: Optional[str] = None
    item_name_en: Optional[str] = None
    item_name_ar: Optional[str] = None
    note: Optional[str] = None
    created_by_id: Optional[str] = None


class StockIn(MovementBase):
    type: Literal["IN"] = "IN"


class StockOut(MovementBase):
    type: Literal["OUT"] = "OUT"


class TransferIn(MovementBase):
    type: Literal["TRANSFER_IN"] = "TRANSFER_IN"
    related_location_id: str


class TransferOut(MovementBase):
    type: Literal["TRANSFER_OUT"] = "TRANSFER_OUT"
    related_location_id: str


class Adjustment(MovementBase):
    type: Literal["ADJUSTMENT"] = "ADJUSTMENT"
    direction: models.AdjustmentDirectionEnum
    reason: Optional[str] = None


class Return(MovementBase):
    type: Literal["RETURN"] = "RETURN"


class Depreciation(MovementBase):
    """Write-off of units that already left the location (no stock effect)."""

    type: Literal["DEPRECIATION"] = "DEPRECIATION"
    reason: Optional[str] = None


class Scrap(MovementBase):
    type: Literal["SCRAP"] = "SCRAP"
    reason: str


class AuditCount(MovementBase):
    type: Literal["AUDIT"] = "AUDIT"
    direction: models.AdjustmentDirectionEnum


Movement = Annotated[
    Union[StockIn, StockOut, TransferIn, TransferOut, Adjustment, Return, Depreciation, Scrap, AuditCount],
    Field(discriminator="type"),
]

MOVEMENT_ADAPTER: TypeAdapter = TypeAdapter(Movement)


class BalanceEntry(BaseModel):
    movement: Movement
    balance: int


class ItemHistory(BaseModel):
    item_id: str
    location_id: Optional[str] = None
    current_balance: int
    starting_balance: int
    entries: List[BalanceEntry] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Orders
# ---------------------------------------------------------------------------


class OrderLine(BaseModel):
    item_id: str
    name_en: Optional[str] = None
    name_ar: Optional[str] = None
    sent: int = 0
    returned: int = 0
    scrapped: int = 0
    requested: int = 0
    received: int = 0
    expected: Optional[int] = None
    counted: Optional[int] = None


class OrderLineCreate(BaseModel):
    item_id: str
    name_en: Optional[str] = None
    name_ar: Optional[str] = None
    quantity: int = Field(..., ge=0)


class DestinationInfo(BaseModel):
    type: Literal["InternalMaintenance", "ExternalWorkshop", "Vendor"]
    name: str
    contact: Optional[str] = None


class TransportInfo(BaseModel):
    driver_name: Optional[str] = None
    vehicle_plate: Optional[str] = None
    notes: Optional[str] = None


class ServiceOrderCreate(BaseModel):
    source_location_id: str
    destination: DestinationInfo
    lines: List[OrderLineCreate] = Field(default_factory=list)
    created_by_id: Optional[str] = None
    dispatched_by_id: Optional[str] = None
    transport_info: Optional[TransportInfo] = None
    notes: Optional[str] = None


class TransferCreate(BaseModel):
    source_location_id: str
    destination_location_id: str
    lines: List[OrderLineCreate] = Field(default_factory=list)
    created_by_id: Optional[str] = None
    notes: Optional[str] = None


class MaterialRequestCreate(BaseModel):
    destination_location_id: str
    lines: List[OrderLineCreate] = Field(default_factory=list)
    created_by_id: Optional[str] = None
    notes: Optional[str] = None


class StockReceiptCreate(BaseModel):
    destination_location_id: str
    lines: List[OrderLineCreate] = Field(default_factory=list)
    supplier_name: Optional[str] = None
    invoice_no: Optional[str] = None
    created_by_id: Optional[str] = None
    notes: Optional[str] = None


class StockIssueCreate(BaseModel):
    source_location_id: str
    lines: List[OrderLineCreate] = Field(default_factory=list)
    issued_to: Optional[str] = None
    created_by_id: Optional[str] = None
    notes: Optional[str] = None


class StockScrapCreate(BaseModel):
    source_location_id: str
    lines: List[OrderLineCreate] = Field(default_factory=list)
    reason: str
    created_by_id: Optional[str] = None
    notes: Optional[str] = None


class CountLine(BaseModel):
    item_id: str
    counted: int = Field(..., ge=0)


class ReconciliationCreate(BaseModel):
    location_id: str
    counts: List[CountLine] = Field(default_factory=list)
    created_by_id: Optional[str] = None
    notes: Optional[str] = None


class ReceiveLineDelta(BaseModel):
    item_id: str
    add_returned: int = Field(0, ge=0)
    add_scrapped: int = Field(0, ge=0)
    add_received: int = Field(0, ge=0)


class ReceiveRequest(BaseModel):
    lines: List[ReceiveLineDelta] = Field(default_factory=list)
    force_complete: bool = False
    idempotency_key: Optional[str] = None


class OrderRead(BaseModel):
    id: str
    code: str
    kind: models.OrderKindEnum
    status: models.OrderStatusEnum
    source_location_id: Optional[str] = None
    destination_location_id: Optional[str] = None
    destination: Optional[DestinationInfo] = None
    transport_info: Optional[TransportInfo] = None
    document_info: Optional[Dict[str, Any]] = None
    notes: Optional[str] = None
    lines: List[OrderLine] = Field(default_factory=list)
    created_by_id: Optional[str] = None
    dispatched_by_id: Optional[str] = None
    approved_by_id: Optional[str] = None
    received_by_id: Optional[str] = None
    cancelled_by_id: Optional[str] = None
    created_at: datetime
    dispatched_at: Optional[datetime] = None
    approved_at: Optional[datetime] = None
    received_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class OrderStatusRead(BaseModel):
    id: str
    code: str
    status: models.OrderStatusEnum


# ---------------------------------------------------------------------------
# Audit & repair
# ---------------------------------------------------------------------------


class TransferGap(BaseModel):
    order_id: str
    code: str
    item_id: str
    item_name_en: Optional[str] = None
    item_name_ar: Optional[str] = None
    source_location_id: str
    destination_location_id: str
    quantity: int
    effective_at: datetime
    missing_out: int = 0
    missing_in: int = 0

    @property
    def missing_records(self) -> int:
        return int(self.missing_out > 0) + int(self.missing_in > 0)


class GapReport(BaseModel):
    scanned_orders: int = 0
    gaps: List[TransferGap] = Field(default_factory=list)

    @property
    def missing_records(self) -> int:
        return sum(gap.missing_records for gap in self.gaps)


class RepairResult(BaseModel):
    repaired: int


class NegativeStockEntry(BaseModel):
    item_id: str
    location_id: str
    quantity: int


class NegativeStockReport(BaseModel):
    items: int = 0
    entries: List[NegativeStockEntry] = Field(default_factory=list)
