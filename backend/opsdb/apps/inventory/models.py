from __future__ import annotations

import enum
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Enum as SAEnum,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)

from opsdb.database import Base
from opsdb.utils.identifiers import generate_uuid7


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class MovementTypeEnum(str, enum.Enum):
    IN = "IN"
    OUT = "OUT"
    TRANSFER_IN = "TRANSFER_IN"
    TRANSFER_OUT = "TRANSFER_OUT"
    ADJUSTMENT = "ADJUSTMENT"
    RETURN = "RETURN"
    DEPRECIATION = "DEPRECIATION"
    SCRAP = "SCRAP"
    AUDIT = "AUDIT"


class AdjustmentDirectionEnum(str, enum.Enum):
    INCREASE = "INCREASE"
    DECREASE = "DECREASE"


class OrderKindEnum(str, enum.Enum):
    SERVICE = "SERVICE"
    TRANSFER = "TRANSFER"
    MATERIAL_REQUEST = "MATERIAL_REQUEST"
    RECEIPT = "RECEIPT"
    ISSUE = "ISSUE"
    SCRAP = "SCRAP"
    RECONCILIATION = "RECONCILIATION"


class OrderStatusEnum(str, enum.Enum):
    DRAFT = "DRAFT"
    DISPATCHED = "DISPATCHED"
    PARTIAL_RETURN = "PARTIAL_RETURN"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


TERMINAL_STATUSES = frozenset({OrderStatusEnum.COMPLETED, OrderStatusEnum.CANCELLED})


class InventoryItem(Base):
    """
    Current stock state of one item across every location.

    `stock_by_location` is the source of truth; `stock` is re-derived from it
    on every write through the ledger and never adjusted on its own.
    """

    __tablename__ = "inventory_items"

    id = Column(String(64), primary_key=True, default=generate_uuid7)
    name_en = Column(String(255), nullable=False)
    name_ar = Column(String(255), nullable=True)
    category = Column(String(64), nullable=True)
    unit = Column(String(16), nullable=False, default="EA")
    stock_by_location = Column(JSON, nullable=False, default=dict)
    stock = Column(Integer, nullable=False, default=0)
    version = Column(Integer, nullable=False)
    created_at = Column(DateTime, nullable=False, default=_utcnow)
    updated_at = Column(DateTime, nullable=False, default=_utcnow, onupdate=_utcnow)

    __mapper_args__ = {"version_id_col": version}

    def quantity_at(self, location_id: str) -> int:
        return int((self.stock_by_location or {}).get(location_id, 0) or 0)

    def __repr__(self) -> str:
        return f"<InventoryItem id={self.id} stock={self.stock}>"


class InventoryOrder(Base):
    """
    Generic workflow document: service dispatch, transfer, material request,
    receipt/issue/scrap vouchers and count reconciliations.
    """

    __tablename__ = "inventory_orders"
    __table_args__ = (
        UniqueConstraint("code", name="uq_inventory_orders_code"),
        Index("ix_inventory_orders_kind_status", "kind", "status"),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid7)
    code = Column(String(32), nullable=False, index=True)
    kind = Column(
        SAEnum(OrderKindEnum, name="inventory_order_kind_enum", native_enum=False),
        nullable=False,
        index=True,
    )
    status = Column(
        SAEnum(OrderStatusEnum, name="inventory_order_status_enum", native_enum=False),
        nullable=False,
        default=OrderStatusEnum.DRAFT,
        index=True,
    )

    source_location_id = Column(String(64), nullable=True, index=True)
    destination_location_id = Column(String(64), nullable=True, index=True)
    destination = Column(JSON, nullable=True)
    transport_info = Column(JSON, nullable=True)
    # supplier / invoice / issued-to / scrap reason for voucher kinds
    document_info = Column(JSON, nullable=True)
    notes = Column(Text, nullable=True)

    # list of OrderLine dicts, see schemas.OrderLine
    lines = Column(JSON, nullable=False, default=list)
    # {idempotency_key: payload_hash} for applied receipts. Only a receipt that
    # moves at least one unit (or force-completes) is recorded and terminal orders
    # take no receipts, so the map never outgrows the order's total quantity + 1.
    receipt_keys = Column(JSON, nullable=False, default=dict)

    created_by_id = Column(String(64), nullable=True)
    dispatched_by_id = Column(String(64), nullable=True)
    approved_by_id = Column(String(64), nullable=True)
    received_by_id = Column(String(64), nullable=True)
    cancelled_by_id = Column(String(64), nullable=True)

    created_at = Column(DateTime, nullable=False, default=_utcnow)
    dispatched_at = Column(DateTime, nullable=True)
    approved_at = Column(DateTime, nullable=True)
    received_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)

    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    @property
    def effective_at(self) -> datetime:
        """When the order's stock effect happened (approval, else dispatch, else creation)."""
        return self.approved_at or self.dispatched_at or self.created_at

    def __repr__(self) -> str:
        return f"<InventoryOrder code={self.code} kind={self.kind} status={self.status}>"


class InventoryMovement(Base):
    """
    Append-only movement record. Rows are never updated; the repair engine
    may only insert missing counterparts.
    """

    __tablename__ = "inventory_movements"
    __table_args__ = (
        Index("ix_inventory_movements_item_time", "item_id", "occurred_at"),
        Index("ix_inventory_movements_item_location_time", "item_id", "location_id", "occurred_at"),
        Index("ix_inventory_movements_reference", "reference"),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid7)
    item_id = Column(String(64), nullable=False, index=True)
    location_id = Column(String(64), nullable=False, index=True)
    occurred_at = Column(DateTime, nullable=False, default=_utcnow)
    type = Column(
        SAEnum(MovementTypeEnum, name="inventory_movement_type_enum", native_enum=False),
        nullable=False,
        index=True,
    )
    quantity = Column(Integer, nullable=False)
    # signed stock effect at location_id
    delta = Column(Integer, nullable=False)
    reference = Column(String(64), nullable=True)
    related_location_id = Column(String(64), nullable=True)
    direction = Column(
        SAEnum(AdjustmentDirectionEnum, name="inventory_adjustment_direction_enum", native_enum=False),
        nullable=True,
    )
    reason = Column(String(255), nullable=True)
    item_name_en = Column(String(255), nullable=True)
    item_name_ar = Column(String(255), nullable=True)
    note = Column(Text, nullable=True)
    created_by_id = Column(String(64), nullable=True)
    created_at = Column(DateTime, nullable=False, default=_utcnow)

    def __repr__(self) -> str:
        return f"<InventoryMovement {self.type} item={self.item_id} loc={self.location_id} delta={self.delta}>"


class SequenceCounter(Base):
    __tablename__ = "sequence_counters"

    scope_key = Column(String(64), primary_key=True)
    entity_type = Column(String(32), nullable=False)
    year = Column(Integer, nullable=False)
    month = Column(Integer, nullable=False)
    value = Column(Integer, nullable=False, default=0)
    version = Column(Integer, nullable=False)
    updated_at = Column(DateTime, nullable=False, default=_utcnow, onupdate=_utcnow)

    __mapper_args__ = {"version_id_col": version}
