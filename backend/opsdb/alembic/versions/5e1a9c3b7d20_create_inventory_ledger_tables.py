"""Create stock ledger tables.

Revision ID: 5e1a9c3b7d20
Revises:
Create Date: 2025-08-04 09:00:00.000000
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect


# revision identifiers, used by Alembic.
revision = "5e1a9c3b7d20"
down_revision = None
branch_labels = None
depends_on = None

MOVEMENT_TYPES = (
    "IN",
    "OUT",
    "TRANSFER_IN",
    "TRANSFER_OUT",
    "ADJUSTMENT",
    "RETURN",
    "DEPRECIATION",
    "SCRAP",
    "AUDIT",
)
ORDER_KINDS = ("SERVICE", "TRANSFER", "MATERIAL_REQUEST", "RECEIPT", "ISSUE", "SCRAP", "RECONCILIATION")
ORDER_STATUSES = ("DRAFT", "DISPATCHED", "PARTIAL_RETURN", "COMPLETED", "CANCELLED")


def _table_exists(table_name: str) -> bool:
    bind = op.get_bind()
    insp = inspect(bind)
    return bool(insp.has_table(table_name))


def _index_exists(table_name: str, index_name: str) -> bool:
    bind = op.get_bind()
    insp = inspect(bind)
    if not insp.has_table(table_name):
        return False
    idxs = insp.get_indexes(table_name)
    return any(i.get("name") == index_name for i in idxs)


def _string_enum(name: str, values) -> sa.Enum:
    # stored as VARCHAR + CHECK, matching native_enum=False on the models
    return sa.Enum(*values, name=name, native_enum=False)


def upgrade() -> None:
    if not _table_exists("inventory_items"):
        op.create_table(
            "inventory_items",
            sa.Column("id", sa.String(length=64), primary_key=True),
            sa.Column("name_en", sa.String(length=255), nullable=False),
            sa.Column("name_ar", sa.String(length=255), nullable=True),
            sa.Column("category", sa.String(length=64), nullable=True),
            sa.Column("unit", sa.String(length=16), nullable=False, server_default="EA"),
            sa.Column("stock_by_location", sa.JSON(), nullable=False),
            sa.Column("stock", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("version", sa.Integer(), nullable=False),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
        )

    if not _table_exists("inventory_orders"):
        op.create_table(
            "inventory_orders",
            sa.Column("id", sa.String(length=36), primary_key=True),
            sa.Column("code", sa.String(length=32), nullable=False),
            sa.Column("kind", _string_enum("inventory_order_kind_enum", ORDER_KINDS), nullable=False),
            sa.Column("status", _string_enum("inventory_order_status_enum", ORDER_STATUSES), nullable=False),
            sa.Column("source_location_id", sa.String(length=64), nullable=True),
            sa.Column("destination_location_id", sa.String(length=64), nullable=True),
            sa.Column("destination", sa.JSON(), nullable=True),
            sa.Column("transport_info", sa.JSON(), nullable=True),
            sa.Column("document_info", sa.JSON(), nullable=True),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.Column("lines", sa.JSON(), nullable=False),
            sa.Column("receipt_keys", sa.JSON(), nullable=False),
            sa.Column("created_by_id", sa.String(length=64), nullable=True),
            sa.Column("dispatched_by_id", sa.String(length=64), nullable=True),
            sa.Column("approved_by_id", sa.String(length=64), nullable=True),
            sa.Column("received_by_id", sa.String(length=64), nullable=True),
            sa.Column("cancelled_by_id", sa.String(length=64), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("dispatched_at", sa.DateTime(), nullable=True),
            sa.Column("approved_at", sa.DateTime(), nullable=True),
            sa.Column("received_at", sa.DateTime(), nullable=True),
            sa.Column("completed_at", sa.DateTime(), nullable=True),
            sa.Column("cancelled_at", sa.DateTime(), nullable=True),
            sa.Column("version", sa.Integer(), nullable=False),
            sa.UniqueConstraint("code", name="uq_inventory_orders_code"),
        )
    for name, columns in (
        ("ix_inventory_orders_code", ["code"]),
        ("ix_inventory_orders_kind", ["kind"]),
        ("ix_inventory_orders_status", ["status"]),
        ("ix_inventory_orders_kind_status", ["kind", "status"]),
        ("ix_inventory_orders_source_location_id", ["source_location_id"]),
        ("ix_inventory_orders_destination_location_id", ["destination_location_id"]),
    ):
        if not _index_exists("inventory_orders", name):
            op.create_index(name, "inventory_orders", columns)

    if not _table_exists("inventory_movements"):
        op.create_table(
            "inventory_movements",
            sa.Column("id", sa.String(length=36), primary_key=True),
            sa.Column("item_id", sa.String(length=64), nullable=False),
            sa.Column("location_id", sa.String(length=64), nullable=False),
            sa.Column("occurred_at", sa.DateTime(), nullable=False),
            sa.Column("type", _string_enum("inventory_movement_type_enum", MOVEMENT_TYPES), nullable=False),
            sa.Column("quantity", sa.Integer(), nullable=False),
            sa.Column("delta", sa.Integer(), nullable=False),
            sa.Column("reference", sa.String(length=64), nullable=True),
            sa.Column("related_location_id", sa.String(length=64), nullable=True),
            sa.Column(
                "direction",
                _string_enum("inventory_adjustment_direction_enum", ("INCREASE", "DECREASE")),
                nullable=True,
            ),
            sa.Column("reason", sa.String(length=255), nullable=True),
            sa.Column("item_name_en", sa.String(length=255), nullable=True),
            sa.Column("item_name_ar", sa.String(length=255), nullable=True),
            sa.Column("note", sa.Text(), nullable=True),
            sa.Column("created_by_id", sa.String(length=64), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
        )
    for name, columns in (
        ("ix_inventory_movements_item_id", ["item_id"]),
        ("ix_inventory_movements_location_id", ["location_id"]),
        ("ix_inventory_movements_type", ["type"]),
        ("ix_inventory_movements_item_time", ["item_id", "occurred_at"]),
        ("ix_inventory_movements_item_location_time", ["item_id", "location_id", "occurred_at"]),
        ("ix_inventory_movements_reference", ["reference"]),
    ):
        if not _index_exists("inventory_movements", name):
            op.create_index(name, "inventory_movements", columns)

    if not _table_exists("sequence_counters"):
        op.create_table(
            "sequence_counters",
            sa.Column("scope_key", sa.String(length=64), primary_key=True),
            sa.Column("entity_type", sa.String(length=32), nullable=False),
            sa.Column("year", sa.Integer(), nullable=False),
            sa.Column("month", sa.Integer(), nullable=False),
            sa.Column("value", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("version", sa.Integer(), nullable=False),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
        )


def downgrade() -> None:
    # Guarded drops (safe if partially applied)
    if _table_exists("sequence_counters"):
        op.drop_table("sequence_counters")

    for name in (
        "ix_inventory_movements_reference",
        "ix_inventory_movements_item_location_time",
        "ix_inventory_movements_item_time",
        "ix_inventory_movements_type",
        "ix_inventory_movements_location_id",
        "ix_inventory_movements_item_id",
    ):
        if _index_exists("inventory_movements", name):
            op.drop_index(name, table_name="inventory_movements")
    if _table_exists("inventory_movements"):
        op.drop_table("inventory_movements")

    for name in (
        "ix_inventory_orders_destination_location_id",
        "ix_inventory_orders_source_location_id",
        "ix_inventory_orders_kind_status",
        "ix_inventory_orders_status",
        "ix_inventory_orders_kind",
        "ix_inventory_orders_code",
    ):
        if _index_exists("inventory_orders", name):
            op.drop_index(name, table_name="inventory_orders")
    if _table_exists("inventory_orders"):
        op.drop_table("inventory_orders")

    if _table_exists("inventory_items"):
        op.drop_table("inventory_items")
