"""stock engine initial schema

Revision ID: 3f9a1c7e5b20
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "3f9a1c7e5b20"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

QTY = sa.Numeric(18, 6)
PK = sa.BigInteger().with_variant(sa.Integer, "sqlite")

# les Enum SQLAlchemy stockent les NOMS des membres
ITEM_CLASS = sa.Enum("finished_good", "raw_material", name="item_class")
MOVEMENT_TYPE = sa.Enum(
    "initial",
    "receipt",
    "issue",
    "adjustment",
    "reserve",
    "unreserve",
    "order_assembly",
    "order_return",
    "production_consumption",
    "production_output",
    "reconciliation",
    name="movement_type",
)
ORDER_PRIORITY = sa.Enum("normal", "high", "urgent", name="order_priority")
SALES_ORDER_STATUS = sa.Enum(
    "new",
    "awaiting_production",
    "ready_to_assemble",
    "assembling",
    "assembled",
    "shipped",
    "delivered",
    "cancelled",
    name="sales_order_status",
)
PRODUCTION_STATUS = sa.Enum(
    "planned", "awaiting_materials", "in_progress", "completed", "cancelled", name="production_status"
)
CHECK_STATUS = sa.Enum("setup", "counting", "review", "completed", "cancelled", name="check_status")


def upgrade() -> None:
    op.create_table(
        "stock_items",
        sa.Column("id", PK, primary_key=True),
        sa.Column("sku", sa.String(64), nullable=False, unique=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("item_class", ITEM_CLASS, nullable=False, index=True),
        sa.Column("unit", sa.String(32), nullable=False),
        sa.Column("location", sa.String(128)),
        sa.Column("qty_on_hand", QTY, nullable=False),
        sa.Column("qty_reserved", QTY, nullable=False),
        sa.Column("low_stock_threshold", QTY),
        sa.Column("active", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("qty_on_hand >= 0", name="ck_stock_item_on_hand_nonneg"),
        sa.CheckConstraint("qty_reserved >= 0", name="ck_stock_item_reserved_nonneg"),
        sa.CheckConstraint("qty_reserved <= qty_on_hand", name="ck_stock_item_reserved_le_on_hand"),
    )

    op.create_table(
        "stock_movements",
        sa.Column("id", PK, primary_key=True),
        sa.Column(
            "stock_item_id",
            sa.BigInteger(),
            sa.ForeignKey("stock_items.id", ondelete="RESTRICT"),
            nullable=False,
            index=True,
        ),
        sa.Column("movement_type", MOVEMENT_TYPE, nullable=False),
        sa.Column("delta", QTY, nullable=False),
        sa.Column("new_quantity", QTY, nullable=False),
        sa.Column("reason", sa.String(255)),
        sa.Column("actor", sa.String(128), nullable=False),
        sa.Column("related_entity", sa.String(64)),
        sa.Column("related_id", sa.BigInteger()),
        sa.Column("idempotency_key", sa.String(64), unique=True),
        sa.Column("happened_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_stock_movements_item_time", "stock_movements", ["stock_item_id", "happened_at"])

    op.create_table(
        "bom_versions",
        sa.Column("id", PK, primary_key=True),
        sa.Column("product_id", sa.BigInteger(), sa.ForeignKey("stock_items.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("created_by", sa.String(128), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("product_id", "version", name="uq_bom_product_version"),
    )

    op.create_table(
        "bom_lines",
        sa.Column("id", PK, primary_key=True),
        sa.Column(
            "bom_version_id",
            sa.BigInteger(),
            sa.ForeignKey("bom_versions.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("material_id", sa.BigInteger(), sa.ForeignKey("stock_items.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("quantity_per_unit", QTY, nullable=False),
        sa.Column("unit", sa.String(32), nullable=False),
        sa.CheckConstraint("quantity_per_unit > 0", name="ck_bom_line_qty_pos"),
    )

    op.create_table(
        "sales_orders",
        sa.Column("id", PK, primary_key=True),
        sa.Column("reference", sa.String(64), nullable=False, unique=True),
        sa.Column("priority", ORDER_PRIORITY, nullable=False),
        sa.Column("status", SALES_ORDER_STATUS, nullable=False, index=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        "production_orders",
        sa.Column("id", PK, primary_key=True),
        sa.Column("reference", sa.String(64), nullable=False, unique=True),
        sa.Column("status", PRODUCTION_STATUS, nullable=False, index=True),
        sa.Column("related_sales_order_id", sa.BigInteger(), index=True),
        sa.Column("created_by", sa.String(128), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True)),
    )

    op.create_table(
        "sales_order_items",
        sa.Column("id", PK, primary_key=True),
        sa.Column(
            "order_id",
            sa.BigInteger(),
            sa.ForeignKey("sales_orders.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
        sa.Column(
            "product_id",
            sa.BigInteger(),
            sa.ForeignKey("stock_items.id", ondelete="RESTRICT"),
            nullable=False,
            index=True,
        ),
        sa.Column("quantity_requested", QTY, nullable=False),
        sa.Column("assembled_quantity", QTY, nullable=False),
        sa.Column("debited_quantity", QTY, nullable=False),
        sa.Column("production_order_id", sa.BigInteger(), sa.ForeignKey("production_orders.id", ondelete="SET NULL")),
        sa.Column("assembled_by", sa.String(128)),
        sa.Column("assembled_at", sa.DateTime(timezone=True)),
        sa.CheckConstraint("quantity_requested > 0", name="ck_so_item_qty_pos"),
        sa.CheckConstraint("assembled_quantity >= 0", name="ck_so_item_assembled_nonneg"),
        sa.CheckConstraint("assembled_quantity <= quantity_requested", name="ck_so_item_assembled_le_requested"),
        sa.CheckConstraint("debited_quantity >= 0", name="ck_so_item_debited_nonneg"),
        sa.CheckConstraint("debited_quantity <= assembled_quantity", name="ck_so_item_debited_le_assembled"),
    )

    op.create_table(
        "sales_order_history",
        sa.Column("id", PK, primary_key=True),
        sa.Column(
            "order_id",
            sa.BigInteger(),
            sa.ForeignKey("sales_orders.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("actor", sa.String(128), nullable=False),
        sa.Column("action", sa.String(64), nullable=False),
        sa.Column("detail", sa.Text()),
    )

    op.create_table(
        "production_order_items",
        sa.Column("id", PK, primary_key=True),
        sa.Column(
            "order_id",
            sa.BigInteger(),
            sa.ForeignKey("production_orders.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
        sa.Column("product_id", sa.BigInteger(), sa.ForeignKey("stock_items.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("planned_quantity", QTY, nullable=False),
        sa.Column("produced_quantity", QTY, nullable=False),
        sa.Column("bom_version_id", sa.BigInteger(), sa.ForeignKey("bom_versions.id", ondelete="SET NULL")),
        sa.Column("bom_snapshot", sa.JSON(), nullable=False),
        sa.CheckConstraint("planned_quantity > 0", name="ck_po_item_planned_pos"),
        sa.CheckConstraint("produced_quantity >= 0", name="ck_po_item_produced_nonneg"),
        sa.CheckConstraint("produced_quantity <= planned_quantity", name="ck_po_item_produced_le_planned"),
    )

    op.create_table(
        "inventory_checks",
        sa.Column("id", PK, primary_key=True),
        sa.Column("blind_mode", sa.Boolean(), nullable=False),
        sa.Column("status", CHECK_STATUS, nullable=False, index=True),
        sa.Column("notes", sa.Text()),
        sa.Column("created_by", sa.String(128), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("reviewed_at", sa.DateTime(timezone=True)),
        sa.Column("completed_at", sa.DateTime(timezone=True)),
    )

    op.create_table(
        "inventory_check_items",
        sa.Column(
            "check_id",
            sa.BigInteger(),
            sa.ForeignKey("inventory_checks.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column(
            "stock_item_id",
            sa.BigInteger(),
            sa.ForeignKey("stock_items.id", ondelete="RESTRICT"),
            primary_key=True,
        ),
        sa.Column("expected_quantity", QTY, nullable=False),
        sa.Column("actual_quantity", QTY),
        sa.Column("difference", QTY),
        sa.Column("counted_by", sa.String(128)),
        sa.Column("counted_at", sa.DateTime(timezone=True)),
        sa.CheckConstraint("actual_quantity IS NULL OR actual_quantity >= 0", name="ck_check_item_actual_nonneg"),
    )


def downgrade() -> None:
    op.drop_table("inventory_check_items")
    op.drop_table("inventory_checks")
    op.drop_table("production_order_items")
    op.drop_table("sales_order_history")
    op.drop_table("sales_order_items")
    op.drop_table("production_orders")
    op.drop_table("sales_orders")
    op.drop_table("bom_lines")
    op.drop_table("bom_versions")
    op.drop_index("ix_stock_movements_item_time", table_name="stock_movements")
    op.drop_table("stock_movements")
    op.drop_table("stock_items")

    bind = op.get_bind()
    for enum_type in (CHECK_STATUS, PRODUCTION_STATUS, SALES_ORDER_STATUS, ORDER_PRIORITY, MOVEMENT_TYPE, ITEM_CLASS):
        enum_type.drop(bind, checkfirst=True)
