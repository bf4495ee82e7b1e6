from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from stockengine.app.db.base import Base
from stockengine.app.db.models.core_types import (
    CheckStatus,
    ItemClass,
    MovementType,
    OrderPriority,
    ProductionStatus,
    SalesOrderStatus,
)

QTY = Numeric(18, 6)


# ---------- STOCK LEDGER ----------
class StockItem(Base):
    __tablename__ = "stock_items"
    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True)
    sku: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    item_class: Mapped[ItemClass] = mapped_column(Enum(ItemClass, name="item_class"), nullable=False, index=True)
    unit: Mapped[str] = mapped_column(String(32), default="unit", nullable=False)
    location: Mapped[str | None] = mapped_column(String(128))

    qty_on_hand: Mapped[Decimal] = mapped_column(QTY, default=Decimal("0"), nullable=False)
    qty_reserved: Mapped[Decimal] = mapped_column(QTY, default=Decimal("0"), nullable=False)
    low_stock_threshold: Mapped[Decimal | None] = mapped_column(QTY)

    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        nullable=False,
    )

    movements: Mapped[list["StockMovement"]] = relationship(
        order_by="StockMovement.id",
        viewonly=True,
    )
    bom_versions: Mapped[list["BomVersion"]] = relationship(
        order_by="BomVersion.version",
        viewonly=True,
    )

    __table_args__ = (
        CheckConstraint("qty_on_hand >= 0", name="ck_stock_item_on_hand_nonneg"),
        CheckConstraint("qty_reserved >= 0", name="ck_stock_item_reserved_nonneg"),
        CheckConstraint("qty_reserved <= qty_on_hand", name="ck_stock_item_reserved_le_on_hand"),
    )

    @property
    def qty_available(self) -> Decimal:
        return (self.qty_on_hand or Decimal("0")) - (self.qty_reserved or Decimal("0"))

    @property
    def bom(self) -> list["BomLine"]:
        if not self.bom_versions:
            return []
        return list(self.bom_versions[-1].lines)

    def __repr__(self):
        return f"<StockItem {self.sku} {self.item_class.value} = {self.qty_on_hand}>"


class StockMovement(Base):
    __tablename__ = "stock_movements"
    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True)

    stock_item_id: Mapped[int] = mapped_column(
        ForeignKey("stock_items.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    movement_type: Mapped[MovementType] = mapped_column(Enum(MovementType, name="movement_type"), nullable=False)
    delta: Mapped[Decimal] = mapped_column(QTY, nullable=False)
    new_quantity: Mapped[Decimal] = mapped_column(QTY, nullable=False)
    reason: Mapped[str | None] = mapped_column(String(255))
    actor: Mapped[str] = mapped_column(String(128), nullable=False)

    related_entity: Mapped[str | None] = mapped_column(String(64))
    related_id: Mapped[int | None] = mapped_column(BigInteger)

    idempotency_key: Mapped[str | None] = mapped_column(String(64), unique=True)
    happened_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)

    stock_item: Mapped[StockItem] = relationship()

    __table_args__ = (Index("ix_stock_movements_item_time", "stock_item_id", "happened_at"),)


# ---------- BILL OF MATERIALS ----------
class BomVersion(Base):
    __tablename__ = "bom_versions"
    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True)
    product_id: Mapped[int] = mapped_column(ForeignKey("stock_items.id", ondelete="RESTRICT"), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_by: Mapped[str] = mapped_column(String(128), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)

    product: Mapped[StockItem] = relationship()
    lines: Mapped[list["BomLine"]] = relationship(
        back_populates="bom_version",
        cascade="all, delete-orphan",
        order_by="BomLine.position",
    )

    __table_args__ = (UniqueConstraint("product_id", "version", name="uq_bom_product_version"),)


class BomLine(Base):
    __tablename__ = "bom_lines"
    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True)
    bom_version_id: Mapped[int] = mapped_column(
        ForeignKey("bom_versions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    material_id: Mapped[int] = mapped_column(ForeignKey("stock_items.id", ondelete="RESTRICT"), nullable=False)
    quantity_per_unit: Mapped[Decimal] = mapped_column(QTY, nullable=False)
    unit: Mapped[str] = mapped_column(String(32), nullable=False)

    bom_version: Mapped[BomVersion] = relationship(back_populates="lines")

    __table_args__ = (CheckConstraint("quantity_per_unit > 0", name="ck_bom_line_qty_pos"),)


# ---------- SALES ORDERS ----------
class SalesOrder(Base):
    __tablename__ = "sales_orders"
    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True)
    reference: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    priority: Mapped[OrderPriority] = mapped_column(
        Enum(OrderPriority, name="order_priority"),
        default=OrderPriority.normal,
        nullable=False,
    )
    status: Mapped[SalesOrderStatus] = mapped_column(
        Enum(SalesOrderStatus, name="sales_order_status"),
        default=SalesOrderStatus.new,
        nullable=False,
        index=True,
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        nullable=False,
    )

    items: Mapped[list["SalesOrderItem"]] = relationship(
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="SalesOrderItem.id",
    )
    history: Mapped[list["SalesOrderHistory"]] = relationship(
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="SalesOrderHistory.id",
    )


class SalesOrderItem(Base):
    __tablename__ = "sales_order_items"
    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("sales_orders.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id: Mapped[int] = mapped_column(ForeignKey("stock_items.id", ondelete="RESTRICT"), nullable=False, index=True)

    quantity_requested: Mapped[Decimal] = mapped_column(QTY, nullable=False)
    assembled_quantity: Mapped[Decimal] = mapped_column(QTY, default=Decimal("0"), nullable=False)
    debited_quantity: Mapped[Decimal] = mapped_column(QTY, default=Decimal("0"), nullable=False)

    production_order_id: Mapped[int | None] = mapped_column(ForeignKey("production_orders.id", ondelete="SET NULL"))
    assembled_by: Mapped[str | None] = mapped_column(String(128))
    assembled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    order: Mapped[SalesOrder] = relationship(back_populates="items")
    product: Mapped[StockItem] = relationship()

    __table_args__ = (
        CheckConstraint("quantity_requested > 0", name="ck_so_item_qty_pos"),
        CheckConstraint("assembled_quantity >= 0", name="ck_so_item_assembled_nonneg"),
        CheckConstraint("assembled_quantity <= quantity_requested", name="ck_so_item_assembled_le_requested"),
        CheckConstraint("debited_quantity >= 0", name="ck_so_item_debited_nonneg"),
        CheckConstraint("debited_quantity <= assembled_quantity", name="ck_so_item_debited_le_assembled"),
    )

    @property
    def is_assembled(self) -> bool:
        return self.assembled_quantity >= self.quantity_requested

    @property
    def unclaimed_quantity(self) -> Decimal:
        return self.quantity_requested - self.assembled_quantity

    @property
    def undebited_quantity(self) -> Decimal:
        return self.assembled_quantity - self.debited_quantity


class SalesOrderHistory(Base):
    __tablename__ = "sales_order_history"
    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("sales_orders.id", ondelete="CASCADE"), nullable=False, index=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)
    actor: Mapped[str] = mapped_column(String(128), nullable=False)
    action: Mapped[str] = mapped_column(String(64), nullable=False)
    detail: Mapped[str | None] = mapped_column(Text)

    order: Mapped[SalesOrder] = relationship(back_populates="history")


# ---------- PRODUCTION ----------
class ProductionOrder(Base):
    __tablename__ = "production_orders"
    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True)
    reference: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    status: Mapped[ProductionStatus] = mapped_column(
        Enum(ProductionStatus, name="production_status"),
        default=ProductionStatus.planned,
        nullable=False,
        index=True,
    )
    related_sales_order_id: Mapped[int | None] = mapped_column(BigInteger, index=True)
    created_by: Mapped[str] = mapped_column(String(128), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        nullable=False,
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    items: Mapped[list["ProductionOrderItem"]] = relationship(
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="ProductionOrderItem.id",
    )


class ProductionOrderItem(Base):
    __tablename__ = "production_order_items"
    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True)
    order_id: Mapped[int] = mapped_column(
        ForeignKey("production_orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    product_id: Mapped[int] = mapped_column(ForeignKey("stock_items.id", ondelete="RESTRICT"), nullable=False)
    planned_quantity: Mapped[Decimal] = mapped_column(QTY, nullable=False)
    produced_quantity: Mapped[Decimal] = mapped_column(QTY, default=Decimal("0"), nullable=False)

    # copied at creation, never re-resolved
    bom_version_id: Mapped[int | None] = mapped_column(ForeignKey("bom_versions.id", ondelete="SET NULL"))
    bom_snapshot: Mapped[list] = mapped_column(JSON, default=list, nullable=False)

    order: Mapped[ProductionOrder] = relationship(back_populates="items")

    __table_args__ = (
        CheckConstraint("planned_quantity > 0", name="ck_po_item_planned_pos"),
        CheckConstraint("produced_quantity >= 0", name="ck_po_item_produced_nonneg"),
        CheckConstraint("produced_quantity <= planned_quantity", name="ck_po_item_produced_le_planned"),
    )

    @property
    def remaining_quantity(self) -> Decimal:
        return self.planned_quantity - self.produced_quantity


# ---------- INVENTORY CHECKS ----------
class InventoryCheck(Base):
    __tablename__ = "inventory_checks"
    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True)
    blind_mode: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    status: Mapped[CheckStatus] = mapped_column(
        Enum(CheckStatus, name="check_status"),
        default=CheckStatus.setup,
        nullable=False,
        index=True,
    )
    notes: Mapped[str | None] = mapped_column(Text)
    created_by: Mapped[str] = mapped_column(String(128), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    items: Mapped[list["InventoryCheckItem"]] = relationship(
        back_populates="check",
        cascade="all, delete-orphan",
        order_by="InventoryCheckItem.stock_item_id",
    )


class InventoryCheckItem(Base):
    __tablename__ = "inventory_check_items"
    check_id: Mapped[int] = mapped_column(ForeignKey("inventory_checks.id", ondelete="CASCADE"), primary_key=True)
    stock_item_id: Mapped[int] = mapped_column(ForeignKey("stock_items.id", ondelete="RESTRICT"), primary_key=True)

    expected_quantity: Mapped[Decimal] = mapped_column(QTY, nullable=False)
    actual_quantity: Mapped[Decimal | None] = mapped_column(QTY)
    difference: Mapped[Decimal | None] = mapped_column(QTY)
    counted_by: Mapped[str | None] = mapped_column(String(128))
    counted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    check: Mapped[InventoryCheck] = relationship(back_populates="items")
    stock_item: Mapped[StockItem] = relationship()

    __table_args__ = (CheckConstraint("actual_quantity IS NULL OR actual_quantity >= 0", name="ck_check_item_actual_nonneg"),)
