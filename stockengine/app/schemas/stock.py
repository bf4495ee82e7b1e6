from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel

from stockengine.app.db.models.core_types import ItemClass, MovementType


class StockItemRead(BaseModel):
    id: int
    sku: str
    name: str
    item_class: ItemClass
    unit: str
    location: str | None = None

    qty_on_hand: Decimal
    qty_reserved: Decimal
    qty_available: Decimal  # READ ONLY : on_hand - reserved
    low_stock_threshold: Decimal | None = None
    active: bool

    class Config:
        from_attributes = True


class StockMovementRead(BaseModel):
    id: int
    stock_item_id: int
    movement_type: MovementType
    delta: Decimal
    new_quantity: Decimal
    reason: str | None = None
    actor: str
    related_entity: str | None = None
    related_id: int | None = None
    idempotency_key: str | None = None
    happened_at: datetime

    class Config:
        from_attributes = True


class BomLineRead(BaseModel):
    position: int
    material_id: int
    quantity_per_unit: Decimal
    unit: str

    class Config:
        from_attributes = True


class BomVersionRead(BaseModel):
    id: int
    product_id: int
    version: int
    created_by: str
    created_at: datetime
    lines: list[BomLineRead]

    class Config:
        from_attributes = True
