from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel

from stockengine.app.db.models.core_types import OrderPriority, SalesOrderStatus


class SalesOrderItemRead(BaseModel):
    id: int
    product_id: int
    quantity_requested: Decimal
    assembled_quantity: Decimal
    debited_quantity: Decimal
    is_assembled: bool
    production_order_id: int | None = None
    assembled_by: str | None = None
    assembled_at: datetime | None = None

    class Config:
        from_attributes = True


class SalesOrderHistoryRead(BaseModel):
    timestamp: datetime
    actor: str
    action: str
    detail: str | None = None

    class Config:
        from_attributes = True


class SalesOrderRead(BaseModel):
    id: int
    reference: str
    priority: OrderPriority
    status: SalesOrderStatus
    created_at: datetime
    updated_at: datetime
    items: list[SalesOrderItemRead]
    history: list[SalesOrderHistoryRead]

    class Config:
        from_attributes = True


class ItemShortageRead(BaseModel):
    item_id: int
    product_id: int
    quantity_requested: Decimal
    assembled_quantity: Decimal
    available: Decimal
    shortage: Decimal
    production_order_id: int | None = None

    class Config:
        from_attributes = True


class OrderShortageRead(BaseModel):
    order_id: int
    status: SalesOrderStatus
    items: list[ItemShortageRead]
    total_shortage: Decimal
    blocking_shortage: Decimal

    class Config:
        from_attributes = True


class ReclaimStepRead(BaseModel):
    donor_order_id: int
    donor_item_id: int
    target_item_id: int
    product_id: int
    quantity: Decimal

    class Config:
        from_attributes = True


class SeizureResultRead(BaseModel):
    order_id: int
    steps: list[ReclaimStepRead]
    total_reclaimed: Decimal
    remaining_shortage: Decimal
    donor_order_ids: list[int]

    class Config:
        from_attributes = True
