from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel

from stockengine.app.db.models.core_types import ProductionStatus


class ProductionOrderItemRead(BaseModel):
    id: int
    product_id: int
    planned_quantity: Decimal
    produced_quantity: Decimal
    remaining_quantity: Decimal
    bom_version_id: int | None = None
    bom_snapshot: list[dict]  # figé à la création

    class Config:
        from_attributes = True


class ProductionOrderRead(BaseModel):
    id: int
    reference: str
    status: ProductionStatus
    related_sales_order_id: int | None = None
    created_by: str
    created_at: datetime
    completed_at: datetime | None = None
    items: list[ProductionOrderItemRead]

    class Config:
        from_attributes = True


class MaterialRequirementRead(BaseModel):
    material_id: int
    sku: str | None = None
    unit: str | None = None
    total_required: Decimal
    in_stock: Decimal
    deficit: Decimal
    contributing_orders: list[int]

    class Config:
        from_attributes = True
