from __future__ import annotations

from decimal import Decimal

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from stockengine.app.api.deps import get_actor, get_db
from stockengine.app.db.models.core_types import ProductionStatus
from stockengine.app.schemas.production import ProductionOrderRead
from stockengine.services import production

router = APIRouter(prefix="/production-orders")


# ---------- Schemas ----------
class ProductionLineIn(BaseModel):
    product_id: int
    quantity: Decimal = Field(gt=0)


class ProductionOrderCreate(BaseModel):
    reference: str = Field(min_length=1, max_length=64)
    items: list[ProductionLineIn] = Field(min_length=1)
    related_sales_order_id: int | None = None


class OutputReport(BaseModel):
    quantity_produced: Decimal = Field(ge=0)


class PlannedQuantityUpdate(BaseModel):
    planned_quantity: Decimal = Field(gt=0)


# ---------- Endpoints ----------
@router.get("", response_model=list[ProductionOrderRead])
def list_production_orders(status: ProductionStatus | None = None, db: Session = Depends(get_db)):
    return production.list_production_orders(db, status=status)


@router.post("", response_model=ProductionOrderRead)
def create_production_order(
    payload: ProductionOrderCreate,
    db: Session = Depends(get_db),
    actor: str = Depends(get_actor),
):
    return production.create_production_order(
        db,
        payload.reference,
        [line.model_dump() for line in payload.items],
        actor,
        related_sales_order_id=payload.related_sales_order_id,
    )


@router.get("/{production_order_id}", response_model=ProductionOrderRead)
def get_production_order(production_order_id: int, db: Session = Depends(get_db)):
    return production.load_production_order(db, production_order_id)


@router.post("/{production_order_id}/items/{item_id}/output", response_model=ProductionOrderRead)
def report_output(
    production_order_id: int,
    item_id: int,
    payload: OutputReport,
    db: Session = Depends(get_db),
    actor: str = Depends(get_actor),
):
    return production.report_output(db, production_order_id, item_id, payload.quantity_produced, actor)


@router.patch("/{production_order_id}/items/{item_id}", response_model=ProductionOrderRead)
def update_planned_quantity(
    production_order_id: int,
    item_id: int,
    payload: PlannedQuantityUpdate,
    db: Session = Depends(get_db),
    actor: str = Depends(get_actor),
):
    return production.update_planned_quantity(db, production_order_id, item_id, payload.planned_quantity, actor)


@router.post("/{production_order_id}/cancel", response_model=ProductionOrderRead)
def cancel_production_order(
    production_order_id: int,
    db: Session = Depends(get_db),
    actor: str = Depends(get_actor),
):
    return production.cancel_production_order(db, production_order_id, actor)
