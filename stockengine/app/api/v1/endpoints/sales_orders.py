from __future__ import annotations

from decimal import Decimal

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from stockengine.app.api.deps import get_actor, get_db
from stockengine.app.db.models.core_types import OrderPriority, SalesOrderStatus
from stockengine.app.schemas.orders import OrderShortageRead, SalesOrderItemRead, SalesOrderRead, SeizureResultRead
from stockengine.app.schemas.production import ProductionOrderRead
from stockengine.services import fulfillment, seizure

router = APIRouter(prefix="/sales-orders")


# ---------- Schemas ----------
class OrderLineIn(BaseModel):
    product_id: int
    quantity: Decimal = Field(gt=0)


class SalesOrderCreate(BaseModel):
    reference: str = Field(min_length=1, max_length=64)
    priority: OrderPriority = OrderPriority.normal
    items: list[OrderLineIn] = Field(min_length=1)


class CancelRequest(BaseModel):
    reason: str | None = None


# ---------- Endpoints ----------
@router.get("", response_model=list[SalesOrderRead])
def list_sales_orders(status: SalesOrderStatus | None = None, db: Session = Depends(get_db)):
    return fulfillment.list_orders(db, status=status)


@router.post("", response_model=SalesOrderRead)
def create_sales_order(
    payload: SalesOrderCreate,
    db: Session = Depends(get_db),
    actor: str = Depends(get_actor),
):
    return fulfillment.create_order(
        db,
        payload.reference,
        payload.priority,
        [line.model_dump() for line in payload.items],
        actor,
    )


@router.get("/{order_id}", response_model=SalesOrderRead)
def get_sales_order(order_id: int, db: Session = Depends(get_db)):
    return fulfillment.get_order(db, order_id)


@router.get("/{order_id}/shortage", response_model=OrderShortageRead)
def get_shortage(order_id: int, db: Session = Depends(get_db)):
    return fulfillment.get_shortage(db, order_id)


@router.post("/{order_id}/items", response_model=SalesOrderItemRead)
def add_item(
    order_id: int,
    payload: OrderLineIn,
    db: Session = Depends(get_db),
    actor: str = Depends(get_actor),
):
    return fulfillment.add_item(db, order_id, payload.product_id, payload.quantity, actor)


@router.delete("/{order_id}/items/{item_id}", response_model=SalesOrderRead)
def remove_item(
    order_id: int,
    item_id: int,
    db: Session = Depends(get_db),
    actor: str = Depends(get_actor),
):
    return fulfillment.remove_item(db, order_id, item_id, actor)


@router.post("/{order_id}/items/{item_id}/assemble", response_model=SalesOrderRead)
def assemble_item(
    order_id: int,
    item_id: int,
    db: Session = Depends(get_db),
    actor: str = Depends(get_actor),
):
    return fulfillment.assemble_item(db, order_id, item_id, actor)


@router.post("/{order_id}/assemble", response_model=SalesOrderRead)
def assemble_order(order_id: int, db: Session = Depends(get_db), actor: str = Depends(get_actor)):
    return fulfillment.assemble_order(db, order_id, actor)


@router.post("/{order_id}/evaluate", response_model=SalesOrderRead)
def evaluate_readiness(order_id: int, db: Session = Depends(get_db), actor: str = Depends(get_actor)):
    return fulfillment.evaluate_readiness(db, order_id, actor)


@router.post("/{order_id}/seize", response_model=SeizureResultRead)
def seize_stock(order_id: int, db: Session = Depends(get_db), actor: str = Depends(get_actor)):
    return seizure.seize(db, order_id, actor)


@router.post("/{order_id}/ship", response_model=SalesOrderRead)
def ship_order(order_id: int, db: Session = Depends(get_db), actor: str = Depends(get_actor)):
    return fulfillment.ship_order(db, order_id, actor)


@router.post("/{order_id}/deliver", response_model=SalesOrderRead)
def deliver_order(order_id: int, db: Session = Depends(get_db), actor: str = Depends(get_actor)):
    return fulfillment.deliver_order(db, order_id, actor)


@router.post("/{order_id}/cancel", response_model=SalesOrderRead)
def cancel_order(
    order_id: int,
    payload: CancelRequest | None = None,
    db: Session = Depends(get_db),
    actor: str = Depends(get_actor),
):
    return fulfillment.cancel_order(db, order_id, actor, reason=payload.reason if payload else None)


@router.post("/{order_id}/production-order", response_model=ProductionOrderRead)
def create_production_order(order_id: int, db: Session = Depends(get_db), actor: str = Depends(get_actor)):
    return fulfillment.create_production_order_for_sales_order(db, order_id, actor)
