from __future__ import annotations

from decimal import Decimal

from fastapi import APIRouter, Depends, Header
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from stockengine.app.api.deps import get_actor, get_db
from stockengine.app.schemas.production import MaterialRequirementRead
from stockengine.services import procurement

router = APIRouter(prefix="/purchasing")


class ReceiptCreate(BaseModel):
    stock_item_id: int
    quantity: Decimal = Field(gt=0)


@router.get("/requirements", response_model=list[MaterialRequirementRead])
def purchase_requirements(db: Session = Depends(get_db)):
    return procurement.purchase_request_lines(db)


@router.post("/receipts")
def receive_goods(
    payload: ReceiptCreate,
    db: Session = Depends(get_db),
    actor: str = Depends(get_actor),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    new_quantity = procurement.receive_goods(
        db,
        payload.stock_item_id,
        payload.quantity,
        actor,
        idempotency_key=idempotency_key.strip() if idempotency_key and idempotency_key.strip() else None,
    )
    return {"stock_item_id": payload.stock_item_id, "qty_on_hand": str(new_quantity)}
