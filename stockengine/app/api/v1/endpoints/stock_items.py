from __future__ import annotations

from decimal import Decimal

from fastapi import APIRouter, Depends, Header, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.orm import Session

from stockengine.app.api.deps import get_actor, get_db
from stockengine.app.db.models.core_types import ItemClass, MovementType
from stockengine.app.db.models.models_v1 import StockItem
from stockengine.app.schemas.stock import BomVersionRead, StockItemRead, StockMovementRead
from stockengine.services import bom, ledger

router = APIRouter(prefix="/stock-items")


# ---------- Schemas ----------
class StockItemCreate(BaseModel):
    sku: str = Field(min_length=1, max_length=64)
    name: str = Field(min_length=1, max_length=255)
    item_class: ItemClass
    unit: str = Field(default="unit", min_length=1, max_length=32)
    location: str | None = Field(default=None, max_length=128)
    low_stock_threshold: Decimal | None = Field(default=None, ge=0)
    initial_quantity: Decimal = Field(default=Decimal("0"), ge=0)


class AdjustRequest(BaseModel):
    delta: Decimal
    reason: str | None = None


class QuantityRequest(BaseModel):
    quantity: Decimal = Field(gt=0)
    reason: str | None = None


class SetQuantityRequest(BaseModel):
    quantity: Decimal = Field(ge=0)
    reason: str | None = None


class BomLineIn(BaseModel):
    material_id: int
    quantity_per_unit: Decimal = Field(gt=0)
    unit: str | None = None


class BomSet(BaseModel):
    lines: list[BomLineIn] = Field(min_length=1)


# ---------- Helpers ----------
def _get_item_or_404(db: Session, item_id: int) -> StockItem:
    item = db.get(StockItem, item_id)
    if not item:
        raise HTTPException(status_code=404, detail="Stock item not found")
    return item


# ---------- Endpoints ----------
@router.get("", response_model=list[StockItemRead])
def list_stock_items(
    item_class: ItemClass | None = None,
    active: bool | None = None,
    db: Session = Depends(get_db),
):
    stmt = select(StockItem).order_by(StockItem.sku)
    if item_class is not None:
        stmt = stmt.where(StockItem.item_class == item_class)
    if active is not None:
        stmt = stmt.where(StockItem.active.is_(active))
    return db.execute(stmt).scalars().all()


@router.post("", response_model=StockItemRead)
def create_stock_item(
    payload: StockItemCreate,
    db: Session = Depends(get_db),
    actor: str = Depends(get_actor),
):
    exists = db.execute(select(StockItem).where(StockItem.sku == payload.sku)).scalar_one_or_none()
    if exists:
        raise HTTPException(status_code=409, detail="SKU already exists")

    item = StockItem(
        sku=payload.sku,
        name=payload.name,
        item_class=payload.item_class,
        unit=payload.unit,
        location=payload.location,
        low_stock_threshold=payload.low_stock_threshold,
        qty_on_hand=Decimal("0"),
        qty_reserved=Decimal("0"),
        active=True,
    )
    db.add(item)
    db.commit()
    db.refresh(item)

    # le stock initial passe par le ledger pour avoir son mouvement
    if payload.initial_quantity > 0:
        ledger.adjust(
            db,
            item.id,
            payload.item_class,
            payload.initial_quantity,
            "initial stock",
            actor,
            movement_type=MovementType.initial,
        )
        db.refresh(item)
    return item


@router.get("/{item_id}", response_model=StockItemRead)
def get_stock_item(item_id: int, db: Session = Depends(get_db)):
    return _get_item_or_404(db, item_id)


@router.get("/{item_id}/movements", response_model=list[StockMovementRead])
def list_movements(item_id: int, limit: int | None = None, db: Session = Depends(get_db)):
    return ledger.history(db, item_id, limit=limit)


@router.post("/{item_id}/adjust")
def adjust_stock(
    item_id: int,
    payload: AdjustRequest,
    db: Session = Depends(get_db),
    actor: str = Depends(get_actor),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    item = _get_item_or_404(db, item_id)
    new_quantity = ledger.adjust(
        db,
        item_id,
        item.item_class,
        payload.delta,
        payload.reason,
        actor,
        idempotency_key=idempotency_key.strip() if idempotency_key and idempotency_key.strip() else None,
    )
    return {"stock_item_id": item_id, "qty_on_hand": str(new_quantity)}


@router.put("/{item_id}/quantity")
def set_stock_quantity(
    item_id: int,
    payload: SetQuantityRequest,
    db: Session = Depends(get_db),
    actor: str = Depends(get_actor),
):
    item = _get_item_or_404(db, item_id)
    new_quantity = ledger.set_quantity(db, item_id, item.item_class, payload.quantity, payload.reason, actor)
    return {"stock_item_id": item_id, "qty_on_hand": str(new_quantity)}


# reserve / release / issue : retournent la quantité disponible
@router.post("/{item_id}/reserve")
def reserve_stock(
    item_id: int,
    payload: QuantityRequest,
    db: Session = Depends(get_db),
    actor: str = Depends(get_actor),
):
    _get_item_or_404(db, item_id)
    left = ledger.reserve(db, item_id, payload.quantity, actor, reason=payload.reason)
    return {"stock_item_id": item_id, "qty_available": str(left)}


@router.post("/{item_id}/release")
def release_stock(
    item_id: int,
    payload: QuantityRequest,
    db: Session = Depends(get_db),
    actor: str = Depends(get_actor),
):
    _get_item_or_404(db, item_id)
    left = ledger.release(db, item_id, payload.quantity, actor, reason=payload.reason)
    return {"stock_item_id": item_id, "qty_available": str(left)}


@router.post("/{item_id}/issue")
def issue_reserved_stock(
    item_id: int,
    payload: QuantityRequest,
    db: Session = Depends(get_db),
    actor: str = Depends(get_actor),
):
    _get_item_or_404(db, item_id)
    left = ledger.issue_reserved(
        db, item_id, payload.quantity, actor, reason=payload.reason, movement_type=MovementType.issue
    )
    return {"stock_item_id": item_id, "qty_available": str(left)}

@router.get("/{item_id}/bom", response_model=BomVersionRead)
def get_bom(item_id: int, db: Session = Depends(get_db)):
    _get_item_or_404(db, item_id)
    version = bom.current_version(db, item_id)
    if version is None:
        raise HTTPException(status_code=404, detail="No BOM for this product")
    return version


@router.put("/{item_id}/bom", response_model=BomVersionRead)
def set_bom(
    item_id: int,
    payload: BomSet,
    db: Session = Depends(get_db),
    actor: str = Depends(get_actor),
):
    return bom.set_bom(db, item_id, [line.model_dump() for line in payload.lines], actor)
