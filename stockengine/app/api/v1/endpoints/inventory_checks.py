from __future__ import annotations

from decimal import Decimal

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from stockengine.app.api.deps import get_actor, get_db
from stockengine.app.schemas.inventory_check import InventoryCheckItemRead, InventoryCheckRead, check_to_read
from stockengine.services import reconciliation

router = APIRouter(prefix="/inventory-checks")


# ---------- Schemas ----------
class CheckCreate(BaseModel):
    blind_mode: bool = False
    notes: str | None = None


class CountIn(BaseModel):
    actual_quantity: Decimal = Field(ge=0)


class CompleteRequest(BaseModel):
    notes: str | None = None
    absolute: bool = False


# ---------- Endpoints ----------
@router.get("", response_model=list[InventoryCheckRead])
def list_checks(db: Session = Depends(get_db)):
    return [check_to_read(c) for c in reconciliation.list_checks(db)]


@router.post("", response_model=InventoryCheckRead)
def create_check(payload: CheckCreate, db: Session = Depends(get_db), actor: str = Depends(get_actor)):
    check = reconciliation.create(db, actor, blind_mode=payload.blind_mode, notes=payload.notes)
    return check_to_read(check)


@router.get("/active", response_model=InventoryCheckRead | None)
def get_active_check(db: Session = Depends(get_db)):
    check = reconciliation.get_active(db)
    return check_to_read(check) if check else None


@router.get("/{check_id}", response_model=InventoryCheckRead)
def get_check(check_id: int, db: Session = Depends(get_db)):
    return check_to_read(reconciliation.get_check(db, check_id))


@router.put("/{check_id}/items/{stock_item_id}", response_model=InventoryCheckItemRead)
def record_count(
    check_id: int,
    stock_item_id: int,
    payload: CountIn,
    db: Session = Depends(get_db),
    actor: str = Depends(get_actor),
):
    line = reconciliation.record_count(db, check_id, stock_item_id, payload.actual_quantity, actor)
    out = InventoryCheckItemRead.model_validate(line)
    if line.check.blind_mode:
        out.expected_quantity = None
    return out


@router.post("/{check_id}/review", response_model=InventoryCheckRead)
def enter_review(check_id: int, db: Session = Depends(get_db), actor: str = Depends(get_actor)):
    return check_to_read(reconciliation.enter_review(db, check_id, actor))


@router.post("/{check_id}/resume", response_model=InventoryCheckRead)
def resume_counting(check_id: int, db: Session = Depends(get_db), actor: str = Depends(get_actor)):
    return check_to_read(reconciliation.resume_counting(db, check_id, actor))


@router.post("/{check_id}/complete", response_model=InventoryCheckRead)
def complete_check(
    check_id: int,
    payload: CompleteRequest | None = None,
    db: Session = Depends(get_db),
    actor: str = Depends(get_actor),
):
    payload = payload or CompleteRequest()
    check = reconciliation.complete(db, check_id, actor, payload.notes, absolute=payload.absolute)
    return check_to_read(check)


@router.post("/{check_id}/cancel", response_model=InventoryCheckRead)
def cancel_check(check_id: int, db: Session = Depends(get_db), actor: str = Depends(get_actor)):
    return check_to_read(reconciliation.cancel(db, check_id, actor))
