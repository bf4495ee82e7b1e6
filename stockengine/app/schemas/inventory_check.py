from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel

from stockengine.app.db.models.core_types import CheckStatus
from stockengine.app.db.models.models_v1 import InventoryCheck

# statuts pendant lesquels un inventaire aveugle masque les quantités attendues
BLIND_STATUSES = {CheckStatus.setup, CheckStatus.counting}


class InventoryCheckItemRead(BaseModel):
    stock_item_id: int
    expected_quantity: Decimal | None = None
    actual_quantity: Decimal | None = None
    difference: Decimal | None = None
    counted_by: str | None = None
    counted_at: datetime | None = None

    class Config:
        from_attributes = True


class InventoryCheckRead(BaseModel):
    id: int
    blind_mode: bool
    status: CheckStatus
    notes: str | None = None
    created_by: str
    created_at: datetime
    reviewed_at: datetime | None = None
    completed_at: datetime | None = None
    items: list[InventoryCheckItemRead]

    class Config:
        from_attributes = True


def check_to_read(check: InventoryCheck) -> InventoryCheckRead:
    out = InventoryCheckRead.model_validate(check)
    if check.blind_mode and check.status in BLIND_STATUSES:
        out.items = [item.model_copy(update={"expected_quantity": None}) for item in out.items]
    return out
