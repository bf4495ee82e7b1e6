from __future__ import annotations

import logging
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from stockengine.app.db.models.core_types import ItemClass, MovementType
from stockengine.app.db.models.models_v1 import StockItem
from stockengine.app.db.session import SessionLocal
from stockengine.services import bom, ledger

logger = logging.getLogger(__name__)

SEED_ACTOR = "seed"

MATERIALS = [
    # sku, name, unit, initial qty
    ("MAT-WOOD", "Oak board", "m", Decimal("120")),
    ("MAT-SCREW", "Wood screw 4x40", "unit", Decimal("2000")),
    ("MAT-GLUE", "Wood glue", "l", Decimal("15")),
]

PRODUCTS = [
    # sku, name, threshold, initial qty, bom [(material sku, qty per unit)]
    ("FG-STOOL", "Oak stool", Decimal("5"), Decimal("10"), [("MAT-WOOD", "1.5"), ("MAT-SCREW", "12"), ("MAT-GLUE", "0.05")]),
    ("FG-SHELF", "Oak shelf", Decimal("2"), Decimal("4"), [("MAT-WOOD", "2.2"), ("MAT-SCREW", "16")]),
]


def _get_or_create_item(
    db: Session,
    sku: str,
    name: str,
    item_class: ItemClass,
    unit: str,
    initial: Decimal,
    threshold: Decimal | None = None,
) -> StockItem:
    item = db.scalar(select(StockItem).where(StockItem.sku == sku))
    if item:
        return item

    item = StockItem(
        sku=sku,
        name=name,
        item_class=item_class,
        unit=unit,
        low_stock_threshold=threshold,
        qty_on_hand=Decimal("0"),
        qty_reserved=Decimal("0"),
        active=True,
    )
    db.add(item)
    db.commit()
    db.refresh(item)

    if initial > 0:
        ledger.adjust(db, item.id, item_class, initial, "initial stock", SEED_ACTOR, movement_type=MovementType.initial)
    return item


def run_seed(db: Session) -> dict[str, int]:
    """Idempotent : rejouable sans doublon (articles par SKU, BOM seulement si absente)."""
    ids: dict[str, int] = {}
    for sku, name, unit, qty in MATERIALS:
        ids[sku] = _get_or_create_item(db, sku, name, ItemClass.raw_material, unit, qty).id

    for sku, name, threshold, qty, lines in PRODUCTS:
        product = _get_or_create_item(db, sku, name, ItemClass.finished_good, "unit", qty, threshold)
        ids[sku] = product.id
        if bom.current_version(db, product.id) is None:
            bom.set_bom(
                db,
                product.id,
                [{"material_id": ids[m], "quantity_per_unit": Decimal(q)} for m, q in lines],
                SEED_ACTOR,
            )

    logger.info("SEED OK: %s", ", ".join(sorted(ids)))
    return ids


def main() -> None:
    from stockengine.app.core.logging_config import setup_logging

    setup_logging()
    db = SessionLocal()
    try:
        run_seed(db)
    finally:
        db.close()


if __name__ == "__main__":
    main()
