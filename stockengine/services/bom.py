from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from stockengine.app.db.models.core_types import ItemClass
from stockengine.app.db.models.models_v1 import BomLine, BomVersion, StockItem
from stockengine.services.errors import InvalidQuantity, UnknownMaterial, UnknownProduct
from stockengine.services.ledger import as_quantity

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BomComponent:
    material_id: int
    quantity_per_unit: Decimal
    unit: str

    def as_snapshot(self) -> dict:
        return {
            "material_id": self.material_id,
            "quantity_per_unit": str(self.quantity_per_unit),
            "unit": self.unit,
        }


def _require_product(db: Session, product_id: int) -> StockItem:
    product = db.get(StockItem, product_id)
    if product is None or product.item_class != ItemClass.finished_good:
        raise UnknownProduct(product_id)
    return product


def current_version(db: Session, product_id: int) -> BomVersion | None:
    return (
        db.execute(
            select(BomVersion)
            .where(BomVersion.product_id == product_id)
            .order_by(BomVersion.version.desc())
        )
        .scalars()
        .first()
    )


def resolve(db: Session, product_id: int) -> list[BomComponent]:
    _require_product(db, product_id)
    version = current_version(db, product_id)
    if version is None or not version.lines:
        raise UnknownProduct(product_id)
    return [
        BomComponent(
            material_id=int(line.material_id),
            quantity_per_unit=line.quantity_per_unit,
            unit=line.unit,
        )
        for line in version.lines
    ]


def snapshot(db: Session, product_id: int) -> tuple[int, list[dict]]:
    """Copie JSON de la nomenclature courante, figée dans l'ordre de fabrication."""
    version = current_version(db, product_id)
    components = resolve(db, product_id)
    return int(version.id), [c.as_snapshot() for c in components]


def set_bom(db: Session, product_id: int, lines: list[dict], actor: str) -> BomVersion:
    """
    Crée une nouvelle version ; les versions existantes (et les snapshots
    des ordres de production) ne sont jamais modifiées.

    lines: [{"material_id": int, "quantity_per_unit": Decimal, "unit": str | None}]
    """
    _require_product(db, product_id)
    if not lines:
        raise InvalidQuantity("A BOM needs at least one line")

    seen: set[int] = set()
    validated: list[tuple[int, Decimal, str]] = []
    for raw in lines:
        material_id = int(raw["material_id"])
        material = db.get(StockItem, material_id)
        if material is None or material.item_class != ItemClass.raw_material:
            raise UnknownMaterial(material_id)
        if material_id in seen:
            raise InvalidQuantity(f"Material {material_id} appears twice in the BOM")
        seen.add(material_id)

        qty = as_quantity(raw["quantity_per_unit"])
        if qty <= 0:
            raise InvalidQuantity(f"quantity_per_unit must be > 0 (material {material_id})")
        validated.append((material_id, qty, raw.get("unit") or material.unit))

    last = db.execute(
        select(func.coalesce(func.max(BomVersion.version), 0)).where(BomVersion.product_id == product_id)
    ).scalar_one()

    try:
        version = BomVersion(product_id=product_id, version=int(last) + 1, created_by=actor)
        for position, (material_id, qty, unit) in enumerate(validated, start=1):
            version.lines.append(
                BomLine(position=position, material_id=material_id, quantity_per_unit=qty, unit=unit)
            )
        db.add(version)
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(version)
    logger.info("BOM v%s saved for product %s (%d lines)", version.version, product_id, len(validated))
    return version
