"""
MRP : besoins matières des ordres de production actifs.

Lecture seule, déterministe ; peut être appelé aussi souvent que nécessaire.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from stockengine.app.db.models.core_types import ACTIVE_PRODUCTION_STATUSES
from stockengine.app.db.models.models_v1 import ProductionOrder, StockItem

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


@dataclass(frozen=True)
class MaterialRequirement:
    material_id: int
    sku: str | None
    unit: str | None
    total_required: Decimal
    in_stock: Decimal
    deficit: Decimal
    contributing_orders: tuple[int, ...]


def explode(bom_snapshot: list[dict], remaining: Decimal) -> dict[int, Decimal]:
    needs: dict[int, Decimal] = defaultdict(lambda: ZERO)
    if remaining <= 0:
        return needs
    for line in bom_snapshot:
        needs[int(line["material_id"])] += Decimal(str(line["quantity_per_unit"])) * remaining
    return needs


def _active_orders(db: Session) -> list[ProductionOrder]:
    return list(
        db.execute(
            select(ProductionOrder)
            .options(selectinload(ProductionOrder.items))
            .where(ProductionOrder.status.in_(ACTIVE_PRODUCTION_STATUSES))
            .order_by(ProductionOrder.id.asc())
        )
        .scalars()
        .all()
    )


def _requirements_for(db: Session, orders: list[ProductionOrder]) -> list[MaterialRequirement]:
    totals: dict[int, Decimal] = defaultdict(lambda: ZERO)
    contributors: dict[int, set[int]] = defaultdict(set)

    for order in orders:
        for item in order.items:
            for material_id, qty in explode(item.bom_snapshot, item.remaining_quantity).items():
                totals[material_id] += qty
                contributors[material_id].add(int(order.id))

    if not totals:
        return []

    stock_rows = db.execute(
        select(StockItem.id, StockItem.sku, StockItem.unit, StockItem.qty_on_hand).where(
            StockItem.id.in_(list(totals))
        )
    ).all()
    stock = {int(row.id): row for row in stock_rows}

    out: list[MaterialRequirement] = []
    for material_id, total in totals.items():
        row = stock.get(material_id)
        # matière supprimée / inconnue : stock 0
        in_stock = row.qty_on_hand if row is not None else ZERO
        out.append(
            MaterialRequirement(
                material_id=material_id,
                sku=row.sku if row is not None else None,
                unit=row.unit if row is not None else None,
                total_required=total,
                in_stock=in_stock,
                deficit=max(ZERO, total - in_stock),
                contributing_orders=tuple(sorted(contributors[material_id])),
            )
        )

    out.sort(key=lambda r: (-r.deficit, r.material_id))
    return out


def compute_requirements(db: Session) -> list[MaterialRequirement]:
    requirements = _requirements_for(db, _active_orders(db))
    logger.debug("MRP: %d material(s), %d in deficit", len(requirements), sum(1 for r in requirements if r.deficit > 0))
    return requirements


def material_shortage_for(db: Session, production_order: ProductionOrder) -> list[MaterialRequirement]:
    """Matières dont le stock ne couvre pas le reste à produire de cet ordre seul."""
    return [r for r in _requirements_for(db, [production_order]) if r.deficit > 0]
