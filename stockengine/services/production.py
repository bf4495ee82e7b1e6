"""
Ordres de production : nomenclature figée à la création, consommation des
matières au fil des déclarations de production.
"""

from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from stockengine.app.db.models.core_types import (
    ACTIVE_PRODUCTION_STATUSES,
    ItemClass,
    MovementType,
    ProductionStatus,
)
from stockengine.app.db.models.models_v1 import ProductionOrder, ProductionOrderItem, SalesOrderItem
from stockengine.services import bom, events, ledger, mrp
from stockengine.services.errors import (
    DuplicateReference,
    InsufficientStock,
    InvalidQuantity,
    InvalidStateTransition,
    NotFound,
)
from stockengine.services.locking import lock_manager, production_key, stock_key

logger = logging.getLogger(__name__)

# statuts où le stock matière décide entre PLANNED et AWAITING_MATERIALS
NOT_STARTED_STATUSES = {ProductionStatus.planned, ProductionStatus.awaiting_materials}


def load_production_order(db: Session, production_order_id: int, *, for_update: bool = False) -> ProductionOrder:
    stmt = select(ProductionOrder).where(ProductionOrder.id == production_order_id)
    if for_update:
        stmt = stmt.with_for_update()
    po = db.execute(stmt).scalar_one_or_none()
    if po is None:
        raise NotFound("Production order", production_order_id)
    return po


def _find_item(po: ProductionOrder, item_id: int) -> ProductionOrderItem:
    for item in po.items:
        if item.id == item_id:
            return item
    raise NotFound("Production order item", item_id)


def _require_active(po: ProductionOrder, action: str) -> None:
    if po.status not in ACTIVE_PRODUCTION_STATUSES:
        raise InvalidStateTransition("production order", po.status, action)


def _material_status(db: Session, po: ProductionOrder, actor: str) -> ProductionStatus:
    missing = mrp.material_shortage_for(db, po)
    if not missing:
        return ProductionStatus.planned
    if po.status == ProductionStatus.awaiting_materials:
        return po.status
    events.emit(
        db,
        "production.awaiting_materials",
        actor=actor,
        production_order_id=po.id,
        reference=po.reference,
        materials=[{"material_id": r.material_id, "deficit": str(r.deficit)} for r in missing],
    )
    return ProductionStatus.awaiting_materials


def list_production_orders(db: Session, *, status: ProductionStatus | None = None) -> list[ProductionOrder]:
    stmt = select(ProductionOrder).order_by(ProductionOrder.id.asc())
    if status is not None:
        stmt = stmt.where(ProductionOrder.status == status)
    return list(db.execute(stmt).scalars().all())


def build_production_order(
    db: Session,
    reference: str,
    items: list[dict],
    actor: str,
    related_sales_order_id: int | None = None,
) -> ProductionOrder:
    """Sans commit ; items: [{"product_id": int, "quantity": Decimal}]."""
    if not items:
        raise InvalidQuantity("A production order needs at least one item")
    if db.execute(select(ProductionOrder.id).where(ProductionOrder.reference == reference)).first():
        raise DuplicateReference("Production order", reference)

    po = ProductionOrder(
        reference=reference,
        status=ProductionStatus.planned,
        related_sales_order_id=related_sales_order_id,
        created_by=actor,
    )
    for raw in items:
        quantity = ledger.as_quantity(raw["quantity"])
        if quantity <= 0:
            raise InvalidQuantity("planned quantity must be > 0")
        version_id, lines = bom.snapshot(db, int(raw["product_id"]))
        po.items.append(
            ProductionOrderItem(
                product_id=int(raw["product_id"]),
                planned_quantity=quantity,
                produced_quantity=Decimal("0"),
                bom_version_id=version_id,
                bom_snapshot=lines,
            )
        )
    db.add(po)
    db.flush()

    po.status = _material_status(db, po, actor)
    events.emit(
        db,
        "production.created",
        actor=actor,
        production_order_id=po.id,
        reference=po.reference,
        status=po.status.value,
        related_sales_order_id=related_sales_order_id,
    )
    return po


def create_production_order(
    db: Session,
    reference: str,
    items: list[dict],
    actor: str,
    related_sales_order_id: int | None = None,
) -> ProductionOrder:
    try:
        po = build_production_order(db, reference, items, actor, related_sales_order_id)
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(po)
    logger.info("Production order %s created (%s)", po.reference, po.status.value)
    return po


def _maybe_complete(po: ProductionOrder) -> bool:
    if all(item.produced_quantity >= item.planned_quantity for item in po.items):
        po.status = ProductionStatus.completed
        po.completed_at = datetime.utcnow()
        return True
    return False


def update_planned_quantity(
    db: Session,
    production_order_id: int,
    item_id: int,
    planned_quantity,
    actor: str,
) -> ProductionOrder:
    planned_quantity = ledger.as_quantity(planned_quantity)
    with lock_manager.hold([production_key(production_order_id)]):
        try:
            po = load_production_order(db, production_order_id, for_update=True)
            _require_active(po, "change planned quantity of")
            item = _find_item(po, item_id)
            if planned_quantity <= 0:
                raise InvalidQuantity("planned quantity must be > 0")
            if planned_quantity < item.produced_quantity:
                raise InvalidQuantity(
                    f"planned quantity {planned_quantity} is below produced quantity {item.produced_quantity}"
                )
            item.planned_quantity = planned_quantity
            db.flush()

            if not _maybe_complete(po) and po.status in NOT_STARTED_STATUSES:
                po.status = _material_status(db, po, actor)
            db.commit()
        except Exception:
            db.rollback()
            raise
    db.refresh(po)
    return po


def report_output(
    db: Session,
    production_order_id: int,
    item_id: int,
    quantity_produced,
    actor: str,
) -> ProductionOrder:
    """
    Déclare la quantité produite (cumulée) d'une ligne.

    Seul l'écart avec la déclaration précédente est consommé : matières
    débitées selon le snapshot BOM, produit fini crédité. Tout ou rien.
    """
    quantity_produced = ledger.as_quantity(quantity_produced)

    with lock_manager.hold([production_key(production_order_id)]):
        po = load_production_order(db, production_order_id, for_update=True)
        _require_active(po, "report output on")
        item = _find_item(po, item_id)

        if quantity_produced < 0 or quantity_produced > item.planned_quantity:
            raise InvalidQuantity(
                f"quantity_produced must be between 0 and {item.planned_quantity} (got {quantity_produced})"
            )
        if quantity_produced < item.produced_quantity:
            raise InvalidQuantity(
                f"quantity_produced cannot decrease (already {item.produced_quantity})"
            )

        delta = quantity_produced - item.produced_quantity
        if delta == 0:
            return po

        needs = mrp.explode(item.bom_snapshot, delta)
        keys = [stock_key(mid) for mid in needs] + [stock_key(item.product_id)]

        with lock_manager.hold(keys):
            try:
                materials = {
                    mid: ledger.load_item(db, mid, ItemClass.raw_material, for_update=True)
                    for mid in sorted(needs)
                }
                product = ledger.load_item(db, item.product_id, ItemClass.finished_good, for_update=True)

                # pré-contrôle complet avant le premier débit
                for mid, need in sorted(needs.items()):
                    if materials[mid].qty_available < need:
                        logger.warning(
                            "Output rejected on %s: material %s needs %s, has %s",
                            po.reference,
                            mid,
                            need,
                            materials[mid].qty_available,
                        )
                        raise InsufficientStock(mid, need, materials[mid].qty_available)

                related = {"related_entity": "production_order", "related_id": po.id}
                reason = f"production {po.reference}"
                for mid, need in sorted(needs.items()):
                    ledger.apply_delta(
                        db,
                        materials[mid],
                        -need,
                        movement_type=MovementType.production_consumption,
                        reason=reason,
                        actor=actor,
                        **related,
                    )
                ledger.apply_delta(
                    db,
                    product,
                    delta,
                    movement_type=MovementType.production_output,
                    reason=reason,
                    actor=actor,
                    **related,
                )

                item.produced_quantity = quantity_produced
                if po.status in NOT_STARTED_STATUSES:
                    po.status = ProductionStatus.in_progress
                completed = _maybe_complete(po)

                events.emit(
                    db,
                    "production.output",
                    actor=actor,
                    production_order_id=po.id,
                    item_id=item.id,
                    delta=str(delta),
                    produced_quantity=str(quantity_produced),
                    completed=completed,
                )
                db.commit()
            except Exception:
                db.rollback()
                raise

    logger.info("Output on %s item %s: +%s (status=%s)", po.reference, item_id, delta, po.status.value)
    db.refresh(po)
    return po


def cancel_production_order(db: Session, production_order_id: int, actor: str) -> ProductionOrder:
    with lock_manager.hold([production_key(production_order_id)]):
        try:
            po = load_production_order(db, production_order_id, for_update=True)
            _require_active(po, "cancel")
            po.status = ProductionStatus.cancelled

            tagged = db.execute(
                select(SalesOrderItem).where(SalesOrderItem.production_order_id == po.id)
            ).scalars().all()
            for line in tagged:
                line.production_order_id = None

            events.emit(db, "production.cancelled", actor=actor, production_order_id=po.id, reference=po.reference)
            db.commit()
        except Exception:
            db.rollback()
            raise
    logger.info("Production order %s cancelled", po.reference)
    db.refresh(po)
    return po


def recheck_materials(db: Session, actor: str) -> list[ProductionOrder]:
    """Repasse PLANNED <-> AWAITING_MATERIALS les ordres non démarrés ; retourne ceux qui ont changé."""
    changed: list[ProductionOrder] = []
    orders = db.execute(
        select(ProductionOrder)
        .where(ProductionOrder.status.in_(NOT_STARTED_STATUSES))
        .order_by(ProductionOrder.id.asc())
    ).scalars().all()
    try:
        for po in orders:
            status = _material_status(db, po, actor)
            if status != po.status:
                po.status = status
                changed.append(po)
        db.commit()
    except Exception:
        db.rollback()
        raise
    return changed
