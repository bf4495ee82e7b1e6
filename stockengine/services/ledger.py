"""
Stock ledger : seule source de vérité des quantités.

Deux niveaux :
- fonctions publiques (adjust, set_quantity, reserve, release, issue_reserved) :
  prennent le verrou de l'article, valident, écrivent, commit ;
- fonctions apply_* : ni verrou ni commit, pour les opérations multi-articles
  (production, assemblage, inventaire) qui tiennent déjà tous les verrous et
  committent une seule fois.
"""

from __future__ import annotations

import logging
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from stockengine.app.db.models.core_types import ItemClass, MovementType
from stockengine.app.db.models.models_v1 import StockItem, StockMovement
from stockengine.services import events
from stockengine.services.errors import (
    InsufficientStock,
    InvalidQuantity,
    NotFound,
    UnknownMaterial,
    UnknownProduct,
)
from stockengine.services.locking import lock_manager, stock_key

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


def as_quantity(value) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def _unknown(item_id: int, item_class: ItemClass | None) -> Exception:
    if item_class == ItemClass.finished_good:
        return UnknownProduct(item_id)
    if item_class == ItemClass.raw_material:
        return UnknownMaterial(item_id)
    return NotFound("Stock item", item_id)


def load_item(
    db: Session,
    item_id: int,
    item_class: ItemClass | None = None,
    *,
    for_update: bool = False,
) -> StockItem:
    # populate_existing écraserait les modifications non flushées
    db.flush()
    stmt = select(StockItem).where(StockItem.id == item_id)
    if for_update:
        stmt = stmt.with_for_update()
    item = db.execute(stmt.execution_options(populate_existing=True)).scalar_one_or_none()
    if item is None or (item_class is not None and item.item_class != item_class):
        raise _unknown(item_id, item_class)
    return item


def find_movement(db: Session, idempotency_key: str) -> StockMovement | None:
    return db.execute(
        select(StockMovement).where(StockMovement.idempotency_key == idempotency_key)
    ).scalar_one_or_none()


# ---------- apply_* (caller holds the locks and commits) ----------
def apply_delta(
    db: Session,
    item: StockItem,
    delta: Decimal,
    *,
    movement_type: MovementType,
    reason: str | None,
    actor: str,
    reserved_delta: Decimal = ZERO,
    related_entity: str | None = None,
    related_id: int | None = None,
    idempotency_key: str | None = None,
) -> StockMovement:
    """
    Applique delta sur qty_on_hand (et reserved_delta sur qty_reserved).

    Rien n'est modifié si le résultat violerait on_hand >= reserved >= 0.
    """
    delta = as_quantity(delta)
    reserved_delta = as_quantity(reserved_delta)

    new_on_hand = item.qty_on_hand + delta
    new_reserved = item.qty_reserved + reserved_delta

    if new_reserved < 0:
        logger.warning("Rejected %s on %s: reserved would be %s", movement_type.value, item.sku, new_reserved)
        raise InsufficientStock(item.id, -reserved_delta, item.qty_reserved)
    if new_on_hand < new_reserved:
        available = item.qty_on_hand - item.qty_reserved
        requested = -delta if delta < 0 else reserved_delta
        logger.warning(
            "Rejected %s on %s: on_hand=%s reserved=%s delta=%s reserved_delta=%s",
            movement_type.value,
            item.sku,
            item.qty_on_hand,
            item.qty_reserved,
            delta,
            reserved_delta,
        )
        raise InsufficientStock(item.id, requested, available)

    previous = item.qty_on_hand
    item.qty_on_hand = new_on_hand
    item.qty_reserved = new_reserved

    # RESERVE / UNRESERVE : delta et new_quantity portent sur la réservation
    if delta == 0 and reserved_delta != 0:
        recorded_delta, recorded_qty = reserved_delta, new_reserved
    else:
        recorded_delta, recorded_qty = delta, new_on_hand

    mv = StockMovement(
        stock_item_id=item.id,
        movement_type=movement_type,
        delta=recorded_delta,
        new_quantity=recorded_qty,
        reason=reason,
        actor=actor,
        related_entity=related_entity,
        related_id=related_id,
        idempotency_key=idempotency_key,
    )
    db.add(mv)

    events.emit(
        db,
        "stock.movement",
        actor=actor,
        stock_item_id=item.id,
        sku=item.sku,
        movement_type=movement_type.value,
        delta=str(recorded_delta),
        new_quantity=str(recorded_qty),
        reason=reason,
    )
    threshold = item.low_stock_threshold
    if (
        item.item_class == ItemClass.finished_good
        and threshold is not None
        and delta < 0
        and new_on_hand <= threshold < previous
    ):
        events.emit(
            db,
            "stock.below_threshold",
            actor=actor,
            stock_item_id=item.id,
            sku=item.sku,
            qty_on_hand=str(new_on_hand),
            threshold=str(threshold),
        )
    return mv


def apply_reservation(db: Session, item: StockItem, quantity: Decimal, *, actor: str, reason: str | None = None, **related) -> StockMovement:
    quantity = as_quantity(quantity)
    if quantity < 0:
        raise InvalidQuantity("Reservation quantity must be >= 0")
    return apply_delta(
        db, item, ZERO, reserved_delta=quantity, movement_type=MovementType.reserve, reason=reason, actor=actor, **related
    )


def apply_release(db: Session, item: StockItem, quantity: Decimal, *, actor: str, reason: str | None = None, **related) -> StockMovement:
    quantity = as_quantity(quantity)
    if quantity < 0:
        raise InvalidQuantity("Release quantity must be >= 0")
    return apply_delta(
        db, item, ZERO, reserved_delta=-quantity, movement_type=MovementType.unreserve, reason=reason, actor=actor, **related
    )


def apply_issue_reserved(
    db: Session,
    item: StockItem,
    quantity: Decimal,
    *,
    actor: str,
    reason: str | None = None,
    movement_type: MovementType = MovementType.order_assembly,
    **related,
) -> StockMovement:
    quantity = as_quantity(quantity)
    if quantity <= 0:
        raise InvalidQuantity("Issued quantity must be > 0")
    return apply_delta(
        db,
        item,
        -quantity,
        reserved_delta=-quantity,
        movement_type=movement_type,
        reason=reason,
        actor=actor,
        **related,
    )


def apply_correction(
    db: Session,
    item: StockItem,
    quantity: Decimal,
    *,
    actor: str,
    reason: str | None,
    movement_type: MovementType = MovementType.reconciliation,
    release_excess: bool = False,
    related_entity: str | None = None,
    related_id: int | None = None,
) -> StockMovement | None:
    """
    Fixe qty_on_hand à `quantity` (comptage physique).

    release_excess=True : si le stock compté est sous le réservé, la réservation
    excédentaire est libérée (UNRESERVE) avant la correction au lieu d'échouer.
    """
    quantity = as_quantity(quantity)
    if quantity < 0:
        raise InvalidQuantity("quantity must be >= 0")
    delta = quantity - item.qty_on_hand
    if delta == 0:
        return None
    related = {"related_entity": related_entity, "related_id": related_id}
    excess = item.qty_reserved - quantity
    if release_excess and excess > 0:
        apply_release(db, item, excess, actor=actor, reason=reason, **related)
    return apply_delta(db, item, delta, movement_type=movement_type, reason=reason, actor=actor, **related)


# ---------- public API ----------
def _replay(existing: StockMovement, item_id: int, idempotency_key: str) -> Decimal:
    if existing.stock_item_id != item_id:
        raise InvalidQuantity(f"Idempotency-Key {idempotency_key} already used for item {existing.stock_item_id}")
    return existing.new_quantity


def adjust(
    db: Session,
    item_id: int,
    item_class: ItemClass | None,
    delta,
    reason: str | None,
    actor: str,
    *,
    movement_type: MovementType = MovementType.adjustment,
    idempotency_key: str | None = None,
    related_entity: str | None = None,
    related_id: int | None = None,
) -> Decimal:
    delta = as_quantity(delta)
    if delta == 0:
        raise InvalidQuantity("delta must be non-zero")

    with lock_manager.hold([stock_key(item_id)]):
        # rejeu idempotent, vérifié sous le verrou de l'article
        if idempotency_key:
            existing = find_movement(db, idempotency_key)
            if existing:
                return _replay(existing, item_id, idempotency_key)

        try:
            item = load_item(db, item_id, item_class, for_update=True)
            mv = apply_delta(
                db,
                item,
                delta,
                movement_type=movement_type,
                reason=reason,
                actor=actor,
                related_entity=related_entity,
                related_id=related_id,
                idempotency_key=idempotency_key,
            )
            new_quantity = mv.new_quantity
            db.commit()
        except IntegrityError:
            db.rollback()
            # même clé posée entre-temps sur un autre article (ou par un autre process)
            existing = find_movement(db, idempotency_key) if idempotency_key else None
            if existing is None:
                raise
            return _replay(existing, item_id, idempotency_key)
        except Exception:
            db.rollback()
            raise

    logger.info("Adjusted %s by %s -> %s (%s)", item_id, delta, new_quantity, reason)
    return new_quantity


def set_quantity(
    db: Session,
    item_id: int,
    item_class: ItemClass | None,
    quantity,
    reason: str | None,
    actor: str,
    *,
    movement_type: MovementType = MovementType.reconciliation,
) -> Decimal:
    """
    Correction absolue ; sans effet (et sans mouvement) si la quantité est déjà la bonne.

    Les réservations ne sont pas touchées : descendre sous le réservé passe par
    un inventaire, qui retire d'abord les réclamations des commandes.
    """
    quantity = as_quantity(quantity)
    if quantity < 0:
        raise InvalidQuantity("quantity must be >= 0")

    with lock_manager.hold([stock_key(item_id)]):
        try:
            item = load_item(db, item_id, item_class, for_update=True)
            apply_correction(db, item, quantity, actor=actor, reason=reason, movement_type=movement_type)
            db.commit()
        except Exception:
            db.rollback()
            raise
    return quantity


def _locked_single(db: Session, item_id: int, item_class: ItemClass | None, fn, quantity, actor: str, reason: str | None, related: dict) -> Decimal:
    with lock_manager.hold([stock_key(item_id)]):
        try:
            item = load_item(db, item_id, item_class, for_update=True)
            fn(db, item, quantity, actor=actor, reason=reason, **related)
            available_after = item.qty_on_hand - item.qty_reserved
            db.commit()
        except Exception:
            db.rollback()
            raise
    return available_after


def reserve(
    db: Session,
    item_id: int,
    quantity,
    actor: str,
    *,
    item_class: ItemClass | None = None,
    reason: str | None = None,
    related_entity: str | None = None,
    related_id: int | None = None,
) -> Decimal:
    """Retourne la quantité encore disponible."""
    related = {"related_entity": related_entity, "related_id": related_id}
    return _locked_single(db, item_id, item_class, apply_reservation, quantity, actor, reason, related)


def release(
    db: Session,
    item_id: int,
    quantity,
    actor: str,
    *,
    item_class: ItemClass | None = None,
    reason: str | None = None,
    related_entity: str | None = None,
    related_id: int | None = None,
) -> Decimal:
    related = {"related_entity": related_entity, "related_id": related_id}
    return _locked_single(db, item_id, item_class, apply_release, quantity, actor, reason, related)


def issue_reserved(
    db: Session,
    item_id: int,
    quantity,
    actor: str,
    *,
    item_class: ItemClass | None = None,
    reason: str | None = None,
    movement_type: MovementType = MovementType.order_assembly,
    related_entity: str | None = None,
    related_id: int | None = None,
) -> Decimal:
    related = {"related_entity": related_entity, "related_id": related_id, "movement_type": movement_type}
    return _locked_single(db, item_id, item_class, apply_issue_reserved, quantity, actor, reason, related)


def get(db: Session, item_id: int) -> Decimal:
    item = db.get(StockItem, item_id, populate_existing=True)
    if item is None:
        raise NotFound("Stock item", item_id)
    return item.qty_on_hand


def available(db: Session, item_id: int) -> Decimal:
    item = db.get(StockItem, item_id, populate_existing=True)
    if item is None:
        raise NotFound("Stock item", item_id)
    return item.qty_available


def history(db: Session, item_id: int, *, limit: int | None = None) -> list[StockMovement]:
    if db.get(StockItem, item_id) is None:
        raise NotFound("Stock item", item_id)
    stmt = (
        select(StockMovement)
        .where(StockMovement.stock_item_id == item_id)
        .order_by(StockMovement.id.asc())
    )
    if limit is not None:
        stmt = stmt.limit(limit)
    return list(db.execute(stmt).scalars().all())
