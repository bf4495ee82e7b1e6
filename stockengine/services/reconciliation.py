"""
Inventaire physique (comptage aveugle ou ouvert).

SETUP -> COUNTING -> REVIEW -> COMPLETED | CANCELLED, un seul inventaire actif
à la fois. Les quantités attendues sont figées à la création ; à la clôture,
chaque écart non nul devient un mouvement RECONCILIATION, tout ou rien.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from stockengine.app.db.models.core_types import ACTIVE_CHECK_STATUSES, CheckStatus
from stockengine.app.db.models.models_v1 import InventoryCheck, InventoryCheckItem, SalesOrder, StockItem
from stockengine.services import events, fulfillment, ledger
from stockengine.services.errors import (
    ActiveCheckExists,
    ConcurrentModification,
    InsufficientStock,
    InvalidQuantity,
    InvalidStateTransition,
    NotFound,
)
from stockengine.services.locking import check_key, lock_manager, order_key, stock_key

logger = logging.getLogger(__name__)

ZERO = Decimal("0")

# marqueur "inventaire actif" du process ; la base fait foi entre process
_active_marker = threading.Lock()


def _find_active(db: Session) -> InventoryCheck | None:
    return (
        db.execute(
            select(InventoryCheck)
            .where(InventoryCheck.status.in_(ACTIVE_CHECK_STATUSES))
            .order_by(InventoryCheck.id.asc())
        )
        .scalars()
        .first()
    )


def get_active(db: Session) -> InventoryCheck | None:
    return _find_active(db)


def get_check(db: Session, check_id: int, *, for_update: bool = False) -> InventoryCheck:
    db.flush()
    stmt = select(InventoryCheck).where(InventoryCheck.id == check_id)
    if for_update:
        stmt = stmt.with_for_update()
    check = db.execute(stmt.execution_options(populate_existing=True)).scalar_one_or_none()
    if check is None:
        raise NotFound("Inventory check", check_id)
    return check


def list_checks(db: Session) -> list[InventoryCheck]:
    return list(db.execute(select(InventoryCheck).order_by(InventoryCheck.id.desc())).scalars().all())


def _find_line(check: InventoryCheck, stock_item_id: int) -> InventoryCheckItem:
    for line in check.items:
        if line.stock_item_id == stock_item_id:
            return line
    raise NotFound("Inventory check item", stock_item_id)


def create(db: Session, actor: str, *, blind_mode: bool = False, notes: str | None = None) -> InventoryCheck:
    with _active_marker:
        existing = _find_active(db)
        if existing is not None:
            logger.warning("Inventory check refused: check %s still %s", existing.id, existing.status.value)
            raise ActiveCheckExists(existing.id)

        try:
            check = InventoryCheck(
                blind_mode=blind_mode,
                status=CheckStatus.setup,
                notes=notes,
                created_by=actor,
            )
            db.add(check)
            db.flush()

            stock_items = db.execute(
                select(StockItem).where(StockItem.active.is_(True)).order_by(StockItem.id.asc())
            ).scalars().all()
            for item in stock_items:
                check.items.append(
                    InventoryCheckItem(stock_item_id=item.id, expected_quantity=item.qty_on_hand)
                )

            check.status = CheckStatus.counting
            db.commit()
        except Exception:
            db.rollback()
            raise

    logger.info("Inventory check %s opened (blind=%s, %d items)", check.id, blind_mode, len(check.items))
    return check


def record_count(db: Session, check_id: int, stock_item_id: int, actual_quantity, actor: str) -> InventoryCheckItem:
    actual_quantity = ledger.as_quantity(actual_quantity)
    with lock_manager.hold([check_key(check_id)]):
        try:
            check = get_check(db, check_id, for_update=True)
            if check.status != CheckStatus.counting:
                raise InvalidStateTransition("inventory check", check.status, "record counts on")
            if actual_quantity < 0:
                raise InvalidQuantity("actual quantity must be >= 0")
            line = _find_line(check, stock_item_id)
            line.actual_quantity = actual_quantity
            line.counted_by = actor
            line.counted_at = datetime.utcnow()
            db.commit()
        except Exception:
            db.rollback()
            raise
    db.refresh(line)
    return line


def enter_review(db: Session, check_id: int, actor: str) -> InventoryCheck:
    """Recalcule les écarts ; rejouable tant que le comptage n'est pas clos."""
    with lock_manager.hold([check_key(check_id)]):
        try:
            check = get_check(db, check_id, for_update=True)
            if check.status not in (CheckStatus.counting, CheckStatus.review):
                raise InvalidStateTransition("inventory check", check.status, "review")
            for line in check.items:
                if line.actual_quantity is None:
                    line.difference = ZERO
                else:
                    line.difference = line.actual_quantity - line.expected_quantity
            check.status = CheckStatus.review
            check.reviewed_at = datetime.utcnow()
            db.commit()
        except Exception:
            db.rollback()
            raise
    db.refresh(check)
    return check


def resume_counting(db: Session, check_id: int, actor: str) -> InventoryCheck:
    with lock_manager.hold([check_key(check_id)]):
        try:
            check = get_check(db, check_id, for_update=True)
            if check.status != CheckStatus.review:
                raise InvalidStateTransition("inventory check", check.status, "resume counting on")
            for line in check.items:
                line.difference = None
            check.status = CheckStatus.counting
            db.commit()
        except Exception:
            db.rollback()
            raise
    logger.info("Inventory check %s back to counting (%s)", check_id, actor)
    db.refresh(check)
    return check


def _target_quantity(line: InventoryCheckItem, item: StockItem, absolute: bool) -> Decimal:
    if absolute:
        return line.actual_quantity
    target = item.qty_on_hand + line.difference
    if target < 0:
        # le stock a bougé depuis l'ouverture : l'écart relatif ne tient plus
        raise InsufficientStock(item.id, -line.difference, item.qty_on_hand)
    return target


def complete(
    db: Session,
    check_id: int,
    actor: str,
    notes: str | None = None,
    *,
    absolute: bool = False,
) -> InventoryCheck:
    """
    Applique les écarts au ledger.

    absolute=False : delta = difference (compté - attendu au moment de l'ouverture)
    absolute=True  : stock forcé à la quantité comptée, lignes non comptées ignorées

    Seule dérogation au contrôle du réservé : si le stock compté passe sous la
    quantité réservée, les réclamations des commandes sont retirées (priorité
    la plus basse d'abord), la réservation libérée et les commandes rétrogradées.
    Un échec laisse l'inventaire en REVIEW, sans aucun mouvement.
    """
    with lock_manager.hold([check_key(check_id)]):
        check = get_check(db, check_id, for_update=True)
        if check.status != CheckStatus.review:
            raise InvalidStateTransition("inventory check", check.status, "complete")

        if absolute:
            lines = [line for line in check.items if line.actual_quantity is not None]
        else:
            lines = [line for line in check.items if line.difference]
        item_ids = sorted(line.stock_item_id for line in lines)

        # commandes avant articles, comme partout ailleurs
        holders = fulfillment.claim_holders(db, item_ids)
        keys = [order_key(oid) for oid in holders] + [stock_key(iid) for iid in item_ids]
        with lock_manager.hold(keys):
            try:
                if not fulfillment.claim_holders(db, item_ids) <= holders:
                    raise ConcurrentModification(
                        f"orders claimed counted stock while inventory check {check_id} was closing"
                    )

                adjusted = 0
                demoted: dict[int, SalesOrder] = {}
                for line in sorted(lines, key=lambda ln: ln.stock_item_id):
                    item = ledger.load_item(db, line.stock_item_id, for_update=True)
                    target = _target_quantity(line, item, absolute)
                    if target == item.qty_on_hand:
                        continue
                    if target < item.qty_reserved:
                        for order in fulfillment.revoke_claims(
                            db,
                            item,
                            item.qty_reserved - target,
                            actor,
                            reason="inventory reconciliation",
                            related_entity="inventory_check",
                            related_id=check.id,
                        ):
                            demoted[int(order.id)] = order
                    ledger.apply_correction(
                        db,
                        item,
                        target,
                        actor=actor,
                        reason="inventory reconciliation",
                        release_excess=True,
                        related_entity="inventory_check",
                        related_id=check.id,
                    )
                    adjusted += 1

                for order in demoted.values():
                    fulfillment.demote_order(db, order, actor)

                check.status = CheckStatus.completed
                check.completed_at = datetime.utcnow()
                if notes:
                    check.notes = notes
                events.emit(
                    db,
                    "inventory_check.completed",
                    actor=actor,
                    check_id=check.id,
                    adjusted_items=adjusted,
                    absolute=absolute,
                    demoted_orders=sorted(demoted),
                )
                db.commit()
            except Exception:
                db.rollback()
                logger.warning("Inventory check %s could not be completed; still in review", check_id)
                raise

    if demoted:
        logger.warning("Inventory check %s: stock lost under reservation, orders %s demoted", check_id, sorted(demoted))
    logger.info("Inventory check %s completed (%d adjustment(s))", check_id, adjusted)
    db.refresh(check)
    return check


def cancel(db: Session, check_id: int, actor: str) -> InventoryCheck:
    with lock_manager.hold([check_key(check_id)]):
        try:
            check = get_check(db, check_id, for_update=True)
            if check.status in (CheckStatus.completed, CheckStatus.cancelled):
                raise InvalidStateTransition("inventory check", check.status, "cancel")
            check.status = CheckStatus.cancelled
            events.emit(db, "inventory_check.cancelled", actor=actor, check_id=check.id)
            db.commit()
        except Exception:
            db.rollback()
            raise
    logger.info("Inventory check %s cancelled", check_id)
    db.refresh(check)
    return check
