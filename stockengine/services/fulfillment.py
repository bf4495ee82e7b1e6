"""
Suivi des commandes clients : manques, assemblage, cycle de vie.

Une ligne "réclame" des unités de stock (assembled_quantity) ; la réclamation
est réservée dans le ledger à l'assemblage de la ligne, puis débitée quand la
commande complète passe ASSEMBLED (debited_quantity).
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from stockengine.app.db.models.core_types import (
    CLAIM_HOLDING_STATUSES,
    PRE_ASSEMBLY_STATUSES,
    PRIORITY_RANK,
    TERMINAL_ORDER_STATUSES,
    ItemClass,
    MovementType,
    OrderPriority,
    SalesOrderStatus,
)
from stockengine.app.db.models.models_v1 import (
    ProductionOrder,
    SalesOrder,
    SalesOrderHistory,
    SalesOrderItem,
    StockItem,
)
from stockengine.services import events, ledger, production
from stockengine.services.errors import (
    DuplicateReference,
    InvalidQuantity,
    InvalidStateTransition,
    NotFound,
    UnknownProduct,
)
from stockengine.services.locking import lock_manager, order_key, stock_key

logger = logging.getLogger(__name__)

ZERO = Decimal("0")

ASSEMBLABLE_STATUSES = PRE_ASSEMBLY_STATUSES | {SalesOrderStatus.assembling}


@dataclass(frozen=True)
class ItemShortage:
    item_id: int
    product_id: int
    quantity_requested: Decimal
    assembled_quantity: Decimal
    available: Decimal
    shortage: Decimal
    production_order_id: int | None = None


@dataclass(frozen=True)
class OrderShortage:
    order_id: int
    status: SalesOrderStatus
    items: tuple[ItemShortage, ...]
    total_shortage: Decimal

    @property
    def blocking_shortage(self) -> Decimal:
        # les lignes confiées à la production ne bloquent pas READY_TO_ASSEMBLE
        return sum((i.shortage for i in self.items if i.production_order_id is None), ZERO)


# ---------- Helpers ----------
def load_order(db: Session, order_id: int, *, for_update: bool = False) -> SalesOrder:
    db.flush()
    stmt = select(SalesOrder).where(SalesOrder.id == order_id)
    if for_update:
        stmt = stmt.with_for_update()
    order = db.execute(stmt.execution_options(populate_existing=True)).scalar_one_or_none()
    if order is None:
        raise NotFound("Sales order", order_id)
    return order


def find_item(order: SalesOrder, item_id: int) -> SalesOrderItem:
    for line in order.items:
        if line.id == item_id:
            return line
    raise NotFound("Sales order item", item_id)


def record(order: SalesOrder, actor: str, action: str, detail: str | None = None) -> None:
    order.history.append(SalesOrderHistory(actor=actor, action=action, detail=detail))


def set_status(order: SalesOrder, status: SalesOrderStatus, actor: str, detail: str | None = None) -> None:
    if order.status == status:
        return
    previous = order.status
    order.status = status
    order.updated_at = datetime.utcnow()
    record(order, actor, "status_change", detail or f"{previous.value} -> {status.value}")


def _stock_keys(order: SalesOrder) -> list:
    return [stock_key(line.product_id) for line in order.items]


def _require_product(db: Session, product_id: int) -> StockItem:
    product = db.get(StockItem, product_id)
    if product is None or product.item_class != ItemClass.finished_good:
        raise UnknownProduct(product_id)
    return product


def _line_shortage(line: SalesOrderItem, available: Decimal) -> Decimal:
    if line.is_assembled:
        return ZERO
    return max(ZERO, line.unclaimed_quantity - available)


def compute_shortage(db: Session, order: SalesOrder) -> OrderShortage:
    product_ids = {line.product_id for line in order.items}
    stock: dict[int, Decimal] = {}
    if product_ids:
        rows = db.execute(
            select(StockItem.id, StockItem.qty_on_hand, StockItem.qty_reserved).where(StockItem.id.in_(product_ids))
        ).all()
        stock = {int(r.id): r.qty_on_hand - r.qty_reserved for r in rows}

    items = []
    for line in order.items:
        available = stock.get(line.product_id, ZERO)
        items.append(
            ItemShortage(
                item_id=int(line.id),
                product_id=int(line.product_id),
                quantity_requested=line.quantity_requested,
                assembled_quantity=line.assembled_quantity,
                available=available,
                shortage=_line_shortage(line, available),
                production_order_id=line.production_order_id,
            )
        )
    return OrderShortage(
        order_id=int(order.id),
        status=order.status,
        items=tuple(items),
        total_shortage=sum((i.shortage for i in items), ZERO),
    )


def refresh_readiness(db: Session, order: SalesOrder, actor: str) -> bool:
    """Sans commit. AWAITING_PRODUCTION <-> READY_TO_ASSEMBLE pour une commande pas encore en assemblage."""
    if order.status not in PRE_ASSEMBLY_STATUSES:
        return False
    target = readiness_status(compute_shortage(db, order))
    if target == order.status:
        return False
    set_status(order, target, actor)
    return True


def readiness_status(shortage: OrderShortage) -> SalesOrderStatus:
    if shortage.blocking_shortage == 0:
        return SalesOrderStatus.ready_to_assemble
    return SalesOrderStatus.awaiting_production


def demote_order(db: Session, order: SalesOrder, actor: str) -> None:
    """Sans commit. Commande qui vient de perdre des unités réclamées : retour avant assemblage."""
    db.flush()
    set_status(order, readiness_status(compute_shortage(db, order)), actor)


# ---------- Queries ----------
def get_order(db: Session, order_id: int) -> SalesOrder:
    return load_order(db, order_id)


def list_orders(db: Session, *, status: SalesOrderStatus | None = None) -> list[SalesOrder]:
    stmt = select(SalesOrder).order_by(SalesOrder.id.asc())
    if status is not None:
        stmt = stmt.where(SalesOrder.status == status)
    return list(db.execute(stmt).scalars().all())


def get_shortage(db: Session, order_id: int) -> OrderShortage:
    return compute_shortage(db, load_order(db, order_id))


# ---------- Commands ----------
def create_order(
    db: Session,
    reference: str,
    priority: OrderPriority,
    items: list[dict],
    actor: str,
) -> SalesOrder:
    """items: [{"product_id": int, "quantity": Decimal}]"""
    if not items:
        raise InvalidQuantity("A sales order needs at least one item")
    if db.execute(select(SalesOrder.id).where(SalesOrder.reference == reference)).first():
        raise DuplicateReference("Sales order", reference)

    try:
        order = SalesOrder(reference=reference, priority=priority, status=SalesOrderStatus.new)
        for raw in items:
            quantity = ledger.as_quantity(raw["quantity"])
            if quantity <= 0:
                raise InvalidQuantity("quantity must be > 0")
            _require_product(db, int(raw["product_id"]))
            order.items.append(
                SalesOrderItem(
                    product_id=int(raw["product_id"]),
                    quantity_requested=quantity,
                    assembled_quantity=ZERO,
                    debited_quantity=ZERO,
                )
            )
        record(order, actor, "created", f"priority {priority.value}, {len(items)} item(s)")
        db.add(order)
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(order)
    logger.info("Sales order %s created (priority=%s)", order.reference, order.priority.value)
    return order


def add_item(db: Session, order_id: int, product_id: int, quantity, actor: str) -> SalesOrderItem:
    quantity = ledger.as_quantity(quantity)
    with lock_manager.hold([order_key(order_id)]):
        try:
            order = load_order(db, order_id, for_update=True)
            if order.status not in PRE_ASSEMBLY_STATUSES:
                raise InvalidStateTransition("sales order", order.status, "add items to")
            if quantity <= 0:
                raise InvalidQuantity("quantity must be > 0")
            product = _require_product(db, product_id)

            line = SalesOrderItem(
                product_id=product_id,
                quantity_requested=quantity,
                assembled_quantity=ZERO,
                debited_quantity=ZERO,
            )
            order.items.append(line)
            order.updated_at = datetime.utcnow()
            record(order, actor, "item_added", f"{quantity} x {product.sku}")
            db.commit()
        except Exception:
            db.rollback()
            raise
    db.refresh(line)
    return line


def remove_item(db: Session, order_id: int, item_id: int, actor: str) -> SalesOrder:
    with lock_manager.hold([order_key(order_id)]):
        try:
            order = load_order(db, order_id, for_update=True)
            if order.status not in PRE_ASSEMBLY_STATUSES:
                raise InvalidStateTransition("sales order", order.status, "remove items from")
            line = find_item(order, item_id)
            if line.assembled_quantity > 0:
                raise InvalidStateTransition(
                    "sales order item", f"claimed ({line.assembled_quantity} unit(s))", "remove"
                )
            order.items.remove(line)
            order.updated_at = datetime.utcnow()
            record(order, actor, "item_removed", f"item {item_id}")
            db.commit()
        except Exception:
            db.rollback()
            raise
    db.refresh(order)
    return order


def evaluate_readiness(db: Session, order_id: int, actor: str) -> SalesOrder:
    with lock_manager.hold([order_key(order_id)]):
        try:
            order = load_order(db, order_id, for_update=True)
            refresh_readiness(db, order, actor)
            db.commit()
        except Exception:
            db.rollback()
            raise
    db.refresh(order)
    return order


def _claim_line(db: Session, order: SalesOrder, line: SalesOrderItem, stock: StockItem, actor: str) -> None:
    unclaimed = line.unclaimed_quantity
    if unclaimed > 0:
        ledger.apply_reservation(
            db,
            stock,
            unclaimed,
            actor=actor,
            reason="order assembly",
            related_entity="sales_order",
            related_id=order.id,
        )
    line.assembled_quantity = line.quantity_requested
    line.assembled_by = actor
    line.assembled_at = datetime.utcnow()
    record(order, actor, "item_assembled", f"item {line.id}: {line.quantity_requested} x product {line.product_id}")


def _finish_assembly(db: Session, order: SalesOrder, stock: dict[int, StockItem], actor: str) -> None:
    """Seul passage qui débite le stock : réservations -> sorties."""
    for line in order.items:
        undebited = line.undebited_quantity
        if undebited <= 0:
            continue
        ledger.apply_issue_reserved(
            db,
            stock[line.product_id],
            undebited,
            actor=actor,
            reason="order assembly",
            movement_type=MovementType.order_assembly,
            related_entity="sales_order",
            related_id=order.id,
        )
        line.debited_quantity = line.assembled_quantity
    set_status(order, SalesOrderStatus.assembled, actor)
    events.emit(db, "sales_order.assembled", actor=actor, order_id=order.id, reference=order.reference)


def _lock_stock(db: Session, order: SalesOrder) -> dict[int, StockItem]:
    return {
        pid: ledger.load_item(db, pid, ItemClass.finished_good, for_update=True)
        for pid in sorted({line.product_id for line in order.items})
    }


def assemble_item(db: Session, order_id: int, item_id: int, actor: str) -> SalesOrder:
    with lock_manager.hold([order_key(order_id)]):
        order = load_order(db, order_id, for_update=True)
        line = find_item(order, item_id)
        all_claimed = all(item.is_assembled for item in order.items)
        if line.is_assembled and (order.status not in ASSEMBLABLE_STATUSES or not all_claimed):
            return order
        if order.status not in ASSEMBLABLE_STATUSES:
            raise InvalidStateTransition("sales order", order.status, "assemble items of")

        # une ligne déjà réclamée (saisie) peut être la dernière : on termine quand même
        with lock_manager.hold(_stock_keys(order)):
            try:
                stock = _lock_stock(db, order)
                if not line.is_assembled:
                    _claim_line(db, order, line, stock[line.product_id], actor)
                    set_status(order, SalesOrderStatus.assembling, actor)
                if all(item.is_assembled for item in order.items):
                    _finish_assembly(db, order, stock, actor)
                db.commit()
            except Exception:
                db.rollback()
                raise

    logger.info("Sales order %s: item %s assembled", order_id, item_id)
    db.refresh(order)
    return order


def assemble_order(db: Session, order_id: int, actor: str) -> SalesOrder:
    """Assemblage rapide : toutes les lignes restantes puis débit, en une transaction."""
    with lock_manager.hold([order_key(order_id)]):
        order = load_order(db, order_id, for_update=True)
        if order.status == SalesOrderStatus.assembled:
            return order
        if order.status not in ASSEMBLABLE_STATUSES:
            raise InvalidStateTransition("sales order", order.status, "assemble")

        with lock_manager.hold(_stock_keys(order)):
            try:
                stock = _lock_stock(db, order)
                for line in order.items:
                    if not line.is_assembled:
                        _claim_line(db, order, line, stock[line.product_id], actor)
                _finish_assembly(db, order, stock, actor)
                db.commit()
            except Exception:
                db.rollback()
                raise

    logger.info("Sales order %s assembled", order_id)
    db.refresh(order)
    return order


def _transition(db: Session, order_id: int, source: SalesOrderStatus, target: SalesOrderStatus, action: str, actor: str) -> SalesOrder:
    with lock_manager.hold([order_key(order_id)]):
        try:
            order = load_order(db, order_id, for_update=True)
            if order.status != source:
                raise InvalidStateTransition("sales order", order.status, action)
            set_status(order, target, actor)
            events.emit(db, f"sales_order.{target.value.lower()}", actor=actor, order_id=order.id, reference=order.reference)
            db.commit()
        except Exception:
            db.rollback()
            raise
    db.refresh(order)
    return order


def ship_order(db: Session, order_id: int, actor: str) -> SalesOrder:
    return _transition(db, order_id, SalesOrderStatus.assembled, SalesOrderStatus.shipped, "ship", actor)


def deliver_order(db: Session, order_id: int, actor: str) -> SalesOrder:
    return _transition(db, order_id, SalesOrderStatus.shipped, SalesOrderStatus.delivered, "deliver", actor)


def cancel_order(db: Session, order_id: int, actor: str, reason: str | None = None) -> SalesOrder:
    """
    Libère les réservations non débitées ; remet en stock les unités débitées
    sauf si la commande est déjà partie.
    """
    with lock_manager.hold([order_key(order_id)]):
        order = load_order(db, order_id, for_update=True)
        if order.status in TERMINAL_ORDER_STATUSES:
            raise InvalidStateTransition("sales order", order.status, "cancel")
        shipped = order.status == SalesOrderStatus.shipped

        with lock_manager.hold(_stock_keys(order)):
            try:
                stock = _lock_stock(db, order)
                related = {"related_entity": "sales_order", "related_id": order.id}
                for line in order.items:
                    item = stock[line.product_id]
                    if line.undebited_quantity > 0:
                        ledger.apply_release(db, item, line.undebited_quantity, actor=actor, reason="order cancellation", **related)
                    if not shipped and line.debited_quantity > 0:
                        ledger.apply_delta(
                            db,
                            item,
                            line.debited_quantity,
                            movement_type=MovementType.order_return,
                            reason="order cancellation",
                            actor=actor,
                            **related,
                        )
                    if not shipped:
                        line.debited_quantity = ZERO
                        line.assembled_quantity = ZERO
                    else:
                        line.assembled_quantity = line.debited_quantity

                set_status(order, SalesOrderStatus.cancelled, actor, reason)
                events.emit(db, "sales_order.cancelled", actor=actor, order_id=order.id, reference=order.reference)
                db.commit()
            except Exception:
                db.rollback()
                raise

    logger.info("Sales order %s cancelled", order_id)
    db.refresh(order)
    return order


def create_production_order_for_sales_order(db: Session, order_id: int, actor: str) -> ProductionOrder:
    """Crée l'ordre de production couvrant les manques et marque les lignes concernées."""
    with lock_manager.hold([order_key(order_id)]):
        try:
            order = load_order(db, order_id, for_update=True)
            if order.status not in PRE_ASSEMBLY_STATUSES:
                raise InvalidStateTransition("sales order", order.status, "plan production for")

            shortage = compute_shortage(db, order)
            short_lines = {
                s.item_id: s for s in shortage.items if s.shortage > 0 and s.production_order_id is None
            }
            if not short_lines:
                raise InvalidQuantity(f"Sales order {order.reference} has no uncovered shortage")

            per_product: dict[int, Decimal] = defaultdict(lambda: ZERO)
            for s in short_lines.values():
                per_product[s.product_id] += s.shortage

            existing = db.execute(
                select(func.count(ProductionOrder.id)).where(ProductionOrder.related_sales_order_id == order.id)
            ).scalar_one()
            po = production.build_production_order(
                db,
                f"MO-{order.reference}-{existing + 1}",
                [{"product_id": pid, "quantity": qty} for pid, qty in sorted(per_product.items())],
                actor,
                related_sales_order_id=order.id,
            )

            for line in order.items:
                if line.id in short_lines:
                    line.production_order_id = po.id
            record(order, actor, "production_requested", f"production order {po.reference}")
            set_status(order, SalesOrderStatus.awaiting_production, actor)
            db.commit()
        except Exception:
            db.rollback()
            raise

    logger.info("Production order %s created for sales order %s", po.reference, order_id)
    db.refresh(po)
    return po


# ---------- Claims lost in the warehouse ----------
def _open_claims_stmt(product_ids):
    return (
        select(SalesOrderItem, SalesOrder)
        .join(SalesOrder, SalesOrder.id == SalesOrderItem.order_id)
        .where(SalesOrder.status.in_(CLAIM_HOLDING_STATUSES))
        .where(SalesOrderItem.product_id.in_(product_ids))
        .where(SalesOrderItem.assembled_quantity > SalesOrderItem.debited_quantity)
    )


def claim_holders(db: Session, product_ids) -> set[int]:
    """Commandes qui tiennent une réservation non encore débitée sur ces articles."""
    product_ids = list(product_ids)
    if not product_ids:
        return set()
    return {int(order.id) for _, order in db.execute(_open_claims_stmt(product_ids)).all()}


def revoke_claims(
    db: Session,
    item: StockItem,
    quantity: Decimal,
    actor: str,
    *,
    reason: str,
    related_entity: str | None = None,
    related_id: int | None = None,
) -> list[SalesOrder]:
    """
    Sans verrou ni commit : l'appelant tient les verrous des commandes et de l'article.

    Retire `quantity` unités réservées mais non débitées (stock perdu), plus basse
    priorité d'abord puis la plus ancienne, et libère la réservation correspondante.
    Retourne les commandes touchées ; à rétrograder une fois le stock corrigé.
    """
    quantity = ledger.as_quantity(quantity)
    rows = db.execute(_open_claims_stmt([item.id])).all()
    rows.sort(key=lambda r: (PRIORITY_RANK[r[1].priority], r[1].created_at, r[1].id, r[0].id))

    touched: dict[int, SalesOrder] = {}
    left = quantity
    for line, order in rows:
        if left <= 0:
            break
        take = min(left, line.undebited_quantity)
        line.assembled_quantity -= take
        line.assembled_by = None
        line.assembled_at = None
        ledger.apply_release(
            db,
            item,
            take,
            actor=actor,
            reason=reason,
            related_entity="sales_order",
            related_id=order.id,
        )
        record(order, actor, "claim_revoked", f"{take} x product {item.id} missing from stock ({reason})")
        touched[int(order.id)] = order
        left -= take

    if touched:
        events.emit(
            db,
            "sales_order.claims_revoked",
            actor=actor,
            stock_item_id=item.id,
            quantity=str(quantity - left),
            order_ids=sorted(touched),
            related_entity=related_entity,
            related_id=related_id,
        )
    return list(touched.values())
