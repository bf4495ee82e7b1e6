"""
Saisie prioritaire : déplacer des réclamations de stock d'une commande moins
prioritaire vers une commande plus prioritaire.

Deux phases :
1. plan_seizure : lecture sans verrou, puis build_reclaim_plan (fonction pure
   sur des snapshots figés) ;
2. commit_plan : verrouille toutes les commandes concernées (ordre trié),
   revérifie chaque ligne donneuse, applique ou lève ConcurrentModification.

Le ledger n'est jamais touché : seules les réclamations changent de commande.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from stockengine.app.db.models.core_types import (
    CLAIM_HOLDING_STATUSES,
    PRE_ASSEMBLY_STATUSES,
    PRIORITY_RANK,
    SalesOrderStatus,
)
from stockengine.app.db.models.models_v1 import SalesOrder, SalesOrderItem
from stockengine.services import events
from stockengine.services.errors import (
    ConcurrentModification,
    InvalidStateTransition,
    SeizureUnavailable,
)
from stockengine.services.fulfillment import (
    compute_shortage,
    demote_order,
    find_item,
    load_order,
    readiness_status,
    record,
    set_status,
)
from stockengine.services.locking import lock_manager, order_key

logger = logging.getLogger(__name__)

ZERO = Decimal("0")

SEIZABLE_STATUSES = PRE_ASSEMBLY_STATUSES | {SalesOrderStatus.assembling}


@dataclass(frozen=True)
class ShortLine:
    item_id: int
    product_id: int
    shortage: Decimal


@dataclass(frozen=True)
class ClaimSnapshot:
    order_id: int
    item_id: int
    product_id: int
    assembled_quantity: Decimal
    status: SalesOrderStatus
    priority_rank: int
    created_at: datetime


@dataclass(frozen=True)
class ReclaimStep:
    donor_order_id: int
    donor_item_id: int
    target_item_id: int
    product_id: int
    quantity: Decimal
    expected_assembled: Decimal
    expected_status: SalesOrderStatus


@dataclass(frozen=True)
class ReclaimPlan:
    order_id: int
    target_status: SalesOrderStatus
    target_claims: tuple[tuple[int, Decimal], ...]
    steps: tuple[ReclaimStep, ...]
    uncovered: tuple[tuple[int, Decimal], ...] = ()

    @property
    def donor_order_ids(self) -> tuple[int, ...]:
        return tuple(sorted({s.donor_order_id for s in self.steps}))


@dataclass(frozen=True)
class SeizureResult:
    order_id: int
    steps: tuple[ReclaimStep, ...] = ()
    total_reclaimed: Decimal = ZERO
    remaining_shortage: Decimal = ZERO
    donor_order_ids: tuple[int, ...] = field(default_factory=tuple)


def donor_sort_key(claim: ClaimSnapshot):
    # plus basse priorité d'abord, puis la plus ancienne, puis le plus petit id
    return (claim.priority_rank, claim.created_at, claim.order_id, claim.item_id)


def build_reclaim_plan(
    order_id: int,
    target_rank: int,
    target_status: SalesOrderStatus,
    target_claims: tuple[tuple[int, Decimal], ...],
    short_lines: list[ShortLine],
    donors: list[ClaimSnapshot],
) -> ReclaimPlan:
    """Pure : aucune lecture, aucune écriture."""
    candidates = sorted(
        (
            d
            for d in donors
            if d.order_id != order_id and d.priority_rank < target_rank and d.assembled_quantity > 0
        ),
        key=donor_sort_key,
    )
    left = {d.item_id: d.assembled_quantity for d in candidates}

    steps: list[ReclaimStep] = []
    uncovered: list[tuple[int, Decimal]] = []
    for line in sorted(short_lines, key=lambda s: s.item_id):
        need = line.shortage
        for donor in candidates:
            if need <= 0:
                break
            if donor.product_id != line.product_id or left[donor.item_id] <= 0:
                continue
            take = min(need, left[donor.item_id])
            steps.append(
                ReclaimStep(
                    donor_order_id=donor.order_id,
                    donor_item_id=donor.item_id,
                    target_item_id=line.item_id,
                    product_id=line.product_id,
                    quantity=take,
                    expected_assembled=donor.assembled_quantity,
                    expected_status=donor.status,
                )
            )
            left[donor.item_id] -= take
            need -= take
        if need > 0:
            uncovered.append((line.item_id, need))

    return ReclaimPlan(
        order_id=order_id,
        target_status=target_status,
        target_claims=target_claims,
        steps=tuple(steps),
        uncovered=tuple(uncovered),
    )


def _donor_snapshots(db: Session, target: SalesOrder, product_ids: set[int]) -> list[ClaimSnapshot]:
    rows = db.execute(
        select(SalesOrderItem, SalesOrder)
        .join(SalesOrder, SalesOrder.id == SalesOrderItem.order_id)
        .where(SalesOrder.id != target.id)
        .where(SalesOrder.status.in_(CLAIM_HOLDING_STATUSES))
        .where(SalesOrderItem.product_id.in_(product_ids))
        .where(SalesOrderItem.assembled_quantity > 0)
    ).all()
    return [
        ClaimSnapshot(
            order_id=int(order.id),
            item_id=int(line.id),
            product_id=int(line.product_id),
            assembled_quantity=line.assembled_quantity,
            status=order.status,
            priority_rank=PRIORITY_RANK[order.priority],
            created_at=order.created_at,
        )
        for line, order in rows
    ]


def plan_seizure(db: Session, order_id: int) -> ReclaimPlan:
    target = load_order(db, order_id)
    if target.status not in SEIZABLE_STATUSES:
        raise InvalidStateTransition("sales order", target.status, "seize stock for")

    shortage = compute_shortage(db, target)
    short_lines = [
        ShortLine(item_id=s.item_id, product_id=s.product_id, shortage=s.shortage)
        for s in shortage.items
        if s.shortage > 0
    ]
    target_claims = tuple((int(line.id), line.assembled_quantity) for line in target.items)
    donors = _donor_snapshots(db, target, {s.product_id for s in short_lines}) if short_lines else []

    return build_reclaim_plan(
        int(target.id),
        PRIORITY_RANK[target.priority],
        target.status,
        target_claims,
        short_lines,
        donors,
    )


def _revalidate(db: Session, plan: ReclaimPlan) -> tuple[SalesOrder, dict[int, SalesOrderItem]]:
    # relecture complète sous verrou
    db.expire_all()
    target = load_order(db, plan.order_id, for_update=True)
    current_claims = tuple((int(line.id), line.assembled_quantity) for line in target.items)
    if target.status != plan.target_status or current_claims != plan.target_claims:
        raise ConcurrentModification(f"Sales order {target.reference} changed during seizure; retry")

    donor_item_ids = sorted({s.donor_item_id for s in plan.steps})
    rows = db.execute(
        select(SalesOrderItem, SalesOrder)
        .join(SalesOrder, SalesOrder.id == SalesOrderItem.order_id)
        .where(SalesOrderItem.id.in_(donor_item_ids))
        .order_by(SalesOrder.id.asc(), SalesOrderItem.id.asc())
        .with_for_update()
        .execution_options(populate_existing=True)
    ).all()
    donors = {int(line.id): (line, order) for line, order in rows}

    for step in plan.steps:
        found = donors.get(step.donor_item_id)
        if found is None:
            raise ConcurrentModification(f"Donor item {step.donor_item_id} disappeared during seizure; retry")
        line, order = found
        if line.assembled_quantity != step.expected_assembled or order.status != step.expected_status:
            logger.warning(
                "Seizure for order %s aborted: donor order %s changed (%s/%s -> %s/%s)",
                plan.order_id,
                order.id,
                step.expected_status.value,
                step.expected_assembled,
                order.status.value,
                line.assembled_quantity,
            )
            raise ConcurrentModification(f"Donor order {order.reference} changed during seizure; retry")

    return target, {item_id: line for item_id, (line, _) in donors.items()}


def commit_plan(db: Session, plan: ReclaimPlan, actor: str) -> SeizureResult:
    if not plan.steps:
        return SeizureResult(order_id=plan.order_id)

    keys = [order_key(plan.order_id)] + [order_key(oid) for oid in plan.donor_order_ids]
    with lock_manager.hold(keys):
        try:
            target, donor_lines = _revalidate(db, plan)
            donors: dict[int, SalesOrder] = {}

            for step in plan.steps:
                donor_line = donor_lines[step.donor_item_id]
                donor = donor_line.order
                donors[int(donor.id)] = donor
                target_line = find_item(target, step.target_item_id)

                from_debited = min(step.quantity, donor_line.debited_quantity)
                donor_line.assembled_quantity -= step.quantity
                donor_line.debited_quantity -= from_debited
                donor_line.assembled_by = None
                donor_line.assembled_at = None
                target_line.assembled_quantity += step.quantity
                target_line.debited_quantity += from_debited

                record(
                    target,
                    actor,
                    "stock_seized",
                    f"{step.quantity} x product {step.product_id} taken from order {donor.reference}",
                )
                record(
                    donor,
                    actor,
                    "stock_seized_from",
                    f"{step.quantity} x product {step.product_id} reassigned to priority order {target.reference}",
                )

            for donor in donors.values():
                demote_order(db, donor, actor)

            target_shortage = compute_shortage(db, target)
            remaining = target_shortage.total_shortage
            if target.status in PRE_ASSEMBLY_STATUSES:
                set_status(target, readiness_status(target_shortage), actor)

            total = sum((s.quantity for s in plan.steps), ZERO)
            events.emit(
                db,
                "sales_order.seized",
                actor=actor,
                order_id=plan.order_id,
                donor_order_ids=list(plan.donor_order_ids),
                total_reclaimed=str(total),
                steps=[
                    {
                        "donor_order_id": s.donor_order_id,
                        "donor_item_id": s.donor_item_id,
                        "target_item_id": s.target_item_id,
                        "quantity": str(s.quantity),
                    }
                    for s in plan.steps
                ],
            )
            db.commit()
        except Exception:
            db.rollback()
            raise

    logger.info(
        "Seized %s unit(s) for order %s from %s (remaining shortage %s)",
        total,
        plan.order_id,
        list(plan.donor_order_ids),
        remaining,
    )
    return SeizureResult(
        order_id=plan.order_id,
        steps=plan.steps,
        total_reclaimed=total,
        remaining_shortage=remaining,
        donor_order_ids=plan.donor_order_ids,
    )


def seize(db: Session, order_id: int, actor: str) -> SeizureResult:
    plan = plan_seizure(db, order_id)
    if not plan.steps and not plan.uncovered:
        return SeizureResult(order_id=plan.order_id)
    if not plan.steps:
        raise SeizureUnavailable(
            f"cannot seize: no lower-priority reserved stock available for order {order_id}"
        )
    return commit_plan(db, plan, actor)
