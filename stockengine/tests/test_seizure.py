from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from stockengine.app.db.models.core_types import OrderPriority, SalesOrderStatus
from stockengine.app.db.models.models_v1 import SalesOrder, SalesOrderItem, StockItem
from stockengine.services import events, fulfillment, ledger, seizure
from stockengine.services.errors import ConcurrentModification, SeizureUnavailable


def _order(db, ref, product, qty, priority=OrderPriority.normal):
    return fulfillment.create_order(db, ref, priority, [{"product_id": product.id, "quantity": qty}], "sales")


def _claims(db, product_id) -> Decimal:
    return db.execute(
        select(func.coalesce(func.sum(SalesOrderItem.assembled_quantity), 0)).where(
            SalesOrderItem.product_id == product_id
        )
    ).scalar_one()


def _total_on_hand(db) -> Decimal:
    return db.execute(select(func.sum(StockItem.qty_on_hand))).scalar_one()


def test_scenario_a_urgent_order_takes_claim_from_normal_order(db_session, product_factory):
    """
    GIVEN X on_hand=5, O1 (normal) assemblée pour 5 -> ledger à 0
    AND O2 (urgent) demande 3 -> manque 3
    WHEN seize(O2)
    THEN O1 manque 3, O2 manque 0, ledger toujours à 0
    """
    x = product_factory("X", 5)
    o1 = _order(db_session, "O1", x, 5)
    fulfillment.assemble_order(db_session, o1.id, "picker")
    assert ledger.get(db_session, x.id) == Decimal("0")

    o2 = _order(db_session, "O2", x, 3, OrderPriority.urgent)
    assert fulfillment.get_shortage(db_session, o2.id).total_shortage == Decimal("3")

    result = seizure.seize(db_session, o2.id, "manager")

    assert result.total_reclaimed == Decimal("3")
    assert result.remaining_shortage == Decimal("0")
    assert result.donor_order_ids == (o1.id,)
    assert fulfillment.get_shortage(db_session, o1.id).total_shortage == Decimal("3")
    assert fulfillment.get_shortage(db_session, o2.id).total_shortage == Decimal("0")
    assert ledger.get(db_session, x.id) == Decimal("0")

    o1 = fulfillment.get_order(db_session, o1.id)
    o2 = fulfillment.get_order(db_session, o2.id)
    assert o1.status == SalesOrderStatus.awaiting_production
    assert o2.status == SalesOrderStatus.ready_to_assemble
    assert o1.items[0].assembled_quantity == Decimal("2")
    assert not o1.items[0].is_assembled
    assert o2.items[0].is_assembled
    assert o1.history[-2].action == "stock_seized_from"
    assert any(h.action == "stock_seized" for h in o2.history)

    # l'assemblage final de O2 ne débite plus rien : les unités sont déjà sorties
    count = len(ledger.history(db_session, x.id))
    o2 = fulfillment.assemble_order(db_session, o2.id, "picker")
    assert o2.status == SalesOrderStatus.assembled
    assert len(ledger.history(db_session, x.id)) == count


def test_seizure_conserves_stock_and_claims(db_session, product_factory):
    x = product_factory("XC", 6)
    o1 = _order(db_session, "C1", x, 4)
    fulfillment.assemble_order(db_session, o1.id, "picker")
    o2 = _order(db_session, "C2", x, 2, OrderPriority.high)
    fulfillment.assemble_order(db_session, o2.id, "picker")
    target = _order(db_session, "C3", x, 5, OrderPriority.urgent)

    on_hand_before = _total_on_hand(db_session)
    claims_before = _claims(db_session, x.id)

    result = seizure.seize(db_session, target.id, "manager")

    assert result.total_reclaimed == Decimal("5")
    assert _total_on_hand(db_session) == on_hand_before
    # les réclamations changent de commande, le total ne bouge pas
    assert _claims(db_session, x.id) == claims_before
    # le normal (C1) cède d'abord ses 4, puis le high (C2) 1
    assert [(s.donor_order_id, s.quantity) for s in result.steps] == [(o1.id, Decimal("4")), (o2.id, Decimal("1"))]


def test_tie_break_earliest_created_loses_first(db_session, product_factory):
    x = product_factory("XT", 4)
    late = _order(db_session, "LATE", x, 2)
    early = _order(db_session, "EARLY", x, 2)
    fulfillment.assemble_order(db_session, late.id, "picker")
    fulfillment.assemble_order(db_session, early.id, "picker")

    # même priorité : seule la date de création départage
    db_session.get(SalesOrder, early.id).created_at = datetime(2020, 1, 1)
    db_session.get(SalesOrder, late.id).created_at = datetime(2020, 1, 2)
    db_session.commit()

    target = _order(db_session, "TB", x, 2, OrderPriority.high)
    result = seizure.seize(db_session, target.id, "manager")

    assert [s.donor_order_id for s in result.steps] == [early.id]


def test_build_reclaim_plan_is_pure_and_ordered():
    now = datetime(2024, 1, 1)
    donors = [
        seizure.ClaimSnapshot(10, 100, 1, Decimal("3"), SalesOrderStatus.assembled, 1, now),
        seizure.ClaimSnapshot(11, 110, 1, Decimal("3"), SalesOrderStatus.assembled, 0, now + timedelta(hours=1)),
        seizure.ClaimSnapshot(12, 120, 1, Decimal("3"), SalesOrderStatus.assembled, 0, now),
        seizure.ClaimSnapshot(13, 130, 1, Decimal("3"), SalesOrderStatus.assembled, 2, now),  # même rang que la cible
        seizure.ClaimSnapshot(14, 140, 2, Decimal("3"), SalesOrderStatus.assembled, 0, now),  # autre produit
    ]
    short = [seizure.ShortLine(item_id=1, product_id=1, shortage=Decimal("7"))]

    plan = seizure.build_reclaim_plan(99, 2, SalesOrderStatus.new, ((1, Decimal("0")),), short, donors)

    assert [(s.donor_order_id, s.quantity) for s in plan.steps] == [
        (12, Decimal("3")),
        (11, Decimal("3")),
        (10, Decimal("1")),
    ]
    assert plan.uncovered == ()
    assert plan.donor_order_ids == (10, 11, 12)
    assert donors[0].assembled_quantity == Decimal("3")


def test_equal_priority_is_not_a_donor(db_session, product_factory):
    x = product_factory("XE", 2)
    o1 = _order(db_session, "E1", x, 2, OrderPriority.high)
    fulfillment.assemble_order(db_session, o1.id, "picker")
    o2 = _order(db_session, "E2", x, 2, OrderPriority.high)

    with pytest.raises(SeizureUnavailable):
        seizure.seize(db_session, o2.id, "manager")

    assert fulfillment.get_order(db_session, o1.id).status == SalesOrderStatus.assembled


def test_no_shortage_is_a_noop(db_session, product_factory):
    x = product_factory("XN", 5)
    o = _order(db_session, "N1", x, 2, OrderPriority.urgent)

    result = seizure.seize(db_session, o.id, "manager")
    assert result.steps == ()
    assert result.total_reclaimed == Decimal("0")


def test_partial_seizure_reports_remaining_shortage(db_session, product_factory):
    x = product_factory("XP", 2)
    donor = _order(db_session, "P1", x, 2)
    fulfillment.assemble_order(db_session, donor.id, "picker")
    target = _order(db_session, "P2", x, 5, OrderPriority.urgent)

    result = seizure.seize(db_session, target.id, "manager")

    assert result.total_reclaimed == Decimal("2")
    assert result.remaining_shortage == Decimal("3")
    assert fulfillment.get_order(db_session, target.id).status == SalesOrderStatus.awaiting_production


def test_seizing_reserved_claim_keeps_ledger_consistent(db_session, product_factory):
    """
    GIVEN un donneur en ASSEMBLING : 2 X réservés, pas encore débités
    WHEN une commande urgente les saisit puis s'assemble
    THEN la réservation suit la réclamation et le débit a lieu une seule fois
    """
    x = product_factory("XR", 2)
    y = product_factory("YR", 0)
    donor = fulfillment.create_order(
        db_session,
        "R1",
        OrderPriority.normal,
        [{"product_id": x.id, "quantity": 2}, {"product_id": y.id, "quantity": 1}],
        "sales",
    )
    fulfillment.assemble_item(db_session, donor.id, donor.items[0].id, "picker")
    db_session.refresh(x)
    assert x.qty_reserved == Decimal("2")

    target = _order(db_session, "R2", x, 2, OrderPriority.urgent)
    seizure.seize(db_session, target.id, "manager")

    db_session.refresh(x)
    assert x.qty_reserved == Decimal("2")
    assert x.qty_on_hand == Decimal("2")

    fulfillment.assemble_order(db_session, target.id, "picker")
    db_session.refresh(x)
    assert x.qty_on_hand == Decimal("0")
    assert x.qty_reserved == Decimal("0")


def test_donor_changed_between_plan_and_commit_aborts(db_session, session_factory, product_factory):
    x = product_factory("XM", 3)
    donor = _order(db_session, "M1", x, 3)
    fulfillment.assemble_order(db_session, donor.id, "picker")
    target = _order(db_session, "M2", x, 3, OrderPriority.urgent)

    plan = seizure.plan_seizure(db_session, target.id)
    assert plan.steps

    # une autre session expédie le donneur entre le plan et le commit
    other = session_factory()
    try:
        fulfillment.ship_order(other, donor.id, "shipper")
    finally:
        other.close()

    received = []
    events.bus.subscribe("sales_order.seized", received.append)
    try:
        with pytest.raises(ConcurrentModification):
            seizure.commit_plan(db_session, plan, "manager")
    finally:
        events.bus.unsubscribe("sales_order.seized", received.append)

    assert received == []
    target = fulfillment.get_order(db_session, target.id)
    assert target.items[0].assembled_quantity == Decimal("0")
    donor = fulfillment.get_order(db_session, donor.id)
    assert donor.status == SalesOrderStatus.shipped
    assert donor.items[0].assembled_quantity == Decimal("3")


def test_assemble_item_completes_order_whose_line_was_seized(db_session, product_factory):
    """
    GIVEN le scénario A après seize(O2) : la seule ligne de O2 est entièrement réclamée
    WHEN assemble_item(O2, ligne)
    THEN O2 passe ASSEMBLED sans nouveau débit
    """
    x = product_factory("XS", 5)
    o1 = _order(db_session, "S1", x, 5)
    fulfillment.assemble_order(db_session, o1.id, "picker")
    o2 = _order(db_session, "S2", x, 3, OrderPriority.urgent)
    seizure.seize(db_session, o2.id, "manager")

    count = len(ledger.history(db_session, x.id))
    o2 = fulfillment.assemble_item(db_session, o2.id, o2.items[0].id, "picker")

    assert o2.status == SalesOrderStatus.assembled
    assert o2.items[0].debited_quantity == Decimal("3")
    assert len(ledger.history(db_session, x.id)) == count
    assert ledger.get(db_session, x.id) == Decimal("0")

    # rejouer reste sans effet
    o2 = fulfillment.assemble_item(db_session, o2.id, o2.items[0].id, "picker")
    assert o2.status == SalesOrderStatus.assembled
