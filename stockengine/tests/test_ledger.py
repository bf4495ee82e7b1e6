from decimal import Decimal

import pytest
from sqlalchemy import func, select

from stockengine.app.db.models.core_types import ItemClass, MovementType
from stockengine.app.db.models.models_v1 import StockMovement
from stockengine.services import events, ledger
from stockengine.services.errors import (
    InsufficientStock,
    InvalidQuantity,
    UnknownMaterial,
    UnknownProduct,
)


def _movement_count(db, item_id: int) -> int:
    return db.execute(
        select(func.count(StockMovement.id)).where(StockMovement.stock_item_id == item_id)
    ).scalar_one()


def test_adjust_applies_delta_and_records_one_movement(db_session, material_factory):
    """
    GIVEN une matière à 10
    WHEN on ajuste de +5 puis -3
    THEN stock = 12 et 2 mouvements de plus, dans l'ordre
    """
    mat = material_factory("MAT-A", 10)
    before = _movement_count(db_session, mat.id)

    assert ledger.adjust(db_session, mat.id, ItemClass.raw_material, 5, "recount", "alice") == Decimal("15")
    assert ledger.adjust(db_session, mat.id, ItemClass.raw_material, Decimal("-3"), "breakage", "bob") == Decimal("12")

    assert ledger.get(db_session, mat.id) == Decimal("12")
    assert _movement_count(db_session, mat.id) == before + 2

    hist = ledger.history(db_session, mat.id)
    assert [m.delta for m in hist][-2:] == [Decimal("5"), Decimal("-3")]
    assert hist[-1].new_quantity == Decimal("12")
    assert hist[-1].actor == "bob"
    assert hist[-1].movement_type == MovementType.adjustment


def test_adjust_rejects_negative_result_without_side_effects(db_session, material_factory):
    mat = material_factory("MAT-B", 2)
    before = _movement_count(db_session, mat.id)

    with pytest.raises(InsufficientStock) as exc:
        ledger.adjust(db_session, mat.id, ItemClass.raw_material, -3, "too much", "alice")

    assert exc.value.available == Decimal("2")
    assert ledger.get(db_session, mat.id) == Decimal("2")
    assert _movement_count(db_session, mat.id) == before


def test_adjust_cannot_drop_below_reserved(db_session, product_factory):
    """
    GIVEN on_hand=10 dont 8 réservés
    THEN un ajustement de -3 est refusé (il resterait 7 < 8)
    """
    p = product_factory("FG-RES", 10)
    ledger.reserve(db_session, p.id, 8, "alice")

    with pytest.raises(InsufficientStock):
        ledger.adjust(db_session, p.id, ItemClass.finished_good, -3, "shrink", "alice")

    assert ledger.adjust(db_session, p.id, ItemClass.finished_good, -2, "shrink", "alice") == Decimal("8")
    assert ledger.available(db_session, p.id) == Decimal("0")


def test_adjust_unknown_item_by_class(db_session, product_factory, material_factory):
    p = product_factory("FG-X", 1)
    m = material_factory("MAT-X", 1)

    with pytest.raises(UnknownProduct):
        ledger.adjust(db_session, m.id, ItemClass.finished_good, 1, "r", "a")
    with pytest.raises(UnknownMaterial):
        ledger.adjust(db_session, p.id, ItemClass.raw_material, 1, "r", "a")
    with pytest.raises(UnknownMaterial):
        ledger.adjust(db_session, 999_999, ItemClass.raw_material, 1, "r", "a")


def test_adjust_zero_delta_is_invalid(db_session, material_factory):
    m = material_factory("MAT-Z", 1)
    with pytest.raises(InvalidQuantity):
        ledger.adjust(db_session, m.id, ItemClass.raw_material, 0, "noop", "a")


def test_idempotency_key_replays_previous_result(db_session, material_factory):
    """
    GIVEN un ajustement avec Idempotency-Key
    WHEN il est rejoué avec la même clé
    THEN même résultat, pas de second mouvement, stock inchangé
    """
    m = material_factory("MAT-IDEM", 10)

    first = ledger.adjust(db_session, m.id, ItemClass.raw_material, 4, "receipt", "a", idempotency_key="rcpt-1")
    count = _movement_count(db_session, m.id)
    second = ledger.adjust(db_session, m.id, ItemClass.raw_material, 4, "receipt", "a", idempotency_key="rcpt-1")

    assert first == second == Decimal("14")
    assert _movement_count(db_session, m.id) == count
    assert ledger.get(db_session, m.id) == Decimal("14")


def test_reserve_release_issue(db_session, product_factory):
    p = product_factory("FG-RRI", 10)

    assert ledger.reserve(db_session, p.id, 6, "a") == Decimal("4")
    assert ledger.release(db_session, p.id, 2, "a") == Decimal("6")
    ledger.issue_reserved(db_session, p.id, 4, "a", reason="order assembly")

    db_session.refresh(p)
    assert p.qty_on_hand == Decimal("6")
    assert p.qty_reserved == Decimal("0")

    types = [m.movement_type for m in ledger.history(db_session, p.id)]
    assert types[-3:] == [MovementType.reserve, MovementType.unreserve, MovementType.order_assembly]

    with pytest.raises(InsufficientStock):
        ledger.reserve(db_session, p.id, 7, "a")
    with pytest.raises(InsufficientStock):
        ledger.release(db_session, p.id, 1, "a")


def test_set_quantity_is_absolute(db_session, material_factory):
    m = material_factory("MAT-SET", 10)
    count = _movement_count(db_session, m.id)

    assert ledger.set_quantity(db_session, m.id, ItemClass.raw_material, 7, "count", "a") == Decimal("7")
    assert ledger.get(db_session, m.id) == Decimal("7")
    assert ledger.history(db_session, m.id)[-1].delta == Decimal("-3")
    assert ledger.history(db_session, m.id)[-1].movement_type == MovementType.reconciliation

    # déjà à 7 : pas de mouvement
    ledger.set_quantity(db_session, m.id, ItemClass.raw_material, 7, "count", "a")
    assert _movement_count(db_session, m.id) == count + 1


def test_events_published_after_commit_only(db_session, product_factory):
    received = []

    def handler(evt):
        received.append(evt)

    events.bus.subscribe("stock.*", handler)
    try:
        p = product_factory("FG-EVT", 10, threshold=5)
        received.clear()

        with pytest.raises(InsufficientStock):
            ledger.adjust(db_session, p.id, ItemClass.finished_good, -20, "fail", "a")
        assert received == []

        ledger.adjust(db_session, p.id, ItemClass.finished_good, -6, "sale", "a")
    finally:
        events.bus.unsubscribe("stock.*", handler)

    topics = [e.topic for e in received]
    assert topics == ["stock.movement", "stock.below_threshold"]
    assert received[0].payload["delta"] == "-6"
    assert received[1].payload["sku"] == "FG-EVT"
