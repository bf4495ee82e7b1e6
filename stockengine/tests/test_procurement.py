from decimal import Decimal

import pytest

from stockengine.app.db.models.core_types import MovementType
from stockengine.services import ledger, procurement, production
from stockengine.services.errors import InvalidQuantity


def test_purchase_request_lines_only_keep_deficits(db_session, chair_with_bom):
    """
    GIVEN 25 chaises planifiées (100 LEG, 25 SEAT) pour 100 LEG / 20 SEAT en stock
    THEN seule SEAT est à acheter (5)
    """
    chair, leg, seat = chair_with_bom
    production.create_production_order(db_session, "MO-PUR", [{"product_id": chair.id, "quantity": 25}], "a")

    lines = procurement.purchase_request_lines(db_session)

    assert [(r.material_id, r.deficit) for r in lines] == [(seat.id, Decimal("5"))]


def test_receive_goods_is_a_positive_adjust(db_session, material_factory):
    m = material_factory("MAT-RCV", 2)

    assert procurement.receive_goods(db_session, m.id, 8, "buyer", idempotency_key="grn-1") == Decimal("10")
    assert procurement.receive_goods(db_session, m.id, 8, "buyer", idempotency_key="grn-1") == Decimal("10")

    last = ledger.history(db_session, m.id)[-1]
    assert last.movement_type == MovementType.receipt
    assert last.reason == "purchase receipt"
    assert ledger.get(db_session, m.id) == Decimal("10")

    with pytest.raises(InvalidQuantity):
        procurement.receive_goods(db_session, m.id, 0, "buyer")
