import threading
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal

import pytest

from stockengine.app.db.models.core_types import ItemClass
from stockengine.app.db.models.models_v1 import StockItem
from stockengine.services import ledger
from stockengine.services.errors import InsufficientStock, LockTimeout
from stockengine.services.locking import LockManager, stock_key


def test_keys_are_acquired_in_sorted_order():
    manager = LockManager(timeout=1)
    held = manager.hold([stock_key(3), ("order", 9), stock_key(1), stock_key(3)])
    assert held.keys == [("order", 9), ("stock", 1), ("stock", 3)]


def test_lock_timeout_releases_what_was_taken():
    """
    GIVEN un autre thread qui tient ("stock", 2)
    WHEN on demande ("stock", 1) + ("stock", 2) avec un timeout court
    THEN LockTimeout, et ("stock", 1) est de nouveau libre
    """
    manager = LockManager(timeout=0.1)
    holding = threading.Event()
    release = threading.Event()

    def holder():
        with manager.hold([stock_key(2)]):
            holding.set()
            release.wait(5)

    t = threading.Thread(target=holder)
    t.start()
    try:
        assert holding.wait(5)
        with pytest.raises(LockTimeout) as exc:
            with manager.hold([stock_key(1), stock_key(2)]):
                pass
        assert exc.value.key == stock_key(2)

        acquired = []

        def other():
            with manager.hold([stock_key(1)], timeout=1):
                acquired.append(True)

        t2 = threading.Thread(target=other)
        t2.start()
        t2.join(5)
        assert acquired == [True]
    finally:
        release.set()
        t.join(5)


def test_reentrant_for_same_thread():
    manager = LockManager(timeout=0.1)
    with manager.hold([stock_key(1)]):
        with manager.hold([stock_key(1), stock_key(2)]):
            pass


def test_registry_forgets_released_keys():
    manager = LockManager(timeout=1)
    with manager.hold([stock_key(1), ("order", 7)]):
        with manager.hold([stock_key(1)]):
            assert manager.active_keys == [("order", 7), ("stock", 1)]
    assert manager.active_keys == []

    for i in range(50):
        with manager.hold([stock_key(i)]):
            pass
    assert manager.active_keys == []


def test_concurrent_adjusts_are_linearized(session_factory):
    """
    GIVEN une matière à 100
    WHEN 20 threads retirent chacun 5 en parallèle, puis 1 de plus
    THEN stock final 0, un seul échec, aucun stock négatif
    """
    setup = session_factory()
    item = StockItem(
        sku="MAT-CONC",
        name="Concurrent",
        item_class=ItemClass.raw_material,
        unit="unit",
        qty_on_hand=Decimal("0"),
        qty_reserved=Decimal("0"),
        active=True,
    )
    setup.add(item)
    setup.commit()
    item_id = item.id
    ledger.adjust(setup, item_id, ItemClass.raw_material, 100, "initial", "test")
    setup.close()

    def take(_):
        db = session_factory()
        try:
            ledger.adjust(db, item_id, ItemClass.raw_material, -5, "pick", "worker")
            return "ok"
        except InsufficientStock:
            return "short"
        finally:
            db.close()

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(take, range(21)))

    assert results.count("ok") == 20
    assert results.count("short") == 1

    check = session_factory()
    try:
        assert ledger.get(check, item_id) == Decimal("0")
        assert len(ledger.history(check, item_id)) == 21
    finally:
        check.close()


def test_concurrent_receipts_with_same_key_apply_once(session_factory):
    """
    GIVEN 6 threads qui postent la même réception (même Idempotency-Key)
    THEN un seul mouvement, tous reçoivent la même quantité, aucune erreur
    """
    setup = session_factory()
    item = StockItem(
        sku="MAT-IDEM",
        name="Idempotent",
        item_class=ItemClass.raw_material,
        unit="unit",
        qty_on_hand=Decimal("0"),
        qty_reserved=Decimal("0"),
        active=True,
    )
    setup.add(item)
    setup.commit()
    item_id = item.id
    setup.close()

    barrier = threading.Barrier(6)

    def receive(_):
        db = session_factory()
        try:
            barrier.wait(5)
            return ledger.adjust(db, item_id, ItemClass.raw_material, 10, "purchase receipt", "dock", idempotency_key="GRN-42")
        finally:
            db.close()

    with ThreadPoolExecutor(max_workers=6) as pool:
        results = list(pool.map(receive, range(6)))

    assert results == [Decimal("10")] * 6

    check = session_factory()
    try:
        assert ledger.get(check, item_id) == Decimal("10")
        assert len(ledger.history(check, item_id)) == 1
    finally:
        check.close()
