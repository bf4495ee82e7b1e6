import os

# avant tout import de stockengine : pas de Postgres pendant les tests
os.environ.setdefault("DATABASE_URL", "sqlite://")

from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from stockengine.app.api.deps import get_db
from stockengine.app.db.base import Base
from stockengine.app.db.models import models_v1  # noqa: F401
from stockengine.app.db.models.core_types import ItemClass, MovementType
from stockengine.app.db.models.models_v1 import StockItem
from stockengine.app.main import app
from stockengine.services import bom, ledger


@pytest.fixture(scope="function")
def engine(tmp_path):
    """
    Base SQLite isolée par test (fichier, pour que plusieurs sessions /
    threads voient les mêmes données).
    """
    eng = create_engine(
        f"sqlite:///{tmp_path / 'stockengine.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(bind=eng)
    try:
        yield eng
    finally:
        eng.dispose()


@pytest.fixture(scope="function")
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


@pytest.fixture(scope="function")
def db_session(session_factory) -> Session:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(scope="function")
def client(session_factory):
    def _get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = _get_db
    try:
        with TestClient(app) as c:
            yield c
    finally:
        app.dependency_overrides.clear()


# ---------- master data ----------
def make_item(
    db: Session,
    sku: str,
    item_class: ItemClass,
    qty=0,
    *,
    unit: str = "unit",
    threshold=None,
) -> StockItem:
    item = StockItem(
        sku=sku,
        name=sku.title(),
        item_class=item_class,
        unit=unit,
        qty_on_hand=Decimal("0"),
        qty_reserved=Decimal("0"),
        low_stock_threshold=Decimal(str(threshold)) if threshold is not None else None,
        active=True,
    )
    db.add(item)
    db.commit()
    db.refresh(item)
    if Decimal(str(qty)) > 0:
        ledger.adjust(db, item.id, item_class, qty, "initial stock", "test", movement_type=MovementType.initial)
        db.refresh(item)
    return item


@pytest.fixture
def product_factory(db_session):
    def _make(sku: str, qty=0, threshold=None) -> StockItem:
        return make_item(db_session, sku, ItemClass.finished_good, qty, threshold=threshold)

    return _make


@pytest.fixture
def material_factory(db_session):
    def _make(sku: str, qty=0, unit: str = "unit") -> StockItem:
        return make_item(db_session, sku, ItemClass.raw_material, qty, unit=unit)

    return _make


@pytest.fixture
def chair_with_bom(db_session, product_factory, material_factory):
    """
    Produit CHAIR : 4 LEG + 1 SEAT par unité.
    Stock matières : 100 LEG, 20 SEAT.
    """
    chair = product_factory("CHAIR", 0)
    leg = material_factory("LEG", 100)
    seat = material_factory("SEAT", 20)
    bom.set_bom(
        db_session,
        chair.id,
        [
            {"material_id": leg.id, "quantity_per_unit": Decimal("4")},
            {"material_id": seat.id, "quantity_per_unit": Decimal("1")},
        ],
        "test",
    )
    return chair, leg, seat
