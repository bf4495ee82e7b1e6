"""
Procurement service.

Ce module alimente les demandes d'achat (besoins MRP en déficit) et
enregistre les réceptions, mais ne contient AUCUNE logique de calcul de stock.

Toute la logique stock est centralisée dans :
    stockengine.services.ledger
"""

from __future__ import annotations

import logging
from decimal import Decimal

from sqlalchemy.orm import Session

from stockengine.app.db.models.core_types import ItemClass, MovementType
from stockengine.services import ledger, production
from stockengine.services.errors import InvalidQuantity
from stockengine.services.mrp import MaterialRequirement, compute_requirements

logger = logging.getLogger(__name__)


def purchase_request_lines(db: Session) -> list[MaterialRequirement]:
    return [r for r in compute_requirements(db) if r.deficit > 0]


def receive_goods(
    db: Session,
    item_id: int,
    quantity,
    actor: str,
    idempotency_key: str | None = None,
    *,
    item_class: ItemClass | None = None,
) -> Decimal:
    """
    Réception fournisseur : ajustement positif du ledger.

    Les ordres de production en attente de matière sont ensuite réévalués.
    """
    quantity = ledger.as_quantity(quantity)
    if quantity <= 0:
        raise InvalidQuantity("received quantity must be > 0")

    new_quantity = ledger.adjust(
        db,
        item_id,
        item_class,
        quantity,
        "purchase receipt",
        actor,
        movement_type=MovementType.receipt,
        idempotency_key=idempotency_key,
    )
    released = production.recheck_materials(db, actor)
    if released:
        logger.info(
            "Receipt on item %s changed material status of %s",
            item_id,
            [po.reference for po in released],
        )
    return new_quantity
