from __future__ import annotations

from decimal import Decimal


class StockEngineError(Exception):
    """Erreur métier ; `code` est stable et exposé tel quel par l'API."""

    code = "stock_engine_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFound(StockEngineError):
    code = "not_found"

    def __init__(self, entity: str, entity_id):
        super().__init__(f"{entity} {entity_id} not found")
        self.entity = entity
        self.entity_id = entity_id


class UnknownProduct(NotFound):
    code = "unknown_product"

    def __init__(self, product_id: int):
        super().__init__("Product", product_id)


class UnknownMaterial(NotFound):
    code = "unknown_material"

    def __init__(self, material_id: int):
        super().__init__("Material", material_id)


class InsufficientStock(StockEngineError):
    code = "insufficient_stock"

    def __init__(self, stock_item_id: int, requested: Decimal, available: Decimal):
        super().__init__(
            f"Insufficient stock for item {stock_item_id} (requested={requested}, available={available})"
        )
        self.stock_item_id = stock_item_id
        self.requested = requested
        self.available = available


class InvalidQuantity(StockEngineError):
    code = "invalid_quantity"


class InvalidStateTransition(StockEngineError):
    code = "invalid_state_transition"

    def __init__(self, entity: str, current, action: str):
        current_value = getattr(current, "value", current)
        super().__init__(f"Cannot {action} {entity} in status {current_value}")
        self.entity = entity
        self.current = current
        self.action = action


class ConcurrentModification(StockEngineError):
    code = "concurrent_modification"


class LockTimeout(StockEngineError):
    code = "lock_timeout"

    def __init__(self, key, timeout: float):
        super().__init__(f"Timed out after {timeout}s waiting for lock {key}")
        self.key = key
        self.timeout = timeout


class ActiveCheckExists(StockEngineError):
    code = "active_check_exists"

    def __init__(self, check_id: int):
        super().__init__(f"Inventory check {check_id} is still active")
        self.check_id = check_id


class SeizureUnavailable(StockEngineError):
    code = "seizure_unavailable"


class DuplicateReference(StockEngineError):
    code = "duplicate_reference"

    def __init__(self, entity: str, reference: str):
        super().__init__(f"{entity} reference {reference!r} already exists")
        self.entity = entity
        self.reference = reference
