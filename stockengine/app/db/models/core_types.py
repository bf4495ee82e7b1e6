import enum


class ItemClass(str, enum.Enum):
    finished_good = "FINISHED_GOOD"
    raw_material = "RAW_MATERIAL"


class MovementType(str, enum.Enum):
    initial = "INITIAL"
    receipt = "RECEIPT"
    issue = "ISSUE"
    adjustment = "ADJUSTMENT"
    reserve = "RESERVE"
    unreserve = "UNRESERVE"
    order_assembly = "ORDER_ASSEMBLY"
    order_return = "ORDER_RETURN"
    production_consumption = "PRODUCTION_CONSUMPTION"
    production_output = "PRODUCTION_OUTPUT"
    reconciliation = "RECONCILIATION"


class OrderPriority(str, enum.Enum):
    normal = "NORMAL"
    high = "HIGH"
    urgent = "URGENT"


# higher rank wins a seizure
PRIORITY_RANK = {
    OrderPriority.normal: 0,
    OrderPriority.high: 1,
    OrderPriority.urgent: 2,
}


class SalesOrderStatus(str, enum.Enum):
    new = "NEW"
    awaiting_production = "AWAITING_PRODUCTION"
    ready_to_assemble = "READY_TO_ASSEMBLE"
    assembling = "ASSEMBLING"
    assembled = "ASSEMBLED"
    shipped = "SHIPPED"
    delivered = "DELIVERED"
    cancelled = "CANCELLED"


PRE_ASSEMBLY_STATUSES = {
    SalesOrderStatus.new,
    SalesOrderStatus.awaiting_production,
    SalesOrderStatus.ready_to_assemble,
}

TERMINAL_ORDER_STATUSES = {
    SalesOrderStatus.delivered,
    SalesOrderStatus.cancelled,
}

# orders whose claims are still inside the warehouse
CLAIM_HOLDING_STATUSES = {
    SalesOrderStatus.new,
    SalesOrderStatus.awaiting_production,
    SalesOrderStatus.ready_to_assemble,
    SalesOrderStatus.assembling,
    SalesOrderStatus.assembled,
}


class ProductionStatus(str, enum.Enum):
    planned = "PLANNED"
    awaiting_materials = "AWAITING_MATERIALS"
    in_progress = "IN_PROGRESS"
    completed = "COMPLETED"
    cancelled = "CANCELLED"


ACTIVE_PRODUCTION_STATUSES = {
    ProductionStatus.planned,
    ProductionStatus.awaiting_materials,
    ProductionStatus.in_progress,
}


class CheckStatus(str, enum.Enum):
    setup = "SETUP"
    counting = "COUNTING"
    review = "REVIEW"
    completed = "COMPLETED"
    cancelled = "CANCELLED"


ACTIVE_CHECK_STATUSES = {
    CheckStatus.setup,
    CheckStatus.counting,
    CheckStatus.review,
}
