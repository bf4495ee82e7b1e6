from fastapi import APIRouter

from stockengine.app.api.v1.endpoints.health import router as health_router
from stockengine.app.api.v1.endpoints.stock_items import router as stock_items_router
from stockengine.app.api.v1.endpoints.sales_orders import router as sales_orders_router
from stockengine.app.api.v1.endpoints.production_orders import router as production_orders_router
from stockengine.app.api.v1.endpoints.mrp import router as mrp_router
from stockengine.app.api.v1.endpoints.purchasing import router as purchasing_router
from stockengine.app.api.v1.endpoints.inventory_checks import router as inventory_checks_router

router = APIRouter()
router.include_router(health_router, tags=["health"])
router.include_router(stock_items_router, tags=["stock_items"])
router.include_router(sales_orders_router, tags=["sales_orders"])
router.include_router(production_orders_router, tags=["production_orders"])
router.include_router(mrp_router, tags=["mrp"])
router.include_router(purchasing_router, tags=["purchasing"])
router.include_router(inventory_checks_router, tags=["inventory_checks"])
