from fastapi import APIRouter

from backend.app.api.v1.endpoints.health import router as health_router
from backend.app.api.v1.endpoints.orders import router as orders_router
from backend.app.api.v1.endpoints.pricing import router as pricing_router
from backend.app.api.v1.endpoints.stock import router as stock_router
from backend.app.api.v1.endpoints.supplier_orders import router as supplier_orders_router
from backend.app.api.v1.endpoints.suppliers import router as suppliers_router

router = APIRouter()
router.include_router(health_router, tags=["health"])
router.include_router(suppliers_router, tags=["suppliers"])
router.include_router(supplier_orders_router, tags=["procurement"])
router.include_router(orders_router, tags=["orders"])
router.include_router(stock_router, tags=["stock"])
router.include_router(pricing_router, tags=["pricing"])
