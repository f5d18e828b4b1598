"""
API Routes

导出所有 API 路由模块。
"""

from mediaorder.routes.account import router as account_router
from mediaorder.routes.ai import router as ai_router
from mediaorder.routes.catalog import router as catalog_router
from mediaorder.routes.orders import router as orders_router
from mediaorder.routes.pricing import router as pricing_router

__all__ = [
    "account_router",
    "ai_router",
    "catalog_router",
    "orders_router",
    "pricing_router",
]
