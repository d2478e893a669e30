"""API routers."""

from songforge.routers.metrics_router import router as metrics_router
from songforge.routers.orders_router import router as orders_router
from songforge.routers.webhook_router import router as webhook_router

__all__ = ["metrics_router", "orders_router", "webhook_router"]
