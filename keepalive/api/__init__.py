"""
HTTP routes. Every route is read-only with respect to the supervisor.
"""

from fastapi import APIRouter

from keepalive.api.dashboard import router as dashboard_router
from keepalive.api.health import router as health_router

api_router = APIRouter()
api_router.include_router(dashboard_router)
api_router.include_router(health_router)

__all__ = ["api_router"]
