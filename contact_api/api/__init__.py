"""API router definitions."""

from fastapi import APIRouter

from .debug import router as debug_router
from .routes import health_router
from .submissions import router as submissions_router

api_router = APIRouter()
api_router.include_router(health_router)
api_router.include_router(submissions_router)

__all__ = ["api_router", "debug_router"]
