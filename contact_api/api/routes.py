"""Root API routers."""

from typing import Any

from fastapi import APIRouter, Request

health_router = APIRouter(tags=["system"])


@health_router.get("/health", summary="Service health check")
async def healthcheck(request: Request) -> dict[str, Any]:
    """Heartbeat plus the delivery channels this instance can use."""

    settings = request.app.state.settings
    chain = request.app.state.submission_service.chain
    return {
        "ok": True,
        "status": "ok",
        "environment": settings.environment,
        "store": settings.store_backend,
        "channels": [channel.name for channel in chain.channels if channel.configured],
    }
