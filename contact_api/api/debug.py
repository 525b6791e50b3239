"""Diagnostic endpoint for checking POST and CORS behavior from a browser."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Request

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/_debug", tags=["debug"])


@router.post("/echo")
async def echo(request: Request) -> dict[str, Any]:
    origin = request.headers.get("origin")
    try:
        body = await request.json()
    except ValueError:
        body = None
    logger.info("Debug echo request from origin %s", origin)
    return {"ok": True, "origin": origin, "body": body}


__all__ = ["router"]
