"""Contact submission endpoints."""

from __future__ import annotations

import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, Header, Request

from contact_api.api.deps import get_submission_service, read_json_object
from contact_api.services.rate_limit import get_client_ip
from contact_api.services.submission import RequestMeta, SubmissionService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/users", tags=["submissions"])


@router.post("")
async def create_submission(
    request: Request,
    service: SubmissionService = Depends(get_submission_service),
) -> dict[str, Any]:
    """Validate, store and relay one contact form submission."""
    body = await read_json_object(request)
    logger.info(
        "Submission received: %s",
        {key: len(value) for key, value in body.items() if isinstance(value, str)},
    )
    meta = RequestMeta(ip_address=get_client_ip(request), user_agent=request.headers.get("user-agent"))
    result = await service.create_submission(body, meta)
    return result.to_body()


@router.get("")
async def list_submissions(
    x_admin_token: Optional[str] = Header(default=None),
    service: SubmissionService = Depends(get_submission_service),
) -> dict[str, Any]:
    """Return every stored submission; requires the ``x-admin-token`` header."""
    submissions = await service.list_submissions(x_admin_token)
    return {"ok": True, "submissions": [item.model_dump(mode="json") for item in submissions]}


__all__ = ["router"]
