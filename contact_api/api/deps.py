"""API dependencies."""

from __future__ import annotations

from typing import Any

from fastapi import Request

from contact_api.core.errors import MalformedRequestBody
from contact_api.services.submission import SubmissionService


def get_submission_service(request: Request) -> SubmissionService:
    return request.app.state.submission_service


async def read_json_object(request: Request) -> dict[str, Any]:
    """Parse the body as a JSON object or raise ``MalformedRequestBody``."""
    try:
        body = await request.json()
    except ValueError as exc:
        raise MalformedRequestBody() from exc
    if not isinstance(body, dict):
        raise MalformedRequestBody("Request body must be a JSON object")
    return body
