"""Client-facing error taxonomy.

Every error carries the HTTP status it maps to and a human-readable message;
the exception handlers in ``contact_api.main`` render them as
``{"ok": false, "error": ...}`` bodies.
"""

from __future__ import annotations

from typing import Any


class ContactApiError(Exception):
    status_code: int = 500
    error: str = "Server error"

    def __init__(self, error: str | None = None) -> None:
        super().__init__(error or self.error)
        if error:
            self.error = error

    def to_body(self) -> dict[str, Any]:
        return {"ok": False, "error": self.error}


class ValidationError(ContactApiError):
    status_code = 400
    error = "Invalid submission"

    def __init__(self, errors: list[dict[str, str]]) -> None:
        super().__init__()
        self.errors = errors

    def to_body(self) -> dict[str, Any]:
        return {"ok": False, "error": self.error, "errors": self.errors}


class MalformedRequestBody(ContactApiError):
    status_code = 400
    error = "Malformed request body"


class Unauthorized(ContactApiError):
    status_code = 401
    error = "Unauthorized"


class OriginNotAllowed(ContactApiError):
    status_code = 403
    error = "Origin not allowed"


class RateLimited(ContactApiError):
    status_code = 429
    error = "Too many requests. Please try again later."

    def __init__(self, retry_after: int) -> None:
        super().__init__()
        self.retry_after = retry_after


class PersistenceError(ContactApiError):
    status_code = 500
    error = "Failed to save submission"


class DeliveryExhausted(ContactApiError):
    status_code = 502
    error = "Submission could not be delivered. Please try again later."


__all__ = [
    "ContactApiError",
    "ValidationError",
    "MalformedRequestBody",
    "Unauthorized",
    "OriginNotAllowed",
    "RateLimited",
    "PersistenceError",
    "DeliveryExhausted",
]
