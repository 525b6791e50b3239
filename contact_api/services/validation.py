"""Contact form field validation and normalization."""

from __future__ import annotations

import html
import re
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from contact_api.core.errors import ValidationError

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

_MESSAGES = {
    "missing": "This field is required.",
    "string_type": "Must be a string.",
    "string_too_short": "Must not be empty.",
}


class ValidatedSubmission(BaseModel):
    """Submitted fields after length checks and HTML escaping."""

    model_config = ConfigDict(str_strip_whitespace=True, strict=True, extra="ignore")

    name: str = Field(min_length=1, max_length=200)
    email: str = Field(max_length=254)
    subject: str = Field(min_length=1, max_length=200)
    message: str = Field(min_length=1, max_length=2000)
    request_id: Optional[str] = Field(default=None, min_length=1, max_length=200)

    @field_validator("name", "subject", "message")
    @classmethod
    def escape_html(cls, value: str) -> str:
        return html.escape(value, quote=True)

    @field_validator("email")
    @classmethod
    def normalize_email(cls, value: str) -> str:
        if not EMAIL_PATTERN.match(value):
            raise ValueError("Must be a valid email address.")
        local, _, domain = value.rpartition("@")
        return f"{local}@{domain.lower()}"

    def contact_fields(self) -> dict[str, str]:
        return self.model_dump(include={"name", "email", "subject", "message"})


def _describe(error: dict[str, Any]) -> dict[str, str]:
    field = ".".join(str(part) for part in error.get("loc", ())) or "body"
    kind = error.get("type", "")
    if kind == "string_too_long":
        limit = (error.get("ctx") or {}).get("max_length")
        message = f"Must be at most {limit} characters."
    elif kind == "value_error":
        message = str((error.get("ctx") or {}).get("error") or error.get("msg"))
    else:
        message = _MESSAGES.get(kind, error.get("msg", "Invalid value."))
    return {"field": field, "message": message}


def validate_submission(raw: dict[str, Any]) -> ValidatedSubmission:
    """Validate a raw request body, raising ``ValidationError`` with per-field errors."""

    try:
        return ValidatedSubmission.model_validate(raw)
    except PydanticValidationError as exc:
        raise ValidationError([_describe(err) for err in exc.errors()]) from exc


__all__ = ["EMAIL_PATTERN", "ValidatedSubmission", "validate_submission"]
