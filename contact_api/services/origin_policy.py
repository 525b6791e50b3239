"""CORS origin gating shared by preflight and actual requests."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable

logger = logging.getLogger(__name__)

ALLOWED_METHODS = "GET,POST,OPTIONS"
ALLOWED_HEADERS = "Content-Type,x-admin-token"
WILDCARD = "*"


@dataclass(frozen=True)
class OriginDecision:
    allowed: bool
    allow_origin: str | None = None
    credentials: bool = False

    def headers(self) -> dict[str, str]:
        """Response headers advertising this decision; empty when rejected."""

        if not self.allowed:
            return {}
        headers = {
            "Access-Control-Allow-Methods": ALLOWED_METHODS,
            "Access-Control-Allow-Headers": ALLOWED_HEADERS,
        }
        if self.allow_origin:
            headers["Access-Control-Allow-Origin"] = self.allow_origin
            if self.allow_origin != WILDCARD:
                headers["Vary"] = "Origin"
        if self.credentials:
            headers["Access-Control-Allow-Credentials"] = "true"
        return headers


def parse_origins(value: str | None) -> tuple[str, ...]:
    if not value:
        return ()
    return tuple(origin.strip().rstrip("/") for origin in value.split(",") if origin.strip())


class OriginPolicy:
    """Decide whether a request ``Origin`` may receive a CORS response."""

    def __init__(self, mode: str, allowed_origins: Iterable[str] = ()) -> None:
        self.mode = mode
        self.allowed_origins = tuple(allowed_origins)

    @classmethod
    def from_settings(cls, settings) -> "OriginPolicy":
        policy = cls(settings.environment, parse_origins(settings.allowed_origin))
        if settings.is_production and not policy.allowed_origins:
            logger.error("ALLOWED_ORIGIN must be set in production; browser origins will be rejected")
        return policy

    @property
    def is_production(self) -> bool:
        return self.mode == "production"

    def evaluate(self, origin: str | None) -> OriginDecision:
        # "null" is what browsers send from file:// pages
        if not origin or origin == "null":
            return OriginDecision(allowed=True, allow_origin=self._non_browser_origin())

        if not self.is_production:
            return OriginDecision(allowed=True, allow_origin=origin, credentials=True)

        if WILDCARD in self.allowed_origins:
            return OriginDecision(allowed=True, allow_origin=WILDCARD)
        if origin.rstrip("/") in self.allowed_origins:
            return OriginDecision(allowed=True, allow_origin=origin, credentials=True)

        logger.warning("Rejected request from origin %s", origin)
        return OriginDecision(allowed=False)

    def _non_browser_origin(self) -> str | None:
        if not self.is_production:
            return WILDCARD
        if len(self.allowed_origins) == 1:
            return self.allowed_origins[0]
        return None


__all__ = [
    "ALLOWED_HEADERS",
    "ALLOWED_METHODS",
    "OriginDecision",
    "OriginPolicy",
    "parse_origins",
]
