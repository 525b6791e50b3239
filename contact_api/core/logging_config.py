"""Shared logging configuration."""

from __future__ import annotations

import logging

from pythonjsonlogger import jsonlogger

_CONFIGURED = False

# Access logs would duplicate the request middleware's line
_QUIET_LOGGERS = ("uvicorn.access", "httpx", "httpcore")


class _ServiceNameFilter(logging.Filter):
    def __init__(self, service_name: str) -> None:
        super().__init__()
        self.service_name = service_name

    def filter(self, record: logging.LogRecord) -> bool:  # pragma: no cover - trivial
        record.service = self.service_name
        return True


def setup_logging(level: str = "INFO", service_name: str = "contact-api") -> None:
    """Configure root logging once with a JSON formatter tagged by service."""

    global _CONFIGURED
    if _CONFIGURED:
        return

    handler = logging.StreamHandler()
    handler.setFormatter(
        jsonlogger.JsonFormatter("%(asctime)s %(levelname)s %(name)s %(message)s %(service)s")
    )
    handler.addFilter(_ServiceNameFilter(service_name))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level.upper())
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    logging.captureWarnings(True)
    _CONFIGURED = True


__all__ = ["setup_logging"]
