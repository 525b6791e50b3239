"""Application settings loaded from environment variables."""

from __future__ import annotations

import tempfile
from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "Contact API"
    app_version: str = "0.1.0"
    api_prefix: str = "/api"
    port: int = 3000
    environment: Literal["development", "production"] = "development"
    log_level: str = "INFO"
    service_name: str = "contact-api"

    # Admin listing fails closed when unset
    admin_token: str | None = None
    # Comma-separated; "*" only when set explicitly
    allowed_origin: str | None = None

    store_backend: Literal["file", "sql"] = "file"
    data_dir: Path = Path("data")
    database_url: str = "sqlite:///data/submissions.db"

    supabase_url: str | None = None
    supabase_key: str | None = None
    supabase_table: str = "submissions"
    supabase_max_attempts: int = 2

    sendgrid_api_key: str | None = None
    sendgrid_to: str | None = None
    sendgrid_from: str | None = None
    sendgrid_url: str = "https://api.sendgrid.com/v3/mail/send"
    sendgrid_max_attempts: int = 3

    smtp_host: str | None = None
    smtp_port: int = 587
    smtp_secure: bool = False
    smtp_user: str | None = None
    smtp_pass: str | None = None
    smtp_from: str | None = None
    smtp_max_attempts: int = 2

    fallback_path: Path = Path(tempfile.gettempdir()) / "contact_submissions.json"

    channel_timeout_seconds: float = 8.0
    retry_base_delay_seconds: float = 0.5
    retry_backoff_multiplier: float = 3.0

    rate_limit_window_seconds: float = 60.0
    rate_limit_max_requests: int = 20

    debug_echo_enabled: bool = False

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def submissions_path(self) -> Path:
        return self.data_dir / "submissions.json"

    @property
    def notify_recipient(self) -> str | None:
        return self.sendgrid_to or self.smtp_from or self.smtp_user


__all__ = ["Settings"]
