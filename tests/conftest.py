from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from contact_api.core.config import Settings
from contact_api.models import Submission
from contact_api.services.channels import ROLE_NOTIFY, ChannelResult, DeliveryChannel, RetryPolicy


class FakeChannel(DeliveryChannel):
    """Channel double returning queued outcomes (results, exceptions or "hang")."""

    def __init__(self, name, role=ROLE_NOTIFY, outcomes=(), configured=True, durable=True, **kwargs):
        super().__init__(**kwargs)
        self.name = name
        self.role = role
        self.durable = durable
        self._configured = configured
        self.outcomes = list(outcomes)
        self.calls: list[str] = []

    @property
    def configured(self) -> bool:
        return self._configured

    async def send(self, submission: Submission) -> ChannelResult:
        self.calls.append(submission.request_id)
        outcome = self.outcomes.pop(0) if self.outcomes else ChannelResult(external_id=f"{self.name}-{len(self.calls)}")
        if outcome == "hang":
            await asyncio.sleep(5)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def make_channel():
    def _make(name, role=ROLE_NOTIFY, outcomes=(), configured=True, durable=True, max_attempts=1, timeout=1.0):
        return FakeChannel(
            name,
            role=role,
            outcomes=outcomes,
            configured=configured,
            durable=durable,
            retry=RetryPolicy(max_attempts=max_attempts, base_delay=0.5, multiplier=3.0),
            timeout=timeout,
        )

    return _make


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def fake_sleep(sleeps):
    async def _sleep(delay: float) -> None:
        sleeps.append(delay)

    return _sleep


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        _env_file=None,
        environment="development",
        admin_token="s3cret-admin-token",
        allowed_origin=None,
        store_backend="file",
        data_dir=tmp_path / "data",
        supabase_url=None,
        supabase_key=None,
        sendgrid_api_key=None,
        sendgrid_to=None,
        smtp_host=None,
        smtp_user=None,
        smtp_pass=None,
        fallback_path=tmp_path / "tmp" / "contact_submissions.json",
        retry_base_delay_seconds=0.0,
        rate_limit_max_requests=100,
    )


@pytest.fixture
def valid_payload() -> dict[str, str]:
    return {"name": "A", "email": "a@b.co", "subject": "S", "message": "M"}
