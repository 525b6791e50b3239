"""Ordered delivery of a submission across its configured channels.

Each channel moves through ``not_attempted -> trying -> success | next_channel |
exhausted``. The store role persists the record, the notify role sends one
admin email (SendGrid first, SMTP only when SendGrid is unconfigured or
failed), and the fallback role only runs when neither of the others landed.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Sequence

import httpx

from contact_api.core.config import Settings
from contact_api.models import Submission, SubmissionStatus
from contact_api.services.channels import (
    ROLE_FALLBACK,
    ROLE_NOTIFY,
    ROLE_STORE,
    ChannelError,
    ChannelResult,
    DeliveryChannel,
    RetryPolicy,
    SendGridChannel,
    SmtpChannel,
    SupabaseChannel,
    TempFileChannel,
)

logger = logging.getLogger(__name__)

FALLBACK_WARNING = (
    "Stored to an ephemeral location only; configure Supabase, SendGrid or SMTP for durable delivery."
)


class ChannelState(str, Enum):
    not_attempted = "not_attempted"
    trying = "trying"
    success = "success"
    next_channel = "next_channel"
    exhausted = "exhausted"


class DeliveryStatus(str, Enum):
    sent = "sent"
    failed = "failed"
    skipped = "skipped"
    fallback = "fallback"


@dataclass
class ChannelAttempt:
    channel: str
    role: str
    state: ChannelState = ChannelState.not_attempted
    attempts: int = 0
    external_id: str | None = None
    error: str | None = None


@dataclass
class DeliveryReport:
    status: DeliveryStatus
    channel: str | None = None
    external_id: str | None = None
    error: str | None = None
    durable: bool = False
    notified: bool = False
    fallback_used: bool = False
    attempts: list[ChannelAttempt] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status != DeliveryStatus.failed

    def attempt_for(self, role: str) -> ChannelAttempt | None:
        tried = [a for a in self.attempts if a.role == role and a.state != ChannelState.not_attempted]
        return tried[-1] if tried else None

    def status_patch(self) -> dict[str, Any]:
        """Fields to merge into the stored record for this outcome."""

        if self.status == DeliveryStatus.sent:
            return {
                "status": SubmissionStatus.sent,
                "channel": self.channel,
                "external_id": self.external_id,
                "error": None,
            }
        if self.status == DeliveryStatus.fallback:
            return {"status": SubmissionStatus.pending, "channel": self.channel, "error": None}
        if self.status == DeliveryStatus.failed:
            return {"status": SubmissionStatus.failed, "error": self.error}
        return {}


class DeliveryChain:
    """Try channels in priority order with per-channel retry and timeout."""

    def __init__(
        self,
        channels: Sequence[DeliveryChannel],
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.channels = list(channels)
        self._sleep = sleep

    def channels_for(self, role: str) -> list[DeliveryChannel]:
        return [channel for channel in self.channels if channel.role == role]

    async def deliver(self, submission: Submission) -> DeliveryReport:
        if submission.status == SubmissionStatus.sent:
            logger.info("Submission %s already sent; skipping delivery", submission.request_id)
            return DeliveryReport(
                status=DeliveryStatus.skipped,
                channel=submission.channel,
                external_id=submission.external_id,
            )

        report = DeliveryReport(status=DeliveryStatus.failed)

        stored = await self._run_role(ROLE_STORE, submission, report)
        if stored:
            channel, result = stored
            report.durable = True
            report.channel, report.external_id = channel.name, result.external_id

        notified = await self._run_role(ROLE_NOTIFY, submission, report)
        if notified:
            channel, result = notified
            report.notified = True
            report.channel, report.external_id = channel.name, result.external_id

        if report.durable or report.notified:
            report.status = DeliveryStatus.sent
            return report

        fallback = await self._run_role(ROLE_FALLBACK, submission, report)
        if fallback:
            channel, _ = fallback
            report.fallback_used = True
            report.channel = channel.name
            report.status = DeliveryStatus.fallback
            logger.warning("Submission %s accepted by fallback channel %s only", submission.request_id, channel.name)
            return report

        errors = [f"{a.channel}: {a.error}" for a in report.attempts if a.error]
        report.error = "; ".join(errors) or "No delivery channel configured"
        logger.error("Delivery exhausted for submission %s: %s", submission.request_id, report.error)
        return report

    async def _run_role(
        self,
        role: str,
        submission: Submission,
        report: DeliveryReport,
    ) -> tuple[DeliveryChannel, ChannelResult] | None:
        for channel in self.channels_for(role):
            attempt = ChannelAttempt(channel=channel.name, role=role)
            report.attempts.append(attempt)
            if not channel.configured:
                continue
            result = await self._attempt(channel, submission, attempt)
            if result is not None:
                return channel, result
        return None

    async def _attempt(
        self,
        channel: DeliveryChannel,
        submission: Submission,
        attempt: ChannelAttempt,
    ) -> ChannelResult | None:
        policy = channel.retry
        for number in range(1, max(1, policy.max_attempts) + 1):
            if number > 1:
                await self._sleep(policy.delay_before(number))
            attempt.state = ChannelState.trying
            attempt.attempts = number
            try:
                result = await asyncio.wait_for(channel.send(submission), timeout=channel.timeout)
            except asyncio.TimeoutError:
                error = ChannelError(f"timed out after {channel.timeout}s", transient=True)
            except ChannelError as exc:
                error = exc
            except Exception as exc:
                logger.error("Channel %s raised unexpectedly", channel.name, exc_info=True)
                error = ChannelError(str(exc) or exc.__class__.__name__, transient=False)
            else:
                attempt.state = ChannelState.success
                attempt.external_id = result.external_id
                attempt.error = None
                if number > 1:
                    logger.info("Channel %s succeeded after %s attempts", channel.name, number)
                return result

            attempt.error = str(error)
            logger.warning(
                "Channel %s failed attempt %s/%s: %s",
                channel.name,
                number,
                policy.max_attempts,
                error,
            )
            if not error.transient:
                attempt.state = ChannelState.next_channel
                return None

        attempt.state = ChannelState.exhausted
        return None


def build_delivery_chain(settings: Settings, client: httpx.AsyncClient) -> DeliveryChain:
    """Assemble the channels in priority order from settings."""

    def policy(max_attempts: int) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=max_attempts,
            base_delay=settings.retry_base_delay_seconds,
            multiplier=settings.retry_backoff_multiplier,
        )

    timeout = settings.channel_timeout_seconds
    channels: list[DeliveryChannel] = [
        SupabaseChannel(
            client,
            settings.supabase_url,
            settings.supabase_key,
            table=settings.supabase_table,
            retry=policy(settings.supabase_max_attempts),
            timeout=timeout,
        ),
        SendGridChannel(
            client,
            settings.sendgrid_api_key,
            settings.sendgrid_to,
            from_email=settings.sendgrid_from,
            url=settings.sendgrid_url,
            retry=policy(settings.sendgrid_max_attempts),
            timeout=timeout,
        ),
        SmtpChannel(
            settings.smtp_host,
            port=settings.smtp_port,
            secure=settings.smtp_secure,
            user=settings.smtp_user,
            password=settings.smtp_pass,
            from_email=settings.smtp_from,
            to_email=settings.notify_recipient,
            retry=policy(settings.smtp_max_attempts),
            timeout=timeout,
        ),
        TempFileChannel(settings.fallback_path, timeout=timeout),
    ]
    configured = [channel.name for channel in channels if channel.configured]
    logger.info("Delivery channels configured: %s", ", ".join(configured))
    return DeliveryChain(channels)


__all__ = [
    "ChannelAttempt",
    "ChannelState",
    "DeliveryChain",
    "DeliveryReport",
    "DeliveryStatus",
    "FALLBACK_WARNING",
    "build_delivery_chain",
]
