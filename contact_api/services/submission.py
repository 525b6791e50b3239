"""Submission intake: validation, idempotent persistence and delivery."""

from __future__ import annotations

import asyncio
import logging
import secrets
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Mapping

from contact_api.core.errors import DeliveryExhausted, Unauthorized
from contact_api.models import Submission, SubmissionStatus
from contact_api.services.channels import ROLE_NOTIFY, TempFileChannel
from contact_api.services.delivery import FALLBACK_WARNING, ChannelState, DeliveryChain, DeliveryReport
from contact_api.services.store import SubmissionStore
from contact_api.services.validation import validate_submission

logger = logging.getLogger(__name__)


def _is_fallback_only(submission: Submission) -> bool:
    return submission.status == SubmissionStatus.pending and submission.channel == TempFileChannel.name


@dataclass
class RequestMeta:
    ip_address: str | None = None
    user_agent: str | None = None

    def as_fields(self) -> dict[str, str | None]:
        return {
            "ip_address": self.ip_address[:64] if self.ip_address else None,
            "user_agent": self.user_agent[:512] if self.user_agent else None,
        }


@dataclass
class SubmissionResult:
    submission: Submission
    created: bool
    report: DeliveryReport | None = None

    def to_body(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "ok": True,
            "submission": self.submission.model_dump(mode="json"),
            "method": self.submission.channel,
        }
        if not self.created:
            body["duplicate"] = True
        if self.report is None:
            if _is_fallback_only(self.submission):
                body["fallback"] = True
                body["warning"] = FALLBACK_WARNING
            return body

        if self.report.fallback_used:
            body["fallback"] = True
            body["warning"] = FALLBACK_WARNING
        notify = self.report.attempt_for(ROLE_NOTIFY)
        if notify is not None:
            body["email"] = {
                "sent": notify.state == ChannelState.success,
                "channel": notify.channel,
                "id": notify.external_id,
                "error": notify.error,
            }
        return body


class SubmissionService:
    """Orchestrate one contact submission from raw body to stored outcome."""

    def __init__(
        self,
        store: SubmissionStore,
        chain: DeliveryChain,
        admin_token: str | None = None,
        id_factory: Callable[[], str] | None = None,
    ) -> None:
        self.store = store
        self.chain = chain
        self.admin_token = admin_token
        self._new_id = id_factory or (lambda: uuid.uuid4().hex)
        self._inflight: dict[str, asyncio.Event] = {}

    async def create_submission(
        self,
        raw: Mapping[str, Any],
        meta: RequestMeta | None = None,
    ) -> SubmissionResult:
        validated = validate_submission(dict(raw))
        request_id = validated.request_id or self._new_id()
        meta = meta or RequestMeta()

        submission, created = await self.store.get_or_create(request_id, validated.contact_fields(), meta.as_fields())
        if created:
            return await self._deliver_once(submission, created=True)

        pending = self._inflight.get(request_id)
        if pending is not None:
            # A concurrent caller is still delivering this id; report its outcome
            await pending.wait()
            submission = await self.store.get(request_id) or submission
            return self._settled(submission)

        if submission.status == SubmissionStatus.sent:
            return SubmissionResult(submission=submission, created=False)
        logger.info("Redelivering submission %s (status=%s)", request_id, submission.status.value)
        return await self._deliver_once(submission, created=False)

    async def _deliver_once(self, submission: Submission, created: bool) -> SubmissionResult:
        done = asyncio.Event()
        self._inflight[submission.request_id] = done
        try:
            return await self._deliver(submission, created)
        finally:
            done.set()
            self._inflight.pop(submission.request_id, None)

    def _settled(self, submission: Submission) -> SubmissionResult:
        if submission.status == SubmissionStatus.sent or _is_fallback_only(submission):
            return SubmissionResult(submission=submission, created=False)
        raise DeliveryExhausted()

    async def _deliver(self, submission: Submission, created: bool) -> SubmissionResult:
        report = await self.chain.deliver(submission)
        patch = report.status_patch()
        if patch:
            updated = await self.store.update_status(submission.request_id, patch)
            submission = updated or submission

        if not report.ok:
            raise DeliveryExhausted()
        logger.info(
            "Submission %s delivered (status=%s channel=%s)",
            submission.request_id,
            report.status.value,
            report.channel,
        )
        return SubmissionResult(submission=submission, created=created, report=report)

    async def list_submissions(self, admin_token: str | None) -> list[Submission]:
        if not self.admin_token:
            logger.error("ADMIN_TOKEN is not configured; refusing to list submissions")
            raise Unauthorized()
        if not admin_token or not secrets.compare_digest(admin_token.encode(), self.admin_token.encode()):
            logger.warning("Rejected submission listing with missing or invalid admin token")
            raise Unauthorized()
        return await self.store.list_all()


__all__ = ["RequestMeta", "SubmissionResult", "SubmissionService"]
