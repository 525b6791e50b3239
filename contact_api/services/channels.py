"""Delivery channels: hosted table, SendGrid, SMTP and a temp-file fallback."""

from __future__ import annotations

import asyncio
import html
import json
import logging
import smtplib
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from email.message import EmailMessage
from email.utils import make_msgid
from pathlib import Path
from typing import Any

import httpx

from contact_api.models import Submission
from contact_api.services.store import write_json_atomic

logger = logging.getLogger(__name__)

ROLE_STORE = "store"
ROLE_NOTIFY = "notify"
ROLE_FALLBACK = "fallback"


class ChannelError(Exception):
    """A channel call failed; ``transient`` failures are worth retrying."""

    def __init__(self, message: str, transient: bool = True) -> None:
        super().__init__(message)
        self.transient = transient


@dataclass
class ChannelResult:
    external_id: str | None = None
    detail: str | None = None


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff: ``base_delay * multiplier ** (attempt - 2)`` before each retry."""

    max_attempts: int = 1
    base_delay: float = 0.5
    multiplier: float = 3.0

    def delay_before(self, attempt: int) -> float:
        if attempt <= 1:
            return 0.0
        return self.base_delay * self.multiplier ** (attempt - 2)


class DeliveryChannel(ABC):
    name: str = "channel"
    role: str = ROLE_NOTIFY
    durable: bool = True

    def __init__(self, retry: RetryPolicy | None = None, timeout: float = 8.0) -> None:
        self.retry = retry or RetryPolicy()
        self.timeout = timeout

    @property
    @abstractmethod
    def configured(self) -> bool:
        ...

    @abstractmethod
    async def send(self, submission: Submission) -> ChannelResult:
        ...


@dataclass
class NotificationEmail:
    subject: str
    text: str
    html: str


def render_notification(submission: Submission) -> NotificationEmail:
    """Format the admin notification; stored fields are already HTML-escaped."""

    name = html.unescape(submission.name)
    subject = html.unescape(submission.subject)
    text = (
        f"{html.unescape(submission.message)}\n\n"
        f"From: {name} <{submission.email}>\n"
        f"Request: {submission.request_id}\n"
        f"Received: {submission.created_at.isoformat()}\n"
    )
    message_html = submission.message.replace("\n", "<br>")
    body = (
        f"<h2>New contact message</h2>"
        f"<p><strong>From:</strong> {submission.name} &lt;{html.escape(submission.email)}&gt;</p>"
        f"<p><strong>Subject:</strong> {submission.subject}</p>"
        f"<p>{message_html}</p>"
        f"<p><small>Request {html.escape(submission.request_id)} received "
        f"{submission.created_at.isoformat()}</small></p>"
    )
    return NotificationEmail(subject=f"New message from {name}: {subject}", text=text, html=body)


def _raise_for_status(response: httpx.Response, channel: str) -> None:
    if response.is_success:
        return
    body = response.text[:500]
    logger.warning("%s error response: %s %s", channel, response.status_code, body)
    transient = response.status_code == 429 or response.status_code >= 500
    raise ChannelError(f"{channel} returned HTTP {response.status_code}", transient=transient)


class SupabaseChannel(DeliveryChannel):
    """Insert-or-fetch into a hosted Postgres table through the REST API."""

    name = "supabase"
    role = ROLE_STORE

    def __init__(
        self,
        client: httpx.AsyncClient,
        url: str | None,
        key: str | None,
        table: str = "submissions",
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self.client = client
        self.url = (url or "").rstrip("/")
        self.key = key
        self.table = table

    @property
    def configured(self) -> bool:
        return bool(self.url and self.key)

    def _headers(self) -> dict[str, str]:
        return {
            "apikey": self.key or "",
            "Authorization": f"Bearer {self.key}",
            "Content-Type": "application/json",
        }

    async def send(self, submission: Submission) -> ChannelResult:
        endpoint = f"{self.url}/rest/v1/{self.table}"
        row = {
            "request_id": submission.request_id,
            "name": submission.name,
            "email": submission.email,
            "subject": submission.subject,
            "message": submission.message,
            "received_at": submission.created_at.isoformat(),
        }
        headers = self._headers()
        headers["Prefer"] = "resolution=ignore-duplicates,return=representation"
        try:
            response = await self.client.post(
                endpoint,
                params={"on_conflict": "request_id"},
                json=[row],
                headers=headers,
                timeout=self.timeout,
            )
            _raise_for_status(response, self.name)
            rows = response.json()
            if not rows:
                # Duplicate ignored by the conflict clause; fetch the existing row
                response = await self.client.get(
                    endpoint,
                    params={"request_id": f"eq.{submission.request_id}", "select": "*"},
                    headers=self._headers(),
                    timeout=self.timeout,
                )
                _raise_for_status(response, self.name)
                rows = response.json()
        except httpx.RequestError as exc:
            raise ChannelError(f"Failed to reach Supabase: {exc}") from exc

        if not rows:
            raise ChannelError("Supabase returned no row for the submission")
        row_id = rows[0].get("id")
        return ChannelResult(external_id=str(row_id) if row_id is not None else submission.request_id)


class SendGridChannel(DeliveryChannel):
    name = "sendgrid"
    role = ROLE_NOTIFY

    def __init__(
        self,
        client: httpx.AsyncClient,
        api_key: str | None,
        to_email: str | None,
        from_email: str | None = None,
        url: str = "https://api.sendgrid.com/v3/mail/send",
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self.client = client
        self.api_key = api_key
        self.to_email = to_email
        self.from_email = from_email or to_email
        self.url = url

    @property
    def configured(self) -> bool:
        return bool(self.api_key and self.to_email)

    async def send(self, submission: Submission) -> ChannelResult:
        email = render_notification(submission)
        payload = {
            "personalizations": [{"to": [{"email": self.to_email}]}],
            "from": {"email": self.from_email},
            "reply_to": {"email": submission.email},
            "subject": email.subject,
            "content": [
                {"type": "text/plain", "value": email.text},
                {"type": "text/html", "value": email.html},
            ],
        }
        try:
            response = await self.client.post(
                self.url,
                json=payload,
                headers={"Authorization": f"Bearer {self.api_key}"},
                timeout=self.timeout,
            )
        except httpx.RequestError as exc:
            raise ChannelError(f"Failed to reach SendGrid: {exc}") from exc
        _raise_for_status(response, self.name)
        return ChannelResult(external_id=response.headers.get("X-Message-Id"))


class _SmtpHandoff:
    """Coordinates a worker-thread SMTP session with the coroutine waiting on it."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.started = False
        self.abandoned = False

    def begin_send(self) -> bool:
        with self._lock:
            if self.abandoned:
                return False
            self.started = True
            return True

    def abandon(self) -> bool:
        """Stop a session that has not reached ``send_message``; True if it already had."""

        with self._lock:
            self.abandoned = True
            return self.started


class SmtpChannel(DeliveryChannel):
    """Direct SMTP relay; the blocking client runs in a worker thread.

    A worker thread cannot be cancelled, so the session runs against its own
    deadline below ``timeout``. A session that overruns before handing off the
    message is abandoned and may be retried; one that overruns after
    ``send_message`` started fails permanently so the email is never sent twice.
    """

    name = "smtp"
    role = ROLE_NOTIFY
    deadline_ratio = 0.8

    def __init__(
        self,
        host: str | None,
        port: int = 587,
        secure: bool = False,
        user: str | None = None,
        password: str | None = None,
        from_email: str | None = None,
        to_email: str | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self.host = host
        self.port = port
        self.secure = secure
        self.user = user
        self.password = password
        self.from_email = from_email or user
        self.to_email = to_email or self.from_email

    @property
    def configured(self) -> bool:
        return bool(self.host and self.user and self.password)

    @property
    def deadline(self) -> float:
        return self.timeout * self.deadline_ratio

    async def send(self, submission: Submission) -> ChannelResult:
        email = render_notification(submission)
        msg = EmailMessage()
        msg["From"] = self.from_email
        msg["To"] = self.to_email
        msg["Reply-To"] = submission.email
        msg["Subject"] = email.subject
        msg["Message-ID"] = make_msgid(domain=(self.from_email or "localhost").rpartition("@")[2] or None)
        msg.set_content(email.text)
        msg.add_alternative(email.html, subtype="html")

        handoff = _SmtpHandoff()
        session = asyncio.ensure_future(asyncio.to_thread(self._deliver, msg, handoff))
        # Abandoned sessions finish on their own; keep their errors out of the loop's handler
        session.add_done_callback(lambda fut: fut.cancelled() or fut.exception())
        try:
            await asyncio.wait_for(asyncio.shield(session), timeout=self.deadline)
        except asyncio.TimeoutError:
            if handoff.abandon():
                raise ChannelError(
                    f"SMTP session exceeded {self.deadline:.1f}s after the message was handed off",
                    transient=False,
                ) from None
            raise ChannelError(f"SMTP session exceeded {self.deadline:.1f}s") from None
        except asyncio.CancelledError:
            handoff.abandon()
            raise
        logger.info("SMTP notification sent via %s", self.host)
        return ChannelResult(external_id=msg["Message-ID"])

    def _deliver(self, msg: EmailMessage, handoff: _SmtpHandoff) -> None:
        try:
            if self.secure:
                smtp: smtplib.SMTP = smtplib.SMTP_SSL(self.host, self.port, timeout=self.deadline)
            else:
                smtp = smtplib.SMTP(self.host, self.port, timeout=self.deadline)
            with smtp:
                smtp.ehlo()
                if not self.secure and smtp.has_extn("starttls"):
                    smtp.starttls()
                    smtp.ehlo()
                smtp.login(self.user, self.password)
                if not handoff.begin_send():
                    logger.warning("Abandoned SMTP session for %s closed before sending", msg["Message-ID"])
                    return
                smtp.send_message(msg)
        except (smtplib.SMTPAuthenticationError, smtplib.SMTPRecipientsRefused, smtplib.SMTPSenderRefused) as exc:
            raise ChannelError(f"SMTP rejected the message: {exc}", transient=False) from exc
        except (smtplib.SMTPException, OSError) as exc:
            raise ChannelError(f"SMTP delivery failed: {exc}") from exc


class TempFileChannel(DeliveryChannel):
    """Append to a JSON file in a non-durable location so the request still lands."""

    name = "tmp"
    role = ROLE_FALLBACK
    durable = False

    def __init__(self, path: Path, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.path = Path(path)
        self._lock = asyncio.Lock()

    @property
    def configured(self) -> bool:
        return True

    async def send(self, submission: Submission) -> ChannelResult:
        async with self._lock:
            try:
                await asyncio.to_thread(self._append, submission.model_dump(mode="json"))
            except OSError as exc:
                raise ChannelError(f"Temp file write failed: {exc}", transient=False) from exc
        logger.warning("Stored submission %s to temporary file %s", submission.request_id, self.path)
        return ChannelResult(detail=str(self.path))

    def _append(self, record: dict[str, Any]) -> None:
        existing: list[dict[str, Any]] = []
        if self.path.exists():
            try:
                existing = json.loads(self.path.read_text(encoding="utf-8") or "[]")
            except ValueError:
                logger.warning("Temporary submissions file %s was unreadable; starting over", self.path)
        if not isinstance(existing, list):
            existing = []
        existing.append(record)
        write_json_atomic(self.path, existing)


__all__ = [
    "ChannelError",
    "ChannelResult",
    "DeliveryChannel",
    "NotificationEmail",
    "RetryPolicy",
    "ROLE_FALLBACK",
    "ROLE_NOTIFY",
    "ROLE_STORE",
    "SendGridChannel",
    "SmtpChannel",
    "SupabaseChannel",
    "TempFileChannel",
    "render_notification",
]
