"""Submission record models."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlmodel import Field, SQLModel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SubmissionStatus(str, Enum):
    pending = "pending"
    sent = "sent"
    failed = "failed"


class Submission(SQLModel):
    """Durable record of one contact request, keyed by ``request_id``."""

    request_id: str = Field(index=True, unique=True, max_length=200)
    name: str
    email: str
    subject: str
    message: str
    ip_address: Optional[str] = Field(default=None, max_length=64)
    user_agent: Optional[str] = Field(default=None)
    status: SubmissionStatus = Field(default=SubmissionStatus.pending, description="pending|sent|failed")
    channel: Optional[str] = Field(default=None, max_length=32, description="supabase|sendgrid|smtp|tmp")
    external_id: Optional[str] = Field(default=None, description="Row id or message id from the channel")
    error: Optional[str] = Field(default=None, description="Last delivery failure")
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class SubmissionRow(Submission, table=True):
    __tablename__ = "submissions"

    id: Optional[int] = Field(default=None, primary_key=True)


__all__ = ["Submission", "SubmissionRow", "SubmissionStatus", "utcnow"]
