"""Database models."""

from .submission import Submission, SubmissionRow, SubmissionStatus

__all__ = [
    "Submission",
    "SubmissionRow",
    "SubmissionStatus",
]
