"""Service-layer utilities."""

from .delivery import DeliveryChain, DeliveryReport, DeliveryStatus, build_delivery_chain
from .origin_policy import OriginDecision, OriginPolicy
from .rate_limit import RateLimiter
from .store import JsonFileSubmissionStore, SqlSubmissionStore, SubmissionStore, build_store
from .submission import RequestMeta, SubmissionResult, SubmissionService
from .validation import ValidatedSubmission, validate_submission

__all__ = [
    "DeliveryChain",
    "DeliveryReport",
    "DeliveryStatus",
    "build_delivery_chain",
    "OriginDecision",
    "OriginPolicy",
    "RateLimiter",
    "JsonFileSubmissionStore",
    "SqlSubmissionStore",
    "SubmissionStore",
    "build_store",
    "RequestMeta",
    "SubmissionResult",
    "SubmissionService",
    "ValidatedSubmission",
    "validate_submission",
]
