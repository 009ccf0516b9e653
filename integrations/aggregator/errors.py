"""Failure modes of remote aggregator calls."""
from __future__ import annotations

from typing import Optional

__all__ = [
    "AggregatorError",
    "TransientAggregatorError",
    "AggregatorRequestError",
    "ConsentRejectedError",
    "MalformedPayloadError",
    "AggregatorAuthError",
]


class AggregatorError(Exception):
    """Base class for errors raised by the aggregator client."""


class TransientAggregatorError(AggregatorError):
    """Network error, timeout, 429 or 5xx left over after HTTP retries."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class AggregatorRequestError(AggregatorError):
    """Non-retryable 4xx response."""

    def __init__(self, message: str, *, status_code: int, body: str = "") -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class ConsentRejectedError(AggregatorError):
    """The aggregator definitively refused or no longer knows the consent."""

    def __init__(self, consent_handle: str, reason: str = "") -> None:
        super().__init__(f"consent {consent_handle} rejected: {reason}".rstrip(": "))
        self.consent_handle = consent_handle
        self.reason = reason


class MalformedPayloadError(AggregatorError):
    """Response body was not JSON or lacked a required field."""


class AggregatorAuthError(AggregatorError):
    """No bearer token could be obtained from the aggregator."""
