"""Errors raised by the consent registry, orchestrator and ingestion engine."""
from __future__ import annotations

__all__ = [
    "AggregatorCoreError",
    "ValidationError",
    "ConsentNotFoundError",
    "IllegalTransitionError",
    "ConsentNotActiveError",
    "OrphanReferenceError",
    "BatchImmutableError",
    "BatchNotRetryableError",
    "BatchNotFoundError",
]


class AggregatorCoreError(Exception):
    """Base class for domain errors."""


class ValidationError(AggregatorCoreError, ValueError):
    """Malformed consent or fetch request; nothing was persisted."""


class ConsentNotFoundError(AggregatorCoreError, LookupError):
    def __init__(self, ref: str) -> None:
        super().__init__(f"consent not found: {ref}")
        self.ref = ref


class IllegalTransitionError(AggregatorCoreError):
    def __init__(self, consent_ref: str, current: str, requested: str) -> None:
        super().__init__(f"consent {consent_ref}: {current} -> {requested} is not allowed")
        self.consent_ref = consent_ref
        self.current = current
        self.requested = requested


class ConsentNotActiveError(AggregatorCoreError):
    """Fetch or discovery attempted while the consent is not ACTIVE."""

    def __init__(self, consent_ref: str, status: str) -> None:
        super().__init__(f"consent {consent_ref} is {status}, not ACTIVE")
        self.consent_ref = consent_ref
        self.status = status


class OrphanReferenceError(AggregatorCoreError):
    """Holding or transaction points at an account that was never upserted."""

    def __init__(self, account_ref: str, fi_type: str) -> None:
        super().__init__(f"unknown account {account_ref} ({fi_type})")
        self.account_ref = account_ref
        self.fi_type = fi_type


class BatchImmutableError(AggregatorCoreError):
    def __init__(self, batch_id: str, status: str) -> None:
        super().__init__(f"batch {batch_id} is {status} and can no longer change")
        self.batch_id = batch_id
        self.status = status


class BatchNotRetryableError(AggregatorCoreError):
    def __init__(self, batch_id: str, status: str) -> None:
        super().__init__(f"batch {batch_id} is {status}; only FAILED or PARTIAL batches are redispatched")
        self.batch_id = batch_id
        self.status = status


class BatchNotFoundError(AggregatorCoreError, LookupError):
    def __init__(self, batch_id: str) -> None:
        super().__init__(f"batch not found: {batch_id}")
        self.batch_id = batch_id
