"""Persistent model and error taxonomy of the consent / ingestion core."""

from .consent_models import Consent, ConsentEvent, ConsentStatus, EventSource
from .fi_models import BatchStatus, FetchBatch, FIAccount, FIHolding, FITransaction

__all__ = [
    "BatchStatus",
    "Consent",
    "ConsentEvent",
    "ConsentStatus",
    "EventSource",
    "FetchBatch",
    "FIAccount",
    "FIHolding",
    "FITransaction",
]
