"""Consent lifecycle: registry state machine, status reconciler, linking flow."""

from .reconciler import ReconcilerSettings, StatusReconciler, map_external_status
from .registry import ALLOWED_TRANSITIONS, TERMINAL_STATUSES, ConsentRegistry
from .service import ConsentService

__all__ = [
    "ALLOWED_TRANSITIONS",
    "TERMINAL_STATUSES",
    "ConsentRegistry",
    "ConsentService",
    "ReconcilerSettings",
    "StatusReconciler",
    "map_external_status",
]
