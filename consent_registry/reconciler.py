"""Status Reconciler: polls the aggregator until a PENDING consent settles.

The user approves a consent on the aggregator's own portal, so this system
only learns about it by asking. One polling task runs per outstanding
consent handle; a second ``start`` for the same handle returns the task
already in flight.
"""
from __future__ import annotations

import asyncio
import logging
import os
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional

from aa_domain.consent_models import ConsentStatus, EventSource
from aa_domain.errors import IllegalTransitionError, ValidationError
from aa_observability.metrics import consent_polls_total
from integrations.aggregator.client import AggregatorClient
from integrations.aggregator.errors import (AggregatorError, ConsentRejectedError,
                                            TransientAggregatorError)

from .registry import TERMINAL_STATUSES, ConsentRegistry

__all__ = ["ReconcilerSettings", "StatusReconciler", "map_external_status"]

_LOG = logging.getLogger(__name__)

_EXTERNAL_STATUS_MAP = {
    "PENDING": ConsentStatus.PENDING,
    "REQUESTED": ConsentStatus.PENDING,
    "READY": ConsentStatus.PENDING,
    "ACTIVE": ConsentStatus.ACTIVE,
    "APPROVED": ConsentStatus.ACTIVE,
    "PAUSED": ConsentStatus.PAUSED,
    "REVOKED": ConsentStatus.REVOKED,
    "REJECTED": ConsentStatus.REVOKED,
    "DENIED": ConsentStatus.REVOKED,
    "EXPIRED": ConsentStatus.EXPIRED,
}


def map_external_status(value: str) -> Optional[ConsentStatus]:
    """Translate the aggregator's vocabulary; ``None`` for unknown values."""
    return _EXTERNAL_STATUS_MAP.get((value or "").strip().upper())


def _settled(status: ConsentStatus) -> bool:
    return status is ConsentStatus.ACTIVE or status in TERMINAL_STATUSES


@dataclass(frozen=True)
class ReconcilerSettings:
    interval: float = 3.0
    max_duration: float = 600.0
    backoff_max: float = 30.0

    @classmethod
    def from_env(cls) -> "ReconcilerSettings":
        return cls(
            interval=float(os.getenv("AA_POLL_INTERVAL_SECONDS", "3")),
            max_duration=float(os.getenv("AA_POLL_MAX_SECONDS", "600")),
            backoff_max=float(os.getenv("AA_POLL_BACKOFF_MAX_SECONDS", "30")),
        )


class StatusReconciler:
    def __init__(
        self,
        registry: ConsentRegistry,
        client: AggregatorClient,
        *,
        settings: Optional[ReconcilerSettings] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._registry = registry
        self._client = client
        self._settings = settings or ReconcilerSettings.from_env()
        self._sleep = sleep
        self._clock = clock
        self._tasks: Dict[str, asyncio.Task] = {}

    # ------------------------------------------------------------------
    # Task management
    # ------------------------------------------------------------------
    def start(self, consent_ref: str) -> asyncio.Task:
        """Begin polling a PENDING consent (single-flight per handle)."""
        consent = self._registry.resolve(consent_ref)
        if consent.status != ConsentStatus.PENDING.value or not consent.consent_handle:
            raise ValidationError(
                f"consent {consent_ref} is {consent.status}; only PENDING consents with a handle are polled"
            )
        handle = consent.consent_handle
        existing = self._tasks.get(handle)
        if existing is not None and not existing.done():
            return existing

        task = asyncio.create_task(self._poll(handle), name=f"consent-poll:{handle}")
        self._tasks[handle] = task
        task.add_done_callback(lambda t, key=handle: self._forget(key, t))
        _LOG.info("Polling consent status", extra={"consent_handle": handle})
        return task

    def _forget(self, handle: str, task: asyncio.Task) -> None:
        if self._tasks.get(handle) is task:
            del self._tasks[handle]
        if not task.cancelled() and task.exception() is not None:
            _LOG.error(
                "Consent polling crashed",
                exc_info=task.exception(),
                extra={"consent_handle": handle},
            )

    def is_polling(self, consent_handle: str) -> bool:
        task = self._tasks.get(consent_handle)
        return task is not None and not task.done()

    async def cancel(self, consent_handle: str) -> bool:
        """Stop polling *consent_handle*; returns False when nothing was running."""
        task = self._tasks.pop(consent_handle, None)
        if task is None or task.done():
            return False
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        _LOG.info("Polling cancelled", extra={"consent_handle": consent_handle})
        return True

    async def shutdown(self) -> None:
        for handle in list(self._tasks):
            await self.cancel(handle)

    async def poll_until_settled(self, consent_ref: str) -> ConsentStatus:
        return await self.start(consent_ref)

    # ------------------------------------------------------------------
    # Poll loop
    # ------------------------------------------------------------------
    async def _poll(self, handle: str) -> ConsentStatus:
        settings = self._settings
        deadline = self._clock() + settings.max_duration
        failures = 0
        while True:
            if self._clock() >= deadline:
                consent_polls_total.labels("expired").inc()
                return await self._apply(
                    handle,
                    ConsentStatus.EXPIRED,
                    EventSource.SYSTEM,
                    {"reason": "approval not observed before poll deadline"},
                )

            try:
                report = await self._client.get_consent_status(handle)
            except ConsentRejectedError as exc:
                consent_polls_total.labels("rejected").inc()
                return await self._apply(
                    handle, ConsentStatus.REVOKED, EventSource.AGGREGATOR, {"reason": exc.reason}
                )
            except AggregatorError as exc:
                # anything short of a rejection is retried until the deadline
                failures += 1
                transient = isinstance(exc, TransientAggregatorError)
                consent_polls_total.labels("transient_error" if transient else "error").inc()
                delay = min(settings.interval * 2 ** (failures - 1), settings.backoff_max)
                _LOG.warning(
                    "Consent status lookup failed (attempt %d, %s): %s",
                    failures,
                    type(exc).__name__,
                    exc,
                    extra={"consent_handle": handle},
                )
                await self._sleep_until(deadline, delay)
                continue

            failures = 0
            current = ConsentStatus((await asyncio.to_thread(self._registry.resolve, handle)).status)
            if _settled(current):
                # moved by someone else (user revocation, callback)
                return current

            mapped = map_external_status(report.status)
            if mapped is None:
                _LOG.warning(
                    "Unknown external consent status %r",
                    report.status,
                    extra={"consent_handle": handle},
                )
            elif mapped is not current:
                consent_polls_total.labels("transitioned").inc()
                current = await self._apply(
                    handle,
                    mapped,
                    EventSource.AGGREGATOR,
                    {"external_status": report.status},
                    consent_id=report.consent_id,
                )
                if _settled(current):
                    return current
            else:
                consent_polls_total.labels("unchanged").inc()

            await self._sleep_until(deadline, settings.interval)

    async def _sleep_until(self, deadline: float, delay: float) -> None:
        remaining = deadline - self._clock()
        await self._sleep(max(0.0, min(delay, remaining)))

    async def _apply(
        self,
        handle: str,
        status: ConsentStatus,
        source: EventSource,
        metadata: dict,
        *,
        consent_id: Optional[str] = None,
    ) -> ConsentStatus:
        try:
            consent = await asyncio.to_thread(
                self._registry.transition, handle, status, source, metadata, consent_id=consent_id
            )
        except IllegalTransitionError:
            # lost a race with another writer; report what is stored now
            consent = await asyncio.to_thread(self._registry.resolve, handle)
        return ConsentStatus(consent.status)
