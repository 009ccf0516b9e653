"""Discovery & Fetch Orchestrator.

Everything here is gated on the consent being ACTIVE at call time. A
dispatch creates one :class:`FetchBatch`, fetches each account concurrently
(per-call timeout, transient retries), stores the raw responses and hands
the batch to the ingestion engine. The FI type only selects the parser; the
control flow is the same for every vertical.
"""
from __future__ import annotations

import asyncio
import logging
import os
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from sqlalchemy.exc import SQLAlchemyError

from aa_domain.consent_models import Consent, ConsentStatus
from aa_domain.errors import (BatchImmutableError, BatchNotRetryableError, ConsentNotActiveError,
                              ValidationError)
from aa_domain.fi_models import BatchStatus, FetchBatch
from aa_domain.fi_types import normalize_fi_type
from aa_observability.metrics import fetch_latency_seconds
from consent_registry.registry import ConsentRegistry
from integrations.aggregator.client import AggregatorClient, DiscoveredAccount
from integrations.aggregator.errors import AggregatorError, TransientAggregatorError

from .batches import BatchStore
from .engine import IngestionEngine

__all__ = ["FetchSettings", "FetchOrchestrator"]

_LOG = logging.getLogger(__name__)

_RETRYABLE_BATCH_STATUSES = {BatchStatus.FAILED.value, BatchStatus.PARTIAL.value}

AccountRef = Union[str, DiscoveredAccount]


@dataclass(frozen=True)
class FetchSettings:
    call_timeout: float = 30.0
    max_attempts: int = 3
    backoff: float = 1.0

    @classmethod
    def from_env(cls) -> "FetchSettings":
        return cls(
            call_timeout=float(os.getenv("AA_FETCH_TIMEOUT_SECONDS", "30")),
            max_attempts=int(os.getenv("AA_FETCH_MAX_ATTEMPTS", "3")),
            backoff=float(os.getenv("AA_FETCH_BACKOFF_SECONDS", "1")),
        )


class FetchOrchestrator:
    def __init__(
        self,
        registry: ConsentRegistry,
        client: AggregatorClient,
        engine: IngestionEngine,
        batches: BatchStore,
        *,
        settings: Optional[FetchSettings] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._registry = registry
        self._client = client
        self._engine = engine
        self._batches = batches
        self._settings = settings or FetchSettings.from_env()
        self._sleep = sleep

    # ------------------------------------------------------------------
    async def _active(self, consent_ref: str) -> Consent:
        # always re-read; a cached ACTIVE may have been revoked meanwhile
        consent = await asyncio.to_thread(self._registry.resolve, consent_ref)
        if consent.status != ConsentStatus.ACTIVE.value:
            raise ConsentNotActiveError(consent_ref, consent.status)
        return consent

    @staticmethod
    def _in_scope(consent: Consent, fi_type: str) -> str:
        tag = normalize_fi_type(fi_type)
        if tag not in consent.data_types:
            raise ValidationError(
                f"{tag} is outside consent scope ({', '.join(consent.data_types)})"
            )
        return tag

    async def _with_retries(self, label: str, call: Callable[[], Awaitable]):
        """Retry transient failures with exponential back-off; re-raise when exhausted."""
        attempt = 0
        while True:
            attempt += 1
            try:
                return await call()
            except TransientAggregatorError as exc:
                if attempt >= self._settings.max_attempts:
                    raise
                delay = self._settings.backoff * 2 ** (attempt - 1)
                _LOG.warning("%s failed (attempt %d), retrying in %.1fs: %s", label, attempt, delay, exc)
                await self._sleep(delay)

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------
    async def discover(
        self, consent_ref: str, fi_types: Optional[Iterable[str]] = None
    ) -> List[DiscoveredAccount]:
        """Accounts the aggregator will disclose under an ACTIVE consent."""
        consent = await self._active(consent_ref)
        tags = [self._in_scope(consent, t) for t in fi_types] if fi_types else list(consent.data_types)
        found: List[DiscoveredAccount] = []
        for tag in tags:
            accounts = await self._with_retries(
                f"discover {tag}",
                lambda tag=tag: self._client.discover_accounts(consent.consent_handle, tag),
            )
            for acct in accounts:
                acct.fi_type = normalize_fi_type(acct.fi_type)
            found.extend(accounts)
        _LOG.info(
            "Discovered %d accounts (%s)",
            len(found),
            ",".join(tags),
            extra={"consent_handle": consent.consent_handle},
        )
        return found

    # ------------------------------------------------------------------
    # Fetch
    # ------------------------------------------------------------------
    def _plan(
        self, consent: Consent, account_refs: Sequence[AccountRef], fi_type: Optional[str]
    ) -> Tuple[str, List[str]]:
        if not account_refs:
            raise ValidationError("at least one account reference is required")
        refs: List[str] = []
        tags = {normalize_fi_type(fi_type)} if fi_type else set()
        for item in account_refs:
            if isinstance(item, DiscoveredAccount):
                refs.append(item.account_ref)
                tags.add(normalize_fi_type(item.fi_type))
            elif isinstance(item, str) and item:
                refs.append(item)
            else:
                raise ValidationError(f"invalid account reference: {item!r}")
        if not tags and len(consent.data_types) == 1:
            tags = {consent.data_types[0]}
        if len(tags) != 1:
            raise ValidationError("one dispatch covers exactly one FI type; pass fi_type")
        # de-duplicate, keep order
        return self._in_scope(consent, tags.pop()), list(dict.fromkeys(refs))

    async def dispatch_fetch(
        self,
        consent_ref: str,
        account_refs: Sequence[AccountRef],
        *,
        fi_type: Optional[str] = None,
    ) -> FetchBatch:
        """Fetch *account_refs* into a new batch and ingest what came back.

        Nothing is persisted when the consent is not ACTIVE or the request
        is malformed.
        """
        consent = await self._active(consent_ref)
        tag, refs = self._plan(consent, account_refs, fi_type)
        batch = await asyncio.to_thread(self._batches.create, consent, tag, refs)
        return await self._run(batch)

    async def redispatch(self, batch_id: str) -> FetchBatch:
        """Retry a FAILED or PARTIAL batch as a new batch row.

        For a PARTIAL batch only the accounts that failed are fetched again.
        """
        previous = await asyncio.to_thread(self._batches.get, batch_id)
        if previous.status not in _RETRYABLE_BATCH_STATUSES:
            raise BatchNotRetryableError(batch_id, previous.status)
        consent = await self._active(previous.consent_pk)
        refs = list(previous.account_refs)
        if previous.status == BatchStatus.PARTIAL.value:
            failed = set()
            for section in (previous.error_details or {}).values():
                if isinstance(section, dict):
                    failed.update(section)
            refs = [r for r in refs if r in failed] or refs
        batch = await asyncio.to_thread(
            self._batches.create, consent, previous.fi_type, refs, retry_of_id=previous.id
        )
        return await self._run(batch)

    async def _run(self, batch: FetchBatch) -> FetchBatch:
        """Fetch and ingest *batch*; it always ends in a settled status."""
        try:
            results = await asyncio.gather(
                *(self._fetch_one(batch, ref) for ref in batch.account_refs)
            )
            responses: Dict[str, dict] = {}
            errors: Dict[str, str] = {}
            for ref, payload, error in results:
                if error is None:
                    responses[ref] = payload
                else:
                    errors[ref] = error
            recorded = await asyncio.to_thread(self._batches.record_fetch, batch.id, responses, errors)
            return await self._engine.ingest_batch(recorded, errors)
        except BaseException as exc:
            # also on cancellation, so no batch is left REQUESTED
            self._abandon(batch, exc)
            raise

    def _abandon(self, batch: FetchBatch, exc: BaseException) -> None:
        extra = {"batch_id": batch.id, "consent_handle": batch.consent_handle, "fi_type": batch.fi_type}
        _LOG.error("Batch %s aborted: %r", batch.id, exc, exc_info=exc, extra=extra)
        try:
            self._batches.finalize(
                batch.id, BatchStatus.FAILED, errors={"aborted": f"{type(exc).__name__}: {exc}"}
            )
        except (BatchImmutableError, SQLAlchemyError):
            _LOG.exception("Could not mark batch %s FAILED", batch.id, extra=extra)

    async def _fetch_one(self, batch: FetchBatch, ref: str) -> Tuple[str, Optional[dict], Optional[str]]:
        timeout = self._settings.call_timeout
        extra = {"batch_id": batch.id, "account_ref": ref, "fi_type": batch.fi_type}
        started = time.perf_counter()
        try:
            payload = await self._with_retries(
                f"fetch {ref}",
                lambda: asyncio.wait_for(
                    self._client.fetch_data(batch.consent_handle, batch.fi_type, [ref]), timeout
                ),
            )
        except asyncio.TimeoutError:
            _LOG.warning("Fetch of %s timed out after %.1fs", ref, timeout, extra=extra)
            return ref, None, f"timed out after {timeout:g}s"
        except AggregatorError as exc:
            _LOG.warning("Fetch of %s failed: %s", ref, exc, extra=extra)
            return ref, None, str(exc)
        finally:
            fetch_latency_seconds.labels(batch.fi_type).observe(time.perf_counter() - started)
        return ref, payload, None
