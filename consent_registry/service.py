"""Consent-linking flow tying the registry, the aggregator and the reconciler."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Iterable, Mapping, Optional, Tuple

from aa_domain.consent_models import Consent, ConsentStatus, EventSource
from integrations.aggregator.client import AggregatorClient

from .reconciler import StatusReconciler
from .registry import DEFAULT_PURPOSE, ConsentRegistry, Window

_LOG = logging.getLogger(__name__)


class ConsentService:
    def __init__(
        self,
        registry: ConsentRegistry,
        client: AggregatorClient,
        reconciler: Optional[StatusReconciler] = None,
    ) -> None:
        self.registry = registry
        self.client = client
        self.reconciler = reconciler

    async def link(
        self,
        user_id: str,
        data_types: Iterable[str],
        validity: Window,
        data_range: Window,
        *,
        customer_ref: Optional[str] = None,
        purpose: str = DEFAULT_PURPOSE,
        consent_mode: str = "VIEW",
        fetch_type: str = "ONETIME",
        frequency: Tuple[str, int] = ("MONTH", 1),
        details: Optional[Mapping[str, Any]] = None,
        start_polling: bool = True,
    ) -> Consent:
        """Create a consent, submit it to the aggregator and start polling.

        If the aggregator refuses the request the consent stays INITIATED and
        the error propagates to the caller.
        """
        consent = await asyncio.to_thread(
            self.registry.create,
            user_id,
            data_types,
            validity,
            data_range,
            purpose=purpose,
            consent_mode=consent_mode,
            fetch_type=fetch_type,
            frequency=frequency,
            details=details,
        )
        grant = await self.client.initiate_consent(
            customer_ref=customer_ref or user_id,
            data_types=consent.data_types,
            validity=(consent.valid_from, consent.valid_until),
            data_range=(consent.data_from, consent.data_to),
            purpose=consent.purpose,
            consent_mode=consent.consent_mode,
            fetch_type=consent.fetch_type,
            frequency=(consent.frequency_unit, consent.frequency_value),
        )
        consent = await asyncio.to_thread(
            self.registry.transition,
            consent.id,
            ConsentStatus.PENDING,
            EventSource.SYSTEM,
            {"redirect_url": grant.redirect_url},
            consent_handle=grant.consent_handle,
            consent_id=grant.consent_id,
            redirect_url=grant.redirect_url,
        )
        if start_polling and self.reconciler is not None:
            self.reconciler.start(consent.id)
        return consent

    async def revoke(self, consent_ref: str, *, reason: str = "revoked by user") -> Consent:
        """User-driven revocation; stops any poll in flight first."""
        consent = await asyncio.to_thread(self.registry.resolve, consent_ref)
        if self.reconciler is not None and consent.consent_handle:
            await self.reconciler.cancel(consent.consent_handle)
        return await asyncio.to_thread(
            self.registry.transition, consent.id, ConsentStatus.REVOKED, EventSource.USER, {"reason": reason}
        )
