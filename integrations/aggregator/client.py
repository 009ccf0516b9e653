from __future__ import annotations

"""Async client for the Account Aggregator network.

Only the calls the consent core consumes are implemented:

1. `POST /consents` – initiate a consent request, returns handle + redirect URL
2. `GET /consents/{handle}/status` – out-of-band approval status
3. `GET /consents/{handle}/accounts` – accounts the FIPs disclose under a consent
4. `POST /fi/fetch` – financial information for one FI type, optionally
   narrowed to specific linked account references

Designed for `httpx.MockTransport` so offline tests can provide responses.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Sequence

from common.datetime import parse_iso8601

from . import FIU_ID
from .auth import TokenProvider
from .errors import AggregatorRequestError, ConsentRejectedError, MalformedPayloadError
from .http import AggregatorHTTP

__all__ = ["ConsentGrant", "ConsentStatusReport", "DiscoveredAccount", "AggregatorClient"]

# Status endpoint codes meaning the handle is gone for good.
_REJECTION_STATUSES = {400, 403, 404, 410, 422}


@dataclass(slots=True)
class ConsentGrant:
    """Identifiers issued by the aggregator when a consent request is accepted."""

    consent_handle: str
    redirect_url: Optional[str] = None
    consent_id: Optional[str] = None
    raw: Dict = field(default_factory=dict)


@dataclass(slots=True)
class ConsentStatusReport:
    """External view of a consent; `status` uses the aggregator's vocabulary."""

    consent_handle: str
    status: str
    consent_id: Optional[str] = None
    raw: Dict = field(default_factory=dict)


@dataclass(slots=True)
class DiscoveredAccount:
    account_ref: str
    fi_type: str
    fip_id: Optional[str] = None
    masked_account_number: Optional[str] = None
    account_type: Optional[str] = None
    account_name: Optional[str] = None
    link_ref_number: Optional[str] = None


def _iso(value: datetime) -> str:
    return parse_iso8601(value).isoformat().replace("+00:00", "Z")


class AggregatorClient:
    def __init__(
        self,
        http: Optional[AggregatorHTTP] = None,
        *,
        base_url: Optional[str] = None,
        token_provider: Optional[TokenProvider] = None,
        fiu_id: str = FIU_ID,
    ) -> None:
        # allow external http (for mocking)
        self._own_http = http is None
        self.http = http or AggregatorHTTP(base_url=base_url, token_provider=token_provider)
        self._fiu_id = fiu_id

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        if self._own_http:
            await self.http.aclose()

    async def aclose(self) -> None:
        await self.http.aclose()

    # ---------------------------------------------------------------------
    # Public API
    # ---------------------------------------------------------------------

    async def initiate_consent(
        self,
        *,
        customer_ref: str,
        data_types: Sequence[str],
        validity: tuple[datetime, datetime],
        data_range: tuple[datetime, datetime],
        purpose: str,
        consent_mode: str = "VIEW",
        fetch_type: str = "ONETIME",
        frequency: tuple[str, int] = ("MONTH", 1),
    ) -> ConsentGrant:
        body = {
            "txnid": str(uuid.uuid4()),
            "fiuId": self._fiu_id,
            "customer": {"id": customer_ref},
            "purpose": purpose,
            "consentMode": consent_mode,
            "fetchType": fetch_type,
            "fiTypes": list(data_types),
            "consentStart": _iso(validity[0]),
            "consentExpiry": _iso(validity[1]),
            "dataRange": {"from": _iso(data_range[0]), "to": _iso(data_range[1])},
            "frequency": {"unit": frequency[0], "value": frequency[1]},
        }
        data = await self.http.post_json("/consents", body)
        handle = data.get("consentHandle") or data.get("ConsentHandle")
        if not handle:
            raise MalformedPayloadError("initiate consent response has no consentHandle")
        return ConsentGrant(
            consent_handle=handle,
            consent_id=data.get("consentId"),
            redirect_url=data.get("redirectUrl") or data.get("url"),
            raw=data,
        )

    async def get_consent_status(self, consent_handle: str) -> ConsentStatusReport:
        try:
            data = await self.http.get_json(f"/consents/{consent_handle}/status")
        except AggregatorRequestError as exc:
            if exc.status_code in _REJECTION_STATUSES:
                raise ConsentRejectedError(consent_handle, f"HTTP {exc.status_code}") from exc
            raise
        status_block = data.get("ConsentStatus") or {}
        status = status_block.get("status") or data.get("status")
        if not status:
            raise MalformedPayloadError(f"status response for {consent_handle} has no status")
        return ConsentStatusReport(
            consent_handle=data.get("consentHandle") or consent_handle,
            status=str(status).upper(),
            consent_id=status_block.get("id") or data.get("consentId"),
            raw=data,
        )

    async def fetch_data(
        self,
        consent_handle: str,
        fi_type: str,
        account_refs: Optional[List[str]] = None,
    ) -> Dict:
        """Return the raw FI payload; envelope parsing is left to the verticals."""
        body: Dict = {"consentHandle": consent_handle, "fiType": fi_type}
        if account_refs:
            body["accountRefs"] = list(account_refs)
        return await self.http.post_json("/fi/fetch", body)

    async def discover_accounts(self, consent_handle: str, fi_type: str) -> List[DiscoveredAccount]:
        data = await self.http.get_json(
            f"/consents/{consent_handle}/accounts", params={"fiType": fi_type}
        )
        rows = data.get("accounts") or data.get("Accounts") or []
        if not isinstance(rows, list):
            raise MalformedPayloadError("discovery response 'accounts' is not a list")
        out: List[DiscoveredAccount] = []
        for row in rows:
            if not isinstance(row, dict):
                raise MalformedPayloadError("discovered account is not an object")
            ref = row.get("linkedAccRef") or row.get("accountId")
            if not ref:
                raise MalformedPayloadError("discovered account without reference")
            out.append(
                DiscoveredAccount(
                    account_ref=str(ref),
                    fi_type=row.get("fiType") or fi_type,
                    fip_id=row.get("fipId"),
                    masked_account_number=row.get("maskedAccNumber") or row.get("accountNumber"),
                    account_type=row.get("accType") or row.get("accountType"),
                    account_name=row.get("accountName"),
                    link_ref_number=row.get("linkRefNumber"),
                )
            )
        return out
