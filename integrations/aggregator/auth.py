"""Token providers for the aggregator API.

Two strategies exist: a *static* bearer suitable for sandbox and tests, and
the *password* login flow the production FIU channel uses (exchange user id
and password for a short-lived token, re-login on expiry or 401).
"""
from __future__ import annotations

import logging
import os
import time
from typing import Protocol, runtime_checkable

import httpx
from prometheus_client import Counter

from aa_observability.metrics import get_metric
from common.secrets import get_secret

from . import BASE_URL, HTTP_TIMEOUT_SECONDS
from .errors import AggregatorAuthError, TransientAggregatorError

_LOG = logging.getLogger(__name__)

_TOKENS_ISSUED = get_metric(
    Counter, "aa_auth_tokens_issued_total", "Aggregator tokens issued", ["provider"]
)

__all__ = [
    "TokenProvider",
    "StaticTokenProvider",
    "PasswordTokenProvider",
    "get_token_provider",
]

# Refresh this many seconds before the advertised expiry.
_SKEW = int(os.getenv("AA_TOKEN_SKEW_SECONDS", "30"))


@runtime_checkable
class TokenProvider(Protocol):
    """Return a valid bearer token string."""

    async def token(self) -> str:  # noqa: D401 – imperative form
        ...

    async def refresh(self) -> str:  # noqa: D401 – imperative form
        """Force-refresh token ignoring any cache."""


class StaticTokenProvider:
    """Simple provider that returns a fixed token from the secrets manager."""

    def __init__(self, token: str | None = None) -> None:
        self._token = token or get_secret("AA_STATIC_BEARER", "disabled")

    async def token(self) -> str:  # type: ignore[override]
        return self._token

    async def refresh(self) -> str:  # type: ignore[override]
        return self._token


class PasswordTokenProvider:
    """Channel login: POST credentials to ``/User/Login`` and cache the token."""

    def __init__(
        self,
        *,
        base_url: str = BASE_URL,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._login_url = f"{base_url.rstrip('/')}/User/Login"
        self._user_id = get_secret("AA_USER_ID")
        self._password = get_secret("AA_PASSWORD")
        self._channel_id = get_secret("AA_CHANNEL_ID", "finsense")
        self._transport = transport
        self._token: str | None = None
        self._expires_at = 0.0

    async def token(self) -> str:  # type: ignore[override]
        if self._token and time.time() < self._expires_at - _SKEW:
            return self._token
        return await self.refresh()

    async def refresh(self) -> str:  # type: ignore[override]
        if not self._user_id or not self._password:
            raise AggregatorAuthError("AA_USER_ID / AA_PASSWORD not configured for password login")
        body = {
            "header": {"rid": "login", "channelId": self._channel_id},
            "body": {"userId": self._user_id, "password": self._password},
        }
        try:
            async with httpx.AsyncClient(
                timeout=HTTP_TIMEOUT_SECONDS, transport=self._transport
            ) as client:
                resp = await client.post(self._login_url, json=body)
        except httpx.RequestError as exc:
            raise TransientAggregatorError(f"aggregator login failed: {exc}") from exc
        if resp.status_code >= 500:
            raise TransientAggregatorError(
                f"aggregator login returned {resp.status_code}", status_code=resp.status_code
            )
        if resp.status_code >= 400:
            raise AggregatorAuthError(f"aggregator login returned {resp.status_code}")
        try:
            payload = resp.json()
        except ValueError as exc:
            raise AggregatorAuthError("aggregator login response was not JSON") from exc
        token = (payload.get("body") or {}).get("token") or payload.get("token")
        if not token:
            raise AggregatorAuthError("aggregator login response carried no token")
        self._token = token
        self._expires_at = time.time() + int(payload.get("expiresIn", 3600))
        _TOKENS_ISSUED.labels("password").inc()
        _LOG.debug("Issued aggregator token for channel=%s", self._channel_id)
        return token


_STRATEGIES = {
    "static": StaticTokenProvider,
    "password": PasswordTokenProvider,
}


def get_token_provider() -> TokenProvider:
    strategy = os.getenv("AA_TOKEN_STRATEGY", "static").lower()
    provider_cls = _STRATEGIES.get(strategy)
    if provider_cls is None:
        raise ValueError(f"Unsupported AA_TOKEN_STRATEGY: {strategy}")
    return provider_cls()
