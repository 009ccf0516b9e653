"""Shared HTTP helper for the aggregator REST API.

Uses `httpx.AsyncClient` with:
* Base URL from env vars (see `integrations.aggregator`)
* Automatic bearer-token injection via `TokenProvider`
* Exponential back-off retry on network errors, 429 and 5xx
* One forced token refresh on 401
* Prometheus counters + histogram (labels: endpoint, method, status)

Exhausted retries surface as `TransientAggregatorError`; any other 4xx as
`AggregatorRequestError`. Tests pass an `httpx.MockTransport`.
"""
from __future__ import annotations

import asyncio
import logging
import random
import time
from typing import Any, Optional

import httpx

from aa_observability.metrics import http_latency_seconds, http_requests_total

from . import BASE_URL, HTTP_MAX_ATTEMPTS, HTTP_TIMEOUT_SECONDS
from .auth import TokenProvider, get_token_provider
from .errors import AggregatorRequestError, MalformedPayloadError, TransientAggregatorError

__all__ = ["AggregatorHTTP"]

_LOG = logging.getLogger(__name__)

_RETRY_STATUSES = {429, 500, 502, 503, 504}


class AggregatorHTTP:
    def __init__(
        self,
        *,
        base_url: Optional[str] = None,
        token_provider: Optional[TokenProvider] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = HTTP_TIMEOUT_SECONDS,
        max_attempts: int = HTTP_MAX_ATTEMPTS,
        backoff_base: float = 0.1,
    ):
        self._token_provider = token_provider or get_token_provider()
        self._max_attempts = max(1, max_attempts)
        self._backoff_base = backoff_base
        self._client = httpx.AsyncClient(
            base_url=base_url or BASE_URL, timeout=timeout, transport=transport
        )

    def _delay(self, attempt: int, retry_after: str | None = None) -> float:
        if retry_after and retry_after.isdigit():
            return float(retry_after)
        delay = 2 ** attempt * self._backoff_base
        return delay * (1 + random.random() * 0.2)  # jitter +20%

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        headers_template = kwargs.pop("headers", {})
        endpoint_label = url.split("?", 1)[0]
        attempt = 0
        refreshed = False
        while True:
            token = await self._token_provider.token()
            headers = {**headers_template, "Authorization": f"Bearer {token}"}

            attempt += 1
            start = time.perf_counter()
            try:
                resp = await self._client.request(method, url, headers=headers, **kwargs)
            except httpx.TimeoutException as exc:
                http_requests_total.labels(endpoint_label, method.lower(), "timeout").inc()
                if attempt >= self._max_attempts:
                    raise TransientAggregatorError(f"{method} {url} timed out") from exc
                await asyncio.sleep(self._delay(attempt))
                continue
            except httpx.RequestError as exc:
                http_requests_total.labels(endpoint_label, method.lower(), "error").inc()
                if attempt >= self._max_attempts:
                    raise TransientAggregatorError(f"{method} {url} failed: {exc}") from exc
                await asyncio.sleep(self._delay(attempt))
                continue

            http_latency_seconds.labels(endpoint_label).observe(time.perf_counter() - start)
            http_requests_total.labels(endpoint_label, method.lower(), resp.status_code).inc()

            if resp.status_code in _RETRY_STATUSES:
                if attempt < self._max_attempts:
                    await asyncio.sleep(self._delay(attempt, resp.headers.get("Retry-After")))
                    continue
                raise TransientAggregatorError(
                    f"{method} {url} returned {resp.status_code}", status_code=resp.status_code
                )
            if resp.status_code == 401 and not refreshed:
                # token likely expired; refresh provider and retry once
                await self._token_provider.refresh()
                refreshed = True
                continue
            if resp.status_code >= 400:
                _LOG.warning("Aggregator %s %s -> %s", method, endpoint_label, resp.status_code)
                raise AggregatorRequestError(
                    f"{method} {url} returned {resp.status_code}",
                    status_code=resp.status_code,
                    body=resp.text,
                )
            return resp

    async def get_json(self, url: str, **kw: Any) -> dict:
        return _json(await self._request("GET", url, **kw))

    async def post_json(self, url: str, body: dict, **kw: Any) -> dict:
        return _json(await self._request("POST", url, json=body, **kw))

    async def aclose(self) -> None:
        await self._client.aclose()

    # context-manager sugar
    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.aclose()


def _json(resp: httpx.Response) -> dict:
    try:
        data = resp.json()
    except ValueError as exc:
        raise MalformedPayloadError(f"non-JSON response from {resp.request.url}") from exc
    if not isinstance(data, dict):
        raise MalformedPayloadError(f"expected JSON object from {resp.request.url}")
    return data
