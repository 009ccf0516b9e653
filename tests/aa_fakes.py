"""Aggregator doubles and payload builders shared by the test modules."""
from __future__ import annotations

import asyncio

import httpx

from integrations.aggregator.auth import StaticTokenProvider
from integrations.aggregator.client import AggregatorClient
from integrations.aggregator.http import AggregatorHTTP


def make_client(handler, *, max_attempts: int = 1) -> AggregatorClient:
    http = AggregatorHTTP(
        base_url="https://aa.test/api",
        token_provider=StaticTokenProvider("aa-test-bearer"),
        transport=httpx.MockTransport(handler),
        max_attempts=max_attempts,
        backoff_base=0,
    )
    return AggregatorClient(http, fiu_id="fiu-test")


class FakeClock:
    """Monotonic clock advanced only by the injected sleep."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, delay: float) -> None:
        self.sleeps.append(delay)
        self.now += delay
        await asyncio.sleep(0)


def bank_payload(ref: str, *, holdings=(), transactions=(), balance: str = "1000.00", status: str = "ACTIVE"):
    return {
        "FI": [
            {
                "fipId": "HDFC-FIP",
                "data": {
                    "account": {
                        "linkedAccRef": ref,
                        "maskedAccNumber": f"XXXX{ref[-4:]}",
                        "type": "deposit",
                        "Summary": {"currentBalance": balance, "type": "SAVINGS", "status": status},
                        "Holdings": {"Holding": list(holdings)},
                        "Transactions": {"Transaction": list(transactions)},
                    }
                },
            }
        ]
    }
