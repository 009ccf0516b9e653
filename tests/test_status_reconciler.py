from __future__ import annotations

import asyncio
import threading

import httpx
import pytest

from aa_domain.consent_models import ConsentStatus
from aa_domain.errors import ValidationError
from aa_fakes import FakeClock, make_client
from consent_registry import ReconcilerSettings, StatusReconciler, map_external_status
from integrations.aggregator.client import AggregatorClient
from integrations.aggregator.errors import AggregatorAuthError
from integrations.aggregator.http import AggregatorHTTP


def _reconciler(registry, handler, clock=None, **settings):
    clock = clock or FakeClock()
    return StatusReconciler(
        registry,
        make_client(handler),
        settings=ReconcilerSettings(**{"interval": 1.0, "max_duration": 10.0, "backoff_max": 4.0, **settings}),
        sleep=clock.sleep,
        clock=clock,
    )


def test_external_status_vocabulary():
    assert map_external_status("approved") is ConsentStatus.ACTIVE
    assert map_external_status("REJECTED") is ConsentStatus.REVOKED
    assert map_external_status("READY") is ConsentStatus.PENDING
    assert map_external_status("SOMETHING_NEW") is None


@pytest.mark.anyio
async def test_approval_observed_on_next_poll(registry, make_consent):
    consent = make_consent(ConsentStatus.PENDING, handle="h-approve")
    replies = iter(
        [
            {"status": "PENDING"},
            {"ConsentStatus": {"status": "ACTIVE", "id": "cid-approve"}},
        ]
    )
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.path)
        return httpx.Response(200, json=next(replies))

    reconciler = _reconciler(registry, handler)
    status = await reconciler.poll_until_settled("h-approve")

    assert status is ConsentStatus.ACTIVE
    assert calls == ["/api/consents/h-approve/status"] * 2
    stored = registry.resolve(consent.id)
    assert stored.status == "ACTIVE"
    assert stored.consent_id == "cid-approve"
    events = registry.events(consent.id)
    assert [e.event_type for e in events] == ["CREATED", "SUBMITTED", "APPROVED"]
    assert events[-1].source == "AGGREGATOR"
    assert not reconciler.is_polling("h-approve")


@pytest.mark.anyio
async def test_repeated_timeouts_expire_only_after_deadline(registry, make_consent):
    consent = make_consent(ConsentStatus.PENDING, handle="h-slow")
    clock = FakeClock()
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        # the consent must still be PENDING every time we ask
        seen.append((clock.now, registry.resolve("h-slow").status))
        raise httpx.ReadTimeout("timed out", request=request)

    reconciler = _reconciler(registry, handler, clock=clock)
    status = await reconciler.poll_until_settled(consent.id)

    assert status is ConsentStatus.EXPIRED
    assert clock.now >= 10.0
    assert [t for t, _ in seen] == [0.0, 1.0, 3.0, 7.0]
    assert {s for _, s in seen} == {"PENDING"}
    # back-off doubles, is capped, and never overshoots the deadline
    assert clock.sleeps == [1.0, 2.0, 4.0, 3.0]
    last = registry.events(consent.id)[-1]
    assert (last.new_status, last.source) == ("EXPIRED", "SYSTEM")


@pytest.mark.anyio
async def test_definitive_rejection_revokes(registry, make_consent):
    consent = make_consent(ConsentStatus.PENDING, handle="h-gone")

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, json={"error": "unknown handle"})

    status = await _reconciler(registry, handler).poll_until_settled("h-gone")

    assert status is ConsentStatus.REVOKED
    last = registry.events(consent.id)[-1]
    assert last.source == "AGGREGATOR"
    assert last.details == {"reason": "HTTP 404"}


@pytest.mark.anyio
async def test_rejected_status_body_maps_to_revoked(registry, make_consent):
    make_consent(ConsentStatus.PENDING, handle="h-denied")

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"status": "REJECTED"})

    status = await _reconciler(registry, handler).poll_until_settled("h-denied")
    assert status is ConsentStatus.REVOKED


@pytest.mark.anyio
async def test_unknown_status_is_ignored_until_known(registry, make_consent):
    make_consent(ConsentStatus.PENDING, handle="h-odd")
    replies = iter([{"status": "MYSTERY"}, {"status": "PAUSED"}])

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=next(replies))

    status = await _reconciler(registry, handler).poll_until_settled("h-odd")
    assert status is ConsentStatus.PAUSED


@pytest.mark.anyio
async def test_single_flight_and_cancel(registry, make_consent):
    consent = make_consent(ConsentStatus.PENDING, handle="h-wait")
    blocker = asyncio.Event()

    async def never(_delay: float) -> None:
        await blocker.wait()

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"status": "PENDING"})

    reconciler = StatusReconciler(
        registry,
        make_client(handler),
        settings=ReconcilerSettings(interval=1.0, max_duration=60.0),
        sleep=never,
    )
    first = reconciler.start("h-wait")
    second = reconciler.start(consent.id)
    assert first is second
    await asyncio.sleep(0.01)
    assert reconciler.is_polling("h-wait")

    assert await reconciler.cancel("h-wait") is True
    assert first.cancelled()
    assert not reconciler.is_polling("h-wait")
    assert await reconciler.cancel("h-wait") is False
    assert registry.resolve(consent.id).status == "PENDING"


@pytest.mark.anyio
async def test_polling_requires_pending_consent(registry, make_consent):
    consent = make_consent(ConsentStatus.ACTIVE)
    reconciler = _reconciler(registry, lambda request: httpx.Response(200, json={}))
    with pytest.raises(ValidationError):
        reconciler.start(consent.id)


@pytest.mark.anyio
async def test_unexpected_client_error_backs_off_until_deadline(registry, make_consent):
    consent = make_consent(ConsentStatus.PENDING, handle="h-409")
    clock = FakeClock()

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(409, json={"error": "consent busy"})

    reconciler = _reconciler(registry, handler, clock=clock)
    task = reconciler.start("h-409")
    assert reconciler.is_polling("h-409")
    status = await task

    assert status is ConsentStatus.EXPIRED
    assert clock.sleeps == [1.0, 2.0, 4.0, 3.0]
    assert not reconciler.is_polling("h-409")
    last = registry.events(consent.id)[-1]
    assert (last.new_status, last.source) == ("EXPIRED", "SYSTEM")


class _BrokenLogin:
    async def token(self):
        raise AggregatorAuthError("aggregator login returned 403")

    async def refresh(self):
        return await self.token()


@pytest.mark.anyio
async def test_login_failure_does_not_kill_poller(registry, make_consent):
    make_consent(ConsentStatus.PENDING, handle="h-nologin")
    clock = FakeClock()
    http = AggregatorHTTP(
        base_url="https://aa.test/api",
        token_provider=_BrokenLogin(),
        transport=httpx.MockTransport(lambda request: httpx.Response(200, json={"status": "ACTIVE"})),
        max_attempts=1,
    )
    reconciler = StatusReconciler(
        registry,
        AggregatorClient(http, fiu_id="fiu-test"),
        settings=ReconcilerSettings(interval=1.0, max_duration=5.0, backoff_max=4.0),
        sleep=clock.sleep,
        clock=clock,
    )

    assert await reconciler.poll_until_settled("h-nologin") is ConsentStatus.EXPIRED
    assert clock.now == 5.0


@pytest.mark.anyio
async def test_registry_calls_run_off_the_event_loop(registry, make_consent, monkeypatch):
    make_consent(ConsentStatus.PENDING, handle="h-thread")
    loop_thread = threading.get_ident()
    threads = []
    for name in ("resolve", "transition"):
        def recording(*args, _original=getattr(registry, name), **kwargs):
            threads.append(threading.get_ident())
            return _original(*args, **kwargs)

        monkeypatch.setattr(registry, name, recording)

    reconciler = _reconciler(registry, lambda request: httpx.Response(200, json={"status": "ACTIVE"}))
    task = reconciler.start("h-thread")
    # start() itself resolves inline before the task first runs
    threads.clear()

    assert await task is ConsentStatus.ACTIVE
    assert threads
    assert loop_thread not in threads
