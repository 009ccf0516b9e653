from __future__ import annotations

import httpx
import pytest
from fastapi.testclient import TestClient

from aa_domain.consent_models import ConsentStatus
from aa_fakes import bank_payload, make_client
from aa_gateway import api

AUTH = {"Authorization": "Bearer testtoken"}


class Upstream:
    def __init__(self):
        self.fail_initiate = False

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path.endswith("/consents"):
            if self.fail_initiate:
                return httpx.Response(503)
            return httpx.Response(200, json={"consentHandle": "h-api", "redirectUrl": "https://aa.test/r"})
        if path.endswith("/fi/fetch"):
            return httpx.Response(200, json=bank_payload("acc-1", holdings=[{"instrumentId": "S1", "currentValue": "5"}]))
        if path.endswith("/accounts"):
            return httpx.Response(200, json={"accounts": [{"linkedAccRef": "acc-1"}]})
        return httpx.Response(200, json={"status": "PENDING"})


@pytest.fixture
def upstream():
    return Upstream()


@pytest.fixture
def client(db_engine, upstream):
    services = api.build_services(db_engine, make_client(upstream))
    api.app.dependency_overrides[api.get_services] = lambda: services
    with TestClient(api.app) as test_client:
        yield test_client
    api.app.dependency_overrides.clear()


def test_healthz(client):
    resp = client.get("/healthz")
    assert resp.status_code == 200
    assert resp.json() == {"ok": True}


def test_requires_token(client):
    assert client.get("/consents/x").status_code == 401
    assert client.get("/consents/x", headers={"Authorization": "Bearer wrong"}).status_code == 403


def test_create_and_inspect_consent(client):
    resp = client.post(
        "/consents",
        json={"user_id": "user-1", "data_types": ["BANK"], "validity_days": 30, "poll": False},
        headers=AUTH,
    )
    assert resp.status_code == 201, resp.text
    body = resp.json()
    assert body["status"] == "PENDING"
    assert body["consent_handle"] == "h-api"
    assert body["data_types"] == ["DEPOSIT"]

    view = client.get("/consents/h-api", headers=AUTH).json()
    assert view["replayed_status"] == view["status"] == "PENDING"
    assert view["polling"] is False

    events = client.get(f"/consents/{body['id']}/events", headers=AUTH).json()
    assert [e["event_type"] for e in events] == ["CREATED", "SUBMITTED"]

    # not ACTIVE yet
    resp = client.post("/consents/h-api/fetch", json={"account_refs": ["acc-1"]}, headers=AUTH)
    assert resp.status_code == 409

    resp = client.post("/consents/h-api/revoke", json={"reason": "test"}, headers=AUTH)
    assert resp.status_code == 200
    assert resp.json()["status"] == "REVOKED"
    assert client.post("/consents/h-api/revoke", headers=AUTH).status_code == 409


def test_validation_and_lookup_errors(client):
    resp = client.post("/consents", json={"user_id": "user-1", "data_types": []}, headers=AUTH)
    assert resp.status_code == 400
    assert resp.json()["error"] == "ValidationError"
    assert client.get("/consents/missing", headers=AUTH).status_code == 404
    assert client.get("/batches/missing", headers=AUTH).status_code == 404


def test_upstream_failure_maps_to_bad_gateway(client, upstream):
    upstream.fail_initiate = True
    resp = client.post("/consents", json={"user_id": "user-1", "data_types": ["BANK"], "poll": False}, headers=AUTH)
    assert resp.status_code == 502


def test_discover_fetch_and_audit_batch(client, make_consent):
    consent = make_consent(ConsentStatus.ACTIVE)

    accounts = client.post(f"/consents/{consent.id}/discover", headers=AUTH).json()
    assert [a["account_ref"] for a in accounts] == ["acc-1"]

    resp = client.post(f"/consents/{consent.id}/fetch", json={"account_refs": ["acc-1"]}, headers=AUTH)
    assert resp.status_code == 201, resp.text
    batch = resp.json()
    assert batch["status"] == "COMPLETE"
    assert batch["holdings_inserted"] == 1

    audit = client.get(f"/batches/{batch['id']}", headers=AUTH).json()
    assert audit["raw_payload"]["responses"]["acc-1"]["FI"][0]["fipId"] == "HDFC-FIP"

    assert client.post(f"/batches/{batch['id']}/retry", headers=AUTH).status_code == 409


def test_batches_listed_per_consent(client, make_consent):
    consent = make_consent(ConsentStatus.ACTIVE)
    other = make_consent(ConsentStatus.ACTIVE)
    assert client.get(f"/consents/{consent.id}/batches", headers=AUTH).json() == []

    first = client.post(f"/consents/{consent.id}/fetch", json={"account_refs": ["acc-1"]}, headers=AUTH).json()
    second = client.post(f"/consents/{consent.id}/fetch", json={"account_refs": ["acc-1"]}, headers=AUTH).json()
    client.post(f"/consents/{other.id}/fetch", json={"account_refs": ["acc-1"]}, headers=AUTH)

    listed = client.get(f"/consents/{consent.id}/batches", headers=AUTH).json()
    assert [b["id"] for b in listed] == [first["id"], second["id"]]
    assert [b["holdings_skipped"] for b in listed] == [0, 1]
    assert client.get("/consents/nope/batches", headers=AUTH).status_code == 404
