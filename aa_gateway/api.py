"""FastAPI operator endpoints for the consent core."""
from __future__ import annotations
import os
from common.logging import configure_logging
configure_logging(os.getenv("LOG_FORMAT", "json"), service_name="aa_gateway")

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from prometheus_client import make_asgi_app
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import text
from sqlalchemy.engine import Engine

from aa_domain import db
from aa_domain.errors import (AggregatorCoreError, BatchImmutableError, BatchNotFoundError,
                              BatchNotRetryableError, ConsentNotActiveError,
                              ConsentNotFoundError, IllegalTransitionError, OrphanReferenceError,
                              ValidationError)
from common.auth import require_token
from consent_registry import ConsentRegistry, ConsentService, StatusReconciler
from fi_ingestion import BatchStore, FetchOrchestrator, IngestionEngine
from integrations.aggregator.client import AggregatorClient
from integrations.aggregator.errors import AggregatorError

_LOG = logging.getLogger(__name__)


# ----------------------------------------------------------------------
# Wiring
# ----------------------------------------------------------------------
@dataclass
class Services:
    engine: Engine
    registry: ConsentRegistry
    consents: ConsentService
    reconciler: StatusReconciler
    batches: BatchStore
    orchestrator: FetchOrchestrator


def build_services(engine: Optional[Engine] = None, client: Optional[AggregatorClient] = None) -> Services:
    engine = engine or db.engine
    db.init_db(engine)
    factory = db.session_factory(engine)
    client = client or AggregatorClient()
    registry = ConsentRegistry(factory)
    reconciler = StatusReconciler(registry, client)
    batches = BatchStore(factory)
    ingestion = IngestionEngine(factory, registry, batches)
    return Services(
        engine=engine,
        registry=registry,
        consents=ConsentService(registry, client, reconciler),
        reconciler=reconciler,
        batches=batches,
        orchestrator=FetchOrchestrator(registry, client, ingestion, batches),
    )


_services: Optional[Services] = None


def get_services() -> Services:
    global _services
    if _services is None:
        _services = build_services()
    return _services


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    provider = app.dependency_overrides.get(get_services, get_services)
    if provider is not get_services or _services is not None:
        await provider().reconciler.shutdown()


app = FastAPI(title="aa-core operator API", lifespan=lifespan)
app.mount("/metrics", make_asgi_app())


# ----------------------------------------------------------------------
# Error mapping
# ----------------------------------------------------------------------
_STATUS_BY_ERROR = (
    (ValidationError, 400),
    (ConsentNotFoundError, 404),
    (BatchNotFoundError, 404),
    (IllegalTransitionError, 409),
    (ConsentNotActiveError, 409),
    (BatchImmutableError, 409),
    (BatchNotRetryableError, 409),
    (OrphanReferenceError, 409),
)


@app.exception_handler(AggregatorCoreError)
async def _core_error(request: Request, exc: AggregatorCoreError):
    for cls, code in _STATUS_BY_ERROR:
        if isinstance(exc, cls):
            return JSONResponse(status_code=code, content={"detail": str(exc), "error": type(exc).__name__})
    return JSONResponse(status_code=500, content={"detail": str(exc), "error": type(exc).__name__})


@app.exception_handler(AggregatorError)
async def _upstream_error(request: Request, exc: AggregatorError):
    _LOG.warning("Aggregator call failed on %s: %s", request.url.path, exc)
    return JSONResponse(status_code=502, content={"detail": str(exc), "error": type(exc).__name__})


# ----------------------------------------------------------------------
# Request / response models
# ----------------------------------------------------------------------
class ConsentCreate(BaseModel):
    user_id: str
    data_types: List[str]
    validity_days: int = 30
    data_range_days: int = 365
    customer_ref: Optional[str] = None
    purpose: Optional[str] = None
    consent_mode: str = "VIEW"
    fetch_type: str = "ONETIME"
    frequency_unit: str = "MONTH"
    frequency_value: int = 1
    poll: bool = True


class ConsentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    consent_handle: Optional[str] = None
    consent_id: Optional[str] = None
    status: str
    data_types: List[str]
    purpose: str
    consent_mode: str
    fetch_type: str
    valid_from: datetime
    valid_until: datetime
    data_from: datetime
    data_to: datetime
    redirect_url: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class ConsentView(ConsentRead):
    replayed_status: Optional[str] = None
    polling: bool = False


class EventRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    consent_handle: Optional[str] = None
    event_type: str
    source: str
    previous_status: Optional[str] = None
    new_status: str
    details: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime


class RevokeRequest(BaseModel):
    reason: str = "revoked by operator"


class DiscoverRequest(BaseModel):
    fi_types: Optional[List[str]] = None


class DiscoveredAccountRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    account_ref: str
    fi_type: str
    fip_id: Optional[str] = None
    masked_account_number: Optional[str] = None
    account_type: Optional[str] = None
    account_name: Optional[str] = None


class FetchRequest(BaseModel):
    account_refs: List[str]
    fi_type: Optional[str] = None


class BatchRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    consent_handle: str
    fi_type: str
    status: str
    account_refs: List[str]
    retry_of_id: Optional[str] = None
    records_fetched: int
    accounts_ingested: int
    holdings_inserted: int
    holdings_skipped: int
    transactions_inserted: int
    transactions_skipped: int
    error_details: Dict[str, Any] = Field(default_factory=dict)
    fetch_started_at: Optional[datetime] = None
    fetch_completed_at: Optional[datetime] = None
    created_at: datetime


class BatchAudit(BatchRead):
    raw_payload: Dict[str, Any] = Field(default_factory=dict)


# ----------------------------------------------------------------------
# Routes
# ----------------------------------------------------------------------
@app.get("/healthz", response_model=dict)
def healthz(svc: Services = Depends(get_services)):
    with svc.engine.connect() as conn:
        conn.execute(text("SELECT 1"))
    return {"ok": True}


@app.post("/consents", response_model=ConsentRead, status_code=201)
async def create_consent(
    body: ConsentCreate,
    svc: Services = Depends(get_services),
    _: dict = Depends(require_token),
):
    kwargs: Dict[str, Any] = {}
    if body.purpose:
        kwargs["purpose"] = body.purpose
    consent = await svc.consents.link(
        body.user_id,
        body.data_types,
        timedelta(days=body.validity_days),
        timedelta(days=body.data_range_days),
        customer_ref=body.customer_ref,
        consent_mode=body.consent_mode,
        fetch_type=body.fetch_type,
        frequency=(body.frequency_unit, body.frequency_value),
        start_polling=body.poll,
        **kwargs,
    )
    return ConsentRead.model_validate(consent)


@app.get("/consents/{ref}", response_model=ConsentView)
def get_consent(ref: str, svc: Services = Depends(get_services), _: dict = Depends(require_token)):
    consent = svc.registry.resolve(ref)
    replayed = svc.registry.replay_status(ref)
    view = ConsentView.model_validate(consent)
    view.replayed_status = replayed.value if replayed else None
    view.polling = bool(consent.consent_handle) and svc.reconciler.is_polling(consent.consent_handle)
    return view


@app.get("/consents/{ref}/events", response_model=List[EventRead])
def get_events(ref: str, svc: Services = Depends(get_services), _: dict = Depends(require_token)):
    return [EventRead.model_validate(e) for e in svc.registry.events(ref)]


@app.post("/consents/{ref}/poll", status_code=202)
async def start_poll(ref: str, svc: Services = Depends(get_services), _: dict = Depends(require_token)):
    consent = await asyncio.to_thread(svc.registry.resolve, ref)
    svc.reconciler.start(consent.id)
    return {"consent_handle": consent.consent_handle, "polling": True}


@app.delete("/consents/{ref}/poll")
async def stop_poll(ref: str, svc: Services = Depends(get_services), _: dict = Depends(require_token)):
    consent = await asyncio.to_thread(svc.registry.resolve, ref)
    cancelled = bool(consent.consent_handle) and await svc.reconciler.cancel(consent.consent_handle)
    return {"consent_handle": consent.consent_handle, "cancelled": cancelled}


@app.post("/consents/{ref}/revoke", response_model=ConsentRead)
async def revoke_consent(
    ref: str,
    body: Optional[RevokeRequest] = None,
    svc: Services = Depends(get_services),
    _: dict = Depends(require_token),
):
    consent = await svc.consents.revoke(ref, reason=(body or RevokeRequest()).reason)
    return ConsentRead.model_validate(consent)


@app.post("/consents/{ref}/discover", response_model=List[DiscoveredAccountRead])
async def discover(
    ref: str,
    body: Optional[DiscoverRequest] = None,
    svc: Services = Depends(get_services),
    _: dict = Depends(require_token),
):
    accounts = await svc.orchestrator.discover(ref, body.fi_types if body else None)
    return [DiscoveredAccountRead.model_validate(a) for a in accounts]


@app.post("/consents/{ref}/fetch", response_model=BatchRead, status_code=201)
async def fetch(
    ref: str,
    body: FetchRequest,
    svc: Services = Depends(get_services),
    _: dict = Depends(require_token),
):
    batch = await svc.orchestrator.dispatch_fetch(ref, body.account_refs, fi_type=body.fi_type)
    return BatchRead.model_validate(batch)


@app.get("/consents/{ref}/batches", response_model=List[BatchRead])
def list_batches(ref: str, svc: Services = Depends(get_services), _: dict = Depends(require_token)):
    consent = svc.registry.resolve(ref)
    return [BatchRead.model_validate(b) for b in svc.batches.for_consent(consent.id)]


@app.get("/batches/{batch_id}", response_model=BatchAudit)
def get_batch(batch_id: str, svc: Services = Depends(get_services), _: dict = Depends(require_token)):
    return BatchAudit.model_validate(svc.batches.get(batch_id))


@app.post("/batches/{batch_id}/retry", response_model=BatchRead, status_code=201)
async def retry_batch(batch_id: str, svc: Services = Depends(get_services), _: dict = Depends(require_token)):
    batch = await svc.orchestrator.redispatch(batch_id)
    return BatchRead.model_validate(batch)
