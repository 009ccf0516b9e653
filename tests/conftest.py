from __future__ import annotations

from datetime import timedelta
from typing import Callable, Iterable, Optional

import pytest

from aa_domain.consent_models import ConsentStatus, EventSource
from aa_domain.db import create_db_engine, init_db, session_factory as make_session_factory
from common import secrets as secrets_module
from consent_registry import ConsentRegistry


@pytest.fixture
def anyio_backend():
    return "asyncio"


# ---------------------------------------------------------------------------
# Default auth token for API tests
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _secrets() -> None:
    """Provide default secrets for tests via the secrets manager."""

    secrets_module.secrets.set_override(
        {
            "API_TOKENS": {"tester": "testtoken"},
            "JWT_SECRET": "testsecret",
            "AA_STATIC_BEARER": "aa-test-bearer",
        }
    )
    yield
    secrets_module.secrets.set_override({})


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest.fixture
def db_engine(tmp_path):
    engine = create_db_engine(f"sqlite:///{tmp_path}/aa.db")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return make_session_factory(db_engine)


@pytest.fixture
def registry(session_factory):
    return ConsentRegistry(session_factory, fiu_id="fiu-test")


@pytest.fixture
def make_consent(registry) -> Callable:
    """Create a consent and walk it to *status* through legal transitions."""

    counter = {"n": 0}

    def _make(
        status: ConsentStatus = ConsentStatus.ACTIVE,
        data_types: Iterable[str] = ("BANK",),
        user_id: str = "user-1",
        handle: Optional[str] = None,
    ):
        counter["n"] += 1
        consent = registry.create(user_id, list(data_types), timedelta(days=30), timedelta(days=365))
        if status is ConsentStatus.INITIATED:
            return consent
        consent = registry.transition(
            consent.id,
            ConsentStatus.PENDING,
            EventSource.SYSTEM,
            consent_handle=handle or f"handle-{counter['n']}",
        )
        if status is ConsentStatus.PENDING:
            return consent
        if status is not ConsentStatus.ACTIVE:
            return registry.transition(consent.id, status, EventSource.AGGREGATOR)
        return registry.transition(consent.id, ConsentStatus.ACTIVE, EventSource.AGGREGATOR)

    return _make

