from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from aa_domain.consent_models import ConsentStatus, EventSource
from aa_domain.errors import ConsentNotFoundError, IllegalTransitionError, ValidationError
from consent_registry import ALLOWED_TRANSITIONS, TERMINAL_STATUSES


def test_create_persists_initiated_consent_with_created_event(registry):
    consent = registry.create("user-1", ["bank", "MF"], timedelta(days=30), timedelta(days=180))

    assert consent.status == ConsentStatus.INITIATED.value
    assert consent.data_types == ["DEPOSIT", "MUTUAL_FUNDS"]
    assert consent.fiu_id == "fiu-test"
    assert consent.valid_until > consent.valid_from
    assert consent.data_to > consent.data_from

    events = registry.events(consent.id)
    assert [e.event_type for e in events] == ["CREATED"]
    assert events[0].new_status == "INITIATED"
    assert events[0].previous_status is None


@pytest.mark.parametrize(
    "data_types, validity",
    [
        ([], timedelta(days=30)),
        (["BANK"], timedelta(0)),
        (["BANK"], timedelta(days=-1)),
        (["CRYPTO"], timedelta(days=30)),
    ],
)
def test_create_rejects_malformed_requests(registry, session_factory, data_types, validity):
    with pytest.raises(ValidationError):
        registry.create("user-1", data_types, validity, timedelta(days=30))
    assert registry.outstanding() == []


def test_create_accepts_explicit_windows(registry):
    start = datetime(2030, 1, 1, tzinfo=timezone.utc)
    consent = registry.create(
        "user-1",
        ["DEMAT"],
        (start, start + timedelta(days=10)),
        ("2029-01-01", "2029-12-31T00:00:00+05:30"),
    )
    assert consent.valid_from == datetime(2030, 1, 1)
    assert consent.data_types == ["EQUITIES"]


def test_create_rejects_inverted_window(registry):
    with pytest.raises(ValidationError):
        registry.create("user-1", ["BANK"], ("2030-01-02", "2030-01-01"), timedelta(days=1))


def test_transition_attaches_handle_and_logs_event(registry):
    consent = registry.create("user-1", ["BANK"], timedelta(days=30), timedelta(days=30))
    pending = registry.transition(
        consent.id,
        ConsentStatus.PENDING,
        EventSource.SYSTEM,
        {"redirect_url": "https://aa.test/approve"},
        consent_handle="h-1",
        redirect_url="https://aa.test/approve",
    )
    assert pending.status == "PENDING"
    assert pending.consent_handle == "h-1"

    active = registry.transition("h-1", "ACTIVE", "AGGREGATOR", consent_id="cid-1")
    assert active.consent_id == "cid-1"

    # handle, id and internal id resolve to the same record
    assert registry.resolve("h-1").id == consent.id
    assert registry.resolve("cid-1").id == consent.id
    assert registry.resolve(consent.id).status == "ACTIVE"

    events = registry.events("cid-1")
    assert [e.event_type for e in events] == ["CREATED", "SUBMITTED", "APPROVED"]
    assert events[-1].source == "AGGREGATOR"
    assert events[-1].previous_status == "PENDING"
    assert events[1].details == {"redirect_url": "https://aa.test/approve"}


def test_illegal_transition_leaves_state_untouched(registry, make_consent):
    consent = make_consent(ConsentStatus.ACTIVE)
    before = len(registry.events(consent.id))

    with pytest.raises(IllegalTransitionError) as exc_info:
        registry.transition(consent.id, ConsentStatus.INITIATED)
    assert exc_info.value.current == "ACTIVE"
    assert exc_info.value.requested == "INITIATED"

    assert registry.resolve(consent.id).status == "ACTIVE"
    assert len(registry.events(consent.id)) == before


@pytest.mark.parametrize("terminal", sorted(TERMINAL_STATUSES, key=lambda s: s.value))
def test_terminal_states_have_no_exit(registry, make_consent, terminal):
    consent = make_consent(terminal)
    for target in ConsentStatus:
        with pytest.raises(IllegalTransitionError):
            registry.transition(consent.id, target)
    assert registry.resolve(consent.id).status == terminal.value


@pytest.mark.parametrize(
    "path",
    [
        ["PENDING", "ACTIVE", "PAUSED"],
        ["PENDING", "EXPIRED"],
        ["ACTIVE", "PENDING", "ACTIVE", "REVOKED", "ACTIVE"],
        ["PENDING", "PENDING", "REVOKED"],
        ["EXPIRED", "PENDING", "ACTIVE", "EXPIRED", "PAUSED"],
    ],
)
def test_replayed_event_log_matches_materialized_status(registry, path):
    consent = registry.create("user-1", ["BANK"], timedelta(days=30), timedelta(days=30))
    for i, target in enumerate(path):
        try:
            registry.transition(consent.id, target, consent_handle=f"h-{consent.id}")
        except IllegalTransitionError:
            pass
        assert registry.replay_status(consent.id).value == registry.resolve(consent.id).status

    for event in registry.events(consent.id)[1:]:
        assert ConsentStatus(event.new_status) in ALLOWED_TRANSITIONS[ConsentStatus(event.previous_status)]


def test_resolve_unknown_consent(registry):
    with pytest.raises(ConsentNotFoundError):
        registry.resolve("does-not-exist")
    assert registry.find("does-not-exist") is None


def test_outstanding_lists_pending_only(registry, make_consent):
    pending = make_consent(ConsentStatus.PENDING)
    make_consent(ConsentStatus.ACTIVE)
    make_consent(ConsentStatus.INITIATED)
    assert [c.id for c in registry.outstanding()] == [pending.id]
