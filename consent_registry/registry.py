"""Consent Registry: owns consent rows and enforces the status state machine.

Every status change goes through :meth:`ConsentRegistry.transition`, which
appends a :class:`ConsentEvent` and updates the materialized status in one
database transaction. No other component writes ``Consent.status``.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from sqlalchemy import or_
from sqlmodel import Session, select

from aa_domain.consent_models import Consent, ConsentEvent, ConsentStatus, EventSource
from aa_domain.db import SessionFactory
from aa_domain.errors import ConsentNotFoundError, IllegalTransitionError, ValidationError
from aa_domain.fi_types import normalize_fi_types
from aa_observability.metrics import (consent_illegal_transitions_total,
                                      consent_transitions_total)
from common.datetime import parse_iso8601, to_naive_utc, utcnow
from integrations.aggregator import FIU_ID

__all__ = [
    "ALLOWED_TRANSITIONS",
    "TERMINAL_STATUSES",
    "ConsentRegistry",
    "Window",
]

_LOG = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: Dict[ConsentStatus, frozenset] = {
    ConsentStatus.INITIATED: frozenset({ConsentStatus.PENDING}),
    ConsentStatus.PENDING: frozenset(
        {ConsentStatus.ACTIVE, ConsentStatus.EXPIRED, ConsentStatus.REVOKED, ConsentStatus.PAUSED}
    ),
    ConsentStatus.ACTIVE: frozenset(
        {ConsentStatus.EXPIRED, ConsentStatus.REVOKED, ConsentStatus.PAUSED}
    ),
    ConsentStatus.EXPIRED: frozenset(),
    ConsentStatus.REVOKED: frozenset(),
    ConsentStatus.PAUSED: frozenset(),
}

TERMINAL_STATUSES = frozenset(s for s, edges in ALLOWED_TRANSITIONS.items() if not edges)

_EVENT_TYPES = {
    ConsentStatus.INITIATED: "CREATED",
    ConsentStatus.PENDING: "SUBMITTED",
    ConsentStatus.ACTIVE: "APPROVED",
    ConsentStatus.EXPIRED: "EXPIRED",
    ConsentStatus.REVOKED: "REVOKED",
    ConsentStatus.PAUSED: "PAUSED",
}

DEFAULT_PURPOSE = "Wealth management and investment tracking"

# A window is either an explicit (start, end) pair or a duration anchored at now.
Window = Union[timedelta, Tuple[Union[datetime, str], Union[datetime, str]]]


def _window(value: Window, *, backwards: bool, label: str) -> Tuple[datetime, datetime]:
    now = utcnow()
    if isinstance(value, timedelta):
        start, end = (now - value, now) if backwards else (now, now + value)
    else:
        try:
            raw_start, raw_end = value
            start, end = parse_iso8601(raw_start), parse_iso8601(raw_end)
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"{label} must be a timedelta or a (start, end) pair") from exc
    if end <= start:
        raise ValidationError(f"{label} window must be positive, got {start} .. {end}")
    return to_naive_utc(start), to_naive_utc(end)


def _lookup(session: Session, ref: str, *, for_update: bool = False) -> Optional[Consent]:
    stmt = select(Consent).where(
        or_(Consent.id == ref, Consent.consent_handle == ref, Consent.consent_id == ref)
    )
    if for_update:
        stmt = stmt.with_for_update()
    return session.exec(stmt).first()


class ConsentRegistry:
    def __init__(self, session_factory: SessionFactory, *, fiu_id: str = FIU_ID) -> None:
        self._session_factory = session_factory
        self._fiu_id = fiu_id

    # ------------------------------------------------------------------
    def create(
        self,
        user_id: str,
        data_types: Iterable[str],
        validity: Window,
        data_range: Window,
        *,
        purpose: str = DEFAULT_PURPOSE,
        consent_mode: str = "VIEW",
        fetch_type: str = "ONETIME",
        frequency: Tuple[str, int] = ("MONTH", 1),
        details: Optional[Mapping[str, Any]] = None,
    ) -> Consent:
        """Persist a new consent in INITIATED together with its CREATED event.

        Raises ``ValidationError`` before touching the database when the
        request is malformed.
        """
        if not user_id:
            raise ValidationError("user_id is required")
        types = normalize_fi_types(data_types or [])
        if not types:
            raise ValidationError("at least one data type is required")
        valid_from, valid_until = _window(validity, backwards=False, label="validity")
        data_from, data_to = _window(data_range, backwards=True, label="data range")
        if frequency[1] <= 0:
            raise ValidationError("frequency value must be positive")

        consent = Consent(
            user_id=user_id,
            fiu_id=self._fiu_id,
            status=ConsentStatus.INITIATED.value,
            data_types=types,
            purpose=purpose,
            consent_mode=consent_mode.upper(),
            fetch_type=fetch_type.upper(),
            frequency_unit=frequency[0].upper(),
            frequency_value=frequency[1],
            valid_from=valid_from,
            valid_until=valid_until,
            data_from=data_from,
            data_to=data_to,
            details=dict(details or {}),
        )
        with self._session_factory() as sess:
            sess.add(consent)
            sess.add(
                ConsentEvent(
                    consent_pk=consent.id,
                    event_type=_EVENT_TYPES[ConsentStatus.INITIATED],
                    source=EventSource.SYSTEM.value,
                    previous_status=None,
                    new_status=ConsentStatus.INITIATED.value,
                    details={"data_types": types},
                )
            )
            sess.commit()
            sess.refresh(consent)
        _LOG.info("Consent %s created for user %s (%s)", consent.id, user_id, ",".join(types))
        return consent

    # ------------------------------------------------------------------
    def transition(
        self,
        consent_ref: str,
        new_status: Union[ConsentStatus, str],
        source: Union[EventSource, str] = EventSource.SYSTEM,
        metadata: Optional[Mapping[str, Any]] = None,
        *,
        consent_handle: Optional[str] = None,
        consent_id: Optional[str] = None,
        redirect_url: Optional[str] = None,
    ) -> Consent:
        """Apply one edge of the state machine atomically.

        The event append and the status update are committed together; on an
        illegal edge nothing is written and ``IllegalTransitionError`` is
        raised. Identifiers issued by the aggregator can be attached in the
        same transaction.
        """
        target = ConsentStatus(new_status)
        source_value = EventSource(source).value
        with self._session_factory() as sess:
            consent = _lookup(sess, consent_ref, for_update=True)
            if consent is None:
                raise ConsentNotFoundError(consent_ref)
            current = ConsentStatus(consent.status)
            if target not in ALLOWED_TRANSITIONS[current]:
                consent_illegal_transitions_total.labels(target.value).inc()
                _LOG.warning(
                    "Rejected consent transition %s -> %s for %s (source=%s)",
                    current.value,
                    target.value,
                    consent_ref,
                    source_value,
                )
                raise IllegalTransitionError(consent_ref, current.value, target.value)

            if consent_handle and consent.consent_handle not in (None, consent_handle):
                raise ValidationError(
                    f"consent {consent.id} already has handle {consent.consent_handle}"
                )
            if consent_handle:
                consent.consent_handle = consent_handle
            if consent_id:
                consent.consent_id = consent_id
            if redirect_url:
                consent.redirect_url = redirect_url

            sess.add(
                ConsentEvent(
                    consent_pk=consent.id,
                    consent_handle=consent.consent_handle,
                    event_type=_EVENT_TYPES[target],
                    source=source_value,
                    previous_status=current.value,
                    new_status=target.value,
                    details=dict(metadata or {}),
                )
            )
            consent.status = target.value
            consent.updated_at = to_naive_utc(utcnow())
            sess.add(consent)
            sess.commit()
            sess.refresh(consent)

        consent_transitions_total.labels(current.value, target.value, source_value).inc()
        _LOG.info(
            "Consent %s: %s -> %s (source=%s)",
            consent.consent_handle or consent.id,
            current.value,
            target.value,
            source_value,
            extra={"consent_handle": consent.consent_handle},
        )
        return consent

    # ------------------------------------------------------------------
    def find(self, consent_ref: str) -> Optional[Consent]:
        """Look a consent up by internal id, consent handle or consent id."""
        with self._session_factory() as sess:
            return _lookup(sess, consent_ref)

    def resolve(self, consent_ref: str) -> Consent:
        consent = self.find(consent_ref)
        if consent is None:
            raise ConsentNotFoundError(consent_ref)
        return consent

    def events(self, consent_ref: str) -> List[ConsentEvent]:
        consent = self.resolve(consent_ref)
        with self._session_factory() as sess:
            return list(
                sess.exec(
                    select(ConsentEvent)
                    .where(ConsentEvent.consent_pk == consent.id)
                    .order_by(ConsentEvent.id)
                ).all()
            )

    def replay_status(self, consent_ref: str) -> Optional[ConsentStatus]:
        """Fold the event log; must equal the materialized status."""
        status: Optional[ConsentStatus] = None
        for event in self.events(consent_ref):
            status = ConsentStatus(event.new_status)
        return status

    def outstanding(self) -> List[Consent]:
        """Consents still waiting on out-of-band approval."""
        with self._session_factory() as sess:
            return list(
                sess.exec(
                    select(Consent).where(Consent.status == ConsentStatus.PENDING.value)
                ).all()
            )
