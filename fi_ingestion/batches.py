"""Fetch batch bookkeeping.

A batch is mutable while REQUESTED or PARTIAL; once COMPLETE or FAILED any
further write raises ``BatchImmutableError``.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional

from sqlmodel import Session, select

from aa_domain.consent_models import Consent
from aa_domain.db import SessionFactory
from aa_domain.errors import BatchImmutableError, BatchNotFoundError
from aa_domain.fi_models import TERMINAL_BATCH_STATUSES, BatchStatus, FetchBatch
from aa_observability.metrics import fetch_batches_total
from common.datetime import to_naive_utc, utcnow

__all__ = ["BatchStore"]

_LOG = logging.getLogger(__name__)


def _now():
    return to_naive_utc(utcnow())


class BatchStore:
    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    def create(
        self,
        consent: Consent,
        fi_type: str,
        account_refs: Iterable[str],
        *,
        retry_of_id: Optional[str] = None,
    ) -> FetchBatch:
        batch = FetchBatch(
            consent_pk=consent.id,
            consent_handle=consent.consent_handle,
            user_id=consent.user_id,
            fi_type=fi_type,
            account_refs=list(account_refs),
            retry_of_id=retry_of_id,
            fetch_started_at=_now(),
        )
        with self._session_factory() as sess:
            sess.add(batch)
            sess.commit()
            sess.refresh(batch)
        _LOG.info(
            "Batch %s requested (%s, %d accounts)%s",
            batch.id,
            fi_type,
            len(batch.account_refs),
            f", retry of {retry_of_id}" if retry_of_id else "",
            extra={"batch_id": batch.id, "consent_handle": batch.consent_handle, "fi_type": fi_type},
        )
        return batch

    def get(self, batch_id: str) -> FetchBatch:
        with self._session_factory() as sess:
            batch = sess.get(FetchBatch, batch_id)
        if batch is None:
            raise BatchNotFoundError(batch_id)
        return batch

    def for_consent(self, consent_pk: str) -> List[FetchBatch]:
        with self._session_factory() as sess:
            return list(
                sess.exec(
                    select(FetchBatch)
                    .where(FetchBatch.consent_pk == consent_pk)
                    .order_by(FetchBatch.created_at)
                ).all()
            )

    # ------------------------------------------------------------------
    def _mutable(self, sess: Session, batch_id: str) -> FetchBatch:
        batch = sess.get(FetchBatch, batch_id)
        if batch is None:
            raise BatchNotFoundError(batch_id)
        if batch.status in TERMINAL_BATCH_STATUSES:
            raise BatchImmutableError(batch_id, batch.status)
        return batch

    def record_fetch(
        self,
        batch_id: str,
        responses: Dict[str, Any],
        errors: Dict[str, str],
    ) -> FetchBatch:
        """Store raw per-account responses and fetch errors verbatim."""
        with self._session_factory() as sess:
            batch = self._mutable(sess, batch_id)
            batch.raw_payload = {"responses": dict(responses)}
            batch.error_details = {"fetch": dict(errors)} if errors else {}
            batch.records_fetched = len(responses)
            batch.fetch_completed_at = _now()
            batch.updated_at = _now()
            sess.add(batch)
            sess.commit()
            sess.refresh(batch)
        return batch

    def finalize(
        self,
        batch_id: str,
        status: BatchStatus,
        *,
        counts: Optional[Dict[str, int]] = None,
        errors: Optional[Dict[str, Any]] = None,
    ) -> FetchBatch:
        with self._session_factory() as sess:
            batch = self._mutable(sess, batch_id)
            for field_name, value in (counts or {}).items():
                setattr(batch, field_name, value)
            if errors:
                batch.error_details = {**(batch.error_details or {}), **errors}
            batch.status = status.value
            batch.updated_at = _now()
            sess.add(batch)
            sess.commit()
            sess.refresh(batch)
        fetch_batches_total.labels(batch.fi_type, batch.status).inc()
        log = _LOG.info if status is BatchStatus.COMPLETE else _LOG.warning
        log(
            "Batch %s finished %s",
            batch.id,
            batch.status,
            extra={"batch_id": batch.id, "consent_handle": batch.consent_handle, "fi_type": batch.fi_type},
        )
        return batch
