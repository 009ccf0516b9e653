"""Ingestion Engine: raw batch payload -> normalized accounts, holdings, transactions.

Accounts are upserted on (user, account ref, FI type); holdings and
transactions are inserted with ``ON CONFLICT (idempotency_key) DO NOTHING``
so a re-delivered fact is counted as skipped and never overwritten.

:meth:`IngestionEngine.ingest_batch` works one account at a time: each
account's rows commit in their own transaction while a per-account lock
keeps concurrent batches from racing on the same account row.
"""
from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from typing import AsyncIterator, Dict, Iterable, List, Mapping, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from aa_domain.db import SessionFactory, conflict_insert
from aa_domain.errors import OrphanReferenceError
from aa_domain.fi_models import BatchStatus, FetchBatch, FIAccount, FIHolding, FITransaction
from aa_observability.metrics import ingest_rows_total
from common.datetime import to_naive_utc, utcnow
from consent_registry.registry import ConsentRegistry
from integrations.aggregator.errors import MalformedPayloadError

from . import verticals
from .batches import BatchStore
from .keys import account_key, holding_key, transaction_key
from .verticals import ParsedAccount, ParsedHolding, ParsedPayload, ParsedTransaction

__all__ = ["IngestCounts", "IngestionEngine"]

_LOG = logging.getLogger(__name__)


@dataclass
class IngestCounts:
    inserted: int = 0
    skipped: int = 0

    def __iadd__(self, other: "IngestCounts") -> "IngestCounts":
        self.inserted += other.inserted
        self.skipped += other.skipped
        return self


@dataclass
class _Unit:
    """Everything one batch delivered for a single account."""

    account_ref: str
    account: Optional[ParsedAccount]
    holdings: List[ParsedHolding]
    transactions: List[ParsedTransaction]


@dataclass
class _KeyLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


def _now():
    return to_naive_utc(utcnow())


class IngestionEngine:
    def __init__(
        self,
        session_factory: SessionFactory,
        registry: ConsentRegistry,
        batches: BatchStore,
    ) -> None:
        self._session_factory = session_factory
        self._registry = registry
        self._batches = batches
        self._locks: Dict[str, _KeyLock] = {}

    # ------------------------------------------------------------------
    # Parsing
    # ------------------------------------------------------------------
    def parse(self, batch: FetchBatch) -> ParsedPayload:
        """Normalize every stored response of *batch*.

        A response that is not a valid FI envelope rejects only the account
        it was fetched for.
        """
        out = ParsedPayload(fi_type=batch.fi_type)
        as_of = batch.fetch_started_at or batch.created_at
        responses = (batch.raw_payload or {}).get("responses") or {}
        for ref, payload in responses.items():
            try:
                out.merge(verticals.parse(batch.fi_type, payload, as_of=as_of))
            except MalformedPayloadError as exc:
                out.rejected[ref] = str(exc)
        return out

    # ------------------------------------------------------------------
    # Row writers (caller owns the transaction)
    # ------------------------------------------------------------------
    def _upsert_account(self, sess: Session, batch: FetchBatch, acct: ParsedAccount) -> Tuple[int, bool]:
        insert = conflict_insert(sess)
        now = _now()
        table = FIAccount.__table__
        stmt = insert(table).values(
            user_id=batch.user_id,
            account_ref=acct.account_ref,
            fi_type=batch.fi_type,
            consent_pk=batch.consent_pk,
            fip_id=acct.fip_id,
            masked_account_number=acct.masked_account_number,
            account_type=acct.account_type,
            account_status=acct.account_status,
            metadata=acct.details,
            revision=1,
            last_fetched_at=now,
            created_at=now,
            updated_at=now,
        )
        # mutable fields only; identity and created_at stay as first seen
        stmt = stmt.on_conflict_do_update(
            index_elements=["user_id", "account_ref", "fi_type"],
            set_={
                "consent_pk": stmt.excluded.consent_pk,
                "fip_id": stmt.excluded.fip_id,
                "masked_account_number": stmt.excluded.masked_account_number,
                "account_type": stmt.excluded.account_type,
                "account_status": stmt.excluded.account_status,
                "metadata": stmt.excluded["metadata"],
                "last_fetched_at": stmt.excluded.last_fetched_at,
                "updated_at": stmt.excluded.updated_at,
                "revision": table.c.revision + 1,
            },
        )
        sess.connection().execute(stmt)
        row = sess.exec(
            select(FIAccount.id, FIAccount.revision).where(
                FIAccount.user_id == batch.user_id,
                FIAccount.account_ref == acct.account_ref,
                FIAccount.fi_type == batch.fi_type,
            )
        ).one()
        return row[0], row[1] > 1

    def _account_pk(self, sess: Session, batch: FetchBatch, account_ref: str) -> int:
        pk = sess.exec(
            select(FIAccount.id).where(
                FIAccount.user_id == batch.user_id,
                FIAccount.account_ref == account_ref,
                FIAccount.fi_type == batch.fi_type,
            )
        ).first()
        if pk is None:
            raise OrphanReferenceError(account_ref, batch.fi_type)
        return pk

    def _insert_holdings(
        self, sess: Session, batch: FetchBatch, holdings: Iterable[ParsedHolding]
    ) -> IngestCounts:
        insert = conflict_insert(sess)
        counts = IngestCounts()
        pks: Dict[str, int] = {}
        for h in holdings:
            if h.account_ref not in pks:
                pks[h.account_ref] = self._account_pk(sess, batch, h.account_ref)
            key = holding_key(
                batch.user_id,
                h.account_ref,
                batch.fi_type,
                instrument_id=h.instrument_id,
                instrument_name=h.instrument_name,
                as_of=h.as_of_date,
            )
            stmt = (
                insert(FIHolding.__table__)
                .values(
                    account_pk=pks[h.account_ref],
                    batch_id=batch.id,
                    fi_type=batch.fi_type,
                    instrument_name=h.instrument_name,
                    instrument_id=h.instrument_id,
                    quantity=h.quantity,
                    average_price=h.average_price,
                    current_value=h.current_value,
                    invested_amount=h.invested_amount,
                    as_of_date=to_naive_utc(h.as_of_date),
                    holding_details=h.details,
                    idempotency_key=key,
                    fetched_at=_now(),
                )
                .on_conflict_do_nothing(index_elements=["idempotency_key"])
            )
            if sess.connection().execute(stmt).rowcount:
                counts.inserted += 1
            else:
                counts.skipped += 1
        return counts

    def _insert_transactions(
        self, sess: Session, batch: FetchBatch, transactions: Iterable[ParsedTransaction]
    ) -> IngestCounts:
        insert = conflict_insert(sess)
        counts = IngestCounts()
        pks: Dict[str, int] = {}
        for t in transactions:
            if t.account_ref not in pks:
                pks[t.account_ref] = self._account_pk(sess, batch, t.account_ref)
            key = transaction_key(
                batch.user_id,
                t.account_ref,
                batch.fi_type,
                external_txn_id=t.external_txn_id,
                txn_type=t.txn_type,
                amount=t.amount,
                txn_date=t.txn_date,
                narration=t.narration,
            )
            stmt = (
                insert(FITransaction.__table__)
                .values(
                    account_pk=pks[t.account_ref],
                    batch_id=batch.id,
                    fi_type=batch.fi_type,
                    external_txn_id=t.external_txn_id,
                    txn_type=t.txn_type,
                    amount=t.amount,
                    txn_date=to_naive_utc(t.txn_date),
                    narration=t.narration,
                    reference=t.reference,
                    transaction_details=t.details,
                    idempotency_key=key,
                    fetched_at=_now(),
                )
                .on_conflict_do_nothing(index_elements=["idempotency_key"])
            )
            if sess.connection().execute(stmt).rowcount:
                counts.inserted += 1
            else:
                counts.skipped += 1
        return counts

    # ------------------------------------------------------------------
    # Whole-batch operations (each call is one transaction)
    # ------------------------------------------------------------------
    def ingest_accounts(self, batch: FetchBatch) -> int:
        parsed = self.parse(batch)
        updated = 0
        with self._session_factory() as sess:
            for acct in parsed.accounts:
                _, was_update = self._upsert_account(sess, batch, acct)
                updated += was_update
            sess.commit()
        _record("account", IngestCounts(len(parsed.accounts) - updated, 0), updated=updated)
        return len(parsed.accounts)

    def ingest_holdings(self, batch: FetchBatch) -> IngestCounts:
        """Insert every holding of *batch* or none of them.

        Raises ``OrphanReferenceError`` when a holding points at an account
        that has not been upserted yet.
        """
        parsed = self.parse(batch)
        with self._session_factory() as sess:
            counts = self._insert_holdings(sess, batch, parsed.holdings)
            sess.commit()
        _record("holding", counts)
        return counts

    def ingest_transactions(self, batch: FetchBatch) -> IngestCounts:
        parsed = self.parse(batch)
        with self._session_factory() as sess:
            counts = self._insert_transactions(sess, batch, parsed.transactions)
            sess.commit()
        _record("transaction", counts)
        return counts

    # ------------------------------------------------------------------
    # Per-account ingestion of a fetched batch
    # ------------------------------------------------------------------
    def _units(self, parsed: ParsedPayload) -> List[_Unit]:
        grouped: Dict[str, _Unit] = {}

        def unit(ref: str) -> _Unit:
            if ref not in grouped:
                grouped[ref] = _Unit(ref, None, [], [])
            return grouped[ref]

        for acct in parsed.accounts:
            unit(acct.account_ref).account = acct
        for h in parsed.holdings:
            unit(h.account_ref).holdings.append(h)
        for t in parsed.transactions:
            unit(t.account_ref).transactions.append(t)
        return [u for ref, u in grouped.items() if ref not in parsed.rejected]

    def _write_unit(self, batch: FetchBatch, unit: _Unit) -> Tuple[bool, IngestCounts, IngestCounts]:
        with self._session_factory() as sess:
            was_update = False
            if unit.account is not None:
                _, was_update = self._upsert_account(sess, batch, unit.account)
            holdings = self._insert_holdings(sess, batch, unit.holdings)
            transactions = self._insert_transactions(sess, batch, unit.transactions)
            sess.commit()
        return was_update, holdings, transactions

    @contextlib.asynccontextmanager
    async def _account_lock(self, batch: FetchBatch, account_ref: str) -> AsyncIterator[None]:
        """Serialize writes per account; the entry is dropped once nobody holds or awaits it."""
        key = account_key(batch.user_id, account_ref, batch.fi_type)
        entry = self._locks.get(key)
        if entry is None:
            entry = self._locks[key] = _KeyLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if not entry.users:
                del self._locks[key]

    async def ingest_batch(
        self, batch: FetchBatch, fetch_errors: Optional[Mapping[str, str]] = None
    ) -> FetchBatch:
        """Persist what *batch* fetched and settle its status.

        COMPLETE only when every requested account was fetched and written;
        PARTIAL when some were; FAILED when none were. Rows of a failed
        account are never left half-written.
        """
        await asyncio.to_thread(self._registry.resolve, batch.consent_pk)
        errors: Dict[str, str] = dict(fetch_errors or {})
        parsed = await asyncio.to_thread(self.parse, batch)
        errors.update(parsed.rejected)

        accounts = updated = 0
        holdings, transactions = IngestCounts(), IngestCounts()
        succeeded = 0
        for unit in self._units(parsed):
            async with self._account_lock(batch, unit.account_ref):
                try:
                    was_update, h, t = await asyncio.to_thread(self._write_unit, batch, unit)
                except (OrphanReferenceError, SQLAlchemyError) as exc:
                    _LOG.warning(
                        "Ingestion of %s failed: %s",
                        unit.account_ref,
                        exc,
                        exc_info=True,
                        extra={"batch_id": batch.id, "account_ref": unit.account_ref, "fi_type": batch.fi_type},
                    )
                    errors[unit.account_ref] = str(exc)
                    ingest_rows_total.labels("account", "failed").inc()
                    continue
            succeeded += 1
            accounts += unit.account is not None
            updated += was_update
            holdings += h
            transactions += t

        _record("account", IngestCounts(accounts - updated, 0), updated=updated)
        _record("holding", holdings)
        _record("transaction", transactions)

        if not errors:
            status = BatchStatus.COMPLETE
        elif succeeded:
            status = BatchStatus.PARTIAL
        else:
            status = BatchStatus.FAILED
        ingest_errors = {ref: msg for ref, msg in errors.items() if ref not in (fetch_errors or {})}
        return await asyncio.to_thread(
            self._batches.finalize,
            batch.id,
            status,
            counts={
                "accounts_ingested": accounts,
                "holdings_inserted": holdings.inserted,
                "holdings_skipped": holdings.skipped,
                "transactions_inserted": transactions.inserted,
                "transactions_skipped": transactions.skipped,
            },
            errors={"ingest": ingest_errors} if ingest_errors else None,
        )


def _record(kind: str, counts: IngestCounts, *, updated: int = 0) -> None:
    for result, value in (("inserted", counts.inserted), ("skipped", counts.skipped), ("updated", updated)):
        if value:
            ingest_rows_total.labels(kind, result).inc(value)
