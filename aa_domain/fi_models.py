from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy import JSON, Column, Index, Numeric, UniqueConstraint
from sqlmodel import Field, SQLModel

from common.datetime import to_naive_utc, utcnow

__all__ = ["BatchStatus", "FetchBatch", "FIAccount", "FIHolding", "FITransaction"]


class BatchStatus(str, Enum):
    REQUESTED = "REQUESTED"
    PARTIAL = "PARTIAL"
    COMPLETE = "COMPLETE"
    FAILED = "FAILED"


TERMINAL_BATCH_STATUSES = frozenset({BatchStatus.COMPLETE.value, BatchStatus.FAILED.value})


def _now() -> datetime:
    return to_naive_utc(utcnow())


class FetchBatch(SQLModel, table=True):
    """One retrieval attempt for one FI type under one consent.

    The raw payload is kept verbatim for replay and audit; a retry is always
    a new row pointing back through ``retry_of_id``.
    """

    __tablename__ = "fi_batches"
    __table_args__ = (
        Index("idx_fi_batches_consent", "consent_pk", "created_at"),
    )

    id: str = Field(default_factory=lambda: uuid.uuid4().hex, primary_key=True, max_length=32)
    consent_pk: str = Field(foreign_key="aa_consents.id", nullable=False, max_length=32)
    consent_handle: str = Field(nullable=False, index=True, max_length=128)
    user_id: str = Field(nullable=False, max_length=128)
    fi_type: str = Field(nullable=False, max_length=32)
    status: str = Field(default=BatchStatus.REQUESTED.value, nullable=False, max_length=16)

    account_refs: List[str] = Field(
        default_factory=list, sa_column=Column("account_refs", JSON, nullable=False)
    )
    raw_payload: Dict[str, Any] = Field(
        default_factory=dict, sa_column=Column("raw_payload", JSON, nullable=False)
    )
    error_details: Dict[str, Any] = Field(
        default_factory=dict, sa_column=Column("error_details", JSON, nullable=False)
    )

    records_fetched: int = Field(default=0)
    accounts_ingested: int = Field(default=0)
    holdings_inserted: int = Field(default=0)
    holdings_skipped: int = Field(default=0)
    transactions_inserted: int = Field(default=0)
    transactions_skipped: int = Field(default=0)

    retry_of_id: Optional[str] = Field(default=None, foreign_key="fi_batches.id", max_length=32)

    fetch_started_at: Optional[datetime] = None
    fetch_completed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=_now, nullable=False)
    updated_at: datetime = Field(default_factory=_now, nullable=False)


class FIAccount(SQLModel, table=True):
    """Normalized account keyed by (user, external account id, FI type)."""

    __tablename__ = "fi_accounts"
    __table_args__ = (
        UniqueConstraint("user_id", "account_ref", "fi_type", name="uq_fi_accounts_user_ref_type"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: str = Field(nullable=False, index=True, max_length=128)
    account_ref: str = Field(nullable=False, max_length=128)
    fi_type: str = Field(nullable=False, max_length=32)

    consent_pk: str = Field(foreign_key="aa_consents.id", nullable=False, max_length=32)
    fip_id: Optional[str] = Field(default=None, max_length=128)
    masked_account_number: Optional[str] = Field(default=None, max_length=64)
    account_type: Optional[str] = Field(default=None, max_length=64)
    account_status: str = Field(default="ACTIVE", max_length=32)
    details: Dict[str, Any] = Field(
        default_factory=dict, sa_column=Column("metadata", JSON, nullable=False, default={})
    )

    revision: int = Field(default=1, nullable=False)
    last_fetched_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=_now, nullable=False)
    updated_at: datetime = Field(default_factory=_now, nullable=False)


class FIHolding(SQLModel, table=True):
    """Point-in-time holding; never merged, deduplicated by idempotency key."""

    __tablename__ = "fi_holdings"
    __table_args__ = (
        UniqueConstraint("idempotency_key", name="uq_fi_holdings_idem"),
        Index("idx_fi_holdings_account", "account_pk", "as_of_date"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    account_pk: int = Field(foreign_key="fi_accounts.id", nullable=False)
    batch_id: Optional[str] = Field(default=None, max_length=32)
    fi_type: str = Field(nullable=False, max_length=32)

    instrument_name: Optional[str] = Field(default=None, max_length=256)
    instrument_id: Optional[str] = Field(default=None, max_length=128)
    quantity: Optional[Decimal] = Field(default=None, sa_column=Column(Numeric(20, 4)))
    average_price: Optional[Decimal] = Field(default=None, sa_column=Column(Numeric(20, 4)))
    current_value: Optional[Decimal] = Field(default=None, sa_column=Column(Numeric(20, 2)))
    invested_amount: Optional[Decimal] = Field(default=None, sa_column=Column(Numeric(20, 2)))
    as_of_date: datetime = Field(nullable=False)
    details: Dict[str, Any] = Field(
        default_factory=dict, sa_column=Column("holding_details", JSON, nullable=False, default={})
    )

    idempotency_key: str = Field(nullable=False, max_length=64)
    fetched_at: datetime = Field(default_factory=_now, nullable=False)


class FITransaction(SQLModel, table=True):
    """Account transaction; same idempotency discipline as holdings."""

    __tablename__ = "fi_transactions"
    __table_args__ = (
        UniqueConstraint("idempotency_key", name="uq_fi_transactions_idem"),
        Index("idx_fi_transactions_account", "account_pk", "txn_date"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    account_pk: int = Field(foreign_key="fi_accounts.id", nullable=False)
    batch_id: Optional[str] = Field(default=None, max_length=32)
    fi_type: str = Field(nullable=False, max_length=32)

    external_txn_id: Optional[str] = Field(default=None, max_length=128)
    txn_type: str = Field(nullable=False, max_length=32)
    amount: Decimal = Field(sa_column=Column(Numeric(20, 2), nullable=False))
    txn_date: datetime = Field(nullable=False)
    narration: Optional[str] = Field(default=None, max_length=2048)
    reference: Optional[str] = Field(default=None, max_length=256)
    details: Dict[str, Any] = Field(
        default_factory=dict, sa_column=Column("transaction_details", JSON, nullable=False, default={})
    )

    idempotency_key: str = Field(nullable=False, max_length=64)
    fetched_at: datetime = Field(default_factory=_now, nullable=False)
