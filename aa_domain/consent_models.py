from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy import JSON, Column, Index, String
from sqlmodel import Field, SQLModel

from common.datetime import to_naive_utc, utcnow

__all__ = ["ConsentStatus", "EventSource", "Consent", "ConsentEvent"]


class ConsentStatus(str, Enum):
    INITIATED = "INITIATED"
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    EXPIRED = "EXPIRED"
    REVOKED = "REVOKED"
    PAUSED = "PAUSED"


class EventSource(str, Enum):
    SYSTEM = "SYSTEM"
    AGGREGATOR = "AGGREGATOR"
    USER = "USER"


def _now() -> datetime:
    return to_naive_utc(utcnow())


def _new_id() -> str:
    return uuid.uuid4().hex


class Consent(SQLModel, table=True):
    """Materialized view of a consent; the event log is the source of truth."""

    __tablename__ = "aa_consents"
    __table_args__ = (
        Index("idx_aa_consents_user_status", "user_id", "status"),
    )

    id: str = Field(default_factory=_new_id, primary_key=True, max_length=32)
    user_id: str = Field(nullable=False, index=True, max_length=128)

    # Issued by the aggregator; the handle arrives first, the id on approval.
    consent_handle: Optional[str] = Field(
        default=None, sa_column=Column("consent_handle", String(128), unique=True)
    )
    consent_id: Optional[str] = Field(
        default=None, sa_column=Column("consent_id", String(128), unique=True)
    )

    fiu_id: str = Field(nullable=False, max_length=128)
    status: str = Field(default=ConsentStatus.INITIATED.value, nullable=False, max_length=16)

    data_types: List[str] = Field(
        default_factory=list, sa_column=Column("data_types", JSON, nullable=False)
    )
    purpose: str = Field(nullable=False, max_length=256)
    consent_mode: str = Field(default="VIEW", max_length=16)
    fetch_type: str = Field(default="ONETIME", max_length=16)
    frequency_unit: str = Field(default="MONTH", max_length=16)
    frequency_value: int = Field(default=1)

    valid_from: datetime = Field(nullable=False)
    valid_until: datetime = Field(nullable=False)
    data_from: datetime = Field(nullable=False)
    data_to: datetime = Field(nullable=False)

    redirect_url: Optional[str] = Field(default=None, max_length=2048)
    details: Dict[str, Any] = Field(
        default_factory=dict, sa_column=Column("metadata", JSON, nullable=False, default={})
    )

    created_at: datetime = Field(default_factory=_now, nullable=False)
    updated_at: datetime = Field(default_factory=_now, nullable=False)


class ConsentEvent(SQLModel, table=True):
    """Append-only record of one consent status change.

    ``id`` is monotonically increasing, which gives the per-consent ordering
    used when replaying the log.
    """

    __tablename__ = "aa_consent_events"
    __table_args__ = (
        Index("idx_aa_consent_events_consent", "consent_pk", "id"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    consent_pk: str = Field(foreign_key="aa_consents.id", nullable=False, max_length=32)
    consent_handle: Optional[str] = Field(default=None, index=True, max_length=128)

    event_type: str = Field(nullable=False, max_length=32)
    source: str = Field(nullable=False, max_length=16)
    previous_status: Optional[str] = Field(default=None, max_length=16)
    new_status: str = Field(nullable=False, max_length=16)
    details: Dict[str, Any] = Field(
        default_factory=dict, sa_column=Column("metadata", JSON, nullable=False, default={})
    )

    created_at: datetime = Field(default_factory=_now, nullable=False)
