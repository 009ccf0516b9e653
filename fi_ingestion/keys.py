"""Deterministic idempotency keys for normalized holdings and transactions.

Keys are derived from content, never from arrival order, so a fact the
aggregator re-delivers on retry collapses onto the row already stored.
"""
from __future__ import annotations

import hashlib
import json
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from common.datetime import parse_iso8601

__all__ = ["account_key", "holding_key", "transaction_key"]


def _calc_hash(src: dict) -> str:
    blob = json.dumps(src, sort_keys=True, separators=(",", ":"), default=str).encode()
    return hashlib.sha256(blob).hexdigest()


def _amount(value: Any) -> str:
    # 100, 100.0 and "100.00" are the same amount
    return format(Decimal(str(value)).normalize(), "f")


def _utc(value: datetime) -> str:
    return parse_iso8601(value).isoformat()


def account_key(user_id: str, account_ref: str, fi_type: str) -> str:
    return f"{user_id}|{account_ref}|{fi_type}"


def holding_key(
    user_id: str,
    account_ref: str,
    fi_type: str,
    *,
    instrument_id: Optional[str],
    instrument_name: Optional[str],
    as_of: datetime,
) -> str:
    """account + instrument + as-of date; quantities and values are not part of it."""
    return _calc_hash(
        {
            "account": account_key(user_id, account_ref, fi_type),
            "instrument": instrument_id or instrument_name or "",
            "as_of": parse_iso8601(as_of).date().isoformat(),
        }
    )


def transaction_key(
    user_id: str,
    account_ref: str,
    fi_type: str,
    *,
    external_txn_id: Optional[str],
    txn_type: str,
    amount: Any,
    txn_date: datetime,
    narration: Optional[str],
) -> str:
    """External id when the source provides one, else a content hash."""
    account = account_key(user_id, account_ref, fi_type)
    if external_txn_id:
        return _calc_hash({"account": account, "txn_id": str(external_txn_id)})
    return _calc_hash(
        {
            "account": account,
            "type": txn_type,
            "amount": _amount(amount),
            "date": _utc(txn_date),
            "narration": (narration or "").strip(),
        }
    )
