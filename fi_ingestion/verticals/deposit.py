"""Bank deposits (savings / current): balance snapshot plus explicit holdings."""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List

from aa_domain.fi_types import DEPOSIT
from common.datetime import parse_optional

from .base import ParsedHolding, Vertical, as_list, first, to_decimal


def _holding_rows(account: Dict[str, Any]) -> List[Dict[str, Any]]:
    rows = as_list((account.get("Holdings") or {}).get("Holding"))
    if rows:
        return rows
    summary = account.get("Summary") or {}
    balance = first(summary, "currentBalance", "closingBalance", "balance")
    if balance is None:
        return []
    # without explicit holdings the balance itself is the position
    return [
        {
            "name": f"{summary.get('type') or account.get('type') or 'Deposit'} balance".strip(),
            "instrumentId": first(account, "linkedAccRef", "accountId", "maskedAccNumber"),
            "currentValue": balance,
            "asOfDate": first(summary, "balanceDateTime", "asOfDate"),
            "currency": summary.get("currency", "INR"),
        }
    ]


def _normalize_holding(raw: Dict[str, Any], ref: str, as_of: datetime) -> ParsedHolding:
    return ParsedHolding(
        account_ref=ref,
        instrument_name=first(raw, "name", "instrumentName") or "Deposit balance",
        instrument_id=first(raw, "instrumentId", "id"),
        quantity=to_decimal(first(raw, "quantity"), Decimal("1")),
        average_price=None,
        current_value=to_decimal(first(raw, "currentValue", "balance", "currentBalance")),
        invested_amount=None,
        as_of_date=parse_optional(first(raw, "asOfDate", "balanceDateTime")) or as_of,
        details={**raw, "fiType": DEPOSIT},
    )


VERTICAL = Vertical(
    fi_type=DEPOSIT,
    holding_rows=_holding_rows,
    normalize_holding=_normalize_holding,
)
