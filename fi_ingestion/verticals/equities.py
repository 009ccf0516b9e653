"""Demat holdings reported by depositories (NSDL / CDSL)."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List

from aa_domain.fi_types import EQUITIES
from common.datetime import parse_optional

from .base import ParsedHolding, Vertical, as_list, first, to_decimal


def _holding_rows(account: Dict[str, Any]) -> List[Dict[str, Any]]:
    return as_list(
        (account.get("Holdings") or {}).get("Holding")
        or (account.get("Securities") or {}).get("Security")
        or account.get("holdings")
    )


def _normalize_holding(raw: Dict[str, Any], ref: str, as_of: datetime) -> ParsedHolding:
    quantity = to_decimal(first(raw, "units", "quantity", "freeBalance", "holding"))
    last_price = to_decimal(first(raw, "lastTradedPrice", "closingPrice"))
    current = to_decimal(first(raw, "currentValue", "closingValue"))
    if current is None and quantity is not None and last_price is not None:
        current = quantity * last_price
    return ParsedHolding(
        account_ref=ref,
        instrument_name=first(raw, "companyName", "issuerName", "name") or "Unknown Stock",
        instrument_id=first(raw, "isin", "symbol", "scripCode"),
        quantity=quantity,
        average_price=to_decimal(first(raw, "averagePrice", "purchasePrice")),
        current_value=current,
        invested_amount=to_decimal(first(raw, "costValue", "investedValue")),
        as_of_date=parse_optional(first(raw, "asOfDate")) or as_of,
        details={
            **raw,
            "fiType": EQUITIES,
            "exchange": raw.get("exchange"),
            "sector": first(raw, "sector", "industry"),
            "dpId": raw.get("dpId"),
        },
    )


def _transaction_details(raw: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "quantity": first(raw, "units", "quantity"),
        "price": first(raw, "rate", "price"),
        "exchange": raw.get("exchange"),
        "symbol": raw.get("symbol"),
    }


VERTICAL = Vertical(
    fi_type=EQUITIES,
    holding_rows=_holding_rows,
    normalize_holding=_normalize_holding,
    transaction_details=_transaction_details,
)
