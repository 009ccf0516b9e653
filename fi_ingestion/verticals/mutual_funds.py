"""Mutual-fund folios from RTA statements (CAMS / KFintech)."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List

from aa_domain.fi_types import MUTUAL_FUNDS
from common.datetime import parse_optional

from .base import ParsedHolding, Vertical, as_list, first, to_decimal


def _holding_rows(account: Dict[str, Any]) -> List[Dict[str, Any]]:
    summary = account.get("Summary") or {}
    investment = (summary.get("Investment") or {}).get("Holdings") or {}
    return as_list(
        (account.get("Holdings") or {}).get("Holding")
        or investment.get("Holding")
        or account.get("holdings")
    )


def _normalize_holding(raw: Dict[str, Any], ref: str, as_of: datetime) -> ParsedHolding:
    units = to_decimal(first(raw, "closingUnits", "units", "holding"))
    nav = to_decimal(first(raw, "nav"))
    current = to_decimal(first(raw, "currentValue", "closingValue"))
    if current is None and units is not None and nav is not None:
        current = units * nav
    return ParsedHolding(
        account_ref=ref,
        instrument_name=first(raw, "schemeName", "issuerName", "name") or "Unknown Scheme",
        instrument_id=first(raw, "isin", "schemeCode", "amfiCode"),
        quantity=units,
        average_price=to_decimal(first(raw, "averagePrice", "purchaseNav"), nav),
        current_value=current,
        invested_amount=to_decimal(first(raw, "costValue", "investedValue")),
        as_of_date=parse_optional(first(raw, "navDate", "asOfDate")) or as_of,
        details={
            **raw,
            "fiType": MUTUAL_FUNDS,
            "folioNo": raw.get("folioNo"),
            "amcName": first(raw, "amc", "amcName"),
            "schemeType": first(raw, "schemeType", "schemeCategory", "category"),
        },
    )


def _transaction_details(raw: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "units": raw.get("units"),
        "nav": raw.get("nav"),
        "schemeName": raw.get("schemeName"),
        "folioNo": raw.get("folioNo"),
    }


VERTICAL = Vertical(
    fi_type=MUTUAL_FUNDS,
    holding_rows=_holding_rows,
    normalize_holding=_normalize_holding,
    transaction_details=_transaction_details,
)
