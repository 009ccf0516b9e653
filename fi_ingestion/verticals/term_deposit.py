"""Fixed / recurring deposits: the deposit account is itself the holding."""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List

from aa_domain.fi_types import TERM_DEPOSIT
from common.datetime import parse_optional

from .base import ParsedHolding, Vertical, first, to_decimal


def _holding_rows(account: Dict[str, Any]) -> List[Dict[str, Any]]:
    summary = dict(account.get("Summary") or {})
    summary.setdefault("accountRef", first(account, "linkedAccRef", "accountId", "maskedAccNumber"))
    return [summary]


def _normalize_holding(raw: Dict[str, Any], ref: str, as_of: datetime) -> ParsedHolding:
    kind = raw.get("accountType") or raw.get("type") or "Fixed"
    return ParsedHolding(
        account_ref=ref,
        instrument_name=f"{str(kind).title()} Deposit",
        instrument_id=first(raw, "fdNumber", "accountNumber", "accountRef"),
        quantity=Decimal("1"),
        current_value=to_decimal(first(raw, "currentValue", "maturityAmount", "currentBalance")),
        invested_amount=to_decimal(first(raw, "principalAmount", "openingBalance", "principal")),
        as_of_date=parse_optional(first(raw, "asOfDate", "balanceDateTime")) or as_of,
        details={
            "fiType": TERM_DEPOSIT,
            "interestRate": first(raw, "interestRate", "rate"),
            "maturityDate": raw.get("maturityDate"),
            "openingDate": raw.get("openingDate"),
            "tenure": first(raw, "tenureMonths", "tenureDays", "tenure"),
            "interestPayout": first(raw, "interestPayoutFrequency", "compoundingFrequency"),
        },
    )


VERTICAL = Vertical(
    fi_type=TERM_DEPOSIT,
    holding_rows=_holding_rows,
    normalize_holding=_normalize_holding,
)
