"""Insurance policies; each policy is recorded as a single-unit holding."""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List

from aa_domain.fi_types import INSURANCE_POLICIES
from common.datetime import parse_optional

from .base import ParsedHolding, Vertical, as_list, first, to_decimal


def _holding_rows(account: Dict[str, Any]) -> List[Dict[str, Any]]:
    policies = as_list((account.get("Policies") or {}).get("Policy") or account.get("policies"))
    if policies:
        return policies
    # a policy account with no nested list describes exactly one policy
    summary = dict(account.get("Summary") or {})
    summary.setdefault("policyNumber", first(account, "linkedAccRef", "accountId", "maskedAccNumber"))
    return [summary]


def _normalize_holding(raw: Dict[str, Any], ref: str, as_of: datetime) -> ParsedHolding:
    premium = to_decimal(first(raw, "premiumAmount", "premium"))
    return ParsedHolding(
        account_ref=ref,
        instrument_name=first(raw, "policyName", "planName", "productName") or "Unknown Policy",
        instrument_id=first(raw, "policyNumber", "policyNo"),
        quantity=Decimal("1"),
        average_price=premium,
        current_value=to_decimal(first(raw, "fundValue", "surrenderValue", "sumAssured", "maturityValue")),
        invested_amount=to_decimal(first(raw, "totalPremiumPaid"), premium),
        as_of_date=parse_optional(first(raw, "asOfDate")) or as_of,
        details={
            **raw,
            "fiType": INSURANCE_POLICIES,
            "policyType": first(raw, "policyType", "type"),
            "policyStatus": first(raw, "policyStatus", "status"),
            "maturityDate": raw.get("maturityDate"),
            "premiumFrequency": first(raw, "premiumFrequency", "mode"),
            "coverageAmount": first(raw, "coverageAmount", "sumAssured"),
        },
    )


VERTICAL = Vertical(
    fi_type=INSURANCE_POLICIES,
    holding_rows=_holding_rows,
    normalize_holding=_normalize_holding,
)
