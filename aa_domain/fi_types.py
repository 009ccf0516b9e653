"""Canonical FI type (asset vertical) tags and their aliases."""
from __future__ import annotations

from typing import Iterable, List

from .errors import ValidationError

DEPOSIT = "DEPOSIT"
TERM_DEPOSIT = "TERM_DEPOSIT"
MUTUAL_FUNDS = "MUTUAL_FUNDS"
EQUITIES = "EQUITIES"
INSURANCE_POLICIES = "INSURANCE_POLICIES"

FI_TYPES = (DEPOSIT, TERM_DEPOSIT, MUTUAL_FUNDS, EQUITIES, INSURANCE_POLICIES)

_ALIASES = {
    "BANK": DEPOSIT,
    "SAVINGS": DEPOSIT,
    "CURRENT": DEPOSIT,
    "FD": TERM_DEPOSIT,
    "FIXED_DEPOSIT": TERM_DEPOSIT,
    "RECURRING_DEPOSIT": TERM_DEPOSIT,
    "MF": MUTUAL_FUNDS,
    "MUTUAL_FUND": MUTUAL_FUNDS,
    "SIP": MUTUAL_FUNDS,
    "DEMAT": EQUITIES,
    "EQUITY": EQUITIES,
    "SECURITIES": EQUITIES,
    "STOCKS": EQUITIES,
    "INSURANCE": INSURANCE_POLICIES,
    "INSURANCE_POLICY": INSURANCE_POLICIES,
}


def normalize_fi_type(value: str) -> str:
    """Map a source tag (``bank``, ``MF``, ``demat`` ...) onto a canonical tag."""
    if not value or not isinstance(value, str):
        raise ValidationError(f"invalid FI type: {value!r}")
    tag = value.strip().upper().replace("-", "_").replace(" ", "_")
    if tag in FI_TYPES:
        return tag
    try:
        return _ALIASES[tag]
    except KeyError:
        raise ValidationError(f"unsupported FI type: {value}") from None


def normalize_fi_types(values: Iterable[str]) -> List[str]:
    """Normalise and de-duplicate, keeping first-seen order."""
    out: List[str] = []
    for value in values:
        tag = normalize_fi_type(value)
        if tag not in out:
            out.append(tag)
    return out
