"""Envelope walking and value coercion shared by all verticals.

A vertical only says where holdings live inside an account record and how
one raw holding / transaction maps onto the normalized shape; the FI
envelope, account extraction and error collection are common.

Envelope::

    {"FI": [{"fipId": "...",
             "data": {"account": {... "Holdings": {"Holding": [...]},
                                      "Transactions": {"Transaction": [...]}}},
             "holdings": [{"linkedAccRef": "...", ...}],
             "transactions": [{"linkedAccRef": "...", ...}]}]}
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from common.datetime import parse_optional
from integrations.aggregator.errors import MalformedPayloadError

__all__ = [
    "ParsedAccount",
    "ParsedHolding",
    "ParsedTransaction",
    "ParsedPayload",
    "Vertical",
    "as_list",
    "first",
    "to_decimal",
    "parse_payload",
]


@dataclass(slots=True)
class ParsedAccount:
    account_ref: str
    fi_type: str
    fip_id: Optional[str] = None
    masked_account_number: Optional[str] = None
    account_type: Optional[str] = None
    account_status: str = "ACTIVE"
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ParsedHolding:
    account_ref: str
    as_of_date: datetime
    instrument_name: Optional[str] = None
    instrument_id: Optional[str] = None
    quantity: Optional[Decimal] = None
    average_price: Optional[Decimal] = None
    current_value: Optional[Decimal] = None
    invested_amount: Optional[Decimal] = None
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ParsedTransaction:
    account_ref: str
    txn_type: str
    amount: Decimal
    txn_date: datetime
    external_txn_id: Optional[str] = None
    narration: Optional[str] = None
    reference: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ParsedPayload:
    fi_type: str
    accounts: List[ParsedAccount] = field(default_factory=list)
    holdings: List[ParsedHolding] = field(default_factory=list)
    transactions: List[ParsedTransaction] = field(default_factory=list)
    # account_ref -> reason for records that could not be normalized
    rejected: Dict[str, str] = field(default_factory=dict)

    def merge(self, other: "ParsedPayload") -> None:
        self.accounts.extend(other.accounts)
        self.holdings.extend(other.holdings)
        self.transactions.extend(other.transactions)
        self.rejected.update(other.rejected)


@dataclass(frozen=True)
class Vertical:
    """Capability entry for one FI type; registered, never subclassed."""

    fi_type: str
    # raw account record -> raw holding dicts nested in it
    holding_rows: Callable[[Dict[str, Any]], List[Dict[str, Any]]]
    # (raw holding, account_ref, default as-of) -> normalized holding
    normalize_holding: Callable[[Dict[str, Any], str, datetime], ParsedHolding]
    # raw transaction -> vertical-specific detail fields
    transaction_details: Callable[[Dict[str, Any]], Dict[str, Any]] = lambda raw: {}


# ----------------------------------------------------------------------
# Coercion helpers
# ----------------------------------------------------------------------


def as_list(value: Any) -> List[Any]:
    if value is None:
        return []
    return list(value) if isinstance(value, (list, tuple)) else [value]


def first(data: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = data.get(key)
        if value not in (None, ""):
            return value
    return None


def to_decimal(value: Any, default: Optional[Decimal] = None) -> Optional[Decimal]:
    """Parse a numeric field; *default* only when the field is absent, never for zero."""
    if value is None or value == "":
        return default
    try:
        return Decimal(str(value).replace(",", ""))
    except InvalidOperation as exc:
        raise ValueError(f"not a number: {value!r}") from exc


_TXN_TYPES = (
    ("REDEMPTION", "DEBIT"),
    ("WITHDRAW", "DEBIT"),
    ("DEBIT", "DEBIT"),
    ("PURCHASE", "CREDIT"),
    ("DEPOSIT", "CREDIT"),
    ("CREDIT", "CREDIT"),
    ("BUY", "BUY"),
    ("SELL", "SELL"),
    ("DIVIDEND", "DIVIDEND"),
    ("INTEREST", "INTEREST"),
    ("SIP", "SIP"),
    ("SWITCH", "SWITCH"),
)


def normalize_txn_type(value: Any) -> str:
    raw = str(value or "UNKNOWN").upper()
    for needle, mapped in _TXN_TYPES:
        if needle in raw:
            return mapped
    return raw


# ----------------------------------------------------------------------
# Envelope walking
# ----------------------------------------------------------------------


def _fi_entries(payload: Dict[str, Any]) -> List[Dict[str, Any]]:
    if not isinstance(payload, dict):
        raise MalformedPayloadError("FI payload must be a JSON object")
    entries = first(payload, "FI", "fi", "data")
    if entries is None:
        raise MalformedPayloadError("FI payload has no FI entries")
    return [e for e in as_list(entries) if isinstance(e, dict)]


def _account_ref(raw: Dict[str, Any]) -> Optional[str]:
    ref = first(raw, "linkedAccRef", "accountRef", "accountId", "maskedAccNumber")
    return str(ref) if ref is not None else None


def _parse_account(raw: Dict[str, Any], ref: str, fi_type: str, fip_id: Optional[str]) -> ParsedAccount:
    summary = raw.get("Summary") or raw.get("summary") or {}
    details: Dict[str, Any] = {}
    for key, src in (("profile", "Profile"), ("summary", "Summary"), ("link_ref_number", "linkRefNumber")):
        if raw.get(src) is not None:
            details[key] = raw[src]
    balance = first(summary, "currentBalance", "closingBalance", "balance")
    if balance is not None:
        details["balance"] = {
            "amount": str(to_decimal(balance)),
            "currency": summary.get("currency", "INR"),
        }
    return ParsedAccount(
        account_ref=ref,
        fi_type=fi_type,
        fip_id=fip_id,
        masked_account_number=first(raw, "maskedAccNumber", "maskedAccountNumber"),
        account_type=first(raw, "type", "accountType") or summary.get("type"),
        account_status=str(first(summary, "status") or first(raw, "status") or "ACTIVE").upper(),
        details=details,
    )


def _parse_transaction(
    vertical: Vertical, raw: Dict[str, Any], ref: str, fi_type: str
) -> ParsedTransaction:
    amount = to_decimal(first(raw, "amount", "transactionAmount"))
    txn_date = parse_optional(first(raw, "transactionTimestamp", "transactionDate", "valueDate"))
    if amount is None or txn_date is None:
        raise ValueError("transaction without amount or date")
    return ParsedTransaction(
        account_ref=ref,
        external_txn_id=first(raw, "txnId", "transactionId"),
        txn_type=normalize_txn_type(first(raw, "type", "transactionType")),
        amount=amount,
        txn_date=txn_date,
        narration=first(raw, "narration", "description", "remarks"),
        reference=first(raw, "reference"),
        details={**raw, "fiType": fi_type, **vertical.transaction_details(raw)},
    )


def _transaction_rows(raw: Dict[str, Any]) -> List[Dict[str, Any]]:
    block = raw.get("Transactions")
    if isinstance(block, dict):
        return as_list(block.get("Transaction"))
    return as_list(raw.get("transactions"))


# shape errors from a record that is not the structure we walk
_RECORD_ERRORS = (ValueError, TypeError, AttributeError)


def _collect(
    out: ParsedPayload,
    vertical: Vertical,
    ref: str,
    holdings: Callable[[], Iterable[Dict[str, Any]]],
    transactions: Callable[[], Iterable[Dict[str, Any]]],
    as_of: datetime,
) -> bool:
    parsed_h: List[ParsedHolding] = []
    parsed_t: List[ParsedTransaction] = []
    try:
        for row in holdings():
            parsed_h.append(vertical.normalize_holding(row, ref, as_of))
        for row in transactions():
            parsed_t.append(_parse_transaction(vertical, row, ref, vertical.fi_type))
    except _RECORD_ERRORS as exc:
        # one bad record rejects the account's whole portion
        out.rejected[ref] = f"malformed record: {exc}"
        return False
    out.holdings.extend(parsed_h)
    out.transactions.extend(parsed_t)
    return True


def parse_payload(vertical: Vertical, payload: Dict[str, Any], *, as_of: datetime) -> ParsedPayload:
    """Normalize one FI response.

    ``as_of`` is used for holdings that carry no date of their own, which
    keeps their idempotency key stable across same-day re-deliveries.
    """
    out = ParsedPayload(fi_type=vertical.fi_type)
    for entry in _fi_entries(payload):
        fip_id = first(entry, "fipId", "FipId")
        data = entry.get("data") if isinstance(entry.get("data"), dict) else {}
        for raw in as_list(first(data, "account") or first(entry, "Account", "account")):
            if not isinstance(raw, dict):
                continue
            ref = _account_ref(raw)
            if ref is None:
                out.rejected.setdefault("<unknown>", "account record without reference")
                continue
            try:
                account = _parse_account(raw, ref, vertical.fi_type, fip_id)
            except _RECORD_ERRORS as exc:
                out.rejected[ref] = f"malformed account: {exc}"
                continue
            if _collect(
                out,
                vertical,
                ref,
                lambda raw=raw: vertical.holding_rows(raw),
                lambda raw=raw: _transaction_rows(raw),
                as_of,
            ):
                out.accounts.append(account)

        # FI-level records reference their account explicitly
        loose: Dict[str, Tuple[List[Dict[str, Any]], List[Dict[str, Any]]]] = {}
        for slot, key in ((0, "holdings"), (1, "transactions")):
            for row in as_list(entry.get(key)):
                if isinstance(row, dict):
                    loose.setdefault(_account_ref(row) or "<unknown>", ([], []))[slot].append(row)
        for ref, (hs, ts) in loose.items():
            _collect(out, vertical, ref, lambda hs=hs: hs, lambda ts=ts: ts, as_of)
    return out
