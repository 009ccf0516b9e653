"""Vertical capability table: FI type tag -> parser/normalizer.

New verticals are added with :func:`register_vertical`; the orchestrator and
ingestion engine never branch on the tag themselves.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict

from aa_domain.fi_types import normalize_fi_type

from . import deposit, equities, insurance, mutual_funds, term_deposit
from .base import ParsedAccount, ParsedHolding, ParsedPayload, ParsedTransaction, Vertical, parse_payload

__all__ = [
    "ParsedAccount",
    "ParsedHolding",
    "ParsedPayload",
    "ParsedTransaction",
    "Vertical",
    "VERTICALS",
    "get_vertical",
    "parse",
    "register_vertical",
]

VERTICALS: Dict[str, Vertical] = {}


def register_vertical(vertical: Vertical) -> None:
    VERTICALS[vertical.fi_type] = vertical


def get_vertical(fi_type: str) -> Vertical:
    tag = normalize_fi_type(fi_type)
    try:
        return VERTICALS[tag]
    except KeyError:
        raise LookupError(f"no parser registered for FI type {tag}") from None


def parse(fi_type: str, payload: Dict[str, Any], *, as_of: datetime) -> ParsedPayload:
    return parse_payload(get_vertical(fi_type), payload, as_of=as_of)


for _module in (deposit, term_deposit, mutual_funds, equities, insurance):
    register_vertical(_module.VERTICAL)
