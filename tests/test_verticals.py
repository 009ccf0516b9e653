from __future__ import annotations

from datetime import datetime
from decimal import Decimal

import pytest

from aa_domain.errors import ValidationError
from aa_fakes import bank_payload
from fi_ingestion.verticals import VERTICALS, get_vertical, parse
from integrations.aggregator.errors import MalformedPayloadError

AS_OF = datetime(2024, 4, 1)


def test_every_canonical_type_has_a_parser():
    assert set(VERTICALS) == {"DEPOSIT", "TERM_DEPOSIT", "MUTUAL_FUNDS", "EQUITIES", "INSURANCE_POLICIES"}
    assert get_vertical("bank") is VERTICALS["DEPOSIT"]
    assert get_vertical("demat") is VERTICALS["EQUITIES"]
    with pytest.raises(ValidationError):
        get_vertical("CRYPTO")


def test_deposit_balance_becomes_holding():
    out = parse(
        "DEPOSIT",
        bank_payload(
            "acc-0001",
            balance="12,500.50",
            transactions=[
                {"txnId": "T1", "type": "CREDIT", "amount": "500", "transactionTimestamp": "2024-03-30T10:00:00+05:30",
                 "narration": "salary"},
                {"type": "Debit Card", "amount": 20.5, "valueDate": "2024-03-31"},
            ],
        ),
        as_of=AS_OF,
    )
    assert [a.account_ref for a in out.accounts] == ["acc-0001"]
    account = out.accounts[0]
    assert account.fip_id == "HDFC-FIP"
    assert account.masked_account_number == "XXXX0001"
    assert account.details["balance"] == {"amount": "12500.50", "currency": "INR"}

    (holding,) = out.holdings
    assert holding.current_value == Decimal("12500.50")
    assert holding.instrument_id == "acc-0001"
    assert holding.as_of_date == AS_OF

    assert [t.txn_type for t in out.transactions] == ["CREDIT", "DEBIT"]
    assert out.transactions[0].txn_date.hour == 4
    assert out.transactions[1].external_txn_id is None
    assert out.rejected == {}


def test_deposit_explicit_holdings_win_over_balance():
    out = parse(
        "DEPOSIT",
        bank_payload("acc-0002", holdings=[{"name": "Sweep FD", "instrumentId": "S1", "currentValue": "100"}]),
        as_of=AS_OF,
    )
    assert [h.instrument_id for h in out.holdings] == ["S1"]


def test_term_deposit_is_its_own_holding():
    payload = {
        "FI": [
            {
                "fipId": "SBI",
                "data": {
                    "account": {
                        "linkedAccRef": "fd-1",
                        "Summary": {
                            "accountType": "FIXED",
                            "principalAmount": "100000",
                            "maturityAmount": "107000",
                            "interestRate": "7.0",
                            "maturityDate": "2025-03-31",
                            "tenureMonths": 12,
                        },
                    }
                },
            }
        ]
    }
    (holding,) = parse("FD", payload, as_of=AS_OF).holdings
    assert holding.instrument_name == "Fixed Deposit"
    assert holding.invested_amount == Decimal("100000")
    assert holding.current_value == Decimal("107000")
    assert holding.details["interestRate"] == "7.0"
    assert holding.details["tenure"] == 12


def test_mutual_fund_folio_holdings_and_transactions():
    payload = {
        "FI": [
            {
                "fipId": "CAMS",
                "data": {
                    "account": {
                        "linkedAccRef": "folio-001",
                        "type": "mutual_funds",
                        "Holdings": {
                            "Holding": {
                                "schemeName": "Equity Fund - Direct",
                                "isin": "INF179K01BE2",
                                "closingUnits": "10.5",
                                "nav": "100",
                                "folioNo": "F123",
                                "amc": "HDFC AMC",
                            }
                        },
                        "Transactions": {
                            "Transaction": [
                                {"type": "PURCHASE_SIP", "amount": "1000", "transactionDate": "2024-03-05",
                                 "units": "10", "nav": "100", "schemeName": "Equity Fund - Direct"}
                            ]
                        },
                    }
                },
            }
        ]
    }
    out = parse("MF", payload, as_of=AS_OF)
    (holding,) = out.holdings
    assert holding.instrument_id == "INF179K01BE2"
    assert holding.quantity == Decimal("10.5")
    assert holding.current_value == Decimal("1050.0")
    assert holding.details["amcName"] == "HDFC AMC"
    (txn,) = out.transactions
    assert txn.txn_type == "CREDIT"
    assert txn.details["units"] == "10"
    assert txn.details["fiType"] == "MUTUAL_FUNDS"


def test_equities_fi_level_lists_reference_accounts():
    payload = {
        "FI": [
            {
                "fipId": "NSDL",
                "data": {"account": {"linkedAccRef": "demat-1", "maskedAccNumber": "IN30XXXX1234"}},
                "holdings": [
                    {"linkedAccRef": "demat-1", "isin": "INE002A01018", "companyName": "Reliance",
                     "quantity": 10, "averagePrice": "2400", "lastTradedPrice": "2500"}
                ],
                "transactions": [
                    {"linkedAccRef": "demat-1", "txnId": "D-1", "type": "BUY", "amount": "24000",
                     "transactionDate": "2024-01-02", "quantity": 10, "price": "2400", "exchange": "NSE"}
                ],
            }
        ]
    }
    out = parse("STOCKS", payload, as_of=AS_OF)
    (holding,) = out.holdings
    assert holding.account_ref == "demat-1"
    assert holding.current_value == Decimal("25000")
    (txn,) = out.transactions
    assert txn.details["exchange"] == "NSE"
    assert txn.txn_type == "BUY"


def test_insurance_summary_becomes_single_policy():
    payload = {
        "FI": [
            {
                "data": {
                    "account": {
                        "linkedAccRef": "policy-001",
                        "Summary": {"policyName": "Jeevan Anand", "sumAssured": "500000", "premiumAmount": "25000",
                                    "policyType": "Life"},
                    }
                }
            }
        ]
    }
    (holding,) = parse("INSURANCE", payload, as_of=AS_OF).holdings
    assert holding.instrument_id == "policy-001"
    assert holding.quantity == Decimal("1")
    assert holding.current_value == Decimal("500000")
    assert holding.details["policyType"] == "Life"


def test_bad_record_rejects_only_its_account():
    payload = bank_payload("acc-good")
    payload["FI"].append(
        bank_payload(
            "acc-bad",
            transactions=[{"type": "CREDIT", "amount": "not-a-number", "valueDate": "2024-03-01"}],
        )["FI"][0]
    )
    out = parse("DEPOSIT", payload, as_of=AS_OF)
    assert [h.account_ref for h in out.holdings] == ["acc-good"]
    assert out.transactions == []
    assert set(out.rejected) == {"acc-bad"}


def test_envelope_without_fi_is_malformed():
    with pytest.raises(MalformedPayloadError):
        parse("DEPOSIT", {"unexpected": True}, as_of=AS_OF)


def test_wrong_shaped_account_is_rejected_not_raised():
    holdings_as_list = bank_payload("acc-list")
    holdings_as_list["FI"][0]["data"]["account"]["Holdings"] = [{"amount": "10"}]
    summary_as_text = bank_payload("acc-text")
    summary_as_text["FI"][0]["data"]["account"]["Summary"] = "closed"
    payload = bank_payload("acc-good")
    payload["FI"] += holdings_as_list["FI"] + summary_as_text["FI"]

    out = parse("DEPOSIT", payload, as_of=AS_OF)

    assert [a.account_ref for a in out.accounts] == ["acc-good"]
    assert {h.account_ref for h in out.holdings} == {"acc-good"}
    assert set(out.rejected) == {"acc-list", "acc-text"}


def test_reported_zero_is_kept():
    deposit = bank_payload("acc-zero", holdings=[{"instrumentId": "SW", "quantity": 0, "currentValue": "0"}])
    (holding,) = parse("DEPOSIT", deposit, as_of=AS_OF).holdings
    assert holding.quantity == Decimal("0")

    folio = {"FI": [{"data": {"account": {"linkedAccRef": "folio-0", "Holdings": {"Holding": [
        {"isin": "INF000000001", "schemeName": "Liquid", "units": "10", "nav": "12.5", "purchaseNav": "0"}
    ]}}}}]}
    (mf,) = parse("MF", folio, as_of=AS_OF).holdings
    assert mf.average_price == Decimal("0")

    policy = {"FI": [{"data": {"account": {"linkedAccRef": "pol-0", "Policies": {"Policy": [
        {"policyNumber": "P0", "premiumAmount": "1200", "totalPremiumPaid": 0, "sumAssured": "100000"}
    ]}}}}]}
    (ins,) = parse("INSURANCE", policy, as_of=AS_OF).holdings
    assert ins.invested_amount == Decimal("0")
    assert ins.average_price == Decimal("1200")
