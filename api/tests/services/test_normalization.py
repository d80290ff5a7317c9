"""
Unit tests for provider payload parsing and normalization.
"""
import json
from datetime import datetime, timezone
from decimal import Decimal

import pytest
from pydantic import ValidationError

from portal.core.errors import InvalidResponse
from portal.schemas.provider import MercuryAccount, MercuryTransaction
from portal.services.normalization import (
    normalize_account,
    normalize_balance,
    normalize_transaction,
)

OBSERVED = datetime(2026, 2, 3, 12, 0, tzinfo=timezone.utc)


def _account(**overrides) -> MercuryAccount:
    payload = {
        "id": "acc-1",
        "name": "Mercury Checking ••1234",
        "status": "active",
        "kind": "checking",
        "routingNumber": "021000021",
        "accountNumber": "9876543210",
        "currentBalance": Decimal("1234.56"),
        "availableBalance": Decimal("1200.00"),
    }
    payload.update(overrides)
    return MercuryAccount.model_validate(payload)


def _tx(**overrides) -> MercuryTransaction:
    payload = {
        "id": "tx-1",
        "amount": Decimal("-42.10"),
        "status": "sent",
        "createdAt": "2026-02-02T09:00:00Z",
        "postedAt": "2026-02-02T15:30:00Z",
        "bankDescription": "AWS",
        "counterpartyName": "Amazon Web Services",
        "mercuryCategory": "Software",
    }
    payload.update(overrides)
    return MercuryTransaction.model_validate(payload)


# ── Accounts ─────────────────────────────────────────────────────────────────

class TestNormalizeAccount:
    def test_numbers_masked(self):
        rec = normalize_account(_account())
        assert rec.account_number_masked == "****3210"
        assert rec.routing_number_masked == "****0021"

    def test_inactive_statuses_become_closed(self):
        assert normalize_account(_account(status="archived")).status == "closed"
        assert normalize_account(_account(status="ACTIVE")).status == "active"

    def test_unknown_kind_rejected(self):
        with pytest.raises(InvalidResponse):
            normalize_account(_account(kind="brokerage"))

    def test_extra_fields_ignored(self):
        account = MercuryAccount.model_validate({
            "id": "a", "name": "n", "status": "active", "currentBalance": "1.00", "type": "mercury",
        })
        assert account.kind == "checking"

    def test_missing_balance_is_a_parse_failure(self):
        with pytest.raises(ValidationError):
            MercuryAccount.model_validate({"id": "a", "name": "n", "status": "active"})


# ── Balances ─────────────────────────────────────────────────────────────────

class TestNormalizeBalance:
    def test_cents_and_timestamp(self):
        rec = normalize_balance(_account(), OBSERVED)
        assert rec.balance_cents == 123456
        assert rec.available_cents == 120000
        assert rec.currency == "USD"
        assert rec.observed_at == OBSERVED

    def test_available_optional(self):
        assert normalize_balance(_account(availableBalance=None), OBSERVED).available_cents is None

    def test_json_decimals_stay_exact(self):
        body = json.loads('{"id": "a", "name": "n", "status": "active", "currentBalance": 0.29}', parse_float=Decimal)
        assert normalize_balance(MercuryAccount.model_validate(body), OBSERVED).balance_cents == 29

    def test_naive_observation_treated_as_utc(self):
        rec = normalize_balance(_account(), datetime(2026, 2, 3, 12, 0))
        assert rec.observed_at.tzinfo is timezone.utc


# ── Transactions ─────────────────────────────────────────────────────────────

class TestNormalizeTransaction:
    @pytest.mark.parametrize("raw,expected", [
        ("pending", "pending"),
        ("sent", "posted"),
        ("posted", "posted"),
        ("cancelled", "failed"),
        ("failed", "failed"),
    ])
    def test_status_mapping(self, raw, expected):
        assert normalize_transaction(_tx(status=raw)).status == expected

    def test_unknown_status_rejected(self):
        with pytest.raises(InvalidResponse):
            normalize_transaction(_tx(status="reversed"))

    def test_posted_date_preferred(self):
        rec = normalize_transaction(_tx())
        assert rec.occurred_at == datetime(2026, 2, 2, 15, 30, tzinfo=timezone.utc)

    def test_pending_uses_created_date(self):
        rec = normalize_transaction(_tx(status="pending", postedAt=None))
        assert rec.occurred_at == datetime(2026, 2, 2, 9, 0, tzinfo=timezone.utc)

    def test_amount_in_signed_cents(self):
        assert normalize_transaction(_tx()).amount_cents == -4210

    def test_description_falls_back_to_counterparty(self):
        rec = normalize_transaction(_tx(bankDescription=None))
        assert rec.description == "Amazon Web Services"
        assert rec.counterparty == "Amazon Web Services"
        assert rec.category == "Software"
