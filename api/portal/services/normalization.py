"""Provider shapes -> domain records.

Everything past this module works in integer cents and UTC datetimes, and never
sees an unmasked account or routing number.
"""

from dataclasses import dataclass
from datetime import datetime, timezone

from portal.core.errors import InvalidResponse
from portal.core.security import mask_account_number
from portal.schemas.provider import MercuryAccount, MercuryTransaction
from portal.utils.money import to_cents

TRANSACTION_STATUSES = ("pending", "posted", "failed")

_STATUS_MAP = {
    "pending": "pending",
    "sent": "posted",
    "posted": "posted",
    "failed": "failed",
    "cancelled": "failed",
    "canceled": "failed",
}

_ACCOUNT_KINDS = {"checking", "savings"}


@dataclass(frozen=True)
class AccountRecord:
    external_account_id: str
    name: str
    nickname: str | None
    kind: str
    status: str
    routing_number_masked: str | None
    account_number_masked: str | None


@dataclass(frozen=True)
class BalanceRecord:
    balance_cents: int
    available_cents: int | None
    currency: str
    observed_at: datetime


@dataclass(frozen=True)
class TransactionRecord:
    external_id: str
    occurred_at: datetime
    description: str
    amount_cents: int
    status: str
    category: str | None = None
    counterparty: str | None = None
    counterparty_id: str | None = None
    note: str | None = None


def utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def normalize_account(raw: MercuryAccount) -> AccountRecord:
    kind = raw.kind.lower()
    if kind not in _ACCOUNT_KINDS:
        raise InvalidResponse(f"account {raw.id}: unknown kind {raw.kind!r}")
    return AccountRecord(
        external_account_id=raw.id,
        name=raw.name,
        nickname=raw.nickname,
        kind=kind,
        status="active" if raw.status.lower() == "active" else "closed",
        routing_number_masked=mask_account_number(raw.routing_number),
        account_number_masked=mask_account_number(raw.account_number),
    )


def normalize_balance(raw: MercuryAccount, observed_at: datetime) -> BalanceRecord:
    try:
        return BalanceRecord(
            balance_cents=to_cents(raw.current_balance),
            available_cents=to_cents(raw.available_balance) if raw.available_balance is not None else None,
            currency=raw.currency.upper(),
            observed_at=utc(observed_at),
        )
    except (TypeError, ValueError) as exc:
        raise InvalidResponse(f"account {raw.id}: {exc}") from None


def normalize_transaction(raw: MercuryTransaction) -> TransactionRecord:
    status = _STATUS_MAP.get(raw.status.lower())
    if status is None:
        raise InvalidResponse(f"transaction {raw.id}: unknown status {raw.status!r}")
    try:
        amount = to_cents(raw.amount)
    except (TypeError, ValueError) as exc:
        raise InvalidResponse(f"transaction {raw.id}: {exc}") from None
    return TransactionRecord(
        external_id=raw.id,
        occurred_at=utc(raw.posted_at or raw.created_at),
        description=(raw.bank_description or raw.counterparty_name or "")[:500],
        amount_cents=amount,
        status=status,
        category=raw.category,
        counterparty=raw.counterparty_name,
        counterparty_id=raw.counterparty_id,
        note=raw.note,
    )
