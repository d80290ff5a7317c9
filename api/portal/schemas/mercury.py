import uuid
from datetime import datetime
from typing import Any, Generic, TypeVar

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

T = TypeVar("T")


class _ApiModel(BaseModel):
    # Responses are camelCase on the wire; built from store views / ORM rows
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


# ─── Envelopes ─────────────────────────────────────────────────────────────────

class ErrorBody(_ApiModel):
    message: str
    code: str
    details: dict[str, Any] | None = None


class ErrorEnvelope(_ApiModel):
    success: bool = False
    error: ErrorBody


class Envelope(_ApiModel, Generic[T]):
    success: bool = True
    data: T


class Pagination(_ApiModel):
    total: int
    limit: int
    offset: int
    has_more: bool


class PagedEnvelope(_ApiModel, Generic[T]):
    success: bool = True
    data: list[T]
    pagination: Pagination


def error_body(message: str, code: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    return ErrorEnvelope(error=ErrorBody(message=message, code=code, details=details)).model_dump(
        by_alias=True, exclude_none=True
    )


def pagination(total: int, limit: int, offset: int) -> Pagination:
    return Pagination(total=total, limit=limit, offset=offset, has_more=offset + limit < total)


# ─── Sync ──────────────────────────────────────────────────────────────────────

class EntityOutcomeResponse(_ApiModel):
    entity_id: str
    status: str
    reason: str | None = None
    message: str | None = None
    accounts_synced: int = 0
    transactions_added: int = 0
    snapshots_written: int = 0
    failed_accounts: list[str] = []


class SyncResponse(_ApiModel):
    run_id: uuid.UUID | None
    status: str
    synced: int
    errors: int
    skipped: int
    partial: int
    transactions_added: int
    outcomes: list[EntityOutcomeResponse]


class SyncRunResponse(_ApiModel):
    id: uuid.UUID
    trigger: str
    status: str
    entity_ids: list[str]
    started_at: datetime
    finished_at: datetime | None
    outcomes: dict[str, Any]
    accounts_touched: int
    transactions_added: int
    snapshots_written: int
    entities_synced: int
    entities_failed: int
    alert_raised: bool
    error: str | None


# ─── Reads ─────────────────────────────────────────────────────────────────────

class BalanceResponse(_ApiModel):
    account_id: uuid.UUID
    entity_id: str
    external_account_id: str
    account_name: str
    kind: str
    account_number_masked: str | None
    account_status: str
    balance_cents: int
    available_cents: int | None
    currency: str
    observed_at: datetime


class BalancesData(_ApiModel):
    balances: list[BalanceResponse]
    is_stale: bool
    stale_beyond_limit: bool
    warning: str | None = None
    loaded_at: datetime | None = None


class TransactionResponse(_ApiModel):
    id: uuid.UUID
    account_id: uuid.UUID
    entity_id: str
    external_id: str
    occurred_at: datetime
    description: str
    amount_cents: int
    status: str
    category: str | None
    counterparty: str | None
    counterparty_id: str | None
    note: str | None
