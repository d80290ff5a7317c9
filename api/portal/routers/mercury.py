import uuid
from datetime import date

from fastapi import APIRouter, Depends, Query, Request
from slowapi import Limiter
from slowapi.util import get_remote_address

from portal.container import Container
from portal.core.config import ENTITY_ID_PATTERN, settings
from portal.core.deps import get_container
from portal.core.errors import NotFound, ValidationFailed
from portal.schemas.mercury import (
    BalanceResponse,
    BalancesData,
    Envelope,
    EntityOutcomeResponse,
    PagedEnvelope,
    SyncResponse,
    SyncRunResponse,
    TransactionResponse,
    pagination,
)
from portal.services.coordinator import SyncTrigger
from portal.services.store import BalanceFilter, TransactionFilter

limiter = Limiter(key_func=get_remote_address, storage_uri=settings.rate_limit_storage_uri)

router = APIRouter(prefix="/mercury", tags=["mercury"])

MAX_PAGE_SIZE = 1000
READ_RATE_LIMIT = "60/minute"


def _check_entity(container: Container, entity_id: str | None) -> None:
    if entity_id is not None and entity_id not in {e.id for e in container.settings.entities}:
        raise NotFound(f"Unknown entity '{entity_id}'")


def _check_ranges(start: date | None, end: date | None, low: int | None = None, high: int | None = None) -> None:
    fields: dict[str, str] = {}
    if start and end and start > end:
        fields["startDate"] = "must be on or before endDate"
    if low is not None and high is not None and low > high:
        fields["minAmount"] = "must be less than or equal to maxAmount"
    if fields:
        raise ValidationFailed(fields)


@router.post("/sync", response_model=Envelope[SyncResponse])
async def trigger_sync(container: Container = Depends(get_container)):
    """Sync every configured entity now, or join the run already in flight."""
    summary = await container.coordinator.run_sync(trigger=SyncTrigger.MANUAL)
    return Envelope(data=SyncResponse(
        run_id=summary.run_id,
        status=summary.status,
        synced=summary.synced,
        errors=summary.errors,
        skipped=summary.skipped,
        partial=summary.partial,
        transactions_added=summary.transactions_added,
        outcomes=[EntityOutcomeResponse.model_validate(o) for o in summary.outcomes],
    ))


@router.get("/runs/{run_id}", response_model=Envelope[SyncRunResponse])
async def get_sync_run(run_id: uuid.UUID, container: Container = Depends(get_container)):
    run = await container.store.get_sync_run(run_id)
    if run is None:
        raise NotFound(f"Sync run {run_id} not found")
    return Envelope(data=SyncRunResponse.model_validate(run))


@router.get("/balances", response_model=Envelope[BalancesData])
@limiter.limit(READ_RATE_LIMIT)
async def get_balances(
    request: Request,
    entity_id: str | None = Query(default=None, alias="entityId", max_length=50, pattern=ENTITY_ID_PATTERN),
    account_id: uuid.UUID | None = Query(default=None, alias="accountId"),
    container: Container = Depends(get_container),
):
    """Latest balance per account, served from cache with staleness flags."""
    _check_entity(container, entity_id)
    read = await container.cache.get_balances(entity_id, account_id)
    return Envelope(data=BalancesData(
        balances=[BalanceResponse.model_validate(b) for b in read.data],
        is_stale=read.is_stale,
        stale_beyond_limit=read.stale_beyond_limit,
        warning=read.warning,
        loaded_at=read.loaded_at,
    ))


@router.get("/balances/history", response_model=PagedEnvelope[BalanceResponse])
@limiter.limit(READ_RATE_LIMIT)
async def get_balance_history(
    request: Request,
    entity_id: str | None = Query(default=None, alias="entityId", max_length=50, pattern=ENTITY_ID_PATTERN),
    account_id: uuid.UUID | None = Query(default=None, alias="accountId"),
    start_date: date | None = Query(default=None, alias="startDate"),
    end_date: date | None = Query(default=None, alias="endDate"),
    limit: int | None = Query(default=None, ge=1, le=MAX_PAGE_SIZE),
    offset: int = Query(default=0, ge=0),
    container: Container = Depends(get_container),
):
    _check_entity(container, entity_id)
    _check_ranges(start_date, end_date)
    page = await container.store.read_balances(BalanceFilter(
        entity_id=entity_id,
        account_id=account_id,
        start_date=start_date,
        end_date=end_date,
        limit=limit,
        offset=offset,
    ))
    return PagedEnvelope(
        data=[BalanceResponse.model_validate(b) for b in page.items],
        pagination=pagination(page.total, page.limit, page.offset),
    )


@router.get("/transactions", response_model=PagedEnvelope[TransactionResponse])
@limiter.limit(READ_RATE_LIMIT)
async def list_transactions(
    request: Request,
    entity_id: str | None = Query(default=None, alias="entityId", max_length=50, pattern=ENTITY_ID_PATTERN),
    account_id: uuid.UUID | None = Query(default=None, alias="accountId"),
    start_date: date | None = Query(default=None, alias="startDate"),
    end_date: date | None = Query(default=None, alias="endDate"),
    min_amount: int | None = Query(default=None, alias="minAmount"),   # cents
    max_amount: int | None = Query(default=None, alias="maxAmount"),
    search: str | None = Query(default=None, min_length=1, max_length=200),
    limit: int | None = Query(default=None, ge=1, le=MAX_PAGE_SIZE),
    offset: int = Query(default=0, ge=0),
    container: Container = Depends(get_container),
):
    _check_entity(container, entity_id)
    _check_ranges(start_date, end_date, min_amount, max_amount)
    page = await container.store.read_transactions(TransactionFilter(
        entity_id=entity_id,
        account_id=account_id,
        start_date=start_date,
        end_date=end_date,
        min_amount=min_amount,
        max_amount=max_amount,
        search=search.strip() if search else None,
        limit=limit,
        offset=offset,
    ))
    return PagedEnvelope(
        data=[TransactionResponse.model_validate(t) for t in page.items],
        pagination=pagination(page.total, page.limit, page.offset),
    )
