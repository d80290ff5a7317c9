"""Reconciliation store: idempotent persistence of synced Mercury data.

Correctness under concurrent or repeated syncs rests on the two database
uniqueness constraints, (account, observed_at) for balance snapshots and
(account, external_id) for transactions. Application-level checks only decide
what a collision means (no-op, conflict, or retry).
"""

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone

from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from portal.core.config import EntityConfig
from portal.core.database import as_utc
from portal.core.errors import (
    AccountOwnershipConflict,
    InvalidStateTransition,
    NotFound,
    SnapshotConflict,
    SnapshotOutOfOrder,
    SyncRunFinalized,
)
from portal.models.account import BalanceSnapshot, BankAccount, BankTransaction
from portal.models.entity import BusinessEntity
from portal.models.sync_run import SyncRun
from portal.services.normalization import AccountRecord, BalanceRecord, TransactionRecord

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"pending", "posted", "failed"}),
    "posted": frozenset({"posted"}),
    "failed": frozenset({"failed"}),
}

_TX_FIELDS = (
    "occurred_at", "description", "amount_cents", "status",
    "category", "counterparty", "counterparty_id", "note",
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def transition_allowed(current: str, requested: str) -> bool:
    return requested in ALLOWED_TRANSITIONS.get(current, frozenset())


# ─── Read filters & views ──────────────────────────────────────────────────────

@dataclass
class TransactionFilter:
    entity_id: str | None = None
    account_id: uuid.UUID | None = None
    start_date: date | None = None
    end_date: date | None = None
    min_amount: int | None = None
    max_amount: int | None = None
    search: str | None = None
    limit: int | None = None
    offset: int = 0


@dataclass
class BalanceFilter:
    entity_id: str | None = None
    account_id: uuid.UUID | None = None
    start_date: date | None = None
    end_date: date | None = None
    limit: int | None = None
    offset: int = 0


@dataclass
class Page:
    items: list
    total: int
    limit: int
    offset: int


@dataclass(frozen=True)
class BalanceView:
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


@dataclass(frozen=True)
class TransactionView:
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


@dataclass
class CommitResult:
    inserted: int = 0
    updated: int = 0
    rejected: list[InvalidStateTransition] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.inserted or self.updated)


def _day_start(d: date) -> datetime:
    return datetime.combine(d, time.min, tzinfo=timezone.utc)


# ─── Store ─────────────────────────────────────────────────────────────────────

class ReconciliationStore:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        page_size_default: int = 100,
        page_size_max: int = 1000,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory
        self.page_size_default = page_size_default
        self.page_size_max = page_size_max
        self._clock = clock
        self._listeners: list[Callable[[str], None]] = []

    def add_commit_listener(self, listener: Callable[[str], None]) -> None:
        """Register ``listener(entity_id)``, called after a commit changed that entity's data."""
        self._listeners.append(listener)

    def _notify(self, entity_id: str) -> None:
        for listener in self._listeners:
            try:
                listener(entity_id)
            except Exception:
                logger.exception("Commit listener failed for entity %s", entity_id)

    def _clamp(self, limit: int | None, offset: int) -> tuple[int, int]:
        limit = self.page_size_default if limit is None else limit
        return min(max(limit, 1), self.page_size_max), max(offset, 0)

    async def _account(self, session: AsyncSession, account_id: uuid.UUID) -> BankAccount:
        account = await session.get(BankAccount, account_id)
        if account is None:
            raise NotFound(f"Account {account_id} not found")
        return account

    # ── Entities & accounts ───────────────────────────────────────────────────

    async def register_entities(self, entities: list[EntityConfig]) -> None:
        """Insert configured entities; for known ones only the status is refreshed."""
        async with self._session_factory() as session:
            for cfg in entities:
                entity = await session.get(BusinessEntity, cfg.id)
                if entity is None:
                    session.add(BusinessEntity(
                        id=cfg.id,
                        name=cfg.name,
                        legal_name=cfg.legal_name,
                        entity_type=cfg.entity_type,
                        status=cfg.status,
                        credential_ref=cfg.credential_ref,
                    ))
                elif entity.status != cfg.status:
                    logger.info("Entity %s status %s -> %s", cfg.id, entity.status, cfg.status)
                    entity.status = cfg.status
            await session.commit()

    async def upsert_account(self, entity_id: str, record: AccountRecord) -> uuid.UUID:
        for attempt in (1, 2):
            async with self._session_factory() as session:
                account = await session.scalar(
                    select(BankAccount).where(BankAccount.external_account_id == record.external_account_id)
                )
                if account is None:
                    account = BankAccount(entity_id=entity_id, external_account_id=record.external_account_id)
                    session.add(account)
                elif account.entity_id != entity_id:
                    raise AccountOwnershipConflict(record.external_account_id, account.entity_id, entity_id)
                account.name = record.name
                account.nickname = record.nickname
                account.kind = record.kind
                account.status = record.status
                account.routing_number_masked = record.routing_number_masked
                account.account_number_masked = record.account_number_masked
                try:
                    await session.commit()
                except IntegrityError:
                    await session.rollback()
                    if attempt == 2:
                        raise
                    continue
                return account.id
        raise AssertionError("unreachable")

    # ── Balances ──────────────────────────────────────────────────────────────

    async def commit_balance(self, account_id: uuid.UUID, snapshot: BalanceRecord) -> bool:
        """Append a snapshot. Returns False when the identical snapshot already exists.

        Raises ``SnapshotConflict`` when a snapshot with the same observation time
        but different amounts exists, and ``SnapshotOutOfOrder`` when the
        observation is older than the latest stored one.
        """
        observed = as_utc(snapshot.observed_at)
        async with self._session_factory() as session:
            account = await self._account(session, account_id)
            entity_id = account.entity_id
            latest = as_utc(await session.scalar(
                select(func.max(BalanceSnapshot.observed_at)).where(BalanceSnapshot.account_id == account_id)
            ))
            if latest is not None and observed < latest:
                raise SnapshotOutOfOrder(
                    f"Snapshot for account {account_id} at {observed.isoformat()} "
                    f"is older than latest {latest.isoformat()}",
                    details={"account_id": str(account_id)},
                )
            session.add(BalanceSnapshot(
                account_id=account_id,
                balance_cents=snapshot.balance_cents,
                available_cents=snapshot.available_cents,
                currency=snapshot.currency,
                observed_at=observed,
                ingested_at=self._clock(),
            ))
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                existing = await session.scalar(
                    select(BalanceSnapshot).where(
                        BalanceSnapshot.account_id == account_id,
                        BalanceSnapshot.observed_at == observed,
                    )
                )
                if existing is None:
                    raise
                same = (
                    existing.balance_cents == snapshot.balance_cents
                    and existing.available_cents == snapshot.available_cents
                    and existing.currency == snapshot.currency
                )
                if same:
                    logger.debug("Snapshot for account %s at %s already recorded", account_id, observed)
                    return False
                raise SnapshotConflict(
                    f"Account {account_id} already has a different snapshot at {observed.isoformat()}",
                    details={
                        "account_id": str(account_id),
                        "stored_cents": existing.balance_cents,
                        "incoming_cents": snapshot.balance_cents,
                    },
                ) from None
        self._notify(entity_id)
        return True

    async def latest_balances(
        self, entity_id: str | None = None, account_id: uuid.UUID | None = None
    ) -> list[BalanceView]:
        """Most recent snapshot per account."""
        latest = (
            select(
                BalanceSnapshot.account_id,
                func.max(BalanceSnapshot.observed_at).label("observed_at"),
            )
            .group_by(BalanceSnapshot.account_id)
            .subquery()
        )
        stmt = (
            select(BalanceSnapshot, BankAccount)
            .join(
                latest,
                (BalanceSnapshot.account_id == latest.c.account_id)
                & (BalanceSnapshot.observed_at == latest.c.observed_at),
            )
            .join(BankAccount, BankAccount.id == BalanceSnapshot.account_id)
            .order_by(BankAccount.entity_id, BankAccount.name)
        )
        if entity_id is not None:
            stmt = stmt.where(BankAccount.entity_id == entity_id)
        if account_id is not None:
            stmt = stmt.where(BankAccount.id == account_id)
        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).all()
        return [self._balance_view(snap, acct) for snap, acct in rows]

    async def read_balances(self, flt: BalanceFilter) -> Page:
        """Snapshot history, newest first."""
        limit, offset = self._clamp(flt.limit, flt.offset)
        conditions = []
        if flt.entity_id is not None:
            conditions.append(BankAccount.entity_id == flt.entity_id)
        if flt.account_id is not None:
            conditions.append(BankAccount.id == flt.account_id)
        if flt.start_date is not None:
            conditions.append(BalanceSnapshot.observed_at >= _day_start(flt.start_date))
        if flt.end_date is not None:
            conditions.append(BalanceSnapshot.observed_at < _day_start(flt.end_date + timedelta(days=1)))

        base = select(BalanceSnapshot, BankAccount).join(
            BankAccount, BankAccount.id == BalanceSnapshot.account_id
        ).where(*conditions)
        async with self._session_factory() as session:
            total = await session.scalar(select(func.count()).select_from(base.subquery()))
            rows = (await session.execute(
                base.order_by(BalanceSnapshot.observed_at.desc(), BankAccount.name)
                .limit(limit)
                .offset(offset)
            )).all()
        return Page([self._balance_view(s, a) for s, a in rows], total or 0, limit, offset)

    @staticmethod
    def _balance_view(snap: BalanceSnapshot, acct: BankAccount) -> BalanceView:
        return BalanceView(
            account_id=acct.id,
            entity_id=acct.entity_id,
            external_account_id=acct.external_account_id,
            account_name=acct.nickname or acct.name,
            kind=acct.kind,
            account_number_masked=acct.account_number_masked,
            account_status=acct.status,
            balance_cents=snap.balance_cents,
            available_cents=snap.available_cents,
            currency=snap.currency,
            observed_at=as_utc(snap.observed_at),
        )

    # ── Transactions ──────────────────────────────────────────────────────────

    async def commit_transactions(
        self, account_id: uuid.UUID, txs: list[TransactionRecord]
    ) -> CommitResult:
        """Upsert by (account, external_id), applying entries in the order given.

        Illegal status changes are logged and skipped; the rest of the batch is
        still written. A unique-constraint collision (another writer inserted one
        of the ids first) reloads and retries the batch once.
        """
        if not txs:
            return CommitResult()

        for attempt in (1, 2):
            result = CommitResult()
            async with self._session_factory() as session:
                account = await self._account(session, account_id)
                entity_id = account.entity_id
                ids = {t.external_id for t in txs}
                existing = await session.scalars(
                    select(BankTransaction).where(
                        BankTransaction.account_id == account_id,
                        BankTransaction.external_id.in_(ids),
                    )
                )
                rows = {row.external_id: row for row in existing}
                inserted: set[str] = set()
                updated: set[str] = set()

                for rec in txs:
                    row = rows.get(rec.external_id)
                    if row is None:
                        row = BankTransaction(account_id=account_id, external_id=rec.external_id)
                        for name in _TX_FIELDS:
                            setattr(row, name, getattr(rec, name))
                        session.add(row)
                        rows[rec.external_id] = row
                        inserted.add(rec.external_id)
                        continue
                    if not transition_allowed(row.status, rec.status):
                        err = InvalidStateTransition(rec.external_id, row.status, rec.status)
                        logger.warning("Skipping transaction update on account %s: %s", account_id, err.message)
                        result.rejected.append(err)
                        continue
                    if self._apply(row, rec) and rec.external_id not in inserted:
                        updated.add(rec.external_id)

                try:
                    await session.commit()
                except IntegrityError:
                    await session.rollback()
                    if attempt == 2:
                        raise
                    logger.info("Concurrent transaction insert on account %s; retrying batch", account_id)
                    continue

            result.inserted = len(inserted)
            result.updated = len(updated)
            if result.changed:
                self._notify(entity_id)
            return result
        raise AssertionError("unreachable")

    @staticmethod
    def _apply(row: BankTransaction, rec: TransactionRecord) -> bool:
        changed = False
        for name in _TX_FIELDS:
            current = getattr(row, name)
            if name == "occurred_at":
                current = as_utc(current)
            incoming = getattr(rec, name)
            if current != incoming:
                setattr(row, name, incoming)
                changed = True
        return changed

    async def last_transaction_cursor(self, account_id: uuid.UUID) -> datetime | None:
        """Where the next incremental fetch starts.

        The newest recorded transaction, pulled back to the oldest still-pending
        one so pending entries keep being re-fetched until they settle.
        """
        async with self._session_factory() as session:
            newest = await session.scalar(
                select(func.max(BankTransaction.occurred_at)).where(BankTransaction.account_id == account_id)
            )
            oldest_pending = await session.scalar(
                select(func.min(BankTransaction.occurred_at)).where(
                    BankTransaction.account_id == account_id,
                    BankTransaction.status == "pending",
                )
            )
        newest, oldest_pending = as_utc(newest), as_utc(oldest_pending)
        if newest is None:
            return None
        if oldest_pending is not None and oldest_pending < newest:
            return oldest_pending
        return newest

    async def read_transactions(self, flt: TransactionFilter) -> Page:
        limit, offset = self._clamp(flt.limit, flt.offset)
        conditions = []
        if flt.entity_id is not None:
            conditions.append(BankAccount.entity_id == flt.entity_id)
        if flt.account_id is not None:
            conditions.append(BankTransaction.account_id == flt.account_id)
        if flt.start_date is not None:
            conditions.append(BankTransaction.occurred_at >= _day_start(flt.start_date))
        if flt.end_date is not None:
            conditions.append(BankTransaction.occurred_at < _day_start(flt.end_date + timedelta(days=1)))
        if flt.min_amount is not None:
            conditions.append(BankTransaction.amount_cents >= flt.min_amount)
        if flt.max_amount is not None:
            conditions.append(BankTransaction.amount_cents <= flt.max_amount)
        if flt.search:
            conditions.append(or_(
                BankTransaction.description.icontains(flt.search, autoescape=True),
                BankTransaction.counterparty.icontains(flt.search, autoescape=True),
                BankTransaction.note.icontains(flt.search, autoescape=True),
            ))

        base = (
            select(BankTransaction, BankAccount.entity_id)
            .join(BankAccount, BankAccount.id == BankTransaction.account_id)
            .where(*conditions)
        )
        async with self._session_factory() as session:
            total = await session.scalar(select(func.count()).select_from(base.subquery()))
            rows = (await session.execute(
                base.order_by(BankTransaction.occurred_at.desc(), BankTransaction.external_id)
                .limit(limit)
                .offset(offset)
            )).all()

        items = [
            TransactionView(
                id=tx.id,
                account_id=tx.account_id,
                entity_id=entity_id,
                external_id=tx.external_id,
                occurred_at=as_utc(tx.occurred_at),
                description=tx.description,
                amount_cents=tx.amount_cents,
                status=tx.status,
                category=tx.category,
                counterparty=tx.counterparty,
                counterparty_id=tx.counterparty_id,
                note=tx.note,
            )
            for tx, entity_id in rows
        ]
        return Page(items, total or 0, limit, offset)

    # ── Sync runs (audit trail) ───────────────────────────────────────────────

    async def create_sync_run(
        self,
        trigger: str,
        entity_ids: list[str],
        started_at: datetime,
        *,
        run_id: uuid.UUID | None = None,
    ) -> uuid.UUID:
        async with self._session_factory() as session:
            run = SyncRun(
                id=run_id or uuid.uuid4(),
                trigger=trigger,
                status="running",
                entity_ids=list(entity_ids),
                started_at=started_at,
                outcomes={},
            )
            session.add(run)
            await session.commit()
            return run.id

    async def finalize_sync_run(
        self,
        run_id: uuid.UUID,
        *,
        status: str,
        finished_at: datetime,
        outcomes: dict,
        accounts_touched: int,
        transactions_added: int,
        snapshots_written: int,
        entities_synced: int,
        entities_failed: int,
        alert_raised: bool,
        error: str | None = None,
    ) -> None:
        async with self._session_factory() as session:
            run = await session.get(SyncRun, run_id)
            if run is None:
                raise NotFound(f"Sync run {run_id} not found")
            if run.finished_at is not None:
                raise SyncRunFinalized(f"Sync run {run_id} is already finalized")
            run.status = status
            run.finished_at = finished_at
            run.outcomes = outcomes
            run.accounts_touched = accounts_touched
            run.transactions_added = transactions_added
            run.snapshots_written = snapshots_written
            run.entities_synced = entities_synced
            run.entities_failed = entities_failed
            run.alert_raised = alert_raised
            run.error = error
            await session.commit()

    async def get_sync_run(self, run_id: uuid.UUID) -> SyncRun | None:
        async with self._session_factory() as session:
            return await session.get(SyncRun, run_id)
