"""Sync one entity: accounts -> balances + incremental transactions -> store."""

import asyncio
import enum
import logging
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timezone

from pydantic import SecretStr

from portal.core.errors import (
    MissingCredential,
    PortalError,
    SnapshotConflict,
    SnapshotOutOfOrder,
)
from portal.schemas.provider import MercuryAccount
from portal.services.credentials import CredentialRegistry
from portal.services.mercury_client import MercuryClient
from portal.services.normalization import (
    BalanceRecord,
    TransactionRecord,
    normalize_account,
    normalize_balance,
    normalize_transaction,
)
from portal.services.store import ReconciliationStore, utcnow

logger = logging.getLogger(__name__)


class OutcomeStatus(str, enum.Enum):
    SUCCESS = "success"
    PARTIAL_FAILURE = "partial_failure"
    FAILED = "failed"
    SKIPPED = "skipped"


def cycle_start(now: datetime, cycle_seconds: int) -> datetime:
    """Align ``now`` down to its balance cycle so re-runs inside a cycle share a timestamp."""
    now = now.astimezone(timezone.utc)
    if cycle_seconds <= 0:
        return now
    epoch = int(now.timestamp())
    return datetime.fromtimestamp(epoch - epoch % cycle_seconds, tz=timezone.utc)


def _reason(exc: BaseException) -> str:
    if isinstance(exc, PortalError):
        return exc.code
    return "INTERNAL_ERROR"


@dataclass
class AccountResult:
    external_account_id: str
    name: str | None = None
    balance_error: str | None = None
    transactions_error: str | None = None
    balance_cents: int | None = None
    snapshot_written: bool = False
    transactions_added: int = 0
    transactions_updated: int = 0
    transitions_rejected: int = 0

    @property
    def ok(self) -> bool:
        return self.balance_error is None and self.transactions_error is None

    @property
    def touched(self) -> bool:
        return self.balance_error is None or self.transactions_error is None

    def reason(self) -> str:
        parts = []
        if self.balance_error:
            parts.append(f"balance: {self.balance_error}")
        if self.transactions_error:
            parts.append(f"transactions: {self.transactions_error}")
        return "; ".join(parts)


@dataclass
class EntityOutcome:
    """Tagged result of one entity sync."""

    entity_id: str
    status: OutcomeStatus
    accounts_synced: int = 0
    transactions_added: int = 0
    snapshots_written: int = 0
    succeeded_accounts: list[str] = field(default_factory=list)
    failed_accounts: list[str] = field(default_factory=list)
    reasons: dict[str, str] = field(default_factory=dict)
    reason: str | None = None
    message: str | None = None
    # (account name, balance in cents) for accounts whose balance was fetched
    balances: list[tuple[str, int]] = field(default_factory=list)

    @classmethod
    def success(cls, entity_id: str, accounts_synced: int, tx_count: int, **kw) -> "EntityOutcome":
        return cls(entity_id, OutcomeStatus.SUCCESS, accounts_synced=accounts_synced, transactions_added=tx_count, **kw)

    @classmethod
    def partial_failure(
        cls, entity_id: str, succeeded: list[str], failed: list[str], reasons: dict[str, str], **kw
    ) -> "EntityOutcome":
        return cls(
            entity_id,
            OutcomeStatus.PARTIAL_FAILURE,
            succeeded_accounts=succeeded,
            failed_accounts=failed,
            reasons=reasons,
            reason="PARTIAL_FAILURE",
            **kw,
        )

    @classmethod
    def failed(cls, entity_id: str, reason: str, message: str | None = None, **kw) -> "EntityOutcome":
        return cls(entity_id, OutcomeStatus.FAILED, reason=reason, message=message, **kw)

    @classmethod
    def skipped(cls, entity_id: str, reason: str, message: str | None = None) -> "EntityOutcome":
        return cls(entity_id, OutcomeStatus.SKIPPED, reason=reason, message=message)

    @property
    def synced(self) -> bool:
        return self.status in (OutcomeStatus.SUCCESS, OutcomeStatus.PARTIAL_FAILURE)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["status"] = self.status.value
        data["balances"] = [list(b) for b in self.balances]
        return data


class EntitySyncWorker:
    def __init__(
        self,
        registry: CredentialRegistry,
        mercury: MercuryClient,
        store: ReconciliationStore,
        *,
        account_concurrency: int = 4,
        balance_cycle_seconds: int = 300,
        clock=utcnow,
    ):
        self._registry = registry
        self._mercury = mercury
        self._store = store
        self._account_concurrency = max(1, account_concurrency)
        self._cycle_seconds = balance_cycle_seconds
        self._clock = clock

    async def sync_entity(self, entity_id: str, observed_at: datetime | None = None) -> EntityOutcome:
        try:
            token = self._registry.resolve(entity_id)
        except MissingCredential as exc:
            logger.warning("Skipping entity %s: %s", entity_id, exc.message)
            return EntityOutcome.skipped(entity_id, exc.code, exc.message)

        hint = self._registry.masked_hint(entity_id)
        observed_at = observed_at or cycle_start(self._clock(), self._cycle_seconds)
        logger.info("Syncing entity %s [token %s]", entity_id, hint)

        try:
            accounts = await self._mercury.list_accounts(token)
        except PortalError as exc:
            logger.error("Entity %s: account list failed: %s", entity_id, exc.message)
            return EntityOutcome.failed(entity_id, exc.code, exc.message)

        sem = asyncio.Semaphore(self._account_concurrency)
        results = await asyncio.gather(
            *(self._sync_account(entity_id, token, raw, observed_at, sem) for raw in accounts)
        )
        outcome = self._summarize(entity_id, results)
        logger.info(
            "Entity %s: %s (%d accounts, %d new transactions, %d snapshots)",
            entity_id, outcome.status.value, len(results), outcome.transactions_added, outcome.snapshots_written,
        )
        return outcome

    async def _sync_account(
        self,
        entity_id: str,
        token: SecretStr,
        raw: MercuryAccount,
        observed_at: datetime,
        sem: asyncio.Semaphore,
    ) -> AccountResult:
        result = AccountResult(external_account_id=raw.id, name=raw.nickname or raw.name)
        async with sem:
            try:
                account_id = await self._store.upsert_account(entity_id, normalize_account(raw))
                cursor = await self._store.last_transaction_cursor(account_id)
            except Exception as exc:
                self._log_failure(entity_id, raw.id, "account record", exc)
                result.balance_error = result.transactions_error = _reason(exc)
                return result
            since = cursor.date() if cursor else None

            balance, txs = await asyncio.gather(
                self._fetch_balance(token, raw.id, observed_at),
                self._fetch_transactions(token, raw.id, since),
                return_exceptions=True,
            )
            for fetched in (balance, txs):
                if isinstance(fetched, BaseException) and not isinstance(fetched, Exception):
                    raise fetched

            # Balance and transactions commit independently: one failing never undoes the other
            if isinstance(balance, Exception):
                self._log_failure(entity_id, raw.id, "balance fetch", balance)
                result.balance_error = _reason(balance)
            else:
                await self._commit_balance(entity_id, account_id, balance, result)

            if isinstance(txs, Exception):
                self._log_failure(entity_id, raw.id, "transaction fetch", txs)
                result.transactions_error = _reason(txs)
            else:
                await self._commit_transactions(entity_id, account_id, txs, result)
        return result

    async def _fetch_balance(self, token: SecretStr, external_id: str, observed_at: datetime) -> BalanceRecord:
        return normalize_balance(await self._mercury.get_account(token, external_id), observed_at)

    async def _fetch_transactions(
        self, token: SecretStr, external_id: str, since: date | None
    ) -> list[TransactionRecord]:
        raw = await self._mercury.list_transactions(token, external_id, since)
        records = [normalize_transaction(t) for t in raw]
        if since is not None:
            # Providers may send entries from before the requested start
            records = [r for r in records if r.occurred_at.date() >= since]
        return records

    async def _commit_balance(self, entity_id, account_id, balance: BalanceRecord, result: AccountResult) -> None:
        try:
            result.snapshot_written = await self._store.commit_balance(account_id, balance)
        except (SnapshotConflict, SnapshotOutOfOrder) as exc:
            # A snapshot for this cycle is already on record; keep the first one
            logger.warning("Entity %s: %s", entity_id, exc.message)
        except Exception as exc:
            self._log_failure(entity_id, result.external_account_id, "balance commit", exc)
            result.balance_error = _reason(exc)
            return
        result.balance_cents = balance.balance_cents

    async def _commit_transactions(self, entity_id, account_id, txs, result: AccountResult) -> None:
        try:
            committed = await self._store.commit_transactions(account_id, txs)
        except Exception as exc:
            self._log_failure(entity_id, result.external_account_id, "transaction commit", exc)
            result.transactions_error = _reason(exc)
            return
        result.transactions_added = committed.inserted
        result.transactions_updated = committed.updated
        result.transitions_rejected = len(committed.rejected)

    @staticmethod
    def _log_failure(entity_id: str, external_id: str, step: str, exc: Exception) -> None:
        if isinstance(exc, PortalError):
            logger.error("Entity %s account %s: %s failed: %s", entity_id, external_id, step, exc.message)
        else:
            logger.exception("Entity %s account %s: %s failed", entity_id, external_id, step)

    @staticmethod
    def _summarize(entity_id: str, results: list[AccountResult]) -> EntityOutcome:
        counts = dict(
            accounts_synced=sum(1 for r in results if r.touched),
            snapshots_written=sum(1 for r in results if r.snapshot_written),
            balances=[(r.name or r.external_account_id, r.balance_cents) for r in results if r.balance_cents is not None],
        )
        tx_added = sum(r.transactions_added for r in results)
        succeeded = [r.external_account_id for r in results if r.ok]
        failed = [r.external_account_id for r in results if not r.ok]

        if not failed:
            return EntityOutcome.success(entity_id, counts.pop("accounts_synced"), tx_added, **counts)
        reasons = {r.external_account_id: r.reason() for r in results if not r.ok}
        if not any(r.touched for r in results):
            first = next(r for r in results if not r.ok)
            return EntityOutcome.failed(
                entity_id, first.balance_error or first.transactions_error, "every account failed",
                failed_accounts=failed, reasons=reasons,
            )
        return EntityOutcome.partial_failure(
            entity_id, succeeded, failed, reasons, transactions_added=tx_added, **counts
        )
