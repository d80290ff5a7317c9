"""Sync coordinator: one run across many entities, one run at a time.

Entity syncs run concurrently up to ``concurrency``, each under its own
timeout, and each failure stays inside its own outcome. Triggers that arrive
while a run is in flight are coalesced: a manual trigger joins the in-flight
run (same run id, same result), a scheduled trigger queues exactly one
follow-up run.
"""

import asyncio
import enum
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol

from portal.core.errors import SyncTimeout
from portal.core.security import redact_error_message
from portal.services.alerts import AlertDispatcher, evaluate_run
from portal.services.entity_sync import EntityOutcome, EntitySyncWorker, OutcomeStatus, cycle_start
from portal.services.store import ReconciliationStore, utcnow

logger = logging.getLogger(__name__)


class SyncTrigger(str, enum.Enum):
    MANUAL = "manual"
    SCHEDULED = "scheduled"


class RunGuard(Protocol):
    """Cross-process run lock. ``acquire`` returns the holder's run id when already taken."""

    async def acquire(self, run_id: str) -> str | None: ...

    async def release(self, run_id: str) -> None: ...


@dataclass
class SyncRunSummary:
    run_id: uuid.UUID | None
    trigger: SyncTrigger
    status: str                      # completed | failed | coalesced
    started_at: datetime
    finished_at: datetime | None = None
    outcomes: list[EntityOutcome] = field(default_factory=list)
    alert_raised: bool = False
    error: str | None = None

    def _count(self, *statuses: OutcomeStatus) -> int:
        return sum(1 for o in self.outcomes if o.status in statuses)

    @property
    def synced(self) -> int:
        return self._count(OutcomeStatus.SUCCESS, OutcomeStatus.PARTIAL_FAILURE)

    @property
    def partial(self) -> int:
        return self._count(OutcomeStatus.PARTIAL_FAILURE)

    @property
    def skipped(self) -> int:
        return self._count(OutcomeStatus.SKIPPED)

    @property
    def errors(self) -> int:
        return self._count(OutcomeStatus.FAILED, OutcomeStatus.SKIPPED)

    @property
    def accounts_touched(self) -> int:
        return sum(o.accounts_synced for o in self.outcomes)

    @property
    def transactions_added(self) -> int:
        return sum(o.transactions_added for o in self.outcomes)

    @property
    def snapshots_written(self) -> int:
        return sum(o.snapshots_written for o in self.outcomes)

    def outcome(self, entity_id: str) -> EntityOutcome | None:
        return next((o for o in self.outcomes if o.entity_id == entity_id), None)


class SyncCoordinator:
    def __init__(
        self,
        worker: EntitySyncWorker,
        store: ReconciliationStore,
        entity_ids: list[str],
        *,
        concurrency: int = 3,
        entity_timeout: float = 90.0,
        balance_cycle_seconds: int = 300,
        failure_ratio: float = 0.5,
        low_balance_threshold_cents: int | None = None,
        alerts: AlertDispatcher | None = None,
        guard: RunGuard | None = None,
        clock=utcnow,
    ):
        self._worker = worker
        self._store = store
        self._entity_ids = list(entity_ids)
        self._concurrency = max(1, concurrency)
        self._timeout = entity_timeout
        self._cycle_seconds = balance_cycle_seconds
        self._failure_ratio = failure_ratio
        self._low_balance = low_balance_threshold_cents
        self._alerts = alerts or AlertDispatcher()
        self._guard = guard
        self._clock = clock
        self._current: asyncio.Task | None = None
        self._current_run_id: uuid.UUID | None = None
        self._follow_up = False

    @property
    def in_flight(self) -> bool:
        return self._current is not None and not self._current.done()

    @property
    def current_run_id(self) -> uuid.UUID | None:
        return self._current_run_id if self.in_flight else None

    async def run_sync(
        self, entity_ids: list[str] | None = None, *, trigger: SyncTrigger = SyncTrigger.MANUAL
    ) -> SyncRunSummary:
        """Run (or join) a sync. ``entity_ids=None`` means every configured entity."""
        if self.in_flight:
            if trigger is SyncTrigger.SCHEDULED:
                logger.info("Sync %s in flight; queueing one follow-up run", self._current_run_id)
                self._follow_up = True
            else:
                logger.info("Sync %s in flight; joining it", self._current_run_id)
            return await asyncio.shield(self._current)
        return await asyncio.shield(self._start(entity_ids, trigger))

    async def wait_idle(self) -> None:
        while self.in_flight:
            await asyncio.wait({self._current})

    def _start(self, entity_ids: list[str] | None, trigger: SyncTrigger) -> asyncio.Task:
        run_id = uuid.uuid4()
        self._current_run_id = run_id
        task = asyncio.create_task(self._execute(run_id, entity_ids, trigger))
        self._current = task
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        if self._follow_up and self._current is task:
            self._follow_up = False
            logger.info("Starting queued follow-up sync")
            self._start(None, SyncTrigger.SCHEDULED)

    async def _execute(
        self, run_id: uuid.UUID, entity_ids: list[str] | None, trigger: SyncTrigger
    ) -> SyncRunSummary:
        started = self._clock()
        scope = list(dict.fromkeys(entity_ids)) if entity_ids else list(self._entity_ids)
        summary = SyncRunSummary(run_id=run_id, trigger=trigger, status="running", started_at=started)

        if self._guard is not None:
            try:
                holder = await self._guard.acquire(str(run_id))
            except Exception as exc:
                logger.warning("Sync guard unavailable (%s); relying on in-process lock", exc)
                holder = None
                guarded = False
            else:
                guarded = holder is None
            if holder is not None:
                logger.info("Sync %s already running in another process; not starting %s", holder, run_id)
                summary.run_id = uuid.UUID(holder)
                summary.status = "coalesced"
                summary.finished_at = self._clock()
                return summary
        else:
            guarded = False

        try:
            return await self._run(summary, scope)
        finally:
            if guarded:
                try:
                    await self._guard.release(str(run_id))
                except Exception as exc:
                    logger.warning("Could not release sync guard for %s: %s", run_id, exc)

    async def _run(self, summary: SyncRunSummary, scope: list[str]) -> SyncRunSummary:
        try:
            await self._store.create_sync_run(summary.trigger.value, scope, summary.started_at, run_id=summary.run_id)
        except Exception as exc:
            # Nothing was synced; report the run as failed rather than crash the caller
            logger.exception("Could not start sync run %s", summary.run_id)
            summary.status = "failed"
            summary.error = redact_error_message(f"{type(exc).__name__}: {exc}")
            summary.outcomes = [EntityOutcome.failed(e, "RUN_NOT_STARTED") for e in scope]
            summary.finished_at = self._clock()
            return summary

        logger.info("Sync run %s (%s) started for %d entities", summary.run_id, summary.trigger.value, len(scope))
        observed_at = cycle_start(summary.started_at, self._cycle_seconds)
        sem = asyncio.Semaphore(self._concurrency)
        summary.outcomes = list(await asyncio.gather(*(self._sync_one(e, observed_at, sem) for e in scope)))

        alerts = evaluate_run(
            summary.outcomes,
            failure_ratio=self._failure_ratio,
            low_balance_threshold_cents=self._low_balance,
        )
        if alerts:
            summary.alert_raised = True
            await self._alerts.dispatch(alerts)

        summary.status = "completed"
        summary.finished_at = self._clock()
        try:
            await self._store.finalize_sync_run(
                summary.run_id,
                status=summary.status,
                finished_at=summary.finished_at,
                outcomes={o.entity_id: o.to_dict() for o in summary.outcomes},
                accounts_touched=summary.accounts_touched,
                transactions_added=summary.transactions_added,
                snapshots_written=summary.snapshots_written,
                entities_synced=summary.synced,
                entities_failed=summary.errors,
                alert_raised=summary.alert_raised,
            )
        except Exception as exc:
            logger.exception("Could not record sync run %s", summary.run_id)
            summary.error = redact_error_message(f"{type(exc).__name__}: {exc}")

        logger.info(
            "Sync run %s finished: %d synced, %d errors, %d new transactions",
            summary.run_id, summary.synced, summary.errors, summary.transactions_added,
        )
        return summary

    async def _sync_one(self, entity_id: str, observed_at: datetime, sem: asyncio.Semaphore) -> EntityOutcome:
        async with sem:
            try:
                return await asyncio.wait_for(self._worker.sync_entity(entity_id, observed_at), self._timeout)
            except asyncio.TimeoutError:
                err = SyncTimeout(entity_id, self._timeout)
                logger.error(err.message)
                return EntityOutcome.failed(entity_id, err.code, err.message)
            except Exception as exc:
                logger.exception("Entity %s sync crashed", entity_id)
                return EntityOutcome.failed(entity_id, "INTERNAL_ERROR", redact_error_message(str(exc)))
