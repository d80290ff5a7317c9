"""Scheduled Mercury sync: one coordinator run per beat tick."""

import asyncio
import logging

from portal.container import build_container
from portal.core.config import settings
from portal.services.coordinator import SyncRunSummary, SyncTrigger
from portal.worker import celery_app

logger = logging.getLogger(__name__)


async def run_sync_once(
    entity_ids: list[str] | None = None,
    *,
    trigger: SyncTrigger = SyncTrigger.SCHEDULED,
    **container_kwargs,
) -> SyncRunSummary:
    """Build a container, run one sync, tear everything down."""
    container = build_container(settings, **container_kwargs)
    try:
        await container.startup()
        return await container.coordinator.run_sync(entity_ids, trigger=trigger)
    finally:
        await container.shutdown()


def _result(summary: SyncRunSummary) -> dict:
    return {
        "run_id": str(summary.run_id) if summary.run_id else None,
        "status": summary.status,
        "synced": summary.synced,
        "errors": summary.errors,
        "skipped": summary.skipped,
        "transactions_added": summary.transactions_added,
    }


@celery_app.task(name="portal.services.sync.sync_all_entities")
def sync_all_entities() -> dict:
    """Sync every configured entity (beat schedule: settings.sync_schedule)."""
    logger.info("Starting scheduled Mercury sync")
    summary = asyncio.run(run_sync_once())
    if summary.status == "coalesced":
        logger.info("Sync %s already running elsewhere; skipping this tick", summary.run_id)
    return _result(summary)


@celery_app.task(name="portal.services.sync.sync_entity")
def sync_entity(entity_id: str) -> dict:
    """Sync a single entity, called on demand."""
    logger.info("Syncing entity %s", entity_id)
    return _result(asyncio.run(run_sync_once([entity_id], trigger=SyncTrigger.MANUAL)))
