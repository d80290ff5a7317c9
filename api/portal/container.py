"""Composition root: builds the sync and read pipeline from settings."""

import logging
from dataclasses import dataclass

import httpx
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from portal.core.config import Settings, settings as default_settings
from portal.core.database import build_engine, build_session_factory
from portal.core.redis import RedisSyncGuard
from portal.services.alerts import AlertDispatcher, LoggingAlertSink, WhatsAppAlertSink
from portal.services.cache import BalanceCache
from portal.services.coordinator import SyncCoordinator
from portal.services.credentials import CredentialRegistry
from portal.services.entity_sync import EntitySyncWorker
from portal.services.mercury_client import MercuryClient, RateLimitedClient
from portal.services.store import ReconciliationStore
from portal.services.whatsapp import WhatsAppClient

logger = logging.getLogger(__name__)


@dataclass
class Container:
    settings: Settings
    engine: AsyncEngine
    session_factory: async_sessionmaker[AsyncSession]
    registry: CredentialRegistry
    transport: RateLimitedClient
    mercury: MercuryClient
    store: ReconciliationStore
    worker: EntitySyncWorker
    coordinator: SyncCoordinator
    cache: BalanceCache
    guard: RedisSyncGuard | None = None

    async def startup(self) -> None:
        await self.store.register_entities(self.settings.entities)
        logger.info(
            "Portal ready: %d entities, credentials for %s",
            len(self.settings.entities), ", ".join(self.registry.configured()) or "none",
        )

    async def shutdown(self) -> None:
        await self.coordinator.wait_idle()
        await self.cache.drain()
        await self.transport.aclose()
        await self.engine.dispose()
        if self.guard is not None:
            await self.guard.aclose()


def build_alerts(s: Settings) -> AlertDispatcher:
    sinks = [LoggingAlertSink()]
    if s.whatsapp_enabled and s.alert_recipients:
        sinks.append(WhatsAppAlertSink(WhatsAppClient(s.whatsapp_bot_url), s.alert_recipients))
    return AlertDispatcher(sinks)


def build_container(
    s: Settings | None = None,
    *,
    engine: AsyncEngine | None = None,
    http_transport: httpx.AsyncBaseTransport | None = None,
    guard=None,
    **client_kwargs,
) -> Container:
    """Wire every component. ``http_transport`` and ``client_kwargs`` exist for tests."""
    s = s or default_settings
    engine = engine or build_engine(s.database_url)
    session_factory = build_session_factory(engine)

    registry = CredentialRegistry.from_settings(s)
    transport = RateLimitedClient.from_settings(s, transport=http_transport, **client_kwargs)
    mercury = MercuryClient(transport)
    store = ReconciliationStore(
        session_factory,
        page_size_default=s.page_size_default,
        page_size_max=s.page_size_max,
    )
    worker = EntitySyncWorker(
        registry,
        mercury,
        store,
        account_concurrency=s.account_concurrency,
        balance_cycle_seconds=s.balance_cycle_seconds,
    )
    if guard is None and s.sync_guard_enabled:
        guard = RedisSyncGuard.from_url(s.redis_url, ttl_seconds=s.sync_lock_ttl_seconds)
    coordinator = SyncCoordinator(
        worker,
        store,
        [e.id for e in s.entities],
        concurrency=s.sync_concurrency,
        entity_timeout=s.entity_sync_timeout_seconds,
        balance_cycle_seconds=s.balance_cycle_seconds,
        failure_ratio=s.alert_failure_ratio,
        low_balance_threshold_cents=s.low_balance_threshold_cents,
        alerts=build_alerts(s),
        guard=guard,
    )
    cache = BalanceCache(
        store.latest_balances,
        ttl_seconds=s.cache_ttl_seconds,
        max_staleness_seconds=s.cache_max_staleness_seconds,
        max_entries=s.cache_max_entries,
    )
    store.add_commit_listener(cache.invalidate)

    return Container(
        settings=s,
        engine=engine,
        session_factory=session_factory,
        registry=registry,
        transport=transport,
        mercury=mercury,
        store=store,
        worker=worker,
        coordinator=coordinator,
        cache=cache,
        guard=guard,
    )
