"""Stale-while-revalidate cache for balance reads.

Each key (entity, optionally narrowed to one account) moves through
FRESH -> STALE -> REVALIDATING -> FRESH. Stale reads return immediately and
kick off one background reload per key; concurrent readers share it. Only a
key that has never been loaded blocks the caller.
"""

import asyncio
import enum
import logging
import uuid
from collections import OrderedDict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from portal.core.errors import STALE_BEYOND_LIMIT
from portal.services.store import BalanceView

logger = logging.getLogger(__name__)

CacheKey = tuple[str | None, uuid.UUID | None]
Loader = Callable[[str | None, uuid.UUID | None], Awaitable[list[BalanceView]]]


class EntryState(str, enum.Enum):
    FRESH = "fresh"
    STALE = "stale"
    REVALIDATING = "revalidating"


@dataclass
class CacheEntry:
    data: list[BalanceView]
    loaded_at: datetime
    state: EntryState = EntryState.FRESH
    invalidated: bool = False
    task: asyncio.Task | None = field(default=None, repr=False)


@dataclass(frozen=True)
class CachedRead:
    data: list[BalanceView]
    is_stale: bool
    stale_beyond_limit: bool = False
    loaded_at: datetime | None = None

    @property
    def warning(self) -> str | None:
        return STALE_BEYOND_LIMIT if self.stale_beyond_limit else None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BalanceCache:
    def __init__(
        self,
        loader: Loader,
        *,
        ttl_seconds: float = 300.0,
        max_staleness_seconds: float = 86_400.0,
        max_entries: int = 256,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._loader = loader
        self.ttl = timedelta(seconds=ttl_seconds)
        self.max_staleness = timedelta(seconds=max_staleness_seconds)
        self.max_entries = max(1, max_entries)
        self._clock = clock
        self._entries: OrderedDict[CacheKey, CacheEntry] = OrderedDict()
        self._initial_loads: dict[CacheKey, asyncio.Task] = {}

    async def get_balances(
        self, entity_id: str | None = None, account_id: uuid.UUID | None = None
    ) -> CachedRead:
        key: CacheKey = (entity_id, account_id)
        entry = self._entries.get(key)

        if entry is None:
            # Nothing to serve yet: load inline, sharing the load with concurrent callers
            task = self._initial_loads.get(key)
            if task is None:
                task = asyncio.create_task(self._load(key))
                self._initial_loads[key] = task
                task.add_done_callback(lambda _t, k=key: self._initial_loads.pop(k, None))
            entry = await asyncio.shield(task)
            return self._read(entry, is_stale=False)

        self._entries.move_to_end(key)
        now = self._clock()
        if entry.state is EntryState.FRESH and (entry.invalidated or now - entry.loaded_at >= self.ttl):
            entry.state = EntryState.STALE
        if entry.state is EntryState.STALE:
            self._revalidate(key, entry)
        return self._read(entry, is_stale=entry.state is not EntryState.FRESH)

    def invalidate(self, entity_id: str) -> None:
        """Mark every key touching ``entity_id`` (and the all-entities key) stale and refresh it."""
        for key, entry in list(self._entries.items()):
            if key[0] in (entity_id, None):
                if entry.state is EntryState.REVALIDATING:
                    # The reload in flight may predate this commit; reload again after it
                    entry.invalidated = True
                    continue
                entry.state = EntryState.STALE
                entry.invalidated = True
                self._revalidate(key, entry)

    def state(self, entity_id: str | None = None, account_id: uuid.UUID | None = None) -> EntryState | None:
        entry = self._entries.get((entity_id, account_id))
        return entry.state if entry else None

    async def drain(self) -> None:
        """Wait for background revalidations (used at shutdown and in tests)."""
        tasks = [e.task for e in self._entries.values() if e.task is not None]
        tasks += list(self._initial_loads.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _load(self, key: CacheKey) -> CacheEntry:
        data = await self._loader(*key)
        entry = CacheEntry(data=data, loaded_at=self._clock())
        self._entries[key] = entry
        self._evict()
        return entry

    def _evict(self) -> None:
        # Least recently read first; keys with a reload in flight are kept
        while len(self._entries) > self.max_entries:
            victim = next((k for k, e in self._entries.items() if e.task is None), None)
            if victim is None:
                return
            del self._entries[victim]

    def _revalidate(self, key: CacheKey, entry: CacheEntry) -> None:
        if entry.state is EntryState.REVALIDATING:
            return
        entry.state = EntryState.REVALIDATING
        entry.invalidated = False
        entry.task = asyncio.create_task(self._refresh(key, entry))

    async def _refresh(self, key: CacheKey, entry: CacheEntry) -> None:
        try:
            data = await self._loader(*key)
        except Exception:
            logger.exception("Balance cache revalidation failed for %s; keeping stale data", key)
            entry.state = EntryState.STALE
            entry.task = None
            return
        entry.data = data
        entry.loaded_at = self._clock()
        entry.task = None
        if entry.invalidated:
            entry.state = EntryState.STALE
            self._revalidate(key, entry)
        else:
            entry.state = EntryState.FRESH

    def _read(self, entry: CacheEntry, *, is_stale: bool) -> CachedRead:
        now = self._clock()
        # Closed accounts stop producing snapshots; they don't count toward staleness
        oldest = min(
            (b.observed_at for b in entry.data if b.account_status == "active"),
            default=entry.loaded_at,
        )
        beyond = now - min(oldest, entry.loaded_at) > self.max_staleness
        return CachedRead(
            data=list(entry.data),
            is_stale=is_stale or beyond,
            stale_beyond_limit=beyond,
            loaded_at=entry.loaded_at,
        )
