import redis.asyncio as aioredis

from portal.core.config import settings

_SYNC_LOCK_KEY = "mercury_sync:running"

# Delete the lock only if we still own it (it may have expired and been retaken)
_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


def create_redis(url: str | None = None) -> aioredis.Redis:
    # One client per event loop: Celery tasks each run their own asyncio.run()
    return aioredis.from_url(url or settings.redis_url, decode_responses=True)


class RedisSyncGuard:
    """Cross-process sync lock: at most one coordinator run across API and worker processes.

    The TTL bounds how long a crashed process can hold the lock.
    """

    def __init__(self, client: aioredis.Redis, *, key: str = _SYNC_LOCK_KEY, ttl_seconds: int = 900):
        self.client = client
        self._key = key
        self._ttl = ttl_seconds

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "RedisSyncGuard":
        return cls(create_redis(url), **kwargs)

    async def acquire(self, run_id: str) -> str | None:
        """Take the lock for ``run_id``. Returns None on success, else the holder's run id."""
        for _ in range(2):
            if await self.client.set(self._key, run_id, nx=True, ex=self._ttl):
                return None
            holder = await self.client.get(self._key)
            if holder is not None:
                return holder
            # Expired between SET and GET; try once more
        raise RuntimeError(f"Sync lock {self._key} is contended but has no holder")

    async def release(self, run_id: str) -> None:
        await self.client.eval(_RELEASE_SCRIPT, 1, self._key, run_id)

    async def current_run_id(self) -> str | None:
        return await self.client.get(self._key)

    async def aclose(self) -> None:
        await self.client.aclose()
