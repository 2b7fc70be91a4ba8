# repository/rate_limit_repository.py
from typing import Final
from redis.asyncio import Redis
from config.cache import get_redis
from repository.namespaces import RATE_LIMITS

KEY_PREFIX: Final[str] = RATE_LIMITS


class RateLimitRepository:
    """
    Flow:
    - One counter per bucketKey (wallet + UTC minute/day string).
    - INCR creates the counter on first use; EXPIRE in the same MULTI keeps
      stale buckets from piling up.
    """

    @staticmethod
    async def _client() -> Redis:
        return await get_redis()

    @staticmethod
    def _key(bucket_key: str) -> str:
        return f"{KEY_PREFIX}:{bucket_key}"

    async def increment(self, bucket_key: str, ttl_seconds: int) -> int:
        r = await self._client()
        async with r.pipeline(transaction=True) as pipe:
            pipe.incr(self._key(bucket_key))
            pipe.expire(self._key(bucket_key), ttl_seconds)
            count, _ = await pipe.execute()
        return int(count)

    async def get(self, bucket_key: str) -> int:
        r = await self._client()
        return int(await r.get(self._key(bucket_key)) or 0)
