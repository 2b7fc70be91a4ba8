# repository/treasury_lock_repository.py
import logging
from typing import Final, Optional
from redis.asyncio import Redis
from redis.asyncio.lock import Lock
from redis.exceptions import LockError
from config.cache import get_redis
from repository.namespaces import TREASURY_LOCK

logger = logging.getLogger(__name__)

LOCK_TTL_SECONDS: Final[int] = 60


class TreasuryLockRepository:
    """
    Flow:
    - One lock key per treasury address; only its holder may sign transfers.
    - The lock expires unless refreshed, so a crashed worker frees it.
    """

    def __init__(self, treasury_address: str, ttl_seconds: int = LOCK_TTL_SECONDS):
        self._name = f"{TREASURY_LOCK}:{treasury_address.lower()}"
        self._ttl = ttl_seconds
        self._lock: Optional[Lock] = None

    @property
    def ttl_seconds(self) -> int:
        return self._ttl

    async def acquire(self) -> bool:
        r: Redis = await get_redis()
        lock = r.lock(self._name, timeout=self._ttl)
        acquired = bool(await lock.acquire(blocking=False))
        logger.info("treasury.lock.acquire name=%s ok=%s", self._name, acquired)
        self._lock = lock if acquired else None
        return acquired

    async def refresh(self) -> bool:
        """Reset the TTL; False once another process owns the lock."""
        if self._lock is None:
            return False
        try:
            await self._lock.extend(self._ttl, replace_ttl=True)
            return True
        except LockError:
            logger.error("treasury.lock.lost name=%s", self._name)
            return False

    async def release(self) -> None:
        if self._lock is None:
            return
        try:
            await self._lock.release()
        except LockError:
            logger.warning("treasury.lock.release.not_owned name=%s", self._name)
        self._lock = None
