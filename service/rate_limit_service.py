# service/rate_limit_service.py
import logging
from datetime import datetime
from typing import Final, Optional
from repository.rate_limit_repository import RateLimitRepository
from util import functions
from util.types import WindowKind

logger = logging.getLogger(__name__)

# Buckets outlive their window a little so late readers still see them.
_TTL_SECONDS: Final[dict] = {"minute": 120, "day": 2 * 24 * 3600}


class RateLimitService:
    """
    Per-wallet bucketed counters. The increment is never rolled back: a
    throttled call still spends a unit of its own bucket.
    """

    def __init__(self, repo: RateLimitRepository) -> None:
        self._repo = repo

    @staticmethod
    def bucket_key(wallet: str, window: WindowKind, at: Optional[datetime] = None) -> str:
        if window == "minute":
            return f"{wallet}:m:{functions.minute_str_utc(at)}"
        return f"{wallet}:d:{functions.day_str_utc(at)}"

    async def check_and_increment(
        self, wallet: str, window: WindowKind, at: Optional[datetime] = None
    ) -> int:
        """Post-increment count for the wallet's current bucket."""
        count = await self._repo.increment(
            self.bucket_key(wallet, window, at), _TTL_SECONDS[window]
        )
        logger.debug("ratelimit.incr wallet=%s window=%s count=%d", wallet, window, count)
        return count
