# repository/balance_repository.py
from typing import Tuple
from redis.asyncio import Redis
from config.cache import get_redis
from repository.namespaces import BALANCES


class BalanceRepository:
    """
    Per-wallet earnings hash {accrued, claimed}.
    - accrued is written by the earnings side (referrals, quests).
    - claimed is only moved by ClaimRepository.complete.
    """

    @staticmethod
    async def _client() -> Redis:
        return await get_redis()

    @staticmethod
    def _key(wallet: str) -> str:
        return f"{BALANCES}:{wallet}"

    async def snapshot(self, wallet: str) -> Tuple[int, int]:
        """(accrued, claimed) read in one command."""
        r = await self._client()
        accrued, claimed = await r.hmget(self._key(wallet), ["accrued", "claimed"])
        return int(accrued or 0), int(claimed or 0)

    async def credit_accrued(self, wallet: str, amount: int) -> int:
        r = await self._client()
        return int(await r.hincrby(self._key(wallet), "accrued", amount))
