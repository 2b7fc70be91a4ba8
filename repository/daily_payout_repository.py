# repository/daily_payout_repository.py
from typing import Final, Optional
from redis.asyncio import Redis
from config.cache import get_redis
from model.payout import DailyAccumulator, PayoutResult
from repository.namespaces import DAILY_GLOBAL, DAILY_PAYOUTS

# Increment both accumulators only if neither would pass its cap. A missing
# hash reads as zero, so the first payout of the day is the same
# "amount <= cap" check followed by a create. hitCap is sticky.
_RECORD_PAYOUT: Final[str] = """
local amount = tonumber(ARGV[1])
local user_cap = tonumber(ARGV[2])
local global_cap = tonumber(ARGV[3])
local user_now = tonumber(redis.call('HGET', KEYS[1], 'amount') or '0') or 0
local global_now = tonumber(redis.call('HGET', KEYS[2], 'amount') or '0') or 0
if user_now + amount > user_cap or global_now + amount > global_cap then
  return false
end
redis.call('HSETNX', KEYS[1], 'day', ARGV[4])
redis.call('HSETNX', KEYS[1], 'token', ARGV[5])
redis.call('HSETNX', KEYS[1], 'wallet', ARGV[6])
redis.call('HSETNX', KEYS[1], 'hitCap', '0')
redis.call('HSETNX', KEYS[2], 'day', ARGV[4])
redis.call('HSETNX', KEYS[2], 'token', ARGV[5])
redis.call('HSETNX', KEYS[2], 'hitCap', '0')
local user_total = redis.call('HINCRBY', KEYS[1], 'amount', ARGV[1])
local global_total = redis.call('HINCRBY', KEYS[2], 'amount', ARGV[1])
local user_just = 0
local global_just = 0
if user_total >= user_cap and redis.call('HGET', KEYS[1], 'hitCap') ~= '1' then
  redis.call('HSET', KEYS[1], 'hitCap', '1')
  user_just = 1
end
if global_total >= global_cap and redis.call('HGET', KEYS[2], 'hitCap') ~= '1' then
  redis.call('HSET', KEYS[2], 'hitCap', '1')
  global_just = 1
end
return {
  user_total,
  global_total,
  tonumber(redis.call('HGET', KEYS[1], 'hitCap')),
  tonumber(redis.call('HGET', KEYS[2], 'hitCap')),
  user_just,
  global_just,
}
"""


class DailyPayoutRepository:
    """
    Flow:
    - daily_payouts:<day>:<token>:<wallet> and daily_global:<day>:<token> hashes
      hold {day, token, [wallet], amount, hitCap}.
    - Created lazily by the first accepted increment of the day.
    - Mutated only through increment(); reads are advisory.
    """

    @staticmethod
    async def _client() -> Redis:
        return await get_redis()

    @staticmethod
    def _user_key(day: str, token: str, wallet: str) -> str:
        return f"{DAILY_PAYOUTS}:{day}:{token}:{wallet}"

    @staticmethod
    def _global_key(day: str, token: str) -> str:
        return f"{DAILY_GLOBAL}:{day}:{token}"

    async def increment(
        self,
        *,
        day: str,
        token: str,
        wallet: str,
        amount: int,
        user_cap: int,
        global_cap: int,
    ) -> Optional[PayoutResult]:
        """Returns None when either cap would be exceeded; nothing is written then."""
        r = await self._client()
        script = r.register_script(_RECORD_PAYOUT)
        res = await script(
            keys=[self._user_key(day, token, wallet), self._global_key(day, token)],
            args=[amount, user_cap, global_cap, day, token, wallet],
        )
        if not res:
            return None
        user_total, global_total, user_hit, global_hit, user_just, global_just = (
            int(x) for x in res
        )
        return PayoutResult(
            total=user_total,
            hitCap=bool(user_hit),
            globalTotal=global_total,
            globalHitCap=bool(global_hit),
            justHitCap=bool(user_just),
            globalJustHitCap=bool(global_just),
        )

    async def get_user(self, day: str, token: str, wallet: str) -> DailyAccumulator:
        r = await self._client()
        h = await r.hgetall(self._user_key(day, token, wallet))
        return DailyAccumulator(
            day=day,
            token=token,
            wallet=wallet,
            amount=int(h.get("amount") or 0),
            hitCap=h.get("hitCap") == "1",
        )

    async def get_global(self, day: str, token: str) -> DailyAccumulator:
        r = await self._client()
        h = await r.hgetall(self._global_key(day, token))
        return DailyAccumulator(
            day=day,
            token=token,
            amount=int(h.get("amount") or 0),
            hitCap=h.get("hitCap") == "1",
        )
