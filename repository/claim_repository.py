# repository/claim_repository.py
from typing import Final, List, Optional, Tuple
from uuid import uuid4
from redis.asyncio import Redis
from config.cache import get_redis
from model.claim import ClaimRecord, ClaimStatus
from repository.namespaces import (
    BALANCES,
    CLAIM_IDEMPOTENCY,
    CLAIM_STATUS,
    CLAIM_WALLET,
    CLAIMS,
)
from util.functions import now_ms

KEY_PREFIX: Final[str] = CLAIMS

# Every status transition below is one script: the status (and idempotency key)
# check and the write happen atomically on the server.

_INSERT_IF_ABSENT: Final[str] = """
if not redis.call('SET', KEYS[1], ARGV[1], 'NX') then
  return {0, redis.call('GET', KEYS[1])}
end
for i = 3, #ARGV, 2 do
  redis.call('HSET', KEYS[2], ARGV[i], ARGV[i + 1])
end
redis.call('ZADD', KEYS[3], ARGV[2], ARGV[1])
redis.call('ZADD', KEYS[4], ARGV[2], ARGV[1])
return {1, ARGV[1]}
"""

_LEASE: Final[str] = """
while true do
  local ids = redis.call('ZRANGE', KEYS[1], 0, 0)
  if #ids == 0 then
    return false
  end
  local id = ids[1]
  redis.call('ZREM', KEYS[1], id)
  local key = ARGV[1] .. ':' .. id
  if redis.call('HGET', key, 'status') == 'pending' then
    redis.call('HINCRBY', key, 'attempts', 1)
    redis.call('HSET', key, 'status', 'processing', 'leaseAt', ARGV[2], 'deferred', '')
    redis.call('ZADD', KEYS[2], ARGV[2], id)
    return redis.call('HGETALL', key)
  end
end
"""

_REVERT_TO_PENDING: Final[str] = """
if redis.call('HGET', KEYS[1], 'status') ~= 'processing' then
  return 0
end
if redis.call('HGET', KEYS[1], 'idempotencyKey') ~= ARGV[2] then
  return 0
end
if ARGV[5] == '1' then
  redis.call('HINCRBY', KEYS[1], 'attempts', -1)
end
if ARGV[3] ~= '' then
  redis.call('HSET', KEYS[1], 'error', ARGV[3])
end
redis.call('HSET', KEYS[1], 'status', 'pending', 'deferred', ARGV[4], 'leaseAt', '')
redis.call('ZREM', KEYS[2], ARGV[1])
local score = ARGV[6]
if score == '' then
  score = redis.call('HGET', KEYS[1], 'createdAt')
end
redis.call('ZADD', KEYS[3], score, ARGV[1])
return 1
"""

_MARK_SUBMITTED: Final[str] = """
if redis.call('HGET', KEYS[1], 'status') ~= 'processing' then
  return 0
end
if redis.call('HGET', KEYS[1], 'idempotencyKey') ~= ARGV[1] then
  return 0
end
redis.call('HSET', KEYS[1], 'submittedRef', ARGV[2])
return 1
"""

_COMPLETE: Final[str] = """
if redis.call('HGET', KEYS[1], 'status') ~= 'processing' then
  return 0
end
if redis.call('HGET', KEYS[1], 'idempotencyKey') ~= ARGV[2] then
  return 0
end
redis.call('HSET', KEYS[1], 'status', 'completed', 'transactionRef', ARGV[3],
  'processedAt', ARGV[4], 'error', '', 'deferred', '')
redis.call('ZREM', KEYS[2], ARGV[1])
redis.call('ZADD', KEYS[3], ARGV[4], ARGV[1])
redis.call('HINCRBY', KEYS[4], 'claimed', redis.call('HGET', KEYS[1], 'amount'))
return 1
"""

_FAIL: Final[str] = """
if redis.call('HGET', KEYS[1], 'status') ~= 'processing' then
  return 0
end
if redis.call('HGET', KEYS[1], 'idempotencyKey') ~= ARGV[2] then
  return 0
end
redis.call('HSET', KEYS[1], 'status', 'failed', 'error', ARGV[3],
  'processedAt', ARGV[4], 'attempts', ARGV[5], 'deferred', '')
redis.call('ZREM', KEYS[2], ARGV[1])
redis.call('ZADD', KEYS[3], ARGV[4], ARGV[1])
return 1
"""

# 0: not stale any more, 1: back to pending, 2: has a submitted transfer
# (caller must reconcile), 3: out of attempts -> failed
_RECOVER_STALE: Final[str] = """
if redis.call('HGET', KEYS[1], 'status') ~= 'processing' then
  redis.call('ZREM', KEYS[2], ARGV[1])
  return 0
end
local lease = tonumber(redis.call('HGET', KEYS[1], 'leaseAt') or '0') or 0
if lease > tonumber(ARGV[2]) then
  return 0
end
local submitted = redis.call('HGET', KEYS[1], 'submittedRef')
if submitted and submitted ~= '' then
  return 2
end
local attempts = tonumber(redis.call('HGET', KEYS[1], 'attempts') or '0')
if attempts >= tonumber(ARGV[4]) then
  redis.call('HSET', KEYS[1], 'status', 'failed', 'error', ARGV[3],
    'processedAt', ARGV[5], 'attempts', ARGV[4])
  redis.call('ZREM', KEYS[2], ARGV[1])
  redis.call('ZADD', KEYS[4], ARGV[5], ARGV[1])
  return 3
end
redis.call('HSET', KEYS[1], 'status', 'pending', 'error', ARGV[3], 'leaseAt', '')
redis.call('ZREM', KEYS[2], ARGV[1])
redis.call('ZADD', KEYS[3], redis.call('HGET', KEYS[1], 'createdAt'), ARGV[1])
return 1
"""

_RESET_FAILED: Final[str] = """
local status = redis.call('HGET', KEYS[1], 'status')
if not status then
  return -1
end
if status ~= 'failed' then
  return 0
end
redis.call('HSET', KEYS[1], 'status', 'pending', 'attempts', '0', 'error', '',
  'deferred', '', 'transactionRef', '', 'submittedRef', '', 'processedAt', '',
  'leaseAt', '')
redis.call('ZREM', KEYS[2], ARGV[1])
redis.call('ZADD', KEYS[3], redis.call('HGET', KEYS[1], 'createdAt'), ARGV[1])
return 1
"""


def _pairs_to_dict(flat: list) -> dict[str, str]:
    return {flat[i]: flat[i + 1] for i in range(0, len(flat), 2)}


class ClaimRepository:
    """
    Flow:
    - A claim is a hash at claims:<id>; claims:idem:<key> is its unique index.
    - claims:status:<status> sorted sets drive FIFO leasing, stale-lease
      recovery and the health counters.
    - Claims are the payout ledger and never expire.
    """

    @staticmethod
    async def _client() -> Redis:
        return await get_redis()

    @staticmethod
    def _key(claim_id: str) -> str:
        return f"{KEY_PREFIX}:{claim_id}"

    @staticmethod
    def _idem_key(idempotency_key: str) -> str:
        return f"{CLAIM_IDEMPOTENCY}:{idempotency_key}"

    @staticmethod
    def _status_key(status: ClaimStatus) -> str:
        return f"{CLAIM_STATUS}:{status.value}"

    @staticmethod
    def _wallet_key(wallet: str) -> str:
        return f"{CLAIM_WALLET}:{wallet}"

    @staticmethod
    def _balance_key(wallet: str) -> str:
        return f"{BALANCES}:{wallet}"

    # ---------------- Admission ----------------

    @staticmethod
    def new_id() -> str:
        return str(uuid4())

    async def insert_if_absent(self, claim: ClaimRecord) -> Tuple[bool, str]:
        """
        Create the claim unless its idempotency key is already taken.
        Returns (created, claim_id); on a duplicate the id is the existing one.
        """
        r = await self._client()
        script = r.register_script(_INSERT_IF_ABSENT)
        fields: list[str] = []
        for k, v in claim.to_hash().items():
            fields.extend((k, v))
        created, claim_id = await script(
            keys=[
                self._idem_key(claim.idempotencyKey),
                self._key(claim.id),
                self._status_key(ClaimStatus.pending),
                self._wallet_key(claim.wallet),
            ],
            args=[claim.id, claim.createdAt, *fields],
        )
        return bool(int(created)), str(claim_id)

    # ---------------- Worker transitions ----------------

    async def lease(self) -> Optional[ClaimRecord]:
        """pending -> processing for the oldest pending claim, attempts+1."""
        r = await self._client()
        script = r.register_script(_LEASE)
        flat = await script(
            keys=[
                self._status_key(ClaimStatus.pending),
                self._status_key(ClaimStatus.processing),
            ],
            args=[KEY_PREFIX, now_ms()],
        )
        if not flat:
            return None
        return ClaimRecord.from_hash(_pairs_to_dict(flat))

    async def revert_to_pending(
        self,
        claim: ClaimRecord,
        *,
        error: str | None = None,
        deferred: str | None = None,
        refund_attempt: bool = False,
        requeue_at_ms: int | None = None,
    ) -> bool:
        """
        processing -> pending. A deferral can refund the lease attempt and
        requeue behind newer claims (requeue_at_ms); otherwise FIFO by createdAt.
        """
        r = await self._client()
        script = r.register_script(_REVERT_TO_PENDING)
        res = await script(
            keys=[
                self._key(claim.id),
                self._status_key(ClaimStatus.processing),
                self._status_key(ClaimStatus.pending),
            ],
            args=[
                claim.id,
                claim.idempotencyKey,
                error or "",
                deferred or "",
                "1" if refund_attempt else "0",
                "" if requeue_at_ms is None else str(requeue_at_ms),
            ],
        )
        return int(res) == 1

    async def mark_submitted(self, claim: ClaimRecord, tx_ref: str) -> bool:
        r = await self._client()
        script = r.register_script(_MARK_SUBMITTED)
        res = await script(
            keys=[self._key(claim.id)], args=[claim.idempotencyKey, tx_ref]
        )
        return int(res) == 1

    async def complete(self, claim: ClaimRecord, tx_ref: str) -> bool:
        """processing -> completed; also credits the wallet's claimed balance."""
        r = await self._client()
        script = r.register_script(_COMPLETE)
        res = await script(
            keys=[
                self._key(claim.id),
                self._status_key(ClaimStatus.processing),
                self._status_key(ClaimStatus.completed),
                self._balance_key(claim.wallet),
            ],
            args=[claim.id, claim.idempotencyKey, tx_ref, now_ms()],
        )
        return int(res) == 1

    async def fail(self, claim: ClaimRecord, error: str, *, max_attempts: int) -> bool:
        """processing -> failed; attempts is pinned to max_attempts."""
        r = await self._client()
        script = r.register_script(_FAIL)
        res = await script(
            keys=[
                self._key(claim.id),
                self._status_key(ClaimStatus.processing),
                self._status_key(ClaimStatus.failed),
            ],
            args=[claim.id, claim.idempotencyKey, error, now_ms(), max_attempts],
        )
        return int(res) == 1

    async def recover_stale(
        self, claim_id: str, *, lease_cutoff_ms: int, max_attempts: int, error: str
    ) -> int:
        r = await self._client()
        script = r.register_script(_RECOVER_STALE)
        res = await script(
            keys=[
                self._key(claim_id),
                self._status_key(ClaimStatus.processing),
                self._status_key(ClaimStatus.pending),
                self._status_key(ClaimStatus.failed),
            ],
            args=[claim_id, lease_cutoff_ms, error, max_attempts, now_ms()],
        )
        return int(res)

    async def reset_failed(self, claim_id: str) -> int:
        """Operator reset: failed -> pending with attempts=0. -1 unknown, 0 not failed."""
        r = await self._client()
        script = r.register_script(_RESET_FAILED)
        res = await script(
            keys=[
                self._key(claim_id),
                self._status_key(ClaimStatus.failed),
                self._status_key(ClaimStatus.pending),
            ],
            args=[claim_id],
        )
        return int(res)

    # ---------------- Reads ----------------

    async def get(self, claim_id: str) -> Optional[ClaimRecord]:
        if not claim_id:
            return None
        r = await self._client()
        return ClaimRecord.from_hash(await r.hgetall(self._key(claim_id)))

    async def get_by_idempotency_key(self, idempotency_key: str) -> Optional[ClaimRecord]:
        r = await self._client()
        claim_id = await r.get(self._idem_key(idempotency_key))
        return await self.get(claim_id) if claim_id else None

    async def get_owned(self, claim_id: str, idempotency_key: str) -> Optional[ClaimRecord]:
        """The claim only if it is still processing under the same idempotency key."""
        claim = await self.get(claim_id)
        if claim is None:
            return None
        if claim.status != ClaimStatus.processing:
            return None
        if claim.idempotencyKey != idempotency_key:
            return None
        return claim

    async def list_for_wallet(self, wallet: str, limit: int = 20) -> List[ClaimRecord]:
        r = await self._client()
        ids = await r.zrevrange(self._wallet_key(wallet), 0, limit - 1)
        if not ids:
            return []
        async with r.pipeline(transaction=False) as pipe:
            for cid in ids:
                pipe.hgetall(self._key(cid))
            rows = await pipe.execute()
        out: List[ClaimRecord] = []
        for h in rows:
            claim = ClaimRecord.from_hash(h)
            if claim is not None:
                out.append(claim)
        return out

    async def stale_processing_ids(self, lease_cutoff_ms: int) -> List[str]:
        r = await self._client()
        return list(
            await r.zrangebyscore(
                self._status_key(ClaimStatus.processing), "-inf", lease_cutoff_ms
            )
        )

    async def count_by_status(self) -> dict[ClaimStatus, int]:
        r = await self._client()
        async with r.pipeline(transaction=False) as pipe:
            for s in ClaimStatus:
                pipe.zcard(self._status_key(s))
            counts = await pipe.execute()
        return {s: int(n or 0) for s, n in zip(ClaimStatus, counts)}

    async def oldest_pending_created_at(self) -> Optional[int]:
        r = await self._client()
        rows = await r.zrange(
            self._status_key(ClaimStatus.pending), 0, 0, withscores=True
        )
        return int(rows[0][1]) if rows else None

    async def last_completed_at(self) -> Optional[int]:
        r = await self._client()
        rows = await r.zrevrange(
            self._status_key(ClaimStatus.completed), 0, 0, withscores=True
        )
        return int(rows[0][1]) if rows else None

    async def completed_since(self, since_ms: int) -> int:
        r = await self._client()
        return int(
            await r.zcount(self._status_key(ClaimStatus.completed), since_ms, "+inf")
        )
