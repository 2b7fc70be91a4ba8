# service/claim_admission_service.py
import logging
from datetime import datetime
from typing import Optional
from core.idempotency import derive_claim_key
from model.api import ClaimQueuedResponse
from model.claim import ClaimRecord, ClaimStatus
from repository.balance_repository import BalanceRepository
from repository.claim_repository import ClaimRepository
from service.daily_cap_service import DailyCapService
from service.rate_limit_service import RateLimitService
from util import functions
from util.enums import ErrorMessage
from util.errors import AdmissionRejected
from util.types import CappedBy

logger = logging.getLogger(__name__)


class ClaimAdmissionService:
    """
    Turns an authenticated wallet's accrued earnings into at most one pending
    claim per (wallet, capped amount, token, day). Every write it makes is an
    atomic conditional operation, so any number of concurrent callers is safe.
    """

    def __init__(
        self,
        rate_limiter: RateLimitService,
        caps: DailyCapService,
        balances: BalanceRepository,
        claims: ClaimRepository,
        *,
        token: str,
        token_decimals: int,
        min_payout: int,
        per_minute: int,
        per_day: int,
        reason: str,
    ) -> None:
        self._rate_limiter = rate_limiter
        self._caps = caps
        self._balances = balances
        self._claims = claims
        self._token = token.lower()
        self._decimals = token_decimals
        self._min_payout = int(min_payout)
        self._per_minute = int(per_minute)
        self._per_day = int(per_day)
        self._reason = reason

    def _fmt(self, amount: int) -> str:
        return functions.format_units(amount, self._decimals)

    async def admit(self, wallet: str, now: Optional[datetime] = None) -> ClaimQueuedResponse:
        """
        1) minute + day rate limits (counted even when rejected)
        2) balance snapshot -> claimable
        3) amount = min(claimable, userCapLeft, globalCapLeft)
        4) insert-if-absent keyed by the derived idempotency key
        """
        wallet = wallet.lower()
        now = now or functions.utc_now()
        day = functions.day_str_utc(now)

        minute_count = await self._rate_limiter.check_and_increment(wallet, "minute", now)
        if minute_count > self._per_minute:
            logger.info("claim.reject.rl_minute wallet=%s count=%d", wallet, minute_count)
            raise AdmissionRejected(
                ErrorMessage.RATE_LIMIT_MINUTE,
                retry_after=functions.seconds_left_in_minute(now),
            )

        day_count = await self._rate_limiter.check_and_increment(wallet, "day", now)
        if day_count > self._per_day:
            logger.info("claim.reject.rl_day wallet=%s count=%d", wallet, day_count)
            raise AdmissionRejected(
                ErrorMessage.RATE_LIMIT_DAY,
                f"You have reached the daily claim limit ({self._per_day} per day)",
            )

        accrued, claimed = await self._balances.snapshot(wallet)
        claimable = max(0, accrued - claimed)
        if claimable < self._min_payout:
            logger.info("claim.reject.balance wallet=%s claimable=%d", wallet, claimable)
            raise AdmissionRejected(
                ErrorMessage.INSUFFICIENT_BALANCE,
                f"Minimum claimable amount is {self._fmt(self._min_payout)}. "
                f"Current claimable: {self._fmt(claimable)}",
            )

        left = await self._caps.caps_left(wallet, self._token, day)
        amount = min(claimable, left.userCapLeft, left.globalCapLeft)
        if amount < self._min_payout:
            logger.info(
                "claim.reject.cap wallet=%s amount=%d user_left=%d global_left=%d",
                wallet,
                amount,
                left.userCapLeft,
                left.globalCapLeft,
            )
            raise AdmissionRejected(
                ErrorMessage.CAP_REACHED,
                f"Daily cap reached. Available: {self._fmt(amount)}",
            )

        capped_by: Optional[CappedBy] = None
        if amount < claimable:
            capped_by = "user_cap" if amount == left.userCapLeft else "global_cap"

        key = derive_claim_key(wallet, amount, self._token, day)
        record = ClaimRecord(
            id=self._claims.new_id(),
            wallet=wallet,
            token=self._token,
            amount=amount,
            status=ClaimStatus.pending,
            idempotencyKey=key,
            attempts=0,
            reason=self._reason,
            createdAt=int(now.timestamp() * 1000),
            accruedAtSnapshot=accrued,
            claimedAtSnapshot=claimed,
            userCapLeftAtSnapshot=left.userCapLeft,
            globalCapLeftAtSnapshot=left.globalCapLeft,
        )
        created, claim_id = await self._claims.insert_if_absent(record)
        if not created:
            logger.info("claim.duplicate wallet=%s key=%s existing=%s", wallet, key, claim_id)
            raise AdmissionRejected(ErrorMessage.DUPLICATE_CLAIM)

        logger.info(
            "claim.admit.ok wallet=%s claim=%s amount=%d capped_by=%s",
            wallet,
            claim_id,
            amount,
            capped_by,
        )
        return ClaimQueuedResponse(
            amount=str(amount),
            cappedBy=capped_by,
            claimId=claim_id,
            message=f"Your {self._fmt(amount)} claim is being processed",
        )
