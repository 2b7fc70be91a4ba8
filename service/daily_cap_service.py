# service/daily_cap_service.py
import logging
from typing import Optional
from model.event import AuditEvent
from model.payout import CapsLeft, DailyAccumulator, PayoutResult
from repository.daily_payout_repository import DailyPayoutRepository
from repository.event_repository import EventRepository
from util import functions
from util.enums import AuditEventType

logger = logging.getLogger(__name__)


class DailyCapService:
    """
    Single source of truth for "may this amount be paid today".

    record_payout is the authority: its increment is conditional on the
    result staying within both caps. can_user_receive / can_process_global
    are advisory reads; two workers can both pass them, and then one of
    their record_payout calls is refused.
    """

    def __init__(
        self,
        payouts: DailyPayoutRepository,
        events: EventRepository,
        *,
        user_cap: int,
        global_cap: int,
    ) -> None:
        self._payouts = payouts
        self._events = events
        self.user_cap = int(user_cap)
        self.global_cap = int(global_cap)

    async def record_payout(
        self, wallet: str, token: str, amount: int, day: Optional[str] = None
    ) -> Optional[PayoutResult]:
        day = day or functions.day_str_utc()
        result = await self._payouts.increment(
            day=day,
            token=token,
            wallet=wallet,
            amount=int(amount),
            user_cap=self.user_cap,
            global_cap=self.global_cap,
        )
        if result is None:
            logger.warning(
                "cap.refused day=%s wallet=%s amount=%d", day, wallet, amount
            )
            return None

        now = functions.now_ms()
        if result.justHitCap:
            logger.warning(
                "cap.user.hit day=%s wallet=%s total=%d cap=%d",
                day,
                functions.short_wallet(wallet),
                result.total,
                self.user_cap,
            )
            await self._events.append(
                AuditEvent(
                    type=AuditEventType.DAILY_CAP_HIT,
                    at=now,
                    day=day,
                    wallet=wallet,
                    token=token,
                    amount=result.total,
                )
            )
        if result.globalJustHitCap:
            logger.warning(
                "cap.global.hit day=%s total=%d cap=%d",
                day,
                result.globalTotal,
                self.global_cap,
            )
            await self._events.append(
                AuditEvent(
                    type=AuditEventType.GLOBAL_DAILY_CAP_HIT,
                    at=now,
                    day=day,
                    token=token,
                    amount=result.globalTotal,
                )
            )
        return result

    async def can_user_receive(
        self, wallet: str, token: str, amount: int, day: Optional[str] = None
    ) -> bool:
        acc = await self._payouts.get_user(day or functions.day_str_utc(), token, wallet)
        return acc.amount + int(amount) <= self.user_cap

    async def can_process_global(
        self, token: str, amount: int, day: Optional[str] = None
    ) -> bool:
        acc = await self._payouts.get_global(day or functions.day_str_utc(), token)
        return acc.amount + int(amount) <= self.global_cap

    async def caps_left(self, wallet: str, token: str, day: str) -> CapsLeft:
        user = await self._payouts.get_user(day, token, wallet)
        glob = await self._payouts.get_global(day, token)
        return CapsLeft(
            userCapLeft=max(0, self.user_cap - user.amount),
            globalCapLeft=max(0, self.global_cap - glob.amount),
        )

    async def global_summary(self, token: str, day: str) -> DailyAccumulator:
        return await self._payouts.get_global(day, token)
