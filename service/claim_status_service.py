# service/claim_status_service.py
import logging
from model.api import (
    ClaimCounts,
    ClaimListResponse,
    ClaimMetrics,
    ClaimSummary,
    ClaimsHealthResponse,
    DailySummary,
    ResetClaimResponse,
)
from model.claim import ClaimStatus
from model.event import AuditEvent
from repository.claim_repository import ClaimRepository
from repository.event_repository import EventRepository
from service.daily_cap_service import DailyCapService
from util import functions
from util.enums import AuditEventType, ErrorMessage
from util.errors import AppError

logger = logging.getLogger(__name__)

DEGRADED_LAG_SECONDS = 300


class ClaimStatusService:
    def __init__(
        self,
        claims: ClaimRepository,
        caps: DailyCapService,
        events: EventRepository,
        *,
        token: str,
    ) -> None:
        self._claims = claims
        self._caps = caps
        self._events = events
        self._token = token.lower()

    async def list_for_wallet(self, wallet: str, limit: int = 20) -> ClaimListResponse:
        rows = await self._claims.list_for_wallet(wallet.lower(), limit)
        return ClaimListResponse(claims=[ClaimSummary.of(c) for c in rows])

    async def health(self) -> ClaimsHealthResponse:
        """Queue depth, lag and today's global spend for operators."""
        now = functions.now_ms()
        counts = await self._claims.count_by_status()
        oldest = await self._claims.oldest_pending_created_at()
        last = await self._claims.last_completed_at()
        rate1m = await self._claims.completed_since(now - 60_000)

        lag = (now - oldest) // 1000 if oldest is not None else None
        health = "degraded" if lag is not None and lag > DEGRADED_LAG_SECONDS else "healthy"

        day = functions.day_str_utc()
        glob = await self._caps.global_summary(self._token, day)
        return ClaimsHealthResponse(
            timestamp=now,
            claims=ClaimCounts(
                pending=counts[ClaimStatus.pending],
                processing=counts[ClaimStatus.processing],
                completed=counts[ClaimStatus.completed],
                failed=counts[ClaimStatus.failed],
                total=sum(counts.values()),
            ),
            metrics=ClaimMetrics(
                lastProcessedAt=last,
                processingLagSec=lag,
                rate1m=rate1m,
                health=health,
            ),
            daily=DailySummary(
                day=day,
                token=self._token,
                total=str(glob.amount),
                cap=str(self._caps.global_cap),
                hitCap=glob.hitCap,
            ),
        )

    async def reset_failed(self, claim_id: str) -> ResetClaimResponse:
        code = await self._claims.reset_failed(claim_id)
        if code < 0:
            raise AppError.of(ErrorMessage.CLAIM_NOT_FOUND)
        if code == 0:
            raise AppError.of(ErrorMessage.CLAIM_NOT_FAILED)
        claim = await self._claims.get(claim_id)
        await self._events.append(
            AuditEvent(
                type=AuditEventType.CLAIM_RESET,
                at=functions.now_ms(),
                claimId=claim_id,
                wallet=claim.wallet if claim else None,
            )
        )
        logger.warning("claim.reset claim=%s", claim_id)
        return ResetClaimResponse(claim=ClaimSummary.of(claim))
