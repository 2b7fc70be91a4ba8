# model/api.py
from typing import Literal
from pydantic import BaseModel
from model.claim import ClaimRecord, ClaimStatus
from util.types import CappedBy


class ClaimQueuedResponse(BaseModel):
    ok: Literal[True] = True
    queued: Literal[True] = True
    amount: str
    cappedBy: CappedBy | None = None
    claimId: str
    message: str


class ClaimErrorResponse(BaseModel):
    ok: Literal[False] = False
    error: str
    message: str | None = None
    retryAfter: int | None = None


class ClaimSummary(BaseModel):
    id: str
    amount: str
    token: str
    status: ClaimStatus
    attempts: int
    createdAt: int
    processedAt: int | None = None
    transactionRef: str | None = None
    error: str | None = None

    @classmethod
    def of(cls, c: ClaimRecord) -> "ClaimSummary":
        return cls(
            id=c.id,
            amount=str(c.amount),
            token=c.token,
            status=c.status,
            attempts=c.attempts,
            createdAt=c.createdAt,
            processedAt=c.processedAt,
            transactionRef=c.transactionRef,
            error=c.error,
        )


class ClaimListResponse(BaseModel):
    ok: Literal[True] = True
    claims: list[ClaimSummary]


class ClaimCounts(BaseModel):
    pending: int
    processing: int
    completed: int
    failed: int
    total: int


class ClaimMetrics(BaseModel):
    lastProcessedAt: int | None = None
    processingLagSec: int | None = None
    rate1m: int
    health: Literal["healthy", "degraded"]


class DailySummary(BaseModel):
    day: str
    token: str
    total: str
    cap: str
    hitCap: bool


class ClaimsHealthResponse(BaseModel):
    ok: Literal[True] = True
    timestamp: int
    claims: ClaimCounts
    metrics: ClaimMetrics
    daily: DailySummary


class ResetClaimResponse(BaseModel):
    ok: Literal[True] = True
    claim: ClaimSummary
