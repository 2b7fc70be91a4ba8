# model/claim.py
from enum import Enum
from typing import Mapping, Optional
from pydantic import BaseModel, field_validator


class ClaimStatus(str, Enum):
    pending = "pending"
    processing = "processing"
    completed = "completed"
    failed = "failed"


class ClaimRecord(BaseModel):
    """
    One requested payout. Timestamps are epoch milliseconds (UTC) so they
    double as sorted-set scores in the status indexes.
    """

    id: str
    wallet: str
    token: str
    amount: int
    status: ClaimStatus
    idempotencyKey: str
    attempts: int = 0
    reason: str
    createdAt: int
    leaseAt: int | None = None
    processedAt: int | None = None
    transactionRef: str | None = None
    submittedRef: str | None = None
    error: str | None = None
    deferred: str | None = None

    # Audit only; never re-derived after admission.
    accruedAtSnapshot: int = 0
    claimedAtSnapshot: int = 0
    userCapLeftAtSnapshot: int = 0
    globalCapLeftAtSnapshot: int = 0

    @field_validator("amount")
    @classmethod
    def _positive_amount(cls, v: int) -> int:
        # Worker re-validates too; a stored record may predate this check.
        if v < 0:
            raise ValueError("amount must be non-negative")
        return v

    def to_hash(self) -> dict[str, str]:
        """Flatten for HSET; None fields are omitted."""
        out: dict[str, str] = {}
        for k, v in self.model_dump(exclude_none=True).items():
            out[k] = v.value if isinstance(v, Enum) else str(v)
        return out

    @classmethod
    def from_hash(cls, h: Mapping[str, str]) -> Optional["ClaimRecord"]:
        if not h:
            return None
        # Empty strings are how the Lua scripts clear optional fields.
        data = {k: v for k, v in h.items() if v != ""}
        return cls.model_validate(data)
