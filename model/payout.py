# model/payout.py
from pydantic import BaseModel


class DailyAccumulator(BaseModel):
    """Disbursed total for (day, token[, wallet]). Global flavor has no wallet."""

    day: str
    token: str
    wallet: str | None = None
    amount: int = 0
    hitCap: bool = False


class PayoutResult(BaseModel):
    """Outcome of an accepted cap-safe increment."""

    total: int
    hitCap: bool
    globalTotal: int
    globalHitCap: bool
    # True only on the increment that first reached the cap today
    justHitCap: bool = False
    globalJustHitCap: bool = False


class CapsLeft(BaseModel):
    userCapLeft: int
    globalCapLeft: int
