# util/types.py
from typing import Literal, TypedDict


# Flow: Narrow types for worker/queue plumbing.
WindowKind = Literal["minute", "day"]
CappedBy = Literal["user_cap", "global_cap"]
DeferReason = Literal["GLOBAL_DAILY_CAP_REACHED", "USER_DAILY_CAP_REACHED"]


class NonceState(TypedDict):
    currentNonce: int | None
    pendingCount: int
