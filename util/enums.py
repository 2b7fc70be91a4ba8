# util/enums.py
from enum import Enum
from typing import NamedTuple
from fastapi import status


class Color(str, Enum):
    RESET = "\033[0m"
    RED = "\033[31m"
    GREEN = "\033[32m"
    YELLOW = "\033[33m"
    BLUE = "\033[34m"
    MAGENTA = "\033[35m"
    CYAN = "\033[36m"
    BOLD = "\033[1m"

    def __str__(self):
        return self.value


class Environment(str, Enum):
    DEV = "dev"
    TEST = "test"
    PROD = "prod"


class ErrorInfo(NamedTuple):
    message: str
    http_status: int


class ErrorMessage(Enum):
    UNAUTHORIZED = ErrorInfo(
        "Authenticated wallet required", status.HTTP_401_UNAUTHORIZED
    )
    FORBIDDEN = ErrorInfo("Admin token required", status.HTTP_403_FORBIDDEN)
    RATE_LIMIT_MINUTE = ErrorInfo(
        "Please wait a moment before claiming again",
        status.HTTP_429_TOO_MANY_REQUESTS,
    )
    RATE_LIMIT_DAY = ErrorInfo(
        "You have reached the daily claim limit", status.HTTP_429_TOO_MANY_REQUESTS
    )
    INSUFFICIENT_BALANCE = ErrorInfo(
        "Claimable balance is below the minimum payout", status.HTTP_400_BAD_REQUEST
    )
    CAP_REACHED = ErrorInfo("Daily cap reached", status.HTTP_400_BAD_REQUEST)
    DUPLICATE_CLAIM = ErrorInfo(
        "You already have a claim for today with this amount",
        status.HTTP_409_CONFLICT,
    )
    CLAIM_NOT_FOUND = ErrorInfo("Unknown claim", status.HTTP_404_NOT_FOUND)
    CLAIM_NOT_FAILED = ErrorInfo(
        "Only failed claims can be reset", status.HTTP_409_CONFLICT
    )
    INTERNAL_ERROR = ErrorInfo("Internal Error", status.HTTP_502_BAD_GATEWAY)


class AuditEventType(str, Enum):
    DAILY_CAP_HIT = "DAILY_CAP_HIT"
    GLOBAL_DAILY_CAP_HIT = "GLOBAL_DAILY_CAP_HIT"
    CRITICAL_CAP_VIOLATION = "CRITICAL_CAP_VIOLATION"
    CLAIM_FAILED = "CLAIM_FAILED"
    UNCONFIRMED_SUBMISSION = "UNCONFIRMED_SUBMISSION"
    CLAIM_RESET = "CLAIM_RESET"
    COMMIT_CONFLICT = "COMMIT_CONFLICT"
