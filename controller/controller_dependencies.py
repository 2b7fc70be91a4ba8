# controller/controller_dependencies.py
import hmac
from typing import Optional
from fastapi import Header
from fastapi_limiter.depends import RateLimiter
from config.settings import settings
from repository.balance_repository import BalanceRepository
from repository.claim_repository import ClaimRepository
from repository.daily_payout_repository import DailyPayoutRepository
from repository.event_repository import EventRepository
from repository.rate_limit_repository import RateLimitRepository
from service.claim_admission_service import ClaimAdmissionService
from service.claim_status_service import ClaimStatusService
from service.daily_cap_service import DailyCapService
from service.rate_limit_service import RateLimitService
from util.constants import Headers
from util.enums import Environment, ErrorMessage
from util.errors import AppError
from util.functions import is_valid_address

# Coarse per-IP limit in front of the per-wallet claim limits.
ip_rate_limiter = RateLimiter(
    times=settings.RATE_LIMIT_TIMES, seconds=settings.RATE_LIMIT_SECONDS
)


def _cap_service() -> DailyCapService:
    return DailyCapService(
        DailyPayoutRepository(),
        EventRepository(),
        user_cap=settings.CLAIM_DAILY_CAP_USER,
        global_cap=settings.CLAIM_DAILY_CAP_GLOBAL,
    )


def get_admission_service() -> ClaimAdmissionService:
    return ClaimAdmissionService(
        RateLimitService(RateLimitRepository()),
        _cap_service(),
        BalanceRepository(),
        ClaimRepository(),
        token=settings.token,
        token_decimals=settings.CLAIM_TOKEN_DECIMALS,
        min_payout=settings.CLAIM_MIN_PAYOUT,
        per_minute=settings.CLAIM_RL_PER_MINUTE,
        per_day=settings.CLAIM_RL_PER_DAY,
        reason=settings.CLAIM_REASON,
    )


def get_status_service() -> ClaimStatusService:
    return ClaimStatusService(
        ClaimRepository(), _cap_service(), EventRepository(), token=settings.token
    )


async def get_authenticated_wallet(
    wallet: Optional[str] = Header(default=None, alias=Headers.WALLET),
) -> str:
    # Set by the upstream session verifier; never taken from the body.
    if not wallet or not is_valid_address(wallet.strip()):
        raise AppError.of(ErrorMessage.UNAUTHORIZED)
    return wallet.strip().lower()


async def require_admin_token(
    token: Optional[str] = Header(default=None, alias=Headers.ADMIN_TOKEN),
) -> None:
    expected = settings.ADMIN_TOKEN
    if not expected or not token or not hmac.compare_digest(token, expected):
        raise AppError.of(ErrorMessage.FORBIDDEN)


async def require_admin_token_in_prod(
    token: Optional[str] = Header(default=None, alias=Headers.ADMIN_TOKEN),
) -> None:
    if settings.APP_ENV == Environment.PROD:
        await require_admin_token(token)
