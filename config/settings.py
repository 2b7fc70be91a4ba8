# config/settings.py
import os
import sys
from typing import Optional
from dotenv import load_dotenv
from pydantic import ValidationError, Field
from pydantic_settings import BaseSettings
from util.enums import Environment
import logging


if os.getenv("APP_ENV", Environment.DEV) == Environment.DEV:
    load_dotenv()

_log = logging.getLogger("config.settings")


class Settings(BaseSettings):
    # App
    APP_ENV: str = Field(..., validation_alias="APP_ENV")
    REDIS_URL: str = Field(..., validation_alias="REDIS_URL")

    # CORS & request limits
    ALLOWED_ORIGIN: str = Field(default="*", validation_alias="ALLOWED_ORIGIN")
    RATE_LIMIT_TIMES: int = Field(default=30, validation_alias="RATE_LIMIT_TIMES")
    RATE_LIMIT_SECONDS: int = Field(default=60, validation_alias="RATE_LIMIT_SECONDS")
    TRUST_PROXY: bool = Field(default=False, validation_alias="TRUST_PROXY")
    ADMIN_TOKEN: Optional[str] = Field(default=None, validation_alias="ADMIN_TOKEN")

    # Token & chain
    CLAIM_TOKEN_ADDRESS: str = Field(..., validation_alias="CLAIM_TOKEN_ADDRESS")
    CLAIM_TOKEN_DECIMALS: int = Field(default=6, validation_alias="CLAIM_TOKEN_DECIMALS")
    CHAIN_RPC_URL: Optional[str] = Field(default=None, validation_alias="CHAIN_RPC_URL")
    CHAIN_ID: int = Field(default=8453, validation_alias="CHAIN_ID")
    TREASURY_PRIVATE_KEY: Optional[str] = Field(
        default=None, validation_alias="TREASURY_PRIVATE_KEY"
    )
    CLAIM_MIN_CONFIRMATIONS: int = Field(
        default=2, validation_alias="CLAIM_MIN_CONFIRMATIONS"
    )
    CLAIM_CONFIRMATION_TIMEOUT_SECONDS: int = Field(
        default=180, validation_alias="CLAIM_CONFIRMATION_TIMEOUT_SECONDS"
    )
    CLAIM_GAS_LIMIT: int = Field(default=120000, validation_alias="CLAIM_GAS_LIMIT")

    # Claim admission
    CLAIM_MIN_PAYOUT: int = Field(default=10_000, validation_alias="CLAIM_MIN_PAYOUT")
    CLAIM_RL_PER_MINUTE: int = Field(default=1, validation_alias="CLAIM_RL_PER_MINUTE")
    CLAIM_RL_PER_DAY: int = Field(default=10, validation_alias="CLAIM_RL_PER_DAY")
    CLAIM_REASON: str = Field(default="referral_earnings", validation_alias="CLAIM_REASON")

    # Daily caps (smallest token unit)
    CLAIM_DAILY_CAP_USER: int = Field(
        default=1_000_000_000, validation_alias="CLAIM_DAILY_CAP_USER"
    )
    CLAIM_DAILY_CAP_GLOBAL: int = Field(
        default=5_000_000_000, validation_alias="CLAIM_DAILY_CAP_GLOBAL"
    )

    # Disbursement worker
    CLAIM_QUEUE_CONCURRENCY: int = Field(
        default=5, validation_alias="CLAIM_QUEUE_CONCURRENCY"
    )
    CLAIM_MAX_ATTEMPTS: int = Field(default=5, validation_alias="CLAIM_MAX_ATTEMPTS")
    CLAIM_LEASE_TIMEOUT_SECONDS: int = Field(
        default=600, validation_alias="CLAIM_LEASE_TIMEOUT_SECONDS"
    )
    CLAIM_RECOVERY_INTERVAL_SECONDS: int = Field(
        default=300, validation_alias="CLAIM_RECOVERY_INTERVAL_SECONDS"
    )
    WORKER_IDLE_POLL_SECONDS: float = Field(
        default=3.0, validation_alias="WORKER_IDLE_POLL_SECONDS"
    )
    WORKER_CAP_DEFER_SECONDS: float = Field(
        default=60.0, validation_alias="WORKER_CAP_DEFER_SECONDS"
    )
    WORKER_ERROR_BACKOFF_SECONDS: float = Field(
        default=5.0, validation_alias="WORKER_ERROR_BACKOFF_SECONDS"
    )
    WORKER_BETWEEN_CLAIMS_SECONDS: float = Field(
        default=0.5, validation_alias="WORKER_BETWEEN_CLAIMS_SECONDS"
    )
    WORKER_SHUTDOWN_TIMEOUT_SECONDS: float = Field(
        default=30.0, validation_alias="WORKER_SHUTDOWN_TIMEOUT_SECONDS"
    )

    # Logging knobs
    LOGGER_NAME: str = "flagwars-claims"
    LOG_LEVEL: str = Field(default="INFO", validation_alias="LOG_LEVEL")
    LOG_TO_FILE: bool = Field(default=False, validation_alias="LOG_TO_FILE")
    LOG_DIR: str = Field(default="logs", validation_alias="LOG_DIR")
    LOG_FILE_NAME: str = Field(default="app.log", validation_alias="LOG_FILE_NAME")
    LOG_MAX_BYTES: int = Field(
        default=50 * 1024 * 1024, validation_alias="LOG_MAX_BYTES"
    )
    LOG_BACKUP_COUNT: int = Field(default=5, validation_alias="LOG_BACKUP_COUNT")

    @property
    def token(self) -> str:
        return self.CLAIM_TOKEN_ADDRESS.lower()


try:
    settings = Settings()
except ValidationError as e:
    print("❌ Missing/invalid environment variables:", file=sys.stderr)
    for err in e.errors():
        loc = ".".join(str(x) for x in err.get("loc", []))
        msg = err.get("msg", "")
        print(f" - {loc}: {msg}", file=sys.stderr)
    sys.exit(1)
except Exception as e:
    print(f"❌ Settings initialization failed: {e}", file=sys.stderr)
    sys.exit(1)
