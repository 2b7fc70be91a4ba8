# repository/namespaces.py
from typing import Final

ROOT: Final[str] = "flagwars"

CLAIMS: Final[str] = f"{ROOT}:claims"  # claims:<id> -> hash
CLAIM_IDEMPOTENCY: Final[str] = f"{CLAIMS}:idem"  # unique index key -> id
CLAIM_STATUS: Final[str] = f"{CLAIMS}:status"  # zset per status
CLAIM_WALLET: Final[str] = f"{CLAIMS}:wallet"  # zset per wallet, by createdAt
DAILY_PAYOUTS: Final[str] = f"{ROOT}:daily_payouts"  # per (day, token, wallet)
DAILY_GLOBAL: Final[str] = f"{ROOT}:daily_global"  # per (day, token)
RATE_LIMITS: Final[str] = f"{ROOT}:rate_limits"
BALANCES: Final[str] = f"{ROOT}:balances"
EVENTS: Final[str] = f"{ROOT}:events"
TREASURY_LOCK: Final[str] = f"{ROOT}:treasury_lock"  # single worker per treasury
