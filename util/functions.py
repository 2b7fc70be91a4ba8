# util/functions.py
import re
from datetime import datetime, timezone
from typing import Optional

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def now_ms() -> int:
    return int(utc_now().timestamp() * 1000)


def day_str_utc(d: Optional[datetime] = None) -> str:
    """UTC calendar day, e.g. '2026-10-19'."""
    d = d or utc_now()
    return d.astimezone(timezone.utc).strftime("%Y-%m-%d")


def minute_str_utc(d: Optional[datetime] = None) -> str:
    """UTC minute bucket, e.g. '202610191342'."""
    d = d or utc_now()
    return d.astimezone(timezone.utc).strftime("%Y%m%d%H%M")


def seconds_left_in_minute(d: Optional[datetime] = None) -> int:
    d = d or utc_now()
    return max(1, 60 - d.second)


def is_valid_address(addr: str | None) -> bool:
    return bool(addr) and bool(_ADDRESS_RE.match(addr))


def short_wallet(wallet: str) -> str:
    return f"{wallet[:10]}..." if len(wallet) > 10 else wallet


def format_units(amount: int, decimals: int) -> str:
    """
    - Render a smallest-unit integer as a 2-decimal token amount.
    - Truncates, never rounds up.
    """
    whole, frac = divmod(int(amount), 10**decimals)
    cents = str(frac).rjust(decimals, "0")[:2] if decimals else "00"
    return f"{whole}.{cents}"
