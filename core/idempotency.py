# core/idempotency.py
import re
from typing import Final
from web3 import Web3

SEPARATOR: Final[str] = "|"
_KEY_RE = re.compile(r"^0x[0-9a-f]{64}$")


def derive_claim_key(wallet: str, amount: int, token: str, day: str) -> str:
    """
    keccak256("<wallet>|<amount>|<token>|<day>") as 0x-prefixed hex.

    Wallet and token are lowercased so checksum casing never splits a key.
    A different capped amount gives a different key, which is what lets one
    wallet queue more than one claim on the same day.
    """
    if amount < 0:
        raise ValueError("amount must be non-negative")
    payload = SEPARATOR.join((wallet.lower(), str(int(amount)), token.lower(), day))
    return Web3.to_hex(Web3.keccak(text=payload))


def is_valid_claim_key(key: str) -> bool:
    return bool(_KEY_RE.match(key or ""))
