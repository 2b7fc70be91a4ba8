# Shared constants and seeding helpers for the test modules.
from typing import Optional

from core.idempotency import derive_claim_key
from model.claim import ClaimRecord, ClaimStatus
from repository.claim_repository import ClaimRepository
from util import functions

TOKEN = "0x833589fcd6edb6e08f4c7c32d4f71b54bda02913"
WALLET_A = "0x" + "a1" * 20
WALLET_B = "0x" + "b2" * 20
TREASURY = "0x" + "7e" * 20


async def seed_claim(
    wallet: str = WALLET_A,
    amount: int = 50_000,
    *,
    created_at: Optional[int] = None,
    token: str = TOKEN,
) -> ClaimRecord:
    """Insert a pending claim directly, bypassing admission."""
    created_at = created_at if created_at is not None else functions.now_ms() - 1_000
    day = functions.day_str_utc()
    record = ClaimRecord(
        id=ClaimRepository.new_id(),
        wallet=wallet,
        token=token,
        amount=amount,
        status=ClaimStatus.pending,
        idempotencyKey=derive_claim_key(wallet, amount, token, day),
        attempts=0,
        reason="referral_earnings",
        createdAt=created_at,
    )
    created, _ = await ClaimRepository().insert_if_absent(record)
    assert created
    return record
