# core/nonce_sequencer.py
import asyncio
import logging
from typing import Awaitable, Callable
from util.types import NonceState

logger = logging.getLogger(__name__)

PendingCountReader = Callable[[str], Awaitable[int]]


class NonceSequencer:
    """
    Process-local allocator of sequential nonces for the treasury key.

    Exactly one disbursement worker owns an instance; it is never shared
    across processes (the worker also holds a Redis lock on the treasury
    address). Only allocation runs under the lock; submission and the
    confirmation wait happen outside it.
    """

    def __init__(self, read_pending_count: PendingCountReader) -> None:
        self._read_pending_count = read_pending_count
        self._lock = asyncio.Lock()
        self._current: int | None = None
        self._pending = 0

    async def get_next(self, treasury_address: str) -> int:
        async with self._lock:
            if self._current is None:
                # Includes not-yet-mined transactions from this key.
                self._current = int(await self._read_pending_count(treasury_address))
                logger.info("nonce.sync address=%s nonce=%d", treasury_address, self._current)
            nonce = self._current
            self._current += 1
            self._pending += 1
            return nonce

    def mark_confirmed(self) -> None:
        self._pending -= 1
        if self._pending <= 0:
            # Next allocation re-reads the chain, picking up any transactions
            # sent from this key outside this process.
            self._current = None
            self._pending = 0

    def reset_on_error(self) -> None:
        if self._current is not None:
            logger.warning(
                "nonce.reset current=%d pending=%d", self._current, self._pending
            )
        self._current = None
        self._pending = 0

    def state(self) -> NonceState:
        return {"currentNonce": self._current, "pendingCount": self._pending}
