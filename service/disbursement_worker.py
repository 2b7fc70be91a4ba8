# service/disbursement_worker.py
import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Final, Optional, Set, Tuple
from config.settings import Settings
from core.chain_client import ChainClient
from core.nonce_sequencer import NonceSequencer
from model.claim import ClaimRecord
from model.event import AuditEvent
from model.payout import PayoutResult
from repository.claim_repository import ClaimRepository
from repository.event_repository import EventRepository
from service.daily_cap_service import DailyCapService
from util import functions
from util.enums import AuditEventType
from util.errors import PermanentDisbursementError, TransientDisbursementError
from util.timing import timed
from util.types import DeferReason

logger = logging.getLogger(__name__)

GLOBAL_CAP_DEFERRED: Final[DeferReason] = "GLOBAL_DAILY_CAP_REACHED"
USER_CAP_DEFERRED: Final[DeferReason] = "USER_DAILY_CAP_REACHED"
LEASE_TIMEOUT_RECOVERED = "LEASE_TIMEOUT_RECOVERED"
UNCONFIRMED_SUBMISSION = "UNCONFIRMED_SUBMISSION"
CAP_EXCEEDED_POST_TRANSFER = "CAP_EXCEEDED_POST_TRANSFER"
LEDGER_UPDATE_FAILED = "LEDGER_UPDATE_FAILED"
LEDGER_ATTEMPTS: Final[int] = 3


class Outcome(str, Enum):
    IDLE = "idle"
    DEFERRED_GLOBAL = "deferred_global"
    DEFERRED_USER = "deferred_user"
    ABANDONED = "abandoned"
    COMPLETED = "completed"
    RETRY = "retry"
    FAILED = "failed"


@dataclass(frozen=True)
class WorkerConfig:
    token_decimals: int = 6
    min_confirmations: int = 2
    confirmation_timeout: float = 180.0
    concurrency: int = 5
    max_attempts: int = 5
    idle_poll: float = 3.0
    cap_defer: float = 60.0
    error_backoff: float = 5.0
    between_claims: float = 0.5
    shutdown_timeout: float = 30.0
    lease_timeout: float = 600.0
    recovery_interval: float = 300.0

    @classmethod
    def from_settings(cls, s: Settings) -> "WorkerConfig":
        return cls(
            token_decimals=s.CLAIM_TOKEN_DECIMALS,
            min_confirmations=s.CLAIM_MIN_CONFIRMATIONS,
            confirmation_timeout=float(s.CLAIM_CONFIRMATION_TIMEOUT_SECONDS),
            concurrency=max(1, s.CLAIM_QUEUE_CONCURRENCY),
            max_attempts=max(1, s.CLAIM_MAX_ATTEMPTS),
            idle_poll=s.WORKER_IDLE_POLL_SECONDS,
            cap_defer=s.WORKER_CAP_DEFER_SECONDS,
            error_backoff=s.WORKER_ERROR_BACKOFF_SECONDS,
            between_claims=s.WORKER_BETWEEN_CLAIMS_SECONDS,
            shutdown_timeout=s.WORKER_SHUTDOWN_TIMEOUT_SECONDS,
            lease_timeout=float(s.CLAIM_LEASE_TIMEOUT_SECONDS),
            recovery_interval=float(s.CLAIM_RECOVERY_INTERVAL_SECONDS),
        )


class DisbursementWorker:
    """
    Leases pending claims and pays them from the treasury, one chain transfer
    per claim.

    Per iteration:
      lease -> global cap precheck -> user cap precheck -> ownership re-check
      -> validate -> nonce + submit + confirm -> commit + record payout.

    The worker owns its NonceSequencer; exactly one worker process may run
    per treasury key.
    """

    def __init__(
        self,
        *,
        claims: ClaimRepository,
        caps: DailyCapService,
        events: EventRepository,
        chain: ChainClient,
        config: WorkerConfig,
    ) -> None:
        self._claims = claims
        self._caps = caps
        self._events = events
        self._chain = chain
        self._config = config
        self._sequencer = NonceSequencer(chain.pending_transaction_count)
        self._stopping = asyncio.Event()
        self._active = 0
        self._decimals_checked = False
        self.last_processed_at: Optional[int] = None

    @property
    def sequencer(self) -> NonceSequencer:
        return self._sequencer

    @property
    def active(self) -> int:
        return self._active

    # ---------------- Lifecycle ----------------

    def stop(self) -> None:
        if not self._stopping.is_set():
            logger.info("worker.stop.requested active=%d", self._active)
        self._stopping.set()

    async def _sleep(self, seconds: float) -> None:
        # Returns early when a shutdown is requested.
        if seconds <= 0:
            return
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def run(self) -> None:
        """Run lanes until stop(); then wait (bounded) for in-flight claims."""
        logger.info(
            "worker.start concurrency=%d max_attempts=%d confirmations=%d",
            self._config.concurrency,
            self._config.max_attempts,
            self._config.min_confirmations,
        )
        try:
            await self.recover_stale_leases()
        except Exception:
            logger.exception("worker.recovery.error")
        lanes = [
            asyncio.create_task(self._lane(i), name=f"claim-lane-{i}")
            for i in range(self._config.concurrency)
        ]
        recovery = asyncio.create_task(self._recovery_loop(), name="lease-recovery")

        await self._stopping.wait()
        logger.info("worker.draining active=%d", self._active)
        done, pending = await asyncio.wait(lanes, timeout=self._config.shutdown_timeout)
        for task in pending:
            task.cancel()
        recovery.cancel()
        await asyncio.gather(*pending, recovery, return_exceptions=True)
        if pending:
            logger.warning("worker.drain.timeout abandoned=%d", len(pending))
        logger.info("worker.stopped")

    async def _lane(self, lane: int) -> None:
        deferred_cycle: Set[str] = set()
        while not self._stopping.is_set():
            try:
                outcome, claim_id = await self.run_once()
            except Exception:
                logger.exception("worker.loop.error lane=%d", lane)
                await self._sleep(self._config.error_backoff)
                continue

            if outcome == Outcome.IDLE:
                await self._sleep(self._config.idle_poll)
            elif outcome == Outcome.DEFERRED_GLOBAL:
                await self._sleep(self._config.cap_defer)
            elif outcome == Outcome.DEFERRED_USER:
                # Seeing the same claim again means every pending claim is
                # user-capped; stop spinning until the next poll.
                if claim_id in deferred_cycle:
                    deferred_cycle.clear()
                    await self._sleep(self._config.idle_poll)
                else:
                    deferred_cycle.add(claim_id)
            else:
                deferred_cycle.clear()
                await self._sleep(self._config.between_claims)

    async def _recovery_loop(self) -> None:
        while not self._stopping.is_set():
            await self._sleep(self._config.recovery_interval)
            if self._stopping.is_set():
                return
            try:
                await self.recover_stale_leases()
            except Exception:
                logger.exception("worker.recovery.error")

    # ---------------- One iteration ----------------

    async def run_once(self) -> Tuple[Outcome, Optional[str]]:
        claim = await self._claims.lease()
        if claim is None:
            return Outcome.IDLE, None

        logger.info(
            "claim.leased claim=%s wallet=%s amount=%d attempt=%d",
            claim.id,
            functions.short_wallet(claim.wallet),
            claim.amount,
            claim.attempts,
        )

        if not await self._caps.can_process_global(claim.token, claim.amount):
            logger.warning(
                "claim.defer.global claim=%s cap=%d", claim.id, self._caps.global_cap
            )
            await self._claims.revert_to_pending(
                claim, deferred=GLOBAL_CAP_DEFERRED, refund_attempt=True
            )
            return Outcome.DEFERRED_GLOBAL, claim.id

        if not await self._caps.can_user_receive(claim.wallet, claim.token, claim.amount):
            logger.warning(
                "claim.defer.user claim=%s wallet=%s",
                claim.id,
                functions.short_wallet(claim.wallet),
            )
            await self._claims.revert_to_pending(
                claim,
                deferred=USER_CAP_DEFERRED,
                refund_attempt=True,
                requeue_at_ms=functions.now_ms(),
            )
            return Outcome.DEFERRED_USER, claim.id

        self._active += 1
        try:
            return await self.process(claim), claim.id
        finally:
            self._active -= 1

    async def process(self, claim: ClaimRecord) -> Outcome:
        owned = await self._claims.get_owned(claim.id, claim.idempotencyKey)
        if owned is None:
            logger.warning("claim.ownership.lost claim=%s", claim.id)
            return Outcome.ABANDONED
        claim = owned

        nonce_allocated = False
        try:
            self._validate(claim)

            if claim.submittedRef:
                settled = await self._settle_previous_submission(claim)
                if settled is not None:
                    return settled

            await self._check_treasury(claim.amount)

            nonce = await self._sequencer.get_next(self._chain.treasury_address)
            nonce_allocated = True
            tx_ref = await self._chain.submit_transfer(claim.wallet, claim.amount, nonce)
            # Persist before waiting so a crash leaves a trace of the transfer.
            await self._claims.mark_submitted(claim, tx_ref)
            with timed(logger, "claim.confirm", claim=claim.id):
                await self._chain.wait_for_confirmations(
                    tx_ref,
                    self._config.min_confirmations,
                    self._config.confirmation_timeout,
                )
        except PermanentDisbursementError as e:
            self._sequencer.reset_on_error()
            logger.error("claim.invalid claim=%s err=%s", claim.id, e)
            return await self._fail(claim, str(e))
        except Exception as e:
            self._sequencer.reset_on_error()
            logger.error(
                "claim.attempt.error claim=%s attempt=%d nonce_allocated=%s err=%s",
                claim.id,
                claim.attempts,
                nonce_allocated,
                e,
            )
            return await self._retry_or_fail(claim, str(e) or type(e).__name__)

        self._sequencer.mark_confirmed()
        return await self._commit(claim, tx_ref)

    # ---------------- Steps ----------------

    @staticmethod
    def _validate(claim: ClaimRecord) -> None:
        if not functions.is_valid_address(claim.wallet):
            raise PermanentDisbursementError(
                "INVALID_RECIPIENT", f"Invalid wallet address format: {claim.wallet}"
            )
        if claim.amount <= 0:
            raise PermanentDisbursementError(
                "INVALID_AMOUNT", f"Amount must be positive: {claim.amount}"
            )

    async def _check_treasury(self, amount: int) -> None:
        if not self._decimals_checked:
            decimals = await self._chain.token_decimals()
            if decimals != self._config.token_decimals:
                raise TransientDisbursementError(
                    f"Token decimals mismatch: expected {self._config.token_decimals}, got {decimals}"
                )
            self._decimals_checked = True
        balance = await self._chain.token_balance(self._chain.treasury_address)
        if balance < amount:
            raise TransientDisbursementError(
                f"Treasury balance insufficient: has {balance}, needs {amount}"
            )

    async def _settle_previous_submission(self, claim: ClaimRecord) -> Optional[Outcome]:
        """
        A retry of a claim whose earlier transfer was broadcast. Commit it if
        that transfer confirmed; never send a second one while it may still land.
        """
        status = await self._chain.confirmation_status(
            claim.submittedRef, self._config.min_confirmations
        )
        if status is True:
            logger.info("claim.previous.confirmed claim=%s tx=%s", claim.id, claim.submittedRef)
            return await self._commit(claim, claim.submittedRef)
        if status is None:
            raise TransientDisbursementError(
                f"Previous submission {claim.submittedRef} not confirmed yet"
            )
        logger.warning("claim.previous.reverted claim=%s tx=%s", claim.id, claim.submittedRef)
        return None

    async def _commit(self, claim: ClaimRecord, tx_ref: str) -> Outcome:
        committed = await self._claims.complete(claim, tx_ref)
        now = functions.now_ms()
        if not committed:
            logger.error("claim.commit.conflict claim=%s tx=%s", claim.id, tx_ref)
            await self._events.append(
                AuditEvent(
                    type=AuditEventType.COMMIT_CONFLICT,
                    at=now,
                    claimId=claim.id,
                    wallet=claim.wallet,
                    token=claim.token,
                    amount=claim.amount,
                    transactionRef=tx_ref,
                )
            )
            return Outcome.ABANDONED

        try:
            result = await self._record_payout(claim)
        except Exception as e:
            logger.critical(
                "claim.ledger.failed claim=%s wallet=%s amount=%d tx=%s err=%s",
                claim.id,
                claim.wallet,
                claim.amount,
                tx_ref,
                e,
            )
            await self._events.append(
                AuditEvent(
                    type=AuditEventType.CRITICAL_CAP_VIOLATION,
                    at=functions.now_ms(),
                    claimId=claim.id,
                    wallet=claim.wallet,
                    token=claim.token,
                    amount=claim.amount,
                    transactionRef=tx_ref,
                    message=LEDGER_UPDATE_FAILED,
                )
            )
            self.last_processed_at = now
            return Outcome.COMPLETED
        if result is None:
            # Funds already moved; this is for reconciliation, not rollback.
            logger.critical(
                "claim.cap.violation claim=%s wallet=%s amount=%d tx=%s",
                claim.id,
                claim.wallet,
                claim.amount,
                tx_ref,
            )
            await self._events.append(
                AuditEvent(
                    type=AuditEventType.CRITICAL_CAP_VIOLATION,
                    at=now,
                    claimId=claim.id,
                    wallet=claim.wallet,
                    token=claim.token,
                    amount=claim.amount,
                    transactionRef=tx_ref,
                    message=CAP_EXCEEDED_POST_TRANSFER,
                )
            )
        elif result.hitCap:
            logger.info("claim.user.at_cap wallet=%s total=%d", claim.wallet, result.total)

        self.last_processed_at = now
        logger.info("claim.completed claim=%s tx=%s", claim.id, tx_ref)
        return Outcome.COMPLETED

    async def _record_payout(self, claim: ClaimRecord) -> Optional[PayoutResult]:
        # The claim is already completed; the ledger write must not be lost
        # to a single store error.
        day = functions.day_str_utc()
        for attempt in range(1, LEDGER_ATTEMPTS + 1):
            try:
                return await self._caps.record_payout(
                    claim.wallet, claim.token, claim.amount, day=day
                )
            except Exception as e:
                if attempt == LEDGER_ATTEMPTS:
                    raise
                logger.warning(
                    "claim.ledger.retry claim=%s attempt=%d err=%s", claim.id, attempt, e
                )
                await asyncio.sleep(self._config.error_backoff)

    async def _retry_or_fail(self, claim: ClaimRecord, message: str) -> Outcome:
        if claim.attempts >= self._config.max_attempts:
            return await self._fail(claim, message)
        reverted = await self._claims.revert_to_pending(claim, error=message)
        if not reverted:
            logger.warning("claim.retry.lost claim=%s", claim.id)
            return Outcome.ABANDONED
        logger.info(
            "claim.retry claim=%s attempts=%d/%d",
            claim.id,
            claim.attempts,
            self._config.max_attempts,
        )
        return Outcome.RETRY

    async def _fail(self, claim: ClaimRecord, message: str) -> Outcome:
        failed = await self._claims.fail(
            claim, message, max_attempts=self._config.max_attempts
        )
        if not failed:
            logger.warning("claim.fail.lost claim=%s", claim.id)
            return Outcome.ABANDONED
        logger.error("claim.failed claim=%s err=%s", claim.id, message)
        await self._events.append(
            AuditEvent(
                type=AuditEventType.CLAIM_FAILED,
                at=functions.now_ms(),
                claimId=claim.id,
                wallet=claim.wallet,
                token=claim.token,
                amount=claim.amount,
                message=message,
            )
        )
        return Outcome.FAILED

    # ---------------- Stale leases ----------------

    async def recover_stale_leases(self) -> int:
        """
        Return claims stuck in processing past the lease timeout to pending
        (or failed when out of attempts). Claims with a broadcast transfer are
        reconciled against the chain instead of being re-queued.
        """
        cutoff = functions.now_ms() - int(self._config.lease_timeout * 1000)
        recovered = 0
        for claim_id in await self._claims.stale_processing_ids(cutoff):
            code = await self._claims.recover_stale(
                claim_id,
                lease_cutoff_ms=cutoff,
                max_attempts=self._config.max_attempts,
                error=LEASE_TIMEOUT_RECOVERED,
            )
            if code == 2:
                await self._reconcile_stale(claim_id)
            if code:
                recovered += 1
        if recovered:
            logger.info("worker.recovery.done recovered=%d", recovered)
        return recovered

    async def _reconcile_stale(self, claim_id: str) -> None:
        claim = await self._claims.get(claim_id)
        if claim is None or not claim.submittedRef:
            return
        receipt = await self._chain.get_receipt(claim.submittedRef)
        if receipt is None:
            await self._events.append(
                AuditEvent(
                    type=AuditEventType.UNCONFIRMED_SUBMISSION,
                    at=functions.now_ms(),
                    claimId=claim.id,
                    wallet=claim.wallet,
                    token=claim.token,
                    amount=claim.amount,
                    transactionRef=claim.submittedRef,
                )
            )
            await self._fail(claim, UNCONFIRMED_SUBMISSION)
            return
        if int(receipt["status"]) != 1:
            await self._retry_or_fail(claim, f"Transaction reverted: {claim.submittedRef}")
            return
        confirmed = await self._chain.confirmation_status(
            claim.submittedRef, self._config.min_confirmations
        )
        if confirmed:
            await self._commit(claim, claim.submittedRef)
