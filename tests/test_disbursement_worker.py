"""Tests for service.disbursement_worker with a mocked chain client."""

import asyncio
from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from helpers import TOKEN, TREASURY, WALLET_A, WALLET_B, seed_claim
from model.claim import ClaimStatus
from repository.claim_repository import ClaimRepository
from repository.daily_payout_repository import DailyPayoutRepository
from repository.event_repository import EventRepository
from repository.namespaces import BALANCES, CLAIM_STATUS, CLAIMS
from service.daily_cap_service import DailyCapService
from service.disbursement_worker import DisbursementWorker, Outcome, WorkerConfig
from util import functions
from util.enums import AuditEventType
from util.errors import TransientDisbursementError

USER_CAP = 1_000_000
GLOBAL_CAP = 5_000_000


@pytest.fixture
def chain():
    mock = AsyncMock()
    mock.treasury_address = TREASURY
    mock.pending_transaction_count.return_value = 7
    mock.token_decimals.return_value = 6
    mock.token_balance.return_value = 10**12
    mock.submit_transfer.return_value = "0xabc"
    mock.wait_for_confirmations.return_value = {"status": 1, "blockNumber": 10}
    mock.confirmation_status.return_value = True
    mock.get_receipt.return_value = None
    return mock


def make_caps(user_cap: int = USER_CAP, global_cap: int = GLOBAL_CAP) -> DailyCapService:
    return DailyCapService(
        DailyPayoutRepository(), EventRepository(), user_cap=user_cap, global_cap=global_cap
    )


def make_worker(chain, caps=None, **overrides) -> DisbursementWorker:
    fast = dict(
        confirmation_timeout=1.0,
        idle_poll=0.01,
        cap_defer=0.01,
        error_backoff=0.01,
        between_claims=0.0,
        shutdown_timeout=1.0,
    )
    config = WorkerConfig(**{**fast, **overrides})
    return DisbursementWorker(
        claims=ClaimRepository(),
        caps=caps or make_caps(),
        events=EventRepository(),
        chain=chain,
        config=config,
    )


async def events_of(kind: AuditEventType):
    return [e for e in await EventRepository().recent() if e.type == kind]


class TestHappyPath:
    async def test_pays_and_commits(self, redis_client, chain):
        claim = await seed_claim(amount=50_000)
        worker = make_worker(chain)

        outcome, claim_id = await worker.run_once()

        assert outcome == Outcome.COMPLETED
        assert claim_id == claim.id
        chain.submit_transfer.assert_awaited_once_with(WALLET_A, 50_000, 7)
        chain.wait_for_confirmations.assert_awaited_once_with("0xabc", 2, 1.0)

        stored = await ClaimRepository().get(claim.id)
        assert stored.status == ClaimStatus.completed
        assert stored.transactionRef == "0xabc"
        assert stored.submittedRef == "0xabc"
        assert stored.attempts == 1
        assert stored.error is None
        assert await redis_client.hget(f"{BALANCES}:{WALLET_A}", "claimed") == "50000"

        day = functions.day_str_utc()
        acc = await DailyPayoutRepository().get_user(day, TOKEN, WALLET_A)
        assert acc.amount == 50_000
        # Every allocated nonce confirmed: next allocation re-reads the chain.
        assert worker.sequencer.state() == {"currentNonce": None, "pendingCount": 0}

    async def test_idle_when_queue_empty(self, redis_client, chain):
        worker = make_worker(chain)

        assert await worker.run_once() == (Outcome.IDLE, None)
        chain.submit_transfer.assert_not_awaited()


class TestFailures:
    async def test_transient_errors_retry_until_failed(self, redis_client, chain):
        claim = await seed_claim()
        chain.submit_transfer.side_effect = TransientDisbursementError("rpc down")
        worker = make_worker(chain)
        repo = ClaimRepository()

        for attempt in range(1, 5):
            outcome, _ = await worker.run_once()
            assert outcome == Outcome.RETRY
            stored = await repo.get(claim.id)
            assert stored.status == ClaimStatus.pending
            assert stored.attempts == attempt
            assert stored.error == "rpc down"

        outcome, _ = await worker.run_once()

        assert outcome == Outcome.FAILED
        stored = await repo.get(claim.id)
        assert stored.status == ClaimStatus.failed
        assert stored.attempts == 5
        assert stored.error == "rpc down"
        assert await worker.run_once() == (Outcome.IDLE, None)
        # Nonce state reset after each failure, so the chain was re-read each time.
        assert chain.pending_transaction_count.await_count == 5
        failed = await events_of(AuditEventType.CLAIM_FAILED)
        assert [e.claimId for e in failed] == [claim.id]

    async def test_unknown_exception_is_transient(self, redis_client, chain):
        claim = await seed_claim()
        chain.wait_for_confirmations.side_effect = asyncio.TimeoutError()
        worker = make_worker(chain)

        outcome, _ = await worker.run_once()

        assert outcome == Outcome.RETRY
        stored = await ClaimRepository().get(claim.id)
        assert stored.status == ClaimStatus.pending
        assert stored.error == "TimeoutError"
        assert stored.submittedRef == "0xabc"

    async def test_invalid_recipient_fails_immediately(self, redis_client, chain):
        claim = await seed_claim(wallet="0x1234")
        worker = make_worker(chain)

        outcome, _ = await worker.run_once()

        assert outcome == Outcome.FAILED
        chain.submit_transfer.assert_not_awaited()
        stored = await ClaimRepository().get(claim.id)
        assert stored.status == ClaimStatus.failed
        assert stored.attempts == 5
        assert stored.error.startswith("INVALID_RECIPIENT")

    async def test_zero_amount_fails_immediately(self, redis_client, chain):
        claim = await seed_claim(amount=0)
        worker = make_worker(chain)

        outcome, _ = await worker.run_once()

        assert outcome == Outcome.FAILED
        stored = await ClaimRepository().get(claim.id)
        assert stored.error.startswith("INVALID_AMOUNT")

    async def test_insufficient_treasury_is_transient(self, redis_client, chain):
        claim = await seed_claim(amount=50_000)
        chain.token_balance.return_value = 49_999
        worker = make_worker(chain)

        outcome, _ = await worker.run_once()

        assert outcome == Outcome.RETRY
        chain.submit_transfer.assert_not_awaited()
        stored = await ClaimRepository().get(claim.id)
        assert "Treasury balance insufficient" in stored.error

    async def test_decimals_mismatch_is_transient(self, redis_client, chain):
        await seed_claim()
        chain.token_decimals.return_value = 18
        worker = make_worker(chain)

        outcome, _ = await worker.run_once()

        assert outcome == Outcome.RETRY
        chain.submit_transfer.assert_not_awaited()


class TestDeferrals:
    async def test_global_cap_defers_without_spending_attempt(self, redis_client, chain):
        claim = await seed_claim(amount=50_000)
        worker = make_worker(chain, caps=make_caps(global_cap=40_000))

        outcome, claim_id = await worker.run_once()

        assert outcome == Outcome.DEFERRED_GLOBAL
        assert claim_id == claim.id
        chain.submit_transfer.assert_not_awaited()
        stored = await ClaimRepository().get(claim.id)
        assert stored.status == ClaimStatus.pending
        assert stored.deferred == "GLOBAL_DAILY_CAP_REACHED"
        assert stored.attempts == 0

    async def test_user_cap_defers_and_other_wallets_proceed(self, redis_client, chain):
        now = functions.now_ms()
        capped = await seed_claim(WALLET_A, amount=50_000, created_at=now - 2_000)
        other = await seed_claim(WALLET_B, amount=50_000, created_at=now - 1_000)
        caps = make_caps()
        await caps.record_payout(WALLET_A, TOKEN, USER_CAP - 10_000)
        worker = make_worker(chain, caps=caps)

        first = await worker.run_once()
        second = await worker.run_once()

        assert first == (Outcome.DEFERRED_USER, capped.id)
        assert second == (Outcome.COMPLETED, other.id)
        stored = await ClaimRepository().get(capped.id)
        assert stored.status == ClaimStatus.pending
        assert stored.deferred == "USER_DAILY_CAP_REACHED"
        assert stored.attempts == 0
        chain.submit_transfer.assert_awaited_once_with(WALLET_B, 50_000, 7)


class TestOwnershipAndCaps:
    async def test_lost_ownership_abandons_without_transfer(self, redis_client, chain):
        await seed_claim()
        repo = ClaimRepository()
        leased = await repo.lease()
        # Another actor moved the claim after the lease.
        await redis_client.hset(f"{CLAIMS}:{leased.id}", "status", "pending")
        worker = make_worker(chain)

        outcome = await worker.process(leased)

        assert outcome == Outcome.ABANDONED
        chain.submit_transfer.assert_not_awaited()
        assert (await repo.get(leased.id)).status == ClaimStatus.pending

    async def test_cap_refused_after_transfer_is_critical(self, redis_client, chain):
        claim = await seed_claim(amount=50_000)
        caps = make_caps()

        async def racing_submit(to, amount, nonce):
            # A concurrent payout fills the user's cap while ours is in flight.
            await caps.record_payout(WALLET_A, TOKEN, USER_CAP - 10_000)
            return "0xabc"

        chain.submit_transfer.side_effect = racing_submit
        worker = make_worker(chain, caps=caps)

        outcome, _ = await worker.run_once()

        assert outcome == Outcome.COMPLETED
        stored = await ClaimRepository().get(claim.id)
        assert stored.status == ClaimStatus.completed
        assert stored.transactionRef == "0xabc"
        violations = await events_of(AuditEventType.CRITICAL_CAP_VIOLATION)
        assert len(violations) == 1
        assert violations[0].claimId == claim.id
        assert violations[0].message == "CAP_EXCEEDED_POST_TRANSFER"
        day = functions.day_str_utc()
        acc = await DailyPayoutRepository().get_user(day, TOKEN, WALLET_A)
        assert acc.amount == USER_CAP - 10_000

    async def test_ledger_error_is_retried(self, redis_client, chain, monkeypatch):
        claim = await seed_claim(amount=50_000)
        original = DailyPayoutRepository.increment
        calls = []

        async def flaky_increment(self, **kwargs):
            calls.append(kwargs["day"])
            if len(calls) == 1:
                raise RedisConnectionError("Connection reset by peer")
            return await original(self, **kwargs)

        monkeypatch.setattr(DailyPayoutRepository, "increment", flaky_increment)
        worker = make_worker(chain)

        outcome, _ = await worker.run_once()

        assert outcome == Outcome.COMPLETED
        assert len(calls) == 2
        assert calls[0] == calls[1]
        acc = await DailyPayoutRepository().get_user(calls[0], TOKEN, WALLET_A)
        assert acc.amount == 50_000
        assert await events_of(AuditEventType.CRITICAL_CAP_VIOLATION) == []
        assert (await ClaimRepository().get(claim.id)).status == ClaimStatus.completed

    async def test_ledger_outage_is_recorded_as_critical(
        self, redis_client, chain, monkeypatch
    ):
        claim = await seed_claim(amount=50_000)
        increment = AsyncMock(side_effect=RedisConnectionError("Connection refused"))
        monkeypatch.setattr(DailyPayoutRepository, "increment", increment)
        worker = make_worker(chain)

        outcome, _ = await worker.run_once()

        assert outcome == Outcome.COMPLETED
        assert increment.await_count == 3
        stored = await ClaimRepository().get(claim.id)
        assert stored.status == ClaimStatus.completed
        violations = await events_of(AuditEventType.CRITICAL_CAP_VIOLATION)
        assert len(violations) == 1
        assert violations[0].claimId == claim.id
        assert violations[0].transactionRef == "0xabc"
        assert violations[0].message == "LEDGER_UPDATE_FAILED"
        assert worker.last_processed_at is not None



class TestPreviousSubmission:
    async def _submitted_then_retried(self, tx_ref: str = "0xold"):
        claim = await seed_claim()
        repo = ClaimRepository()
        leased = await repo.lease()
        await repo.mark_submitted(leased, tx_ref)
        await repo.revert_to_pending(leased, error="timeout")
        return claim

    async def test_confirmed_previous_transfer_is_committed(self, redis_client, chain):
        claim = await self._submitted_then_retried()
        chain.confirmation_status.return_value = True
        worker = make_worker(chain)

        outcome, _ = await worker.run_once()

        assert outcome == Outcome.COMPLETED
        chain.submit_transfer.assert_not_awaited()
        chain.confirmation_status.assert_awaited_once_with("0xold", 2)
        stored = await ClaimRepository().get(claim.id)
        assert stored.transactionRef == "0xold"
        assert stored.attempts == 2

    async def test_unsettled_previous_transfer_is_not_resent(self, redis_client, chain):
        claim = await self._submitted_then_retried()
        chain.confirmation_status.return_value = None
        worker = make_worker(chain)

        outcome, _ = await worker.run_once()

        assert outcome == Outcome.RETRY
        chain.submit_transfer.assert_not_awaited()
        assert (await ClaimRepository().get(claim.id)).status == ClaimStatus.pending

    async def test_reverted_previous_transfer_is_resent(self, redis_client, chain):
        claim = await self._submitted_then_retried()
        chain.confirmation_status.return_value = False
        worker = make_worker(chain)

        outcome, _ = await worker.run_once()

        assert outcome == Outcome.COMPLETED
        chain.submit_transfer.assert_awaited_once()
        assert (await ClaimRepository().get(claim.id)).transactionRef == "0xabc"


class TestStaleLeaseRecovery:
    async def _stale_lease(self, redis_client, submitted: str = None):
        claim = await seed_claim()
        repo = ClaimRepository()
        leased = await repo.lease()
        if submitted:
            await repo.mark_submitted(leased, submitted)
        old = functions.now_ms() - 700_000
        await redis_client.hset(f"{CLAIMS}:{leased.id}", "leaseAt", old)
        await redis_client.zadd(f"{CLAIM_STATUS}:processing", {leased.id: old})
        return claim

    async def test_stale_lease_back_to_pending(self, redis_client, chain):
        claim = await self._stale_lease(redis_client)
        worker = make_worker(chain)

        assert await worker.recover_stale_leases() == 1

        stored = await ClaimRepository().get(claim.id)
        assert stored.status == ClaimStatus.pending
        assert stored.error == "LEASE_TIMEOUT_RECOVERED"

    async def test_unknown_submission_fails_for_review(self, redis_client, chain):
        claim = await self._stale_lease(redis_client, submitted="0xlost")
        chain.get_receipt.return_value = None
        worker = make_worker(chain)

        await worker.recover_stale_leases()

        stored = await ClaimRepository().get(claim.id)
        assert stored.status == ClaimStatus.failed
        assert stored.error == "UNCONFIRMED_SUBMISSION"
        unconfirmed = await events_of(AuditEventType.UNCONFIRMED_SUBMISSION)
        assert [e.transactionRef for e in unconfirmed] == ["0xlost"]

    async def test_confirmed_submission_is_committed(self, redis_client, chain):
        claim = await self._stale_lease(redis_client, submitted="0xgood")
        chain.get_receipt.return_value = {"status": 1, "blockNumber": 10}
        chain.confirmation_status.return_value = True
        worker = make_worker(chain)

        await worker.recover_stale_leases()

        stored = await ClaimRepository().get(claim.id)
        assert stored.status == ClaimStatus.completed
        assert stored.transactionRef == "0xgood"
        chain.submit_transfer.assert_not_awaited()

    async def test_reverted_submission_is_retried(self, redis_client, chain):
        claim = await self._stale_lease(redis_client, submitted="0xbad")
        chain.get_receipt.return_value = {"status": 0, "blockNumber": 10}
        worker = make_worker(chain)

        await worker.recover_stale_leases()

        stored = await ClaimRepository().get(claim.id)
        assert stored.status == ClaimStatus.pending
        assert "reverted" in stored.error


async def test_run_drains_queue_and_stops(redis_client, chain):
    claims = [
        await seed_claim(WALLET_A, amount=20_000),
        await seed_claim(WALLET_B, amount=30_000),
    ]
    worker = make_worker(chain, concurrency=2)

    task = asyncio.create_task(worker.run())
    for _ in range(200):
        counts = await ClaimRepository().count_by_status()
        if counts[ClaimStatus.completed] == 2:
            break
        await asyncio.sleep(0.01)
    worker.stop()
    await asyncio.wait_for(task, timeout=2)

    for c in claims:
        assert (await ClaimRepository().get(c.id)).status == ClaimStatus.completed
    assert chain.submit_transfer.await_count == 2


async def test_stop_is_bounded_when_confirmation_hangs(redis_client, chain):
    claim = await seed_claim()
    confirming = asyncio.Event()

    async def hang(tx_ref, confirmations, timeout):
        confirming.set()
        await asyncio.sleep(30)

    chain.wait_for_confirmations.side_effect = hang
    worker = make_worker(chain, shutdown_timeout=0.1)

    task = asyncio.create_task(worker.run())
    await asyncio.wait_for(confirming.wait(), timeout=2)
    loop = asyncio.get_running_loop()
    stopped_at = loop.time()
    worker.stop()
    await asyncio.wait_for(task, timeout=2)

    assert loop.time() - stopped_at < 1
    assert worker.active == 0
    stored = await ClaimRepository().get(claim.id)
    assert stored.status == ClaimStatus.processing
    assert stored.submittedRef == "0xabc"


async def test_startup_recovery_error_does_not_stop_the_worker(redis_client, chain):
    repo = ClaimRepository()
    await seed_claim(WALLET_A, amount=20_000)
    stale = await repo.lease()
    await repo.mark_submitted(stale, "0xlost")
    old = functions.now_ms() - 700_000
    await redis_client.hset(f"{CLAIMS}:{stale.id}", "leaseAt", old)
    await redis_client.zadd(f"{CLAIM_STATUS}:processing", {stale.id: old})
    fresh = await seed_claim(WALLET_B, amount=30_000)
    chain.get_receipt.side_effect = RedisConnectionError("RPC unreachable")
    worker = make_worker(chain, concurrency=1)

    task = asyncio.create_task(worker.run())
    for _ in range(200):
        if (await repo.get(fresh.id)).status == ClaimStatus.completed:
            break
        await asyncio.sleep(0.01)
    worker.stop()
    await asyncio.wait_for(task, timeout=2)

    assert (await repo.get(fresh.id)).status == ClaimStatus.completed
    chain.submit_transfer.assert_awaited_once_with(WALLET_B, 30_000, 7)
