# worker.py
import asyncio
import logging
import signal
import sys
from config.settings import settings
from config.cache import close_redis, get_redis
from core.chain_client import ChainClient
from repository.claim_repository import ClaimRepository
from repository.daily_payout_repository import DailyPayoutRepository
from repository.event_repository import EventRepository
from repository.treasury_lock_repository import TreasuryLockRepository
from service.daily_cap_service import DailyCapService
from service.disbursement_worker import DisbursementWorker, WorkerConfig
from util.enums import Color
from util.logger import init_logger

logger = logging.getLogger(__name__)


def build_worker(chain: ChainClient) -> DisbursementWorker:
    events = EventRepository()
    caps = DailyCapService(
        DailyPayoutRepository(),
        events,
        user_cap=settings.CLAIM_DAILY_CAP_USER,
        global_cap=settings.CLAIM_DAILY_CAP_GLOBAL,
    )
    return DisbursementWorker(
        claims=ClaimRepository(),
        caps=caps,
        events=events,
        chain=chain,
        config=WorkerConfig.from_settings(settings),
    )


async def _keep_lock(lock: TreasuryLockRepository, worker: DisbursementWorker) -> None:
    while True:
        await asyncio.sleep(lock.ttl_seconds / 3)
        try:
            held = await lock.refresh()
        except Exception:
            logger.exception("worker.lock.refresh.error")
            held = False
        if not held:
            # Ownership is unproven past this point; stop signing.
            worker.stop()
            return


async def main() -> int:
    init_logger("worker")
    if not settings.CHAIN_RPC_URL or not settings.TREASURY_PRIVATE_KEY:
        logger.error("worker.config.missing need=CHAIN_RPC_URL,TREASURY_PRIVATE_KEY")
        return 1

    chain = ChainClient(
        rpc_url=settings.CHAIN_RPC_URL,
        private_key=settings.TREASURY_PRIVATE_KEY,
        token_address=settings.CLAIM_TOKEN_ADDRESS,
        chain_id=settings.CHAIN_ID,
        gas_limit=settings.CLAIM_GAS_LIMIT,
    )
    await get_redis()

    lock = TreasuryLockRepository(chain.treasury_address)
    if not await lock.acquire():
        logger.error("worker.lock.held treasury=%s", chain.treasury_address)
        await close_redis()
        return 1

    worker = build_worker(chain)
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, worker.stop)

    print(f"{Color.BLUE}Worker Started{Color.RESET} treasury={chain.treasury_address}")
    keeper = asyncio.create_task(_keep_lock(lock, worker))
    keeper.add_done_callback(lambda _: worker.stop())
    try:
        await worker.run()
    finally:
        keeper.cancel()
        await asyncio.gather(keeper, return_exceptions=True)
        await lock.release()
        await close_redis()
        print(f"{Color.RED}Worker Shutdown{Color.RESET}")
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
