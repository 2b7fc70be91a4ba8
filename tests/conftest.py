"""
pytest configuration for the claims API and disbursement worker.

Environment is set before any application import: config.settings
validates on import.
"""

import os

os.environ["APP_ENV"] = "test"
os.environ["REDIS_URL"] = "redis://localhost:6379/15"
os.environ["CLAIM_TOKEN_ADDRESS"] = "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913"
os.environ["ADMIN_TOKEN"] = "test-admin-token"
os.environ["CLAIM_MIN_PAYOUT"] = "10000"
os.environ["CLAIM_DAILY_CAP_USER"] = "1000000000"
os.environ["CLAIM_DAILY_CAP_GLOBAL"] = "5000000000"
os.environ["CLAIM_RL_PER_MINUTE"] = "1"
os.environ["CLAIM_RL_PER_DAY"] = "10"

import fakeredis  # noqa: E402
import fakeredis.aioredis  # noqa: E402
import pytest  # noqa: E402

from config import cache  # noqa: E402


@pytest.fixture
async def redis_client():
    """A fresh in-memory Redis (Lua enabled) installed as the app's client."""
    client = fakeredis.aioredis.FakeRedis(
        server=fakeredis.FakeServer(), decode_responses=True
    )
    cache.use_redis(client)
    yield client
    cache.use_redis(None)
    await client.aclose()

