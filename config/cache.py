# config/cache.py
import logging
from typing import Optional
from urllib.parse import urlsplit
from redis.asyncio import Redis, from_url
from config.settings import settings

logger = logging.getLogger(__name__)

# One client per process; the API and the worker each build their own.
_client: Optional[Redis] = None


def _redacted(url: str) -> str:
    parts = urlsplit(url)
    host = parts.hostname or ""
    port = f":{parts.port}" if parts.port else ""
    return f"{parts.scheme}://{host}{port}{parts.path}"


async def get_redis() -> Redis:
    global _client
    if _client is None:
        client = from_url(
            settings.REDIS_URL,
            encoding="utf-8",
            decode_responses=True,  # claim/ledger hashes are plain strings
            socket_keepalive=True,
            health_check_interval=30,
        )
        # Fail fast if Redis is unreachable; nothing is cached until it answers.
        await client.ping()
        _client = client
        logger.info("redis.connect url=%s", _redacted(settings.REDIS_URL))
    return _client


def use_redis(client: Optional[Redis]) -> None:
    """Install an already-built client (or None to forget the current one)."""
    global _client
    _client = client


async def close_redis() -> None:
    global _client
    if _client is not None:
        await _client.aclose()
        _client = None
        logger.info("redis.close")
