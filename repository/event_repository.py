# repository/event_repository.py
import logging
from typing import List
from redis.asyncio import Redis
from config.cache import get_redis
from model.event import AuditEvent
from repository.namespaces import EVENTS

logger = logging.getLogger(__name__)


class EventRepository:
    """
    Append-only audit trail (RPUSH of JSON lines). Operators read it; the
    claim flow never does.
    """

    @staticmethod
    async def _client() -> Redis:
        return await get_redis()

    async def append(self, event: AuditEvent) -> None:
        r = await self._client()
        await r.rpush(EVENTS, event.model_dump_json(exclude_none=True))
        logger.info("audit.%s claim=%s", event.type.value, event.claimId)

    async def recent(self, limit: int = 100) -> List[AuditEvent]:
        r = await self._client()
        vals = await r.lrange(EVENTS, -limit, -1)
        out: List[AuditEvent] = []
        for raw in vals or []:
            try:
                out.append(AuditEvent.model_validate_json(raw))
            except Exception:
                # Skip malformed entries instead of breaking the listing
                continue
        return out
