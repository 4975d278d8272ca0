from __future__ import annotations

import json
import logging
from typing import List, Optional

from redis.asyncio import Redis

from poolsync.models import OwnedPositionId

logger = logging.getLogger(__name__)


def owned_ids_key(owner: str) -> str:
    return f"userPositionIds:{(owner or '').lower()}"


class Cache:
    """Redis persistence for owned-position id lists, so they survive restarts."""

    def __init__(self, redis: Redis, ttl_seconds: int = 3600):
        self.r = redis
        self.ttl_seconds = ttl_seconds

    async def save_owned_ids(self, owner: str, items: List[OwnedPositionId]) -> None:
        payload = json.dumps({"items": [i.model_dump() for i in items]})
        await self.r.set(owned_ids_key(owner), payload, ex=self.ttl_seconds)

    async def get_owned_ids(self, owner: str) -> Optional[List[OwnedPositionId]]:
        data = await self.r.get(owned_ids_key(owner))
        if not data:
            return None
        try:
            obj = json.loads(data)
            return [OwnedPositionId(**x) for x in obj.get("items", [])]
        except (ValueError, TypeError, AttributeError) as e:
            logger.debug(f"Discarding unreadable owned-ids entry for {owner}: {e}")
            return None

    async def delete_owned_ids(self, owner: str) -> None:
        await self.r.delete(owned_ids_key(owner))
