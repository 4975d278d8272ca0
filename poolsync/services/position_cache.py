from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional, Set

from poolsync.models import OwnedPositionId
from poolsync.services.cache import Cache

logger = logging.getLogger(__name__)

IdFetcher = Callable[[str], Awaitable[List[OwnedPositionId]]]
RefreshCallback = Callable[[List[str]], Awaitable[None]]


@dataclass(frozen=True)
class _Entry:
    items: tuple
    fetched_at: float


class PositionRepository:
    """Process-wide store of owned-position ids and their timestamps.

    Lookups go memory -> Redis (when configured) -> backend. Concurrent loads
    for the same owner share one backend request. When a cached list is
    served and ``on_refreshed`` is given, a background fetch delivers the
    corrected list if it differs.
    """

    def __init__(
        self,
        fetch_ids: IdFetcher,
        cache: Optional[Cache] = None,
        ttl_seconds: float = 3600,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._fetch_ids = fetch_ids
        self._cache = cache
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, _Entry] = {}
        self._ongoing: Dict[str, asyncio.Task] = {}
        self._background: Set[asyncio.Task] = set()

    def _fresh_entry(self, key: str) -> Optional[_Entry]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() - entry.fetched_at >= self._ttl:
            self._entries.pop(key, None)
            return None
        return entry

    def _store(self, key: str, items: List[OwnedPositionId]) -> _Entry:
        entry = _Entry(items=tuple(items), fetched_at=self._clock())
        self._entries[key] = entry
        return entry

    async def _read_persisted(self, key: str) -> Optional[List[OwnedPositionId]]:
        if self._cache is None:
            return None
        try:
            return await self._cache.get_owned_ids(key)
        except Exception as e:
            logger.warning(f"Owned-ids cache read failed: {e}")
            return None

    async def _persist(self, key: str, items: List[OwnedPositionId]) -> None:
        if self._cache is None:
            return
        try:
            await self._cache.save_owned_ids(key, items)
        except Exception as e:
            logger.warning(f"Owned-ids cache write failed: {e}")

    async def _fetch_and_store(self, key: str) -> List[OwnedPositionId]:
        items = await self._fetch_ids(key)
        self._store(key, items)
        await self._persist(key, items)
        return items

    async def _fetch_shared(self, key: str) -> List[OwnedPositionId]:
        task = self._ongoing.get(key)
        if task is None:
            task = asyncio.create_task(self._fetch_and_store(key))
            self._ongoing[key] = task

            def _done(t: asyncio.Task, k: str = key) -> None:
                if self._ongoing.get(k) is t:
                    self._ongoing.pop(k, None)

            task.add_done_callback(_done)
        return await asyncio.shield(task)

    def _spawn_background_refresh(self, key: str, served: List[str], on_refreshed: RefreshCallback) -> None:
        async def _refresh() -> None:
            try:
                fresh = [i.id for i in await self._fetch_shared(key)]
                if fresh != served:
                    logger.debug(f"Owned ids for {key} changed after background refresh ({len(served)} -> {len(fresh)})")
                    await on_refreshed(fresh)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"Background owned-ids refresh failed: {e}")

        task = asyncio.create_task(_refresh())
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def load_owned_position_ids(self, owner: str, on_refreshed: Optional[RefreshCallback] = None) -> List[str]:
        key = (owner or "").lower()
        entry = self._fresh_entry(key)
        if entry is None:
            persisted = await self._read_persisted(key)
            if persisted:
                entry = self._store(key, persisted)
        if entry is not None:
            ids = [i.id for i in entry.items]
            if on_refreshed is not None:
                self._spawn_background_refresh(key, ids, on_refreshed)
            return ids
        return [i.id for i in await self._fetch_shared(key)]

    def known_timestamps(self, owner: str) -> Dict[str, OwnedPositionId]:
        entry = self._entries.get((owner or "").lower())
        if entry is None:
            return {}
        return {i.id: i for i in entry.items}

    async def invalidate(self, owner: str) -> None:
        key = (owner or "").lower()
        self._entries.pop(key, None)
        if self._cache is not None:
            try:
                await self._cache.delete_owned_ids(key)
            except Exception as e:
                logger.warning(f"Owned-ids cache delete failed: {e}")

    async def remove(self, owner: str, position_id: str) -> None:
        key = (owner or "").lower()
        entry = self._entries.get(key)
        if entry is None:
            return
        items = [i for i in entry.items if i.id != str(position_id)]
        if len(items) == len(entry.items):
            return
        self._entries[key] = _Entry(items=tuple(items), fetched_at=entry.fetched_at)
        await self._persist(key, items)

    async def aclose(self) -> None:
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
