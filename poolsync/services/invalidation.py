from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional, Protocol

from poolsync.services.pool_stats import PoolStatsStore

logger = logging.getLogger(__name__)

RefetchHook = Callable[[str], Awaitable[None]]


@dataclass(frozen=True)
class OptimisticDeltas:
    tvl_delta: Optional[float] = None
    volume_delta: Optional[float] = None


@dataclass
class InvalidationRequest:
    owner: str
    chain_id: int
    pool_id: str
    optimistic_deltas: Optional[OptimisticDeltas] = None
    on_positions_reloaded: Optional[Callable[[], Awaitable[None]]] = None
    on_clear: Optional[Callable[[], None]] = None
    position_ids: List[str] = field(default_factory=list)


class TxInvalidator(Protocol):
    async def invalidate_after_tx(self, request: InvalidationRequest) -> None:
        ...


class CacheInvalidator:
    """Two-layer invalidation after a confirmed transaction.

    Layer 1 applies optimistic TVL/volume deltas to pool stats immediately.
    Layer 2 waits ``refetch_delay`` seconds for indexers to catch up, then
    runs every registered refetch hook for the pool, then the caller's
    callbacks.
    """

    def __init__(
        self,
        stats: PoolStatsStore,
        refetch_delay: float = 3.0,
    ):
        self.stats = stats
        self.refetch_delay = refetch_delay
        self._hooks: List[RefetchHook] = []

    def register(self, hook: RefetchHook) -> None:
        self._hooks = [*self._hooks, hook]

    def unregister(self, hook: RefetchHook) -> None:
        self._hooks = [h for h in self._hooks if h != hook]

    async def invalidate_after_tx(self, request: InvalidationRequest) -> None:
        deltas = request.optimistic_deltas
        if deltas is not None:
            self.stats.apply_deltas(request.pool_id, deltas.tvl_delta, deltas.volume_delta)

        if self.refetch_delay > 0:
            await asyncio.sleep(self.refetch_delay)

        for hook in self._hooks:
            try:
                await hook(request.pool_id)
            except Exception as e:
                logger.warning(f"Refetch hook failed for pool {request.pool_id}: {e}")

        if request.on_positions_reloaded is not None:
            await request.on_positions_reloaded()
        if request.on_clear is not None:
            request.on_clear()
