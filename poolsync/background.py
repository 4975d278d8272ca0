from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, List

from poolsync.pools import PoolRegistry
from poolsync.services.pool_state import PoolStateReader, PoolStateStore
from poolsync.services.pool_stats import PoolStatsStore
from poolsync.services.prices import PriceBook

logger = logging.getLogger(__name__)


class BackgroundRefresher:
    """Polls pool state, pool stats and reference prices for every enabled pool."""

    def __init__(
        self,
        registry: PoolRegistry,
        state: PoolStateStore,
        state_reader: PoolStateReader,
        stats: PoolStatsStore,
        prices: PriceBook,
        state_interval: float = 15,
        market_interval: float = 60,
    ):
        self.registry = registry
        self.state = state
        self.state_reader = state_reader
        self.stats = stats
        self.prices = prices
        self.state_interval = state_interval
        self.market_interval = market_interval
        self._tasks: List[asyncio.Task] = []
        self._stopping = asyncio.Event()

    async def refresh_pool_states(self) -> int:
        pools = self.registry.enabled()
        results = await asyncio.gather(
            *(self.state.poll(self.state_reader, p.subgraph_id) for p in pools),
            return_exceptions=True,
        )
        ok = 0
        for pool, result in zip(pools, results):
            if isinstance(result, Exception):
                logger.warning(f"Pool state poll failed for {pool.id}: {result}")
            else:
                ok += 1
        return ok

    async def refresh_market(self) -> None:
        stats, prices = await asyncio.gather(self.stats.refresh(), self.prices.refresh(), return_exceptions=True)
        if isinstance(stats, Exception):
            logger.warning(f"Pool stats refresh failed: {stats}")
        if isinstance(prices, Exception):
            logger.warning(f"Price refresh failed: {prices}")

    async def start(self) -> None:
        # warm everything once before the loops take over
        await asyncio.gather(self.refresh_pool_states(), self.refresh_market())
        logger.info(f"✅ poolsync ready – pools: {len(self.registry.enabled())}")
        if not self._tasks:
            self._tasks = [
                asyncio.create_task(self._run_loop("pool state", self.state_interval, self.refresh_pool_states)),
                asyncio.create_task(self._run_loop("market", self.market_interval, self.refresh_market)),
            ]

    async def stop(self) -> None:
        self._stopping.set()
        if self._tasks:
            await asyncio.gather(*self._tasks)
        self._tasks = []

    async def _run_loop(self, name: str, interval: float, step: Callable[[], Awaitable[object]]) -> None:
        logger.info(f"Background {name} refresher started (interval={interval}s)")
        while not self._stopping.is_set():
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
            if self._stopping.is_set():
                break
            try:
                await step()
            except Exception as e:
                logger.exception(f"{name} refresh iteration failed: {e}")
