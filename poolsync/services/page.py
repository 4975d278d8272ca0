from __future__ import annotations

import asyncio
import functools
import logging
from typing import Dict, Optional

from poolsync.clients.metrics import fetch_pool_chart_data
from poolsync.config import Settings
from poolsync.errors import UnknownPool
from poolsync.http import HttpClient
from poolsync.models import PoolConfig, PoolStats, PoolView
from poolsync.pools import PoolRegistry
from poolsync.services.adapters import (
    DirectPositionAdapter,
    DirectPositionReader,
    OwnedPositionIdSource,
    VaultPositionAdapter,
    VaultPositionReader,
)
from poolsync.services.aggregator import PositionAggregator
from poolsync.services.chart import ChartView
from poolsync.services.invalidation import CacheInvalidator
from poolsync.services.notices import NoticeBoard
from poolsync.services.overlay import OptimisticOverlay
from poolsync.services.pool_state import PoolStateStore
from poolsync.services.pool_stats import PoolStatsStore
from poolsync.services.positions import PositionsView
from poolsync.services.prices import PriceBook
from poolsync.services.reconciler import MutationReconciler
from poolsync.services.tick_price import tick_to_price

logger = logging.getLogger(__name__)


class PoolDetailPage:
    """Everything one owner sees on a pool page.

    Binds the pool config with shared stats, pool state and prices, and
    drives the owner's positions view and the chart view. Positions and
    chart load concurrently and independently.
    """

    def __init__(
        self,
        registry: PoolRegistry,
        positions: PositionsView,
        chart: ChartView,
        stats: PoolStatsStore,
        state: PoolStateStore,
        prices: PriceBook,
        notices: NoticeBoard,
        invalidator: Optional[CacheInvalidator] = None,
    ):
        self.registry = registry
        self.positions = positions
        self.chart = chart
        self.stats = stats
        self.state = state
        self.prices = prices
        self.notices = notices
        self.invalidator = invalidator
        self.pool: Optional[PoolConfig] = None
        self._denomination_overrides: Dict[str, str] = {}
        self.positions.valuation = self.prices.valuation
        if invalidator is not None:
            invalidator.register(self._refetch_stats)
            invalidator.register(self.chart.refetch)

    @property
    def pool_id(self) -> Optional[str]:
        return self.pool.subgraph_id if self.pool else None

    def _resolve(self, pool_id: str) -> PoolConfig:
        pool = self.registry.get(pool_id)
        if pool is None:
            raise UnknownPool(f"Unknown pool: {pool_id}")
        return pool

    async def open(self, pool_id: str, owner: str, chain_id: int, viewport_width: Optional[float] = None) -> PoolView:
        """Navigate to ``pool_id`` and load positions, chart and stats together."""
        self.pool = self._resolve(pool_id)
        self.chart.set_pool(self.pool_id)
        if viewport_width is not None:
            self.chart.set_viewport(viewport_width)

        results = await asyncio.gather(
            self.positions.navigate(owner, chain_id, self.pool_id),
            self.chart.rebuild(),
            self.refresh_stats(),
            return_exceptions=True,
        )
        for label, result in zip(("positions", "chart", "stats"), results):
            if isinstance(result, Exception):
                logger.warning(f"Pool page {label} load failed for {self.pool_id}: {result}")
        # the chart may have finished after the stats
        if self.stats.has(self.pool_id):
            self.chart.patch_today(self.stats.get(self.pool_id).tvl_usd)
        return self.view()

    async def refresh_stats(self) -> PoolStats:
        await self.stats.refresh()
        current = self.stats.get(self.pool_id)
        if self.stats.has(self.pool_id):
            self.chart.patch_today(current.tvl_usd)
        return current

    async def _refetch_stats(self, pool_id: str) -> None:
        if self.pool_id and (pool_id or "").lower() == self.pool_id:
            await self.refresh_stats()

    @property
    def denomination_base(self) -> str:
        if self.pool is None:
            return ""
        t0, t1 = self.pool.token0.symbol, self.pool.token1.symbol
        override = self._denomination_overrides.get(self.pool_id)
        if override in (t0, t1):
            return override
        price = self.state.get(self.pool_id).current_price
        # quote in whichever token makes the displayed price >= 1
        if price is not None and 0 < price < 1:
            return t0
        return t1

    def set_denomination(self, base_symbol: str) -> None:
        if self.pool is None:
            return
        if base_symbol in (self.pool.token0.symbol, self.pool.token1.symbol):
            self._denomination_overrides[self.pool_id] = base_symbol

    def convert_tick_to_price(self, tick: int, base_symbol: Optional[str] = None) -> str:
        if self.pool is None:
            return "N/A"
        snapshot = self.state.get(self.pool_id)
        return tick_to_price(
            tick,
            snapshot.current_tick,
            snapshot.current_price,
            base_symbol or self.denomination_base,
            self.pool.token0.symbol,
            self.pool.token1.symbol,
            self.registry.token_definitions(),
        )

    def view(self) -> PoolView:
        pool_id = self.pool_id or ""
        return PoolView(
            pool_id=pool_id,
            pair=self.pool.pair if self.pool else None,
            stats=self.stats.get(pool_id),
            state=self.state.get(pool_id),
            positions=self.positions.positions,
            is_loading_positions=self.positions.is_loading,
            is_deriving_new_position=self.positions.is_deriving_new_position,
            optimistically_cleared_fees=self.positions.optimistically_cleared_fees,
            chart=self.chart.points,
            is_loading_chart=self.chart.is_loading,
            notices=self.notices.items,
            prices=self.prices.prices,
        )

    def close(self) -> None:
        self.positions.disconnect()
        if self.invalidator is not None:
            self.invalidator.unregister(self._refetch_stats)
            self.invalidator.unregister(self.chart.refetch)


def create_pool_page(
    settings: Settings,
    http: HttpClient,
    registry: PoolRegistry,
    ids: OwnedPositionIdSource,
    direct_reader: DirectPositionReader,
    vault_reader: VaultPositionReader,
    stats: PoolStatsStore,
    state: PoolStateStore,
    prices: PriceBook,
    notices: Optional[NoticeBoard] = None,
) -> PoolDetailPage:
    """Wire one owner's page from the shared process-wide stores."""
    notices = notices or NoticeBoard()
    aggregator = PositionAggregator(
        ids,
        DirectPositionAdapter(direct_reader, ids),
        VaultPositionAdapter(vault_reader),
        network_mode=settings.NETWORK_MODE,
    )
    invalidator = CacheInvalidator(stats, refetch_delay=settings.INVALIDATION_REFETCH_DELAY_SECONDS)
    reconciler = MutationReconciler(
        aggregator,
        OptimisticOverlay(),
        invalidator,
        throttle_ms=settings.REFRESH_THROTTLE_MS,
    )
    positions = PositionsView(
        aggregator,
        reconciler,
        valuation=prices.valuation,
        overlay_max_age=settings.OVERLAY_MAX_AGE_SECONDS,
    )
    chart = ChartView(
        functools.partial(fetch_pool_chart_data, http),
        notices=notices,
        target_days=settings.CHART_TARGET_DAYS,
        attempts=settings.CHART_FETCH_ATTEMPTS,
        base_delay=settings.CHART_FETCH_BASE_DELAY_SECONDS,
    )
    return PoolDetailPage(registry, positions, chart, stats, state, prices, notices, invalidator)
