import asyncio

import httpx
import pytest

from poolsync.http import HttpClient
from poolsync.models import PoolStats
from poolsync.services.invalidation import CacheInvalidator, InvalidationRequest, OptimisticDeltas
from poolsync.services.pool_stats import PoolStatsStore, format_apr, format_usd, make_pool_stats, pool_stats_from_row
from factories import CHAIN_ID, OWNER, POOL


@pytest.mark.parametrize(
    "value, text",
    [(0, "$0.00"), (-3, "$0.00"), (float("nan"), "$0.00"), (12345.5, "$12,345.50"), (2_500_000, "$2.50M"), (3_000_000_000, "$3.00B")],
)
def test_format_usd(value, text):
    assert format_usd(value) == text


@pytest.mark.parametrize("apr, text", [(0, "0.00%"), (12.5, "12.50%"), (2500, "2.50K%")])
def test_format_apr(apr, text):
    assert format_apr(apr) == text


def test_stats_from_backend_row():
    stats = pool_stats_from_row({"tvlUSD": "1000", "volume24hUSD": 50, "fees24hUSD": None, "apr": "7.25", "dynamicFeeBps": 30})
    assert stats.tvl_formatted == "$1,000.00"
    assert stats.fees24h_usd == 0.0
    assert stats.apr == "7.25%"
    assert stats.dynamic_fee_bps == 30


class TestApplyDeltas:
    def test_shifts_and_reformats(self):
        store = PoolStatsStore()
        store.set(POOL, make_pool_stats(1000.0, 200.0, 1.0, 5.0, 30))
        updated = store.apply_deltas(POOL.upper(), tvl_delta=500.0)
        assert updated.tvl_usd == 1500.0
        assert updated.tvl_formatted == "$1,500.00"
        assert updated.volume24h_usd == 200.0

    def test_clamped_at_zero(self):
        store = PoolStatsStore()
        store.set(POOL, make_pool_stats(100.0, 10.0, 0.0, 0.0, None))
        updated = store.apply_deltas(POOL, tvl_delta=-500.0, volume_delta=-50.0)
        assert updated.tvl_usd == 0.0
        assert updated.volume24h_usd == 0.0

    def test_unknown_pool_untouched(self):
        store = PoolStatsStore()
        assert store.apply_deltas("0xnope", tvl_delta=10.0) is None
        assert store.get("0xnope") == PoolStats()


def test_refresh_from_batch_endpoint():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/api/liquidity/get-pools-batch"
        assert request.url.params["network"] == "mainnet"
        return httpx.Response(200, json={"pools": [{"poolId": "0xABC", "tvlUSD": 2_000_000, "apr": 3.1}, "junk"]})

    http = HttpClient(transport=httpx.MockTransport(handler))
    store = PoolStatsStore(http, network_mode="mainnet")
    fresh = asyncio.run(store.refresh())
    assert set(fresh) == {"0xabc"}
    assert store.get("0xAbC").tvl_formatted == "$2.00M"


class TestCacheInvalidator:
    def test_deltas_then_hooks_then_callbacks(self):
        store = PoolStatsStore()
        store.set(POOL, make_pool_stats(100.0, 0.0, 0.0, 0.0, None))
        invalidator = CacheInvalidator(store, refetch_delay=0)
        calls = []

        async def hook(pool_id):
            calls.append(("hook", pool_id, store.get(pool_id).tvl_usd))

        async def reloaded():
            calls.append(("reloaded",))

        invalidator.register(hook)
        request = InvalidationRequest(
            owner=OWNER,
            chain_id=CHAIN_ID,
            pool_id=POOL,
            optimistic_deltas=OptimisticDeltas(tvl_delta=50.0),
            on_positions_reloaded=reloaded,
            on_clear=lambda: calls.append(("clear",)),
        )
        asyncio.run(invalidator.invalidate_after_tx(request))
        assert calls == [("hook", POOL, 150.0), ("reloaded",), ("clear",)]

    def test_failing_hook_does_not_stop_others(self):
        invalidator = CacheInvalidator(PoolStatsStore(), refetch_delay=0)
        seen = []

        async def broken(pool_id):
            raise RuntimeError("subgraph lagging")

        async def working(pool_id):
            seen.append(pool_id)

        invalidator.register(broken)
        invalidator.register(working)
        asyncio.run(invalidator.invalidate_after_tx(InvalidationRequest(owner=OWNER, chain_id=CHAIN_ID, pool_id=POOL)))
        assert seen == [POOL]

    def test_unregister_bound_method(self):
        class Page:
            def __init__(self):
                self.count = 0

            async def refetch(self, pool_id):
                self.count += 1

        page = Page()
        invalidator = CacheInvalidator(PoolStatsStore(), refetch_delay=0)
        invalidator.register(page.refetch)
        invalidator.unregister(page.refetch)
        asyncio.run(invalidator.invalidate_after_tx(InvalidationRequest(owner=OWNER, chain_id=CHAIN_ID, pool_id=POOL)))
        assert page.count == 0
