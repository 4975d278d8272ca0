import asyncio
from datetime import date

import httpx
import pytest

from poolsync.clients.metrics import BackendPoolStateReader, fetch_pool_chart_data
from poolsync.clients.positions import BackendDirectPositionReader, BackendVaultPositionReader, fetch_owned_position_ids
from poolsync.errors import FetchFailure
from poolsync.http import HttpClient
from poolsync.utils.loki import loki_log
from factories import CHAIN_ID, OWNER, POOL


def client(handler) -> HttpClient:
    return HttpClient(transport=httpx.MockTransport(handler))


def respond(payload, status=200):
    return client(lambda request: httpx.Response(status, json=payload))


class TestChartData:
    def test_rows_and_fee_events_parsed(self):
        seen = {}

        def handler(request):
            seen.update(request.url.params)
            return httpx.Response(
                200,
                json={
                    "success": True,
                    "data": [
                        {"date": "2024-01-01", "tvlUSD": 100, "volumeUSD": "10.5"},
                        {"date": "not-a-date", "tvlUSD": 1},
                    ],
                    "feeEvents": [{"timestamp": "1704110400", "newFeeBps": "30", "currentRatio": "1000000000000000000"}],
                },
            )

        metrics = asyncio.run(fetch_pool_chart_data(client(handler), POOL, 60))
        assert seen == {"poolId": POOL, "days": "60"}
        assert [(r.date, r.tvl_usd, r.volume_usd) for r in metrics.rows] == [(date(2024, 1, 1), 100.0, 10.5)]
        assert metrics.fee_events[0].timestamp_seconds == 1704110400
        assert metrics.fee_events[0].new_fee_bps == 30.0

    @pytest.mark.parametrize(
        "payload",
        [
            {"success": False, "message": "pool not indexed"},
            {"success": True, "data": []},
            {"data": [{"date": "2024-01-01"}]},
            {"success": True, "data": [{"date": "2024-01-01", "tvlUSD": "abc"}, {"date": "2024-01-02", "volumeUSD": {"usd": 1}}]},
        ],
    )
    def test_unusable_payload_is_fetch_failure(self, payload):
        with pytest.raises(FetchFailure):
            asyncio.run(fetch_pool_chart_data(respond(payload), POOL, 60))

    def test_malformed_numbers_skip_row_and_event(self):
        payload = {
            "success": True,
            "data": [
                {"date": "2024-01-01", "tvlUSD": "abc", "volumeUSD": 1},
                {"date": "2024-01-02", "tvlUSD": "200", "volumeUSD": "20"},
            ],
            "feeEvents": [{"timestamp": "soon", "newFeeBps": "30"}, {"timestamp": 1704196800, "newFeeBps": 25}],
        }
        metrics = asyncio.run(fetch_pool_chart_data(respond(payload), POOL, 60))
        assert [(r.date, r.tvl_usd) for r in metrics.rows] == [(date(2024, 1, 2), 200.0)]
        assert [e.timestamp_seconds for e in metrics.fee_events] == [1704196800]

    def test_http_error_is_fetch_failure(self):
        with pytest.raises(FetchFailure) as exc:
            asyncio.run(fetch_pool_chart_data(respond({"error": "boom"}, status=500), POOL, 60))
        assert exc.value.url.endswith("/api/liquidity/pool-chart-data")


class TestOwnedIds:
    def test_dicts_and_bare_ids(self):
        payload = [{"id": "5", "createdAt": 1700000000, "lastTimestamp": "1700000100"}, 6, {"id": ""}, None]
        ids = asyncio.run(fetch_owned_position_ids(respond(payload), OWNER))
        assert [(i.id, i.created_at, i.last_timestamp) for i in ids] == [("5", 1700000000, 1700000100), ("6", 0, 0)]

    def test_unexpected_shape_is_empty(self):
        assert asyncio.run(fetch_owned_position_ids(respond({"error": "nope"}), OWNER)) == []


class TestReaders:
    def test_direct_reader_posts_ids(self):
        bodies = []

        def handler(request):
            bodies.append(request.content)
            return httpx.Response(200, json={"positions": [{"positionId": "5"}, "junk"]})

        out = asyncio.run(BackendDirectPositionReader(client(handler)).derive_from_ids(OWNER, ["5"], CHAIN_ID, {}))
        assert out == [{"positionId": "5"}]
        assert b'"positionIds":["5"]' in bodies[0].replace(b" ", b"")

    def test_vault_reader(self):
        out = asyncio.run(BackendVaultPositionReader(respond({"positions": [{"hookAddress": "0xa"}]})).derive_vault_positions(OWNER, CHAIN_ID, "mainnet"))
        assert out == [{"hookAddress": "0xa"}]

    def test_pool_state_reader(self):
        payload = {"currentPrice": "2000.5", "currentPoolTick": 76012, "sqrtPriceX96": 123, "liquidity": "999"}
        state = asyncio.run(BackendPoolStateReader(respond(payload)).read_pool_state(POOL))
        assert state.current_price == 2000.5
        assert state.current_tick == 76012
        assert state.sqrt_price_x96 == "123"
        assert state.liquidity == "999"


def test_loki_disabled_by_default():
    def handler(request):
        raise AssertionError("nothing should be pushed")

    assert asyncio.run(loki_log(client(handler), "error", "chart failed")) is False
