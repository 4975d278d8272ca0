from __future__ import annotations

import logging
from datetime import date
from typing import Any, Dict, List

import httpx

from poolsync.config import get_settings
from poolsync.errors import FetchFailure
from poolsync.http import HttpClient
from poolsync.models import DailyMetrics, DayRow, FeeChangeEvent, PoolStateSnapshot

logger = logging.getLogger(__name__)


def _day_row(d: Dict[str, Any]) -> DayRow | None:
    try:
        day = date.fromisoformat(str(d.get("date"))[:10])
        tvl = float(d.get("tvlUSD") or 0.0)
        volume = float(d.get("volumeUSD") or 0.0)
    except (TypeError, ValueError):
        return None
    return DayRow(date=day, tvl_usd=tvl, volume_usd=volume)


def _fee_event(e: Dict[str, Any]) -> FeeChangeEvent | None:
    try:
        timestamp = int(float(e.get("timestamp") or 0))
    except (TypeError, ValueError, OverflowError):
        return None
    bps = e.get("newFeeBps")
    try:
        fee_bps = float(bps) if bps is not None else None
    except (TypeError, ValueError):
        fee_bps = None
    return FeeChangeEvent(
        timestamp_seconds=timestamp,
        new_fee_bps=fee_bps,
        current_ratio_raw=e.get("currentRatio"),
        new_target_ratio_raw=e.get("newTargetRatio"),
    )


async def fetch_pool_chart_data(http: HttpClient, pool_id: str, days: int) -> DailyMetrics:
    """Fetch daily TVL/volume rows and dynamic-fee change events for one pool.

    ``success=false`` or an empty ``data`` array is a hard failure.
    """
    url = get_settings().backend_url("/api/liquidity/pool-chart-data")
    try:
        resp = await http.get(url, params={"poolId": pool_id, "days": days})
        payload = resp.json()
    except (httpx.HTTPError, ValueError) as e:
        raise FetchFailure(f"Chart data request failed: {e}", url=url) from e

    if not isinstance(payload, dict) or not isinstance(payload.get("success"), bool):
        raise FetchFailure("Malformed chart data response", url=url)
    if not payload["success"]:
        raise FetchFailure(payload.get("message") or "Failed to fetch chart data from backend", url=url)

    raw_rows = payload.get("data")
    if not isinstance(raw_rows, list) or not raw_rows:
        raise FetchFailure("No chart data available for this pool", url=url)

    rows: List[DayRow] = []
    for d in raw_rows:
        if not isinstance(d, dict):
            continue
        row = _day_row(d)
        if row is None:
            logger.debug(f"Skipping malformed chart row: {d}")
            continue
        rows.append(row)
    if not rows:
        raise FetchFailure("No chart data available for this pool", url=url)

    raw_events = payload.get("feeEvents")
    events = [_fee_event(e) for e in raw_events if isinstance(e, dict)] if isinstance(raw_events, list) else []
    return DailyMetrics(pool_id=pool_id, rows=rows, fee_events=[e for e in events if e is not None])


async def fetch_pools_batch(http: HttpClient, network_mode: str | None = None) -> Dict[str, Dict[str, Any]]:
    """Fetch per-pool aggregate metrics, keyed by lower-cased pool id."""
    network = network_mode or get_settings().NETWORK_MODE
    url = get_settings().backend_url("/api/liquidity/get-pools-batch")
    try:
        resp = await http.get(url, params={"network": network})
        data = resp.json()
    except (httpx.HTTPError, ValueError) as e:
        raise FetchFailure(f"Pool batch metrics request failed: {e}", url=url) from e

    pools = data.get("pools", []) if isinstance(data, dict) else []
    out: Dict[str, Dict[str, Any]] = {}
    for p in pools if isinstance(pools, list) else []:
        if not isinstance(p, dict):
            continue
        pid = str(p.get("poolId") or "").lower()
        if pid:
            out[pid] = p
    return out


def _opt_float(value: Any) -> float | None:
    try:
        out = float(value)
    except (TypeError, ValueError):
        return None
    return out if out == out else None


async def fetch_pool_state(http: HttpClient, pool_id: str) -> PoolStateSnapshot:
    """Read slot0 + liquidity for one pool through the backend."""
    url = get_settings().backend_url("/api/liquidity/get-pool-state")
    try:
        resp = await http.get(url, params={"poolId": pool_id})
        data = resp.json()
    except (httpx.HTTPError, ValueError) as e:
        raise FetchFailure(f"Pool state request failed: {e}", url=url) from e
    if not isinstance(data, dict):
        raise FetchFailure("Malformed pool state response", url=url)
    tick = data.get("currentPoolTick", data.get("tick"))
    return PoolStateSnapshot(
        current_price=_opt_float(data.get("currentPrice")),
        current_tick=int(tick) if isinstance(tick, (int, float)) and not isinstance(tick, bool) else None,
        sqrt_price_x96=str(data["sqrtPriceX96"]) if data.get("sqrtPriceX96") else None,
        liquidity=str(data["liquidity"]) if data.get("liquidity") else None,
    )


class BackendPoolStateReader:
    def __init__(self, http: HttpClient):
        self.http = http

    async def read_pool_state(self, pool_id: str) -> PoolStateSnapshot:
        return await fetch_pool_state(self.http, pool_id)
