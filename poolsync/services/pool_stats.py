from __future__ import annotations

import logging
import math
from typing import Any, Dict, Mapping, Optional

from poolsync.clients.metrics import fetch_pools_batch
from poolsync.http import HttpClient
from poolsync.models import PoolStats

logger = logging.getLogger(__name__)


def format_usd(value: float) -> str:
    if not math.isfinite(value) or value <= 0:
        return "$0.00"
    if value < 1_000_000:
        return f"${value:,.2f}"
    if value < 1_000_000_000:
        return f"${value / 1_000_000:.2f}M"
    return f"${value / 1_000_000_000:.2f}B"


def format_apr(apr: float) -> str:
    if not math.isfinite(apr) or apr <= 0:
        return "0.00%"
    if apr < 1000:
        return f"{apr:.2f}%"
    return f"{apr / 1000:.2f}K%"


def _float(value: Any) -> float:
    try:
        out = float(value)
    except (TypeError, ValueError):
        return 0.0
    return out if math.isfinite(out) else 0.0


def make_pool_stats(
    tvl_usd: float,
    volume24h_usd: float,
    fees24h_usd: float,
    apr_raw: float,
    dynamic_fee_bps: Optional[int],
) -> PoolStats:
    return PoolStats(
        tvl_usd=tvl_usd,
        volume24h_usd=volume24h_usd,
        fees24h_usd=fees24h_usd,
        apr_raw=apr_raw,
        dynamic_fee_bps=dynamic_fee_bps,
        apr=format_apr(apr_raw),
        tvl_formatted=format_usd(tvl_usd),
        volume24h_formatted=format_usd(volume24h_usd),
        fees24h_formatted=format_usd(fees24h_usd),
    )


def pool_stats_from_row(row: Mapping[str, Any]) -> PoolStats:
    fee = row.get("dynamicFeeBps")
    return make_pool_stats(
        tvl_usd=_float(row.get("tvlUSD")),
        volume24h_usd=_float(row.get("volume24hUSD")),
        fees24h_usd=_float(row.get("fees24hUSD")),
        apr_raw=_float(row.get("apr")),
        dynamic_fee_bps=int(fee) if isinstance(fee, (int, float)) and not isinstance(fee, bool) else None,
    )


class PoolStatsStore:
    """Latest batch metrics per pool id (lower-cased)."""

    def __init__(self, http: Optional[HttpClient] = None, network_mode: str = "mainnet"):
        self.http = http
        self.network_mode = network_mode
        self._stats: Dict[str, PoolStats] = {}

    def get(self, pool_id: str) -> PoolStats:
        return self._stats.get((pool_id or "").lower(), PoolStats())

    def has(self, pool_id: str) -> bool:
        return (pool_id or "").lower() in self._stats

    def set(self, pool_id: str, stats: PoolStats) -> None:
        self._stats = {**self._stats, (pool_id or "").lower(): stats}

    def apply_deltas(self, pool_id: str, tvl_delta: Optional[float] = None, volume_delta: Optional[float] = None) -> Optional[PoolStats]:
        """Shift TVL / 24h volume ahead of the backend catching up. Clamped at zero."""
        key = (pool_id or "").lower()
        current = self._stats.get(key)
        if current is None or (tvl_delta is None and volume_delta is None):
            return current
        tvl = max(0.0, current.tvl_usd + tvl_delta) if tvl_delta is not None else current.tvl_usd
        volume = max(0.0, current.volume24h_usd + volume_delta) if volume_delta is not None else current.volume24h_usd
        updated = make_pool_stats(tvl, volume, current.fees24h_usd, current.apr_raw, current.dynamic_fee_bps)
        self.set(key, updated)
        return updated

    async def refresh(self) -> Dict[str, PoolStats]:
        if self.http is None:
            return dict(self._stats)
        rows = await fetch_pools_batch(self.http, self.network_mode)
        fresh = {pid: pool_stats_from_row(row) for pid, row in rows.items()}
        self._stats = {**self._stats, **fresh}
        logger.info(f"Refreshed pool stats: {len(fresh)}")
        return fresh
