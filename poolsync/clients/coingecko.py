from __future__ import annotations

import logging
from typing import Dict, List

from poolsync.config import get_settings
from poolsync.http import HttpClient

logger = logging.getLogger(__name__)

# display symbol -> coingecko id
REFERENCE_COINS = {
    "USDC": "usd-coin",
    "ETH": "ethereum",
    "BTC": "bitcoin",
}


async def get_prices_usd(http: HttpClient, coin_ids: List[str]) -> Dict[str, float]:
    """Fetch USD prices for given Coingecko coin ids."""
    if not coin_ids:
        return {}
    base = get_settings().COINGECKO_BASE_URL
    url = f"{base}/simple/price"
    params = {"ids": ",".join(coin_ids), "vs_currencies": "usd"}
    resp = await http.get(url, params=params)
    data = resp.json()
    out: Dict[str, float] = {}
    for cid, obj in data.items():
        usd = obj.get("usd")
        if isinstance(usd, (int, float)):
            out[cid] = float(usd)
    return out


async def get_reference_prices(http: HttpClient) -> Dict[str, float]:
    """USD prices keyed by display symbol (USDC, ETH, BTC)."""
    prices = await get_prices_usd(http, list(REFERENCE_COINS.values()))
    return {sym: prices[cid] for sym, cid in REFERENCE_COINS.items() if cid in prices}
