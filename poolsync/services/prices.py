from __future__ import annotations

import logging
from typing import Dict, Mapping, Optional

from poolsync.clients.coingecko import get_reference_prices
from poolsync.http import HttpClient
from poolsync.models import BasePosition

logger = logging.getLogger(__name__)

USD_STABLE_SYMBOLS = frozenset({"USDC", "AUSDC", "USDT", "AUSDT", "MUSDT", "YUSD", "DAI", "ADAI"})
ETH_SYMBOLS = frozenset({"ETH", "AETH", "WETH"})
BTC_SYMBOLS = frozenset({"BTC", "ABTC", "CBBTC", "WBTC"})


def usd_price_for_symbol(symbol: Optional[str], prices: Mapping[str, float]) -> float:
    sym = (symbol or "").upper()
    if not sym:
        return 0.0
    if sym in USD_STABLE_SYMBOLS:
        return float(prices.get("USDC", 1.0))
    if sym in ETH_SYMBOLS:
        return float(prices.get("ETH", 0.0))
    if sym in BTC_SYMBOLS:
        return float(prices.get("BTC", 0.0))
    return 0.0


def position_usd(position: BasePosition, prices: Mapping[str, float]) -> float:
    amount0, amount1 = position.amounts()
    symbol0, symbol1 = position.symbols()
    return amount0 * usd_price_for_symbol(symbol0, prices) + amount1 * usd_price_for_symbol(symbol1, prices)


class PriceBook:
    """Latest reference USD prices (USDC, ETH, BTC)."""

    def __init__(self, http: Optional[HttpClient] = None):
        self.http = http
        self._prices: Dict[str, float] = {}

    @property
    def prices(self) -> Dict[str, float]:
        return {"USDC": 1.0, "ETH": 0.0, "BTC": 0.0, **self._prices}

    @property
    def is_loading(self) -> bool:
        return not self._prices

    def set(self, prices: Mapping[str, float]) -> None:
        self._prices = {**self._prices, **prices}

    async def refresh(self) -> Dict[str, float]:
        if self.http is None:
            return self.prices
        fresh = await get_reference_prices(self.http)
        self.set(fresh)
        logger.debug(f"Refreshed reference prices: {fresh}")
        return self.prices

    def valuation(self, position: BasePosition) -> float:
        return position_usd(position, self.prices)
