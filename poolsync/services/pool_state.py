from __future__ import annotations

import logging
import math
from typing import Dict, FrozenSet, Optional, Protocol

from poolsync.models import PoolStateSnapshot

logger = logging.getLogger(__name__)


class PoolStateReader(Protocol):
    async def read_pool_state(self, pool_id: str) -> PoolStateSnapshot:
        ...


def _valid_price(price: Optional[float]) -> bool:
    return price is not None and math.isfinite(price) and price > 0


class PoolStateStore:
    """Latest pool state per pool, fed by a price stream and a REST poll.

    While a pool's stream is connected its price wins over polled prices.
    Tick, sqrt price and liquidity only come from polls. A missing field
    never overwrites a known one.
    """

    def __init__(self):
        self._states: Dict[str, PoolStateSnapshot] = {}
        self._streaming: FrozenSet[str] = frozenset()

    @staticmethod
    def _key(pool_id: str) -> str:
        return (pool_id or "").lower()

    def get(self, pool_id: str) -> PoolStateSnapshot:
        return self._states.get(self._key(pool_id), PoolStateSnapshot())

    def is_streaming(self, pool_id: str) -> bool:
        return self._key(pool_id) in self._streaming

    def set_stream_connected(self, pool_id: str, connected: bool) -> None:
        key = self._key(pool_id)
        self._streaming = self._streaming | {key} if connected else self._streaming - {key}

    def _put(self, key: str, snapshot: PoolStateSnapshot) -> PoolStateSnapshot:
        self._states = {**self._states, key: snapshot}
        return snapshot

    def apply_stream(self, pool_id: str, current_price: Optional[float]) -> PoolStateSnapshot:
        key = self._key(pool_id)
        current = self._states.get(key, PoolStateSnapshot())
        if not _valid_price(current_price):
            return current
        self.set_stream_connected(key, True)
        return self._put(key, current.model_copy(update={"current_price": current_price}))

    def apply_poll(self, pool_id: str, polled: PoolStateSnapshot) -> PoolStateSnapshot:
        key = self._key(pool_id)
        current = self._states.get(key, PoolStateSnapshot())
        update = {}
        if polled.current_tick is not None:
            update["current_tick"] = polled.current_tick
        if polled.sqrt_price_x96 is not None:
            update["sqrt_price_x96"] = polled.sqrt_price_x96
        if polled.liquidity is not None:
            update["liquidity"] = polled.liquidity
        stream_owns_price = key in self._streaming and _valid_price(current.current_price)
        if _valid_price(polled.current_price) and not stream_owns_price:
            update["current_price"] = polled.current_price
        if not update:
            return current
        return self._put(key, current.model_copy(update=update))

    async def poll(self, reader: PoolStateReader, pool_id: str) -> PoolStateSnapshot:
        polled = await reader.read_pool_state(pool_id)
        return self.apply_poll(pool_id, polled)

    def reset(self, pool_id: Optional[str] = None) -> None:
        if pool_id is None:
            self._states = {}
            self._streaming = frozenset()
            return
        key = self._key(pool_id)
        self._states = {k: v for k, v in self._states.items() if k != key}
        self.set_stream_connected(key, False)
