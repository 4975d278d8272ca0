from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from poolsync.models import PoolConfig, TokenDefinition

logger = logging.getLogger(__name__)


class PoolRegistry:
    """Pool and token definitions, loaded from a pools.json file.

    File shape: ``{"tokens": {SYMBOL: {address, decimals}}, "pools": [{id,
    subgraphId, currency0: {symbol}, currency1: {symbol}, tickSpacing, hooks,
    type, enabled}]}``.
    """

    def __init__(self, pools: List[PoolConfig], tokens: Dict[str, TokenDefinition]):
        self._pools = list(pools)
        self._tokens = dict(tokens)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PoolRegistry":
        tokens: Dict[str, TokenDefinition] = {}
        for symbol, t in (data.get("tokens") or {}).items():
            tokens[symbol] = TokenDefinition(symbol=symbol, address=str(t.get("address") or ""), decimals=int(t.get("decimals", 18)))

        def _token(currency: Dict[str, Any]) -> TokenDefinition:
            symbol = str(currency.get("symbol") or "")
            known = tokens.get(symbol)
            if known is not None:
                return known
            return TokenDefinition(symbol=symbol, address=str(currency.get("address") or ""))

        pools: List[PoolConfig] = []
        for p in data.get("pools") or []:
            pools.append(
                PoolConfig(
                    id=str(p["id"]),
                    subgraph_id=str(p.get("subgraphId") or p["id"]).lower(),
                    token0=_token(p.get("currency0") or {}),
                    token1=_token(p.get("currency1") or {}),
                    tick_spacing=int(p.get("tickSpacing", 60)),
                    type=p.get("type"),
                    hooks=p.get("hooks"),
                    enabled=bool(p.get("enabled", True)),
                )
            )
        return cls(pools, tokens)

    @classmethod
    def load(cls, path: str | Path) -> "PoolRegistry":
        p = Path(path)
        if not p.exists():
            logger.warning(f"Pools config not found at {p}; starting with no pools")
            return cls([], {})
        with p.open("r", encoding="utf-8") as fh:
            registry = cls.from_dict(json.load(fh))
        logger.info(f"Loaded {len(registry._pools)} pools from {p}")
        return registry

    def all(self) -> List[PoolConfig]:
        return list(self._pools)

    def enabled(self) -> List[PoolConfig]:
        return [p for p in self._pools if p.enabled]

    def get(self, pool_id: str) -> Optional[PoolConfig]:
        """Look a pool up by route id or subgraph id, case-insensitively."""
        key = (pool_id or "").lower()
        for pool in self._pools:
            if pool.id.lower() == key or pool.subgraph_id == key:
                return pool
        return None

    def token_definitions(self) -> Dict[str, TokenDefinition]:
        return dict(self._tokens)
