from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional, Sequence

from poolsync.errors import DerivationFailure
from poolsync.models import BasePosition, DirectPosition, VaultPosition
from poolsync.services.adapters import DirectPositionAdapter, OwnedPositionIdSource, VaultPositionAdapter

logger = logging.getLogger(__name__)

Valuation = Callable[[BasePosition], float]


def _safe_value(valuation: Valuation, position: BasePosition) -> float:
    try:
        value = float(valuation(position))
    except Exception as e:
        logger.debug(f"Valuation failed for position {position.position_id}: {e}")
        return 0.0
    return value if math.isfinite(value) else 0.0


def aggregate(
    direct_positions: Iterable[DirectPosition],
    vault_positions: Iterable[VaultPosition],
    pool_id_filter: str,
    valuation: Valuation,
) -> List[BasePosition]:
    """Merge both position sources into one list for a single pool.

    Pure: identical inputs give identical, order-stable output. When an id is
    present in both sources the direct position wins; within a source the
    first occurrence wins. Sorted by descending valuation, ties keep input
    order.
    """
    pool_lc = (pool_id_filter or "").strip().lower()
    seen: set[str] = set()
    merged: List[BasePosition] = []
    for pos in list(direct_positions) + list(vault_positions):
        if pos.position_id in seen:
            continue
        seen.add(pos.position_id)
        if pos.pool_id == pool_lc:
            merged.append(pos)
    values = {p.position_id: _safe_value(valuation, p) for p in merged}
    # sorted() is stable with reverse=True
    return sorted(merged, key=lambda p: values[p.position_id], reverse=True)


@dataclass(frozen=True)
class Derivation:
    """Derived positions plus whether the vault source answered.

    When ``vault_available`` is False the positions hold direct positions
    only, and absence of a vault id says nothing about that position.
    """

    positions: List[BasePosition]
    vault_available: bool = True


class PositionAggregator:
    def __init__(
        self,
        ids: OwnedPositionIdSource,
        direct: DirectPositionAdapter,
        vault: VaultPositionAdapter,
        network_mode: str = "mainnet",
    ):
        self.ids = ids
        self.direct = direct
        self.vault = vault
        self.network_mode = network_mode

    async def fetch_all(
        self, owner: str, chain_id: int, position_ids: Sequence[str]
    ) -> tuple[List[DirectPosition], Optional[List[VaultPosition]]]:
        """Direct failures raise; a vault failure degrades to ``None``."""
        direct, vault = await asyncio.gather(
            self.direct.fetch(owner, position_ids, chain_id),
            self.vault.fetch(owner, chain_id, self.network_mode),
            return_exceptions=True,
        )
        if isinstance(direct, BaseException):
            raise direct
        if isinstance(vault, BaseException):
            if isinstance(vault, asyncio.CancelledError):
                raise vault
            logger.warning(f"Failed to fetch vault positions for {owner}: {vault}")
            return direct, None
        return direct, vault

    async def derive_with_sources(
        self,
        owner: str,
        chain_id: int,
        pool_id: str,
        valuation: Valuation,
        position_ids: Optional[Sequence[str]] = None,
    ) -> Derivation:
        """Re-derive the owner's positions in ``pool_id``. Never retries."""
        try:
            if position_ids is None:
                position_ids = await self.ids.load_owned_position_ids(owner)
            direct, vault = await self.fetch_all(owner, chain_id, position_ids)
        except asyncio.CancelledError:
            raise
        except DerivationFailure:
            raise
        except Exception as e:
            raise DerivationFailure(f"Position derivation failed for {owner}: {e}") from e
        positions = aggregate(direct, vault or [], pool_id, valuation)
        logger.debug(f"Derived {len(positions)} positions for {owner} in pool {pool_id}")
        return Derivation(positions=positions, vault_available=vault is not None)

    async def derive(
        self,
        owner: str,
        chain_id: int,
        pool_id: str,
        valuation: Valuation,
        position_ids: Optional[Sequence[str]] = None,
    ) -> List[BasePosition]:
        derivation = await self.derive_with_sources(owner, chain_id, pool_id, valuation, position_ids)
        return derivation.positions
