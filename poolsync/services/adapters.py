from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence, Union

from pydantic import ValidationError

from poolsync.models import (
    DirectPosition,
    OwnedPositionId,
    TokenLeg,
    TokenRef,
    VaultPosition,
    is_vault_position_id,
    make_vault_position_id,
)
from poolsync.services.position_cache import RefreshCallback

logger = logging.getLogger(__name__)

RawDirect = Union[DirectPosition, Mapping[str, Any]]
RawVault = Union[VaultPosition, Mapping[str, Any]]


class OwnedPositionIdSource(Protocol):
    async def load_owned_position_ids(self, owner: str, on_refreshed: Optional[RefreshCallback] = None) -> List[str]:
        ...

    def known_timestamps(self, owner: str) -> Dict[str, OwnedPositionId]:
        ...

    async def invalidate(self, owner: str) -> None:
        ...

    async def remove(self, owner: str, position_id: str) -> None:
        ...


class DirectPositionReader(Protocol):
    async def derive_from_ids(
        self,
        owner: str,
        ids: Sequence[str],
        chain_id: int,
        known_timestamps: Mapping[str, OwnedPositionId],
    ) -> Sequence[RawDirect]:
        ...


class VaultPositionReader(Protocol):
    async def derive_vault_positions(self, owner: str, chain_id: int, network_mode: str) -> Sequence[RawVault]:
        ...


def _num(value: Any, default: float = 0.0) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _opt_num(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def normalize_direct_position(
    raw: RawDirect,
    owner: str,
    known_timestamps: Mapping[str, OwnedPositionId],
) -> DirectPosition:
    if isinstance(raw, DirectPosition):
        return raw
    position_id = str(raw.get("positionId") or raw.get("id") or "")
    known = known_timestamps.get(position_id)
    t0 = raw.get("token0") or {}
    t1 = raw.get("token1") or {}
    block_ts = int(_num(raw.get("blockTimestamp"))) or (known.created_at if known else 0)
    last_ts = int(_num(raw.get("lastTimestamp"))) or (known.last_timestamp if known else 0)
    return DirectPosition(
        position_id=position_id,
        pool_id=raw.get("poolId") or "",
        owner=str(raw.get("owner") or owner),
        token0=TokenLeg(address=str(t0.get("address") or ""), symbol=str(t0.get("symbol") or "T0"), amount=_num(t0.get("amount"))),
        token1=TokenLeg(address=str(t1.get("address") or ""), symbol=str(t1.get("symbol") or "T1"), amount=_num(t1.get("amount"))),
        block_timestamp=block_ts,
        last_timestamp=last_ts,
        tick_lower=int(raw["tickLower"]),
        tick_upper=int(raw["tickUpper"]),
        liquidity_raw=str(raw.get("liquidityRaw") or "0"),
        is_in_range=bool(raw.get("isInRange", False)),
        token0_uncollected_fees=_opt_num(raw.get("token0UncollectedFees")),
        token1_uncollected_fees=_opt_num(raw.get("token1UncollectedFees")),
    )


def normalize_vault_position(raw: RawVault, owner: str) -> Optional[VaultPosition]:
    """Returns None when the owner holds no shares."""
    if isinstance(raw, VaultPosition):
        return raw
    share_balance = str(raw.get("shareBalance") or "0")
    if _num(share_balance) <= 0:
        return None
    hook = str(raw.get("hookAddress") or "")
    position_id = str(raw.get("positionId") or raw.get("id") or make_vault_position_id(hook, owner))
    created = int(_num(raw.get("createdAt")))
    return VaultPosition(
        position_id=position_id,
        pool_id=raw.get("poolId") or "",
        owner=owner,
        token0=TokenRef(address=str(raw.get("token0Address") or ""), symbol=str(raw.get("token0Symbol") or "T0")),
        token1=TokenRef(address=str(raw.get("token1Address") or ""), symbol=str(raw.get("token1Symbol") or "T1")),
        block_timestamp=created,
        last_timestamp=created,
        token0_amount=_num(raw.get("token0Amount")),
        token1_amount=_num(raw.get("token1Amount")),
        hook_address=hook,
        share_balance=share_balance,
    )


class DirectPositionAdapter:
    def __init__(self, reader: DirectPositionReader, ids: OwnedPositionIdSource):
        self.reader = reader
        self.ids = ids

    async def fetch(self, owner: str, position_ids: Sequence[str], chain_id: int) -> List[DirectPosition]:
        direct_ids = [pid for pid in position_ids if not is_vault_position_id(pid)]
        if not direct_ids:
            return []
        timestamps = self.ids.known_timestamps(owner)
        raw_positions = await self.reader.derive_from_ids(owner, direct_ids, chain_id, timestamps)
        out: List[DirectPosition] = []
        for raw in raw_positions:
            try:
                out.append(normalize_direct_position(raw, owner, timestamps))
            except (KeyError, TypeError, ValueError, ValidationError) as e:
                logger.debug(f"Skipping malformed direct position: {e}")
        return out


class VaultPositionAdapter:
    def __init__(self, reader: VaultPositionReader):
        self.reader = reader

    async def fetch(self, owner: str, chain_id: int, network_mode: str) -> List[VaultPosition]:
        """Reader failures propagate; the aggregator decides how to degrade."""
        raw_positions = await self.reader.derive_vault_positions(owner, chain_id, network_mode)
        out: List[VaultPosition] = []
        for raw in raw_positions:
            try:
                pos = normalize_vault_position(raw, owner)
            except (TypeError, ValueError, ValidationError) as e:
                logger.debug(f"Skipping malformed vault position: {e}")
                continue
            if pos is not None:
                out.append(pos)
        return out
