from __future__ import annotations

import logging
from typing import Any, Dict, List

import httpx

from poolsync.config import get_settings
from poolsync.errors import FetchFailure
from poolsync.http import HttpClient
from poolsync.models import OwnedPositionId

logger = logging.getLogger(__name__)


def _owned_id_from_item(item: Any) -> OwnedPositionId | None:
    if isinstance(item, dict):
        pid = str(item.get("id") or "")
        if not pid:
            return None
        return OwnedPositionId(
            id=pid,
            created_at=int(float(item.get("createdAt") or 0)),
            last_timestamp=int(float(item.get("lastTimestamp") or 0)),
        )
    if item:
        return OwnedPositionId(id=str(item))
    return None


async def fetch_owned_position_ids(http: HttpClient, owner: str) -> List[OwnedPositionId]:
    """Fetch the ids (plus creation/last-modified timestamps) of positions held by ``owner``."""
    url = get_settings().backend_url("/api/liquidity/get-positions")
    params = {"ownerAddress": owner, "idsOnly": 1, "withCreatedAt": 1}
    try:
        resp = await http.get(url, params=params)
        data = resp.json()
    except (httpx.HTTPError, ValueError) as e:
        raise FetchFailure(f"Owned position ids fetch failed: {e}", url=url) from e

    out: List[OwnedPositionId] = []
    if not isinstance(data, list):
        logger.warning(f"Unexpected owned-ids payload for {owner}: {type(data).__name__}")
        return out
    for item in data:
        owned = _owned_id_from_item(item)
        if owned is not None:
            out.append(owned)
    return out


class BackendDirectPositionReader:
    """Derives direct positions from token ids through the backend's chain reader."""

    def __init__(self, http: HttpClient):
        self.http = http

    async def derive_from_ids(self, owner: str, ids, chain_id: int, known_timestamps) -> List[Dict[str, Any]]:
        url = get_settings().backend_url("/api/liquidity/derive-positions")
        body = {"owner": owner, "positionIds": list(ids), "chainId": chain_id}
        try:
            resp = await self.http.post(url, json=body)
            data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            raise FetchFailure(f"Failed to derive positions: {e}", url=url) from e
        positions = data.get("positions") if isinstance(data, dict) else None
        return [p for p in positions if isinstance(p, dict)] if isinstance(positions, list) else []


class BackendVaultPositionReader:
    """Reads hook-vault share positions for an owner across enabled vault pools."""

    def __init__(self, http: HttpClient):
        self.http = http

    async def derive_vault_positions(self, owner: str, chain_id: int, network_mode: str) -> List[Dict[str, Any]]:
        url = get_settings().backend_url("/api/liquidity/unified-yield-positions")
        params = {"ownerAddress": owner, "chainId": chain_id, "network": network_mode}
        try:
            resp = await self.http.get(url, params=params)
            data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            raise FetchFailure(f"Vault positions fetch failed: {e}", url=url) from e
        positions = data.get("positions") if isinstance(data, dict) else None
        return [p for p in positions if isinstance(p, dict)] if isinstance(positions, list) else []
