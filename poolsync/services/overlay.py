from __future__ import annotations

import time
from types import MappingProxyType
from typing import Callable, Dict, FrozenSet, Iterable, List, Mapping, Optional, Sequence

from poolsync.models import (
    BasePosition,
    DirectPosition,
    OverlayEntry,
    OverlayPatch,
    VaultPosition,
    is_vault_position_id,
)


def _shift(amount: float, delta: float) -> float:
    return max(0.0, amount + delta) if delta else amount


def apply_patch(position: BasePosition, patch: Optional[OverlayPatch]) -> BasePosition:
    """Return ``position`` with ``patch`` merged in. The input is never mutated."""
    if patch is None or patch.is_empty():
        return position
    if isinstance(position, DirectPosition):
        update: Dict[str, object] = {}
        if patch.amount0_delta:
            update["token0"] = position.token0.model_copy(update={"amount": _shift(position.token0.amount, patch.amount0_delta)})
        if patch.amount1_delta:
            update["token1"] = position.token1.model_copy(update={"amount": _shift(position.token1.amount, patch.amount1_delta)})
        if patch.fees_cleared:
            update["token0_uncollected_fees"] = 0.0
            update["token1_uncollected_fees"] = 0.0
        if patch.updating is not None:
            update["is_optimistically_updating"] = True if patch.updating else None
        return position.model_copy(update=update) if update else position
    if isinstance(position, VaultPosition):
        # no fee or range fields on vault positions
        if not (patch.amount0_delta or patch.amount1_delta):
            return position
        return position.model_copy(
            update={
                "token0_amount": _shift(position.token0_amount, patch.amount0_delta),
                "token1_amount": _shift(position.token1_amount, patch.amount1_delta),
            }
        )
    return position


class OptimisticOverlay:
    """Short-lived local patches keyed by position id.

    The entry map is replaced wholesale on every change, so a snapshot held
    by a reader never changes underneath it.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._entries: Mapping[str, OverlayEntry] = MappingProxyType({})

    def _replace(self, entries: Dict[str, OverlayEntry]) -> None:
        self._entries = MappingProxyType(entries)

    @property
    def entries(self) -> Mapping[str, OverlayEntry]:
        return self._entries

    def get(self, position_id: str) -> Optional[OverlayPatch]:
        entry = self._entries.get(str(position_id))
        return entry.patch if entry else None

    def set(self, position_id: str, patch: OverlayPatch) -> None:
        pid = str(position_id)
        if is_vault_position_id(pid):
            patch = patch.without_fee_fields()
        existing = self._entries.get(pid)
        merged = existing.patch.merged(patch) if existing else patch
        if merged.is_empty():
            self.clear(pid)
            return
        created_at = existing.created_at if existing else self._clock()
        entries = dict(self._entries)
        entries[pid] = OverlayEntry(position_id=pid, patch=merged, created_at=created_at)
        self._replace(entries)

    def clear(self, position_id: str) -> None:
        self.clear_many([position_id])

    def clear_many(self, position_ids: Iterable[str]) -> None:
        drop = {str(p) for p in position_ids}
        if not drop.intersection(self._entries):
            return
        self._replace({k: v for k, v in self._entries.items() if k not in drop})

    def clear_all(self) -> None:
        self._replace({})

    def clear_fees_cleared(self) -> None:
        entries: Dict[str, OverlayEntry] = {}
        for pid, entry in self._entries.items():
            if entry.patch.fees_cleared is None:
                entries[pid] = entry
                continue
            patch = entry.patch.model_copy(update={"fees_cleared": None})
            if not patch.is_empty():
                entries[pid] = entry.model_copy(update={"patch": patch})
        self._replace(entries)

    def prune(self, max_age_seconds: float) -> List[str]:
        """Drop entries older than ``max_age_seconds``; returns the dropped ids."""
        now = self._clock()
        expired = [pid for pid, e in self._entries.items() if now - e.created_at > max_age_seconds]
        self.clear_many(expired)
        return expired

    @property
    def fees_cleared_ids(self) -> FrozenSet[str]:
        return frozenset(pid for pid, e in self._entries.items() if e.patch.fees_cleared)

    def apply(self, position: BasePosition) -> BasePosition:
        return apply_patch(position, self.get(position.position_id))

    def apply_all(self, positions: Sequence[BasePosition]) -> List[BasePosition]:
        return [self.apply(p) for p in positions]
