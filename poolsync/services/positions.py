from __future__ import annotations

import logging
from typing import List, Optional, Tuple

from poolsync.errors import DerivationFailure, StaleGeneration
from poolsync.models import BasePosition, MutationInfo, OverlayPatch, RefreshOptions
from poolsync.services.aggregator import PositionAggregator, Valuation
from poolsync.services.overlay import OptimisticOverlay
from poolsync.services.reconciler import MutationReconciler, ReconcileContext, ReconcileResult, ReconcileStatus

logger = logging.getLogger(__name__)


class PositionsView:
    """The connected owner's positions in the active pool, overlay applied.

    Owns the authoritative list and replaces it wholesale. Every navigation
    bumps a generation counter; results that arrive for an older generation
    are dropped.
    """

    def __init__(
        self,
        aggregator: PositionAggregator,
        reconciler: MutationReconciler,
        valuation: Valuation,
        overlay_max_age: float = 300,
    ):
        self.aggregator = aggregator
        self.reconciler = reconciler
        self.overlay: OptimisticOverlay = reconciler.overlay
        self.valuation = valuation
        self.overlay_max_age = overlay_max_age
        self.owner: Optional[str] = None
        self.chain_id: Optional[int] = None
        self.pool_id: Optional[str] = None
        self.is_loading = False
        self.is_deriving_new_position = False
        self._positions: Tuple[BasePosition, ...] = ()
        self._generation = 0
        self._loaded = False

    @property
    def positions(self) -> List[BasePosition]:
        return self.overlay.apply_all(self._positions)

    @property
    def optimistically_cleared_fees(self) -> List[str]:
        return sorted(self.overlay.fees_cleared_ids)

    @property
    def is_connected(self) -> bool:
        return bool(self.owner and self.chain_id and self.pool_id)

    def _commit_for(self, generation: int):
        def commit(positions: List[BasePosition]) -> None:
            if generation != self._generation:
                raise StaleGeneration(self.pool_id, generation)
            self._positions = tuple(positions)
        return commit

    def _context(self) -> ReconcileContext:
        generation = self._generation
        return ReconcileContext(
            owner=self.owner,
            chain_id=self.chain_id,
            pool_id=self.pool_id,
            valuation=self.valuation,
            snapshot=lambda: self._positions,
            commit=self._commit_for(generation),
            is_current=lambda: generation == self._generation,
        )

    async def navigate(self, owner: str, chain_id: int, pool_id: str) -> List[BasePosition]:
        same = (
            self.owner == (owner or "").lower()
            and self.chain_id == chain_id
            and self.pool_id == (pool_id or "").lower()
        )
        if same and self._loaded:
            return self.positions
        self._generation += 1
        self.owner = (owner or "").lower()
        self.chain_id = chain_id
        self.pool_id = (pool_id or "").lower()
        self._positions = ()
        self._loaded = False
        self.overlay.clear_all()
        return await self.refresh()

    def disconnect(self) -> None:
        self._generation += 1
        self.owner = self.chain_id = self.pool_id = None
        self._positions = ()
        self._loaded = False
        self.is_loading = False
        self.is_deriving_new_position = False
        self.overlay.clear_all()

    def _on_ids_refreshed(self, generation: int):
        async def on_refreshed(fresh_ids: List[str]) -> None:
            if generation != self._generation:
                return
            try:
                fresh = await self.aggregator.derive(
                    self.owner, self.chain_id, self.pool_id, self.valuation, position_ids=fresh_ids
                )
                self._commit_for(generation)(fresh)
            except StaleGeneration as e:
                logger.debug(f"Dropping background position refresh: {e}")
            except DerivationFailure as e:
                logger.warning(f"Background position refresh failed: {e}")
        return on_refreshed

    async def refresh(self) -> List[BasePosition]:
        """Load the owner's positions for the active pool.

        A failure on the first load of a pool empties the list; later
        failures keep the previous list. Either way DerivationFailure is
        raised.
        """
        if not self.is_connected:
            self._positions = ()
            self.is_loading = False
            return []

        generation = self._generation
        initial = not self._loaded
        self.overlay.prune(self.overlay_max_age)
        self.is_loading = True
        try:
            ids = await self.aggregator.ids.load_owned_position_ids(
                self.owner, on_refreshed=self._on_ids_refreshed(generation)
            )
            fresh = await self.aggregator.derive(
                self.owner, self.chain_id, self.pool_id, self.valuation, position_ids=ids
            )
        except Exception as e:
            if generation != self._generation:
                logger.debug(f"Dropping position load failure for an inactive pool: {e}")
                return self.positions
            logger.error(f"Failed to load positions for {self.owner}: {e}")
            if initial:
                self._positions = ()
            if isinstance(e, DerivationFailure):
                raise
            raise DerivationFailure(f"Failed to load positions: {e}") from e
        finally:
            if generation == self._generation:
                self.is_loading = False

        try:
            self._commit_for(generation)(fresh)
        except StaleGeneration as e:
            logger.debug(f"Dropping position load: {e}")
            return self.positions
        self._loaded = True
        self.overlay.clear_many(p.position_id for p in fresh)
        return self.positions

    async def refresh_after_add(self, options: Optional[RefreshOptions] = None) -> Optional[ReconcileResult]:
        if not self.is_connected:
            return None
        if self.reconciler.is_throttled():
            return ReconcileResult(status=ReconcileStatus.THROTTLED)
        self.is_deriving_new_position = True
        try:
            return await self.reconciler.refresh_after_add(self._context(), options)
        finally:
            self.is_deriving_new_position = False

    async def refresh_after_mutation(self, info: Optional[MutationInfo] = None) -> Optional[ReconcileResult]:
        if not self.is_connected:
            return None
        return await self.reconciler.refresh_after_mutation(self._context(), info)

    def set_optimistic(self, position_id: str, patch: OverlayPatch) -> None:
        self.overlay.set(position_id, patch)

    def clear_optimistic_fees(self, position_id: str) -> None:
        self.overlay.set(position_id, OverlayPatch(fees_cleared=True))

    def clear_optimistic(self, position_id: str) -> None:
        self.overlay.clear(position_id)

    def clear_all_optimistic(self) -> None:
        self.overlay.clear_all()

    async def remove_optimistically(self, position_id: str) -> None:
        """Drop a fully burned position ahead of the next authoritative fetch."""
        pid = str(position_id)
        self._positions = tuple(p for p in self._positions if p.position_id != pid)
        self.overlay.clear(pid)
        if self.owner:
            await self.aggregator.ids.remove(self.owner, pid)
