from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional, Sequence, Tuple

from poolsync.errors import DerivationFailure, StaleGeneration
from poolsync.models import BasePosition, DirectPosition, MutationInfo, RefreshOptions, is_vault_position_id
from poolsync.services.aggregator import PositionAggregator, Valuation
from poolsync.services.invalidation import InvalidationRequest, OptimisticDeltas, TxInvalidator
from poolsync.services.overlay import OptimisticOverlay

logger = logging.getLogger(__name__)


class ReconcilerState(str, Enum):
    IDLE = "idle"
    DERIVING = "deriving"
    RECONCILED = "reconciled"
    FAILED = "failed"


class ReconcileStatus(str, Enum):
    APPLIED = "applied"
    THROTTLED = "throttled"
    STALE = "stale"


@dataclass(frozen=True)
class ReconcileResult:
    status: ReconcileStatus
    positions: Tuple[BasePosition, ...] = ()
    new_ids: Tuple[str, ...] = ()
    updated_ids: Tuple[str, ...] = ()
    removed_ids: Tuple[str, ...] = ()

    @property
    def fresh_ids(self) -> Tuple[str, ...]:
        return self.new_ids + self.updated_ids


@dataclass
class ReconcileContext:
    """What a reconciliation needs from the view that owns the position list.

    ``commit`` replaces the whole list and raises StaleGeneration when the
    view has moved on to another pool since the context was created.
    ``is_current`` answers the same question without committing.
    """

    owner: str
    chain_id: int
    pool_id: str
    valuation: Valuation
    snapshot: Callable[[], Sequence[BasePosition]]
    commit: Callable[[List[BasePosition]], None]
    is_current: Callable[[], bool] = lambda: True


def _settled(position: BasePosition) -> BasePosition:
    if isinstance(position, DirectPosition) and position.is_optimistically_updating is not None:
        return position.model_copy(update={"is_optimistically_updating": None})
    return position


def merge_refreshed(
    previous: Sequence[BasePosition],
    fresh: Sequence[BasePosition],
    drop_missing: bool,
    keep_vault: bool = False,
) -> ReconcileResult:
    """Fold a fresh derivation into the current ordered list.

    New positions are prepended in derivation order, known positions keep
    their slot and take the fresh data. With ``drop_missing`` positions absent
    from the fresh result are removed, except vault positions when
    ``keep_vault`` is set (the vault source did not answer).
    """
    fresh_by_id = {p.position_id: p for p in fresh}
    previous_ids = {p.position_id for p in previous}

    new = [_settled(p) for p in fresh if p.position_id not in previous_ids]
    kept: List[BasePosition] = []
    updated_ids: List[str] = []
    removed_ids: List[str] = []
    for p in previous:
        match = fresh_by_id.get(p.position_id)
        if match is not None:
            kept.append(_settled(match))
            updated_ids.append(p.position_id)
        elif drop_missing and not (keep_vault and is_vault_position_id(p.position_id)):
            removed_ids.append(p.position_id)
        else:
            kept.append(p)

    return ReconcileResult(
        status=ReconcileStatus.APPLIED,
        positions=tuple(new + kept),
        new_ids=tuple(p.position_id for p in new),
        updated_ids=tuple(updated_ids),
        removed_ids=tuple(removed_ids),
    )


class MutationReconciler:
    """Brings the position list back in line with the chain after a transaction.

    IDLE -> DERIVING -> RECONCILED on success, IDLE -> DERIVING -> FAILED -> IDLE
    on error. ``refresh_after_add`` runs at most once per ``throttle_ms``;
    the throttle clock only advances for calls that actually execute.
    """

    def __init__(
        self,
        aggregator: PositionAggregator,
        overlay: OptimisticOverlay,
        invalidator: Optional[TxInvalidator] = None,
        throttle_ms: float = 2000,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.aggregator = aggregator
        self.overlay = overlay
        self.invalidator = invalidator
        self.throttle_ms = throttle_ms
        self._clock = clock
        self._last_run_ms: Optional[float] = None
        self.state = ReconcilerState.IDLE
        self.last_error: Optional[Exception] = None

    def _transition(self, state: ReconcilerState) -> None:
        logger.debug(f"Reconciler {self.state.value} -> {state.value}")
        self.state = state

    def _now_ms(self) -> float:
        return self._clock() * 1000.0

    def is_throttled(self) -> bool:
        return self._last_run_ms is not None and self._now_ms() - self._last_run_ms < self.throttle_ms

    async def _derive_and_merge(self, ctx: ReconcileContext, drop_missing: bool) -> ReconcileResult:
        self._transition(ReconcilerState.DERIVING)
        try:
            derivation = await self.aggregator.derive_with_sources(ctx.owner, ctx.chain_id, ctx.pool_id, ctx.valuation)
        except DerivationFailure as e:
            if not ctx.is_current():
                logger.debug(f"Ignoring reconciliation failure for a superseded view: {e}")
                self._transition(ReconcilerState.IDLE)
                return ReconcileResult(status=ReconcileStatus.STALE)
            self.last_error = e
            self._transition(ReconcilerState.FAILED)
            logger.error(f"Reconciliation failed for {ctx.owner} in pool {ctx.pool_id}: {e}")
            self._transition(ReconcilerState.IDLE)
            raise

        result = merge_refreshed(
            ctx.snapshot(),
            derivation.positions,
            drop_missing,
            keep_vault=not derivation.vault_available,
        )
        try:
            ctx.commit(list(result.positions))
        except StaleGeneration as e:
            logger.debug(f"Discarding reconciliation result: {e}")
            self._transition(ReconcilerState.IDLE)
            return ReconcileResult(status=ReconcileStatus.STALE)
        self.last_error = None
        self._transition(ReconcilerState.RECONCILED)
        return result

    async def _invalidate(self, ctx: ReconcileContext, deltas: Optional[OptimisticDeltas], on_clear: Optional[Callable[[], None]] = None) -> None:
        if self.invalidator is None:
            return
        request = InvalidationRequest(
            owner=ctx.owner,
            chain_id=ctx.chain_id,
            pool_id=ctx.pool_id,
            optimistic_deltas=deltas,
            on_clear=on_clear,
        )
        try:
            await self.invalidator.invalidate_after_tx(request)
        except Exception as e:
            logger.warning(f"Post-transaction invalidation failed for pool {ctx.pool_id}: {e}")

    async def refresh_after_add(self, ctx: ReconcileContext, options: Optional[RefreshOptions] = None) -> ReconcileResult:
        if self.is_throttled():
            logger.debug(f"refresh_after_add throttled for {ctx.owner}")
            return ReconcileResult(status=ReconcileStatus.THROTTLED)

        previous_run = self._last_run_ms
        self._last_run_ms = self._now_ms()
        try:
            # the new position id is not in any cached id list yet
            await self.aggregator.ids.invalidate(ctx.owner)
            result = await self._derive_and_merge(ctx, drop_missing=False)
        except Exception:
            self._last_run_ms = previous_run
            raise
        if result.status is not ReconcileStatus.APPLIED:
            return result

        tx = options.tx_info if options else None
        deltas = OptimisticDeltas(tvl_delta=tx.tvl_delta) if tx and tx.tvl_delta else None
        await self._invalidate(ctx, deltas)
        self.overlay.clear_many(result.fresh_ids)
        logger.info(f"Reconciled after add: {len(result.new_ids)} new, {len(result.updated_ids)} updated")
        return result

    async def refresh_after_mutation(self, ctx: ReconcileContext, info: Optional[MutationInfo] = None) -> ReconcileResult:
        try:
            result = await self._derive_and_merge(ctx, drop_missing=True)
            if result.status is not ReconcileStatus.APPLIED:
                return result

            for position_id in result.removed_ids:
                await self.aggregator.ids.remove(ctx.owner, position_id)

            deltas = OptimisticDeltas(tvl_delta=info.tvl_delta) if info and info.tvl_delta else None
            await self._invalidate(ctx, deltas, on_clear=self.overlay.clear_fees_cleared)
            self.overlay.clear_many(result.fresh_ids + result.removed_ids)
            logger.info(f"Reconciled after mutation: {len(result.updated_ids)} updated, {len(result.removed_ids)} removed")
            return result
        finally:
            self.overlay.clear_fees_cleared()
