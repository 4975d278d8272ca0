import asyncio
from unittest.mock import AsyncMock

import pytest

from poolsync.errors import DerivationFailure, StaleGeneration
from poolsync.models import MutationInfo, OverlayPatch, RefreshOptions, TxInfo
from poolsync.services.overlay import OptimisticOverlay
from poolsync.services.reconciler import (
    MutationReconciler,
    ReconcileContext,
    ReconcilerState,
    ReconcileStatus,
    merge_refreshed,
)
from factories import CHAIN_ID, OWNER, POOL, FakeClock, direct, make_aggregator, usd, vault


class Holder:
    def __init__(self, positions=()):
        self.positions = list(positions)
        self.stale = False
        self.current = True

    def commit(self, positions):
        if self.stale:
            raise StaleGeneration(POOL, 1)
        self.positions = list(positions)

    def context(self):
        return ReconcileContext(
            owner=OWNER,
            chain_id=CHAIN_ID,
            pool_id=POOL,
            valuation=usd,
            snapshot=lambda: tuple(self.positions),
            commit=self.commit,
            is_current=lambda: self.current,
        )


def make_reconciler(direct_positions=(), vault_positions=(), invalidator=None, clock=None):
    aggregator, ids, direct_reader, vault_reader = make_aggregator(direct_positions, vault_positions)
    invalidator = invalidator if invalidator is not None else AsyncMock()
    reconciler = MutationReconciler(aggregator, OptimisticOverlay(), invalidator, throttle_ms=2000, clock=clock or FakeClock())
    return reconciler, ids, direct_reader, invalidator


class TestMergeRefreshed:
    def test_new_prepended_updated_in_place(self):
        previous = [direct("2", amount1=1.0), direct("3", amount1=2.0)]
        fresh = [direct("3", amount1=20.0), direct("1"), direct("2", amount1=10.0)]
        result = merge_refreshed(previous, fresh, drop_missing=False)
        assert [p.position_id for p in result.positions] == ["1", "2", "3"]
        assert result.positions[1].token1.amount == 10.0
        assert result.new_ids == ("1",)
        assert result.updated_ids == ("2", "3")

    def test_missing_kept_unless_dropping(self):
        previous = [direct("1"), direct("2")]
        fresh = [direct("2")]
        assert [p.position_id for p in merge_refreshed(previous, fresh, False).positions] == ["1", "2"]
        dropped = merge_refreshed(previous, fresh, True)
        assert [p.position_id for p in dropped.positions] == ["2"]
        assert dropped.removed_ids == ("1",)

    def test_updating_flag_cleared(self):
        previous = [direct("1", is_optimistically_updating=True)]
        fresh = [direct("1", is_optimistically_updating=True)]
        result = merge_refreshed(previous, fresh, False)
        assert result.positions[0].is_optimistically_updating is None

    def test_keep_vault_spares_only_vault_ids(self):
        previous = [direct("1"), vault("uy-1"), direct("2")]
        fresh = [direct("2")]
        result = merge_refreshed(previous, fresh, drop_missing=True, keep_vault=True)
        assert [p.position_id for p in result.positions] == ["uy-1", "2"]
        assert result.removed_ids == ("1",)

    def test_same_inputs_same_output(self):
        previous = [direct("1"), vault("uy-1")]
        fresh = [direct("2"), direct("1", amount0=3.0)]
        assert merge_refreshed(previous, fresh, False) == merge_refreshed(previous, fresh, False)


class TestRefreshAfterAdd:
    def test_two_calls_within_cooldown_derive_once(self):
        clock = FakeClock()
        reconciler, _, direct_reader, _ = make_reconciler([direct("1")], clock=clock)
        holder = Holder()

        async def run():
            first = await reconciler.refresh_after_add(holder.context())
            clock.advance(1.5)
            second = await reconciler.refresh_after_add(holder.context())
            return first, second

        first, second = asyncio.run(run())
        assert first.status is ReconcileStatus.APPLIED
        assert second.status is ReconcileStatus.THROTTLED
        assert direct_reader.calls == 1

    def test_runs_again_after_cooldown(self):
        clock = FakeClock()
        reconciler, _, direct_reader, _ = make_reconciler([direct("1")], clock=clock)
        holder = Holder()

        async def run():
            await reconciler.refresh_after_add(holder.context())
            clock.advance(2.1)
            return await reconciler.refresh_after_add(holder.context())

        assert asyncio.run(run()).status is ReconcileStatus.APPLIED
        assert direct_reader.calls == 2

    def test_new_position_prepended_and_cache_invalidated(self):
        reconciler, ids, _, invalidator = make_reconciler([direct("1"), direct("2", amount1=5000.0)])
        holder = Holder([direct("1", is_optimistically_updating=True)])
        reconciler.overlay.set("1", OverlayPatch(updating=True))
        options = RefreshOptions(tx_info=TxInfo(tx_hash="0xtx", tvl_delta=1250.0))

        result = asyncio.run(reconciler.refresh_after_add(holder.context(), options))

        assert [p.position_id for p in holder.positions] == ["2", "1"]
        assert holder.positions[1].is_optimistically_updating is None
        assert result.new_ids == ("2",)
        assert ids.invalidated == [OWNER]
        request = invalidator.invalidate_after_tx.await_args.args[0]
        assert request.pool_id == POOL
        assert request.optimistic_deltas.tvl_delta == 1250.0
        assert reconciler.overlay.get("1") is None
        assert reconciler.state is ReconcilerState.RECONCILED

    def test_invalidation_failure_does_not_abort_merge(self):
        invalidator = AsyncMock()
        invalidator.invalidate_after_tx.side_effect = RuntimeError("indexer down")
        reconciler, _, _, _ = make_reconciler([direct("1")], invalidator=invalidator)
        holder = Holder()
        result = asyncio.run(reconciler.refresh_after_add(holder.context()))
        assert result.status is ReconcileStatus.APPLIED
        assert [p.position_id for p in holder.positions] == ["1"]

    def test_failure_keeps_list_and_does_not_consume_throttle(self):
        clock = FakeClock()
        reconciler, _, direct_reader, _ = make_reconciler([direct("1")], clock=clock)
        holder = Holder([direct("9")])
        direct_reader.error = RuntimeError("rpc down")

        with pytest.raises(DerivationFailure):
            asyncio.run(reconciler.refresh_after_add(holder.context()))
        assert [p.position_id for p in holder.positions] == ["9"]
        assert reconciler.state is ReconcilerState.IDLE
        assert isinstance(reconciler.last_error, DerivationFailure)

        direct_reader.error = None
        result = asyncio.run(reconciler.refresh_after_add(holder.context()))
        assert result.status is ReconcileStatus.APPLIED
        assert direct_reader.calls == 2

    def test_stale_commit_is_discarded(self):
        reconciler, _, _, invalidator = make_reconciler([direct("1")])
        holder = Holder([direct("9")])
        holder.stale = True
        result = asyncio.run(reconciler.refresh_after_add(holder.context()))
        assert result.status is ReconcileStatus.STALE
        assert [p.position_id for p in holder.positions] == ["9"]
        invalidator.invalidate_after_tx.assert_not_awaited()

    def test_failure_for_superseded_view_is_stale(self):
        reconciler, _, direct_reader, invalidator = make_reconciler([direct("1")])
        holder = Holder([direct("9")])
        holder.current = False
        direct_reader.error = RuntimeError("rpc down")

        result = asyncio.run(reconciler.refresh_after_add(holder.context()))

        assert result.status is ReconcileStatus.STALE
        assert reconciler.state is ReconcilerState.IDLE
        assert reconciler.last_error is None
        assert [p.position_id for p in holder.positions] == ["9"]
        invalidator.invalidate_after_tx.assert_not_awaited()


class TestRefreshAfterMutation:
    def test_full_burn_removes_position_and_fee_flag(self):
        reconciler, ids, direct_reader, invalidator = make_reconciler([direct("1"), direct("2")])
        holder = Holder([direct("1"), direct("2")])
        reconciler.overlay.set("1", OverlayPatch(fees_cleared=True))
        # position 1 was burned on chain
        direct_reader.positions = [direct("2", amount1=3.0)]

        result = asyncio.run(reconciler.refresh_after_mutation(holder.context(), MutationInfo(tvl_delta=-40.0)))

        assert [p.position_id for p in holder.positions] == ["2"]
        assert result.removed_ids == ("1",)
        assert ids.removed == ["1"]
        assert reconciler.overlay.fees_cleared_ids == frozenset()
        assert reconciler.overlay.get("1") is None
        request = invalidator.invalidate_after_tx.await_args.args[0]
        assert request.optimistic_deltas.tvl_delta == -40.0

    def test_not_throttled(self):
        reconciler, _, direct_reader, _ = make_reconciler([direct("1")])
        holder = Holder()

        async def run():
            await reconciler.refresh_after_mutation(holder.context())
            await reconciler.refresh_after_mutation(holder.context())

        asyncio.run(run())
        assert direct_reader.calls == 2

    def test_failure_keeps_list_but_clears_fee_flags(self):
        reconciler, _, direct_reader, _ = make_reconciler([direct("1")])
        holder = Holder([direct("1")])
        reconciler.overlay.set("1", OverlayPatch(fees_cleared=True))
        direct_reader.error = RuntimeError("rpc down")

        with pytest.raises(DerivationFailure):
            asyncio.run(reconciler.refresh_after_mutation(holder.context()))
        assert [p.position_id for p in holder.positions] == ["1"]
        assert reconciler.overlay.fees_cleared_ids == frozenset()

    def test_vault_outage_does_not_remove_vault_positions(self):
        reconciler, ids, _, _ = make_reconciler([direct("1")], [vault("uy-1")])
        holder = Holder([direct("1"), vault("uy-1")])
        reconciler.aggregator.vault.reader.error = RuntimeError("vault api down")

        result = asyncio.run(reconciler.refresh_after_mutation(holder.context()))

        assert result.status is ReconcileStatus.APPLIED
        assert [p.position_id for p in holder.positions] == ["1", "uy-1"]
        assert result.removed_ids == ()
        assert ids.removed == []

    def test_failure_for_superseded_view_is_stale(self):
        reconciler, _, direct_reader, _ = make_reconciler([direct("1")])
        holder = Holder([direct("1")])
        holder.current = False
        direct_reader.error = RuntimeError("rpc down")

        result = asyncio.run(reconciler.refresh_after_mutation(holder.context()))

        assert result.status is ReconcileStatus.STALE
        assert reconciler.last_error is None
