from __future__ import annotations


class PoolSyncError(Exception):
    """Base class for recoverable failures scoped to one pool view."""


class FetchFailure(PoolSyncError):
    """An endpoint failed or returned an empty payload."""

    def __init__(self, message: str, *, url: str | None = None):
        super().__init__(message)
        self.url = url


class DerivationFailure(PoolSyncError):
    """A chain read needed to derive positions failed."""


class StaleGeneration(PoolSyncError):
    """A result arrived for a pool that is no longer active.

    Never surfaced to users; callers log it and drop the result.
    """

    def __init__(self, pool_id: str | None, generation: int):
        super().__init__(f"stale result for pool={pool_id} generation={generation}")
        self.pool_id = pool_id
        self.generation = generation


class UnknownPool(PoolSyncError, LookupError):
    """No pool with this id is configured."""
