import asyncio

from poolsync.models import OwnedPositionId
from poolsync.services.cache import Cache, owned_ids_key
from poolsync.services.position_cache import PositionRepository
from factories import OWNER, FakeClock


class FakeRedis:
    def __init__(self):
        self.data = {}
        self.expiry = {}

    async def get(self, key):
        return self.data.get(key)

    async def set(self, key, value, ex=None):
        self.data[key] = value
        self.expiry[key] = ex

    async def delete(self, key):
        self.data.pop(key, None)


class IdFetcher:
    def __init__(self, ids=("1", "2")):
        self.ids = list(ids)
        self.calls = 0
        self.gate = None
        self.error = None

    async def __call__(self, owner):
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return [OwnedPositionId(id=i, created_at=100, last_timestamp=200) for i in self.ids]


class TestPositionRepository:
    def test_concurrent_loads_share_one_request(self):
        fetcher = IdFetcher()
        repo = PositionRepository(fetcher)

        async def run():
            fetcher.gate = asyncio.Event()
            first = asyncio.create_task(repo.load_owned_position_ids(OWNER))
            second = asyncio.create_task(repo.load_owned_position_ids(OWNER.upper()))
            await asyncio.sleep(0)
            fetcher.gate.set()
            return await asyncio.gather(first, second)

        first, second = asyncio.run(run())
        assert first == second == ["1", "2"]
        assert fetcher.calls == 1

    def test_served_from_memory_until_ttl(self):
        clock = FakeClock()
        fetcher = IdFetcher()
        repo = PositionRepository(fetcher, ttl_seconds=3600, clock=clock)

        async def run():
            await repo.load_owned_position_ids(OWNER)
            clock.advance(3599)
            await repo.load_owned_position_ids(OWNER)
            assert fetcher.calls == 1
            clock.advance(1)
            await repo.load_owned_position_ids(OWNER)

        asyncio.run(run())
        assert fetcher.calls == 2

    def test_known_timestamps(self):
        repo = PositionRepository(IdFetcher(["7"]))
        asyncio.run(repo.load_owned_position_ids(OWNER))
        known = repo.known_timestamps(OWNER)
        assert known["7"].created_at == 100
        assert repo.known_timestamps("0xother") == {}

    def test_invalidate_forces_refetch(self):
        fetcher = IdFetcher()
        repo = PositionRepository(fetcher)

        async def run():
            await repo.load_owned_position_ids(OWNER)
            await repo.invalidate(OWNER)
            fetcher.ids = ["1", "2", "3"]
            return await repo.load_owned_position_ids(OWNER)

        assert asyncio.run(run()) == ["1", "2", "3"]
        assert fetcher.calls == 2

    def test_remove_drops_single_id(self):
        fetcher = IdFetcher()
        repo = PositionRepository(fetcher)

        async def run():
            await repo.load_owned_position_ids(OWNER)
            await repo.remove(OWNER, "1")
            return await repo.load_owned_position_ids(OWNER)

        assert asyncio.run(run()) == ["2"]
        assert fetcher.calls == 1

    def test_background_refresh_delivers_changed_list(self):
        fetcher = IdFetcher(["1"])
        repo = PositionRepository(fetcher)
        delivered = []

        async def run():
            await repo.load_owned_position_ids(OWNER)
            fetcher.ids = ["1", "9"]
            done = asyncio.Event()

            async def on_refreshed(ids):
                delivered.append(ids)
                done.set()

            served = await repo.load_owned_position_ids(OWNER, on_refreshed=on_refreshed)
            await asyncio.wait_for(done.wait(), timeout=1)
            return served

        assert asyncio.run(run()) == ["1"]
        assert delivered == [["1", "9"]]

    def test_background_refresh_silent_when_unchanged(self):
        fetcher = IdFetcher(["1"])
        repo = PositionRepository(fetcher)
        delivered = []

        async def on_refreshed(ids):
            delivered.append(ids)

        async def run():
            await repo.load_owned_position_ids(OWNER)
            await repo.load_owned_position_ids(OWNER, on_refreshed=on_refreshed)
            for _ in range(10):
                await asyncio.sleep(0)

        asyncio.run(run())
        assert fetcher.calls == 2
        assert delivered == []

    def test_persisted_ids_survive_restart(self):
        redis = FakeRedis()
        first = PositionRepository(IdFetcher(["4", "5"]), cache=Cache(redis, ttl_seconds=60))
        asyncio.run(first.load_owned_position_ids(OWNER))
        assert redis.expiry[owned_ids_key(OWNER)] == 60

        broken = IdFetcher()
        broken.error = RuntimeError("backend down")
        second = PositionRepository(broken, cache=Cache(redis))
        assert asyncio.run(second.load_owned_position_ids(OWNER)) == ["4", "5"]
        assert broken.calls == 0

    def test_unreadable_persisted_entry_ignored(self):
        redis = FakeRedis()
        redis.data[owned_ids_key(OWNER)] = "not json"
        repo = PositionRepository(IdFetcher(["1"]), cache=Cache(redis))
        assert asyncio.run(repo.load_owned_position_ids(OWNER)) == ["1"]
