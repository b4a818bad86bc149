import asyncio

import pytest

from stravawesome.services.shared_data import SharedDataService
from stravawesome.services.strava_client import ActivityList

from conftest import FakeClock


class TestSharedDataService:

    def test_cached_activities_expire_after_ttl(self):
        clock = FakeClock()
        shared = SharedDataService(default_ttl=15 * 60, clock=clock)
        shared.set_activities("1", [{"id": 1}])

        clock.advance(10 * 60)
        assert shared.get_activities("1") == [{"id": 1}]

        clock.advance(6 * 60)
        assert shared.get_activities("1") is None

    def test_should_fetch_after_mark_in_progress(self):
        clock = FakeClock()
        shared = SharedDataService(clock=clock)
        assert shared.should_fetch("1")

        shared.mark_fetch_in_progress("1")
        assert not shared.should_fetch("1")

        clock.advance(5 * 60)
        assert shared.should_fetch("1")

    def test_clear_user_and_stats(self):
        shared = SharedDataService(clock=FakeClock())
        shared.set_activities("1", [{"id": 1}, {"id": 2}])
        shared.set_activities("2", [])
        stats = shared.get_stats()
        assert stats["total_users"] == 2

        shared.clear_user("1")
        assert shared.get_activities("1") is None
        assert shared.should_fetch("1")

        shared.clear_all()
        assert shared.get_stats()["total_users"] == 0

    @pytest.mark.asyncio
    async def test_get_or_fetch_deduplicates_concurrent_requests(self):
        shared = SharedDataService(clock=FakeClock())
        calls = []

        async def fetch():
            calls.append(1)
            await asyncio.sleep(0.01)
            return [{"id": 42}]

        results = await asyncio.gather(*[shared.get_or_fetch("1", fetch) for _ in range(4)])
        assert results == [[{"id": 42}]] * 4
        assert len(calls) == 1

        assert await shared.get_or_fetch("1", fetch) == [{"id": 42}]
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_failed_fetch_is_not_cached(self):
        shared = SharedDataService(clock=FakeClock())

        async def fail():
            raise RuntimeError("strava down")

        with pytest.raises(RuntimeError):
            await shared.get_or_fetch("1", fail)
        assert shared.get_activities("1") is None

    @pytest.mark.asyncio
    async def test_degraded_results_are_not_cached(self):
        shared = SharedDataService(clock=FakeClock())
        results = iter([ActivityList(degraded=True), [{"id": 1}]])

        async def fetch():
            return next(results)

        assert await shared.get_or_fetch("1", fetch) == []
        assert shared.get_activities("1") is None
        assert await shared.get_or_fetch("1", fetch) == [{"id": 1}]
        assert shared.get_activities("1") == [{"id": 1}]
