import asyncio

import pytest

from stravawesome.services.single_flight import SingleFlight


@pytest.mark.asyncio
async def test_concurrent_calls_share_one_execution():
    flight = SingleFlight()
    calls = []
    release = asyncio.Event()

    async def work():
        calls.append(1)
        await release.wait()
        return "token"

    tasks = [asyncio.create_task(flight.run("user-1", work)) for _ in range(5)]
    await asyncio.sleep(0)
    assert flight.in_flight("user-1")
    release.set()

    assert await asyncio.gather(*tasks) == ["token"] * 5
    assert len(calls) == 1
    assert not flight.in_flight("user-1")


@pytest.mark.asyncio
async def test_failure_is_seen_by_every_waiter():
    flight = SingleFlight()
    release = asyncio.Event()

    async def work():
        await release.wait()
        raise RuntimeError("refresh failed")

    tasks = [asyncio.create_task(flight.run("k", work)) for _ in range(3)]
    await asyncio.sleep(0)
    release.set()

    results = await asyncio.gather(*tasks, return_exceptions=True)
    assert all(isinstance(r, RuntimeError) for r in results)


@pytest.mark.asyncio
async def test_keys_are_independent_and_reusable():
    flight = SingleFlight()
    calls = []

    async def work():
        calls.append(1)
        return len(calls)

    assert await flight.run("a", work) == 1
    assert await flight.run("a", work) == 2
    assert await flight.run("b", work) == 3


@pytest.mark.asyncio
async def test_follower_reruns_when_leader_is_cancelled():
    flight = SingleFlight()
    calls = []

    async def work():
        calls.append(1)
        if len(calls) == 1:
            await asyncio.sleep(10)
        return "ok"

    leader = asyncio.create_task(flight.run("k", work))
    await asyncio.sleep(0)
    follower = asyncio.create_task(flight.run("k", work))
    await asyncio.sleep(0)

    leader.cancel()
    assert await follower == "ok"
    with pytest.raises(asyncio.CancelledError):
        await leader
    assert len(calls) == 2
    assert not flight.in_flight("k")
