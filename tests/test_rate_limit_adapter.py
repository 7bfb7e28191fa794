"""Unit tests for the in-memory fixed-window rate limit store."""

import asyncio
from concurrent.futures import ThreadPoolExecutor

import pytest

from app.adapters.rate_limit.base import WindowUsage
from app.adapters.rate_limit.in_memory import InMemoryFixedWindowStore


@pytest.mark.asyncio
async def test_first_attempt_opens_window() -> None:
    store = InMemoryFixedWindowStore()

    usage = await store.increment("k", now_ms=1_000, window_ms=500)

    assert usage == WindowUsage(count=1, reset_at_ms=1_500)


@pytest.mark.asyncio
async def test_counts_every_attempt_in_window() -> None:
    store = InMemoryFixedWindowStore()

    counts = [
        (await store.increment("A", now_ms=t, window_ms=1000)).count
        for t in (0, 5, 10)
    ]

    assert counts == [1, 2, 3]


@pytest.mark.asyncio
async def test_window_end_is_fixed_by_first_attempt() -> None:
    store = InMemoryFixedWindowStore()

    await store.increment("A", now_ms=0, window_ms=1000)
    usage = await store.increment("A", now_ms=900, window_ms=1000)

    assert usage.reset_at_ms == 1000


@pytest.mark.asyncio
async def test_resets_once_window_has_ended() -> None:
    store = InMemoryFixedWindowStore()

    for t in (0, 5, 10):
        await store.increment("A", now_ms=t, window_ms=1000)

    usage = await store.increment("A", now_ms=1001, window_ms=1000)
    assert usage == WindowUsage(count=1, reset_at_ms=2001)


@pytest.mark.asyncio
async def test_window_ending_exactly_now_is_replaced() -> None:
    store = InMemoryFixedWindowStore()

    await store.increment("A", now_ms=0, window_ms=1000)
    usage = await store.increment("A", now_ms=1000, window_ms=1000)

    assert usage.count == 1


@pytest.mark.asyncio
async def test_isolated_by_key() -> None:
    store = InMemoryFixedWindowStore()

    await store.increment("k1", now_ms=0, window_ms=1000)
    await store.increment("k1", now_ms=1, window_ms=1000)
    usage = await store.increment("k2", now_ms=2, window_ms=1000)

    assert usage.count == 1


@pytest.mark.asyncio
async def test_sweeps_expired_keys() -> None:
    store = InMemoryFixedWindowStore()

    await store.increment("old-1", now_ms=0, window_ms=100)
    await store.increment("old-2", now_ms=10, window_ms=100)
    assert len(store) == 2

    await store.increment("fresh", now_ms=500, window_ms=100)

    assert len(store) == 1


@pytest.mark.asyncio
async def test_earliest_reset_uses_window_end() -> None:
    store = InMemoryFixedWindowStore()

    await store.increment("A", now_ms=100, window_ms=1000)

    assert await store.earliest_reset("A", now_ms=200, window_ms=1000) == 1100
    assert await store.earliest_reset("B", now_ms=200, window_ms=1000) == 1200


@pytest.mark.asyncio
async def test_sweep_runs_at_most_once_per_window() -> None:
    store = InMemoryFixedWindowStore()

    await store.increment("a", now_ms=0, window_ms=100)
    await store.increment("b", now_ms=50, window_ms=100)

    # "a" ended at 100 and is dropped by the sweep due at 100
    await store.increment("b", now_ms=120, window_ms=100)
    assert len(store) == 1

    # "b" ended at 150 but the next sweep is not due until 220
    await store.increment("c", now_ms=160, window_ms=100)
    assert len(store) == 2

    await store.increment("d", now_ms=220, window_ms=100)
    assert len(store) == 2


@pytest.mark.asyncio
async def test_expired_key_restarts_before_sweep_is_due() -> None:
    store = InMemoryFixedWindowStore()

    await store.increment("a", now_ms=0, window_ms=100)
    await store.increment("b", now_ms=10, window_ms=100)
    await store.increment("b", now_ms=20, window_ms=100)
    # Sweeps here and schedules the next one for 201
    await store.increment("x", now_ms=101, window_ms=100)

    usage = await store.increment("b", now_ms=110, window_ms=100)

    assert usage == WindowUsage(count=1, reset_at_ms=210)


def test_concurrent_increments_are_not_lost() -> None:
    store = InMemoryFixedWindowStore()
    calls = 200

    def hit(_: int) -> int:
        return asyncio.run(store.increment("hot", now_ms=0, window_ms=60_000)).count

    with ThreadPoolExecutor(max_workers=16) as pool:
        counts = list(pool.map(hit, range(calls)))

    assert sorted(counts) == list(range(1, calls + 1))
    assert len(store) == 1
    final = asyncio.run(store.increment("hot", now_ms=1, window_ms=60_000))
    assert final.count == calls + 1
