"""Tests for the single-flight registry and keyed locks."""

import asyncio

import pytest

from reconciler.core.locks import InFlightRegistry, KeyedLocks


class TestInFlightRegistry:
    """Test per-key coalescing."""

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_run(self):
        registry = InFlightRegistry()
        release = asyncio.Event()
        runs = 0

        async def operation():
            nonlocal runs
            runs += 1
            await release.wait()
            return "result"

        first = asyncio.ensure_future(registry.run("key", operation))
        second = asyncio.ensure_future(registry.run("key", operation))
        await asyncio.sleep(0)
        assert registry.is_in_flight("key")

        release.set()
        assert await asyncio.gather(first, second) == ["result", "result"]
        assert runs == 1
        assert not registry.is_in_flight("key")
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_distinct_keys_run_independently(self):
        registry = InFlightRegistry()
        runs = []

        async def operation(key):
            runs.append(key)
            await asyncio.sleep(0)
            return key

        results = await asyncio.gather(
            registry.run("a", lambda: operation("a")),
            registry.run("b", lambda: operation("b")),
        )
        assert results == ["a", "b"]
        assert sorted(runs) == ["a", "b"]

    @pytest.mark.asyncio
    async def test_key_released_after_failure(self):
        registry = InFlightRegistry()
        calls = 0

        async def failing():
            nonlocal calls
            calls += 1
            raise RuntimeError("failed")

        with pytest.raises(RuntimeError):
            await registry.run("key", failing)
        assert not registry.is_in_flight("key")

        # A later call starts a fresh run
        with pytest.raises(RuntimeError):
            await registry.run("key", failing)
        assert calls == 2

    @pytest.mark.asyncio
    async def test_waiters_all_see_failure(self):
        registry = InFlightRegistry()
        release = asyncio.Event()

        async def failing():
            await release.wait()
            raise ValueError("bad")

        first = asyncio.ensure_future(registry.run("key", failing))
        second = asyncio.ensure_future(registry.run("key", failing))
        await asyncio.sleep(0)
        release.set()

        results = await asyncio.gather(first, second, return_exceptions=True)
        assert all(isinstance(r, ValueError) for r in results)
        assert results[0] is results[1]


class TestKeyedLocks:
    """Test per-key serialization."""

    @pytest.mark.asyncio
    async def test_same_key_runs_one_at_a_time(self):
        locks = KeyedLocks()
        active = 0
        peak = 0
        runs = 0

        async def hold(key):
            nonlocal active, peak, runs
            async with locks.hold(key):
                active += 1
                peak = max(peak, active)
                await asyncio.sleep(0.01)
                active -= 1
                runs += 1

        await asyncio.gather(*(hold("2025-03") for _ in range(3)))

        assert peak == 1
        assert runs == 3
        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_distinct_keys_overlap(self):
        locks = KeyedLocks()
        release = asyncio.Event()

        async def hold(key):
            async with locks.hold(key):
                await release.wait()

        first = asyncio.ensure_future(hold("2025-03"))
        second = asyncio.ensure_future(hold("2025-04"))
        await asyncio.sleep(0)
        assert locks.is_locked("2025-03")
        assert locks.is_locked("2025-04")

        release.set()
        await asyncio.gather(first, second)
        assert not locks.is_locked("2025-03")

    @pytest.mark.asyncio
    async def test_lock_released_after_failure(self):
        locks = KeyedLocks()

        with pytest.raises(RuntimeError):
            async with locks.hold("key"):
                raise RuntimeError("failed")

        assert not locks.is_locked("key")
        async with locks.hold("key"):
            assert locks.is_locked("key")
