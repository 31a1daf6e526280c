"""Tests for the difficulty client and cache."""

import asyncio
from datetime import date, datetime, timezone
from decimal import Decimal

import httpx
import pytest
from sqlalchemy import select

from reconciler.core.exceptions import ExternalLookupError
from reconciler.models import BitcoinDifficulty
from reconciler.services.difficulty_cache import DifficultyCache
from reconciler.services.difficulty_client import DifficultyClient

from tests.conftest import FakeDifficultySource, fast_policy

DAY = date(2025, 3, 4)
DEFAULT = Decimal("108105433845147")


def _ts(day: date, hour: int = 0) -> int:
    return int(datetime(day.year, day.month, day.day, hour, tzinfo=timezone.utc).timestamp())


class TestDifficultyClient:
    """Test the HTTP difficulty client with a mock transport."""

    @pytest.mark.asyncio
    async def test_returns_latest_value_on_or_before_day(self):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(
                200,
                json={
                    "values": [
                        {"x": _ts(date(2025, 3, 3)), "y": 110000000000000.0},
                        {"x": _ts(DAY), "y": 112149504190349.0},
                        {"x": _ts(date(2025, 3, 5)), "y": 113000000000000.0},
                    ]
                },
            )

        client = DifficultyClient(base_url="https://difficulty.test/charts", transport=httpx.MockTransport(handler))
        assert await client.lookup_difficulty(DAY) == Decimal("112149504190349.0")
        assert requests[0].url.params["start"] == "2025-03-04"

    @pytest.mark.asyncio
    async def test_http_error_status_raises_lookup_error(self):
        client = DifficultyClient(
            base_url="https://difficulty.test/charts",
            transport=httpx.MockTransport(lambda request: httpx.Response(503, text="unavailable")),
        )
        with pytest.raises(ExternalLookupError):
            await client.lookup_difficulty(DAY)

    @pytest.mark.asyncio
    async def test_transport_failure_raises_lookup_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = DifficultyClient(base_url="https://difficulty.test/charts", transport=httpx.MockTransport(handler))
        with pytest.raises(ExternalLookupError):
            await client.lookup_difficulty(DAY)

    @pytest.mark.asyncio
    async def test_empty_values_raise_lookup_error(self):
        client = DifficultyClient(
            base_url="https://difficulty.test/charts",
            transport=httpx.MockTransport(lambda request: httpx.Response(200, json={"values": []})),
        )
        with pytest.raises(ExternalLookupError):
            await client.lookup_difficulty(DAY)


class TestDifficultyCache:
    """Test memoization, persistence and fallback."""

    @pytest.mark.asyncio
    async def test_lookup_is_memoized_and_persisted(self, session_factory, difficulty_cache, difficulty_source):
        first = await difficulty_cache.get_difficulty(DAY)
        second = await difficulty_cache.get_difficulty(DAY)

        assert first == second == difficulty_source.value
        assert difficulty_source.calls == [DAY]

        async with session_factory() as session:
            stored = (
                await session.execute(
                    select(BitcoinDifficulty).where(BitcoinDifficulty.difficulty_date == DAY)
                )
            ).scalar_one()
        assert stored.difficulty == difficulty_source.value

    @pytest.mark.asyncio
    async def test_durable_cache_avoids_refetch(self, session_factory, difficulty_cache, difficulty_source):
        await difficulty_cache.get_difficulty(DAY)

        fresh_source = FakeDifficultySource(value=Decimal("1"))
        new_process_cache = DifficultyCache(session_factory, fresh_source, retry_policy=fast_policy(5, retry_on=(ExternalLookupError,)))
        assert await new_process_cache.get_difficulty(DAY) == difficulty_source.value
        assert fresh_source.calls == []

    @pytest.mark.asyncio
    async def test_recovers_after_transient_failures(self, session_factory):
        source = FakeDifficultySource(failures=4)
        cache = DifficultyCache(
            session_factory, source, retry_policy=fast_policy(5, retry_on=(ExternalLookupError,)), default_difficulty=DEFAULT
        )
        assert await cache.get_difficulty(DAY) == source.value
        assert len(source.calls) == 5
        assert not cache.used_fallback(DAY)

    @pytest.mark.asyncio
    async def test_falls_back_to_default_after_five_failures(self, session_factory):
        source = FakeDifficultySource(failures=5)
        cache = DifficultyCache(
            session_factory, source, retry_policy=fast_policy(5, retry_on=(ExternalLookupError,)), default_difficulty=DEFAULT
        )

        assert await cache.get_difficulty(DAY) == DEFAULT
        assert len(source.calls) == 5
        assert cache.used_fallback(DAY)

        # The default is never written to the durable cache
        async with session_factory() as session:
            stored = (await session.execute(select(BitcoinDifficulty))).scalars().all()
        assert stored == []

    @pytest.mark.asyncio
    async def test_unexpected_source_errors_are_wrapped(self, session_factory):
        class BrokenSource:
            calls = 0

            async def lookup_difficulty(self, day):
                BrokenSource.calls += 1
                raise RuntimeError("socket closed")

        cache = DifficultyCache(
            session_factory, BrokenSource(), retry_policy=fast_policy(2, retry_on=(ExternalLookupError,)), default_difficulty=DEFAULT
        )
        assert await cache.get_difficulty(DAY) == DEFAULT
        assert BrokenSource.calls == 2

    @pytest.mark.asyncio
    async def test_concurrent_lookups_share_one_request(self, session_factory):
        release = asyncio.Event()

        class SlowSource(FakeDifficultySource):
            async def lookup_difficulty(self, day):
                await release.wait()
                return await super().lookup_difficulty(day)

        source = SlowSource()
        cache = DifficultyCache(session_factory, source, retry_policy=fast_policy(5, retry_on=(ExternalLookupError,)))

        lookups = [asyncio.ensure_future(cache.get_difficulty(DAY)) for _ in range(3)]
        await asyncio.sleep(0.01)
        release.set()

        assert await asyncio.gather(*lookups) == [source.value] * 3
        assert source.calls == [DAY]
