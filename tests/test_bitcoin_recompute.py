"""Tests for the recompute engine."""

import asyncio
from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import select

from reconciler.core.exceptions import ExternalLookupError, InvalidParameterError
from reconciler.models import HistoricalBitcoinCalculation
from reconciler.services.bitcoin_calculator import calculate_bitcoin
import reconciler.services.bitcoin_recompute as recompute_module
from reconciler.services.bitcoin_recompute import BitcoinRecomputeEngine
from reconciler.services.difficulty_cache import DifficultyCache
from reconciler.services.reconciliation_analyzer import ReconciliationAnalyzer

from tests.conftest import TEST_DIFFICULTY, TEST_MODEL, FakeDifficultySource, fast_policy

DAY = date(2025, 3, 4)


async def derived_rows(session_factory, model="M"):
    async with session_factory() as session:
        result = await session.execute(
            select(HistoricalBitcoinCalculation)
            .where(
                HistoricalBitcoinCalculation.settlement_date == DAY,
                HistoricalBitcoinCalculation.miner_model == model,
            )
            .order_by(
                HistoricalBitcoinCalculation.settlement_period,
                HistoricalBitcoinCalculation.farm_id,
            )
        )
        return result.scalars().all()


def row_keys(rows):
    return [(r.settlement_period, r.farm_id, r.miner_model, r.bitcoin_mined, r.difficulty) for r in rows]


@pytest.fixture
def engine(session_factory, difficulty_cache):
    return BitcoinRecomputeEngine(session_factory, difficulty_cache, [TEST_MODEL])


class TestRecompute:
    """Test full-replace recomputation."""

    @pytest.mark.asyncio
    async def test_proportional_scenario(self, engine, session_factory, add_facts):
        await add_facts([
            (DAY, 10, "A", 10),
            (DAY, 10, "B", 20),
            (DAY, 10, "C", 30),
        ])

        result = await engine.recompute(DAY, "M")

        rows = await derived_rows(session_factory)
        assert [(r.farm_id, r.bitcoin_mined) for r in rows] == [
            ("A", Decimal("0.010")),
            ("B", Decimal("0.020")),
            ("C", Decimal("0.030")),
        ]
        assert all(r.difficulty == TEST_DIFFICULTY for r in rows)
        assert result.rows_written == 3
        assert result.periods == 1
        assert result.total_bitcoin == Decimal("0.060")

    @pytest.mark.asyncio
    async def test_negative_volumes_use_magnitude(self, engine, session_factory, add_facts):
        await add_facts([(DAY, 1, "A", -10), (DAY, 1, "B", 30)])

        await engine.recompute(DAY, TEST_MODEL)

        rows = await derived_rows(session_factory)
        assert [r.bitcoin_mined for r in rows] == [Decimal("0.010"), Decimal("0.030")]

    @pytest.mark.asyncio
    async def test_entity_rows_sum_to_period_total(self, session_factory, difficulty_cache, add_facts):
        await add_facts([
            (DAY, 3, "T_ABRBO-1", 13.7),
            (DAY, 3, "T_BLLA-1", 2.91),
            (DAY, 3, "T_CLDW-1", 41.133),
            (DAY, 3, "T_DOUGW-1", 0.4),
        ])
        engine = BitcoinRecomputeEngine(session_factory, difficulty_cache)

        await engine.recompute(DAY, "S19J_PRO")

        rows = await derived_rows(session_factory, "S19J_PRO")
        period_total = calculate_bitcoin(
            Decimal("13.7") + Decimal("2.91") + Decimal("41.133") + Decimal("0.4"),
            "S19J_PRO",
            TEST_DIFFICULTY,
        )
        assert len(rows) == 4
        assert abs(sum(r.bitcoin_mined for r in rows) - period_total) <= Decimal("0.00000001")

    @pytest.mark.asyncio
    async def test_duplicate_facts_collapse_to_one_row(self, engine, session_factory, add_facts):
        await add_facts([(DAY, 1, "A", 10), (DAY, 1, "A", 20)])

        await engine.recompute(DAY, "M")

        rows = await derived_rows(session_factory)
        assert [(r.farm_id, r.bitcoin_mined) for r in rows] == [("A", Decimal("0.030"))]

    @pytest.mark.asyncio
    async def test_idempotent(self, engine, session_factory, add_facts):
        await add_facts([
            (DAY, 1, "A", 10),
            (DAY, 2, "A", 3.5),
            (DAY, 2, "B", 7.25),
            (DAY, 2, "C", 0),
        ])

        await engine.recompute(DAY, "M")
        first = row_keys(await derived_rows(session_factory))
        await engine.recompute(DAY, "M")
        second = row_keys(await derived_rows(session_factory))

        assert first == second
        assert len(first) == 3

    @pytest.mark.asyncio
    async def test_replaces_stale_rows(self, engine, session_factory, add_facts):
        await add_facts([(DAY, 1, "A", 10)])
        async with session_factory() as session:
            session.add(
                HistoricalBitcoinCalculation(
                    settlement_date=DAY,
                    settlement_period=40,
                    farm_id="STALE",
                    miner_model="M",
                    bitcoin_mined=Decimal("9"),
                    difficulty=Decimal("1"),
                )
            )
            await session.commit()

        await engine.recompute(DAY, "M")

        rows = await derived_rows(session_factory)
        assert [(r.settlement_period, r.farm_id) for r in rows] == [(1, "A")]

    @pytest.mark.asyncio
    async def test_zero_facts_writes_nothing(self, engine, session_factory):
        result = await engine.recompute(DAY, "M")

        assert result.rows_written == 0
        assert await derived_rows(session_factory) == []

    @pytest.mark.asyncio
    async def test_completeness_converges(self, session_factory, difficulty_cache, add_facts):
        await add_facts([
            (DAY, 1, "A", 10),
            (DAY, 2, "B", 20),
            (DAY, 48, "C", 5),
        ])
        models = ["S19J_PRO", "S9", "M20S"]
        analyzer = ReconciliationAnalyzer(session_factory, models)
        engine = BitcoinRecomputeEngine(session_factory, difficulty_cache)

        before = await analyzer.analyze(DAY)
        assert before.models_needing_fix() == models

        for model in before.models_needing_fix():
            await engine.recompute(DAY, model)

        after = await analyzer.analyze(DAY)
        assert after.is_complete
        assert all(periods == [] for periods in after.missing_periods.values())

    @pytest.mark.asyncio
    async def test_unknown_model_rejected(self, engine):
        with pytest.raises(InvalidParameterError):
            await engine.recompute(DAY, "UNKNOWN")


class TestRecomputeConcurrency:
    """Test the per-key single-flight guarantee."""

    @pytest.mark.asyncio
    async def test_concurrent_calls_run_one_cycle(self, engine, session_factory, add_facts):
        await add_facts([(DAY, 1, "A", 10), (DAY, 1, "B", 20)])

        cycles = 0
        original = engine._recompute

        async def counting(day, model):
            nonlocal cycles
            cycles += 1
            await asyncio.sleep(0.01)
            return await original(day, model)

        engine._recompute = counting

        first, second = await asyncio.gather(
            engine.recompute(DAY, "M"),
            engine.recompute(DAY, "M"),
        )

        assert cycles == 1
        assert first is second
        rows = await derived_rows(session_factory)
        assert len(rows) == 2
        assert not engine.is_running(DAY, "M")

    @pytest.mark.asyncio
    async def test_failure_rolls_back_and_releases_key(self, engine, session_factory, add_facts, monkeypatch):
        await add_facts([(DAY, 1, "A", 10)])
        await engine.recompute(DAY, "M")

        def failing_insert(*args, **kwargs):
            raise RuntimeError("insert failed")

        # Fails after the delete has run inside the transaction
        monkeypatch.setattr(recompute_module, "insert", failing_insert)
        with pytest.raises(RuntimeError):
            await engine.recompute(DAY, "M")

        rows = await derived_rows(session_factory)
        assert [(r.farm_id, r.bitcoin_mined) for r in rows] == [("A", Decimal("0.010"))]
        assert not engine.is_running(DAY, "M")


class TestDifficultyFallback:
    @pytest.mark.asyncio
    async def test_default_difficulty_used_after_lookup_failures(self, session_factory, add_facts):
        await add_facts([(DAY, 1, "A", 10)])
        source = FakeDifficultySource(failures=5)
        default = Decimal("108105433845147")
        cache = DifficultyCache(
            session_factory, source, retry_policy=fast_policy(5, retry_on=(ExternalLookupError,)), default_difficulty=default
        )
        engine = BitcoinRecomputeEngine(session_factory, cache, [TEST_MODEL])

        result = await engine.recompute(DAY, "M")

        assert len(source.calls) == 5
        assert result.used_default_difficulty
        rows = await derived_rows(session_factory)
        assert len(rows) == 1
        assert rows[0].difficulty == default
        assert rows[0].bitcoin_mined == calculate_bitcoin(Decimal("10"), TEST_MODEL, default)
