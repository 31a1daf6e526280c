"""Pytest configuration and fixtures."""

import os
from datetime import date
from decimal import Decimal
from typing import Dict, List, Optional

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

# Force testing environment before settings are read
os.environ["TESTING"] = "true"

from reconciler.core.database import Base  # noqa: E402
from reconciler.core.exceptions import ExternalLookupError  # noqa: E402
from reconciler.core.retry import RetryPolicy  # noqa: E402
from reconciler.models import CurtailmentRecord  # noqa: E402
from reconciler.services.bitcoin_calculator import MinerModel  # noqa: E402
from reconciler.services.checkpoint import CheckpointStore  # noqa: E402
from reconciler.services.difficulty_cache import DifficultyCache  # noqa: E402

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

# 0.001 BTC per MWh at TEST_DIFFICULTY
TEST_MODEL = MinerModel("M", Decimal("4.294967296"), Decimal("1000"))
TEST_DIFFICULTY = Decimal("11250000000000")


async def no_sleep(delay: float) -> None:
    return None


def fast_policy(max_attempts: int = 3, **kwargs) -> RetryPolicy:
    return RetryPolicy(max_attempts=max_attempts, base_delay=0, sleep=no_sleep, **kwargs)


class FakeDifficultySource:
    """In-process difficulty source that can fail a set number of times."""

    def __init__(self, value: Decimal = TEST_DIFFICULTY, failures: int = 0, values: Optional[Dict[date, Decimal]] = None):
        self.value = value
        self.failures = failures
        self.values = values or {}
        self.calls: List[date] = []

    async def lookup_difficulty(self, day: date) -> Decimal:
        self.calls.append(day)
        if self.failures > 0:
            self.failures -= 1
            raise ExternalLookupError(f"lookup failed for {day}")
        return self.values.get(day, self.value)


@pytest.fixture(scope="function")
async def test_engine():
    """Create a test engine for each test function."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    async with engine.begin() as connection:
        await connection.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as connection:
        await connection.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture(scope="function")
def session_factory(test_engine):
    return async_sessionmaker(bind=test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture(scope="function")
async def test_session(session_factory):
    """Create a test database session."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def difficulty_source():
    return FakeDifficultySource()


@pytest.fixture
def difficulty_cache(session_factory, difficulty_source):
    return DifficultyCache(
        session_factory,
        difficulty_source,
        retry_policy=fast_policy(5, retry_on=(ExternalLookupError,)),
        default_difficulty=Decimal("108105433845147"),
    )


@pytest.fixture
def checkpoint_store(tmp_path):
    return CheckpointStore(tmp_path / "checkpoints" / "reconciliation_checkpoint.json")


@pytest.fixture
def add_facts(session_factory):
    """Insert curtailment records given as (date, period, farm_id, volume) tuples."""

    async def _add(rows):
        async with session_factory() as session:
            for settlement_date, period, farm_id, volume in rows:
                volume = Decimal(str(volume))
                session.add(
                    CurtailmentRecord(
                        settlement_date=settlement_date,
                        settlement_period=period,
                        farm_id=farm_id,
                        volume=volume,
                        payment=volume * Decimal("-50"),
                    )
                )
            await session.commit()

    return _add
