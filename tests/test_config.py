"""Tests for settings, logging and task wiring."""

from decimal import Decimal

import pytest
import structlog

from reconciler.core.config import Settings
from reconciler.core.exceptions import DataQualityWarning
from reconciler.core.logging import configure_logging


class TestSettings:
    def test_defaults(self):
        settings = Settings()
        assert settings.MINER_MODELS == ["S19J_PRO", "S9", "M20S"]
        assert settings.DEFAULT_DIFFICULTY == Decimal("108105433845147")
        assert settings.RECONCILE_BATCH_SIZE == 5
        assert settings.DIFFICULTY_MAX_ATTEMPTS == 5

    def test_testing_uses_in_memory_sqlite(self):
        assert Settings(TESTING=True).database_url_async == "sqlite+aiosqlite:///:memory:"

    def test_asyncpg_url_conversion(self):
        settings = Settings(TESTING=False, DATABASE_URL="postgresql://user:pw@db:5432/curtailment")
        assert settings.database_url_async == "postgresql+asyncpg://user:pw@db:5432/curtailment"

    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("S19J_PRO, S9", ["S19J_PRO", "S9"]),
            ('["M20S"]', ["M20S"]),
        ],
    )
    def test_miner_models_parsing(self, raw, expected):
        assert Settings(MINER_MODELS=raw).MINER_MODELS == expected

    def test_miner_models_from_environment(self, monkeypatch):
        monkeypatch.setenv("MINER_MODELS", '["S9", "M20S"]')
        assert Settings().MINER_MODELS == ["S9", "M20S"]

    def test_broker_urls_fall_back_to_redis_url(self):
        settings = Settings(REDIS_URL="redis://cache:6379")
        assert settings.broker_url == "redis://cache:6379/0"
        assert settings.result_backend_url == "redis://cache:6379/1"


def test_data_quality_warning_includes_date():
    from datetime import date

    warning = DataQualityWarning("2 duplicate fact rows", settlement_date=date(2025, 3, 4))
    assert str(warning) == "2025-03-04: 2 duplicate fact rows"
    assert str(DataQualityWarning("no date")) == "no date"


def test_configure_logging_json():
    configure_logging("DEBUG", json_logs=True)
    assert isinstance(structlog.get_config()["processors"][-1], structlog.processors.JSONRenderer)
    configure_logging("INFO")


def test_celery_tasks_and_schedule():
    from reconciler.celery_app import celery_app
    from reconciler.tasks import fix_date_task, reconcile_recent_days

    assert reconcile_recent_days.name == "reconciler.tasks.reconciliation.reconcile_recent_days"
    assert fix_date_task.name == "reconciler.tasks.reconciliation.fix_date"
    schedule = celery_app.conf.beat_schedule["reconcile-recent-days"]
    assert schedule["task"] == reconcile_recent_days.name
    assert schedule["kwargs"] == {"days": 7}
