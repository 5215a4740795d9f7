"""
Unit tests for the application configuration (Settings).

Tests cover:
- Default values, including purchase-retry and tranche-stats tuning
- DATABASE_URL property for SQLite mode
- PostgreSQL credential validation
"""

import pytest
from pydantic import ValidationError

from tranche_service.core.config import Settings, settings


class TestSettingsDefaults:
    def test_project_name(self):
        assert settings.PROJECT_NAME == "Tranche Pricing & Funding Service"

    def test_api_version_prefix(self):
        assert settings.API_V1_STR == "/api/v1"

    def test_test_suite_runs_on_sqlite(self):
        assert settings.USE_SQLITE is True

    def test_cache_and_breaker_defaults(self):
        assert settings.CACHE_TTL > 0
        assert settings.CACHE_MAX_SIZE > 0
        assert settings.CB_FAILURE_THRESHOLD > 0
        assert settings.CB_RECOVERY_TIMEOUT > 0

    def test_purchase_retry_defaults(self):
        s = Settings(USE_SQLITE=True, _env_file=None)  # type: ignore[call-arg]
        assert s.PURCHASE_MAX_RETRIES == 3
        assert s.PURCHASE_RETRY_BASE_DELAY == 0.05

    def test_upcoming_window_default(self):
        s = Settings(USE_SQLITE=True, _env_file=None)  # type: ignore[call-arg]
        assert s.UPCOMING_WINDOW_DAYS == 30

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("PURCHASE_MAX_RETRIES", "5")
        monkeypatch.setenv("UPCOMING_WINDOW_DAYS", "14")
        s = Settings(USE_SQLITE=True, _env_file=None)  # type: ignore[call-arg]
        assert s.PURCHASE_MAX_RETRIES == 5
        assert s.UPCOMING_WINDOW_DAYS == 14

    @pytest.mark.parametrize(
        "field,value",
        [("PURCHASE_MAX_RETRIES", -1), ("UPCOMING_WINDOW_DAYS", -7), ("CB_FAILURE_THRESHOLD", 0)],
    )
    def test_out_of_range_values_rejected(self, field, value):
        with pytest.raises(ValidationError, match=field):
            Settings(USE_SQLITE=True, _env_file=None, **{field: value})  # type: ignore[call-arg]


class TestDatabaseURL:
    def test_sqlite_url(self):
        assert settings.DATABASE_URL == "sqlite+aiosqlite://"

    def test_postgres_url(self):
        s = Settings(
            USE_SQLITE=False,
            POSTGRES_USER="u",
            POSTGRES_PASSWORD="p",
            POSTGRES_SERVER="localhost",
            POSTGRES_DB="tranches",
            POSTGRES_PORT=5432,
        )
        assert s.DATABASE_URL == "postgresql+asyncpg://u:p@localhost:5432/tranches"

    def test_pg_missing_credentials_raises(self, monkeypatch):
        # conftest sets USE_SQLITE=true globally; clear it and any PG creds.
        for key in (
            "USE_SQLITE",
            "POSTGRES_USER",
            "POSTGRES_PASSWORD",
            "POSTGRES_SERVER",
            "POSTGRES_DB",
        ):
            monkeypatch.delenv(key, raising=False)
        with pytest.raises(Exception, match="POSTGRES_USER"):
            Settings(USE_SQLITE=False, _env_file=None)  # type: ignore[call-arg]
