# tests/test_config.py
"""
Settings, logging configuration and correlation id tests.
"""

import logging

from alertflow.config import Settings, get_settings
from alertflow.middleware.correlation import CorrelationIdFilter, get_correlation_id, task_context


class TestSettings:

    def test_defaults(self, monkeypatch):
        for name in ("QUEUE_BACKEND", "WORKER_COUNT", "DATABASE_URL", "ALERTFLOW_API_KEY"):
            monkeypatch.delenv(name, raising=False)

        s = Settings()

        assert s.QUEUE_BACKEND == "memory"
        assert s.WORKER_COUNT == 4
        assert s.DATABASE_URL.startswith("sqlite")
        assert s.API_KEY is None

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("QUEUE_BACKEND", "REDIS")
        monkeypatch.setenv("WORKER_COUNT", "8")
        monkeypatch.setenv("CIRCUIT_BREAKER_ENABLED", "false")
        monkeypatch.setenv("ENVIRONMENT", "production")

        s = Settings()

        assert s.QUEUE_BACKEND == "redis"
        assert s.WORKER_COUNT == 8
        assert s.CIRCUIT_BREAKER_ENABLED is False
        assert s.is_production

    def test_redis_url(self, monkeypatch):
        monkeypatch.setenv("REDIS_HOST", "cache")
        monkeypatch.setenv("REDIS_PORT", "6380")
        monkeypatch.setenv("REDIS_DB", "2")
        monkeypatch.setenv("REDIS_PASSWORD", "pw")

        assert Settings().REDIS_URL == "redis://:pw@cache:6380/2"

    def test_get_settings_is_cached(self):
        assert get_settings() is get_settings()


class TestLogConfig:

    def test_console_only_by_default(self, monkeypatch):
        monkeypatch.delenv("LOG_FILE", raising=False)

        config = Settings().get_log_config()

        assert config["root"]["handlers"] == ["console"]
        assert "file" not in config["handlers"]

    def test_file_handler_when_configured(self, monkeypatch, tmp_path):
        monkeypatch.setenv("LOG_FILE", str(tmp_path / "alertflow.log"))
        monkeypatch.setenv("LOG_MAX_SIZE_MB", "2")

        config = Settings().get_log_config()

        assert config["root"]["handlers"] == ["console", "file"]
        assert config["handlers"]["file"]["maxBytes"] == 2 * 1024 * 1024


class TestCorrelation:

    def test_task_context_binds_and_restores(self):
        before = get_correlation_id()

        with task_context("t1"):
            assert get_correlation_id() == "task-t1"

        assert get_correlation_id() == before

    def test_filter_injects_correlation_id(self):
        record = logging.LogRecord("alertflow.test", logging.INFO, __file__, 1, "msg", None, None)

        with task_context("t9"):
            assert CorrelationIdFilter().filter(record) is True

        assert record.correlation_id == "task-t9"
