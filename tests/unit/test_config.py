"""
Unit tests for environment-based configuration.
"""

import pytest

from mirror.atmirror.config import MirrorConfig, parse_collections

ENV_VARS = [
    "JETSTREAM_URL",
    "JETSTREAM_CONNECT_TIMEOUT",
    "COLLECTIONS",
    "PLC_DIRECTORY_URL",
    "HOST_HTTP_TIMEOUT",
    "BACKFILL_PAGE_SIZE",
    "DB_PATH",
    "SQLITE_WAL_MODE",
    "SQLITE_BUSY_TIMEOUT_MS",
    "APPLY_BATCH_SIZE",
    "INVOCATION_BUDGET_SECONDS",
    "DEADLINE_MARGIN_SECONDS",
    "STREAM_TIMEOUT_SECONDS",
    "RUN_INTERVAL_SECONDS",
    "API_BACKFILL_SECONDS",
    "HTTP_ENABLED",
    "HTTP_HOST",
    "HTTP_PORT",
    "LOG_LEVEL",
    "LOG_FORMAT",
]


@pytest.fixture
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


class TestParseCollections:
    def test_splits_and_strips(self):
        assert parse_collections(" app.bsky.feed.post , ,app.bsky.feed.like") == (
            "app.bsky.feed.post",
            "app.bsky.feed.like",
        )

    def test_blank(self):
        assert parse_collections(" , ") == ()


class TestMirrorConfig:
    """Tests for MirrorConfig.from_env."""

    def test_defaults(self, clean_env):
        config = MirrorConfig.from_env()

        assert config.collections == ("app.bsky.feed.post",)
        assert config.jetstream.url.startswith("wss://")
        assert config.hosts.plc_directory_url == "https://plc.directory"
        assert config.hosts.page_size == 100
        assert config.storage.apply_batch_size == 50
        assert config.scheduler.budget_seconds == 30.0
        assert config.scheduler.margin_seconds == 2.0
        assert config.scheduler.stream_timeout_seconds == 25.0
        assert config.scheduler.api_backfill_seconds == 10.0
        assert config.observability.log_format == "json"

    def test_overrides(self, clean_env):
        clean_env.setenv("COLLECTIONS", "app.bsky.feed.like,app.bsky.graph.follow")
        clean_env.setenv("DB_PATH", "/tmp/mirror.db")
        clean_env.setenv("SQLITE_WAL_MODE", "false")
        clean_env.setenv("HTTP_PORT", "9000")
        clean_env.setenv("BACKFILL_PAGE_SIZE", "250")

        config = MirrorConfig.from_env()

        assert config.collections == ("app.bsky.feed.like", "app.bsky.graph.follow")
        assert config.storage.db_path == "/tmp/mirror.db"
        assert config.storage.wal_mode is False
        assert config.http.port == 9000
        assert config.hosts.page_size == 100

    def test_empty_collections_rejected(self, clean_env):
        clean_env.setenv("COLLECTIONS", " , ")

        with pytest.raises(ValueError, match="COLLECTIONS"):
            MirrorConfig.from_env()

    def test_margin_must_fit_budget(self, clean_env):
        clean_env.setenv("INVOCATION_BUDGET_SECONDS", "5")
        clean_env.setenv("DEADLINE_MARGIN_SECONDS", "5")

        with pytest.raises(ValueError, match="DEADLINE_MARGIN_SECONDS"):
            MirrorConfig.from_env()

    def test_invalid_number(self, clean_env):
        clean_env.setenv("HTTP_PORT", "eighty")

        with pytest.raises(ValueError, match="Invalid configuration value"):
            MirrorConfig.from_env()

    def test_invalid_log_format(self, clean_env):
        clean_env.setenv("LOG_FORMAT", "xml")

        with pytest.raises(ValueError, match="LOG_FORMAT"):
            MirrorConfig.from_env()

    def test_batch_size_must_be_positive(self, clean_env):
        clean_env.setenv("APPLY_BATCH_SIZE", "0")

        with pytest.raises(ValueError, match="APPLY_BATCH_SIZE"):
            MirrorConfig.from_env()
