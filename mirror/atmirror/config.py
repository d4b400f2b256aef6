"""
Configuration management for atmirror.

All configuration is done via environment variables - no config files.
This module provides typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - At least one collection must be tracked
    - The deadline margin is strictly smaller than the invocation budget

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Keep secrets out of log_config()
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

DEFAULT_COLLECTIONS = ("app.bsky.feed.post",)


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


def parse_collections(value: str) -> tuple[str, ...]:
    """Split a comma-separated collection list, dropping blanks."""
    return tuple(s.strip() for s in value.split(",") if s.strip())


@dataclass(frozen=True)
class JetstreamConfig:
    """Commit feed configuration.

    Attributes:
        url: Jetstream subscribe endpoint (websocket URL)
        connect_timeout: Seconds allowed for the websocket handshake
    """

    url: str = "wss://jetstream2.us-east.bsky.network/subscribe"
    connect_timeout: float = 10.0

    @classmethod
    def from_env(cls) -> JetstreamConfig:
        """Load configuration from environment variables."""
        return cls(
            url=os.getenv("JETSTREAM_URL", "wss://jetstream2.us-east.bsky.network/subscribe"),
            connect_timeout=float(os.getenv("JETSTREAM_CONNECT_TIMEOUT", "10")),
        )


@dataclass(frozen=True)
class HostConfig:
    """Record host access configuration.

    Attributes:
        plc_directory_url: PLC directory used to resolve did:plc identities
        http_timeout: Seconds per HTTP request to directories and hosts
        page_size: Records per listRecords page (1..100)
    """

    plc_directory_url: str = "https://plc.directory"
    http_timeout: float = 10.0
    page_size: int = 100

    @classmethod
    def from_env(cls) -> HostConfig:
        """Load configuration from environment variables."""
        return cls(
            plc_directory_url=os.getenv("PLC_DIRECTORY_URL", "https://plc.directory"),
            http_timeout=float(os.getenv("HOST_HTTP_TIMEOUT", "10")),
            page_size=min(max(1, int(os.getenv("BACKFILL_PAGE_SIZE", "100"))), 100),
        )


@dataclass(frozen=True)
class StorageConfig:
    """Local storage configuration.

    Attributes:
        db_path: SQLite database file
        wal_mode: SQLite WAL mode enabled
        busy_timeout_ms: SQLite busy timeout in milliseconds
        apply_batch_size: Maximum events per storage transaction
    """

    db_path: str = "./data/atmirror.db"
    wal_mode: bool = True
    busy_timeout_ms: int = 5000
    apply_batch_size: int = 50

    @classmethod
    def from_env(cls) -> StorageConfig:
        """Load configuration from environment variables."""
        return cls(
            db_path=os.getenv("DB_PATH", "./data/atmirror.db"),
            wal_mode=_env_bool("SQLITE_WAL_MODE", "true"),
            busy_timeout_ms=int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000")),
            apply_batch_size=int(os.getenv("APPLY_BATCH_SIZE", "50")),
        )


@dataclass(frozen=True)
class SchedulerConfig:
    """Invocation timing configuration.

    Attributes:
        budget_seconds: Hard time limit of one invocation
        margin_seconds: Reserve kept back for final bookkeeping
        stream_timeout_seconds: Cap on feed reading per invocation
        interval_seconds: Time between invocations in serve mode
        api_backfill_seconds: Deadline for on-demand backfill in the read API
    """

    budget_seconds: float = 30.0
    margin_seconds: float = 2.0
    stream_timeout_seconds: float = 25.0
    interval_seconds: float = 60.0
    api_backfill_seconds: float = 10.0

    @classmethod
    def from_env(cls) -> SchedulerConfig:
        """Load configuration from environment variables."""
        return cls(
            budget_seconds=float(os.getenv("INVOCATION_BUDGET_SECONDS", "30")),
            margin_seconds=float(os.getenv("DEADLINE_MARGIN_SECONDS", "2")),
            stream_timeout_seconds=float(os.getenv("STREAM_TIMEOUT_SECONDS", "25")),
            interval_seconds=float(os.getenv("RUN_INTERVAL_SECONDS", "60")),
            api_backfill_seconds=float(os.getenv("API_BACKFILL_SECONDS", "10")),
        )


@dataclass(frozen=True)
class HttpConfig:
    """Read API configuration.

    Attributes:
        enabled: Serve the read API in serve mode
        host: Bind host
        port: Bind port
    """

    enabled: bool = True
    host: str = "0.0.0.0"
    port: int = 8080

    @classmethod
    def from_env(cls) -> HttpConfig:
        """Load configuration from environment variables."""
        return cls(
            enabled=_env_bool("HTTP_ENABLED", "true"),
            host=os.getenv("HTTP_HOST", "0.0.0.0"),
            port=int(os.getenv("HTTP_PORT", "8080")),
        )


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
        )


@dataclass
class MirrorConfig:
    """Complete atmirror configuration.

    Attributes:
        collections: Collection NSIDs to mirror
        jetstream: Commit feed configuration
        hosts: Record host configuration
        storage: Local storage configuration
        scheduler: Invocation timing configuration
        http: Read API configuration
        observability: Logging configuration
    """

    collections: tuple[str, ...] = DEFAULT_COLLECTIONS
    jetstream: JetstreamConfig = field(default_factory=JetstreamConfig)
    hosts: HostConfig = field(default_factory=HostConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    http: HttpConfig = field(default_factory=HttpConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> MirrorConfig:
        """Load complete configuration from environment variables.

        Raises:
            ValueError: If configuration is missing or invalid.
        """
        try:
            config = cls(
                collections=parse_collections(os.getenv("COLLECTIONS", ",".join(DEFAULT_COLLECTIONS))),
                jetstream=JetstreamConfig.from_env(),
                hosts=HostConfig.from_env(),
                storage=StorageConfig.from_env(),
                scheduler=SchedulerConfig.from_env(),
                http=HttpConfig.from_env(),
                observability=ObservabilityConfig.from_env(),
            )
        except ValueError as e:
            raise ValueError(f"Invalid configuration value: {e}")

        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if not self.collections:
            raise ValueError("COLLECTIONS must name at least one collection")
        if not self.jetstream.url:
            raise ValueError("JETSTREAM_URL is required")
        if self.storage.apply_batch_size < 1:
            raise ValueError("APPLY_BATCH_SIZE must be at least 1")
        if self.scheduler.margin_seconds >= self.scheduler.budget_seconds:
            raise ValueError("DEADLINE_MARGIN_SECONDS must be smaller than INVOCATION_BUDGET_SECONDS")
        if self.scheduler.stream_timeout_seconds <= 0:
            raise ValueError("STREAM_TIMEOUT_SECONDS must be positive")
        if self.observability.log_format not in ("json", "text"):
            raise ValueError("LOG_FORMAT must be one of: json, text")

    def log_config(self) -> None:
        """Log configuration."""
        logger.info(
            "Mirror configuration loaded",
            extra={
                "collections": list(self.collections),
                "jetstream_url": self.jetstream.url,
                "plc_directory_url": self.hosts.plc_directory_url,
                "db_path": self.storage.db_path,
                "budget_seconds": self.scheduler.budget_seconds,
                "stream_timeout_seconds": self.scheduler.stream_timeout_seconds,
                "http_enabled": self.http.enabled,
                "log_level": self.observability.log_level,
            },
        )
