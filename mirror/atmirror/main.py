"""
atmirror - Main entry point.

Two modes:
- once:  run a single time-boxed invocation and exit (for cron-style
         schedulers that provide the periodic trigger)
- serve: run an invocation every RUN_INTERVAL_SECONDS until SIGTERM/SIGINT,
         optionally serving the read API alongside

Usage:
    python -m mirror.atmirror.main once
    python -m mirror.atmirror.main serve

Configuration is entirely via environment variables.
See config.py for all available settings.

Invariants:
    - Collaborators are constructed here and injected; each invocation and
      each read API request gets a fresh resolver so no identity cache
      outlives it
    - An invocation in progress is finished before shutdown completes
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys

import httpx
import json_log_formatter
from aiohttp import web

from .api import ApiContext, create_http_app
from .apply import RecordStore
from .config import MirrorConfig
from .feed import CommitFeed, create_commit_feed
from .hosts import DidHostResolver, XrpcRecordLister
from .ingest import BackfillWorker, StreamIngestor
from .scheduler import Orchestrator, RunSummary

logger = logging.getLogger(__name__)


def setup_logging(config: MirrorConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Mirror configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("aiohttp").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


class Service:
    """Owns the process-wide collaborators and runs invocations.

    Attributes:
        config: Mirror configuration
        store: Reconciliation store
        feed: Commit feed
        http_client: Shared HTTP client for directories and record hosts

    Example:
        >>> service = Service(config)
        >>> await service.start()
        >>> summary = await service.run_once()
        >>> await service.stop()
    """

    def __init__(self, config: MirrorConfig, feed: CommitFeed | None = None) -> None:
        self.config = config
        self.store = RecordStore(
            db_path=config.storage.db_path,
            batch_size=config.storage.apply_batch_size,
            wal_mode=config.storage.wal_mode,
            busy_timeout_ms=config.storage.busy_timeout_ms,
        )
        self.feed = feed or create_commit_feed(config)
        self.http_client: httpx.AsyncClient | None = None
        self._runner: web.AppRunner | None = None
        self._shutdown_event = asyncio.Event()

    async def start(self) -> None:
        """Open the database and the shared HTTP client."""
        self.config.log_config()
        await self.store.initialize()
        self.http_client = httpx.AsyncClient(
            timeout=self.config.hosts.http_timeout,
            follow_redirects=True,
            headers={"User-Agent": "atmirror"},
        )

    async def stop(self) -> None:
        """Release resources."""
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
        if self.http_client is not None:
            await self.http_client.aclose()
            self.http_client = None
        logger.info("atmirror stopped")

    def backfill_worker(self) -> BackfillWorker:
        """Build a backfill worker with a fresh resolver."""
        if self.http_client is None:
            raise RuntimeError("Service not started")
        resolver = DidHostResolver(self.http_client, self.config.hosts.plc_directory_url)
        return BackfillWorker(
            store=self.store,
            resolver=resolver,
            lister=XrpcRecordLister(self.http_client),
            page_size=self.config.hosts.page_size,
        )

    def orchestrator(self) -> Orchestrator:
        """Build the collaborators for one invocation."""
        scheduler = self.config.scheduler
        return Orchestrator(
            store=self.store,
            ingestor=StreamIngestor(self.feed, self.config.collections),
            backfill_worker=self.backfill_worker(),
            budget_seconds=scheduler.budget_seconds,
            margin_seconds=scheduler.margin_seconds,
            stream_timeout_seconds=scheduler.stream_timeout_seconds,
        )

    async def run_once(self) -> RunSummary:
        """Run a single invocation."""
        return await self.orchestrator().run()

    async def serve(self) -> None:
        """Run invocations on the configured interval until shutdown."""
        if self.config.http.enabled:
            await self._start_http()

        interval = self.config.scheduler.interval_seconds
        while not self._shutdown_event.is_set():
            await self.run_once()
            try:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass

    async def _start_http(self) -> None:
        app = create_http_app(ApiContext(
            store=self.store,
            backfill_workers=self.backfill_worker,
            collections=self.config.collections,
            backfill_seconds=self.config.scheduler.api_backfill_seconds,
        ))
        self._runner = web.AppRunner(app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.config.http.host, self.config.http.port)
        await site.start()
        logger.info(
            "Read API listening",
            extra={"host": self.config.http.host, "port": self.config.http.port},
        )

    def request_shutdown(self) -> None:
        """Request graceful shutdown after the current invocation."""
        self._shutdown_event.set()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="atmirror",
        description="Mirror AT Protocol records from Jetstream and user PDS backfill",
    )
    parser.add_argument(
        "mode",
        choices=["once", "serve"],
        help="once: run a single invocation; serve: run on an interval",
    )
    return parser


async def _run_once(service: Service) -> int:
    await service.start()
    try:
        summary = await service.run_once()
    finally:
        await service.stop()
    return 1 if summary.error else 0


async def _serve(service: Service) -> None:
    loop = asyncio.get_running_loop()

    def handle_signal(sig: int) -> None:
        logger.info(f"Received signal {sig}, initiating shutdown")
        service.request_shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, handle_signal, sig)

    await service.start()
    try:
        await service.serve()
    finally:
        await service.stop()


def main(argv: list[str] | None = None) -> None:
    """Main entry point."""
    args = build_parser().parse_args(argv)

    try:
        config = MirrorConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(config)
    service = Service(config)

    if args.mode == "once":
        sys.exit(asyncio.run(_run_once(service)))

    try:
        asyncio.run(_serve(service))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
