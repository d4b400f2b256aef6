"""
Scheduled invocation orchestrator for atmirror.

One Orchestrator.run() is one time-boxed invocation:
1. Read the saved stream position
2. Consume a feed slice with most of the budget
3. Apply the slice's events, then persist the new position
4. Backfill each (did, collection) pair seen in the slice, in first-seen
   order, until the soft deadline; remaining pairs wait for the next run

Invariants:
    - run() never raises; every failure is logged with its context
    - The position is saved only after the slice's events are applied
    - An ApplyError ends the invocation without advancing any checkpoint
    - Deadlines are checked between pairs, never mid-operation

How to change safely:
    - Keep the soft deadline strictly inside the external hard deadline
    - Test overlapping invocations against the same database
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from .apply.record_store import ApplyError, RecordStore
from .ingest.backfill import BackfillWorker
from .ingest.stream import StreamIngestor

logger = logging.getLogger(__name__)


@dataclass
class RunSummary:
    """Outcome of one invocation.

    Attributes:
        events: Change events received from the feed
        position: Stream position after the run (saved or not)
        position_saved: Whether the position was persisted
        stream_error: Retryable feed error message, if the slice ended early
        apply_failed: Whether an ApplyError ended the run
        pairs_seen: Distinct (did, collection) pairs in the slice
        pairs_backfilled: Pairs given a backfill_one call
        backfilled_records: Records applied by backfill
        error: Unexpected failure message, if any
        deferred_pairs: Pairs left for the next run because the deadline
            was reached
    """

    events: int = 0
    position: int | None = None
    position_saved: bool = False
    stream_error: str | None = None
    apply_failed: bool = False
    pairs_seen: int = 0
    pairs_backfilled: int = 0
    backfilled_records: int = 0
    error: str | None = None
    deferred_pairs: list[tuple[str, str]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "events": self.events,
            "position": self.position,
            "position_saved": self.position_saved,
            "stream_error": self.stream_error,
            "apply_failed": self.apply_failed,
            "pairs_seen": self.pairs_seen,
            "pairs_backfilled": self.pairs_backfilled,
            "backfilled_records": self.backfilled_records,
            "deferred_pairs": len(self.deferred_pairs),
            "error": self.error,
        }


class Orchestrator:
    """Runs one bounded ingestion-and-backfill invocation.

    Example:
        >>> orchestrator = Orchestrator(store, ingestor, backfill_worker)
        >>> summary = await orchestrator.run()
    """

    def __init__(
        self,
        store: RecordStore,
        ingestor: StreamIngestor,
        backfill_worker: BackfillWorker,
        budget_seconds: float = 30.0,
        margin_seconds: float = 2.0,
        stream_timeout_seconds: float = 25.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            store: Reconciliation store
            ingestor: Stream ingestor
            backfill_worker: Backfill worker
            budget_seconds: Hard external time limit for one invocation
            margin_seconds: Reserve kept back from the budget for bookkeeping
            stream_timeout_seconds: Cap on time spent reading the feed
            clock: Wall-clock source in seconds (injectable for tests)
        """
        if margin_seconds >= budget_seconds:
            raise ValueError("margin_seconds must be smaller than budget_seconds")

        self.store = store
        self.ingestor = ingestor
        self.backfill_worker = backfill_worker
        self.budget_seconds = budget_seconds
        self.margin_seconds = margin_seconds
        self.stream_timeout_seconds = stream_timeout_seconds
        self.clock = clock

    async def run(self) -> RunSummary:
        """Run one invocation. Never raises."""
        started = self.clock()
        deadline = started + self.budget_seconds - self.margin_seconds
        summary = RunSummary()

        try:
            await self._run(summary, started, deadline)
        except Exception as e:
            summary.error = str(e)
            logger.error(f"Invocation failed: {e}", exc_info=True)

        logger.info(
            f"Invocation finished in {self.clock() - started:.1f}s",
            extra=summary.to_dict(),
        )
        return summary

    async def _run(self, summary: RunSummary, started: float, deadline: float) -> None:
        position = await self.store.get_position()
        logger.info(
            f"Starting ingestion. Cursor: {position if position is not None else 'none'}",
            extra={"cursor": position, "collections": self.ingestor.wanted_collections},
        )

        stream_deadline = min(deadline, started + self.stream_timeout_seconds)
        result = await self.ingestor.consume(position, stream_deadline)
        summary.events = len(result.events)
        summary.position = result.position
        if result.error is not None:
            summary.stream_error = str(result.error)
            logger.warning(
                f"Stream ended early, applying {len(result.events)} collected events",
                extra={"context": "stream", "error": str(result.error)},
            )

        try:
            await self.store.apply_events(result.events)
        except ApplyError as e:
            summary.apply_failed = True
            logger.error(
                f"Failed to apply stream events, cursor stays at {position}: {e}",
                extra={"context": "stream", "applied": e.applied},
            )
            return

        if result.position is not None:
            await self.store.save_position(result.position)
            summary.position_saved = True
            logger.info(f"Saved cursor: {result.position}")

        pairs = list(dict.fromkeys((e.did, e.collection) for e in result.events if not e.is_delete))
        summary.pairs_seen = len(pairs)

        for index, (did, collection) in enumerate(pairs):
            if self.clock() >= deadline:
                summary.deferred_pairs = pairs[index:]
                logger.info(
                    f"Deadline reached, deferring {len(summary.deferred_pairs)} backfills",
                    extra={"deferred": len(summary.deferred_pairs)},
                )
                break

            try:
                applied = await self.backfill_worker.backfill_one(did, collection, deadline)
            except ApplyError as e:
                summary.apply_failed = True
                logger.error(
                    f"Failed to apply backfill page for {did}/{collection}: {e}",
                    extra={"did": did, "collection": collection, "applied": e.applied},
                )
                return

            summary.pairs_backfilled += 1
            summary.backfilled_records += applied
