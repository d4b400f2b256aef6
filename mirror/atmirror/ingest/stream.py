"""
Stream ingestor for atmirror.

The StreamIngestor reads one bounded slice of the commit feed and turns it
into ChangeEvents. It never applies anything itself: the caller applies the
returned events and only then persists the returned position.

A slice ends on the first of:
- a message at or past "now" (wall clock at session start): caught up
- the wall-clock deadline
- the feed ending the session (in-memory feeds drain their backlog)
- a transport or decode error

Invariants:
    - Events keep feed delivery order and are never duplicated
    - The returned position is the time_us of the last message processed,
      so it never runs ahead of the returned events
    - Caught-up and deadline stops are normal results, not errors
    - Errors are returned in IngestResult.error alongside the partial events

How to change safely:
    - Keep the stop predicates evaluated once per received message
    - Test partial results with injected feed failures
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

from ..apply.events import ChangeEvent
from ..feed.base import CommitFeed, FeedError

logger = logging.getLogger(__name__)

STOP_CAUGHT_UP = "caught_up"
STOP_DEADLINE = "deadline"
STOP_EXHAUSTED = "exhausted"
STOP_ERROR = "error"


@dataclass
class IngestResult:
    """Result of consuming one feed slice.

    Attributes:
        events: Normalized change events in feed order
        position: Resume position after these events (None if nothing was
            ever received and there was no start position)
        error: Retryable feed error that ended the slice early, if any
        stop_reason: Why the slice ended
        messages: Number of messages received, commit or not
    """

    events: list[ChangeEvent] = field(default_factory=list)
    position: int | None = None
    error: FeedError | None = None
    stop_reason: str = STOP_EXHAUSTED
    messages: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None


class StreamIngestor:
    """Consumes bounded slices of the commit feed.

    Example:
        >>> ingestor = StreamIngestor(feed, ["app.bsky.feed.post"])
        >>> result = await ingestor.consume(await store.get_position(), time.time() + 25)
        >>> await store.apply_events(result.events)
        >>> if result.position is not None:
        ...     await store.save_position(result.position)
    """

    def __init__(
        self,
        feed: CommitFeed,
        wanted_collections: Sequence[str],
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the ingestor.

        Args:
            feed: Commit feed to read from
            wanted_collections: Collection NSIDs to subscribe to
            clock: Wall-clock source in seconds (injectable for tests)
        """
        self.feed = feed
        self.wanted_collections = list(wanted_collections)
        self.clock = clock

    def _now_us(self) -> int:
        return int(self.clock() * 1_000_000)

    async def consume(self, start_position: int | None, deadline: float) -> IngestResult:
        """Consume the feed from start_position until caught up or deadline.

        Args:
            start_position: Saved stream position, or None for the feed head
            deadline: Wall-clock deadline (seconds since epoch)

        Returns:
            IngestResult with events, new position and any feed error
        """
        start_us = self._now_us()
        result = IngestResult(position=start_position)

        logger.info(
            "Starting stream ingestion",
            extra={"cursor": start_position, "collections": self.wanted_collections},
        )

        session = self.feed.session(self.wanted_collections, start_position)
        messages = aiter(session)
        try:
            while True:
                remaining = deadline - self.clock()
                if remaining <= 0:
                    result.stop_reason = STOP_DEADLINE
                    break

                try:
                    message = await asyncio.wait_for(anext(messages), timeout=remaining)
                except StopAsyncIteration:
                    result.stop_reason = STOP_EXHAUSTED
                    break
                except asyncio.TimeoutError:
                    result.stop_reason = STOP_DEADLINE
                    break

                result.messages += 1
                if message.is_commit:
                    result.events.append(message.to_change_event(indexed_at=self._now_us()))
                result.position = message.time_us

                if message.time_us >= start_us:
                    logger.info("Caught up to present, stopping ingestion")
                    result.stop_reason = STOP_CAUGHT_UP
                    break

                if self.clock() >= deadline:
                    logger.info("Safety timeout reached, stopping ingestion")
                    result.stop_reason = STOP_DEADLINE
                    break

        except FeedError as e:
            result.error = e
            result.stop_reason = STOP_ERROR
            logger.warning(
                f"Feed error after {result.messages} messages: {e}",
                extra={"cursor": result.position, "events": len(result.events)},
            )
        finally:
            await session.close()

        logger.info(
            "Stream ingestion finished",
            extra=self._summary(result),
        )
        return result

    def _summary(self, result: IngestResult) -> dict[str, Any]:
        return {
            "stop_reason": result.stop_reason,
            "messages": result.messages,
            "events": len(result.events),
            "cursor": result.position,
        }
