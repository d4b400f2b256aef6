"""
In-memory commit feed implementation for testing.

This module provides a simple in-memory feed backend for:
- Unit tests
- Integration tests
- Local development without network access

Invariants:
    - Messages are delivered in publish order
    - A session resumes strictly after its cursor (time_us > cursor)
    - Commit messages outside the wanted collections are filtered out
    - Non-commit messages are delivered to every session

How to change safely:
    - This is test-only code, changes don't affect production
    - Keep interface compatible with the CommitFeed protocol
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator, Sequence
from typing import Any, Dict, List, Optional
import logging

from .base import CommitInfo, FeedConnectionError, FeedError, FeedMessage

logger = logging.getLogger(__name__)


class InMemoryFeedSession:
    """Session over an InMemoryCommitFeed."""

    def __init__(
        self,
        feed: InMemoryCommitFeed,
        wanted_collections: Sequence[str],
        cursor: Optional[int],
    ) -> None:
        self._feed = feed
        self._wanted = set(wanted_collections)
        self._cursor = cursor
        self._closed = False

    @property
    def cursor(self) -> Optional[int]:
        return self._cursor

    def __aiter__(self) -> AsyncIterator[FeedMessage]:
        return self._messages()

    def _wanted_message(self, message: FeedMessage) -> bool:
        if self._cursor is not None and message.time_us <= self._cursor:
            return False
        if message.is_commit and self._wanted:
            return message.commit.collection in self._wanted
        return True

    async def _messages(self) -> AsyncIterator[FeedMessage]:
        if self._feed.connect_error is not None:
            raise self._feed.connect_error

        delivered = 0
        index = 0
        while not self._closed:
            if index < len(self._feed.messages):
                message = self._feed.messages[index]
                index += 1
                if not self._wanted_message(message):
                    continue

                if self._feed.fail_after is not None and delivered >= self._feed.fail_after:
                    raise FeedConnectionError("Injected feed disconnect")

                self._cursor = message.time_us
                delivered += 1
                yield message
                continue

            if not self._feed.follow:
                return

            # Wait for new messages
            self._feed._new_message.clear()
            try:
                await asyncio.wait_for(self._feed._new_message.wait(), timeout=1.0)
            except asyncio.TimeoutError:
                pass

    async def close(self) -> None:
        self._closed = True


class InMemoryCommitFeed:
    """In-memory implementation of CommitFeed for testing.

    Attributes:
        messages: Published messages in delivery order
        follow: Keep sessions open waiting for new messages instead of
            ending once the backlog is drained
        fail_after: Raise FeedConnectionError after this many deliveries
        connect_error: Raise this when a session starts iterating
        sessions_opened: Number of sessions created (testing helper)

    Example:
        >>> feed = InMemoryCommitFeed()
        >>> feed.publish_commit("did:plc:abc", 1, "app.bsky.feed.post", "3k2a", {"text": "hi"})
        >>> async for message in feed.session(["app.bsky.feed.post"]):
        ...     print(message.commit.rkey)
    """

    def __init__(self, follow: bool = False) -> None:
        self.messages: List[FeedMessage] = []
        self.follow = follow
        self.fail_after: Optional[int] = None
        self.connect_error: Optional[FeedError] = None
        self.sessions_opened = 0
        self._new_message = asyncio.Event()

    def session(
        self,
        wanted_collections: Sequence[str],
        cursor: Optional[int] = None,
    ) -> InMemoryFeedSession:
        self.sessions_opened += 1
        return InMemoryFeedSession(self, wanted_collections, cursor)

    def publish(self, message: FeedMessage) -> None:
        """Append a message to the feed."""
        self.messages.append(message)
        self._new_message.set()

    def publish_commit(
        self,
        did: str,
        time_us: int,
        collection: str,
        rkey: str,
        record: Optional[Dict[str, Any]] = None,
        operation: str = "create",
        cid: Optional[str] = None,
    ) -> FeedMessage:
        """Publish a commit message (testing helper)."""
        if operation != "delete" and cid is None:
            cid = f"bafy{time_us:x}"
        message = FeedMessage(
            did=did,
            time_us=time_us,
            kind="commit",
            commit=CommitInfo(
                collection=collection,
                rkey=rkey,
                operation=operation,
                cid=cid if operation != "delete" else None,
                record=record if operation != "delete" else None,
            ),
        )
        self.publish(message)
        return message

    def publish_identity(self, did: str, time_us: int) -> FeedMessage:
        """Publish a non-commit identity message (testing helper)."""
        message = FeedMessage(did=did, time_us=time_us, kind="identity")
        self.publish(message)
        return message

    @staticmethod
    def now_us() -> int:
        """Current time in feed units (testing helper)."""
        return int(time.time() * 1_000_000)
