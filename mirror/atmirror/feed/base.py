"""
Base protocol and types for the commit feed abstraction.

This module defines the CommitFeed protocol that all feed backends must
implement, along with the message types a feed session yields and the
errors it raises.

Invariants:
    - A session yields messages in the feed's own delivery order
    - session.cursor is the position of the last message received
    - Non-commit messages are yielded but carry no record change
    - Cursors are Jetstream time_us values (microseconds)

How to change safely:
    - Protocol changes require updating all implementations
    - Keep FeedMessage decoding tolerant of unknown message kinds
"""

from __future__ import annotations

from abc import abstractmethod
from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass, field
from typing import (
    TYPE_CHECKING,
    Any,
    Dict,
    Optional,
    Protocol,
    runtime_checkable,
)
import logging

from ..apply.events import ChangeEvent

if TYPE_CHECKING:
    from ..config import MirrorConfig

logger = logging.getLogger(__name__)


class FeedError(Exception):
    """Base exception for feed operations. Always retryable."""
    pass


class FeedConnectionError(FeedError):
    """Connecting to the feed, or keeping the session open, failed."""
    pass


class FeedDecodeError(FeedError):
    """A feed message could not be decoded."""
    pass


@dataclass(frozen=True)
class CommitInfo:
    """The commit part of a commit message.

    Attributes:
        collection: Collection NSID
        rkey: Record key
        operation: create, update or delete
        cid: Content reference (absent for deletes)
        record: Record body (absent for deletes)
        rev: Repository revision
    """
    collection: str
    rkey: str
    operation: str
    cid: Optional[str] = None
    record: Optional[Dict[str, Any]] = None
    rev: Optional[str] = None


@dataclass(frozen=True)
class FeedMessage:
    """A message from the commit feed.

    Attributes:
        did: Author identifier
        time_us: Feed timestamp (microseconds), also the resume cursor
        kind: commit, identity or account
        commit: Commit details (only for kind == "commit")
        raw: Undecoded message fields, for debugging
    """
    did: str
    time_us: int
    kind: str
    commit: Optional[CommitInfo] = None
    raw: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @property
    def is_commit(self) -> bool:
        return self.kind == "commit" and self.commit is not None

    def to_change_event(self, indexed_at: Optional[int] = None) -> ChangeEvent:
        """Normalize a commit message into a ChangeEvent.

        Raises:
            FeedDecodeError: If this is not a well-formed commit
        """
        if not self.is_commit:
            raise FeedDecodeError(f"Message of kind {self.kind!r} is not a commit")

        try:
            return ChangeEvent.from_commit(
                did=self.did,
                time_us=self.time_us,
                collection=self.commit.collection,
                rkey=self.commit.rkey,
                operation=self.commit.operation,
                cid=self.commit.cid,
                record=self.commit.record,
                indexed_at=indexed_at,
            )
        except ValueError as e:
            raise FeedDecodeError(f"Invalid commit from {self.did}: {e}")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> FeedMessage:
        """Decode a Jetstream JSON message.

        Raises:
            FeedDecodeError: If required fields are missing
        """
        try:
            did = data["did"]
            time_us = int(data["time_us"])
            kind = data["kind"]
        except (KeyError, TypeError, ValueError) as e:
            raise FeedDecodeError(f"Malformed feed message: {e}")

        commit = None
        if kind == "commit":
            raw_commit = data.get("commit")
            if not isinstance(raw_commit, dict):
                raise FeedDecodeError(f"Commit message from {did} has no commit body")
            try:
                commit = CommitInfo(
                    collection=raw_commit["collection"],
                    rkey=raw_commit["rkey"],
                    operation=raw_commit["operation"],
                    cid=raw_commit.get("cid"),
                    record=raw_commit.get("record"),
                    rev=raw_commit.get("rev"),
                )
            except KeyError as e:
                raise FeedDecodeError(f"Commit from {did} missing field {e}")

        return cls(did=did, time_us=time_us, kind=kind, commit=commit, raw=data)


@runtime_checkable
class FeedSession(Protocol):
    """An open subscription to the commit feed.

    Iterating yields FeedMessages in delivery order. Breaking out of the
    iteration and calling close() ends the subscription.

    Example:
        >>> session = feed.session(["app.bsky.feed.post"], cursor=None)
        >>> try:
        ...     async for message in session:
        ...         print(message.time_us)
        ... finally:
        ...     await session.close()
    """

    @property
    @abstractmethod
    def cursor(self) -> Optional[int]:
        """Position of the last received message, or the start cursor."""
        ...

    @abstractmethod
    def __aiter__(self) -> AsyncIterator[FeedMessage]:
        """Iterate over feed messages.

        Raises:
            FeedConnectionError: If the connection fails or drops
            FeedDecodeError: If a message cannot be decoded
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Close the subscription and release resources."""
        ...


@runtime_checkable
class CommitFeed(Protocol):
    """Protocol for commit feed backends."""

    @abstractmethod
    def session(
        self,
        wanted_collections: Sequence[str],
        cursor: Optional[int] = None,
    ) -> FeedSession:
        """Open a session filtered to the wanted collections.

        Args:
            wanted_collections: Collection NSIDs to receive
            cursor: Resume position, or None to start at the feed head

        Returns:
            A FeedSession; the connection is made lazily on iteration
        """
        ...


def create_commit_feed(config: "MirrorConfig") -> CommitFeed:
    """Factory function to create the commit feed from configuration."""
    from .jetstream import JetstreamFeed

    return JetstreamFeed(
        url=config.jetstream.url,
        connect_timeout=config.jetstream.connect_timeout,
    )
