"""
Commit feed abstraction for atmirror.

This module provides a pluggable feed interface supporting:
- Jetstream (JSON over websocket, production)
- In-memory (for testing)

The feed is the near-real-time source of record changes. Sessions are
bounded by the caller: the stream ingestor decides when to stop reading.

Invariants:
    - Messages arrive in delivery order and are never reordered
    - A session's cursor is the time_us of the last received message
    - Transport failures raise FeedError subclasses, always retryable
"""

from .base import (
    CommitFeed,
    CommitInfo,
    FeedConnectionError,
    FeedDecodeError,
    FeedError,
    FeedMessage,
    FeedSession,
    create_commit_feed,
)
from .jetstream import JetstreamFeed
from .memory import InMemoryCommitFeed

__all__ = [
    # Protocol and types
    "CommitFeed",
    "FeedSession",
    "FeedMessage",
    "CommitInfo",
    "FeedError",
    "FeedConnectionError",
    "FeedDecodeError",
    # Factory
    "create_commit_feed",
    # Implementations
    "JetstreamFeed",
    "InMemoryCommitFeed",
]
