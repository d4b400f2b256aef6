"""
Change events shared by the stream ingestor, backfill worker and store.

A ChangeEvent is the normalized form of one record mutation, whatever feed
it came from. Both the live commit feed and historical backfill pages are
translated into ChangeEvents before they reach the RecordStore.

Invariants:
    - (did, collection, rkey) forms the globally unique resource URI
    - Delete events never carry a record body or a cid
    - Timestamps are integer microseconds since the Unix epoch
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any


class Operation(Enum):
    """Record mutation kinds emitted by the network."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


def make_uri(did: str, collection: str, rkey: str) -> str:
    """Build the resource URI for a record."""
    return f"at://{did}/{collection}/{rkey}"


def now_us() -> int:
    """Current wall-clock time in microseconds."""
    return int(time.time() * 1_000_000)


@dataclass(frozen=True)
class ChangeEvent:
    """A normalized record mutation.

    Attributes:
        did: Author identifier
        collection: Collection NSID (e.g. app.bsky.feed.post)
        rkey: Record key within the collection
        operation: create, update or delete
        cid: Content reference (None for deletes)
        record: JSON-serialized record body (None for deletes)
        time_us: Source timestamp (microseconds)
        indexed_at: Local ingestion timestamp (microseconds)
    """

    did: str
    collection: str
    rkey: str
    operation: Operation
    cid: str | None
    record: str | None
    time_us: int
    indexed_at: int

    def __post_init__(self) -> None:
        if self.operation is Operation.DELETE and (
            self.cid is not None or self.record is not None
        ):
            raise ValueError(f"Delete event for {self.uri} must not carry a cid or record")

    @property
    def uri(self) -> str:
        return make_uri(self.did, self.collection, self.rkey)

    @property
    def is_delete(self) -> bool:
        return self.operation is Operation.DELETE

    @classmethod
    def from_commit(
        cls,
        did: str,
        time_us: int,
        collection: str,
        rkey: str,
        operation: str,
        cid: str | None = None,
        record: Any = None,
        indexed_at: int | None = None,
    ) -> ChangeEvent:
        """Create from the fields of a feed commit.

        The record body is serialized to JSON here; delete commits drop
        whatever cid or body the feed attached.

        Raises:
            ValueError: If the operation is unknown
        """
        op = Operation(operation)
        if op is Operation.DELETE:
            cid = None
            body = None
        else:
            body = json.dumps(record, separators=(",", ":"))

        return cls(
            did=did,
            collection=collection,
            rkey=rkey,
            operation=op,
            cid=cid,
            record=body,
            time_us=time_us,
            indexed_at=indexed_at if indexed_at is not None else now_us(),
        )
