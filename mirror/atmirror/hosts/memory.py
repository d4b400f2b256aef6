"""
In-memory record host for testing.

Implements both HostResolver and RecordLister over fixed pages, and records
every call so tests can assert on network usage.

How to change safely:
    - This is test-only code, changes don't affect production
    - Keep interface compatible with HostResolver and RecordLister
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any

from .base import (
    HostError,
    HostNotFoundError,
    RecordHostError,
    RecordPage,
    RemoteRecord,
    RepoUnavailableError,
)


class InMemoryRecordHost:
    """Fake record host serving pre-built pages.

    Page cursors are the string index of the next page. The last page is
    returned without a cursor.

    Attributes:
        resolve_calls: dids passed to resolve()
        fetch_calls: (did, collection, cursor) per list_records() call
        fail_fetch_at: Page indexes whose fetch raises RecordHostError
        after_fetch: Callback run after each successful fetch

    Example:
        >>> host = InMemoryRecordHost()
        >>> host.set_pages("did:plc:abc", "app.bsky.feed.post", [
        ...     make_records("did:plc:abc", "app.bsky.feed.post", 100),
        ...     [],
        ... ])
    """

    def __init__(self, endpoint: str = "https://pds.example.test") -> None:
        self.endpoint = endpoint
        self._pages: dict[tuple[str, str], list[list[RemoteRecord]]] = {}
        self._unresolvable: dict[str, HostError] = {}
        self._removed: set[str] = set()
        self.resolve_calls: list[str] = []
        self.fetch_calls: list[tuple[str, str, str | None]] = []
        self.fail_fetch_at: set[int] = set()
        self.after_fetch: Callable[[str, str, int], None] | None = None

    def set_pages(self, did: str, collection: str, pages: list[list[RemoteRecord]]) -> None:
        self._pages[(did, collection)] = pages

    def make_unresolvable(self, did: str, error: HostError | None = None) -> None:
        self._unresolvable[did] = error or HostNotFoundError(did)

    def remove_repo(self, did: str) -> None:
        """Make every page fetch for did fail with a client error."""
        self._removed.add(did)

    @property
    def network_calls(self) -> int:
        return len(self.resolve_calls) + len(self.fetch_calls)

    async def resolve(self, did: str) -> str:
        self.resolve_calls.append(did)
        await asyncio.sleep(0)
        if did in self._unresolvable:
            raise self._unresolvable[did]
        return self.endpoint

    async def list_records(
        self,
        endpoint: str,
        did: str,
        collection: str,
        cursor: str | None = None,
        limit: int = 100,
    ) -> RecordPage:
        self.fetch_calls.append((did, collection, cursor))
        await asyncio.sleep(0)

        if did in self._removed:
            raise RepoUnavailableError(f"Repository {did} not found", status_code=400)

        index = int(cursor) if cursor else 0
        if index in self.fail_fetch_at:
            raise RecordHostError(f"Injected fetch failure for {did}/{collection} page {index}")

        pages = self._pages.get((did, collection), [])
        if index >= len(pages):
            page = RecordPage()
        else:
            next_cursor = str(index + 1) if index + 1 < len(pages) else None
            page = RecordPage(records=list(pages[index][:limit]), cursor=next_cursor)

        if self.after_fetch is not None:
            self.after_fetch(did, collection, index)
        return page


def make_records(
    did: str,
    collection: str,
    count: int,
    start: int = 0,
    value: dict[str, Any] | None = None,
) -> list[RemoteRecord]:
    """Build remote records with sequential rkeys (testing helper)."""
    return [
        RemoteRecord(
            uri=f"at://{did}/{collection}/rk{i:06d}",
            cid=f"bafyrec{i}",
            value=value if value is not None else {"$type": collection, "n": i},
        )
        for i in range(start, start + count)
    ]
