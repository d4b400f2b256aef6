"""
Resumable per-(did, collection) historical backfill.

The BackfillWorker pages through a user's records on their own host and
applies each page to the RecordStore, saving the host's pagination cursor
after every page so a later invocation resumes where this one stopped.

State machine per pair:
    UNSTARTED (no row) -> IN_PROGRESS (row, completed=0) -> COMPLETE

Invariants:
    - COMPLETE is terminal: a completed pair is never fetched again
    - The cursor is saved only after its page is applied, so a crash
      re-fetches that page instead of skipping it
    - A past deadline means no network calls at all
    - Transport failures pause the pair; they never mark it complete
    - A client error from the host (repository gone) completes the pair
    - ApplyError propagates to the caller with the cursor untouched

How to change safely:
    - Keep checkpointing per page; coarser checkpoints force full restarts
    - Test concurrent calls for the same new pair
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

from ..apply.events import ChangeEvent, Operation
from ..apply.record_store import RecordStore
from ..hosts.base import HostError, HostResolver, RecordLister, RecordPage, RepoUnavailableError

logger = logging.getLogger(__name__)

PAGE_SIZE = 100


class BackfillWorker:
    """Backfills one (did, collection) pair at a time.

    Safe to call repeatedly and from overlapping invocations: the progress
    row is created with a conflict-safe insert and re-read, so racing
    callers converge on the same row and at worst re-fetch a page.

    Example:
        >>> worker = BackfillWorker(store, resolver, lister)
        >>> applied = await worker.backfill_one(
        ...     "did:plc:abc", "app.bsky.feed.post", deadline=time.time() + 10
        ... )
    """

    def __init__(
        self,
        store: RecordStore,
        resolver: HostResolver,
        lister: RecordLister,
        page_size: int = PAGE_SIZE,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the worker.

        Args:
            store: Reconciliation store
            resolver: did -> record host endpoint
            lister: Pages records from a record host
            page_size: Records per page (1..100)
            clock: Wall-clock source in seconds (injectable for tests)
        """
        self.store = store
        self.resolver = resolver
        self.lister = lister
        self.page_size = min(max(1, page_size), PAGE_SIZE)
        self.clock = clock

    async def backfill_one(self, did: str, collection: str, deadline: float) -> int:
        """Backfill a pair until complete, paused by the deadline, or failed.

        Args:
            did: Author identifier
            collection: Collection NSID
            deadline: Wall-clock deadline (seconds since epoch)

        Returns:
            Number of records applied in this call

        Raises:
            ApplyError: If the store rejects a page
        """
        if self.clock() >= deadline:
            return 0

        progress = await self.store.get_backfill(did, collection)
        if progress is not None and progress.completed:
            return 0

        if progress is None:
            progress = await self.store.ensure_backfill(did, collection)
            if progress.completed:
                return 0

        cursor = progress.cursor
        context = {"did": did, "collection": collection}
        logger.info(
            f"Backfilling {collection} for {did} (cursor: {cursor or 'start'})",
            extra=context,
        )

        try:
            endpoint = await self.resolver.resolve(did)
        except HostError as e:
            logger.error(f"Failed to resolve record host for {did}: {e}", extra=context)
            return 0

        total = 0
        done = False

        while self.clock() < deadline:
            try:
                page = await self.lister.list_records(
                    endpoint, did, collection, cursor=cursor, limit=self.page_size
                )
            except RepoUnavailableError as e:
                logger.warning(
                    f"Repository unavailable for {did}/{collection}, nothing left to fetch: {e}",
                    extra={**context, "status_code": e.status_code},
                )
                done = True
                break
            except HostError as e:
                logger.error(f"Failed to fetch records for {did}/{collection}: {e}", extra=context)
                break

            if page.is_empty:
                done = True
                break

            events = self._page_events(did, collection, page)
            await self.store.apply_events(events)
            total += len(events)

            cursor = page.cursor
            await self.store.save_backfill_cursor(did, collection, cursor)

            if not cursor:
                done = True
                break

        if done:
            await self.store.mark_backfill_complete(did, collection)
            logger.info(
                f"Backfill complete: {total} records for {did}/{collection}",
                extra={**context, "records": total},
            )
        else:
            logger.info(
                f"Backfill paused: {total} records for {did}/{collection}, will resume",
                extra={**context, "records": total, "cursor": cursor},
            )

        return total

    def _page_events(self, did: str, collection: str, page: RecordPage) -> list[ChangeEvent]:
        now = int(self.clock() * 1_000_000)
        return [
            ChangeEvent.from_commit(
                did=did,
                time_us=now,
                collection=collection,
                rkey=r.rkey,
                operation=Operation.CREATE.value,
                cid=r.cid,
                record=r.value,
                indexed_at=now,
            )
            for r in page.records
        ]
