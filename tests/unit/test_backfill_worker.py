"""
Unit tests for the backfill worker.

Tests cover:
- Paging to completion and checkpointing
- Resume after a deadline interruption
- Host resolution and fetch failures
- Concurrent calls for the same pair
"""

import asyncio
import os
import sqlite3
import tempfile

import pytest

from mirror.atmirror.apply.record_store import ApplyError, RecordStore
from mirror.atmirror.hosts import InMemoryRecordHost, make_records
from mirror.atmirror.ingest.backfill import BackfillWorker

DID = "did:plc:alice"
COLLECTION = "app.bsky.feed.post"


class FakeClock:
    """Manually advanced wall clock."""

    def __init__(self, now: float = 1_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def count_records(store: RecordStore) -> int:
    conn = sqlite3.connect(str(store.db_path))
    try:
        return conn.execute("SELECT COUNT(*) FROM records").fetchone()[0]
    finally:
        conn.close()


class TestBackfillWorker:
    """Tests for BackfillWorker."""

    @pytest.fixture
    def data_dir(self):
        """Create temporary data directory."""
        with tempfile.TemporaryDirectory() as tmpdir:
            yield tmpdir

    @pytest.fixture
    async def store(self, data_dir):
        store = RecordStore(os.path.join(data_dir, "mirror.db"), wal_mode=False)
        await store.initialize()
        return store

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def host(self):
        """Host with 100 + 40 records followed by an empty page."""
        host = InMemoryRecordHost()
        host.set_pages(DID, COLLECTION, [
            make_records(DID, COLLECTION, 100),
            make_records(DID, COLLECTION, 40, start=100),
            [],
        ])
        return host

    @pytest.fixture
    def worker(self, store, host, clock):
        return BackfillWorker(store, host, host, clock=clock)

    @pytest.mark.asyncio
    async def test_full_backfill(self, store, host, clock, worker):
        """All pages are applied and the pair completes."""
        applied = await worker.backfill_one(DID, COLLECTION, clock() + 10)

        assert applied == 140
        assert count_records(store) == 140
        progress = await store.get_backfill(DID, COLLECTION)
        assert progress.completed is True
        assert [call[2] for call in host.fetch_calls] == [None, "1", "2"]

    @pytest.mark.asyncio
    async def test_backfill_records_are_creates(self, store, clock, worker):
        """Backfilled rows carry the host's cid and body."""
        await worker.backfill_one(DID, COLLECTION, clock() + 10)

        record = await store.get_record(f"at://{DID}/{COLLECTION}/rk000007")
        assert record.cid == "bafyrec7"
        assert record.to_dict()["record"] == {"$type": COLLECTION, "n": 7}
        assert record.time_us == int(clock() * 1_000_000)
        assert record.indexed_at == record.time_us

    @pytest.mark.asyncio
    async def test_last_page_without_cursor_completes(self, store, clock):
        """A page with no cursor ends the backfill."""
        host = InMemoryRecordHost()
        host.set_pages(DID, COLLECTION, [make_records(DID, COLLECTION, 10)])
        worker = BackfillWorker(store, host, host, clock=clock)

        applied = await worker.backfill_one(DID, COLLECTION, clock() + 10)

        assert applied == 10
        assert len(host.fetch_calls) == 1
        assert (await store.get_backfill(DID, COLLECTION)).completed is True

    @pytest.mark.asyncio
    async def test_empty_collection_completes(self, store, clock):
        """A user with no records completes after one empty page."""
        host = InMemoryRecordHost()
        worker = BackfillWorker(store, host, host, clock=clock)

        applied = await worker.backfill_one(DID, COLLECTION, clock() + 10)

        assert applied == 0
        assert (await store.get_backfill(DID, COLLECTION)).completed is True

    @pytest.mark.asyncio
    async def test_past_deadline_makes_no_calls(self, store, host, clock, worker):
        """An expired deadline returns before touching the network."""
        applied = await worker.backfill_one(DID, COLLECTION, clock() - 1)

        assert applied == 0
        assert host.network_calls == 0
        assert await store.get_backfill(DID, COLLECTION) is None

    @pytest.mark.asyncio
    async def test_completed_pair_is_skipped(self, store, host, clock, worker):
        """A completed pair is never fetched again."""
        await worker.backfill_one(DID, COLLECTION, clock() + 10)
        calls = host.network_calls

        applied = await worker.backfill_one(DID, COLLECTION, clock() + 10)

        assert applied == 0
        assert host.network_calls == calls

    @pytest.mark.asyncio
    async def test_completion_is_monotonic(self, store, host, clock, worker):
        """New data on the host doesn't reopen a completed pair."""
        await worker.backfill_one(DID, COLLECTION, clock() + 10)
        host.set_pages(DID, COLLECTION, [make_records(DID, COLLECTION, 5, start=500)])

        await worker.backfill_one(DID, COLLECTION, clock() + 10)

        assert count_records(store) == 140
        assert (await store.get_backfill(DID, COLLECTION)).completed is True

    @pytest.mark.asyncio
    async def test_resume_after_deadline(self, store, host, clock, worker):
        """An interrupted backfill resumes from the saved cursor."""

        def slow_first_page(did, collection, index):
            if index == 0:
                clock.advance(60)

        host.after_fetch = slow_first_page
        applied = await worker.backfill_one(DID, COLLECTION, clock() + 10)

        assert applied == 100
        progress = await store.get_backfill(DID, COLLECTION)
        assert progress.completed is False
        assert progress.cursor == "1"

        host.after_fetch = None
        host.fetch_calls.clear()
        applied = await worker.backfill_one(DID, COLLECTION, clock() + 10)

        assert applied == 40
        assert host.fetch_calls[0] == (DID, COLLECTION, "1")
        assert count_records(store) == 140
        assert (await store.get_backfill(DID, COLLECTION)).completed is True

    @pytest.mark.asyncio
    async def test_unresolvable_host(self, store, host, clock, worker):
        """Resolution failure leaves the pair in progress with no records."""
        host.make_unresolvable(DID)

        applied = await worker.backfill_one(DID, COLLECTION, clock() + 10)

        assert applied == 0
        assert host.fetch_calls == []
        progress = await store.get_backfill(DID, COLLECTION)
        assert progress.completed is False
        assert progress.cursor is None

    @pytest.mark.asyncio
    async def test_removed_repo_completes(self, store, host, clock, worker):
        """A repository the host rejects is finished and never fetched again."""
        host.remove_repo(DID)

        applied = await worker.backfill_one(DID, COLLECTION, clock() + 10)

        assert applied == 0
        assert len(host.fetch_calls) == 1
        assert (await store.get_backfill(DID, COLLECTION)).completed is True

        await worker.backfill_one(DID, COLLECTION, clock() + 10)
        await worker.backfill_one(DID, COLLECTION, clock() + 10)

        assert len(host.fetch_calls) == 1

    @pytest.mark.asyncio
    async def test_fetch_failure_keeps_cursor(self, store, host, clock, worker):
        """A failed fetch pauses at the last applied page."""
        host.fail_fetch_at = {1}

        applied = await worker.backfill_one(DID, COLLECTION, clock() + 10)

        assert applied == 100
        progress = await store.get_backfill(DID, COLLECTION)
        assert progress.completed is False
        assert progress.cursor == "1"

        host.fail_fetch_at = set()
        applied = await worker.backfill_one(DID, COLLECTION, clock() + 10)

        assert applied == 40
        assert (await store.get_backfill(DID, COLLECTION)).completed is True

    @pytest.mark.asyncio
    async def test_apply_error_propagates(self, store, host, clock, worker):
        """A rejected page raises and leaves the cursor untouched."""
        conn = sqlite3.connect(str(store.db_path))
        conn.execute("""
            CREATE TRIGGER reject_page BEFORE INSERT ON records
            WHEN NEW.rkey = 'rk000003'
            BEGIN SELECT RAISE(ABORT, 'rejected'); END
        """)
        conn.commit()
        conn.close()

        with pytest.raises(ApplyError):
            await worker.backfill_one(DID, COLLECTION, clock() + 10)

        progress = await store.get_backfill(DID, COLLECTION)
        assert progress.completed is False
        assert progress.cursor is None

    @pytest.mark.asyncio
    async def test_concurrent_calls_converge(self, store, host, clock, worker):
        """Racing calls for a new pair share one row and one copy of each record."""
        other = BackfillWorker(store, host, host, clock=clock)

        await asyncio.gather(
            worker.backfill_one(DID, COLLECTION, clock() + 10),
            other.backfill_one(DID, COLLECTION, clock() + 10),
        )

        stats = await store.get_stats()
        assert stats["backfills"] == 1
        assert stats["backfills_completed"] == 1
        assert stats["records"] == 140

    def test_page_size_clamped(self, store, host):
        """Page size stays within the host's limit."""
        assert BackfillWorker(store, host, host, page_size=500).page_size == 100
        assert BackfillWorker(store, host, host, page_size=0).page_size == 1
