"""
SQLite reconciliation store for atmirror.

This module manages the single SQLite database that holds:
- Mirrored records, one row per resource URI
- The global stream position (singleton row)
- One backfill progress row per (did, collection)

The records table is a materialized view of the commit feed plus historical
backfill. Events are merged with upsert/delete semantics so that applying
the same event twice leaves the same state as applying it once.

Invariants:
    - At most one row per uri; the row reflects the last applied event
    - No time_us comparison on upsert: apply order wins, not source order
    - Each sub-batch is one transaction; a failed sub-batch is rolled back
    - Stream position and backfill rows are written via single-row upserts
    - The stream position only moves forward
    - A completed backfill row is never reset

Table schema:
    records:
        - uri TEXT PRIMARY KEY (at://did/collection/rkey)
        - did TEXT
        - collection TEXT
        - rkey TEXT
        - cid TEXT
        - record TEXT (JSON)
        - time_us INTEGER (source timestamp, microseconds)
        - indexed_at INTEGER (local timestamp, microseconds)

    cursor:
        - id INTEGER PRIMARY KEY (always 1)
        - time_us INTEGER

    backfills:
        - did TEXT
        - collection TEXT
        - completed INTEGER (0/1)
        - pds_cursor TEXT
        - PRIMARY KEY (did, collection)
"""

from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .events import ChangeEvent

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """Base exception for store operations."""

    pass


class ApplyError(StoreError):
    """A sub-batch of events was rejected by the storage engine.

    Retryable: nothing from the failed sub-batch was committed, and callers
    must not advance any checkpoint past it.

    Attributes:
        applied: Number of events committed by earlier sub-batches
    """

    def __init__(self, message: str, applied: int = 0) -> None:
        super().__init__(message)
        self.applied = applied


@dataclass
class StoredRecord:
    """A mirrored record row.

    Attributes:
        id: Insertion row id (used as the read API pagination cursor)
        uri: Resource URI
        did: Author identifier
        collection: Collection NSID
        rkey: Record key
        cid: Content reference
        record: JSON-serialized body
        time_us: Source timestamp (microseconds)
        indexed_at: Local ingestion timestamp (microseconds)
    """

    id: int
    uri: str
    did: str
    collection: str
    rkey: str
    cid: str | None
    record: str | None
    time_us: int
    indexed_at: int

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-friendly dict with the body parsed."""
        return {
            "uri": self.uri,
            "did": self.did,
            "collection": self.collection,
            "rkey": self.rkey,
            "cid": self.cid,
            "record": json.loads(self.record) if self.record else None,
            "time_us": self.time_us,
            "indexed_at": self.indexed_at,
        }


@dataclass(frozen=True)
class BackfillProgress:
    """Backfill state for one (did, collection) pair."""

    did: str
    collection: str
    completed: bool
    cursor: str | None

    @property
    def status(self) -> str:
        return "complete" if self.completed else "in_progress"


class RecordStore:
    """SQLite store for mirrored records and ingestion checkpoints.

    Thread safety:
        Each operation opens its own connection. SQLite serializes writers
        and WAL mode lets readers proceed during writes, so overlapping
        invocations against the same file are safe.

    Example:
        >>> store = RecordStore("/var/lib/atmirror/mirror.db")
        >>> await store.initialize()
        >>> await store.apply_events(events)
        >>> await store.save_position(1725911162329308)
    """

    SCHEMA_VERSION = 1

    def __init__(
        self,
        db_path: str,
        batch_size: int = 50,
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
    ) -> None:
        """Initialize the record store.

        Args:
            db_path: SQLite database file path
            batch_size: Maximum events per storage transaction
            wal_mode: Enable SQLite WAL mode
            busy_timeout_ms: SQLite busy timeout
        """
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")

        self.db_path = Path(db_path)
        self.batch_size = batch_size
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms
        self._schema_ready = False

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        """Open a configured connection, creating the schema on first use."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(
            str(self.db_path),
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,  # Autocommit by default, explicit transactions
        )
        conn.row_factory = sqlite3.Row

        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")
            if not self._schema_ready:
                self._create_schema(conn)
                self._schema_ready = True

            yield conn
        finally:
            conn.close()

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        """Create database schema."""
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY,
                applied_at INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS records (
                uri TEXT PRIMARY KEY,
                did TEXT NOT NULL,
                collection TEXT NOT NULL,
                rkey TEXT NOT NULL,
                cid TEXT,
                record TEXT,
                time_us INTEGER NOT NULL,
                indexed_at INTEGER NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_records_collection ON records(collection);
            CREATE INDEX IF NOT EXISTS idx_records_did_collection ON records(did, collection);

            CREATE TABLE IF NOT EXISTS cursor (
                id INTEGER PRIMARY KEY CHECK (id = 1),
                time_us INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS backfills (
                did TEXT NOT NULL,
                collection TEXT NOT NULL,
                completed INTEGER NOT NULL DEFAULT 0,
                pds_cursor TEXT,
                PRIMARY KEY (did, collection)
            );

            INSERT OR IGNORE INTO schema_version (version, applied_at)
            VALUES (1, strftime('%s', 'now') * 1000);
        """)

    async def initialize(self) -> None:
        """Create the database file and schema if they don't exist."""
        with self._get_connection():
            logger.info(f"Initialized record store: {self.db_path}")

    # Event application

    async def apply_events(self, events: Sequence[ChangeEvent]) -> int:
        """Apply change events in bounded sub-batches.

        Each sub-batch keeps feed order, upserts its create/update events and
        then removes its delete events, all in one transaction. The first
        failing sub-batch aborts the call.

        Args:
            events: Change events in feed order

        Returns:
            Number of events applied

        Raises:
            ApplyError: If a sub-batch is rejected by SQLite
        """
        applied = 0
        for start in range(0, len(events), self.batch_size):
            batch = events[start:start + self.batch_size]
            try:
                self._apply_batch(batch)
            except sqlite3.Error as e:
                logger.error(
                    f"Failed to apply batch: {e}",
                    extra={"batch_start": start, "batch_size": len(batch), "applied": applied},
                )
                raise ApplyError(f"Batch at offset {start} rejected: {e}", applied=applied) from e
            applied += len(batch)

        if applied:
            logger.debug("Applied events", extra={"count": applied})
        return applied

    def _apply_batch(self, batch: Sequence[ChangeEvent]) -> None:
        upserts = [e for e in batch if not e.is_delete]
        deletes = [e for e in batch if e.is_delete]

        with self._get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                conn.executemany(
                    """
                    INSERT INTO records (uri, did, collection, rkey, cid, record, time_us, indexed_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(uri) DO UPDATE SET
                        cid = excluded.cid,
                        record = excluded.record,
                        time_us = excluded.time_us,
                        indexed_at = excluded.indexed_at
                    """,
                    [
                        (e.uri, e.did, e.collection, e.rkey, e.cid, e.record, e.time_us, e.indexed_at)
                        for e in upserts
                    ],
                )
                conn.executemany(
                    "DELETE FROM records WHERE uri = ?",
                    [(e.uri,) for e in deletes],
                )
                conn.execute("COMMIT")

            except Exception:
                conn.execute("ROLLBACK")
                raise

    # Stream position

    async def get_position(self) -> int | None:
        """Get the saved stream position, or None before the first run."""
        with self._get_connection() as conn:
            row = conn.execute("SELECT time_us FROM cursor WHERE id = 1").fetchone()
            return row["time_us"] if row else None

    async def save_position(self, position: int) -> None:
        """Persist the stream position. Never moves it backwards.

        An overlapping invocation that stopped earlier may save an older
        position after a newer one; the conditional upsert ignores it.
        """
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO cursor (id, time_us) VALUES (1, ?)
                ON CONFLICT(id) DO UPDATE SET time_us = excluded.time_us
                WHERE excluded.time_us > cursor.time_us
                """,
                (position,),
            )

    # Backfill progress

    async def get_backfill(self, did: str, collection: str) -> BackfillProgress | None:
        """Get backfill progress for a pair, or None if never attempted."""
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT completed, pds_cursor FROM backfills WHERE did = ? AND collection = ?",
                (did, collection),
            ).fetchone()
            if not row:
                return None

            return BackfillProgress(
                did=did,
                collection=collection,
                completed=bool(row["completed"]),
                cursor=row["pds_cursor"],
            )

    async def ensure_backfill(self, did: str, collection: str) -> BackfillProgress:
        """Create the progress row if missing and return the stored state.

        The insert ignores conflicts, so a racing invocation that created the
        row first wins and both callers converge on the same row.
        """
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO backfills (did, collection, completed) VALUES (?, ?, 0)
                ON CONFLICT DO NOTHING
                """,
                (did, collection),
            )

        progress = await self.get_backfill(did, collection)
        if progress is None:
            raise StoreError(f"Backfill row for {did}/{collection} vanished after insert")
        return progress

    async def save_backfill_cursor(self, did: str, collection: str, cursor: str | None) -> None:
        """Persist the remote pagination cursor after a page is applied."""
        with self._get_connection() as conn:
            conn.execute(
                "UPDATE backfills SET pds_cursor = ? WHERE did = ? AND collection = ?",
                (cursor, did, collection),
            )

    async def mark_backfill_complete(self, did: str, collection: str) -> None:
        """Mark a pair as fully backfilled. Terminal."""
        with self._get_connection() as conn:
            conn.execute(
                "UPDATE backfills SET completed = 1 WHERE did = ? AND collection = ?",
                (did, collection),
            )

    # Read path

    async def get_record(self, uri: str) -> StoredRecord | None:
        """Get a record by URI."""
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT rowid AS id, * FROM records WHERE uri = ?",
                (uri,),
            ).fetchone()
            return self._row_to_record(row) if row else None

    async def list_records(
        self,
        collection: str,
        limit: int = 50,
        cursor: int | None = None,
        did: str | None = None,
    ) -> tuple[list[StoredRecord], str | None]:
        """List records newest-first by insertion order.

        Args:
            collection: Collection NSID
            limit: Page size (clamped to 1..100)
            cursor: Row id of the last record of the previous page
            did: Optional author filter

        Returns:
            Tuple of (records, next cursor or None on the last page)
        """
        limit = min(max(1, limit), 100)

        query = "SELECT rowid AS id, * FROM records WHERE collection = ?"
        params: list[Any] = [collection]
        if did:
            query += " AND did = ?"
            params.append(did)
        if cursor:
            query += " AND rowid < ?"
            params.append(cursor)
        query += " ORDER BY rowid DESC LIMIT ?"
        params.append(limit)

        with self._get_connection() as conn:
            records = [self._row_to_record(row) for row in conn.execute(query, params).fetchall()]

        next_cursor = str(records[-1].id) if len(records) == limit else None
        return records, next_cursor

    async def list_users(
        self,
        collection: str,
        limit: int = 50,
        cursor: int | None = None,
    ) -> tuple[list[str], str | None]:
        """List distinct authors with records in a collection.

        Args:
            collection: Collection NSID
            limit: Page size (clamped to 1..100)
            cursor: Offset into the did-ordered author list

        Returns:
            Tuple of (dids, next cursor or None on the last page)
        """
        limit = min(max(1, limit), 100)
        offset = cursor or 0

        with self._get_connection() as conn:
            rows = conn.execute(
                """
                SELECT DISTINCT did FROM records
                WHERE collection = ?
                ORDER BY did
                LIMIT ? OFFSET ?
                """,
                (collection, limit, offset),
            ).fetchall()

        users = [row["did"] for row in rows]
        next_cursor = str(offset + len(users)) if len(users) == limit else None
        return users, next_cursor

    async def get_stats(self) -> dict[str, int]:
        """Get row counts for the mirror."""
        with self._get_connection() as conn:
            stats = {}
            stats["records"] = conn.execute("SELECT COUNT(*) FROM records").fetchone()[0]
            stats["backfills"] = conn.execute("SELECT COUNT(*) FROM backfills").fetchone()[0]
            stats["backfills_completed"] = conn.execute(
                "SELECT COUNT(*) FROM backfills WHERE completed = 1"
            ).fetchone()[0]
            return stats

    def _row_to_record(self, row: sqlite3.Row) -> StoredRecord:
        return StoredRecord(
            id=row["id"],
            uri=row["uri"],
            did=row["did"],
            collection=row["collection"],
            rkey=row["rkey"],
            cid=row["cid"],
            record=row["record"],
            time_us=row["time_us"],
            indexed_at=row["indexed_at"],
        )
