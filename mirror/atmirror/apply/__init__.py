"""
Apply module for atmirror - idempotent merge of change events.

This module handles:
- The normalized ChangeEvent shared by both feeds
- The SQLite reconciliation store (records, stream position, backfills)

Invariants:
    - Applying the same create/update event twice has no further effect
    - Deleting an absent record is a no-op
    - Checkpoints never move past events that failed to apply
"""

from .events import ChangeEvent, Operation, make_uri
from .record_store import ApplyError, BackfillProgress, RecordStore, StoredRecord, StoreError

__all__ = [
    "ChangeEvent",
    "Operation",
    "make_uri",
    "RecordStore",
    "StoredRecord",
    "BackfillProgress",
    "StoreError",
    "ApplyError",
]
