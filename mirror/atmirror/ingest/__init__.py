"""
Ingestion for atmirror: live stream slices and historical backfill.

Both paths produce ChangeEvents and hand them to the RecordStore; neither
ever runs unbounded. Every entry point takes a wall-clock deadline and
leaves durable state resumable when it expires.
"""

from .backfill import BackfillWorker
from .stream import IngestResult, StreamIngestor

__all__ = [
    "StreamIngestor",
    "IngestResult",
    "BackfillWorker",
]
