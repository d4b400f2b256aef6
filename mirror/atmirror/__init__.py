"""
atmirror - a resumable local mirror of AT Protocol records.

This package keeps a queryable SQLite copy of the records users publish in
a chosen set of collections, fed from two sources:
- Jetstream, the network's live commit stream (near-real-time)
- Each user's own PDS, paged through once per (user, collection) (catch-up)

Architecture:
    ┌─────────────┐                         ┌──────────────────┐
    │  Jetstream  │                         │    User PDS      │
    │ (commits)   │                         │ (listRecords)    │
    └──────┬──────┘                         └────────┬─────────┘
           │                                         │
           ▼                                         ▼
    ┌─────────────┐     new (did, collection)  ┌──────────────┐
    │   Stream    │───────────────────────────▶│   Backfill   │
    │  Ingestor   │                            │    Worker    │
    └──────┬──────┘                            └──────┬───────┘
           │          ChangeEvents                    │
           └───────────────────┬──────────────────────┘
                               ▼
                      ┌─────────────────┐
                      │   RecordStore   │
                      │    (SQLite)     │
                      └─────────────────┘

Invariants:
    - Every invocation is time-boxed and leaves state resumable
    - Merges are idempotent (at-least-once delivery is fine)
    - The stream position only advances past applied events
    - A completed backfill is never repeated

Version: see _version.py.
"""

from ._version import __version__

__all__ = ["__version__"]
