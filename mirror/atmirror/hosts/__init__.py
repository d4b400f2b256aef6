"""
Record host access for historical backfill.

This module provides:
- DID resolution to a user's record host (did:plc and did:web)
- Paged listing of a repository collection over XRPC
- An in-memory host for tests

Resolvers are plain instances owned by the caller; nothing here keeps
module-level state between invocations.
"""

from .base import (
    HostError,
    HostNotFoundError,
    HostResolver,
    RecordHostError,
    RepoUnavailableError,
    RecordLister,
    RecordPage,
    RemoteRecord,
)
from .identity import DidHostResolver
from .memory import InMemoryRecordHost, make_records
from .xrpc import XrpcRecordLister

__all__ = [
    "HostResolver",
    "RecordLister",
    "RecordPage",
    "RemoteRecord",
    "HostError",
    "HostNotFoundError",
    "RecordHostError",
    "RepoUnavailableError",
    "DidHostResolver",
    "XrpcRecordLister",
    "InMemoryRecordHost",
    "make_records",
]
