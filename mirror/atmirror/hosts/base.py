"""
Protocols and types for per-user record hosts.

Backfill reads a user's history straight from the server hosting their
repository (their PDS). Two collaborators are involved:
- HostResolver: did -> service endpoint
- RecordLister: one page of a repository collection from an endpoint

Invariants:
    - Resolution failure raises HostNotFoundError (or another HostError)
    - A RecordPage with no records, or with no cursor, ends the collection
"""

from __future__ import annotations

from abc import abstractmethod
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable


class HostError(Exception):
    """Base exception for record host operations. Retryable unless noted."""

    pass


class HostNotFoundError(HostError):
    """No record host could be resolved for a did."""

    def __init__(self, did: str, reason: str = "PDS not found") -> None:
        super().__init__(f"{reason}: {did}")
        self.did = did


class RecordHostError(HostError):
    """A page fetch from a record host failed."""

    pass


class RepoUnavailableError(RecordHostError):
    """The record host rejected the request with a client error.

    Typically a deleted or deactivated repository. Not retryable.
    """

    def __init__(self, message: str, status_code: int) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass(frozen=True)
class RemoteRecord:
    """One entry of a listRecords page.

    Attributes:
        uri: Record URI (at://did/collection/rkey)
        cid: Content reference
        value: Record body
    """

    uri: str
    cid: str | None
    value: dict[str, Any]

    @property
    def rkey(self) -> str:
        return self.uri.rsplit("/", 1)[-1]


@dataclass(frozen=True)
class RecordPage:
    """A page of records plus the cursor for the next page."""

    records: list[RemoteRecord] = field(default_factory=list)
    cursor: str | None = None

    @property
    def is_empty(self) -> bool:
        return not self.records


@runtime_checkable
class HostResolver(Protocol):
    """Resolves a did to the endpoint of its record host."""

    @abstractmethod
    async def resolve(self, did: str) -> str:
        """Resolve a did.

        Returns:
            Service endpoint URL

        Raises:
            HostNotFoundError: If the did has no record host
            HostError: For transport failures
        """
        ...


@runtime_checkable
class RecordLister(Protocol):
    """Lists records of one repository collection, a page at a time."""

    @abstractmethod
    async def list_records(
        self,
        endpoint: str,
        did: str,
        collection: str,
        cursor: str | None = None,
        limit: int = 100,
    ) -> RecordPage:
        """Fetch one page.

        Raises:
            RecordHostError: If the request fails
        """
        ...
