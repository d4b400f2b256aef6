"""
XRPC client for paging through a repository collection.

Calls com.atproto.repo.listRecords on the user's record host.
"""

from __future__ import annotations

import logging

import httpx

from .base import RecordHostError, RecordPage, RemoteRecord, RepoUnavailableError

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100

# Client errors that still mean "try again later"
RETRYABLE_CLIENT_STATUSES = frozenset({408, 429})


class XrpcRecordLister:
    """RecordLister using the listRecords XRPC endpoint."""

    def __init__(self, client: httpx.AsyncClient) -> None:
        self.client = client

    async def list_records(
        self,
        endpoint: str,
        did: str,
        collection: str,
        cursor: str | None = None,
        limit: int = MAX_PAGE_SIZE,
    ) -> RecordPage:
        params = {
            "repo": did,
            "collection": collection,
            "limit": min(max(1, limit), MAX_PAGE_SIZE),
        }
        if cursor:
            params["cursor"] = cursor

        url = f"{endpoint.rstrip('/')}/xrpc/com.atproto.repo.listRecords"
        try:
            response = await self.client.get(url, params=params)
        except httpx.HTTPError as e:
            raise RecordHostError(f"listRecords failed for {did}/{collection}: {e}")

        status = response.status_code
        if 400 <= status < 500 and status not in RETRYABLE_CLIENT_STATUSES:
            raise RepoUnavailableError(
                f"listRecords rejected for {did}/{collection}: HTTP {status}", status_code=status
            )

        try:
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as e:
            raise RecordHostError(f"listRecords failed for {did}/{collection}: {e}")
        except ValueError as e:
            raise RecordHostError(f"listRecords returned invalid JSON for {did}/{collection}: {e}")

        try:
            records = [
                RemoteRecord(uri=r["uri"], cid=r.get("cid"), value=r.get("value") or {})
                for r in data.get("records") or []
            ]
        except (KeyError, TypeError, AttributeError) as e:
            raise RecordHostError(f"Malformed listRecords page for {did}/{collection}: {e}")

        return RecordPage(records=records, cursor=data.get("cursor") or None)
