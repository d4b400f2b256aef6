"""
DID document resolution for locating a user's record host.

Supports the two DID methods in use on the network:
- did:plc, resolved through the PLC directory
- did:web, resolved through https://<host>/.well-known/did.json

The record host is the service entry with id "#atproto_pds".
"""

from __future__ import annotations

import logging
from typing import Any
from urllib.parse import unquote

import httpx

from .base import HostError, HostNotFoundError

logger = logging.getLogger(__name__)

PDS_SERVICE_ID = "#atproto_pds"


class DidHostResolver:
    """HostResolver backed by DID documents.

    Resolved endpoints are cached on the instance only, so a cache lives as
    long as the resolver that the caller constructed for its invocation.

    Example:
        >>> async with httpx.AsyncClient() as client:
        ...     resolver = DidHostResolver(client)
        ...     endpoint = await resolver.resolve("did:plc:ewvi7nxzyoun6zhxrhs64oiz")
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        plc_directory_url: str = "https://plc.directory",
    ) -> None:
        self.client = client
        self.plc_directory_url = plc_directory_url.rstrip("/")
        self._cache: dict[str, str] = {}

    def _document_url(self, did: str) -> str:
        if did.startswith("did:plc:"):
            return f"{self.plc_directory_url}/{did}"
        if did.startswith("did:web:"):
            host = unquote(did[len("did:web:"):])
            return f"https://{host}/.well-known/did.json"
        raise HostNotFoundError(did, reason="Unsupported DID method")

    async def resolve(self, did: str) -> str:
        if did in self._cache:
            return self._cache[did]

        url = self._document_url(did)
        try:
            response = await self.client.get(url)
        except httpx.HTTPError as e:
            raise HostError(f"Failed to fetch DID document for {did}: {e}")

        if response.status_code == 404:
            raise HostNotFoundError(did, reason="DID document not found")
        if response.status_code != 200:
            raise HostError(f"DID document fetch for {did} returned HTTP {response.status_code}")

        try:
            document = response.json()
        except ValueError as e:
            raise HostError(f"Invalid DID document for {did}: {e}")
        if not isinstance(document, dict):
            raise HostNotFoundError(did, reason="Malformed DID document")

        endpoint = find_pds_endpoint(document)
        if not endpoint:
            raise HostNotFoundError(did)

        self._cache[did] = endpoint
        logger.debug("Resolved record host", extra={"did": did, "endpoint": endpoint})
        return endpoint


def find_pds_endpoint(document: dict[str, Any]) -> str | None:
    """Extract the PDS endpoint from a DID document.

    Malformed documents and service entries are treated as having no PDS.
    """
    services = document.get("service") if isinstance(document, dict) else None
    if not isinstance(services, list):
        return None

    for service in services:
        if not isinstance(service, dict):
            continue
        service_id = service.get("id")
        if not isinstance(service_id, str):
            continue
        if service_id == PDS_SERVICE_ID or service_id.endswith(PDS_SERVICE_ID):
            endpoint = service.get("serviceEndpoint")
            if isinstance(endpoint, str) and endpoint:
                return endpoint.rstrip("/")
    return None
