"""
Jetstream commit feed backend.

Jetstream serves the network's commit stream as JSON over a websocket, with
server-side filtering by collection and resume by time_us cursor. This
module wraps it behind the CommitFeed protocol using aiohttp.

Invariants:
    - One websocket per session, opened on first iteration
    - session.cursor only moves forward, to the time_us of received messages
    - Any transport failure surfaces as FeedConnectionError

How to change safely:
    - Keep query parameter names in sync with the Jetstream subscribe API
    - Test reconnection behaviour against a real Jetstream instance
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator, Sequence
from typing import Optional

import aiohttp

from .base import FeedConnectionError, FeedDecodeError, FeedMessage

logger = logging.getLogger(__name__)


class JetstreamSession:
    """A single Jetstream subscription."""

    def __init__(
        self,
        url: str,
        wanted_collections: Sequence[str],
        cursor: Optional[int],
        connect_timeout: float,
    ) -> None:
        self.url = url
        self.wanted_collections = list(wanted_collections)
        self.connect_timeout = connect_timeout
        self._cursor = cursor
        self._http: Optional[aiohttp.ClientSession] = None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None

    @property
    def cursor(self) -> Optional[int]:
        return self._cursor

    def _params(self) -> list[tuple[str, str]]:
        params = [("wantedCollections", c) for c in self.wanted_collections]
        if self._cursor is not None:
            params.append(("cursor", str(self._cursor)))
        return params

    async def _connect(self) -> aiohttp.ClientWebSocketResponse:
        self._http = aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(sock_connect=self.connect_timeout)
        )
        try:
            ws = await self._http.ws_connect(self.url, params=self._params(), heartbeat=30.0)
        except (aiohttp.ClientError, TimeoutError) as e:
            await self.close()
            raise FeedConnectionError(f"Failed to connect to Jetstream at {self.url}: {e}")

        logger.info(
            "Connected to Jetstream",
            extra={"url": self.url, "cursor": self._cursor, "collections": self.wanted_collections},
        )
        return ws

    def __aiter__(self) -> AsyncIterator[FeedMessage]:
        return self._messages()

    async def _messages(self) -> AsyncIterator[FeedMessage]:
        self._ws = await self._connect()

        try:
            async for msg in self._ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    try:
                        data = json.loads(msg.data)
                    except json.JSONDecodeError as e:
                        raise FeedDecodeError(f"Invalid JSON from Jetstream: {e}")
                    message = FeedMessage.from_dict(data)
                    self._cursor = message.time_us
                    yield message
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    raise FeedConnectionError(
                        f"Jetstream websocket error: {self._ws.exception()}"
                    )
        except aiohttp.ClientError as e:
            raise FeedConnectionError(f"Jetstream connection lost: {e}")

        raise FeedConnectionError(f"Jetstream closed the connection (code {self._ws.close_code})")

    async def close(self) -> None:
        if self._ws is not None and not self._ws.closed:
            await self._ws.close()
        if self._http is not None and not self._http.closed:
            await self._http.close()
        self._ws = None
        self._http = None


class JetstreamFeed:
    """CommitFeed backed by a Jetstream websocket endpoint.

    Example:
        >>> feed = JetstreamFeed("wss://jetstream2.us-east.bsky.network/subscribe")
        >>> session = feed.session(["app.bsky.feed.like"], cursor=None)
    """

    def __init__(self, url: str, connect_timeout: float = 10.0) -> None:
        self.url = url
        self.connect_timeout = connect_timeout

    def session(
        self,
        wanted_collections: Sequence[str],
        cursor: Optional[int] = None,
    ) -> JetstreamSession:
        return JetstreamSession(self.url, wanted_collections, cursor, self.connect_timeout)
