"""
Read-only HTTP API for atmirror.

A thin adapter over the RecordStore's read path:
- GET /health                    liveness
- GET /records/{collection}      mirrored records, newest first
- GET /users/{collection}        distinct authors in a collection
- GET /backfill/{collection}/{did}  backfill status for a pair

Invariants:
    - Only tracked collections are served (404 otherwise)
    - Only GET is accepted (405 otherwise)
    - Responses are JSON, with an "error" key on failure
    - A did filter on /records triggers a short on-demand backfill first
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

from aiohttp import web

from ..apply.record_store import RecordStore, StoreError
from ..ingest.backfill import BackfillWorker

logger = logging.getLogger(__name__)


@dataclass
class ApiContext:
    """Collaborators shared by the request handlers.

    Attributes:
        store: Reconciliation store
        backfill_workers: Builds a fresh backfill worker per request, so no
            identity cache outlives the request (None disables on-demand
            backfill)
        collections: Tracked collection NSIDs
        backfill_seconds: Deadline for an on-demand backfill
        clock: Wall-clock source in seconds
    """

    store: RecordStore
    backfill_workers: Callable[[], BackfillWorker] | None
    collections: Sequence[str]
    backfill_seconds: float = 10.0
    clock: Callable[[], float] = field(default=time.time)


API_CONTEXT = web.AppKey("api_context", ApiContext)


def json_error(message: str, status: int) -> web.Response:
    return web.json_response({"error": message}, status=status)


def create_http_app(ctx: ApiContext) -> web.Application:
    """Create the read API application.

    Args:
        ctx: Store, backfill worker and tracked collections

    Returns:
        aiohttp Application instance
    """
    app = web.Application(middlewares=[error_middleware, cors_middleware])
    app[API_CONTEXT] = ctx

    app.router.add_get("/", handle_health)
    app.router.add_get("/health", handle_health)
    app.router.add_get("/records/{collection}", handle_get_records)
    app.router.add_get("/users/{collection}", handle_get_users)
    app.router.add_get("/backfill/{collection}/{did}", handle_get_backfill)

    return app


@web.middleware
async def cors_middleware(request: web.Request, handler: Callable) -> web.StreamResponse:
    try:
        response = await handler(request)
    except web.HTTPException as e:
        response = json_error(e.reason, e.status)

    response.headers["Access-Control-Allow-Origin"] = "*"
    return response


@web.middleware
async def error_middleware(request: web.Request, handler: Callable) -> web.StreamResponse:
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except Exception as e:
        logger.error(f"HTTP handler error: {e}", exc_info=True)
        return json_error("Internal error", 500)


def _tracked_collection(request: web.Request, ctx: ApiContext) -> str:
    collection = request.match_info["collection"]
    if collection not in ctx.collections:
        raise web.HTTPNotFound(reason="Collection not tracked")
    return collection


def _int_param(request: web.Request, name: str, default: int | None, minimum: int) -> int | None:
    raw = request.query.get(name)
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise web.HTTPBadRequest(reason=f"Invalid {name} parameter")
    if value < minimum:
        raise web.HTTPBadRequest(reason=f"Invalid {name} parameter")
    return value


async def handle_health(request: web.Request) -> web.Response:
    """Handle GET /health."""
    return web.json_response({"status": "ok"})


async def handle_get_records(request: web.Request) -> web.Response:
    """Handle GET /records/{collection}?limit&cursor&did."""
    ctx = request.app[API_CONTEXT]
    collection = _tracked_collection(request, ctx)
    limit = _int_param(request, "limit", 50, minimum=1)
    cursor = _int_param(request, "cursor", None, minimum=1)
    did = request.query.get("did") or None

    if did and ctx.backfill_workers is not None:
        deadline = ctx.clock() + ctx.backfill_seconds
        try:
            await ctx.backfill_workers().backfill_one(did, collection, deadline)
        except StoreError as e:
            logger.error(
                f"On-demand backfill failed for {did}/{collection}: {e}",
                extra={"did": did, "collection": collection},
            )

    records, next_cursor = await ctx.store.list_records(collection, limit, cursor, did)
    return web.json_response({
        "records": [r.to_dict() for r in records],
        "cursor": next_cursor,
    })


async def handle_get_users(request: web.Request) -> web.Response:
    """Handle GET /users/{collection}?limit&cursor."""
    ctx = request.app[API_CONTEXT]
    collection = _tracked_collection(request, ctx)
    limit = _int_param(request, "limit", 50, minimum=1)
    cursor = _int_param(request, "cursor", None, minimum=0)

    users, next_cursor = await ctx.store.list_users(collection, limit, cursor)
    return web.json_response({"users": users, "cursor": next_cursor})


async def handle_get_backfill(request: web.Request) -> web.Response:
    """Handle GET /backfill/{collection}/{did}."""
    ctx = request.app[API_CONTEXT]
    collection = _tracked_collection(request, ctx)
    did = request.match_info["did"]

    progress = await ctx.store.get_backfill(did, collection)
    body: dict[str, Any] = {
        "did": did,
        "collection": collection,
        "status": progress.status if progress else "unknown",
    }
    return web.json_response(body)
