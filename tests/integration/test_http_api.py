"""
Integration tests for the read API.

Runs the aiohttp application in-process against a real SQLite store.
"""

import os
import tempfile

import pytest
from aiohttp import test_utils

from mirror.atmirror.api import ApiContext, create_http_app
from mirror.atmirror.apply.events import ChangeEvent
from mirror.atmirror.apply.record_store import RecordStore
from mirror.atmirror.hosts import InMemoryRecordHost, make_records
from mirror.atmirror.ingest import BackfillWorker

COLLECTION = "app.bsky.feed.post"
ALICE = "did:plc:alice"
BOB = "did:plc:bob"


def post(did: str, rkey: str, text: str) -> ChangeEvent:
    return ChangeEvent.from_commit(did, 1, COLLECTION, rkey, "create", cid="bafy", record={"text": text})


class TestHttpApi:
    """Tests for the read API endpoints."""

    @pytest.fixture
    def data_dir(self):
        """Create temporary data directory."""
        with tempfile.TemporaryDirectory() as tmpdir:
            yield tmpdir

    @pytest.fixture
    async def store(self, data_dir):
        store = RecordStore(os.path.join(data_dir, "mirror.db"), wal_mode=False)
        await store.apply_events([post(ALICE, f"a{i}", f"alice {i}") for i in range(3)])
        await store.apply_events([post(BOB, "b0", "bob 0")])
        return store

    @pytest.fixture
    def host(self):
        return InMemoryRecordHost()

    @pytest.fixture
    def workers(self, store, host):
        built = []

        def build():
            built.append(BackfillWorker(store, host, host))
            return built[-1]

        build.built = built
        return build

    @pytest.fixture
    async def client(self, store, workers):
        ctx = ApiContext(
            store=store,
            backfill_workers=workers,
            collections=[COLLECTION],
        )
        async with test_utils.TestClient(test_utils.TestServer(create_http_app(ctx))) as client:
            yield client

    @pytest.mark.asyncio
    async def test_health(self, client):
        resp = await client.get("/health")

        assert resp.status == 200
        assert await resp.json() == {"status": "ok"}
        assert resp.headers["Access-Control-Allow-Origin"] == "*"

    @pytest.mark.asyncio
    async def test_records_newest_first(self, client):
        resp = await client.get(f"/records/{COLLECTION}")

        assert resp.status == 200
        data = await resp.json()
        assert [r["rkey"] for r in data["records"]] == ["b0", "a2", "a1", "a0"]
        assert data["records"][0]["record"] == {"text": "bob 0"}
        assert data["cursor"] is None

    @pytest.mark.asyncio
    async def test_records_pagination(self, client):
        resp = await client.get(f"/records/{COLLECTION}", params={"limit": "3"})
        first = await resp.json()
        assert len(first["records"]) == 3
        assert first["cursor"] is not None

        resp = await client.get(f"/records/{COLLECTION}", params={"limit": "3", "cursor": first["cursor"]})
        second = await resp.json()
        assert [r["rkey"] for r in second["records"]] == ["a0"]
        assert second["cursor"] is None

    @pytest.mark.asyncio
    async def test_records_for_did_backfills_first(self, client, host):
        """A did filter pulls that author's history before answering."""
        carol = "did:plc:carol"
        host.set_pages(carol, COLLECTION, [make_records(carol, COLLECTION, 4)])

        resp = await client.get(f"/records/{COLLECTION}", params={"did": carol})

        data = await resp.json()
        assert len(data["records"]) == 4
        assert {r["did"] for r in data["records"]} == {carol}
        assert host.resolve_calls == [carol]

        resp = await client.get(f"/backfill/{COLLECTION}/{carol}")
        assert (await resp.json())["status"] == "complete"

    @pytest.mark.asyncio
    async def test_each_request_gets_its_own_worker(self, client, host, workers):
        """Identity lookups are not cached across requests."""
        carol = "did:plc:carol"
        host.set_pages(carol, COLLECTION, [make_records(carol, COLLECTION, 1)])

        await client.get(f"/records/{COLLECTION}", params={"did": carol})
        await client.get(f"/records/{COLLECTION}", params={"did": BOB})

        assert len(workers.built) == 2
        assert workers.built[0] is not workers.built[1]

    @pytest.mark.asyncio
    async def test_records_without_did_builds_no_worker(self, client, workers):
        await client.get(f"/records/{COLLECTION}")

        assert workers.built == []

    @pytest.mark.asyncio
    async def test_records_for_unresolvable_did(self, client, host):
        """Backfill failure still returns the mirrored rows."""
        host.make_unresolvable(ALICE)

        resp = await client.get(f"/records/{COLLECTION}", params={"did": ALICE})

        assert resp.status == 200
        data = await resp.json()
        assert len(data["records"]) == 3

    @pytest.mark.asyncio
    async def test_untracked_collection(self, client):
        resp = await client.get("/records/app.bsky.feed.like")

        assert resp.status == 404
        assert "error" in await resp.json()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("params", [{"limit": "0"}, {"limit": "abc"}, {"cursor": "0"}])
    async def test_invalid_records_params(self, client, params):
        resp = await client.get(f"/records/{COLLECTION}", params=params)

        assert resp.status == 400
        assert "error" in await resp.json()

    @pytest.mark.asyncio
    async def test_limit_clamped(self, client):
        resp = await client.get(f"/records/{COLLECTION}", params={"limit": "1000"})

        assert resp.status == 200
        assert len((await resp.json())["records"]) == 4

    @pytest.mark.asyncio
    async def test_users(self, client):
        resp = await client.get(f"/users/{COLLECTION}", params={"limit": "1"})
        data = await resp.json()
        assert data == {"users": [ALICE], "cursor": "1"}

        resp = await client.get(f"/users/{COLLECTION}", params={"limit": "1", "cursor": "1"})
        data = await resp.json()
        assert data["users"] == [BOB]

    @pytest.mark.asyncio
    async def test_backfill_status(self, client, store):
        resp = await client.get(f"/backfill/{COLLECTION}/{ALICE}")
        assert (await resp.json())["status"] == "unknown"

        await store.ensure_backfill(ALICE, COLLECTION)
        resp = await client.get(f"/backfill/{COLLECTION}/{ALICE}")
        assert (await resp.json()) == {
            "did": ALICE,
            "collection": COLLECTION,
            "status": "in_progress",
        }

    @pytest.mark.asyncio
    async def test_method_not_allowed(self, client):
        resp = await client.post(f"/records/{COLLECTION}")

        assert resp.status == 405
        assert "error" in await resp.json()
