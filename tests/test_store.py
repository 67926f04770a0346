"""Tests for both document store engines."""

import pytest

from steward.config import Settings
from steward.storage import (
    SETTINGS,
    TASKS,
    MemoryDocumentStore,
    SqlDocumentStore,
    load_runtime_settings,
)
from steward.storage.database import Database


@pytest.fixture
async def sql_store(tmp_path):
    settings = Settings(database_url=f"sqlite+aiosqlite:///{tmp_path / 'steward.db'}")
    database = Database(settings)
    await database.connect()
    yield SqlDocumentStore(database)
    await database.disconnect()


@pytest.fixture(params=["memory", "sql"])
def any_store(request, sql_store):
    if request.param == "memory":
        return MemoryDocumentStore()
    return sql_store


class TestDocumentStore:

    async def test_upsert_get_delete(self, any_store):
        await any_store.upsert(TASKS, "t1", {"id": "t1", "title": "First"})
        assert (await any_store.get(TASKS, "t1"))["title"] == "First"

        await any_store.upsert(TASKS, "t1", {"id": "t1", "title": "Renamed"})
        assert (await any_store.get(TASKS, "t1"))["title"] == "Renamed"

        assert await any_store.delete(TASKS, "t1") is True
        assert await any_store.delete(TASKS, "t1") is False
        assert await any_store.get(TASKS, "t1") is None

    async def test_collections_are_separate(self, any_store):
        await any_store.upsert(TASKS, "x", {"id": "x"})
        await any_store.upsert(SETTINGS, "x", {"id": "x", "loopMode": "ongoing"})
        assert list(await any_store.load_collection(TASKS)) == ["x"]
        assert (await any_store.get(SETTINGS, "x"))["loopMode"] == "ongoing"

    async def test_save_collection_replaces(self, any_store):
        await any_store.upsert(TASKS, "old", {"id": "old"})
        await any_store.save_collection(TASKS, {"a": {"id": "a"}, "b": {"id": "b"}})
        assert sorted(await any_store.load_collection(TASKS)) == ["a", "b"]

    async def test_empty_collection(self, any_store):
        assert await any_store.load_collection("nothing") == {}


class TestMemoryStore:

    async def test_returns_copies(self):
        store = MemoryDocumentStore()
        doc = {"id": "t1", "tags": ["a"]}
        await store.upsert(TASKS, "t1", doc)
        doc["tags"].append("mutated")

        loaded = await store.get(TASKS, "t1")
        loaded["tags"].append("also mutated")
        assert (await store.get(TASKS, "t1"))["tags"] == ["a"]

    async def test_initial_data(self):
        store = MemoryDocumentStore({TASKS: {"t1": {"id": "t1"}}})
        assert await store.get(TASKS, "t1") == {"id": "t1"}


class TestRuntimeSettings:

    async def test_defaults_when_missing(self):
        overrides = await load_runtime_settings(MemoryDocumentStore())
        assert overrides.loop_mode is None
        assert overrides.heartbeat_interval_sec is None

    async def test_reads_app_record(self):
        store = MemoryDocumentStore()
        await store.upsert(SETTINGS, "app", {"loopMode": "ongoing", "heartbeatIntervalSec": 300})
        overrides = await load_runtime_settings(store)
        assert overrides.loop_mode == "ongoing"
        assert overrides.heartbeat_interval_sec == 300
