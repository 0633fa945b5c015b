"""ConditionalStore contract, run against the in-memory and the motor-backed adapters."""
import asyncio

import pytest
from mongomock_motor import AsyncMongoMockClient

from ticketing_engine.errors import StoreContention
from ticketing_engine.store import (
    DuplicateDocument,
    MemoryConditionalStore,
    MongoConditionalStore,
    VersionConflict,
)


@pytest.fixture(params=["memory", "mongo"])
def any_store(request):
    if request.param == "memory":
        return MemoryConditionalStore(max_retries=5)
    database = AsyncMongoMockClient()["ticketing_test"]
    return MongoConditionalStore(database, max_retries=5)


class TestReadInsert:
    async def test_missing_document_reads_none(self, any_store):
        assert await any_store.read("things", "nope") is None

    async def test_insert_starts_at_version_one(self, any_store):
        stored = await any_store.insert("things", {"id": "a", "n": 1})
        assert stored["version"] == 1
        assert await any_store.read("things", "a") == {"id": "a", "n": 1, "version": 1}

    async def test_duplicate_insert_rejected(self, any_store):
        await any_store.insert("things", {"id": "a"})
        with pytest.raises(DuplicateDocument):
            await any_store.insert("things", {"id": "a"})


class TestConditionalWrite:
    async def test_write_with_current_version(self, any_store):
        await any_store.insert("things", {"id": "a", "n": 1})
        stored = await any_store.conditional_write("things", {"id": "a", "n": 2}, expected_version=1)
        assert stored["version"] == 2
        assert (await any_store.read("things", "a"))["n"] == 2

    async def test_stale_version_conflicts(self, any_store):
        await any_store.insert("things", {"id": "a", "n": 1})
        await any_store.conditional_write("things", {"id": "a", "n": 2}, expected_version=1)
        with pytest.raises(VersionConflict):
            await any_store.conditional_write("things", {"id": "a", "n": 3}, expected_version=1)
        assert (await any_store.read("things", "a"))["n"] == 2


class TestFind:
    async def test_equality_filter_and_limit(self, any_store):
        for i in range(4):
            await any_store.insert("things", {"id": str(i), "kind": "odd" if i % 2 else "even"})
        evens = await any_store.find("things", {"kind": "even"})
        assert sorted(d["id"] for d in evens) == ["0", "2"]
        assert len(await any_store.find("things", limit=3)) == 3


class TestMutate:
    async def test_missing_document_returns_none(self, any_store):
        assert await any_store.mutate("things", "nope", lambda doc: doc) is None

    async def test_no_change_returns_current(self, any_store):
        await any_store.insert("things", {"id": "a", "n": 1})
        doc = await any_store.mutate("things", "a", lambda doc: None)
        assert doc["version"] == 1

    async def test_error_inside_change_writes_nothing(self, any_store):
        await any_store.insert("things", {"id": "a", "n": 1})

        def explode(doc):
            doc["n"] = 99
            raise ValueError("no")

        with pytest.raises(ValueError):
            await any_store.mutate("things", "a", explode)
        assert (await any_store.read("things", "a"))["n"] == 1


class TestMemoryConcurrency:
    async def test_concurrent_increments_all_land(self):
        store = MemoryConditionalStore(max_retries=100)
        await store.insert("counters", {"id": "c", "n": 0})

        def increment(doc):
            doc["n"] += 1
            return doc

        await asyncio.gather(*(store.mutate("counters", "c", increment) for _ in range(20)))
        doc = await store.read("counters", "c")
        assert doc["n"] == 20
        assert doc["version"] == 21

    async def test_gives_up_after_max_retries(self):
        store = MemoryConditionalStore(max_retries=3)
        await store.insert("counters", {"id": "c", "n": 0})

        async def always_conflict(collection, doc, expected_version):
            raise VersionConflict(doc["id"])

        store.conditional_write = always_conflict
        with pytest.raises(StoreContention):
            await store.mutate("counters", "c", lambda doc: {**doc, "n": 1})
