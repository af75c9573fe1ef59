"""Record store contract, run against the memory and SQL backends."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from pathlib import Path

import pytest

from donationgate.errors import StorageUnavailable
from donationgate.model.store import verify_written
from donationgate.model.store._memory import RecordStore as MemoryStore


@asynccontextmanager
async def open_store(kind: str, tmp_path: Path):
    if kind == "memory":
        yield MemoryStore()
        return
    from donationgate.infra.sql import make_async_engine
    from donationgate.model.store._postgres import (
        RecordStore as SqlStore, create_schema,
    )
    engine, sessions, gated = make_async_engine(
        f"sqlite:///{tmp_path / 'records.db'}"
    )
    try:
        async with engine.begin() as conn:
            await create_schema(conn)
        async with sessions() as session:
            yield SqlStore(db=session, gated=gated)
    finally:
        await engine.dispose()


@pytest.fixture(params=["memory", "sql"])
def backend(request) -> str:
    if request.param == "sql":
        pytest.importorskip("aiosqlite")
    return request.param


class TestContract:
    def test_get_missing(self, backend: str, tmp_path: Path) -> None:
        async def scenario():
            async with open_store(backend, tmp_path) as store:
                assert await store.get("grant:nope") is None
                assert await store.get_versioned("grant:nope") == (None, 0)
        asyncio.run(scenario())

    def test_put_bumps_version(self, backend: str, tmp_path: Path) -> None:
        async def scenario():
            async with open_store(backend, tmp_path) as store:
                await store.put("k", {"a": 1})
                await store.put("k", {"a": 2})
                doc, version = await store.get_versioned("k")
                assert doc == {"a": 2}
                assert version == 2
        asyncio.run(scenario())

    def test_create_only_once(self, backend: str, tmp_path: Path) -> None:
        async def scenario():
            async with open_store(backend, tmp_path) as store:
                assert await store.create("payment:r1", {"n": 1}) is True
                assert await store.create("payment:r1", {"n": 2}) is False
                assert await store.get("payment:r1") == {"n": 1}
        asyncio.run(scenario())

    def test_stale_version_rejected(self, backend: str,
                                    tmp_path: Path) -> None:
        async def scenario():
            async with open_store(backend, tmp_path) as store:
                await store.put("index:donations:r1", {"status": "CREATED"})
                _, v1 = await store.get_versioned("index:donations:r1")
                _, v2 = await store.get_versioned("index:donations:r1")
                assert await store.compare_and_set(
                    "index:donations:r1", {"status": "AUTHORIZED"}, v1)
                # second writer read the same version: must not clobber
                assert not await store.compare_and_set(
                    "index:donations:r1", {"status": "FAILED"}, v2)
                assert await store.get("index:donations:r1") == \
                    {"status": "AUTHORIZED"}
        asyncio.run(scenario())

    def test_list_by_prefix(self, backend: str, tmp_path: Path) -> None:
        async def scenario():
            async with open_store(backend, tmp_path) as store:
                await store.put("donation:r_2:b", {})
                await store.put("donation:r_1:a", {})
                await store.put("donation:rX1:c", {})
                await store.put("grant:a", {})
                assert await store.list("donation:") == [
                    "donation:rX1:c", "donation:r_1:a", "donation:r_2:b",
                ]
                # "_" is a literal, not a wildcard
                assert await store.list("donation:r_1:") == \
                    ["donation:r_1:a"]
        asyncio.run(scenario())

    def test_delete(self, backend: str, tmp_path: Path) -> None:
        async def scenario():
            async with open_store(backend, tmp_path) as store:
                await store.put("index:donations:r1", {"a": 1})
                await store.delete("index:donations:r1")
                await store.delete("index:donations:never")
                assert await store.get_versioned("index:donations:r1") == \
                    (None, 0)
                assert await store.list("index:") == []
                # recreated from scratch
                assert await store.create("index:donations:r1", {"a": 2})
        asyncio.run(scenario())


def test_memory_store_isolates_documents() -> None:
    async def scenario():
        store = MemoryStore()
        doc = {"donations": [1]}
        await store.put("k", doc)
        doc["donations"].append(2)
        fetched = await store.get("k")
        fetched["donations"].append(3)
        assert await store.get("k") == {"donations": [1]}
    asyncio.run(scenario())


class LaggingStore(MemoryStore):
    """Answers None for the first `lag` reads of every key."""

    def __init__(self, lag: int) -> None:
        super().__init__()
        self.lag = lag
        self.reads = 0

    async def get(self, key):
        self.reads += 1
        if self.reads <= self.lag:
            return None
        return await super().get(key)


class BrokenStore(MemoryStore):
    async def get(self, key):
        raise StorageUnavailable("connection refused")


class TestVerifyWritten:
    def test_eventually_visible(self) -> None:
        async def scenario():
            store = LaggingStore(lag=2)
            await store.put("grant:x", {"ok": True})
            assert await verify_written(store, "grant:x", backoff=0) is True
            assert store.reads == 3
        asyncio.run(scenario())

    def test_never_visible(self) -> None:
        async def scenario():
            store = LaggingStore(lag=10)
            await store.put("grant:x", {"ok": True})
            assert await verify_written(store, "grant:x", backoff=0) is False
            assert store.reads == 3
        asyncio.run(scenario())

    def test_store_errors_are_swallowed(self) -> None:
        async def scenario():
            return await verify_written(BrokenStore(), "grant:x", backoff=0)
        assert asyncio.run(scenario()) is False
