"""Tests for the versioned knowledge store."""

from __future__ import annotations

import asyncio

import pytest

from cohort.exceptions import KnowledgeConflictError
from cohort.knowledge.store import KnowledgeEntry, KnowledgeStore
from cohort.persistence.journal import Journal


async def test_write_and_read():
    store = KnowledgeStore(name="test")

    version = await store.write("findings", {"rate_limit": 100}, writer="researcher")

    assert version == 1
    assert store.read("findings") == ({"rate_limit": 100}, 1)
    entry = store.entry("findings")
    assert entry.writer == "researcher"
    assert entry.version == 1


async def test_read_missing_key():
    store = KnowledgeStore()
    assert store.read("missing") is None
    assert store.value("missing", default="N/A") == "N/A"
    assert store.version("missing") == 0


async def test_versions_increase_by_one():
    store = KnowledgeStore()
    versions = [await store.write("x", i, writer="w") for i in range(5)]
    assert versions == [1, 2, 3, 4, 5]
    assert store.read("x") == (4, 5)


async def test_keys_version_independently():
    store = KnowledgeStore()
    await store.write("a", 1, writer="w")
    await store.write("a", 2, writer="w")
    await store.write("b", 1, writer="w")
    assert store.version("a") == 2
    assert store.version("b") == 1
    assert sorted(store.keys()) == ["a", "b"]


async def test_concurrent_writers_same_key():
    store = KnowledgeStore()

    results = await asyncio.gather(
        store.write("x", "from-a", writer="a"),
        store.write("x", "from-b", writer="b"),
    )

    assert sorted(results) == [1, 2]
    assert store.version("x") == 2
    log = store.access_log("x")
    assert [r.writer for r in log] == ["a", "b"]
    assert [r.version for r in log] == [1, 2]
    # The surviving value belongs to whoever committed last
    assert store.read("x") == ("from-b", 2)


async def test_many_concurrent_writes_never_lose_a_version():
    store = KnowledgeStore()
    await asyncio.gather(*(store.write("k", i, writer=f"w{i}") for i in range(50)))
    assert store.version("k") == 50
    assert [r.version for r in store.access_log("k")] == list(range(1, 51))


async def test_same_key_writes_serialize_with_slow_commit(db_path):
    journal = Journal(db_path)
    await journal.initialize()
    try:
        store = KnowledgeStore(journal=journal)
        await asyncio.gather(*(store.write("x", i, writer=f"w{i}") for i in range(5)))

        assert store.version("x") == 5
        health = store.health()
        assert health["writes"] == 5
        assert health["contended_writes"] >= 1
        assert 0 < health["write_contention"] <= 1
    finally:
        await journal.close()


async def test_subscriber_sees_committed_entry():
    store = KnowledgeStore()
    seen: list[tuple[int, object]] = []

    async def on_write(entry: KnowledgeEntry) -> None:
        # The entry must already be visible to readers
        seen.append((entry.version, store.read(entry.key)))

    store.subscribe("x", on_write)
    await store.write("x", "v1", writer="w")
    await store.write("y", "ignored", writer="w")

    assert seen == [(1, ("v1", 1))]


async def test_wildcard_subscriber_and_unsubscribe():
    store = KnowledgeStore()
    keys: list[str] = []

    async def on_any(entry: KnowledgeEntry) -> None:
        keys.append(entry.key)

    store.subscribe("*", on_any)
    await store.write("a", 1, writer="w")
    await store.write("b", 1, writer="w")
    store.unsubscribe("*", on_any)
    await store.write("c", 1, writer="w")

    assert keys == ["a", "b"]


async def test_failing_subscriber_does_not_break_write():
    store = KnowledgeStore()

    async def broken(entry: KnowledgeEntry) -> None:
        raise RuntimeError("boom")

    store.subscribe("x", broken)
    assert await store.write("x", 1, writer="w") == 1
    assert store.version("x") == 1


async def test_conflict_is_fatal():
    store = KnowledgeStore()
    await store.write("x", 1, writer="w")
    store._versions["x"] = 7  # corrupt the counter

    with pytest.raises(KnowledgeConflictError):
        await store.write("x", 2, writer="w")
    # Nothing was committed
    assert store.read("x") == (1, 1)
    assert len(store.access_log("x")) == 1


async def test_handle_writes_as_its_writer():
    store = KnowledgeStore()
    handle = store.handle("worker-1")

    await handle.write("notes", "hello")

    assert handle.read("notes") == ("hello", 1)
    assert store.entry("notes").writer == "worker-1"
    assert store.access_log()[0].writer == "worker-1"


async def test_access_log_persisted_across_restart(db_path):
    journal = Journal(db_path)
    await journal.initialize()
    store = KnowledgeStore(journal=journal)
    await store.write("x", 1, writer="a")
    await store.write("x", 2, writer="b")
    await journal.close()

    reopened = Journal(db_path)
    await reopened.initialize()
    try:
        restored = await KnowledgeStore(journal=reopened).persisted_access_log()
        assert [(r.key, r.writer, r.version) for r in restored] == [("x", "a", 1), ("x", "b", 2)]
    finally:
        await reopened.close()
