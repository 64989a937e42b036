"""KnowledgeStore — the versioned blackboard shared by all workers.

Workers publish intermediate results here and read each other's work.
Every key carries a version that grows by exactly one per write, so no
reader ever sees a value roll backward and no write goes unrecorded.

Writes to the same key are serialized by a per-key lock; writes to
different keys commit concurrently. Reads take no lock at all.

Usage:
    store = KnowledgeStore()
    version = await store.write("findings", {"rate_limit": 100}, writer="w1")
    value, version = store.read("findings")
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Awaitable

from pydantic import BaseModel, Field

from cohort.exceptions import KnowledgeConflictError
from cohort.persistence.journal import ACCESS_LOG, Journal
from cohort.types import WorkerId, new_id, utcnow

_logger = logging.getLogger(__name__)

ALL_KEYS = "*"


class KnowledgeEntry(BaseModel):
    """One committed version of a key."""

    model_config = {"frozen": True}

    key: str
    value: Any
    writer: WorkerId
    version: int
    timestamp: datetime = Field(default_factory=utcnow)


class AccessRecord(BaseModel):
    """Audit line for a successful write."""

    model_config = {"frozen": True}

    id: str = Field(default_factory=new_id)
    key: str
    writer: WorkerId
    operation: str = "write"
    version: int
    timestamp: datetime = Field(default_factory=utcnow)


KnowledgeCallback = Callable[[KnowledgeEntry], Awaitable[None]]


class KnowledgeStore:
    """Versioned key/value space with per-key write serialization."""

    def __init__(self, name: str = "", journal: Journal | None = None) -> None:
        self.name = name
        self._journal = journal
        self._entries: dict[str, KnowledgeEntry] = {}
        self._versions: dict[str, int] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._subscribers: dict[str, list[KnowledgeCallback]] = {}
        self._access_log: list[AccessRecord] = []
        self._writes = 0
        self._contended = 0

    # ── Reads ────────────────────────────────────────────────────

    def read(self, key: str) -> tuple[Any, int] | None:
        """Latest committed (value, version), or None if the key is absent."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        return entry.value, entry.version

    def entry(self, key: str) -> KnowledgeEntry | None:
        return self._entries.get(key)

    def value(self, key: str, default: Any = None) -> Any:
        entry = self._entries.get(key)
        return entry.value if entry else default

    def version(self, key: str) -> int:
        """Current version of a key; 0 if never written."""
        return self._versions.get(key, 0)

    def keys(self) -> list[str]:
        return list(self._entries.keys())

    # ── Writes ───────────────────────────────────────────────────

    async def write(self, key: str, value: Any, writer: WorkerId) -> int:
        """Commit a new version of ``key``. Returns the new version.

        Blocks only while another writer holds the same key.
        """
        lock = self._locks.setdefault(key, asyncio.Lock())
        if lock.locked():
            self._contended += 1

        async with lock:
            previous = self._entries.get(key)
            counter = self._versions.get(key, 0)
            if previous is not None and previous.version != counter:
                raise KnowledgeConflictError(
                    f"Key '{key}' holds version {previous.version} "
                    f"but the counter is at {counter}"
                )

            version = counter + 1
            entry = KnowledgeEntry(key=key, value=value, writer=writer, version=version)
            record = AccessRecord(key=key, writer=writer, version=version)

            if self._journal is not None:
                await self._journal.append(ACCESS_LOG, record)

            self._entries[key] = entry
            self._versions[key] = version
            self._access_log.append(record)
            self._writes += 1

        await self._notify(entry)
        return version

    # ── Subscriptions ────────────────────────────────────────────

    def subscribe(self, key: str, callback: KnowledgeCallback) -> None:
        """Call ``callback`` after every committed write to ``key`` ("*" = all)."""
        self._subscribers.setdefault(key, []).append(callback)

    def unsubscribe(self, key: str, callback: KnowledgeCallback) -> None:
        callbacks = self._subscribers.get(key, [])
        if callback in callbacks:
            callbacks.remove(callback)

    async def _notify(self, entry: KnowledgeEntry) -> None:
        callbacks = list(self._subscribers.get(entry.key, []))
        if entry.key != ALL_KEYS:
            callbacks.extend(self._subscribers.get(ALL_KEYS, []))
        if not callbacks:
            return
        results = await asyncio.gather(
            *(cb(entry) for cb in callbacks), return_exceptions=True,
        )
        for result in results:
            if isinstance(result, Exception):
                _logger.warning(
                    "Subscriber failed on '%s' v%d: %s", entry.key, entry.version, result,
                )

    # ── Audit & health ───────────────────────────────────────────

    def access_log(self, key: str | None = None) -> list[AccessRecord]:
        """Write log in commit order, optionally for one key."""
        if key is None:
            return list(self._access_log)
        return [r for r in self._access_log if r.key == key]

    async def persisted_access_log(self) -> list[AccessRecord]:
        """Access log as recorded in the journal, including earlier runs."""
        if self._journal is None:
            return self.access_log()
        return await self._journal.load(ACCESS_LOG, AccessRecord)

    def health(self) -> dict[str, float]:
        """Signals for the adaptation loop."""
        return {
            "writes": self._writes,
            "contended_writes": self._contended,
            "write_contention": self._contended / self._writes if self._writes else 0.0,
            "keys": len(self._entries),
        }

    def handle(self, writer: WorkerId) -> KnowledgeHandle:
        """A view bound to one writer identity, handed to executing workers."""
        return KnowledgeHandle(self, writer)


class KnowledgeHandle:
    """Writer-scoped access to a KnowledgeStore."""

    def __init__(self, store: KnowledgeStore, writer: WorkerId) -> None:
        self._store = store
        self.writer = writer

    def read(self, key: str) -> tuple[Any, int] | None:
        return self._store.read(key)

    def value(self, key: str, default: Any = None) -> Any:
        return self._store.value(key, default)

    async def write(self, key: str, value: Any) -> int:
        return await self._store.write(key, value, writer=self.writer)

    def subscribe(self, key: str, callback: KnowledgeCallback) -> None:
        self._store.subscribe(key, callback)

    def unsubscribe(self, key: str, callback: KnowledgeCallback) -> None:
        self._store.unsubscribe(key, callback)
