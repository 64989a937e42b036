"""Journal — durable, ordered, append-only record streams.

The access log, outcome history, policy versions and adaptation records
must survive a restart. Each is a named stream in one SQLite table;
records are pydantic models serialized with orjson. Nothing is ever
updated or deleted.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TypeVar

import aiosqlite
import orjson
from pydantic import BaseModel

from cohort.migrations.runner import apply_migrations
from cohort.types import new_id, utcnow

_logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

ACCESS_LOG = "access_log"
OUTCOMES = "outcomes"
POLICY_VERSIONS = "policy_versions"
ADAPTATIONS = "adaptations"


class Journal:
    """Append-only record store backed by SQLite."""

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path
        self._lock = asyncio.Lock()
        self._db: aiosqlite.Connection | None = None

    @property
    def db_path(self) -> str:
        return self._db_path

    async def initialize(self) -> None:
        """Bring the schema up to date and open the connection."""
        applied = await apply_migrations(self._db_path)
        if applied:
            _logger.info("Applied journal migrations %s to %s", applied, self._db_path)
        self._db = await aiosqlite.connect(self._db_path)

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None

    async def append(self, stream: str, record: BaseModel) -> None:
        """Append one record to a stream (immutable)."""
        db = self._require()
        payload = orjson.dumps(record.model_dump(mode="json")).decode()
        record_id = str(getattr(record, "id", "") or new_id())
        async with self._lock:
            await db.execute(
                "INSERT INTO journal (stream, record_id, payload, created_at) "
                "VALUES (?, ?, ?, ?)",
                (stream, record_id, payload, utcnow().isoformat()),
            )
            await db.commit()

    async def load(self, stream: str, model: type[M], limit: int | None = None) -> list[M]:
        """Read a stream back in append order (oldest first)."""
        db = self._require()
        query = "SELECT payload FROM journal WHERE stream = ? ORDER BY seq"
        params: tuple = (stream,)
        if limit is not None:
            # Keep the most recent `limit` rows, still oldest first
            query = (
                "SELECT payload FROM (SELECT seq, payload FROM journal "
                "WHERE stream = ? ORDER BY seq DESC LIMIT ?) ORDER BY seq"
            )
            params = (stream, limit)
        cursor = await db.execute(query, params)
        rows = await cursor.fetchall()
        return [model.model_validate(orjson.loads(row[0])) for row in rows]

    async def count(self, stream: str) -> int:
        db = self._require()
        cursor = await db.execute(
            "SELECT COUNT(*) FROM journal WHERE stream = ?", (stream,),
        )
        row = await cursor.fetchone()
        return int(row[0])

    def _require(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("Journal not initialized; call initialize() first")
        return self._db

    def __repr__(self) -> str:
        return f"Journal(db_path={self._db_path!r})"
