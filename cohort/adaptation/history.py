"""Outcome history — every OutcomeRecord, ordered by completion time."""

from __future__ import annotations

import asyncio
import bisect
import logging

from cohort.persistence.journal import OUTCOMES, Journal
from cohort.types import OutcomeRecord, TaskStatus

_logger = logging.getLogger(__name__)


class OutcomeHistory:
    """Append-only list of outcomes.

    Concurrent tasks can finish in any order relative to when they are
    recorded, so records are inserted at their completion-time position
    rather than appended blindly. Ties keep arrival order.
    """

    def __init__(self, journal: Journal | None = None) -> None:
        self._journal = journal
        self._records: list[OutcomeRecord] = []
        self._keys: list[float] = []
        self._lock = asyncio.Lock()

    async def restore(self) -> int:
        """Load persisted outcomes. Returns how many were restored."""
        if self._journal is None:
            return 0
        stored = await self._journal.load(OUTCOMES, OutcomeRecord)
        self._records = []
        self._keys = []
        for record in stored:
            self._insert(record)
        if stored:
            _logger.info("Restored %d outcome records", len(stored))
        return len(stored)

    async def append(self, record: OutcomeRecord) -> None:
        async with self._lock:
            if self._journal is not None:
                await self._journal.append(OUTCOMES, record)
            self._insert(record)

    def _insert(self, record: OutcomeRecord) -> None:
        key = record.completed_at.timestamp()
        index = bisect.bisect_right(self._keys, key)
        self._keys.insert(index, key)
        self._records.insert(index, record)

    def recent(self, n: int | None = None) -> list[OutcomeRecord]:
        """The last ``n`` outcomes by completion time (all if n is None)."""
        if n is None:
            return list(self._records)
        return self._records[-n:] if n > 0 else []

    def for_task(self, task_id: str) -> list[OutcomeRecord]:
        return [r for r in self._records if r.task_id == task_id]

    def count_by_status(self) -> dict[str, int]:
        counts = {status.value: 0 for status in TaskStatus}
        for record in self._records:
            counts[record.status.value] += 1
        return counts

    def __len__(self) -> int:
        return len(self._records)
