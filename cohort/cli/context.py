"""CLI runtime context — bridges the sync CLI to the async engine."""

from __future__ import annotations

import asyncio
from typing import Any, Coroutine

from cohort.config import CohortSettings, settings
from cohort.coordinator import Coordinator
from cohort.persistence.journal import Journal


class CohortContext:
    """Holds the journal and coordinator for one CLI invocation."""

    _instance: CohortContext | None = None

    def __init__(self, cfg: CohortSettings | None = None, persist: bool = True) -> None:
        self.settings = cfg or settings
        self.journal: Journal | None = Journal(str(self.settings.db_path)) if persist else None
        self.coordinator: Coordinator | None = None

    async def ensure(self) -> Coordinator:
        """Open the journal and restore history on first use."""
        if self.coordinator is None:
            if self.journal is not None:
                self.settings.db_path.parent.mkdir(parents=True, exist_ok=True)
                await self.journal.initialize()
            self.coordinator = Coordinator.from_settings(self.settings, journal=self.journal)
            await self.coordinator.initialize()
        return self.coordinator

    async def close(self) -> None:
        if self.journal is not None:
            await self.journal.close()
        self.coordinator = None

    @classmethod
    def get(cls, persist: bool = True) -> CohortContext:
        if cls._instance is None:
            cls._instance = cls(persist=persist)
        return cls._instance


def run_async(coro: Coroutine) -> Any:
    """Run an async coroutine from sync CLI code."""
    return asyncio.run(coro)
