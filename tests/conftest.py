"""Shared test fixtures — scripted workers and fast policies."""

from __future__ import annotations

import os
import tempfile
from typing import Any, Awaitable, Callable

import pytest

from cohort.governor.governor import ExecutionSession
from cohort.policy.schema import CoordinationPolicy
from cohort.policy.store import PolicyStore
from cohort.types import Announcement, Appraisal, Bid, Task, WorkResult
from cohort.workers.base import Worker


class ScriptedWorker(Worker):
    """Worker whose bids and execution are scripted by the test."""

    def __init__(
        self,
        worker_id: str,
        capabilities: set[str],
        score: float = 1.0,
        cost: float = 1.0,
        bids: bool = True,
        responsive: bool = True,
        run: Callable[[Task, ExecutionSession], Awaitable[Any]] | None = None,
        steps: int = 1,
    ):
        super().__init__(worker_id)
        self._capabilities = capabilities
        self.score = score
        self.cost = cost
        self.bids = bids
        self.responsive = responsive
        self.run = run
        self.steps = steps
        self.appraised: list[str] = []
        self.outcomes: list[Bid] = []
        self.executed: list[str] = []

    def capabilities(self) -> set[str]:
        return set(self._capabilities)

    async def appraise(self, announcement: Announcement) -> Appraisal | None:
        self.appraised.append(announcement.task_id)
        if not self.bids:
            return None
        return Appraisal(score=self.score, cost_estimate=self.cost)

    async def heartbeat(self) -> bool:
        return self.responsive

    async def on_bid_outcome(self, bid: Bid) -> None:
        self.outcomes.append(bid)

    async def execute(self, task: Task, session: ExecutionSession) -> WorkResult:
        self.executed.append(task.id)
        if self.run is not None:
            output = await self.run(task, session)
            if isinstance(output, WorkResult):
                return output
            return WorkResult(output=output)
        for i in range(self.steps):
            await session.step(f"work on {task.description} ({i + 1})")
        return WorkResult(output="done")


@pytest.fixture
def make_worker():
    def _factory(worker_id: str, capabilities: set[str], **kwargs) -> ScriptedWorker:
        return ScriptedWorker(worker_id, capabilities, **kwargs)
    return _factory


@pytest.fixture
def make_policies():
    """PolicyStore whose version 1 is the default policy with overrides."""
    def _factory(**changes) -> PolicyStore:
        defaults = {"bidding_window_seconds": 0.1, "execution_start_timeout_seconds": 0.2}
        defaults.update(changes)
        return PolicyStore(CoordinationPolicy(**defaults))
    return _factory


@pytest.fixture
def db_path():
    fd, path = tempfile.mkstemp(suffix=".db")
    os.close(fd)
    yield path
    os.unlink(path)
