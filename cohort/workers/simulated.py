"""Simulated workers — configurable stand-ins for real agents.

Used by ``cohort simulate`` and by tests to drive the engine without
any external execution payload.
"""

from __future__ import annotations

import asyncio
import random

from cohort.exceptions import ApprovalRejectedError, CohortError
from cohort.governor.governor import ExecutionSession
from cohort.types import Announcement, Appraisal, Bid, Task, WorkResult, WorkerId
from cohort.workers.base import Worker


class SimulatedFault(CohortError):
    """A step failure injected by a SimulatedWorker."""


class SimulatedWorker(Worker):
    """A worker whose skill, cost, speed and reliability are parameters.

    Each execution runs ``steps`` governed steps. A step fails with
    probability ``failure_rate``; failed and refused steps are counted by
    the governor and the worker carries on. Progress is written to the blackboard
    under ``task/<id>/progress``.
    """

    def __init__(
        self,
        worker_id: WorkerId | None = None,
        capabilities: set[str] | None = None,
        score: float = 1.0,
        cost: float = 1.0,
        steps: int = 3,
        failure_rate: float = 0.0,
        step_delay: float = 0.0,
        actions: list[str] | None = None,
        responsive: bool = True,
        bids: bool = True,
        seed: int | None = None,
    ) -> None:
        super().__init__(worker_id)
        self._capabilities = set(capabilities or {"general"})
        self.score = score
        self.cost = cost
        self.steps = steps
        self.failure_rate = failure_rate
        self.step_delay = step_delay
        self.actions = list(actions or [])
        self.responsive = responsive
        self.bids = bids
        self._rng = random.Random(seed)
        self.outcomes: list[Bid] = []
        self.executed: list[str] = []

    def capabilities(self) -> set[str]:
        return set(self._capabilities)

    async def appraise(self, announcement: Announcement) -> Appraisal | None:
        if not self.bids:
            return None
        return Appraisal(score=self.score, cost_estimate=self.cost)

    async def heartbeat(self) -> bool:
        return self.responsive

    async def on_bid_outcome(self, bid: Bid) -> None:
        self.outcomes.append(bid)

    async def execute(self, task: Task, session: ExecutionSession) -> WorkResult:
        self.executed.append(task.id)
        failures = 0
        for i in range(self.steps):
            description = self.actions[i] if i < len(self.actions) else f"{task.description} (step {i + 1})"
            try:
                await session.step(description, self._action, action_id=f"step-{i + 1}")
            except (SimulatedFault, ApprovalRejectedError):
                # Only this step is lost; the governor already counted it
                failures += 1
                continue
            if session.knowledge is not None:
                await session.knowledge.write(f"task/{task.id}/progress", i + 1)
        return WorkResult(
            success=failures * 2 <= self.steps,
            output={"steps": self.steps, "failures": failures},
            detail=f"{failures} of {self.steps} steps failed" if failures else "",
        )

    async def _action(self) -> None:
        if self.step_delay:
            await asyncio.sleep(self.step_delay)
        if self.failure_rate and self._rng.random() < self.failure_rate:
            raise SimulatedFault("injected step failure")
