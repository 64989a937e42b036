"""Worker contract — what the engine needs from an autonomous worker.

The engine never looks inside a worker. It asks for capabilities once
at registration, offers announcements, dispatches awarded tasks with a
governed session, and probes liveness with heartbeat().
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

from cohort.types import Announcement, Appraisal, Bid, Task, WorkResult, WorkerId, new_id

if TYPE_CHECKING:
    from cohort.governor.governor import ExecutionSession


class Worker(ABC):
    """Base class for workers that take part in allocation."""

    def __init__(self, worker_id: WorkerId | None = None) -> None:
        self.id: WorkerId = worker_id or new_id()

    @abstractmethod
    def capabilities(self) -> set[str]:
        """Skill identifiers this worker can perform."""
        ...

    @abstractmethod
    async def execute(self, task: Task, session: ExecutionSession) -> WorkResult:
        """Do the work. Each unit of work goes through session.step()."""
        ...

    async def appraise(self, announcement: Announcement) -> Appraisal | None:
        """Decide whether (and how) to bid. None means no bid."""
        return Appraisal(score=1.0, cost_estimate=1.0)

    async def heartbeat(self) -> bool:
        return True

    async def on_bid_outcome(self, bid: Bid) -> None:
        """Told when a bid is accepted, rejected or expired."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}(id={self.id!r})"
