"""Worker Registry — who can bid, and on what.

Capability sets are validated and frozen when a worker registers, so
eligibility checks during bidding are plain set comparisons.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime

from cohort.exceptions import CapabilityError, WorkerNotFoundError
from cohort.types import WorkerId, normalize_capabilities, utcnow
from cohort.workers.base import Worker

_logger = logging.getLogger(__name__)


@dataclass
class WorkerRecord:
    """A registered worker and its frozen capability set."""

    worker: Worker
    capabilities: frozenset[str]
    registered_at: datetime = field(default_factory=utcnow)

    @property
    def id(self) -> WorkerId:
        return self.worker.id

    def can_perform(self, required: frozenset[str]) -> bool:
        return self.capabilities >= required


class WorkerRegistry:
    """Registered workers, keyed by ID."""

    def __init__(self) -> None:
        self._workers: dict[WorkerId, WorkerRecord] = {}

    def register(self, worker: Worker) -> WorkerRecord:
        """Validate and freeze the worker's capabilities, then register it."""
        capabilities = normalize_capabilities(worker.capabilities())
        if not capabilities:
            raise CapabilityError(f"Worker '{worker.id}' declares no capabilities")
        if worker.id in self._workers:
            raise CapabilityError(f"Worker '{worker.id}' is already registered")
        record = WorkerRecord(worker=worker, capabilities=capabilities)
        self._workers[worker.id] = record
        _logger.info("Registered worker %s with %s", worker.id, sorted(capabilities))
        return record

    def unregister(self, worker_id: WorkerId) -> None:
        if self._workers.pop(worker_id, None) is None:
            raise WorkerNotFoundError(f"No worker with id {worker_id}")

    def get(self, worker_id: WorkerId) -> WorkerRecord:
        record = self._workers.get(worker_id)
        if record is None:
            raise WorkerNotFoundError(f"No worker with id {worker_id}")
        return record

    def __contains__(self, worker_id: object) -> bool:
        return worker_id in self._workers

    def __len__(self) -> int:
        return len(self._workers)

    def all(self) -> list[WorkerRecord]:
        return list(self._workers.values())

    def eligible(self, required: frozenset[str]) -> list[WorkerRecord]:
        """Workers whose capabilities are a superset of ``required``."""
        return [r for r in self._workers.values() if r.can_perform(required)]

    def list_workers(self) -> list[dict]:
        return [
            {"id": r.id, "capabilities": sorted(r.capabilities)}
            for r in self._workers.values()
        ]
