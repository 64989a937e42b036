"""Core types shared across all cohort subsystems."""

from __future__ import annotations

import re
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable, TypeAlias

from pydantic import BaseModel, Field, field_validator

from cohort.exceptions import CapabilityError

# ── ID Types ──────────────────────────────────────────────────────────────────

WorkerId: TypeAlias = str
TaskId: TypeAlias = str
BidId: TypeAlias = str
ExecutionId: TypeAlias = str
Capability: TypeAlias = str


def new_id() -> str:
    return uuid.uuid4().hex[:12]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


_CAPABILITY_RE = re.compile(r"^[a-z][a-z0-9_\-]*$")


def normalize_capabilities(values: Iterable[str]) -> frozenset[Capability]:
    """Validate capability identifiers and freeze them.

    Identifiers are lowercased and must match ``[a-z][a-z0-9_-]*``.
    Raises CapabilityError on anything else.
    """
    if isinstance(values, str):
        raise CapabilityError("Capabilities must be a collection, not a string")
    result: set[str] = set()
    for raw in values:
        if not isinstance(raw, str):
            raise CapabilityError(f"Capability {raw!r} is not a string")
        cap = raw.strip().lower()
        if not _CAPABILITY_RE.match(cap):
            raise CapabilityError(f"Invalid capability identifier: {raw!r}")
        result.add(cap)
    return frozenset(result)


# ── Lifecycle enums ──────────────────────────────────────────────────────────


class TaskState(str, Enum):
    PENDING = "pending"
    ANNOUNCED = "announced"
    AWARDED = "awarded"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"


TERMINAL_TASK_STATES = frozenset({
    TaskState.COMPLETED, TaskState.FAILED, TaskState.EXPIRED,
})


class TaskStatus(str, Enum):
    """User-visible terminal outcome of a submitted task."""

    COMPLETED = "completed"
    FAILED = "failed"
    UNALLOCATED = "unallocated"
    ESCALATED = "escalated"
    HALTED = "halted"
    EXPIRED = "expired"


class BidState(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    EXPIRED = "expired"


class AllocationState(str, Enum):
    ANNOUNCED = "announced"
    BIDDING = "bidding"
    EVALUATED = "evaluated"
    AWARDED = "awarded"
    UNALLOCATED = "unallocated"


# ── Tasks ────────────────────────────────────────────────────────────────────


class Task(BaseModel):
    """A unit of work. Immutable once created."""

    model_config = {"frozen": True}

    id: TaskId = Field(default_factory=new_id)
    description: str
    required_capabilities: frozenset[str] = Field(default_factory=frozenset)
    deadline: datetime | None = None
    priority: int = 0

    @field_validator("required_capabilities", mode="before")
    @classmethod
    def _check_capabilities(cls, value: Any) -> frozenset[str]:
        try:
            return normalize_capabilities(value or ())
        except CapabilityError as e:
            raise ValueError(str(e)) from e

    def is_expired(self, now: datetime | None = None) -> bool:
        if self.deadline is None:
            return False
        return (now or utcnow()) >= self.deadline


class Announcement(BaseModel):
    """What workers see when a task is put up for bidding."""

    model_config = {"frozen": True}

    task_id: TaskId
    description: str
    required_capabilities: frozenset[str]
    deadline: datetime | None = None
    priority: int = 0

    @classmethod
    def for_task(cls, task: Task) -> Announcement:
        return cls(
            task_id=task.id,
            description=task.description,
            required_capabilities=task.required_capabilities,
            deadline=task.deadline,
            priority=task.priority,
        )


# ── Bidding ──────────────────────────────────────────────────────────────────


class Appraisal(BaseModel):
    """A worker's answer to an announcement: how well and how cheaply."""

    score: float = Field(ge=0.0)
    cost_estimate: float = Field(gt=0.0)


class Bid(BaseModel):
    id: BidId = Field(default_factory=new_id)
    worker_id: WorkerId
    task_id: TaskId
    score: float
    cost_estimate: float
    submitted_at: datetime = Field(default_factory=utcnow)
    sequence: int = 0
    state: BidState = BidState.PENDING


class Award(BaseModel):
    """Task -> worker mapping. One per task, never changed."""

    model_config = {"frozen": True}

    task_id: TaskId
    worker_id: WorkerId
    bid_id: BidId
    composite_score: float
    policy_version: int
    awarded_at: datetime = Field(default_factory=utcnow)


# ── Execution results ────────────────────────────────────────────────────────


class WorkResult(BaseModel):
    """What a worker's execute() hands back."""

    success: bool = True
    output: Any = None
    detail: str = ""


class OutcomeRecord(BaseModel):
    """Result of one allocation + execution cycle. Never mutated."""

    model_config = {"frozen": True}

    id: str = Field(default_factory=new_id)
    task_id: TaskId
    worker_id: WorkerId | None = None
    status: TaskStatus
    policy_version: int
    latency_ms: float = 0.0
    success: bool = False
    escalation_count: int = 0
    steps: int = 0
    completed_at: datetime = Field(default_factory=utcnow)


class TaskReport(BaseModel):
    """Terminal outcome with enough context to rebuild the decision chain."""

    task_id: TaskId
    status: TaskStatus
    worker_id: WorkerId | None = None
    policy_version: int = 0
    failure: str = ""  # classification: unallocated, step_ceiling, checkpoint, ...
    detail: str = ""
    bids: int = 0
    steps: int = 0
    escalations: int = 0
    approvals: list[str] = Field(default_factory=list)
    output: Any = None
    outcome_id: str = ""
    reported_at: datetime = Field(default_factory=utcnow)

    @property
    def ok(self) -> bool:
        return self.status == TaskStatus.COMPLETED
