"""Coordinator — the single entry point that ties the engine together.

A submitted task goes through:

    allocate (re-announced under the retry policy while unallocated)
      -> confirm the winner by heartbeat
      -> execute through the governor, bounded by the task deadline
      -> record an OutcomeRecord with the adaptation loop
      -> return a TaskReport

Every terminal outcome is reported, with the worker, the policy version
and a failure classification. Only KnowledgeConflictError escapes.

Usage:
    coordinator = Coordinator()
    coordinator.register_worker(my_worker)
    report = await coordinator.submit(Task(description="index docs",
                                           required_capabilities={"search"}))
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime
from typing import Any

from cohort.adaptation.loop import AdaptationConfig, AdaptationLoop, StandingIssue
from cohort.allocation.protocol import AllocationProtocol, AllocationResult
from cohort.allocation.registry import WorkerRecord, WorkerRegistry
from cohort.config import CohortSettings, settings
from cohort.events.bus import EventBus
from cohort.events.metrics import MetricsRegistry
from cohort.exceptions import (
    ApprovalExpiredError,
    ApprovalRejectedError,
    ExecutionEscalation,
    ExecutionHalted,
    KnowledgeConflictError,
    TaskStateError,
)
from cohort.governor.approval import ApprovalGate
from cohort.governor.governor import AutonomyGovernor, CheckpointPredicate, majority_ok
from cohort.governor.state_machine import ExecutionState
from cohort.knowledge.store import KnowledgeStore
from cohort.persistence.journal import Journal
from cohort.policy.schema import CoordinationPolicy
from cohort.policy.store import PolicyStore
from cohort.retry import RetryPolicy
from cohort.types import (
    TERMINAL_TASK_STATES,
    OutcomeRecord,
    Task,
    TaskId,
    TaskReport,
    TaskState,
    TaskStatus,
    WorkerId,
    utcnow,
)
from cohort.workers.base import Worker

_logger = logging.getLogger(__name__)

_TASK_STATE_FOR = {
    TaskStatus.COMPLETED: TaskState.COMPLETED,
    TaskStatus.EXPIRED: TaskState.EXPIRED,
}


class Coordinator:
    """Owns task lifecycles and routes them through the other components."""

    def __init__(
        self,
        policies: PolicyStore | None = None,
        knowledge: KnowledgeStore | None = None,
        registry: WorkerRegistry | None = None,
        event_bus: EventBus | None = None,
        metrics: MetricsRegistry | None = None,
        gate: ApprovalGate | None = None,
        retry: RetryPolicy | None = None,
        journal: Journal | None = None,
        adaptation: AdaptationConfig | None = None,
        checkpoint_predicate: CheckpointPredicate = majority_ok,
    ) -> None:
        self.journal = journal
        self.event_bus = event_bus or EventBus(history_limit=settings.event_history_limit)
        self.metrics = metrics or MetricsRegistry()
        self.policies = policies or PolicyStore(journal=journal)
        self.knowledge = knowledge or KnowledgeStore(name="cohort", journal=journal)
        self.registry = registry or WorkerRegistry()
        self.retry = retry or RetryPolicy.from_settings(settings)

        self.protocol = AllocationProtocol(
            self.registry, self.policies, event_bus=self.event_bus, metrics=self.metrics,
        )
        self.gate = gate or ApprovalGate(event_bus=self.event_bus, metrics=self.metrics)
        self.governor = AutonomyGovernor(
            self.policies,
            gate=self.gate,
            event_bus=self.event_bus,
            metrics=self.metrics,
            checkpoint_predicate=checkpoint_predicate,
        )
        self.adaptation = AdaptationLoop(
            self.policies,
            config=adaptation,
            knowledge=self.knowledge,
            journal=journal,
            event_bus=self.event_bus,
            metrics=self.metrics,
        )

        self._states: dict[TaskId, TaskState] = {}
        self._reports: dict[TaskId, TaskReport] = {}
        self._running: dict[TaskId, asyncio.Future] = {}
        self._executions: dict[TaskId, str] = {}
        self._cancelled: set[TaskId] = set()

    @classmethod
    def from_settings(
        cls, cfg: CohortSettings | None = None, journal: Journal | None = None, **kwargs: Any,
    ) -> Coordinator:
        cfg = cfg or settings
        return cls(
            policies=PolicyStore(CoordinationPolicy.from_settings(cfg), journal=journal),
            retry=RetryPolicy.from_settings(cfg),
            adaptation=AdaptationConfig.from_settings(cfg),
            event_bus=EventBus(history_limit=cfg.event_history_limit),
            journal=journal,
            **kwargs,
        )

    async def initialize(self) -> None:
        """Restore policy and outcome history from the journal, if any."""
        if self.journal is None:
            return
        await self.policies.initialize()
        await self.adaptation.restore()

    # ── Workers ──────────────────────────────────────────────────

    def register_worker(self, worker: Worker) -> WorkerRecord:
        return self.registry.register(worker)

    def unregister_worker(self, worker_id: WorkerId) -> None:
        self.registry.unregister(worker_id)

    # ── Submission ───────────────────────────────────────────────

    async def submit(self, task: Task) -> TaskReport:
        """Run one task to a terminal outcome and report it."""
        if task.id in self._states:
            raise TaskStateError(f"Task {task.id} was already submitted")
        self._states[task.id] = TaskState.PENDING
        started = time.monotonic()
        await self._emit("task.submitted", {
            "task_id": task.id,
            "required_capabilities": sorted(task.required_capabilities),
            "priority": task.priority,
        })

        if task.is_expired():
            return await self._conclude(
                task, started, TaskStatus.EXPIRED, failure="deadline",
                detail="deadline passed before allocation",
            )

        allocation = await self._allocate(task)
        if allocation is None or (task.id in self._cancelled and not allocation.awarded):
            return await self._conclude(
                task, started, TaskStatus.FAILED, failure="cancelled",
                detail="cancelled before award", bids=len(self.protocol.bids(task.id)),
            )
        if not allocation.awarded:
            expired = task.is_expired()
            return await self._conclude(
                task, started,
                TaskStatus.EXPIRED if expired else TaskStatus.UNALLOCATED,
                failure="deadline" if expired else "unallocated",
                detail=allocation.reason,
                bids=len(self.protocol.bids(task.id)),
            )

        self._states[task.id] = TaskState.AWARDED
        return await self._execute(task, allocation, started)

    async def submit_many(self, tasks: list[Task]) -> list[TaskReport]:
        """Submit tasks concurrently; reports come back in input order."""
        return list(await asyncio.gather(*(self.submit(t) for t in tasks)))

    async def _allocate(self, task: Task) -> AllocationResult | None:
        """Allocate, re-announcing while unallocated. None if cancelled first."""
        result: AllocationResult | None = None
        for attempt in range(1, self.retry.max_attempts + 1):
            if attempt > 1:
                await self.retry.sleep(attempt - 1)
                if task.is_expired():
                    break
                _logger.info("Re-announcing task %s (attempt %d)", task.id, attempt)
            if task.id in self._cancelled:
                break
            self._states[task.id] = TaskState.ANNOUNCED
            result = await self.protocol.allocate(task, confirm=self._heartbeat)
            if result.awarded:
                break
        return result

    async def _heartbeat(self, worker_id: WorkerId) -> bool:
        return await self.registry.get(worker_id).worker.heartbeat()

    # ── Execution ────────────────────────────────────────────────

    async def _execute(self, task: Task, allocation: AllocationResult, started: float) -> TaskReport:
        award = allocation.require_award()
        worker = self.registry.get(award.worker_id).worker
        session = await self.governor.start(
            task, worker.id, knowledge=self.knowledge, auto_continue=True,
        )
        execution_id = session.execution_id
        self._executions[task.id] = execution_id
        self._states[task.id] = TaskState.EXECUTING

        status = TaskStatus.COMPLETED
        failure = ""
        detail = ""
        output = None
        timeout = _seconds_left(task.deadline)
        work = asyncio.ensure_future(worker.execute(task, session))
        self._running[task.id] = work
        if task.id in self._cancelled:
            work.cancel()  # cancelled between award and dispatch
        try:
            result = await asyncio.wait_for(work, timeout=timeout)
            output = result.output
            detail = result.detail
            if not result.success:
                status, failure = TaskStatus.FAILED, "worker_reported_failure"
        except ExecutionEscalation as e:
            status, failure, detail = TaskStatus.ESCALATED, "step_ceiling", str(e)
        except ExecutionHalted as e:
            status, failure, detail = TaskStatus.HALTED, "checkpoint", str(e)
        except ApprovalExpiredError as e:
            status, failure, detail = TaskStatus.FAILED, "approval_expired", str(e)
        except ApprovalRejectedError as e:
            status, failure, detail = TaskStatus.FAILED, "approval_rejected", str(e)
        except asyncio.TimeoutError:
            status, failure, detail = TaskStatus.EXPIRED, "deadline", "deadline passed during execution"
        except asyncio.CancelledError:
            if task.id not in self._cancelled:
                await self.governor.cancel(execution_id, reason="coordinator shutdown")
                raise
            status, failure, detail = TaskStatus.FAILED, "cancelled", "cancelled during execution"
        except KnowledgeConflictError:
            await self.governor.cancel(execution_id, reason="knowledge conflict")
            raise
        except Exception as e:
            _logger.warning("Worker %s failed on task %s: %s", worker.id, task.id, e)
            status, failure, detail = TaskStatus.FAILED, "worker_error", f"{type(e).__name__}: {e}"
        finally:
            self._running.pop(task.id, None)

        # A worker that swallowed the governor's verdict does not get to override it
        state = self.governor.state(execution_id)
        if state == ExecutionState.ESCALATED and status == TaskStatus.COMPLETED:
            status, failure = TaskStatus.ESCALATED, "step_ceiling"
        elif state == ExecutionState.HALTED and status == TaskStatus.COMPLETED:
            status, failure = TaskStatus.HALTED, "checkpoint"

        approvals = self.governor.approvals(execution_id)
        if status == TaskStatus.COMPLETED:
            budget = await self.governor.finish(execution_id, success=True)
        elif status == TaskStatus.FAILED and failure == "cancelled":
            budget = await self.governor.cancel(execution_id, reason="task cancelled")
        else:
            budget = await self.governor.finish(execution_id, success=False)

        return await self._conclude(
            task, started, status,
            worker_id=worker.id,
            policy_version=award.policy_version,
            failure=failure,
            detail=detail,
            bids=len(self.protocol.bids(task.id)),
            steps=budget.total_steps if budget else 0,
            escalations=budget.escalations if budget else 0,
            approvals=approvals,
            output=output,
        )

    async def _conclude(
        self,
        task: Task,
        started: float,
        status: TaskStatus,
        worker_id: WorkerId | None = None,
        policy_version: int | None = None,
        failure: str = "",
        detail: str = "",
        bids: int = 0,
        steps: int = 0,
        escalations: int = 0,
        approvals: list[str] | None = None,
        output: Any = None,
    ) -> TaskReport:
        """Record the outcome, feed adaptation and publish the report."""
        latency_ms = (time.monotonic() - started) * 1000
        version = policy_version if policy_version is not None else self.policies.version
        outcome = OutcomeRecord(
            task_id=task.id,
            worker_id=worker_id,
            status=status,
            policy_version=version,
            latency_ms=latency_ms,
            success=status == TaskStatus.COMPLETED,
            escalation_count=escalations,
            steps=steps,
        )
        self._states[task.id] = _TASK_STATE_FOR.get(status, TaskState.FAILED)
        report = TaskReport(
            task_id=task.id,
            status=status,
            worker_id=worker_id,
            policy_version=version,
            failure=failure,
            detail=detail,
            bids=bids,
            steps=steps,
            escalations=escalations,
            approvals=approvals or [],
            output=output,
            outcome_id=outcome.id,
        )
        self._reports[task.id] = report
        self._executions.pop(task.id, None)
        self._cancelled.discard(task.id)
        self.protocol.release(task.id)

        self.metrics.increment(f"task.{status.value}")
        self.metrics.record("task.latency_ms", latency_ms)
        log = _logger.info if status == TaskStatus.COMPLETED else _logger.warning
        log("Task %s %s (worker=%s, policy v%d%s)", task.id, status.value,
            worker_id, version, f", {failure}" if failure else "")
        await self._emit("task.reported", {
            "task_id": task.id,
            "status": status.value,
            "failure": failure,
            "policy_version": version,
            "latency_ms": round(latency_ms, 1),
        }, agent_id=worker_id or "")

        await self.adaptation.record(outcome)
        return report

    # ── Control & queries ────────────────────────────────────────

    async def cancel(self, task_id: TaskId) -> bool:
        """Cancel a task before award (allocation) or after (execution)."""
        state = self._states.get(task_id)
        if state is None or state in TERMINAL_TASK_STATES:
            return False
        self._cancelled.add(task_id)
        if state in (TaskState.PENDING, TaskState.ANNOUNCED):
            await self.protocol.cancel(task_id, reason="cancelled by coordinator")
            return True
        work = self._running.get(task_id)
        if work is not None and not work.done():
            work.cancel()
        return True

    def reports(self) -> list[TaskReport]:
        return list(self._reports.values())

    def report(self, task_id: TaskId) -> TaskReport | None:
        return self._reports.get(task_id)

    def task_state(self, task_id: TaskId) -> TaskState | None:
        return self._states.get(task_id)

    def standing_issues(self) -> list[StandingIssue]:
        return self.adaptation.standing_issues()

    def summary(self) -> dict[str, Any]:
        counts: dict[str, int] = {}
        for report in self._reports.values():
            counts[report.status.value] = counts.get(report.status.value, 0) + 1
        return {
            "workers": len(self.registry),
            "tasks": len(self._states),
            "reports": counts,
            "policy_version": self.policies.version,
            "active_executions": len(self.governor.active()),
            "pending_approvals": len(self.gate.pending_requests()),
            "standing_issues": len(self.adaptation.standing_issues()),
        }

    async def _emit(self, event_type: str, data: dict[str, Any], agent_id: str = "") -> None:
        await self.event_bus.emit(event_type, data, agent_id=agent_id, source="coordinator")


def _seconds_left(deadline: datetime | None) -> float | None:
    if deadline is None:
        return None
    return max((deadline - utcnow()).total_seconds(), 0.0)
