"""Autonomy Governor — bounded execution with checkpoints and a human gate.

Every awarded task runs inside a governed execution:

    Started -> Stepping -> {Checkpoint -> Stepping | Escalated | Halted}
            -> Completed | Failed

Each unit of work is one step. The step counter never exceeds the
policy's ceiling: the step after the ceiling escalates instead of
running. Every ``checkpoint_interval`` steps a validation predicate
looks at the recent outcomes and halts the execution if it fails.
High-risk actions wait for approval individually.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from enum import Enum
from typing import Any, Awaitable, Callable

from pydantic import BaseModel, Field

from cohort.events.bus import EventBus
from cohort.events.metrics import MetricsRegistry
from cohort.exceptions import (
    ApprovalExpiredError,
    ApprovalRejectedError,
    ExecutionEscalation,
    ExecutionHalted,
    ExecutionStateError,
)
from cohort.governor.approval import ApprovalGate, ApprovalRequest, ApprovalStatus
from cohort.governor.state_machine import ExecutionState, ExecutionStateMachine
from cohort.knowledge.store import KnowledgeHandle, KnowledgeStore
from cohort.policy.schema import ApprovalClassification
from cohort.policy.store import PolicyStore
from cohort.types import ExecutionId, Task, WorkerId, new_id

_logger = logging.getLogger(__name__)


class EscalationState(str, Enum):
    NORMAL = "normal"
    CHECKPOINT_PENDING = "checkpoint-pending"
    ESCALATED = "escalated"
    HALTED = "halted"


class AutonomyBudget(BaseModel):
    """Step accounting for one execution. Lives only while it runs."""

    execution_id: ExecutionId
    task_id: str
    worker_id: WorkerId
    policy_version: int
    max_steps: int
    checkpoint_interval: int
    max_continuations: int
    step_count: int = 0
    total_steps: int = 0  # across continuations
    outcomes: list[bool] = Field(default_factory=list)
    escalation_state: EscalationState = EscalationState.NORMAL
    escalations: int = 0
    continuations: int = 0


class StepStatus(BaseModel):
    """Where an execution stands after a step was offered."""

    execution_id: ExecutionId
    state: ExecutionState
    escalation_state: EscalationState
    step_count: int
    max_steps: int
    counted: bool = False
    checkpoint: bool = False
    detail: str = ""


CheckpointPredicate = Callable[[list[bool]], bool]


def majority_ok(outcomes: list[bool]) -> bool:
    """Default checkpoint: pass unless more than half of the window failed."""
    failures = sum(1 for ok in outcomes if not ok)
    return failures * 2 <= len(outcomes)


class _Slot:
    """A place reserved under the step ceiling for one step in flight."""

    __slots__ = ("index", "held")

    def __init__(self, index: int) -> None:
        self.index = index
        self.held = True


class _Execution:
    def __init__(self, task: Task, budget: AutonomyBudget) -> None:
        self.task = task
        self.budget = budget
        self.machine = ExecutionStateMachine(budget.execution_id)
        self.lock = asyncio.Lock()
        self.settled = asyncio.Condition(self.lock)
        self.in_flight = 0
        self.offered = 0
        self.approvals: list[str] = []
        self.continuation_requests: set[str] = set()
        self.used_continuations: set[str] = set()


class AutonomyGovernor:
    """Owns every active AutonomyBudget and the approvals scoped to it."""

    def __init__(
        self,
        policies: PolicyStore,
        gate: ApprovalGate | None = None,
        event_bus: EventBus | None = None,
        metrics: MetricsRegistry | None = None,
        checkpoint_predicate: CheckpointPredicate = majority_ok,
    ) -> None:
        self._policies = policies
        self._bus = event_bus
        self._metrics = metrics
        self.gate = gate or ApprovalGate(event_bus=event_bus, metrics=metrics)
        self._checkpoint_ok = checkpoint_predicate
        self._executions: dict[ExecutionId, _Execution] = {}

    # ── Lifecycle ────────────────────────────────────────────────

    async def start(
        self,
        task: Task,
        worker_id: WorkerId,
        knowledge: KnowledgeStore | None = None,
        auto_continue: bool = False,
    ) -> ExecutionSession:
        """Create a budget from the current policy and open a session."""
        policy = self._policies.current
        budget = AutonomyBudget(
            execution_id=new_id(),
            task_id=task.id,
            worker_id=worker_id,
            policy_version=self._policies.version,
            max_steps=policy.max_steps,
            checkpoint_interval=policy.checkpoint_interval,
            max_continuations=policy.max_continuations,
        )
        execution = _Execution(task, budget)
        execution.machine.on_transition(self._count_transition)
        self._executions[budget.execution_id] = execution

        await self._emit("execution.started", {
            "execution_id": budget.execution_id,
            "task_id": task.id,
            "max_steps": budget.max_steps,
            "checkpoint_interval": budget.checkpoint_interval,
            "policy_version": budget.policy_version,
        }, agent_id=worker_id)
        handle = knowledge.handle(worker_id) if knowledge is not None else None
        return ExecutionSession(self, task, budget.execution_id, handle, auto_continue)

    async def finish(self, execution_id: ExecutionId, success: bool) -> AutonomyBudget:
        """Terminate an execution, releasing its budget and pending approvals."""
        execution = self._require(execution_id)
        state = execution.machine.state
        if success and state in (ExecutionState.ESCALATED, ExecutionState.HALTED):
            raise ExecutionStateError(
                f"Execution {execution_id} is {state.value}; it cannot complete"
            )
        target = ExecutionState.COMPLETED if success else ExecutionState.FAILED
        if not execution.machine.terminal:
            await execution.machine.transition(target)
        return await self._release(execution, reason=f"execution {target.value}")

    async def cancel(self, execution_id: ExecutionId, reason: str = "cancelled") -> AutonomyBudget | None:
        """Abandon an execution; pending approvals expire rather than vanish."""
        execution = self._executions.get(execution_id)
        if execution is None:
            return None
        if not execution.machine.terminal:
            await execution.machine.transition(ExecutionState.FAILED)
        await self._emit("execution.cancelled", {
            "execution_id": execution_id, "reason": reason,
        }, agent_id=execution.budget.worker_id)
        return await self._release(execution, reason=reason)

    async def _release(self, execution: _Execution, reason: str) -> AutonomyBudget:
        budget = execution.budget
        await self.gate.expire_for(budget.execution_id, reason)
        self._executions.pop(budget.execution_id, None)
        if self._metrics:
            self._metrics.record("execution.steps", budget.total_steps)
        await self._emit("execution.finished", {
            "execution_id": budget.execution_id,
            "task_id": budget.task_id,
            "state": execution.machine.state.value,
            "steps": budget.total_steps,
            "escalations": budget.escalations,
        }, agent_id=budget.worker_id)
        return budget.model_copy(deep=True)

    # ── Steps ────────────────────────────────────────────────────

    async def record_step(self, execution_id: ExecutionId, success: bool = True) -> StepStatus:
        """Count one completed step, escalating instead if the ceiling is reached."""
        execution = self._require(execution_id)
        async with execution.lock:
            status, slot = await self._reserve(execution)
            if slot is not None:
                status = await self._count(execution, success, slot)
        await self._announce(execution, status)
        return status

    async def _reserve(self, execution: _Execution) -> tuple[StepStatus, _Slot | None]:
        """Claim a place under the ceiling. Caller holds the lock.

        Steps already in flight hold their places until they are counted;
        while they fill the rest of the budget, wait for them to settle.
        """
        budget = execution.budget
        while execution.in_flight and budget.step_count + execution.in_flight >= budget.max_steps:
            await execution.settled.wait()
        status = await self._guard(execution)
        if status.state in (ExecutionState.ESCALATED, ExecutionState.HALTED):
            return status, None
        execution.in_flight += 1
        execution.offered += 1
        return status, _Slot(execution.offered)

    def _settle(self, execution: _Execution, slot: _Slot) -> None:
        """Give a reserved place back. Caller holds the lock."""
        if slot.held:
            slot.held = False
            execution.in_flight -= 1
            execution.settled.notify_all()

    async def _guard(self, execution: _Execution) -> StepStatus:
        """Escalate if the counter already sits at the ceiling. Caller holds the lock."""
        machine = execution.machine
        budget = execution.budget
        if machine.terminal:
            raise ExecutionStateError(
                f"Execution {budget.execution_id} already {machine.state.value}"
            )
        if machine.state in (ExecutionState.ESCALATED, ExecutionState.HALTED):
            return self._status(execution, detail="no further steps")
        if budget.step_count >= budget.max_steps:
            return await self._escalate(execution)
        return self._status(execution)

    async def _escalate(self, execution: _Execution) -> StepStatus:
        budget = execution.budget
        if execution.machine.state == ExecutionState.STARTED:
            await execution.machine.transition(ExecutionState.STEPPING)
        await execution.machine.transition(ExecutionState.ESCALATED)
        budget.escalation_state = EscalationState.ESCALATED
        budget.escalations += 1
        return self._status(execution, detail="step ceiling reached")

    async def _count(self, execution: _Execution, success: bool, slot: _Slot) -> StepStatus:
        """Turn a reserved place into a counted step, checkpointing when due.

        Caller holds the lock.
        """
        machine = execution.machine
        budget = execution.budget
        self._settle(execution, slot)
        if machine.terminal:
            raise ExecutionStateError(
                f"Execution {budget.execution_id} ended before the step was recorded"
            )
        # Another step of the same execution may have stopped it meanwhile
        if machine.state in (ExecutionState.ESCALATED, ExecutionState.HALTED):
            return self._status(execution, detail="no further steps")
        if budget.step_count >= budget.max_steps:
            return await self._escalate(execution)
        if machine.state == ExecutionState.STARTED:
            await machine.transition(ExecutionState.STEPPING)
        budget.step_count += 1
        budget.total_steps += 1
        budget.outcomes.append(success)
        budget.outcomes = budget.outcomes[-max(budget.checkpoint_interval, 1) * 4:]

        if budget.step_count % budget.checkpoint_interval != 0:
            return self._status(execution, counted=True)

        await machine.transition(ExecutionState.CHECKPOINT)
        budget.escalation_state = EscalationState.CHECKPOINT_PENDING
        window = budget.outcomes[-budget.checkpoint_interval:]
        if self._checkpoint_ok(window):
            await machine.transition(ExecutionState.STEPPING)
            budget.escalation_state = EscalationState.NORMAL
            return self._status(execution, counted=True, checkpoint=True)

        await machine.transition(ExecutionState.HALTED)
        budget.escalation_state = EscalationState.HALTED
        failed = sum(1 for ok in window if not ok)
        return self._status(
            execution, counted=True, checkpoint=True,
            detail=f"checkpoint failed: {failed}/{len(window)} recent steps failed",
        )

    async def _acquire(self, execution: _Execution, auto_continue: bool) -> _Slot:
        """Reserve a step, resolving escalations on the way when allowed."""
        execution_id = execution.budget.execution_id
        while True:
            async with execution.lock:
                status, slot = await self._reserve(execution)
            if slot is not None:
                return slot
            if status.state == ExecutionState.HALTED:
                raise ExecutionHalted(f"Execution {execution_id} is halted", status=status)
            await self._announce(execution, status)
            if not (auto_continue and await self.resolve_escalation(execution_id)):
                raise ExecutionEscalation(
                    f"Execution {execution_id} escalated at step "
                    f"{status.step_count}/{status.max_steps}",
                    status=status,
                )

    async def run_step(
        self,
        execution_id: ExecutionId,
        description: str,
        action: Callable[[], Any] | None = None,
        action_id: str | None = None,
        auto_continue: bool = False,
    ) -> Any:
        """Run one governed action and return its result.

        Raises ExecutionEscalation / ExecutionHalted when the execution
        leaves Stepping, ApprovalRejectedError / ApprovalExpiredError
        when a gated action is refused, and re-raises the action's own
        exception after counting it as a failed step.
        """
        execution = self._require(execution_id)
        policy = self._policies.current
        slot = await self._acquire(execution, auto_continue)

        error: BaseException | None = None
        result = None
        try:
            classification = self.gate.classify(description, policy)
            if policy.requires_approval(classification):
                await self._gate_action(execution, description, classification, action_id, slot)

            try:
                result = action() if action is not None else None
                if inspect.isawaitable(result):
                    result = await result
            except (ExecutionEscalation, ExecutionHalted, asyncio.CancelledError):
                raise
            except Exception as e:
                error = e

            async with execution.lock:
                status = await self._count(execution, success=error is None, slot=slot)
        finally:
            if slot.held:
                async with execution.lock:
                    self._settle(execution, slot)
        await self._announce(execution, status, description=description)
        if status.state == ExecutionState.HALTED:
            raise ExecutionHalted(status.detail or "execution halted", status=status) from error
        if status.state == ExecutionState.ESCALATED and not status.counted:
            raise ExecutionEscalation(
                f"Execution {execution_id} escalated before the step was recorded", status=status,
            ) from error
        if error is not None:
            raise error
        return result

    async def _gate_action(
        self,
        execution: _Execution,
        description: str,
        classification: ApprovalClassification,
        action_id: str | None,
        slot: _Slot,
    ) -> None:
        """Block this one action until approved; fail it otherwise."""
        budget = execution.budget
        policy = self._policies.current
        key = f"{budget.execution_id}:{action_id or f'step-{slot.index}'}"
        request = await self.gate.request(
            key,
            context={
                "task_id": budget.task_id,
                "worker_id": budget.worker_id,
                "description": description,
                "step": budget.step_count + 1,
            },
            classification=classification,
            execution_id=budget.execution_id,
        )
        if request.id not in execution.approvals:
            execution.approvals.append(request.id)
        request = await self.gate.wait(request.id, timeout=policy.approval_timeout_seconds)
        if execution.machine.terminal:
            raise ApprovalExpiredError(
                f"Execution {budget.execution_id} ended while awaiting approval", request=request,
            )
        if request.approved:
            return

        # A refused action counts as a failed step
        async with execution.lock:
            status = await self._count(execution, success=False, slot=slot)
            if policy.halt_on_rejection and status.state == ExecutionState.STEPPING:
                await execution.machine.transition(ExecutionState.HALTED)
                budget.escalation_state = EscalationState.HALTED
                status = self._status(execution, counted=True, detail="approval refused")
        await self._announce(execution, status, description=description)
        if status.state == ExecutionState.HALTED:
            raise ExecutionHalted(
                f"Execution {budget.execution_id} halted after refused approval",
                status=status,
            )
        if request.status == ApprovalStatus.EXPIRED:
            raise ApprovalExpiredError(f"Approval expired for '{description}'", request=request)
        raise ApprovalRejectedError(f"Approval rejected for '{description}'", request=request)

    # ── Escalation resolution ────────────────────────────────────

    async def request_continuation(self, execution_id: ExecutionId) -> ApprovalRequest:
        """Ask a human for a fresh step budget for an escalated execution."""
        execution = self._require(execution_id)
        budget = execution.budget
        if execution.machine.state != ExecutionState.ESCALATED:
            raise ExecutionStateError(
                f"Execution {execution_id} is {execution.machine.state.value}, not escalated"
            )
        if budget.continuations >= budget.max_continuations:
            raise ExecutionEscalation(
                f"Execution {execution_id} used all {budget.max_continuations} continuations"
            )
        request = await self.gate.request(
            f"{execution_id}:continue:{budget.continuations + 1}",
            context={
                "task_id": budget.task_id,
                "worker_id": budget.worker_id,
                "reason": "step_ceiling",
                "step_count": budget.step_count,
                "max_steps": budget.max_steps,
            },
            classification=ApprovalClassification.STANDARD,
            execution_id=execution_id,
        )
        execution.continuation_requests.add(request.id)
        if request.id not in execution.approvals:
            execution.approvals.append(request.id)
        return request

    async def reset(self, execution_id: ExecutionId, approval: ApprovalRequest) -> StepStatus:
        """Clear the step counter. Only an approved continuation request unlocks this."""
        execution = self._require(execution_id)
        budget = execution.budget
        async with execution.lock:
            if approval.id not in execution.continuation_requests:
                raise ExecutionStateError(
                    f"Request {approval.id} is not a continuation for {execution_id}"
                )
            if approval.id in execution.used_continuations:
                raise ExecutionStateError(f"Continuation {approval.id} was already used")
            if approval.status != ApprovalStatus.APPROVED:
                raise ExecutionStateError(
                    f"Continuation {approval.id} is {approval.status.value}, not approved"
                )
            if execution.machine.state != ExecutionState.ESCALATED:
                raise ExecutionStateError(
                    f"Execution {execution_id} is {execution.machine.state.value}, not escalated"
                )
            execution.used_continuations.add(approval.id)
            budget.step_count = 0
            budget.continuations += 1
            budget.escalation_state = EscalationState.NORMAL
            await execution.machine.transition(ExecutionState.STEPPING)
            status = self._status(execution, detail="continuation approved")
        await self._emit("execution.continued", {
            "execution_id": execution_id,
            "continuations": budget.continuations,
            "approval_id": approval.id,
        }, agent_id=budget.worker_id)
        return status

    async def resolve_escalation(self, execution_id: ExecutionId) -> bool:
        """Request a continuation and wait for it. True if stepping may resume."""
        execution = self._require(execution_id)
        if execution.machine.state == ExecutionState.STEPPING:
            return True  # another step of this execution was granted one first
        try:
            request = await self.request_continuation(execution_id)
        except ExecutionEscalation as e:
            _logger.info("%s", e)
            return False
        request = await self.gate.wait(
            request.id, timeout=self._policies.current.approval_timeout_seconds,
        )
        if not request.approved:
            return False
        if request.id not in execution.used_continuations:
            await self.reset(execution_id, request)
        return True

    # ── Queries ──────────────────────────────────────────────────

    def budget(self, execution_id: ExecutionId) -> AutonomyBudget:
        return self._require(execution_id).budget

    def state(self, execution_id: ExecutionId) -> ExecutionState:
        return self._require(execution_id).machine.state

    def approvals(self, execution_id: ExecutionId) -> list[str]:
        return list(self._require(execution_id).approvals)

    def active(self) -> list[dict]:
        return [
            {
                "execution_id": e.budget.execution_id,
                "task_id": e.budget.task_id,
                "worker_id": e.budget.worker_id,
                "state": e.machine.state.value,
                "steps": e.budget.step_count,
                "max_steps": e.budget.max_steps,
            }
            for e in self._executions.values()
        ]

    # ── Internals ────────────────────────────────────────────────

    def _require(self, execution_id: ExecutionId) -> _Execution:
        execution = self._executions.get(execution_id)
        if execution is None:
            raise ExecutionStateError(f"No active execution {execution_id}")
        return execution

    def _status(
        self,
        execution: _Execution,
        counted: bool = False,
        checkpoint: bool = False,
        detail: str = "",
    ) -> StepStatus:
        budget = execution.budget
        return StepStatus(
            execution_id=budget.execution_id,
            state=execution.machine.state,
            escalation_state=budget.escalation_state,
            step_count=budget.step_count,
            max_steps=budget.max_steps,
            counted=counted,
            checkpoint=checkpoint,
            detail=detail,
        )

    async def _announce(self, execution: _Execution, status: StepStatus, description: str = "") -> None:
        worker_id = execution.budget.worker_id
        if status.counted:
            await self._emit("execution.step", {
                "execution_id": status.execution_id,
                "step": status.step_count,
                "description": description,
                "checkpoint": status.checkpoint,
            }, agent_id=worker_id)
        if status.state == ExecutionState.ESCALATED and status.detail:
            _logger.info("Execution %s escalated: %s", status.execution_id, status.detail)
            await self._emit("execution.escalated", {
                "execution_id": status.execution_id,
                "step_count": status.step_count,
                "max_steps": status.max_steps,
            }, agent_id=worker_id)
        elif status.state == ExecutionState.HALTED and status.detail:
            _logger.warning("Execution %s halted: %s", status.execution_id, status.detail)
            await self._emit("execution.halted", {
                "execution_id": status.execution_id,
                "detail": status.detail,
            }, agent_id=worker_id)

    async def _count_transition(
        self, execution_id: ExecutionId, old: ExecutionState, new: ExecutionState,
    ) -> None:
        if self._metrics:
            self._metrics.increment(f"execution.state.{new.value}")

    async def _emit(self, event_type: str, data: dict[str, Any], agent_id: str = "") -> None:
        if self._bus:
            await self._bus.emit(event_type, data, agent_id=agent_id, source="governor")


class ExecutionSession:
    """What a worker holds while executing: governed steps plus the blackboard."""

    def __init__(
        self,
        governor: AutonomyGovernor,
        task: Task,
        execution_id: ExecutionId,
        knowledge: KnowledgeHandle | None,
        auto_continue: bool = False,
    ) -> None:
        self._governor = governor
        self.task = task
        self.execution_id = execution_id
        self.knowledge = knowledge
        self.auto_continue = auto_continue

    async def step(
        self,
        description: str,
        action: Callable[[], Any] | Callable[[], Awaitable[Any]] | None = None,
        action_id: str | None = None,
    ) -> Any:
        """Run one unit of work under the budget and approval rules."""
        return await self._governor.run_step(
            self.execution_id, description, action,
            action_id=action_id, auto_continue=self.auto_continue,
        )

    async def report(self, success: bool) -> StepStatus:
        """Record a step done outside step(); raises if the execution stops."""
        status = await self._governor.record_step(self.execution_id, success)
        if status.state == ExecutionState.ESCALATED:
            if self.auto_continue and await self._governor.resolve_escalation(self.execution_id):
                return await self.report(success)
            raise ExecutionEscalation(
                f"Execution {self.execution_id} escalated", status=status,
            )
        if status.state == ExecutionState.HALTED:
            raise ExecutionHalted(status.detail or "execution halted", status=status)
        return status

    @property
    def budget(self) -> AutonomyBudget:
        return self._governor.budget(self.execution_id)

    @property
    def state(self) -> ExecutionState:
        return self._governor.state(self.execution_id)
