"""Execution state machine — enforces valid bounded-execution transitions."""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Callable, Awaitable

from cohort.exceptions import ExecutionStateError
from cohort.types import ExecutionId


class ExecutionState(str, Enum):
    STARTED = "started"
    STEPPING = "stepping"
    CHECKPOINT = "checkpoint"
    ESCALATED = "escalated"
    HALTED = "halted"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_EXECUTION_STATES = frozenset({ExecutionState.COMPLETED, ExecutionState.FAILED})

TransitionCallback = Callable[[ExecutionId, ExecutionState, ExecutionState], Awaitable[None]]

# Escalated means "needs more budget or a human"; halted means "abandon".
VALID_TRANSITIONS: dict[ExecutionState, set[ExecutionState]] = {
    ExecutionState.STARTED: {
        ExecutionState.STEPPING,
        ExecutionState.COMPLETED,
        ExecutionState.FAILED,
    },
    ExecutionState.STEPPING: {
        ExecutionState.CHECKPOINT,
        ExecutionState.ESCALATED,
        ExecutionState.HALTED,
        ExecutionState.COMPLETED,
        ExecutionState.FAILED,
    },
    ExecutionState.CHECKPOINT: {ExecutionState.STEPPING, ExecutionState.HALTED},
    ExecutionState.ESCALATED: {ExecutionState.STEPPING, ExecutionState.FAILED},
    ExecutionState.HALTED: {ExecutionState.FAILED},
    ExecutionState.COMPLETED: set(),  # terminal
    ExecutionState.FAILED: set(),  # terminal
}


class ExecutionStateMachine:
    """Lifecycle state of a single bounded execution.

    Enforces that only valid transitions occur and notifies listeners
    on every state change.
    """

    def __init__(self, execution_id: ExecutionId):
        self.execution_id = execution_id
        self._state = ExecutionState.STARTED
        self._listeners: list[TransitionCallback] = []
        self._lock = asyncio.Lock()

    @property
    def state(self) -> ExecutionState:
        return self._state

    @property
    def terminal(self) -> bool:
        return self._state in TERMINAL_EXECUTION_STATES

    async def transition(self, target: ExecutionState) -> None:
        async with self._lock:
            valid = VALID_TRANSITIONS.get(self._state, set())
            if target not in valid:
                raise ExecutionStateError(
                    f"Cannot transition execution {self.execution_id} "
                    f"from {self._state.value} to {target.value}"
                )
            old = self._state
            self._state = target
        # Notify listeners outside the lock
        for listener in self._listeners:
            await listener(self.execution_id, old, target)

    def on_transition(self, callback: TransitionCallback) -> None:
        self._listeners.append(callback)
