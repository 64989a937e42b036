"""Custom exception hierarchy for cohort."""

from __future__ import annotations

from typing import Any


class CohortError(Exception):
    """Base for all coordination engine errors."""


class WorkerNotFoundError(CohortError):
    """No worker with the given ID is registered."""


class CapabilityError(CohortError):
    """A worker declared an invalid capability set."""


class TaskStateError(CohortError):
    """Invalid task or allocation state transition."""


class AllocationError(CohortError):
    """No eligible bidder, or the bidding window closed with zero bids."""


class BidRejectedError(CohortError):
    """A bid was refused (wrong state or insufficient capabilities)."""


class ExecutionStateError(CohortError):
    """Invalid execution state transition."""


class ExecutionEscalation(CohortError):
    """The execution hit its step ceiling and needs budget or human input."""

    def __init__(self, message: str, status: Any = None) -> None:
        super().__init__(message)
        self.status = status


class ExecutionHalted(CohortError):
    """A checkpoint failed and the execution was abandoned."""

    def __init__(self, message: str, status: Any = None) -> None:
        super().__init__(message)
        self.status = status


class ApprovalRejectedError(CohortError):
    """A gated action was rejected by the human operator."""

    def __init__(self, message: str, request: Any = None) -> None:
        super().__init__(message)
        self.request = request


class ApprovalExpiredError(ApprovalRejectedError):
    """A gated action received no answer before its timeout."""


class PolicyBoundError(CohortError):
    """A planned policy change would leave the parameter's bounds."""

    def __init__(self, parameter: str, value: Any, bounds: tuple[Any, Any]) -> None:
        super().__init__(
            f"Parameter '{parameter}' cannot move to {value!r} "
            f"(bounds {bounds[0]!r}..{bounds[1]!r})"
        )
        self.parameter = parameter
        self.value = value
        self.bounds = bounds


class PolicyWriteError(CohortError):
    """Attempt to mutate the coordination policy without the writer."""


class KnowledgeConflictError(CohortError):
    """Per-key serialization was violated. Fatal: never retry."""
