"""Coordination policy schema — the parameters that drive allocation and bounding.

The policy is read by the allocation protocol (bid weighting, bidding
window) and the autonomy governor (step ceiling, checkpoints, approval
rules). Only the adaptation loop changes it, one delta at a time, and
every tunable parameter has hard bounds.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from cohort.config import CohortSettings
from cohort.exceptions import PolicyBoundError
from cohort.types import new_id, utcnow


class ApprovalClassification(str, Enum):
    STANDARD = "standard"
    DESTRUCTIVE = "destructive"
    SECURITY = "security"
    DEPLOYMENT = "deployment"


class PartialBidPolicy(str, Enum):
    """What to do when the window closes with only some eligible bids in."""

    PROCEED = "proceed"  # evaluate what arrived
    EXTEND_ONCE = "extend_once"  # wait one more window, then evaluate


DEFAULT_APPROVAL_RULES: dict[str, list[str]] = {
    ApprovalClassification.DESTRUCTIVE.value: [
        "delete", "drop", "destroy", "truncate", "wipe", "rm -rf", "purge",
    ],
    ApprovalClassification.SECURITY.value: [
        "credential", "secret", "password", "token", "permission", "firewall",
    ],
    ApprovalClassification.DEPLOYMENT.value: [
        "deploy", "release", "rollout", "production", "migrate",
    ],
}


class ParamSpec(BaseModel):
    """Bounds for one tunable parameter."""

    name: str
    min_val: float
    max_val: float
    param_type: str = "float"  # float, int
    description: str = ""

    def check(self, value: Any) -> Any:
        """Return ``value`` cast to the param type, or raise PolicyBoundError."""
        cast = int(value) if self.param_type == "int" else float(value)
        if cast < self.min_val or cast > self.max_val:
            raise PolicyBoundError(self.name, cast, (self.min_val, self.max_val))
        return cast


TUNABLE_PARAMETERS: dict[str, ParamSpec] = {
    spec.name: spec for spec in [
        ParamSpec(
            name="score_weight", min_val=0.1, max_val=5.0,
            description="w1: weight on the worker's capability score",
        ),
        ParamSpec(
            name="cost_weight", min_val=0.1, max_val=5.0,
            description="w2: weight on 1 / cost_estimate",
        ),
        ParamSpec(
            name="max_steps", min_val=1, max_val=20, param_type="int",
            description="Step ceiling before escalation",
        ),
        ParamSpec(
            name="checkpoint_interval", min_val=2, max_val=10, param_type="int",
            description="Steps between checkpoint validations",
        ),
        ParamSpec(
            name="bidding_window_seconds", min_val=0.05, max_val=30.0,
            description="How long an announced task collects bids",
        ),
        ParamSpec(
            name="max_continuations", min_val=0, max_val=5, param_type="int",
            description="Approved budget resets per execution",
        ),
    ]
}


class CoordinationPolicy(BaseModel):
    """The tunable parameter set. Frozen: changes produce a new version."""

    model_config = {"frozen": True}

    # Allocation
    score_weight: float = Field(default=1.0, ge=0.1, le=5.0)
    cost_weight: float = Field(default=1.0, ge=0.1, le=5.0)
    bidding_window_seconds: float = Field(default=2.0, ge=0.05, le=30.0)
    execution_start_timeout_seconds: float = Field(default=5.0, gt=0.0)
    partial_bid_policy: PartialBidPolicy = PartialBidPolicy.PROCEED

    # Autonomy
    max_steps: int = Field(default=10, ge=1, le=20)
    checkpoint_interval: int = Field(default=4, ge=2, le=10)
    max_continuations: int = Field(default=2, ge=0, le=5)
    escalation_rate_threshold: float = Field(default=0.25, ge=0.0, le=1.0)

    # Approval gating
    approval_timeout_seconds: float = Field(default=300.0, ge=0.0)
    approval_rules: dict[str, list[str]] = Field(
        default_factory=lambda: {k: list(v) for k, v in DEFAULT_APPROVAL_RULES.items()}
    )
    gated_classifications: frozenset[ApprovalClassification] = frozenset({
        ApprovalClassification.DESTRUCTIVE,
        ApprovalClassification.SECURITY,
        ApprovalClassification.DEPLOYMENT,
    })
    halt_on_rejection: bool = False

    @classmethod
    def from_settings(cls, cfg: CohortSettings) -> CoordinationPolicy:
        return cls(
            max_steps=cfg.default_max_steps,
            checkpoint_interval=cfg.default_checkpoint_interval,
            bidding_window_seconds=cfg.bidding_window_seconds,
            execution_start_timeout_seconds=cfg.execution_start_timeout_seconds,
            approval_timeout_seconds=cfg.approval_timeout_seconds,
            partial_bid_policy=PartialBidPolicy(cfg.partial_bid_policy),
            halt_on_rejection=cfg.halt_on_rejection,
            max_continuations=cfg.max_continuations,
        )

    def with_changes(self, changes: dict[str, Any]) -> CoordinationPolicy:
        """Validated copy with some fields replaced."""
        data = self.model_dump()
        data.update(changes)
        return CoordinationPolicy.model_validate(data)

    def composite_score(self, score: float, cost_estimate: float) -> float:
        return score * self.score_weight + (1.0 / cost_estimate) * self.cost_weight

    def requires_approval(self, classification: ApprovalClassification) -> bool:
        return classification in self.gated_classifications


class PolicyDelta(BaseModel):
    """A proposed change to one parameter."""

    model_config = {"frozen": True}

    parameter: str
    old_value: Any
    new_value: Any
    reason: str = ""
    source_metric: str = ""
    severity: float = 0.0


class PolicyVersion(BaseModel):
    """One entry in the policy's version history."""

    model_config = {"frozen": True}

    id: str = Field(default_factory=new_id)
    version: int
    policy: CoordinationPolicy
    previous_version: int | None = None
    reason: str = ""
    deltas: list[PolicyDelta] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
