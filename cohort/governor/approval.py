"""Approval Gate — human-in-the-loop for high-risk actions.

Sits between a worker's governed step and the action it wants to run.
When the action's description matches a gated classification in the
current policy, the gate raises an ApprovalRequest and that one action
waits on a future until someone answers. Nothing else blocks.

The human-facing side listens for "approval.requested" events and
answers through respond(). A request nobody answers before its timeout
is marked expired and treated as rejected. Only pending requests are
shared by action key; once resolved, a request moves to a bounded
history and the same key asks again.

Usage:
    gate = ApprovalGate(event_bus=bus)
    request = await gate.request("exec-1:drop-table", context, ApprovalClassification.DESTRUCTIVE)
    request = await gate.wait(request.id, timeout=300)
    if request.status == ApprovalStatus.APPROVED:
        ...
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections import OrderedDict
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable

from pydantic import BaseModel, Field

from cohort.events.bus import EventBus
from cohort.events.metrics import MetricsRegistry
from cohort.policy.schema import ApprovalClassification, CoordinationPolicy
from cohort.types import ExecutionId, new_id, utcnow

_logger = logging.getLogger(__name__)


class ApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"


class ApprovalRequest(BaseModel):
    """A request for human sign-off. Resolved exactly once."""

    id: str = Field(default_factory=new_id)
    action_key: str
    execution_id: ExecutionId = ""
    context: dict[str, Any] = Field(default_factory=dict)
    classification: ApprovalClassification = ApprovalClassification.STANDARD
    status: ApprovalStatus = ApprovalStatus.PENDING
    reason: str = ""
    created_at: datetime = Field(default_factory=utcnow)
    resolved_at: datetime | None = None
    latency_ms: float | None = None

    @property
    def approved(self) -> bool:
        return self.status == ApprovalStatus.APPROVED


Responder = Callable[[ApprovalRequest], Awaitable[bool]]

# Checked in this order; the first match wins.
_CLASSIFICATION_ORDER = (
    ApprovalClassification.DESTRUCTIVE,
    ApprovalClassification.SECURITY,
    ApprovalClassification.DEPLOYMENT,
)


class ApprovalGate:
    """Holds approval requests and the futures that gated actions wait on."""

    def __init__(
        self,
        event_bus: EventBus | None = None,
        responder: Responder | None = None,
        metrics: MetricsRegistry | None = None,
        history_size: int = 1000,
    ) -> None:
        self._bus = event_bus
        self._responder = responder
        self._metrics = metrics
        self._history_size = history_size
        self._requests: dict[str, ApprovalRequest] = {}  # pending only
        self._by_action: dict[str, str] = {}
        self._futures: dict[str, asyncio.Future] = {}
        self._resolved: OrderedDict[str, ApprovalRequest] = OrderedDict()
        self._responder_tasks: set[asyncio.Task] = set()

    def set_responder(self, responder: Responder | None) -> None:
        self._responder = responder

    # ── Classification ───────────────────────────────────────────

    @staticmethod
    def classify(description: str, policy: CoordinationPolicy) -> ApprovalClassification:
        """Match the description against the policy's keyword rules."""
        text = description.lower()
        for classification in _CLASSIFICATION_ORDER:
            for keyword in policy.approval_rules.get(classification.value, []):
                if re.search(rf"(?<![a-z0-9]){re.escape(keyword.lower())}", text):
                    return classification
        return ApprovalClassification.STANDARD

    # ── Request / wait / respond ─────────────────────────────────

    async def request(
        self,
        action_key: str,
        context: dict[str, Any] | None = None,
        classification: ApprovalClassification = ApprovalClassification.STANDARD,
        execution_id: ExecutionId = "",
    ) -> ApprovalRequest:
        """Raise an approval request; a pending one for action_key is reused."""
        existing = self._by_action.get(action_key)
        if existing is not None:
            return self._requests[existing]

        request = ApprovalRequest(
            action_key=action_key,
            execution_id=execution_id,
            context=_truncate(context or {}),
            classification=classification,
        )
        self._requests[request.id] = request
        self._by_action[action_key] = request.id
        self._futures[request.id] = asyncio.get_running_loop().create_future()

        _logger.info(
            "Approval requested for '%s' (id=%s, %s)",
            action_key, request.id, classification.value,
        )
        if self._bus:
            await self._bus.emit("approval.requested", {
                "request_id": request.id,
                "action_key": action_key,
                "classification": classification.value,
                "context": request.context,
            }, agent_id=str(request.context.get("worker_id", "")), source="approval_gate")

        if self._responder is not None:
            task = asyncio.create_task(self._ask_responder(request))
            self._responder_tasks.add(task)
            task.add_done_callback(self._responder_tasks.discard)
        return request

    async def wait(self, request_id: str, timeout: float) -> ApprovalRequest:
        """Suspend until the request resolves; expire it on timeout."""
        request = self._get(request_id)
        future = self._futures.get(request_id)
        if future is None:
            return request
        try:
            # shield: one waiter timing out must not cancel the shared future
            await asyncio.wait_for(asyncio.shield(future), timeout=timeout)
        except asyncio.TimeoutError:
            _logger.warning("Approval timed out for '%s' (id=%s)", request.action_key, request_id)
            await self._resolve(request_id, ApprovalStatus.EXPIRED, "timed out")
        return request

    async def respond(self, request_id: str, approved: bool, reason: str = "") -> bool:
        """Answer a pending request (called by the human-facing system).

        Returns False if the request is unknown or already resolved.
        """
        if request_id not in self._requests:
            return False
        status = ApprovalStatus.APPROVED if approved else ApprovalStatus.REJECTED
        return await self._resolve(request_id, status, reason)

    async def expire(self, request_id: str, reason: str = "expired") -> bool:
        if request_id not in self._requests:
            return False
        return await self._resolve(request_id, ApprovalStatus.EXPIRED, reason)

    async def expire_for(self, execution_id: ExecutionId, reason: str) -> list[str]:
        """Expire every pending request raised by one execution."""
        expired = []
        for request in list(self._requests.values()):
            if request.execution_id == execution_id:
                await self._resolve(request.id, ApprovalStatus.EXPIRED, reason)
                expired.append(request.id)
        return expired

    async def _resolve(self, request_id: str, status: ApprovalStatus, reason: str) -> bool:
        request = self._requests.pop(request_id, None)
        if request is None:
            return False
        request.status = status
        request.reason = reason
        request.resolved_at = utcnow()
        request.latency_ms = (request.resolved_at - request.created_at).total_seconds() * 1000

        if self._by_action.get(request.action_key) == request_id:
            del self._by_action[request.action_key]
        future = self._futures.pop(request_id, None)
        if future is not None and not future.done():
            future.set_result(status)
        self._resolved[request_id] = request
        while len(self._resolved) > self._history_size:
            self._resolved.popitem(last=False)

        _logger.info(
            "Approval %s for '%s' (id=%s)", status.value, request.action_key, request_id,
        )
        if self._metrics:
            self._metrics.record("approval.latency_ms", request.latency_ms)
            self._metrics.increment(f"approval.{status.value}")
        if self._bus:
            await self._bus.emit("approval.resolved", {
                "request_id": request_id,
                "status": status.value,
                "reason": reason,
                "latency_ms": request.latency_ms,
            }, source="approval_gate")
        return True

    async def _ask_responder(self, request: ApprovalRequest) -> None:
        try:
            approved = await self._responder(request)
        except Exception as e:
            _logger.warning("Approval responder failed for %s: %s", request.id, e)
            return
        await self.respond(request.id, bool(approved), reason="responder")

    # ── Queries ──────────────────────────────────────────────────

    def get(self, request_id: str) -> ApprovalRequest | None:
        return self._requests.get(request_id) or self._resolved.get(request_id)

    def for_action(self, action_key: str) -> ApprovalRequest | None:
        """The pending request for an action key, if any."""
        request_id = self._by_action.get(action_key)
        return self._requests.get(request_id) if request_id else None

    def pending_requests(self) -> list[dict]:
        """List all pending approval requests."""
        return [
            {
                "id": r.id,
                "action_key": r.action_key,
                "classification": r.classification.value,
                "context": r.context,
                "created_at": r.created_at.isoformat(),
            }
            for r in self._requests.values()
        ]

    def _get(self, request_id: str) -> ApprovalRequest:
        request = self.get(request_id)
        if request is None:
            raise KeyError(f"No approval request {request_id}")
        return request


def _truncate(context: dict, max_len: int = 200) -> dict:
    """Truncate long context values for display."""
    return {
        k: (str(v)[:max_len] + "..." if len(str(v)) > max_len else v)
        for k, v in context.items()
    }
