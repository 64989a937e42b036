"""Allocation Protocol — capability-based bidding and award (contract net).

Each task runs through its own small state machine:

    Announced -> Bidding -> Evaluated -> Awarded | Unallocated

announce() offers the task to every registered worker. Workers whose
capabilities cover the task may bid while the window is open. When the
window closes, bids are ranked by

    composite = score * w1 + (1 / cost_estimate) * w2

with the weights taken from the current CoordinationPolicy, ties going
to the earliest submission. The best bidder that still answers its
heartbeat wins; the rest are rejected and told so.

Usage:
    protocol = AllocationProtocol(registry, policies)
    result = await protocol.allocate(task, confirm=heartbeat)
    if result.award:
        ...
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from pydantic import BaseModel, Field

from cohort.allocation.registry import WorkerRecord, WorkerRegistry
from cohort.events.bus import EventBus
from cohort.events.metrics import MetricsRegistry
from cohort.exceptions import (
    AllocationError,
    BidRejectedError,
    TaskStateError,
    WorkerNotFoundError,
)
from cohort.policy.schema import PartialBidPolicy
from cohort.policy.store import PolicyStore
from cohort.types import (
    AllocationState,
    Announcement,
    Award,
    Bid,
    BidState,
    Task,
    TaskId,
    WorkerId,
)

_logger = logging.getLogger(__name__)

ConfirmFn = Callable[[WorkerId], Awaitable[bool]]

VALID_TRANSITIONS: dict[AllocationState, set[AllocationState]] = {
    AllocationState.ANNOUNCED: {AllocationState.BIDDING, AllocationState.UNALLOCATED},
    AllocationState.BIDDING: {AllocationState.EVALUATED, AllocationState.UNALLOCATED},
    AllocationState.EVALUATED: {AllocationState.AWARDED, AllocationState.UNALLOCATED},
    AllocationState.AWARDED: set(),  # terminal
    AllocationState.UNALLOCATED: set(),  # terminal
}


class RankedBid(BaseModel):
    bid: Bid
    composite: float


class AllocationResult(BaseModel):
    """What the Coordinator learns about one allocation attempt."""

    task_id: TaskId
    state: AllocationState
    award: Award | None = None
    ranked: list[RankedBid] = Field(default_factory=list)
    reason: str = ""
    policy_version: int = 0

    @property
    def awarded(self) -> bool:
        return self.award is not None

    def require_award(self) -> Award:
        """The award, or AllocationError explaining why there is none."""
        if self.award is None:
            raise AllocationError(
                f"Task {self.task_id} unallocated: {self.reason or 'no award'}"
            )
        return self.award


@dataclass
class _Auction:
    task: Task
    eligible: frozenset[WorkerId]
    policy_version: int
    state: AllocationState = AllocationState.ANNOUNCED
    bids: dict[WorkerId, Bid] = field(default_factory=dict)
    all_in: asyncio.Event = field(default_factory=asyncio.Event)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    offers: list[asyncio.Task] = field(default_factory=list)
    award: Award | None = None
    opened_at: float = field(default_factory=time.monotonic)
    extended: bool = False
    reason: str = ""


class AllocationProtocol:
    """Runs one auction per task; a single authority per task's state."""

    def __init__(
        self,
        registry: WorkerRegistry,
        policies: PolicyStore,
        event_bus: EventBus | None = None,
        metrics: MetricsRegistry | None = None,
    ) -> None:
        self._registry = registry
        self._policies = policies
        self._bus = event_bus
        self._metrics = metrics
        self._auctions: dict[TaskId, _Auction] = {}
        self._sequence = itertools.count(1)

    # ── Announce ─────────────────────────────────────────────────

    async def announce(self, task: Task) -> Announcement:
        """Offer a task to all registered workers and open the bidding window."""
        existing = self._auctions.get(task.id)
        if existing is not None and existing.state != AllocationState.UNALLOCATED:
            raise TaskStateError(
                f"Task {task.id} is already {existing.state.value}; "
                "only unallocated tasks can be re-announced"
            )

        eligible = frozenset(r.id for r in self._registry.eligible(task.required_capabilities))
        auction = _Auction(
            task=task,
            eligible=eligible,
            policy_version=self._policies.version,
        )
        self._auctions[task.id] = auction
        announcement = Announcement.for_task(task)

        await self._emit("task.announced", {
            **announcement.model_dump(mode="json"),
            "eligible": sorted(eligible),
        })
        self._transition(auction, AllocationState.BIDDING)

        if not eligible:
            auction.reason = "no eligible bidder"
            auction.all_in.set()

        for record in self._registry.all():
            auction.offers.append(asyncio.create_task(self._offer(record, announcement)))
        return announcement

    async def _offer(self, record: WorkerRecord, announcement: Announcement) -> None:
        """Let one worker appraise the announcement and bid on its behalf."""
        try:
            appraisal = await record.worker.appraise(announcement)
        except Exception as e:
            _logger.warning(
                "Worker %s failed to appraise task %s: %s",
                record.id, announcement.task_id, e,
            )
            return
        if appraisal is None:
            return
        try:
            await self.submit_bid(
                record.id, announcement.task_id, appraisal.score, appraisal.cost_estimate,
            )
        except BidRejectedError as e:
            _logger.debug("Bid from %s refused: %s", record.id, e)

    # ── Bidding ──────────────────────────────────────────────────

    async def submit_bid(
        self,
        worker_id: WorkerId,
        task_id: TaskId,
        score: float,
        cost_estimate: float,
    ) -> Bid:
        """Record a bid. A second bid from the same worker replaces the first."""
        auction = self._auctions.get(task_id)
        if auction is None:
            raise BidRejectedError(f"Task {task_id} was never announced")
        try:
            record = self._registry.get(worker_id)
        except WorkerNotFoundError as e:
            raise BidRejectedError(str(e)) from e
        if not record.can_perform(auction.task.required_capabilities):
            missing = sorted(auction.task.required_capabilities - record.capabilities)
            raise BidRejectedError(
                f"Worker {worker_id} lacks capabilities {missing} for task {task_id}"
            )
        if cost_estimate <= 0:
            raise BidRejectedError(f"cost_estimate must be positive, got {cost_estimate}")
        if score < 0:
            raise BidRejectedError(f"score must be non-negative, got {score}")

        async with auction.lock:
            if auction.state != AllocationState.BIDDING:
                raise BidRejectedError(
                    f"Task {task_id} is {auction.state.value}, not accepting bids"
                )
            bid = Bid(
                worker_id=worker_id,
                task_id=task_id,
                score=score,
                cost_estimate=cost_estimate,
                sequence=next(self._sequence),
            )
            replaced = auction.bids.get(worker_id)
            if replaced is not None:
                replaced.state = BidState.EXPIRED
            auction.bids[worker_id] = bid
            if auction.eligible and auction.eligible <= auction.bids.keys():
                auction.all_in.set()

        await self._emit("bid.submitted", {
            "task_id": task_id,
            "bid_id": bid.id,
            "score": score,
            "cost_estimate": cost_estimate,
            "replaced": replaced.id if replaced else None,
        }, agent_id=worker_id)
        return bid

    async def collect(self, task_id: TaskId) -> list[Bid]:
        """Wait for the bidding window to close, then move to Evaluated.

        The window closes early once every eligible worker has bid. If it
        times out with some but not all eligible bids, the policy's
        partial_bid_policy decides whether to wait one more window.
        """
        auction = self._require(task_id)
        if auction.state != AllocationState.BIDDING:
            raise TaskStateError(f"Task {task_id} is {auction.state.value}, not bidding")

        policy = self._policies.current
        window = policy.bidding_window_seconds
        complete = await _wait(auction.all_in, window)
        if (
            not complete
            and auction.bids
            and policy.partial_bid_policy == PartialBidPolicy.EXTEND_ONCE
        ):
            auction.extended = True
            await self._emit("bid.window_extended", {
                "task_id": task_id,
                "bids": len(auction.bids),
                "eligible": len(auction.eligible),
            })
            complete = await _wait(auction.all_in, window)

        for offer in auction.offers:
            if not offer.done():
                offer.cancel()

        async with auction.lock:
            if auction.state != AllocationState.BIDDING:
                return []  # cancelled while waiting
            self._transition(auction, AllocationState.EVALUATED)

        if self._metrics:
            self._metrics.record("allocation.bids_per_task", len(auction.bids))
            self._metrics.record(
                "allocation.window_ms", (time.monotonic() - auction.opened_at) * 1000,
            )
        await self._emit("task.bidding_closed", {
            "task_id": task_id,
            "bids": len(auction.bids),
            "complete": complete,
            "extended": auction.extended,
        })
        return list(auction.bids.values())

    # ── Evaluate & award ─────────────────────────────────────────

    def evaluate(self, task_id: TaskId) -> list[RankedBid]:
        """Rank pending bids by composite score, earliest submission first on ties."""
        auction = self._require(task_id)
        policy = self._policies.current
        ranked = [
            RankedBid(bid=b, composite=policy.composite_score(b.score, b.cost_estimate))
            for b in auction.bids.values()
            if b.state == BidState.PENDING
        ]
        ranked.sort(key=lambda r: (-r.composite, r.bid.sequence))
        return ranked

    async def award(self, task_id: TaskId, confirm: ConfirmFn | None = None) -> AllocationResult:
        """Award the task to the best bidder that confirms it is alive.

        A bidder that fails ``confirm`` within the execution-start timeout
        has its bid expired, and evaluation continues down the ranking.
        """
        auction = self._require(task_id)
        if auction.state != AllocationState.EVALUATED:
            raise TaskStateError(f"Task {task_id} is {auction.state.value}, not evaluated")

        policy = self._policies.current
        ranked = self.evaluate(task_id)
        if not ranked:
            reason = auction.reason or "no bids before the window closed"
            return await self._unallocate(auction, reason, ranked)

        for candidate in ranked:
            bid = candidate.bid
            if confirm is not None and not await _confirm(
                confirm, bid.worker_id, policy.execution_start_timeout_seconds,
            ):
                bid.state = BidState.EXPIRED
                _logger.warning(
                    "Worker %s unresponsive for task %s; trying next bid",
                    bid.worker_id, task_id,
                )
                await self._emit("bid.expired", {
                    "task_id": task_id, "bid_id": bid.id, "reason": "unresponsive",
                }, agent_id=bid.worker_id)
                continue

            async with auction.lock:
                if auction.state != AllocationState.EVALUATED:
                    return self._result(auction, ranked)  # cancelled meanwhile
                bid.state = BidState.ACCEPTED
                award = Award(
                    task_id=task_id,
                    worker_id=bid.worker_id,
                    bid_id=bid.id,
                    composite_score=candidate.composite,
                    policy_version=self._policies.version,
                )
                auction.award = award
                self._transition(auction, AllocationState.AWARDED)

            await self._emit("task.awarded", {
                "task_id": task_id,
                "bid_id": bid.id,
                "composite_score": candidate.composite,
                "policy_version": award.policy_version,
            }, agent_id=bid.worker_id)
            await self._notify(bid)

            for other in auction.bids.values():
                if other.state == BidState.PENDING:
                    other.state = BidState.REJECTED
                    await self._emit("bid.rejected", {
                        "task_id": task_id, "bid_id": other.id,
                    }, agent_id=other.worker_id)
                    await self._notify(other)
            return self._result(auction, ranked)

        return await self._unallocate(auction, "no bidder confirmed before start timeout", ranked)

    async def allocate(self, task: Task, confirm: ConfirmFn | None = None) -> AllocationResult:
        """announce + collect + award in one call."""
        await self.announce(task)
        await self.collect(task.id)
        auction = self._require(task.id)
        if auction.state == AllocationState.UNALLOCATED:
            return self._result(auction, [])
        return await self.award(task.id, confirm=confirm)

    async def cancel(self, task_id: TaskId, reason: str = "cancelled") -> bool:
        """Cancel an allocation before award. Returns False if too late."""
        auction = self._auctions.get(task_id)
        if auction is None:
            return False
        async with auction.lock:
            if auction.state in (AllocationState.AWARDED, AllocationState.UNALLOCATED):
                return False
            for bid in auction.bids.values():
                if bid.state == BidState.PENDING:
                    bid.state = BidState.EXPIRED
            auction.reason = reason
            self._transition(auction, AllocationState.UNALLOCATED)
            auction.all_in.set()
        for offer in auction.offers:
            if not offer.done():
                offer.cancel()
        await self._emit("task.cancelled", {"task_id": task_id, "reason": reason})
        return True

    def release(self, task_id: TaskId) -> bool:
        """Forget a finished auction. Returns False while it is still open."""
        auction = self._auctions.get(task_id)
        if auction is None or auction.state not in (
            AllocationState.AWARDED, AllocationState.UNALLOCATED,
        ):
            return False
        for offer in auction.offers:
            if not offer.done():
                offer.cancel()
        del self._auctions[task_id]
        return True

    # ── Queries ──────────────────────────────────────────────────

    def state(self, task_id: TaskId) -> AllocationState | None:
        auction = self._auctions.get(task_id)
        return auction.state if auction else None

    def award_for(self, task_id: TaskId) -> Award | None:
        auction = self._auctions.get(task_id)
        return auction.award if auction else None

    def bids(self, task_id: TaskId) -> list[Bid]:
        auction = self._auctions.get(task_id)
        return list(auction.bids.values()) if auction else []

    def awards(self) -> list[Award]:
        return [a.award for a in self._auctions.values() if a.award is not None]

    # ── Internals ────────────────────────────────────────────────

    def _require(self, task_id: TaskId) -> _Auction:
        auction = self._auctions.get(task_id)
        if auction is None:
            raise TaskStateError(f"Task {task_id} was never announced")
        return auction

    def _transition(self, auction: _Auction, target: AllocationState) -> None:
        if target not in VALID_TRANSITIONS[auction.state]:
            raise TaskStateError(
                f"Cannot move task {auction.task.id} "
                f"from {auction.state.value} to {target.value}"
            )
        auction.state = target

    async def _unallocate(
        self, auction: _Auction, reason: str, ranked: list[RankedBid],
    ) -> AllocationResult:
        async with auction.lock:
            if auction.state != AllocationState.UNALLOCATED:
                auction.reason = reason
                self._transition(auction, AllocationState.UNALLOCATED)
        _logger.info("Task %s unallocated: %s", auction.task.id, auction.reason)
        await self._emit("task.unallocated", {
            "task_id": auction.task.id, "reason": auction.reason,
        })
        return self._result(auction, ranked)

    def _result(self, auction: _Auction, ranked: list[RankedBid]) -> AllocationResult:
        return AllocationResult(
            task_id=auction.task.id,
            state=auction.state,
            award=auction.award,
            ranked=ranked,
            reason=auction.reason,
            policy_version=auction.award.policy_version if auction.award else self._policies.version,
        )

    async def _notify(self, bid: Bid) -> None:
        if bid.worker_id not in self._registry:
            return
        worker = self._registry.get(bid.worker_id).worker
        try:
            await worker.on_bid_outcome(bid)
        except Exception as e:
            _logger.warning("Worker %s failed handling bid outcome: %s", bid.worker_id, e)

    async def _emit(self, event_type: str, data: dict[str, Any], agent_id: str = "") -> None:
        if self._bus:
            await self._bus.emit(event_type, data, agent_id=agent_id, source="allocation")


async def _wait(event: asyncio.Event, timeout: float) -> bool:
    try:
        await asyncio.wait_for(event.wait(), timeout=timeout)
        return True
    except asyncio.TimeoutError:
        return False


async def _confirm(confirm: ConfirmFn, worker_id: WorkerId, timeout: float) -> bool:
    try:
        return bool(await asyncio.wait_for(confirm(worker_id), timeout=timeout))
    except asyncio.TimeoutError:
        return False
    except Exception as e:
        _logger.warning("Heartbeat from %s raised: %s", worker_id, e)
        return False
