"""Tests for the contract-net allocation protocol."""

from __future__ import annotations

import asyncio

import pytest

from cohort.allocation.protocol import AllocationProtocol
from cohort.allocation.registry import WorkerRegistry
from cohort.events.bus import EventBus
from cohort.exceptions import AllocationError, BidRejectedError, TaskStateError
from cohort.policy.schema import PartialBidPolicy
from cohort.types import AllocationState, BidState, Task


def _protocol(policies, *workers, bus=None):
    registry = WorkerRegistry()
    for w in workers:
        registry.register(w)
    return AllocationProtocol(registry, policies, event_bus=bus)


# ── Eligibility ────────────────────────────────────────────────


async def test_only_capable_worker_bids_and_wins(make_worker, make_policies):
    analyst = make_worker("analyst", {"analysis"}, score=9.0)
    both = make_worker("both", {"analysis", "review"}, score=0.1, cost=10.0)
    reviewer = make_worker("reviewer", {"review"}, score=9.0)
    protocol = _protocol(make_policies(), analyst, both, reviewer)
    task = Task(description="audit", required_capabilities={"analysis", "review"})

    result = await protocol.allocate(task)

    assert result.state == AllocationState.AWARDED
    assert result.award.worker_id == "both"
    bids = protocol.bids(task.id)
    assert [b.worker_id for b in bids] == ["both"]
    # Everyone heard the announcement; only the capable worker's bid counted
    assert analyst.appraised == [task.id] and reviewer.appraised == [task.id]


async def test_bid_from_incapable_worker_rejected(make_worker, make_policies):
    analyst = make_worker("analyst", {"analysis"}, bids=False)
    protocol = _protocol(make_policies(), analyst)
    task = Task(description="audit", required_capabilities={"analysis", "review"})
    await protocol.announce(task)

    with pytest.raises(BidRejectedError, match="lacks capabilities"):
        await protocol.submit_bid("analyst", task.id, 1.0, 1.0)


async def test_bid_for_unknown_task_rejected(make_worker, make_policies):
    protocol = _protocol(make_policies(), make_worker("w", {"a"}))
    with pytest.raises(BidRejectedError):
        await protocol.submit_bid("w", "nope", 1.0, 1.0)


async def test_bid_with_nonpositive_cost_rejected(make_worker, make_policies):
    protocol = _protocol(make_policies(), make_worker("w", {"a"}, bids=False))
    task = Task(description="t", required_capabilities={"a"})
    await protocol.announce(task)
    with pytest.raises(BidRejectedError):
        await protocol.submit_bid("w", task.id, 1.0, 0.0)


async def test_no_eligible_bidder_is_unallocated(make_worker, make_policies):
    protocol = _protocol(make_policies(), make_worker("w", {"review"}))
    task = Task(description="t", required_capabilities={"analysis"})

    result = await protocol.allocate(task)

    assert result.state == AllocationState.UNALLOCATED
    assert result.reason == "no eligible bidder"
    with pytest.raises(AllocationError, match="no eligible bidder"):
        result.require_award()


async def test_zero_bids_is_unallocated(make_worker, make_policies):
    protocol = _protocol(make_policies(), make_worker("w", {"a"}, bids=False))
    task = Task(description="t", required_capabilities={"a"})

    result = await protocol.allocate(task)

    assert result.state == AllocationState.UNALLOCATED
    assert "no bids" in result.reason


# ── Evaluation ─────────────────────────────────────────────────


async def test_composite_score_uses_policy_weights(make_worker, make_policies):
    # composite = score * w1 + (1 / cost) * w2
    strong = make_worker("strong", {"a"}, score=2.0, cost=4.0)   # 2.25 at 1/1
    cheap = make_worker("cheap", {"a"}, score=1.0, cost=0.5)     # 3.0 at 1/1

    result = await _protocol(make_policies(), strong, cheap).allocate(
        Task(description="t", required_capabilities={"a"})
    )
    assert result.award.worker_id == "cheap"

    strong2 = make_worker("strong", {"a"}, score=2.0, cost=4.0)  # 6.25 at 3/1
    cheap2 = make_worker("cheap", {"a"}, score=1.0, cost=0.5)    # 5.0 at 3/1
    result = await _protocol(make_policies(score_weight=3.0), strong2, cheap2).allocate(
        Task(description="t", required_capabilities={"a"})
    )
    assert result.award.worker_id == "strong"
    assert result.award.composite_score == pytest.approx(6.25)


async def test_tie_goes_to_earliest_bid(make_worker, make_policies):
    first = make_worker("first", {"a"}, bids=False)
    second = make_worker("second", {"a"}, bids=False)
    protocol = _protocol(make_policies(), first, second)
    task = Task(description="t", required_capabilities={"a"})
    await protocol.announce(task)

    await protocol.submit_bid("second", task.id, 1.0, 1.0)
    await protocol.submit_bid("first", task.id, 1.0, 1.0)
    await protocol.collect(task.id)
    ranked = protocol.evaluate(task.id)
    result = await protocol.award(task.id)

    assert [r.bid.worker_id for r in ranked] == ["second", "first"]
    assert result.award.worker_id == "second"


async def test_duplicate_bid_replaces_previous(make_worker, make_policies):
    w = make_worker("w", {"a"}, bids=False)
    other = make_worker("other", {"a"}, bids=False)
    protocol = _protocol(make_policies(), w, other)
    task = Task(description="t", required_capabilities={"a"})
    await protocol.announce(task)

    old = await protocol.submit_bid("w", task.id, 0.5, 1.0)
    new = await protocol.submit_bid("w", task.id, 5.0, 1.0)
    await protocol.submit_bid("other", task.id, 1.0, 1.0)
    await protocol.collect(task.id)

    assert old.state == BidState.EXPIRED
    ranked = protocol.evaluate(task.id)
    assert len(ranked) == 2
    assert ranked[0].bid.id == new.id
    assert old.id not in {r.bid.id for r in ranked}


async def test_award_rejects_losers_and_notifies(make_worker, make_policies):
    winner = make_worker("winner", {"a"}, score=5.0)
    loser = make_worker("loser", {"a"}, score=1.0)
    protocol = _protocol(make_policies(), winner, loser)
    task = Task(description="t", required_capabilities={"a"})

    result = await protocol.allocate(task)

    assert result.award.worker_id == "winner"
    states = {b.worker_id: b.state for b in protocol.bids(task.id)}
    assert states == {"winner": BidState.ACCEPTED, "loser": BidState.REJECTED}
    assert [b.state for b in winner.outcomes] == [BidState.ACCEPTED]
    assert [b.state for b in loser.outcomes] == [BidState.REJECTED]
    assert protocol.award_for(task.id) == result.award
    assert protocol.awards() == [result.award]


async def test_award_records_policy_version(make_worker, make_policies):
    policies = make_policies()
    protocol = _protocol(policies, make_worker("w", {"a"}))
    result = await protocol.allocate(Task(description="t", required_capabilities={"a"}))
    assert result.award.policy_version == policies.version == 1


# ── Heartbeat confirmation ─────────────────────────────────────


async def test_unresponsive_winner_falls_back_to_next_bid(make_worker, make_policies):
    best = make_worker("best", {"a"}, score=9.0, responsive=False)
    backup = make_worker("backup", {"a"}, score=1.0)
    protocol = _protocol(make_policies(), best, backup)
    task = Task(description="t", required_capabilities={"a"})
    workers = {"best": best, "backup": backup}

    async def heartbeat(worker_id: str) -> bool:
        return await workers[worker_id].heartbeat()

    result = await protocol.allocate(task, confirm=heartbeat)

    assert result.award.worker_id == "backup"
    states = {b.worker_id: b.state for b in protocol.bids(task.id)}
    assert states == {"best": BidState.EXPIRED, "backup": BidState.ACCEPTED}


async def test_hanging_heartbeat_times_out(make_worker, make_policies):
    protocol = _protocol(
        make_policies(execution_start_timeout_seconds=0.05),
        make_worker("slow", {"a"}, score=9.0),
        make_worker("fast", {"a"}, score=1.0),
    )

    async def heartbeat(worker_id: str) -> bool:
        if worker_id == "slow":
            await asyncio.sleep(10)
        return True

    result = await protocol.allocate(Task(description="t", required_capabilities={"a"}), confirm=heartbeat)
    assert result.award.worker_id == "fast"


async def test_no_confirmed_bidder_is_unallocated(make_worker, make_policies):
    protocol = _protocol(make_policies(), make_worker("w", {"a"}))

    async def dead(worker_id: str) -> bool:
        return False

    result = await protocol.allocate(Task(description="t", required_capabilities={"a"}), confirm=dead)

    assert result.state == AllocationState.UNALLOCATED
    assert "confirmed" in result.reason


# ── Partial bids ───────────────────────────────────────────────


async def test_partial_bids_proceed_when_window_closes(make_worker, make_policies):
    policies = make_policies(partial_bid_policy=PartialBidPolicy.PROCEED)
    protocol = _protocol(policies, make_worker("eager", {"a"}), make_worker("silent", {"a"}, bids=False))
    task = Task(description="t", required_capabilities={"a"})

    result = await protocol.allocate(task)

    assert result.award.worker_id == "eager"
    with pytest.raises(BidRejectedError):
        await protocol.submit_bid("silent", task.id, 9.0, 1.0)


async def test_partial_bids_extend_once_admits_late_bid(make_worker, make_policies):
    bus = EventBus()
    policies = make_policies(
        partial_bid_policy=PartialBidPolicy.EXTEND_ONCE, bidding_window_seconds=0.2,
    )
    protocol = _protocol(
        policies, make_worker("eager", {"a"}, score=1.0), make_worker("late", {"a"}, bids=False),
        bus=bus,
    )
    task = Task(description="t", required_capabilities={"a"})

    async def late_bid():
        await asyncio.sleep(0.3)  # after the first window, inside the extension
        await protocol.submit_bid("late", task.id, 9.0, 1.0)

    late = asyncio.create_task(late_bid())
    result = await protocol.allocate(task)
    await late

    assert result.award.worker_id == "late"
    assert bus.history("bid.window_extended")


async def test_extend_once_does_not_extend_with_zero_bids(make_worker, make_policies):
    bus = EventBus()
    policies = make_policies(partial_bid_policy=PartialBidPolicy.EXTEND_ONCE)
    protocol = _protocol(policies, make_worker("silent", {"a"}, bids=False), bus=bus)

    result = await protocol.allocate(Task(description="t", required_capabilities={"a"}))

    assert result.state == AllocationState.UNALLOCATED
    assert bus.history("bid.window_extended") == []


async def test_window_closes_early_when_all_eligible_bid(make_worker, make_policies):
    policies = make_policies(bidding_window_seconds=5.0)
    protocol = _protocol(policies, make_worker("a1", {"a"}), make_worker("a2", {"a"}))

    result = await asyncio.wait_for(
        protocol.allocate(Task(description="t", required_capabilities={"a"})), timeout=2.0,
    )
    assert result.awarded


# ── State machine & cancellation ───────────────────────────────


async def test_cancel_before_award(make_worker, make_policies):
    w = make_worker("w", {"a"}, bids=False)
    # A second eligible worker keeps the window open
    protocol = _protocol(
        make_policies(bidding_window_seconds=5.0), w, make_worker("idle", {"a"}, bids=False),
    )
    task = Task(description="t", required_capabilities={"a"})
    await protocol.announce(task)
    bid = await protocol.submit_bid("w", task.id, 1.0, 1.0)
    collecting = asyncio.create_task(protocol.collect(task.id))
    await asyncio.sleep(0)

    assert await protocol.cancel(task.id) is True
    assert await asyncio.wait_for(collecting, timeout=1.0) == []
    assert protocol.state(task.id) == AllocationState.UNALLOCATED
    assert bid.state == BidState.EXPIRED
    with pytest.raises(BidRejectedError):
        await protocol.submit_bid("w", task.id, 1.0, 1.0)


async def test_cancel_after_award_is_refused(make_worker, make_policies):
    protocol = _protocol(make_policies(), make_worker("w", {"a"}))
    task = Task(description="t", required_capabilities={"a"})
    await protocol.allocate(task)
    assert await protocol.cancel(task.id) is False
    assert protocol.state(task.id) == AllocationState.AWARDED


async def test_reannounce_only_after_unallocated(make_worker, make_policies):
    w = make_worker("w", {"a"}, bids=False)
    protocol = _protocol(make_policies(), w)
    task = Task(description="t", required_capabilities={"a"})

    first = await protocol.allocate(task)
    assert first.state == AllocationState.UNALLOCATED

    w.bids = True
    second = await protocol.allocate(task)
    assert second.award.worker_id == "w"

    with pytest.raises(TaskStateError):
        await protocol.announce(task)


async def test_award_requires_evaluated_state(make_worker, make_policies):
    protocol = _protocol(make_policies(), make_worker("w", {"a"}, bids=False))
    task = Task(description="t", required_capabilities={"a"})
    await protocol.announce(task)
    with pytest.raises(TaskStateError):
        await protocol.award(task.id)


async def test_allocation_events(make_worker, make_policies):
    bus = EventBus()
    protocol = _protocol(make_policies(), make_worker("w", {"a"}), bus=bus)
    await protocol.allocate(Task(description="t", required_capabilities={"a"}))

    types = [e.event_type for e in reversed(bus.history(limit=20))]
    assert types == ["task.announced", "bid.submitted", "task.bidding_closed", "task.awarded"]


async def test_release_forgets_only_finished_auctions(make_worker, make_policies):
    protocol = _protocol(
        make_policies(bidding_window_seconds=5.0), make_worker("w", {"a"}, bids=False),
    )
    task = Task(description="t", required_capabilities={"a"})
    await protocol.announce(task)

    assert protocol.release(task.id) is False
    assert protocol.state(task.id) == AllocationState.BIDDING

    await protocol.cancel(task.id)
    assert protocol.release(task.id) is True
    assert protocol.state(task.id) is None
    assert protocol.bids(task.id) == []
    assert protocol.release(task.id) is False
