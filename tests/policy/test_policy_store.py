"""Tests for the versioned coordination policy and its single writer."""

from __future__ import annotations

import pytest

from cohort.config import CohortSettings
from cohort.exceptions import PolicyBoundError, PolicyWriteError
from cohort.persistence.journal import POLICY_VERSIONS, Journal
from cohort.policy.schema import (
    CoordinationPolicy,
    PartialBidPolicy,
    PolicyDelta,
    TUNABLE_PARAMETERS,
)
from cohort.policy.store import PolicyStore, PolicyWriter


def _delta(parameter: str, old, new) -> PolicyDelta:
    return PolicyDelta(parameter=parameter, old_value=old, new_value=new, reason="test")


# ── Schema ─────────────────────────────────────────────────────


def test_composite_score_uses_weights():
    policy = CoordinationPolicy(score_weight=2.0, cost_weight=0.5)
    assert policy.composite_score(0.8, 2.0) == pytest.approx(0.8 * 2.0 + 0.5 * 0.5)


def test_policy_is_frozen_and_validated():
    policy = CoordinationPolicy()
    with pytest.raises(Exception):
        policy.max_steps = 3
    with pytest.raises(ValueError):
        policy.with_changes({"max_steps": 50})
    assert policy.with_changes({"max_steps": 12}).max_steps == 12
    assert policy.max_steps == 10


def test_from_settings():
    cfg = CohortSettings(
        default_max_steps=6, partial_bid_policy="extend_once", halt_on_rejection=True,
    )
    policy = CoordinationPolicy.from_settings(cfg)
    assert policy.max_steps == 6
    assert policy.partial_bid_policy == PartialBidPolicy.EXTEND_ONCE
    assert policy.halt_on_rejection


def test_param_spec_casts_and_bounds():
    spec = TUNABLE_PARAMETERS["max_steps"]
    assert spec.check(12.0) == 12
    assert isinstance(spec.check(12.0), int)
    with pytest.raises(PolicyBoundError) as exc:
        spec.check(21)
    assert exc.value.bounds == (1, 20)


# ── Store and writer ───────────────────────────────────────────


def test_starts_at_version_one():
    store = PolicyStore()
    assert store.version == 1
    assert store.current == CoordinationPolicy()
    assert store.get(1).reason == "initial"
    with pytest.raises(KeyError):
        store.get(2)


def test_writer_is_claimed_once():
    store = PolicyStore()
    store.claim_writer()
    with pytest.raises(PolicyWriteError, match="already claimed"):
        store.claim_writer()


async def test_unclaimed_writer_cannot_commit():
    store = PolicyStore()
    store.claim_writer()
    impostor = PolicyWriter(store)
    with pytest.raises(PolicyWriteError, match="claimed writer"):
        await impostor.apply([_delta("max_steps", 10, 12)])
    assert store.version == 1


async def test_apply_creates_new_version():
    store = PolicyStore()
    writer = store.claim_writer()

    entry = await writer.apply(
        [_delta("max_steps", 10, 12), _delta("score_weight", 1.0, 1.25)], reason="tuning",
    )

    assert entry.version == 2
    assert entry.previous_version == 1
    assert len(entry.deltas) == 2
    assert store.current.max_steps == 12
    assert store.current.score_weight == 1.25
    # The previous version is untouched
    assert store.get(1).policy.max_steps == 10


async def test_out_of_bounds_delta_applies_nothing():
    store = PolicyStore()
    writer = store.claim_writer()

    with pytest.raises(PolicyBoundError):
        await writer.apply([_delta("score_weight", 1.0, 2.0), _delta("max_steps", 10, 25)])

    assert store.version == 1
    assert store.current.score_weight == 1.0


async def test_stale_delta_rejected():
    store = PolicyStore()
    writer = store.claim_writer()
    with pytest.raises(PolicyWriteError, match="Stale"):
        await writer.apply([_delta("max_steps", 9, 12)])


async def test_untunable_or_empty_deltas_rejected():
    store = PolicyStore()
    writer = store.claim_writer()
    with pytest.raises(PolicyWriteError, match="not tunable"):
        await writer.apply([_delta("approval_timeout_seconds", 300.0, 10.0)])
    with pytest.raises(PolicyWriteError):
        await writer.apply([])


async def test_rollback_appends_a_version():
    store = PolicyStore()
    writer = store.claim_writer()
    await writer.apply([_delta("max_steps", 10, 14)])
    await writer.apply([_delta("cost_weight", 1.0, 1.5)])

    entry = await writer.rollback(1)

    assert entry.version == 4
    assert entry.previous_version == 3
    assert store.current == store.get(1).policy
    assert {d.parameter for d in entry.deltas} == {"max_steps", "cost_weight"}
    assert [v.version for v in store.history()] == [1, 2, 3, 4]


async def test_history_survives_restart(db_path):
    journal = Journal(db_path)
    await journal.initialize()
    store = PolicyStore(CoordinationPolicy(max_steps=8), journal=journal)
    assert await store.initialize() is False
    await store.claim_writer().apply([_delta("max_steps", 8, 9)], reason="raise ceiling")
    assert await journal.count(POLICY_VERSIONS) == 2
    await journal.close()

    reopened = Journal(db_path)
    await reopened.initialize()
    try:
        restored = PolicyStore(journal=reopened)
        assert await restored.initialize() is True
        assert restored.version == 2
        assert restored.current.max_steps == 9
        assert restored.get(2).reason == "raise ceiling"
    finally:
        await reopened.close()
