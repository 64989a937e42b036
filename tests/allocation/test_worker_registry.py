"""Tests for worker registration and capability validation."""

import pytest

from cohort.allocation.registry import WorkerRegistry
from cohort.exceptions import CapabilityError, WorkerNotFoundError
from cohort.types import Task, normalize_capabilities


def test_register_freezes_normalized_capabilities(make_worker):
    registry = WorkerRegistry()
    worker = make_worker("w1", {"Analysis", " review "})

    record = registry.register(worker)

    assert record.capabilities == frozenset({"analysis", "review"})
    assert "w1" in registry
    assert len(registry) == 1
    # Later changes to the worker's declaration do not leak in
    worker._capabilities.add("deploy")
    assert registry.get("w1").capabilities == frozenset({"analysis", "review"})


@pytest.mark.parametrize("bad", ["9lives", "has space", "", "semi;colon"])
def test_invalid_capability_rejected(make_worker, bad):
    registry = WorkerRegistry()
    with pytest.raises(CapabilityError):
        registry.register(make_worker("w", {bad}))


def test_empty_capability_set_rejected(make_worker):
    with pytest.raises(CapabilityError, match="no capabilities"):
        WorkerRegistry().register(make_worker("w", set()))


def test_duplicate_registration_rejected(make_worker):
    registry = WorkerRegistry()
    registry.register(make_worker("w", {"a"}))
    with pytest.raises(CapabilityError, match="already registered"):
        registry.register(make_worker("w", {"b"}))


def test_unregister_and_lookup(make_worker):
    registry = WorkerRegistry()
    registry.register(make_worker("w", {"a"}))
    registry.unregister("w")
    with pytest.raises(WorkerNotFoundError):
        registry.get("w")
    with pytest.raises(WorkerNotFoundError):
        registry.unregister("w")


def test_eligible_requires_superset(make_worker):
    registry = WorkerRegistry()
    registry.register(make_worker("analyst", {"analysis"}))
    registry.register(make_worker("both", {"analysis", "review"}))
    registry.register(make_worker("reviewer", {"review"}))

    eligible = registry.eligible(frozenset({"analysis", "review"}))

    assert [r.id for r in eligible] == ["both"]
    assert {w["id"] for w in registry.list_workers()} == {"analyst", "both", "reviewer"}


def test_normalize_rejects_bare_string():
    with pytest.raises(CapabilityError):
        normalize_capabilities("analysis")


def test_task_normalizes_required_capabilities():
    task = Task(description="t", required_capabilities=["Review", "analysis"])
    assert task.required_capabilities == frozenset({"review", "analysis"})
    with pytest.raises(ValueError):
        Task(description="t", required_capabilities=["not valid"])
