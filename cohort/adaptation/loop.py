"""Adaptation loop — monitor, analyze, plan, execute over observed outcomes.

One cycle:

1. Monitor: summarize the most recent outcomes (and knowledge-store
   contention) into a MetricsSnapshot.
2. Analyze: compare each metric with its rolling baseline and flag
   deviations, each with a severity.
3. Plan: turn deviations into PolicyDeltas through plan rules. The
   strongest delta per parameter wins. Deltas that would leave a
   parameter's bounds become standing issues instead.
4. Execute: apply the surviving deltas as one new policy version,
   unless the parameter changed within the cooldown window.

The loop holds the policy store's only writer.

Usage:
    loop = AdaptationLoop(policies, knowledge=store)
    report = await loop.record(outcome)  # runs a cycle every N outcomes
    report = await loop.run_cycle()
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime
from typing import Any, Callable

from pydantic import BaseModel, Field

from cohort.adaptation.baseline import DEFAULT_THRESHOLDS, MetricThreshold, RollingBaseline
from cohort.adaptation.history import OutcomeHistory
from cohort.config import CohortSettings
from cohort.events.bus import EventBus
from cohort.events.metrics import MetricsRegistry
from cohort.exceptions import PolicyBoundError
from cohort.knowledge.store import KnowledgeStore
from cohort.persistence.journal import ADAPTATIONS, Journal
from cohort.policy.schema import (
    CoordinationPolicy,
    PolicyDelta,
    PolicyVersion,
    TUNABLE_PARAMETERS,
)
from cohort.policy.store import PolicyStore
from cohort.types import OutcomeRecord, TaskStatus, new_id, utcnow

_logger = logging.getLogger(__name__)

WRITER_ID = "adaptation-loop"
POLICY_KEY = "policy/current"
LAST_ADAPTATION_KEY = "adaptation/last"

METRICS = (
    "success_rate",
    "failure_rate",
    "escalation_rate",
    "halt_rate",
    "unallocated_rate",
    "latency_ms",
    "write_contention",
)


# ── Records ──────────────────────────────────────────────────────


class AdaptationConfig(BaseModel):
    every_n: int = Field(default=10, ge=0)  # 0 disables outcome-triggered cycles
    window: int = Field(default=50, ge=1)
    cooldown_seconds: float = Field(default=300.0, ge=0.0)
    alpha: float = Field(default=0.3, gt=0.0, le=1.0)
    min_severity: float = Field(default=1.0, ge=0.0)
    interval_seconds: float = Field(default=60.0, gt=0.0)

    @classmethod
    def from_settings(cls, cfg: CohortSettings) -> AdaptationConfig:
        return cls(
            every_n=cfg.adaptation_every_n,
            window=cfg.adaptation_window,
            cooldown_seconds=cfg.adaptation_cooldown_seconds,
            alpha=cfg.adaptation_baseline_alpha,
            min_severity=cfg.adaptation_min_severity,
            interval_seconds=cfg.adaptation_interval_seconds,
        )


class MetricsSnapshot(BaseModel):
    values: dict[str, float] = Field(default_factory=dict)
    sample_size: int = 0
    policy_version: int = 0
    taken_at: datetime = Field(default_factory=utcnow)


class Deviation(BaseModel):
    metric: str
    current: float
    baseline: float
    threshold: float
    severity: float

    @property
    def direction(self) -> str:
        return "up" if self.current > self.baseline else "down"

    @property
    def level(self) -> str:
        if self.severity >= 3.0:
            return "high"
        if self.severity >= 2.0:
            return "medium"
        return "low"


class PlanRule(BaseModel):
    """Maps a deviating metric (in one direction) to a parameter change."""

    metric: str
    direction: str = "up"
    parameter: str
    mode: str = "add"  # add, scale
    amount: float

    def propose(self, current: Any) -> Any:
        if self.mode == "scale":
            return round(float(current) * self.amount, 4)
        new = current + self.amount
        return int(new) if isinstance(current, int) else round(new, 4)


DEFAULT_RULES: list[PlanRule] = [
    PlanRule(metric="escalation_rate", parameter="max_steps", amount=2),
    PlanRule(metric="failure_rate", parameter="score_weight", mode="scale", amount=1.25),
    PlanRule(metric="latency_ms", parameter="cost_weight", mode="scale", amount=1.25),
    PlanRule(metric="halt_rate", parameter="checkpoint_interval", amount=1),
    PlanRule(
        metric="unallocated_rate", parameter="bidding_window_seconds",
        mode="scale", amount=1.5,
    ),
]


class StandingIssue(BaseModel):
    """A change the loop wanted but could not make without leaving bounds."""

    metric: str
    parameter: str
    attempted_value: Any
    bounds: tuple[Any, Any]
    detail: str = ""
    occurrences: int = 1
    first_seen: datetime = Field(default_factory=utcnow)
    last_seen: datetime = Field(default_factory=utcnow)

    @property
    def key(self) -> tuple[str, str]:
        return (self.metric, self.parameter)


class SuppressedDelta(BaseModel):
    delta: PolicyDelta
    reason: str
    retry_after_seconds: float = 0.0


class AdaptationRecord(BaseModel):
    """One applied policy change with what drove it."""

    id: str = Field(default_factory=new_id)
    cycle: int
    prior_version: int
    posterior_version: int
    prior_policy: CoordinationPolicy
    posterior_policy: CoordinationPolicy
    deviations: list[Deviation] = Field(default_factory=list)
    deltas: list[PolicyDelta] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)


class CycleReport(BaseModel):
    """Summary of one adaptation cycle."""

    cycle: int
    snapshot: MetricsSnapshot
    deviations: list[Deviation] = Field(default_factory=list)
    proposed: list[PolicyDelta] = Field(default_factory=list)
    applied: list[PolicyDelta] = Field(default_factory=list)
    superseded: list[PolicyDelta] = Field(default_factory=list)
    suppressed: list[SuppressedDelta] = Field(default_factory=list)
    new_issues: list[StandingIssue] = Field(default_factory=list)
    cleared_issues: list[str] = Field(default_factory=list)
    policy_version: int = 0
    record_id: str | None = None
    duration_ms: float = 0.0
    timestamp: datetime = Field(default_factory=utcnow)

    @property
    def changed(self) -> bool:
        return bool(self.applied)


# ── Loop ─────────────────────────────────────────────────────────


class AdaptationLoop:
    """Retunes the coordination policy from observed outcomes."""

    def __init__(
        self,
        policies: PolicyStore,
        config: AdaptationConfig | None = None,
        history: OutcomeHistory | None = None,
        knowledge: KnowledgeStore | None = None,
        journal: Journal | None = None,
        event_bus: EventBus | None = None,
        metrics: MetricsRegistry | None = None,
        thresholds: dict[str, MetricThreshold] | None = None,
        rules: list[PlanRule] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._policies = policies
        self._writer = policies.claim_writer()
        self.config = config or AdaptationConfig()
        self.history = history or OutcomeHistory(journal)
        self._knowledge = knowledge
        self._journal = journal
        self._bus = event_bus
        self._metrics = metrics
        self._thresholds = {**DEFAULT_THRESHOLDS, **(thresholds or {})}
        self._rules = list(rules if rules is not None else DEFAULT_RULES)
        self._clock = clock

        self.baseline = RollingBaseline(alpha=self.config.alpha)
        self._lock = asyncio.Lock()
        self._last_changed: dict[str, float] = {}
        self._issues: dict[tuple[str, str], StandingIssue] = {}
        self._records: list[AdaptationRecord] = []
        self._since_cycle = 0
        self._cycles = 0

    @property
    def policies(self) -> PolicyStore:
        return self._policies

    async def restore(self) -> None:
        """Reload outcome and adaptation history from the journal."""
        await self.history.restore()
        if self._journal is not None:
            self._records = await self._journal.load(ADAPTATIONS, AdaptationRecord)
            self._cycles = max((r.cycle for r in self._records), default=0)

    async def record(self, outcome: OutcomeRecord) -> CycleReport | None:
        """Append an outcome; run a cycle when every_n outcomes have arrived."""
        await self.history.append(outcome)
        self._since_cycle += 1
        if self.config.every_n and self._since_cycle >= self.config.every_n:
            return await self.run_cycle()
        return None

    async def run_cycle(self) -> CycleReport:
        """Run monitor, analyze, plan and execute once."""
        async with self._lock:
            start = time.monotonic()
            self._since_cycle = 0
            self._cycles += 1

            snapshot = self.monitor()
            deviations = self.analyze(snapshot)
            report = CycleReport(
                cycle=self._cycles,
                snapshot=snapshot,
                deviations=deviations,
                policy_version=self._policies.version,
            )
            report.cleared_issues = self._clear_issues(deviations)
            self._plan(deviations, report)
            await self._execute(report)

            report.duration_ms = (time.monotonic() - start) * 1000
            if self._metrics:
                self._metrics.increment("adaptation.cycles")
                self._metrics.record("adaptation.deviations", len(deviations))
                self._metrics.record("adaptation.duration_ms", report.duration_ms)

        await self._emit("adaptation.cycle", {
            "cycle": report.cycle,
            "sample_size": snapshot.sample_size,
            "deviations": [d.metric for d in deviations],
            "applied": [d.parameter for d in report.applied],
            "suppressed": [s.delta.parameter for s in report.suppressed],
            "policy_version": report.policy_version,
            "duration_ms": round(report.duration_ms),
        })
        for issue in report.new_issues:
            await self._emit("adaptation.standing_issue", {
                "metric": issue.metric,
                "parameter": issue.parameter,
                "attempted_value": issue.attempted_value,
                "bounds": list(issue.bounds),
            })
        return report

    # ── Monitor ──────────────────────────────────────────────────

    def monitor(self) -> MetricsSnapshot:
        records = self.history.recent(self.config.window)
        values: dict[str, float] = {}
        n = len(records)
        if n:
            values["success_rate"] = sum(1 for r in records if r.success) / n
            values["failure_rate"] = _rate(records, TaskStatus.FAILED)
            values["escalation_rate"] = sum(
                1 for r in records
                if r.escalation_count > 0 or r.status == TaskStatus.ESCALATED
            ) / n
            values["halt_rate"] = _rate(records, TaskStatus.HALTED)
            values["unallocated_rate"] = _rate(records, TaskStatus.UNALLOCATED)
            values["latency_ms"] = sum(r.latency_ms for r in records) / n
        if self._knowledge is not None:
            values["write_contention"] = float(self._knowledge.health()["write_contention"])
        return MetricsSnapshot(
            values=values, sample_size=n, policy_version=self._policies.version,
        )

    # ── Analyze ──────────────────────────────────────────────────

    def analyze(self, snapshot: MetricsSnapshot) -> list[Deviation]:
        """Flag deviating metrics, then fold the snapshot into the baseline.

        An escalation rate above the policy's ``escalation_rate_threshold``
        deviates even when the baseline has caught up with it; the
        tolerated rate then stands in for the baseline.
        """
        ceiling = self._policies.current.escalation_rate_threshold
        deviations = []
        for metric, current in snapshot.values.items():
            baseline = self.baseline.get(metric)
            if baseline is not None:
                threshold = self._thresholds.get(metric, MetricThreshold()).for_baseline(baseline)
                delta = abs(current - baseline)
                if threshold > 0 and delta > threshold:
                    deviations.append(Deviation(
                        metric=metric,
                        current=current,
                        baseline=baseline,
                        threshold=threshold,
                        severity=round(delta / threshold, 4),
                    ))
                elif metric == "escalation_rate" and ceiling > 0 and current > ceiling:
                    deviations.append(Deviation(
                        metric=metric,
                        current=current,
                        baseline=ceiling,
                        threshold=ceiling,
                        severity=round(current / ceiling, 4),
                    ))
            self.baseline.update(metric, current)
        deviations.sort(key=lambda d: -d.severity)
        return deviations

    # ── Plan ─────────────────────────────────────────────────────

    def _plan(self, deviations: list[Deviation], report: CycleReport) -> None:
        policy = self._policies.current
        best: dict[str, PolicyDelta] = {}

        for deviation in deviations:
            if deviation.severity < self.config.min_severity:
                continue
            for rule in self._rules:
                if rule.metric != deviation.metric or rule.direction != deviation.direction:
                    continue
                key = (deviation.metric, rule.parameter)
                if key in self._issues:
                    # Still out of bounds; nothing new to try until it clears
                    self._issues[key].occurrences += 1
                    self._issues[key].last_seen = utcnow()
                    continue
                old = getattr(policy, rule.parameter)
                try:
                    new = TUNABLE_PARAMETERS[rule.parameter].check(rule.propose(old))
                except PolicyBoundError as e:
                    report.new_issues.append(self._raise_issue(deviation, e))
                    continue
                delta = PolicyDelta(
                    parameter=rule.parameter,
                    old_value=old,
                    new_value=new,
                    reason=(
                        f"{deviation.metric} {deviation.direction} "
                        f"{deviation.baseline:.3g} -> {deviation.current:.3g} "
                        f"({deviation.level})"
                    ),
                    source_metric=deviation.metric,
                    severity=deviation.severity,
                )
                report.proposed.append(delta)
                held = best.get(rule.parameter)
                if held is None or delta.severity > held.severity:
                    if held is not None:
                        report.superseded.append(held)
                    best[rule.parameter] = delta
                else:
                    report.superseded.append(delta)

        now = self._clock()
        for parameter, delta in best.items():
            changed_at = self._last_changed.get(parameter)
            if changed_at is not None and now - changed_at < self.config.cooldown_seconds:
                remaining = self.config.cooldown_seconds - (now - changed_at)
                report.suppressed.append(SuppressedDelta(
                    delta=delta,
                    reason=f"{parameter} changed {now - changed_at:.1f}s ago",
                    retry_after_seconds=round(remaining, 3),
                ))
                continue
            report.applied.append(delta)

    def _raise_issue(self, deviation: Deviation, error: PolicyBoundError) -> StandingIssue:
        issue = StandingIssue(
            metric=deviation.metric,
            parameter=error.parameter,
            attempted_value=error.value,
            bounds=error.bounds,
            detail=str(error),
        )
        self._issues[issue.key] = issue
        _logger.warning("Standing issue for %s: %s", deviation.metric, error)
        return issue

    def _clear_issues(self, deviations: list[Deviation]) -> list[str]:
        deviating = {d.metric for d in deviations}
        cleared = []
        for key in list(self._issues):
            if key[0] not in deviating:
                del self._issues[key]
                cleared.append(f"{key[0]}:{key[1]}")
        if cleared:
            _logger.info("Cleared standing issues: %s", cleared)
        return cleared

    # ── Execute ──────────────────────────────────────────────────

    async def _execute(self, report: CycleReport) -> None:
        if not report.applied:
            return
        prior = self._policies.current
        prior_version = self._policies.version
        reason = "; ".join(d.reason for d in report.applied)
        entry = await self._writer.apply(report.applied, reason=f"adaptation cycle {report.cycle}: {reason}")

        now = self._clock()
        for delta in report.applied:
            self._last_changed[delta.parameter] = now

        record = AdaptationRecord(
            cycle=report.cycle,
            prior_version=prior_version,
            posterior_version=entry.version,
            prior_policy=prior,
            posterior_policy=entry.policy,
            deviations=report.deviations,
            deltas=report.applied,
        )
        self._records.append(record)
        if self._journal is not None:
            await self._journal.append(ADAPTATIONS, record)
        await self._publish(entry, record)

        report.policy_version = entry.version
        report.record_id = record.id
        _logger.info(
            "Adaptation cycle %d applied %s (policy v%d -> v%d)",
            report.cycle, [d.parameter for d in report.applied],
            prior_version, entry.version,
        )
        await self._emit("adaptation.policy_changed", {
            "prior_version": prior_version,
            "version": entry.version,
            "deltas": [d.model_dump(mode="json") for d in report.applied],
        })

    async def _publish(self, entry: PolicyVersion, record: AdaptationRecord) -> None:
        if self._knowledge is None:
            return
        await self._knowledge.write(POLICY_KEY, {
            "version": entry.version,
            "policy": entry.policy.model_dump(mode="json"),
        }, WRITER_ID)
        await self._knowledge.write(LAST_ADAPTATION_KEY, record.model_dump(mode="json"), WRITER_ID)

    async def rollback(self, to_version: int, reason: str = "") -> PolicyVersion:
        """Re-issue an earlier policy version.

        Applies regardless of cooldowns; every parameter it reverts starts
        a fresh cooldown, so the next cycle cannot undo it straight away.
        """
        async with self._lock:
            entry = await self._writer.rollback(to_version, reason)
            now = self._clock()
            for delta in entry.deltas:
                self._last_changed[delta.parameter] = now
        await self._emit("adaptation.rollback", {
            "to_version": to_version, "version": entry.version,
        })
        return entry

    # ── Queries ──────────────────────────────────────────────────

    def records(self) -> list[AdaptationRecord]:
        return list(self._records)

    def standing_issues(self) -> list[StandingIssue]:
        return list(self._issues.values())

    async def _emit(self, event_type: str, data: dict[str, Any]) -> None:
        if self._bus:
            await self._bus.emit(event_type, data, source="adaptation")


def _rate(records: list[OutcomeRecord], status: TaskStatus) -> float:
    return sum(1 for r in records if r.status == status) / len(records)
