"""Adaptation daemon — runs adaptation cycles on a schedule in the background.

Outcome-triggered cycles only fire while tasks keep completing. The
daemon covers quiet periods, so drift in knowledge-store contention or
a stalled task stream is still looked at. Uses an asyncio task for
scheduling.
"""

from __future__ import annotations

import asyncio
from typing import Any

import structlog

from cohort.adaptation.loop import AdaptationLoop, CycleReport
from cohort.events.bus import EventBus

logger = structlog.get_logger()


class AdaptationDaemon:
    """Background daemon that runs adaptation cycles on an interval."""

    def __init__(
        self,
        loop: AdaptationLoop,
        event_bus: EventBus | None = None,
        interval_seconds: float | None = None,
        history_limit: int = 100,
    ) -> None:
        self._loop = loop
        self._event_bus = event_bus
        self._interval = interval_seconds or loop.config.interval_seconds
        self._history_limit = history_limit
        self._running = False
        self._task: asyncio.Task | None = None
        self._history: list[CycleReport] = []

    async def start(self) -> None:
        """Start the daemon loop."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("adaptation_daemon_started", interval_seconds=self._interval)
        await self._emit("adaptation.daemon_started", {"interval_seconds": self._interval})

    async def stop(self) -> None:
        """Stop the daemon."""
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        logger.info("adaptation_daemon_stopped", cycles=len(self._history))
        await self._emit("adaptation.daemon_stopped", {})

    async def run_once(self) -> CycleReport:
        """Run a single adaptation cycle."""
        report = await self._loop.run_cycle()
        self._history.append(report)
        self._history = self._history[-self._history_limit:]
        logger.info(
            "adaptation_cycle",
            cycle=report.cycle,
            deviations=[d.metric for d in report.deviations],
            applied=[d.parameter for d in report.applied],
            policy_version=report.policy_version,
        )
        return report

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def history(self) -> list[CycleReport]:
        return list(self._history)

    async def _run_loop(self) -> None:
        while self._running:
            # Wait first: the loop has nothing to compare until outcomes arrive
            try:
                await asyncio.sleep(self._interval)
            except asyncio.CancelledError:
                break
            try:
                await self.run_once()
            except Exception as e:
                logger.error("adaptation_daemon_cycle_failed", error=str(e))
                await self._emit("adaptation.daemon_error", {"error": str(e)})

    async def _emit(self, topic: str, data: dict[str, Any]) -> None:
        if self._event_bus:
            await self._event_bus.emit(topic, data, source="adaptation_daemon")
