"""Retry policy — explicit attempts and backoff, passed as configuration.

Callers ask the policy for its delay schedule instead of hard-coding
sleeps in their control flow.
"""

from __future__ import annotations

import asyncio
from typing import Iterator

from pydantic import BaseModel, Field

from cohort.config import CohortSettings


class RetryPolicy(BaseModel):
    """How many times to retry, and how long to wait in between."""

    model_config = {"frozen": True}

    max_attempts: int = Field(default=3, ge=1)
    initial_delay: float = Field(default=0.5, ge=0.0)
    multiplier: float = Field(default=2.0, ge=1.0)
    max_delay: float = Field(default=10.0, ge=0.0)

    @classmethod
    def from_settings(cls, cfg: CohortSettings) -> RetryPolicy:
        # reannounce_attempts counts retries on top of the first try
        return cls(
            max_attempts=cfg.reannounce_attempts + 1,
            initial_delay=cfg.reannounce_initial_delay,
            multiplier=cfg.reannounce_multiplier,
            max_delay=cfg.reannounce_max_delay,
        )

    @classmethod
    def none(cls) -> RetryPolicy:
        return cls(max_attempts=1, initial_delay=0.0)

    def delay_for(self, retry: int) -> float:
        """Backoff before retry number ``retry`` (1-based)."""
        if retry < 1:
            return 0.0
        return min(self.initial_delay * self.multiplier ** (retry - 1), self.max_delay)

    def delays(self) -> Iterator[float]:
        """Delays before each retry; yields max_attempts - 1 values."""
        for retry in range(1, self.max_attempts):
            yield self.delay_for(retry)

    async def sleep(self, retry: int) -> None:
        delay = self.delay_for(retry)
        if delay > 0:
            await asyncio.sleep(delay)
