"""Tests for the retry policy."""

import pytest

from cohort.config import CohortSettings
from cohort.retry import RetryPolicy


def test_backoff_schedule_is_capped():
    policy = RetryPolicy(max_attempts=5, initial_delay=1.0, multiplier=3.0, max_delay=5.0)
    assert list(policy.delays()) == [1.0, 3.0, 5.0, 5.0]
    assert policy.delay_for(0) == 0.0


def test_none_never_retries():
    policy = RetryPolicy.none()
    assert policy.max_attempts == 1
    assert list(policy.delays()) == []


def test_from_settings_counts_first_attempt():
    cfg = CohortSettings(reannounce_attempts=2, reannounce_initial_delay=0.1)
    policy = RetryPolicy.from_settings(cfg)
    assert policy.max_attempts == 3
    assert policy.delay_for(1) == pytest.approx(0.1)


def test_invalid_policy_rejected():
    with pytest.raises(ValueError):
        RetryPolicy(max_attempts=0)


async def test_sleep_without_delay_returns_immediately():
    await RetryPolicy.none().sleep(1)
