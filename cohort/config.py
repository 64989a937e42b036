"""Global configuration — loaded from environment variables."""

from pathlib import Path

from pydantic_settings import BaseSettings


class CohortSettings(BaseSettings):
    workspace_dir: Path = Path(".cohort")
    db_path: Path = Path(".cohort/cohort.db")
    log_level: str = "INFO"

    # Default coordination policy (version 1)
    default_max_steps: int = 10
    default_checkpoint_interval: int = 4
    bidding_window_seconds: float = 2.0
    execution_start_timeout_seconds: float = 5.0
    approval_timeout_seconds: float = 300.0  # 5 minutes
    partial_bid_policy: str = "proceed"  # "proceed", "extend_once"
    halt_on_rejection: bool = False
    max_continuations: int = 2

    # Adaptation loop
    adaptation_every_n: int = 10  # run a cycle after every N outcomes (0 = off)
    adaptation_interval_seconds: float = 60.0
    adaptation_window: int = 50
    adaptation_cooldown_seconds: float = 300.0
    adaptation_baseline_alpha: float = 0.3
    adaptation_min_severity: float = 1.0

    # Re-announcement of unallocated tasks
    reannounce_attempts: int = 2
    reannounce_initial_delay: float = 0.5
    reannounce_multiplier: float = 2.0
    reannounce_max_delay: float = 10.0

    # Telemetry
    event_history_limit: int = 500

    model_config = {"env_prefix": "COHORT_"}


settings = CohortSettings()
