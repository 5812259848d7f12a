"""Runtime settings for every overseer component.

All thresholds live here so the router, budget guard, quality gate, verdict
engine and escalation engine read the same values. Values come from the
environment with the ``OVERSEER_`` prefix, e.g. ``OVERSEER_BUDGET_HARD_CAP=75``.
"""

from __future__ import annotations

from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class TierModels(BaseModel):
    """Model names backing each execution tier."""

    fast: str = "gpt-4o-mini"
    capable: str = "claude-sonnet-4-5"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="OVERSEER_", env_nested_delimiter="__")

    data_dir: Path = Field(default_factory=lambda: Path.home() / ".overseer")

    # Routing
    complexity_threshold: float = 0.3
    tier_models: TierModels = Field(default_factory=TierModels)

    # Budget (USD per UTC day)
    budget_soft_cap: float = 20.0
    budget_hard_cap: float = 50.0
    budget_emergency_kill: float = 100.0
    budget_warn_ratio: float = 0.8
    budget_escalation_hard_cap_ratio: float = 0.9

    # Compilation gate
    compilation_warn_max: int = 5
    compilation_warn_sample: int = 10
    compilation_escalate_sample: int = 20
    compilation_timeout_seconds: float = 60.0

    # Verdicts
    expected_workflows: List[str] = Field(
        default_factory=lambda: ["Build", "Test", "Integration Tests", "Lint"]
    )
    flaky_window: int = 50
    flaky_min_runs: int = 5
    flaky_stable_pass_min: float = 0.90
    flaky_min: float = 0.10
    flaky_ignore_min_runs: int = 20
    flaky_ignore_flake_rate: float = 0.10

    # Escalation
    escalation_max_retries: int = 3
    escalation_cost_overrun_ratio: float = 2.0
    escalation_stuck_hours: float = 24.0
    escalation_sentinel_failure_limit: int = 3
    escalation_budget_overrun_cost: float = 50.0
    escalation_abort_cost: float = 20.0
    escalation_abort_failures: int = 3

    # Scheduling / external calls
    max_concurrent_executions: int = 4
    execution_timeout_seconds: float = 600.0
    log_fetch_timeout_seconds: float = 30.0
    work_order_fetch_attempts: int = 3
    work_order_fetch_delay_seconds: float = 2.0
    github_api_url: str = "https://api.github.com"
    github_token: Optional[str] = None

    @property
    def db_path(self) -> Path:
        return self.data_dir / "data" / "overseer.db"

    @property
    def test_history_path(self) -> Path:
        return self.data_dir / "data" / "test_history.db"


def get_settings() -> Settings:
    """Load settings from the environment."""
    return Settings()
