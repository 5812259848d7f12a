"""Flaky test classification from rolling pass/fail history.

- STABLE_PASS: pass rate > 0.90
- FLAKY: pass rate in [0.10, 0.90]
- STABLE_FAIL: pass rate < 0.10

Below 5 runs the majority outcome decides. A FLAKY test is suppressed only
after 20+ runs with a flake rate (1 - pass rate) above 10%.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum

from ..config import Settings


class TestClassification(StrEnum):
    STABLE_PASS = "stable_pass"
    FLAKY = "flaky"
    STABLE_FAIL = "stable_fail"


@dataclass
class TestStats:
    """Reliability statistics for one test."""

    __test__ = False

    test_name: str
    total_runs: int
    total_passes: int
    total_fails: int
    pass_rate: float
    classification: TestClassification
    should_ignore: bool
    last_seen: datetime | None = None

    def __post_init__(self) -> None:
        if not 0.0 <= self.pass_rate <= 1.0:
            raise ValueError(f"pass_rate must be in [0.0, 1.0], got {self.pass_rate}")

    @property
    def flake_rate(self) -> float:
        return 1.0 - self.pass_rate if self.total_runs else 0.0


class FlakinessClassifier:
    def __init__(self, settings: Settings | None = None) -> None:
        s = settings or Settings()
        self.window = s.flaky_window
        self.min_runs = s.flaky_min_runs
        self.stable_pass_min = s.flaky_stable_pass_min
        self.flaky_min = s.flaky_min
        self.ignore_min_runs = s.flaky_ignore_min_runs
        self.ignore_flake_rate = s.flaky_ignore_flake_rate

    def classify(self, pass_rate: float, total_runs: int) -> TestClassification:
        if total_runs < self.min_runs:
            return (
                TestClassification.STABLE_PASS
                if pass_rate >= 0.5
                else TestClassification.STABLE_FAIL
            )
        if pass_rate > self.stable_pass_min:
            return TestClassification.STABLE_PASS
        if self.flaky_min <= pass_rate <= self.stable_pass_min:
            return TestClassification.FLAKY
        return TestClassification.STABLE_FAIL

    def should_ignore(
        self, pass_rate: float, total_runs: int, classification: TestClassification
    ) -> bool:
        if classification is not TestClassification.FLAKY:
            return False
        if total_runs < self.ignore_min_runs:
            return False
        return (1.0 - pass_rate) > self.ignore_flake_rate

    def stats(
        self, test_name: str, outcomes: Sequence[bool], last_seen: datetime | None = None
    ) -> TestStats:
        """Classify a test from its outcomes, oldest first; only the newest window counts."""
        recent = list(outcomes)[-self.window :]
        if not recent:
            return TestStats(
                test_name=test_name,
                total_runs=0,
                total_passes=0,
                total_fails=0,
                pass_rate=0.0,
                classification=TestClassification.STABLE_FAIL,
                should_ignore=False,
                last_seen=last_seen,
            )

        total = len(recent)
        passes = sum(1 for ok in recent if ok)
        pass_rate = passes / total
        classification = self.classify(pass_rate, total)
        return TestStats(
            test_name=test_name,
            total_runs=total,
            total_passes=passes,
            total_fails=total - passes,
            pass_rate=pass_rate,
            classification=classification,
            should_ignore=self.should_ignore(pass_rate, total, classification),
            last_seen=last_seen,
        )
