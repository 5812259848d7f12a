"""Tests for flaky test classification and the test history ledger."""

from __future__ import annotations

from pathlib import Path

import pytest

from overseer.config import Settings
from overseer.verdict import FlakinessClassifier, TestHistoryLedger, TestHistoryRecord
from overseer.verdict.flakiness import TestClassification as Classification


def _outcomes(passes: int, fails: int) -> list[bool]:
    return [False] * fails + [True] * passes


class TestClassifier:
    """Test classification thresholds."""

    def test_thresholds(self) -> None:
        c = FlakinessClassifier()

        assert c.classify(0.95, 20) is Classification.STABLE_PASS
        assert c.classify(0.90, 20) is Classification.FLAKY
        assert c.classify(0.50, 20) is Classification.FLAKY
        assert c.classify(0.10, 20) is Classification.FLAKY
        assert c.classify(0.05, 20) is Classification.STABLE_FAIL

    def test_few_runs_use_majority(self) -> None:
        c = FlakinessClassifier()

        assert c.classify(2 / 3, 3) is Classification.STABLE_PASS
        assert c.classify(1 / 3, 3) is Classification.STABLE_FAIL

    def test_flaky_and_ignored(self) -> None:
        """17 passes and 3 fails over 20 runs: flake rate 15%, suppressed."""
        stats = FlakinessClassifier().stats("test_sync", _outcomes(17, 3))

        assert stats.total_runs == 20
        assert stats.total_fails == 3
        assert stats.pass_rate == 0.85
        assert stats.classification is Classification.FLAKY
        assert stats.should_ignore is True
        assert stats.flake_rate == pytest.approx(0.15)

    def test_flaky_below_run_minimum_not_ignored(self) -> None:
        stats = FlakinessClassifier().stats("test_sync", _outcomes(16, 3))

        assert stats.classification is Classification.FLAKY
        assert stats.should_ignore is False

    def test_stable_fail_never_ignored(self) -> None:
        stats = FlakinessClassifier().stats("test_broken", _outcomes(1, 29))

        assert stats.classification is Classification.STABLE_FAIL
        assert stats.should_ignore is False

    def test_window_keeps_newest(self) -> None:
        """Old failures fall out of the 50-run window."""
        outcomes = [False] * 10 + [True] * 50
        stats = FlakinessClassifier().stats("test_fixed", outcomes)

        assert stats.total_runs == 50
        assert stats.pass_rate == 1.0
        assert stats.classification is Classification.STABLE_PASS

    def test_no_history(self) -> None:
        stats = FlakinessClassifier().stats("test_new", [])

        assert stats.total_runs == 0
        assert stats.flake_rate == 0.0
        assert stats.should_ignore is False

    def test_settings_override(self) -> None:
        c = FlakinessClassifier(Settings(flaky_ignore_min_runs=10))
        assert c.stats("t", _outcomes(8, 2)).should_ignore is True


# ═══════════════════════════════════════════════════════════════════════════
# LEDGER
# ═══════════════════════════════════════════════════════════════════════════


@pytest.mark.anyio
class TestHistoryLedgerStorage:
    """Test the persistent rolling window."""

    async def test_record_and_stats(self, tmp_path: Path) -> None:
        async with TestHistoryLedger(tmp_path / "history.db") as ledger:
            records = [
                TestHistoryRecord("test_sync", ok, run_id=f"run-{i}")
                for i, ok in enumerate(_outcomes(17, 3))
            ]
            assert await ledger.record(records) == 20

            stats = await ledger.get_stats("test_sync", FlakinessClassifier())

        assert stats.total_runs == 20
        assert stats.should_ignore is True
        assert stats.last_seen is not None

    async def test_window_trimmed_on_write(self, tmp_path: Path) -> None:
        async with TestHistoryLedger(tmp_path / "history.db", window=5) as ledger:
            await ledger.record(
                TestHistoryRecord("test_a", i % 2 == 0, run_id=str(i)) for i in range(8)
            )
            outcomes, _ = await ledger.outcomes("test_a")

        # runs 3..7, oldest first
        assert outcomes == [False, True, False, True, False]

    async def test_unknown_test(self, tmp_path: Path) -> None:
        async with TestHistoryLedger(tmp_path / "history.db") as ledger:
            assert await ledger.outcomes("missing") == ([], None)

    async def test_suppressed(self, tmp_path: Path) -> None:
        async with TestHistoryLedger(tmp_path / "history.db") as ledger:
            await ledger.record(
                [TestHistoryRecord("test_flaky", ok, "r") for ok in _outcomes(17, 3)]
                + [TestHistoryRecord("test_solid", True, "r") for _ in range(20)]
            )
            suppressed = await ledger.suppressed(
                ["test_flaky", "test_solid", "test_flaky"], FlakinessClassifier()
            )

        assert list(suppressed) == ["test_flaky"]

    async def test_persists_across_connections(self, tmp_path: Path) -> None:
        path = tmp_path / "nested" / "history.db"
        async with TestHistoryLedger(path) as ledger:
            await ledger.record([TestHistoryRecord("test_a", True, "r1")])
        async with TestHistoryLedger(path) as ledger:
            outcomes, _ = await ledger.outcomes("test_a")
        assert outcomes == [True]
