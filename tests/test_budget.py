"""Tests for the daily budget guard."""

from __future__ import annotations

import json
import logging
import threading
from datetime import timedelta

import pytest

from overseer.config import Settings
from overseer.errors import ReservationNotFoundError
from overseer.safety import BudgetGuard, BudgetLevel
from overseer.storage import Database, utcnow


@pytest.fixture
def guard(db: Database, settings: Settings) -> BudgetGuard:
    return BudgetGuard(db, settings)


def _open_budget_escalations(db: Database) -> list:
    return db.execute(
        "SELECT * FROM escalations WHERE work_order_id IS NULL AND status = 'open'"
    )


class TestLevels:
    """Test threshold levels."""

    def test_levels(self, guard: BudgetGuard) -> None:
        assert guard.level_for(0.0) is BudgetLevel.NORMAL
        assert guard.level_for(19.99) is BudgetLevel.NORMAL
        assert guard.level_for(20.0) is BudgetLevel.WARNING
        assert guard.level_for(50.0) is BudgetLevel.HARD_CAP_EXCEEDED
        assert guard.level_for(100.0) is BudgetLevel.EMERGENCY_KILL

    def test_warning_follows_ceiling_ratio(self, db: Database) -> None:
        """Warning starts at the lower of the soft cap and 80% of the ceiling."""
        s = Settings(data_dir=db.data_dir, budget_soft_cap=90.0, budget_hard_cap=95.0)
        guard = BudgetGuard(db, s)
        assert guard.level_for(79.0) is BudgetLevel.NORMAL
        assert guard.level_for(80.0) is BudgetLevel.WARNING

    def test_status(self, guard: BudgetGuard) -> None:
        guard.check_and_reserve(30.0, "wo-1")
        status = guard.status()

        assert status.level is BudgetLevel.WARNING
        assert status.daily_total == 30.0
        assert status.remaining == 70.0
        assert status.to_dict()["hard_cap_utilization"] == 0.6


# ═══════════════════════════════════════════════════════════════════════════
# RESERVATIONS
# ═══════════════════════════════════════════════════════════════════════════


class TestReservations:
    """Test check-and-reserve, commit and cancel."""

    def test_reserve_within_ceiling(self, guard: BudgetGuard) -> None:
        reservation = guard.check_and_reserve(5.0, "wo-1", {"tier": "fast"})

        assert reservation.can_proceed is True
        assert reservation.reservation_id is not None
        assert reservation.new_total == 5.0
        assert reservation.level is BudgetLevel.NORMAL
        assert reservation.remaining == 95.0

    def test_negative_amount(self, guard: BudgetGuard) -> None:
        with pytest.raises(ValueError):
            guard.check_and_reserve(-1.0, "wo-1")

    def test_decline_opens_system_escalation(self, guard: BudgetGuard, db: Database) -> None:
        guard.check_and_reserve(94.0, "wo-1")
        declined = guard.check_and_reserve(10.0, "wo-2")

        assert declined.can_proceed is False
        assert declined.reservation_id is None
        assert declined.new_total == 94.0
        assert declined.escalation_id is not None
        assert "exceed" in declined.reason
        assert guard.daily_total() == 94.0
        rows = _open_budget_escalations(db)
        assert [row["id"] for row in rows] == [declined.escalation_id]
        context = json.loads(rows[0]["context"])
        assert context["level"] == "hard_cap_exceeded"
        assert context["threshold_exceeded"].startswith("Approaching hard cap")

    def test_oversized_first_request_declined_quietly(
        self, guard: BudgetGuard, db: Database, caplog: pytest.LogCaptureFixture
    ) -> None:
        with caplog.at_level(logging.WARNING, logger="overseer.safety.budget"):
            declined = guard.check_and_reserve(150.0, "wo-1")

        assert declined.can_proceed is False
        assert declined.level is BudgetLevel.NORMAL
        assert declined.escalation_id is None
        assert _open_budget_escalations(db) == []
        assert not [r for r in caplog.records if r.levelno >= logging.CRITICAL]

    def test_decline_below_escalation_threshold(self, guard: BudgetGuard, db: Database) -> None:
        guard.check_and_reserve(30.0, "wo-1")
        declined = guard.check_and_reserve(80.0, "wo-2")

        assert declined.can_proceed is False
        assert declined.level is BudgetLevel.WARNING
        assert declined.escalation_id is None
        assert _open_budget_escalations(db) == []

    def test_escalation_deduplicated(self, guard: BudgetGuard, db: Database) -> None:
        guard.check_and_reserve(94.0, "wo-1")
        first = guard.check_and_reserve(10.0, "wo-2")
        second = guard.check_and_reserve(20.0, "wo-3")

        assert first.escalation_id == second.escalation_id
        assert len(_open_budget_escalations(db)) == 1

    def test_reaching_ceiling_exactly_is_allowed(self, guard: BudgetGuard) -> None:
        reservation = guard.check_and_reserve(100.0, "wo-1")

        assert reservation.can_proceed is True
        assert reservation.level is BudgetLevel.EMERGENCY_KILL
        assert reservation.escalation_id is not None
        assert guard.check_and_reserve(0.01, "wo-2").can_proceed is False

    def test_commit_actual_replaces_estimate(self, guard: BudgetGuard) -> None:
        reservation = guard.check_and_reserve(10.0, "wo-1")
        assert reservation.reservation_id is not None

        total = guard.commit_actual(reservation.reservation_id, 4.0)
        assert total == 4.0
        assert guard.daily_total() == 4.0

    def test_commit_twice_rejected(self, guard: BudgetGuard) -> None:
        reservation = guard.check_and_reserve(10.0, "wo-1")
        assert reservation.reservation_id is not None
        guard.commit_actual(reservation.reservation_id, 4.0)

        with pytest.raises(ReservationNotFoundError):
            guard.commit_actual(reservation.reservation_id, 5.0)

    def test_commit_unknown(self, guard: BudgetGuard) -> None:
        with pytest.raises(ReservationNotFoundError):
            guard.commit_actual("nope", 1.0)

    def test_cancel_releases(self, guard: BudgetGuard) -> None:
        reservation = guard.check_and_reserve(10.0, "wo-1")
        assert reservation.reservation_id is not None

        assert guard.cancel(reservation.reservation_id) is True
        assert guard.cancel(reservation.reservation_id) is False
        assert guard.daily_total() == 0.0

    def test_previous_day_not_counted(self, db: Database, settings: Settings) -> None:
        yesterday = BudgetGuard(db, settings, clock=lambda: utcnow() - timedelta(days=1))
        yesterday.check_and_reserve(90.0, "wo-1")

        today = BudgetGuard(db, settings)
        assert today.daily_total() == 0.0
        assert today.check_and_reserve(50.0, "wo-2").can_proceed is True


class TestConcurrency:
    """Test that concurrent reservations cannot overshoot the ceiling."""

    def test_only_one_of_two_fits(self, db: Database, settings: Settings) -> None:
        """$94 spent; two $5 reservations race; exactly one is admitted."""
        BudgetGuard(db, settings).check_and_reserve(94.0, "seed")
        # separate guards so only the database transaction serializes them
        guards = [BudgetGuard(db, settings), BudgetGuard(db, settings)]
        barrier = threading.Barrier(2)
        results = []

        def reserve(guard: BudgetGuard) -> None:
            barrier.wait()
            results.append(guard.check_and_reserve(5.0, "racer"))

        threads = [threading.Thread(target=reserve, args=(g,)) for g in guards]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(r.can_proceed for r in results) == [False, True]
        assert guards[0].daily_total() == 99.0

    def test_many_small_reservations(self, db: Database, settings: Settings) -> None:
        guard = BudgetGuard(db, settings)
        guard.check_and_reserve(90.0, "seed")
        results = []
        lock = threading.Lock()

        def reserve() -> None:
            r = guard.check_and_reserve(1.0, "racer")
            with lock:
                results.append(r.can_proceed)

        threads = [threading.Thread(target=reserve) for _ in range(15)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count(True) == 10
        assert guard.daily_total() == 100.0
