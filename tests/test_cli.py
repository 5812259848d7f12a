"""Tests for the overseer CLI."""

from __future__ import annotations

from pathlib import Path

import pytest
from click.testing import CliRunner, Result

from overseer.cli import main
from overseer.config import Settings
from overseer.services import Services, build_services
from overseer.workorders import WorkOrder, WorkOrderStatus


@pytest.fixture
def runner(tmp_path: Path) -> CliRunner:
    return CliRunner(env={"OVERSEER_DATA_DIR": str(tmp_path)})


@pytest.fixture
def services(tmp_path: Path) -> Services:
    """Services over the same data directory the CLI uses."""
    return build_services(Settings(data_dir=tmp_path))


def _invoke(runner: CliRunner, *args: str) -> Result:
    return runner.invoke(main, list(args))


def test_version(runner: CliRunner) -> None:
    result = _invoke(runner, "--version")
    assert result.exit_code == 0
    assert "0.1.0" in result.output


def test_init(runner: CliRunner, tmp_path: Path) -> None:
    result = _invoke(runner, "init")
    assert result.exit_code == 0
    assert "initialized" in result.output.lower()
    assert (tmp_path / "data" / "overseer.db").exists()


# ═══════════════════════════════════════════════════════════════════════════
# ROUTING
# ═══════════════════════════════════════════════════════════════════════════


def test_route_ad_hoc(runner: CliRunner) -> None:
    result = _invoke(runner, "route", "--title", "Add pagination to orders", "--criterion", "a")
    assert result.exit_code == 0
    assert "Tier: fast (gpt-4o-mini)" in result.output


def test_route_hard_stop(runner: CliRunner) -> None:
    result = _invoke(runner, "route", "--title", "Switch password hashing to argon2")
    assert result.exit_code == 0
    assert "capable" in result.output
    assert "Hard stop: password hashing" in result.output


def test_route_requires_input(runner: CliRunner) -> None:
    result = _invoke(runner, "route")
    assert result.exit_code == 2


def test_route_missing_work_order(runner: CliRunner) -> None:
    result = _invoke(runner, "route", "--work-order", "missing")
    assert result.exit_code == 1
    assert "not found" in result.output


def test_route_stored_work_order(runner: CliRunner, services: Services) -> None:
    services.repository.create(WorkOrder(id="wo-cli-1", title="Add export button"))

    result = _invoke(runner, "route", "--work-order", "wo-cli-1")

    assert result.exit_code == 0
    assert services.routing_history.latest("wo-cli-1") is not None


# ═══════════════════════════════════════════════════════════════════════════
# BUDGET
# ═══════════════════════════════════════════════════════════════════════════


def test_budget(runner: CliRunner, services: Services) -> None:
    services.budget_guard.check_and_reserve(12.0, "wo-1")

    result = _invoke(runner, "budget")

    assert result.exit_code == 0
    assert "normal" in result.output
    assert "$12.00" in result.output


def test_check_budget(runner: CliRunner, services: Services) -> None:
    quiet = _invoke(runner, "check-budget")
    assert quiet.exit_code == 0
    assert "within limits" in quiet.output

    services.budget_guard.check_and_reserve(47.0, "wo-1")
    result = _invoke(runner, "check-budget")
    assert result.exit_code == 0
    assert "Budget escalation" in result.output


# ═══════════════════════════════════════════════════════════════════════════
# ESCALATIONS
# ═══════════════════════════════════════════════════════════════════════════


def test_escalations_empty(runner: CliRunner) -> None:
    result = _invoke(runner, "escalations")
    assert result.exit_code == 0
    assert "No escalations" in result.output


def test_escalation_review_and_decide(runner: CliRunner, services: Services) -> None:
    wo = services.repository.create(WorkOrder(id="wo-cli-2", title="Add export button"))
    services.state_machine.transition(wo.id, WorkOrderStatus.PROCESSING)
    services.state_machine.transition(wo.id, WorkOrderStatus.FAILED)
    escalation, _ = services.escalation_engine.create_escalation(wo.id)

    listed = _invoke(runner, "escalations", "--status", "open")
    assert listed.exit_code == 0
    assert "Escalations" in listed.output

    shown = _invoke(runner, "show", escalation.id)
    assert shown.exit_code == 0
    assert "Recommended:" in shown.output

    decided = _invoke(runner, "decide", escalation.id, "B", "--notes", "simplify")
    assert decided.exit_code == 0
    assert "Resolved (success)" in decided.output

    stored = services.repository.get(wo.id)
    assert stored is not None and stored.status is WorkOrderStatus.NEEDS_REVIEW


def test_show_unknown(runner: CliRunner) -> None:
    result = _invoke(runner, "show", "missing")
    assert result.exit_code == 1


def test_decide_unknown(runner: CliRunner) -> None:
    result = _invoke(runner, "decide", "missing", "A")
    assert result.exit_code == 1
    assert "not found" in result.output


# ═══════════════════════════════════════════════════════════════════════════
# LEARNING
# ═══════════════════════════════════════════════════════════════════════════


def test_samples_empty(runner: CliRunner) -> None:
    result = _invoke(runner, "samples")
    assert result.exit_code == 0
    assert "No learning samples" in result.output


def test_weights_usage(runner: CliRunner) -> None:
    result = _invoke(runner, "weights")
    assert result.exit_code == 0
    assert "--dry-run" in result.output


def test_weights_dry_run_without_samples(runner: CliRunner) -> None:
    result = _invoke(runner, "weights", "--dry-run")
    assert result.exit_code == 0
    assert "No weight proposal" in result.output


def test_weights_rollback_without_history(runner: CliRunner) -> None:
    result = _invoke(runner, "weights", "--rollback")
    assert result.exit_code == 0
    assert "No earlier weight version" in result.output


# ═══════════════════════════════════════════════════════════════════════════
# QUALITY GATE
# ═══════════════════════════════════════════════════════════════════════════


def test_quality_clean(runner: CliRunner, tmp_path: Path) -> None:
    result = _invoke(runner, "quality", "--cwd", str(tmp_path), "--", "true")
    assert result.exit_code == 0
    assert "Compilation successful" in result.output


def test_quality_tool_failure_escalates(runner: CliRunner, tmp_path: Path) -> None:
    result = _invoke(runner, "quality", "--cwd", str(tmp_path), "--", "false")
    assert result.exit_code == 2
    assert "ESCALATE" in result.output
