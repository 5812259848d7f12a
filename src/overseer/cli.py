"""CLI entry point for overseer."""

from __future__ import annotations

import logging
import sys
import uuid
from typing import TYPE_CHECKING

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from overseer import __version__

if TYPE_CHECKING:
    from overseer.services import Services

console = Console()


@click.group()
@click.version_option(version=__version__, prog_name="overseer")
@click.option("-v", "--verbose", is_flag=True, help="Show debug logging")
def main(verbose: bool) -> None:
    """Overseer: adaptive routing, budget guard, CI verdicts and escalation."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True)],
    )


def _services() -> Services:
    from overseer.services import build_services

    return build_services()


@main.command()
def init() -> None:
    """Initialize overseer: create the data directory and database."""
    svc = _services()
    console.print(f"[green]Overseer initialized at {svc.db.data_dir}[/green]")
    console.print(f"  Database:     {svc.db.db_path}")
    console.print(f"  Test history: {svc.settings.test_history_path}")


@main.command()
@click.option("--work-order", "work_order_id", help="Route a stored work order")
@click.option("--title", default="", help="Title for an ad-hoc work order")
@click.option("--description", default="", help="Description for an ad-hoc work order")
@click.option("--criterion", "criteria", multiple=True, help="Acceptance criterion (repeatable)")
@click.option("--file", "files", multiple=True, help="File in scope (repeatable)")
@click.option("--context-budget", type=int, default=None, help="Estimated context tokens")
def route(
    work_order_id: str | None,
    title: str,
    description: str,
    criteria: tuple[str, ...],
    files: tuple[str, ...],
    context_budget: int | None,
) -> None:
    """Score a work order and show the routing decision."""
    from overseer.workorders import WorkOrder

    svc = _services()
    if work_order_id:
        work_order = svc.repository.get(work_order_id)
        if work_order is None:
            console.print(f"[red]Work order not found: {work_order_id}[/red]")
            sys.exit(1)
    elif title:
        work_order = WorkOrder(
            id=f"adhoc-{uuid.uuid4().hex[:8]}",
            title=title,
            description=description,
            acceptance_criteria=list(criteria),
            files_in_scope=list(files),
            context_budget_estimate=context_budget,
        )
    else:
        raise click.UsageError("Pass --work-order or --title")

    decision = svc.router.route(work_order, svc.budget_guard.status().level)
    if work_order_id:
        svc.routing_history.record(decision)

    console.print(f"[bold]Work order:[/bold] {work_order.id}")
    console.print(f"[bold]Complexity:[/bold] {decision.score:.3f}")
    f = decision.factors
    console.print(
        f"  criteria {f.criteria_count} → {f.criteria_component:.3f} | "
        f"files {f.files_count} → {f.files_component:.3f} | "
        f"context {f.context_budget} → {f.context_component:.3f}"
    )
    console.print(f"[bold]Tier:[/bold] {decision.tier} ({decision.model})")
    if decision.hard_stop:
        console.print(f"[yellow]Hard stop:[/yellow] {', '.join(decision.matched_keywords)}")
    if not decision.can_proceed:
        console.print("[red]Execution blocked: emergency budget kill[/red]")
    console.print(f"[bold]Reason:[/bold] {decision.reason}")


@main.command()
def budget() -> None:
    """Show today's spend against the budget thresholds."""
    svc = _services()
    status = svc.budget_guard.status()
    color = {
        "normal": "green",
        "warning": "yellow",
        "hard_cap_exceeded": "red",
        "emergency_kill": "bold red",
    }.get(str(status.level), "dim")

    table = Table(title="Daily Budget")
    table.add_column("Metric", style="cyan")
    table.add_column("Value")
    table.add_row("Level", f"[{color}]{status.level}[/{color}]")
    table.add_row("Spent today", f"${status.daily_total:.2f}")
    table.add_row("Soft cap", f"${status.soft_cap:.2f}")
    table.add_row("Hard cap", f"${status.hard_cap:.2f} ({status.hard_cap_utilization:.0%} used)")
    table.add_row("Emergency kill", f"${status.emergency_kill:.2f}")
    table.add_row("Remaining", f"${status.remaining:.2f}")
    console.print(table)


@main.command("check-budget")
def check_budget() -> None:
    """Open a system budget escalation if today's spend is near the limits."""
    svc = _services()
    escalation = svc.escalation_engine.check_budget()
    if escalation is None:
        console.print("[green]Budget within limits.[/green]")
        return
    reason = escalation.context.get("threshold_exceeded") or escalation.context.get("level")
    console.print(f"[red]Budget escalation {escalation.id}[/red]: {reason}")


@main.command()
@click.option("--status", type=click.Choice(["open", "resolved"]), default=None)
@click.option("--limit", default=20, help="Number of entries to show")
def escalations(status: str | None, limit: int) -> None:
    """List escalations."""
    svc = _services()
    rows = svc.escalation_engine.list_escalations(status, limit)
    if not rows:
        console.print("[dim]No escalations.[/dim]")
        return

    table = Table(title="Escalations")
    table.add_column("ID", style="cyan")
    table.add_column("Work Order")
    table.add_column("Trigger", style="yellow")
    table.add_column("Status")
    table.add_column("Recommended", style="green")
    table.add_column("Created")

    for e in rows:
        rec = e.recommendation
        table.add_row(
            e.id[:12],
            e.work_order_id or "[dim]system[/dim]",
            str(e.trigger_type),
            str(e.status),
            rec.recommended_option_id if rec else "-",
            e.created_at.isoformat()[:16],
        )
    console.print(table)


@main.command()
@click.argument("escalation_id")
def show(escalation_id: str) -> None:
    """Show an escalation's options and recommendation."""
    from overseer.errors import EscalationNotFoundError

    svc = _services()
    try:
        escalation = svc.escalation_engine.get_escalation(escalation_id)
    except EscalationNotFoundError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)

    console.print(
        f"[bold]{escalation.id}[/bold] ({escalation.trigger_type}, {escalation.status})"
    )
    table = Table(title="Options")
    table.add_column("Option", style="cyan")
    table.add_column("Strategy")
    table.add_column("Cost")
    table.add_column("Success")
    table.add_column("Risk")
    table.add_column("Time")
    for o in escalation.options:
        table.add_row(
            o.option_id,
            str(o.strategy),
            f"${o.estimated_cost:.2f}",
            f"{o.success_probability:.0%}",
            str(o.risk_level),
            o.time_to_resolution,
        )
    console.print(table)

    rec = escalation.recommendation
    if rec is not None:
        console.print(
            f"\n[green]Recommended:[/green] {rec.recommended_option_id} "
            f"({rec.confidence:.0%} confidence)"
        )
        console.print(rec.reasoning)
    if escalation.last_error:
        console.print(f"\n[red]Last error:[/red] {escalation.last_error}")


@main.command()
@click.argument("escalation_id")
@click.argument("option_id")
@click.option("--notes", default="", help="Notes recorded with the decision")
def decide(escalation_id: str, option_id: str, notes: str) -> None:
    """Execute a human decision for an open escalation."""
    from overseer.errors import OverseerError
    from overseer.escalation import EscalationDecision

    svc = _services()
    try:
        result = svc.escalation_engine.execute_decision(
            EscalationDecision(escalation_id, option_id, notes)
        )
    except OverseerError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)

    console.print(f"[green]Resolved ({result.resolution_outcome})[/green]")
    for lesson in result.lessons_learned:
        console.print(f"  - {lesson}")
    console.print(f"[dim]{result.pattern_for_memory}[/dim]")


@main.command()
@click.option("--limit", default=20, help="Number of entries to show")
def samples(limit: int) -> None:
    """Show recent learning samples."""
    svc = _services()
    rows = svc.sample_builder.recent(limit)
    if not rows:
        console.print("[dim]No learning samples yet.[/dim]")
        return

    table = Table(title="Learning Samples")
    table.add_column("Work Order", style="cyan")
    table.add_column("Predicted")
    table.add_column("Tier")
    table.add_column("Score", style="bold")
    table.add_column("Routed OK")
    table.add_column("Error")

    for s in rows:
        routed = "yes" if s.was_correctly_routed else "[red]no[/red]"
        if s.routing_judgment_defaulted:
            routed += " [dim](default)[/dim]"
        table.add_row(
            s.work_order_id,
            f"{s.predicted_complexity:.3f}",
            str(s.selected_tier),
            f"{s.success_score:.2f}",
            routed,
            f"{s.routing_error_magnitude:.3f}",
        )
    console.print(table)


@main.command()
@click.option("--dry-run", is_flag=True, help="Show the proposal without applying")
@click.option("--apply", "apply_changes", is_flag=True, help="Apply a validated proposal")
@click.option("--rollback", is_flag=True, help="Revert to the previous weight version")
def weights(dry_run: bool, apply_changes: bool, rollback: bool) -> None:
    """Propose, apply or roll back router weight updates."""
    from overseer.errors import WeightUpdateRejected
    from overseer.learning import CorrelationProposer

    svc = _services()
    updater = svc.weight_updater

    if rollback:
        previous = updater.rollback()
        if previous is None:
            console.print("[dim]No earlier weight version to roll back to.[/dim]")
        else:
            console.print(f"[green]Rolled back to {previous.as_dict()}[/green]")
        return

    if not (dry_run or apply_changes):
        console.print(
            "Use [bold]--dry-run[/bold] to see a proposal, [bold]--apply[/bold] to apply it "
            "or [bold]--rollback[/bold] to revert."
        )
        return

    proposal = updater.propose(CorrelationProposer(), svc.sample_builder.recent())
    if proposal is None:
        console.print("[dim]No weight proposal. Need 50+ samples and accuracy below 85%.[/dim]")
        return

    table = Table(title="Proposed Weights")
    table.add_column("Weight", style="cyan")
    table.add_column("Current")
    table.add_column("Proposed", style="green")
    current = svc.router.weights.as_dict()
    for name, value in proposal.weights.as_dict().items():
        table.add_row(name, f"{current[name]:.6f}", f"{value:.6f}")
    console.print(table)
    console.print(f"[dim]{proposal.rationale}[/dim]")

    problems = updater.validate(proposal)
    for problem in problems:
        console.print(f"[yellow]  - {problem}[/yellow]")

    if apply_changes:
        try:
            version = updater.apply(proposal)
        except WeightUpdateRejected as e:
            console.print(f"[red]{e}[/red]")
            sys.exit(1)
        console.print(f"[green]Applied weight version {version}.[/green]")


@main.command()
@click.argument("command", nargs=-1, required=True)
@click.option("--cwd", type=click.Path(exists=True, file_okay=False), default=".")
def quality(command: tuple[str, ...], cwd: str) -> None:
    """Run a compiler/linter command and apply the compilation gate."""
    from pathlib import Path

    from overseer.quality import format_summary

    svc = _services()
    result = svc.quality_gate.run(list(command), Path(cwd))
    console.print(format_summary(result))
    if result.decision == "escalate":
        sys.exit(2)


@main.command()
@click.option("--port", default=3850, help="Port to listen on")
@click.option("--host", default="127.0.0.1", help="Host to bind to")
def serve(port: int, host: str) -> None:
    """Start the API server."""
    import uvicorn

    from overseer.api.server import app

    uvicorn.run(app, host=host, port=port)
