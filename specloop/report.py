"""
Human-facing rendering of plans and session reports.
"""

from __future__ import annotations

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from specloop.graph import DependencyGraph
from specloop.orchestrator import SessionOutcome, SessionReport
from specloop.state import OrchestrationState, TaskStatus

STATUS_COLORS = {
    TaskStatus.COMPLETED: "green",
    TaskStatus.PARTIAL: "yellow",
    TaskStatus.SKIPPED: "dim",
    TaskStatus.FAILED: "red",
    TaskStatus.IN_PROGRESS: "cyan",
    TaskStatus.READY: "cyan",
    TaskStatus.PENDING: "white",
}

OUTCOME_COLORS = {
    SessionOutcome.SUCCESS: "green",
    SessionOutcome.DEGRADED: "yellow",
    SessionOutcome.FAILURE: "red",
}


def print_plan(console: Console, state: OrchestrationState) -> None:
    graph = DependencyGraph.build({n: r.dependencies for n, r in state.tasks.items()})

    table = Table(title=f"Plan — {state.session_id}", border_style="cyan")
    table.add_column("#", style="dim")
    table.add_column("Task")
    table.add_column("Complexity")
    table.add_column("Depth", justify="right")
    table.add_column("Depends on", style="dim")
    table.add_column("Allocation", justify="right")

    for i, name in enumerate(state.order, 1):
        rec = state.tasks[name]
        table.add_row(
            str(i),
            name,
            rec.complexity.value,
            str(graph.depth(name)),
            ", ".join(rec.dependencies) or "—",
            f"{rec.allocation:.2f}",
        )

    console.print(table)
    allocated = sum(r.allocation for r in state.tasks.values())
    console.print(
        f"[bold]Allocated {allocated:.2f} of {state.budget_total:.2f}[/] "
        f"across {len(state.tasks)} tasks"
    )


def print_report(console: Console, report: SessionReport) -> None:
    table = Table(title=f"Session — {report.session_id}", border_style="bright_green")
    table.add_column("Task")
    table.add_column("Status")
    table.add_column("Reason")
    table.add_column("Iterations", justify="right")
    table.add_column("Ratio", justify="right")
    table.add_column("Consumed", justify="right")

    for rec in report.tasks:
        color = STATUS_COLORS.get(rec.status, "white")
        status = rec.status.value
        if rec.status is TaskStatus.PARTIAL and not rec.accepted:
            status += " (unaccepted)"
        table.add_row(
            rec.name,
            f"[{color}]{status}[/]",
            rec.reason.value if rec.reason else "—",
            str(len(rec.iterations)),
            f"{rec.last_ratio:.2f}" if rec.iterations else "—",
            f"{rec.consumed:.2f}",
        )

    console.print(table)

    color = OUTCOME_COLORS[report.outcome]
    counts = ", ".join(f"{status}: {len(names)}" for status, names in report.by_status().items())
    lines = [
        counts,
        f"Budget: {report.budget_remaining:.2f} / {report.budget_total:.2f} remaining",
        f"Commitment level: {report.commitment_level}",
    ]
    if report.best_effort:
        lines.append("[yellow]Budget exhausted — remaining tasks ran best-effort[/]")
    console.print(Panel(
        "\n".join(lines),
        title=f"[{color}]{report.outcome.value}[/] (exit {report.exit_code})",
        border_style=color,
    ))
