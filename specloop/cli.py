"""
specloop CLI — The Interface

  1. specloop run <tasks-dir> --budget 100          (plan + execute)
  2. specloop run <tasks-dir> --plan-only           (graph + allocation only)
  3. specloop run <tasks-dir> --resume              (continue from checkpoint)

Plus utilities:
  - specloop plan <tasks-dir>     (alias for run --plan-only)
  - specloop status <tasks-dir>   (render the latest checkpoint)
  - specloop init <path>          (bootstrap .specloop and an example task)

Exit codes: 0 all tasks completed, 1 partial/skipped/failed tasks
present, 2 invalid input or cyclic dependencies.
"""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Optional

import typer
from dotenv import load_dotenv
from loguru import logger
from rich.console import Console
from rich.prompt import Confirm

from specloop.audit_logger import AuditLogger
from specloop.config_loader import SpecloopConfig, load_config
from specloop.controller import TaskOutcome
from specloop.errors import (
    CheckpointNotFoundError,
    ConfigError,
    CyclicDependencyError,
    SessionLockedError,
    StructuralError,
)
from specloop.event_bus import bus
from specloop.executors import CommandExecutor
from specloop.identity import BANNER, __codename__, __tagline__, __version__
from specloop.orchestrator import Orchestrator, summarize
from specloop.report import print_plan, print_report
from specloop.state import TaskRecord
from specloop.store import JsonFileStore
from specloop.tasks import load_tasks

# Load .env from current directory or home
load_dotenv()
load_dotenv(Path.home() / ".specloop" / ".env")

EXIT_INVALID = 2

app = typer.Typer(
    name="specloop",
    help=f"{__codename__} — {__tagline__}\nDependency-ordered task orchestration.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

console = Console()


def version_callback(value: bool):
    if value:
        console.print(f"{__codename__} v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        callback=version_callback,
        is_eager=True,
        help="Show the version and exit.",
    ),
):
    pass


def _print_banner():
    console.print(f"[bright_green]{BANNER}[/]")
    console.print(f"  [dim]v{__version__} — {__tagline__}[/]\n")


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

@app.command()
def run(
    tasks_dir: Path = typer.Argument(..., help="Folder of task definition YAMLs"),
    budget: Optional[float] = typer.Option(None, "--budget", "-b", help="Total session budget"),
    max_iterations: Optional[int] = typer.Option(None, "--max-iterations", "-m", help="Iterations per task"),
    plan_only: bool = typer.Option(False, "--plan-only", help="Build graph and allocate budget, then stop"),
    resume: bool = typer.Option(False, "--resume", help="Continue the session from its last checkpoint"),
    session: Optional[str] = typer.Option(None, "--session", "-s", help="Session id (default: tasks folder name)"),
    state_dir: Optional[Path] = typer.Option(None, "--state-dir", help="Checkpoint directory"),
    workers: Optional[int] = typer.Option(None, "--workers", "-w", help="Run independent tasks concurrently"),
    auto_approve: bool = typer.Option(False, "--auto-approve", "-y", help="Never prompt on escalations"),
    audit_log: Optional[Path] = typer.Option(None, "--audit-log", help="Append every event to this JSONL file"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Plan and run a folder of tasks."""
    _print_banner()
    _configure_logging(verbose)

    tasks_dir = tasks_dir.resolve()
    try:
        config = _resolve_config(tasks_dir, max_iterations, workers)
        tasks = load_tasks(tasks_dir)
    except (StructuralError, ConfigError) as e:
        console.print(f"[red]Invalid input: {e}[/]")
        raise typer.Exit(EXIT_INVALID)

    session_id = session or tasks_dir.name
    store = JsonFileStore(state_dir or _default_state_dir(tasks_dir, config))
    if not plan_only:
        _add_file_log(tasks_dir, config, session_id)
    executor = CommandExecutor(tasks_dir, timeout_s=config.limits.iteration_timeout_s)
    escalation_handler = None if auto_approve else _confirm_escalation

    auditor = AuditLogger(str(audit_log), bus) if audit_log else None
    try:
        if resume:
            try:
                orchestrator = Orchestrator.resume(
                    session_id, store, executor, config,
                    escalation_handler=escalation_handler,
                    commands={t.name: t.command for t in tasks if t.command},
                )
            except CheckpointNotFoundError as e:
                console.print(f"[red]{e}[/]")
                raise typer.Exit(EXIT_INVALID)
        else:
            try:
                orchestrator = Orchestrator.from_tasks(
                    tasks, executor, config,
                    total_budget=budget,
                    session_id=session_id,
                    store=store,
                    escalation_handler=escalation_handler,
                )
            except CyclicDependencyError as e:
                console.print(f"[red]🚫 Cyclic dependency — refusing to start:[/] {' → '.join(e.cycle)}")
                console.print("[dim]Break the cycle in the task definitions and re-run.[/]")
                raise typer.Exit(EXIT_INVALID)
            except (StructuralError, ConfigError) as e:
                console.print(f"[red]Invalid input: {e}[/]")
                raise typer.Exit(EXIT_INVALID)
            if not plan_only and store.exists(session_id):
                console.print(
                    f"[yellow]Replacing checkpoint {session_id} (use --resume to continue it)[/]"
                )

        if plan_only:
            print_plan(console, orchestrator.state)
            console.print("\n[yellow]Plan only — nothing executed.[/]")
            return

        print_plan(console, orchestrator.state)
        try:
            report = orchestrator.run()
        except SessionLockedError as e:
            console.print(f"[red]{e}[/]")
            raise typer.Exit(EXIT_INVALID)
        except KeyboardInterrupt:
            console.print("\n[yellow]⚡ Interrupted. Resume with --resume.[/]")
            raise typer.Exit(1)

        console.print()
        print_report(console, report)
        raise typer.Exit(report.exit_code)
    finally:
        if auditor:
            auditor.close()


@app.command()
def plan(
    tasks_dir: Path = typer.Argument(..., help="Folder of task definition YAMLs"),
    budget: Optional[float] = typer.Option(None, "--budget", "-b", help="Total session budget"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """Build the dependency graph and allocate the budget without executing."""
    _configure_logging(verbose)

    tasks_dir = tasks_dir.resolve()
    try:
        config = load_config(tasks_dir)
        tasks = load_tasks(tasks_dir)
        state = Orchestrator.plan(tasks, config, total_budget=budget, session_id=tasks_dir.name)
    except CyclicDependencyError as e:
        console.print(f"[red]🚫 Cyclic dependency:[/] {' → '.join(e.cycle)}")
        raise typer.Exit(EXIT_INVALID)
    except (StructuralError, ConfigError) as e:
        console.print(f"[red]Invalid input: {e}[/]")
        raise typer.Exit(EXIT_INVALID)

    print_plan(console, state)


@app.command()
def status(
    tasks_dir: Optional[Path] = typer.Argument(None, help="Task folder the session was run from"),
    session: Optional[str] = typer.Option(None, "--session", "-s", help="Session id (default: tasks folder name)"),
    state_dir: Optional[Path] = typer.Option(None, "--state-dir", help="Checkpoint directory"),
):
    """Show the latest checkpoint of a session.

    With a task folder, the session id and checkpoint directory resolve
    the same way `run` resolves them.
    """
    if tasks_dir is not None:
        tasks_dir = tasks_dir.resolve()
        session = session or tasks_dir.name
        if state_dir is None:
            try:
                state_dir = _default_state_dir(tasks_dir, load_config(tasks_dir))
            except ConfigError as e:
                console.print(f"[red]Invalid input: {e}[/]")
                raise typer.Exit(EXIT_INVALID)
    if not session:
        console.print("[red]Pass a task folder or --session.[/]")
        raise typer.Exit(EXIT_INVALID)

    store = JsonFileStore((state_dir or Path(".specloop/state")).resolve())
    try:
        state = store.load_checkpoint(session)
    except CheckpointNotFoundError as e:
        console.print(f"[red]{e}[/]")
        raise typer.Exit(EXIT_INVALID)

    holder = store.holder_pid(session)
    if holder is not None:
        console.print(f"[cyan]Session is locked by PID {holder}[/]")
    console.print(f"[dim]Last checkpoint: {state.updated_at or state.created_at}[/]")
    print_report(console, summarize(state))


@app.command()
def init(
    path: Optional[Path] = typer.Argument(None, help="Project folder"),
):
    """Initialize .specloop and an example task folder."""
    _print_banner()

    root = (path or Path.cwd()).resolve()
    sl_dir = root / ".specloop"
    sl_dir.mkdir(parents=True, exist_ok=True)
    (sl_dir / "state").mkdir(exist_ok=True)
    (sl_dir / "logs").mkdir(exist_ok=True)

    config_path = sl_dir / "config.yaml"
    if not config_path.exists():
        config_path.write_text("""# specloop project-level config overrides
# These merge with the built-in defaults.

# limits:
#   max_iterations: 3
#   confidence_threshold: 0.9
#   iteration_timeout_s: 600

# budget:
#   total: 100
#   base_unit: 10

# parallel:
#   max_workers: 1
""")

    example = root / "example.yaml"
    if not example.exists():
        example.write_text("""id: example
depends_on: []
complexity: low
scope:
  - "docs/*"
description: "Replace with a real task"
# The command runs once per iteration and must print a JSON report
# as its last line of output.
command: >-
  echo '{"touched_artifacts": ["docs/README.md"], "completion_ratio": 1.0}'
""")

    console.print(f"[green]✅ Initialized specloop in {sl_dir}[/]")
    console.print(f"  Config:  {config_path}")
    console.print(f"  Example: {example}")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _resolve_config(
    tasks_dir: Path, max_iterations: int | None, workers: int | None
) -> SpecloopConfig:
    config = load_config(tasks_dir)
    if max_iterations is not None:
        if max_iterations < 1:
            raise ConfigError("--max-iterations must be at least 1")
        config.limits.max_iterations = max_iterations
    if workers is not None:
        if workers < 1:
            raise ConfigError("--workers must be at least 1")
        config.parallel.max_workers = workers
    return config


def _default_state_dir(tasks_dir: Path, config: SpecloopConfig) -> Path:
    state_dir = Path(config.workspace.state_dir)
    return state_dir if state_dir.is_absolute() else tasks_dir / state_dir


def _add_file_log(tasks_dir: Path, config: SpecloopConfig, session_id: str) -> Path:
    log_dir = Path(config.workspace.log_dir)
    if not log_dir.is_absolute():
        log_dir = tasks_dir / log_dir
    log_path = log_dir / f"{session_id}.log"
    logger.add(log_path, level="DEBUG", format="{time:YYYY-MM-DD HH:mm:ss} | {level:<7} | {message}")
    return log_path


def _confirm_escalation(record: TaskRecord, outcome: TaskOutcome) -> bool:
    if not sys.stdin.isatty():
        return False
    console.print(
        f"\n[bold yellow]⚠ {record.name} escalated[/] after {len(record.iterations)} iterations "
        f"(ratio {record.last_ratio:.2f}, signals: "
        f"{', '.join(s.value for s in outcome.signals) or 'none'})"
    )
    for it in record.iterations:
        console.print(
            f"  [dim]#{it.index}: ratio {it.completion_ratio:.2f}, {it.duration_ms}ms, "
            f"{len(it.touched_artifacts)} artifacts"
            f"{', out of scope' if it.out_of_scope else ''}"
            f"{', regression' if it.regression_flag else ''}[/]"
        )
    return Confirm.ask("[bold]Accept the partial result?[/]")


def _configure_logging(verbose: bool) -> None:
    logger.remove()
    if verbose:
        logger.add(
            lambda msg: console.print(f"[dim]{msg}[/]", highlight=False, markup=False),
            level="DEBUG",
            format="{time:HH:mm:ss} | {level:<7} | {message}",
        )
    else:
        logger.add(
            lambda msg: console.print(f"[dim]{msg}[/]", highlight=False, markup=False),
            level="WARNING",
            format="{message}",
        )


# ---------------------------------------------------------------------------
# Entry
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    app()
