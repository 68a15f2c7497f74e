"""CLI entry point for the curriculum scheduler."""

import json
import logging
from pathlib import Path
from typing import Annotated, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table
from sqlalchemy.exc import SQLAlchemyError

from .config import load_config
from .constants import get_day_name
from .exceptions import SchedulerError
from .models import Problem
from .persistence import SqlStore
from .scheduler import (
    BacktrackingSolver,
    Infeasible,
    MoveAssignment,
    ParallelSolver,
    PartialSuccess,
    SlotSeverity,
    Success,
    SwapSuggester,
    slot_report,
    validate_schedule,
)
from .serialization import export_schedule_json, load_problem_file, load_schedule_file
from .validators import find_integrity_issues

app = typer.Typer(
    name="curriculum-scheduler",
    help="Build weekly school timetables from curriculum requirements",
    add_completion=False,
)
console = Console()

DEFAULT_OUTPUT = Path("output/schedule.json")

logger = logging.getLogger(__name__)


def _configure_logging(verbose: bool) -> None:
    if not verbose:
        return
    logging.basicConfig(
        level=logging.DEBUG,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True)],
    )


def _load_problem(problem_file: Path) -> Problem:
    if not problem_file.exists():
        console.print(f"[bold red]Error:[/bold red] File not found: {problem_file}")
        raise typer.Exit(1)
    try:
        return load_problem_file(problem_file)
    except json.JSONDecodeError as e:
        console.print(f"[bold red]Error:[/bold red] {problem_file} is not valid JSON: {e}")
        raise typer.Exit(1)
    except SchedulerError as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        raise typer.Exit(1)


@app.command()
def solve(
    problem_file: Annotated[
        Path,
        typer.Argument(help="Problem JSON file"),
    ],
    output: Annotated[
        Optional[Path],
        typer.Option("-o", "--output", help="Output JSON file path"),
    ] = None,
    seed: Annotated[
        Optional[int],
        typer.Option("--seed", help="Random seed (defaults to a hash of the problem)"),
    ] = None,
    budget_ms: Annotated[
        Optional[int],
        typer.Option("--budget-ms", help="Wall-clock budget in milliseconds"),
    ] = None,
    workers: Annotated[
        int,
        typer.Option("--workers", help="Parallel restart workers"),
    ] = 1,
    config_file: Annotated[
        Optional[Path],
        typer.Option("--config", help="Solver configuration JSON file"),
    ] = None,
    db: Annotated[
        Optional[str],
        typer.Option("--db", help="Database URL to save the schedule history to"),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option("-v", "--verbose", help="Show detailed output"),
    ] = False,
) -> None:
    """Solve a problem and export the schedule."""
    _configure_logging(verbose)
    problem = _load_problem(problem_file)

    try:
        config = load_config(config_file) if config_file else problem.config
        config = config.with_overrides(rng_seed=seed, wall_clock_budget_ms=budget_ms)
        problem = problem.with_config(config)

        console.print(f"\n[bold]Solving:[/bold] {problem_file.name}")
        console.print(f"  Curricula: {len(problem.curricula)}")
        console.print(f"  Sessions: {problem.total_sessions()}")
        console.print(f"  Grid: {config.days_per_week} days x {config.periods_per_day} periods")

        with console.status("[bold green]Searching..."):
            if workers > 1:
                result = ParallelSolver(problem, workers=workers).solve()
            else:
                result = BacktrackingSolver(problem).solve()
    except SchedulerError as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        raise typer.Exit(1)

    _print_result(result)

    if isinstance(result, Infeasible):
        raise typer.Exit(1)
    if not isinstance(result, (Success, PartialSuccess)):
        console.print("[bold yellow]Warning:[/bold yellow] Solve was cancelled")
        raise typer.Exit(1)

    meta = {
        "result": result.kind,
        "cost": result.cost,
        "seed": result.statistics.seed,
        "problem": problem_file.name,
    }
    output_path = output or DEFAULT_OUTPUT
    if output_path.suffix != ".json":
        output_path = output_path.with_suffix(".json")
    with console.status(f"[bold green]Exporting to {output_path}..."):
        export_schedule_json(result.schedule, output_path, problem, meta)
    console.print(f"\n[bold green]✓[/bold green] Schedule exported to: {output_path}")

    if db:
        try:
            store = SqlStore(db)
            store.create_schema()
            history_id = store.save_schedule(result.schedule, meta)
        except SQLAlchemyError as e:
            logger.error(f"Database error for {db}: {e}")
            console.print(f"[bold red]Error:[/bold red] Database error: {e}")
            raise typer.Exit(1)
        except SchedulerError as e:
            console.print(f"[bold red]Error:[/bold red] {e}")
            raise typer.Exit(1)
        console.print(f"[bold green]✓[/bold green] Saved as history record {history_id}")


def _print_result(result) -> None:
    stats = result.statistics

    table = Table(title="Result", show_header=False)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Result", result.kind)
    if isinstance(result, (Success, PartialSuccess)):
        table.add_row("Assignments", str(len(result.schedule)))
        table.add_row("Cost", f"{result.cost:.2f}")
    table.add_row("Nodes", str(stats.nodes))
    table.add_row("Backtracks", str(stats.backtracks))
    table.add_row("Restarts", str(stats.restarts))
    table.add_row("Elapsed", f"{stats.elapsed_seconds:.2f}s")
    if stats.stop_reason:
        table.add_row("Stopped by", stats.stop_reason)
    console.print(table)

    if isinstance(result, Success) and result.breakdown is not None:
        cost_table = Table(title="Soft Cost")
        cost_table.add_column("Component", style="cyan")
        cost_table.add_column("Raw", style="green")
        cost_table.add_column("Weighted", style="green")
        weighted = result.breakdown.weighted
        for name, raw in result.breakdown.components.items():
            cost_table.add_row(name, f"{raw:.2f}", f"{weighted[name]:.2f}")
        console.print(cost_table)

    if isinstance(result, PartialSuccess):
        console.print(f"\n[bold yellow]Unmet curricula ({len(result.unmet_curricula)}):[/bold yellow]")
        for curriculum_id in result.unmet_curricula:
            console.print(f"  [yellow]- {curriculum_id}[/yellow]")

    if isinstance(result, Infeasible):
        console.print(f"\n[bold red]Infeasible:[/bold red] {result.reason.value}")
        for detail in result.details:
            console.print(f"  [red]• {detail}[/red]")


@app.command()
def validate(
    problem_file: Annotated[
        Path,
        typer.Argument(help="Problem JSON file"),
    ],
    schedule_file: Annotated[
        Optional[Path],
        typer.Option("--schedule", help="Schedule JSON file to audit against the problem"),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option("-v", "--verbose", help="Show detailed output"),
    ] = False,
) -> None:
    """Check a problem for integrity errors and optionally audit a schedule."""
    _configure_logging(verbose)
    problem = _load_problem(problem_file)

    issues = find_integrity_issues(problem)
    console.print(f"\n[bold]Validation Results for:[/bold] {problem_file.name}")
    if issues:
        console.print(f"[bold red]✗ Problem has issues ({len(issues)}):[/bold red]")
        for issue in issues:
            console.print(f"  [red]• {issue}[/red]")
        raise typer.Exit(1)
    console.print("[bold green]✓ Problem is valid[/bold green]")

    if schedule_file is None:
        return

    try:
        schedule = load_schedule_file(schedule_file)
        conflicts = validate_schedule(problem, schedule)
    except (OSError, json.JSONDecodeError, SchedulerError) as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        raise typer.Exit(1)

    if not conflicts:
        console.print(f"[bold green]✓ Schedule {schedule_file.name} satisfies every hard constraint[/bold green]")
        return

    table = Table(title=f"Conflicts in {schedule_file.name}")
    table.add_column("Kind", style="cyan")
    table.add_column("Description", style="red")
    for conflict in conflicts:
        table.add_row(conflict.kind, conflict.describe())
    console.print(table)
    raise typer.Exit(1)


@app.command()
def suggest(
    problem_file: Annotated[
        Path,
        typer.Argument(help="Problem JSON file"),
    ],
    schedule_file: Annotated[
        Path,
        typer.Argument(help="Current schedule JSON file"),
    ],
    curriculum: Annotated[
        str,
        typer.Option("--curriculum", help="Curriculum id of the session to move"),
    ],
    session: Annotated[
        int,
        typer.Option("--session", help="Session index within the curriculum"),
    ],
    slot: Annotated[
        int,
        typer.Option("--slot", help="Target slot (day * periods_per_day + period)"),
    ],
    venue: Annotated[
        Optional[str],
        typer.Option("--venue", help="Target venue id"),
    ] = None,
    limit: Annotated[
        int,
        typer.Option("--limit", help="Maximum suggestions to show"),
    ] = 5,
    verbose: Annotated[
        bool,
        typer.Option("-v", "--verbose", help="Show detailed output"),
    ] = False,
) -> None:
    """Suggest swap chains that move one session to another slot."""
    _configure_logging(verbose)
    problem = _load_problem(problem_file)

    curriculum_id = _find_curriculum_id(problem, curriculum)
    if curriculum_id is None:
        console.print(f"[bold red]Error:[/bold red] Unknown curriculum: {curriculum}")
        raise typer.Exit(1)

    try:
        schedule = load_schedule_file(schedule_file)
        suggester = SwapSuggester(problem, schedule)
        with console.status("[bold green]Searching for swap chains..."):
            chains = suggester.suggest(MoveAssignment((curriculum_id, session), slot, venue))
    except (OSError, json.JSONDecodeError, SchedulerError) as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        raise typer.Exit(1)

    if not chains:
        console.print("[bold yellow]No swap chain found within the configured limits[/bold yellow]")
        raise typer.Exit(1)

    table = Table(title=f"Suggestions ({len(chains)} found)")
    table.add_column("#", style="cyan")
    table.add_column("Kind", style="cyan")
    table.add_column("Length", style="green")
    table.add_column("Cost Delta", style="green")
    table.add_column("Moves")
    for rank, chain in enumerate(chains[:limit], start=1):
        table.add_row(str(rank), chain.kind.value, str(chain.length), f"{chain.cost_delta:+.2f}", chain.description)
    console.print(table)


SEVERITY_MARKUP = {
    SlotSeverity.BLOCKED: "[red]blocked[/red]",
    SlotSeverity.WARNING: "[yellow]warning[/yellow]",
    SlotSeverity.AVAILABLE: "[green]available[/green]",
}


@app.command()
def slots(
    problem_file: Annotated[
        Path,
        typer.Argument(help="Problem JSON file"),
    ],
    schedule_file: Annotated[
        Path,
        typer.Argument(help="Current schedule JSON file"),
    ],
    curriculum: Annotated[
        str,
        typer.Option("--curriculum", help="Curriculum id to report on"),
    ],
    session: Annotated[
        Optional[int],
        typer.Option("--session", help="Session index to move; omit for a new session"),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option("-v", "--verbose", help="Show detailed output"),
    ] = False,
) -> None:
    """Show which slots are blocked, discouraged or free for one session."""
    _configure_logging(verbose)
    problem = _load_problem(problem_file)

    curriculum_id = _find_curriculum_id(problem, curriculum)
    if curriculum_id is None:
        console.print(f"[bold red]Error:[/bold red] Unknown curriculum: {curriculum}")
        raise typer.Exit(1)

    try:
        schedule = load_schedule_file(schedule_file)
        report = slot_report(problem, schedule, curriculum_id, session)
    except (OSError, json.JSONDecodeError, SchedulerError) as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        raise typer.Exit(1)

    grid = problem.grid
    table = Table(title=f"Slots for curriculum {curriculum_id}")
    table.add_column("Period", style="cyan")
    for day in range(grid.days):
        table.add_column(get_day_name(day).capitalize())
    for period in range(grid.periods):
        cells = [SEVERITY_MARKUP[report[day * grid.periods + period].severity] for day in range(grid.days)]
        table.add_row(str(period + 1), *cells)
    console.print(table)

    details = [status for status in report.values() if status.severity != SlotSeverity.AVAILABLE]
    if details:
        reasons = Table(title="Reasons")
        reasons.add_column("Slot", style="cyan")
        reasons.add_column("Severity")
        reasons.add_column("Reasons")
        for status in details:
            reasons.add_row(grid.describe(status.slot), SEVERITY_MARKUP[status.severity], "; ".join(status.reasons))
        console.print(reasons)


def _find_curriculum_id(problem: Problem, text: str):
    for curriculum_id in problem.curricula_by_id:
        if str(curriculum_id) == text:
            return curriculum_id
    return None


@app.command()
def history(
    db: Annotated[
        str,
        typer.Option("--db", help="Database URL"),
    ],
) -> None:
    """List schedules saved to a database."""
    try:
        store = SqlStore(db)
        store.create_schema()
        records = store.list_history()
    except SQLAlchemyError as e:
        logger.error(f"Database error for {db}: {e}")
        console.print(f"[bold red]Error:[/bold red] Database error: {e}")
        raise typer.Exit(1)

    if not records:
        console.print("[bold yellow]No saved schedules[/bold yellow]")
        return

    table = Table(title="Schedule History")
    table.add_column("ID", style="cyan")
    table.add_column("Created", style="green")
    table.add_column("Cost", style="green")
    table.add_column("Assignments", style="green")
    table.add_column("Result")
    for record in records:
        table.add_row(
            str(record.id),
            record.created_at.strftime("%Y-%m-%d %H:%M:%S"),
            "-" if record.cost is None else f"{record.cost:.2f}",
            str(record.assignments),
            str(record.meta.get("result", "")),
        )
    console.print(table)


if __name__ == "__main__":
    app()
