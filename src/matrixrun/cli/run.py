# Copyright (c) Syntropy Systems
"""matrixrun run command."""
from __future__ import annotations

import asyncio
import dataclasses
import json
import logging
import re
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Optional

import typer
from rich.console import Console
from rich.table import Table

from matrixrun.combinations import (
    count_combinations,
    estimate_execution,
    filter_combinations,
    format_duration,
    generate_combinations,
    validate_combinations,
)
from matrixrun.config import load_settings
from matrixrun.errors import MatrixConfigError, MatrixError
from matrixrun.models.matrix import MatrixConfig, load_base_scenario
from matrixrun.orchestrator import ExecutionOptions, MatrixOrchestrator
from matrixrun.overrides import validate_parameter_paths
from matrixrun.isolation import check_output_writable
from matrixrun.processes import GracefulShutdown, ProcessRegistry
from matrixrun.progress import ProgressEventType
from matrixrun.runners import get_runner

if TYPE_CHECKING:
    from matrixrun.executor import ScenarioRunner
    from matrixrun.models.matrix import MatrixCombination
    from matrixrun.models.run import MatrixExecutionSummary

console = Console()

LARGE_MATRIX_RUNS = 50
MAX_PREVIEW_ROWS = 20
EXIT_INTERRUPTED = 130

_QUIET_EVENTS = {ProgressEventType.PROGRESS_UPDATE, ProgressEventType.COMBINATION_STARTED}
_EVENT_STYLES = {
    ProgressEventType.RUN_COMPLETED: "green",
    ProgressEventType.RUN_FAILED: "red",
    ProgressEventType.TIMEOUT: "red",
    ProgressEventType.RESOURCE_WARNING: "yellow",
    ProgressEventType.ERROR: "red",
    ProgressEventType.COMBINATION_COMPLETED: "bold",
}


def _fail(message: str, hint: str | None = None) -> typer.Exit:
    console.print(f"[red]Error:[/red] {message}")
    if hint:
        console.print(f"[dim]Hint:[/dim] {hint}")
    return typer.Exit(1)


def _default_output_dir(name: str) -> Path:
    slug = re.sub(r"[^A-Za-z0-9_-]+", "-", name).strip("-").lower() or "matrix"
    stamp = datetime.now().strftime("%Y%m%d-%H%M%S")  # noqa: DTZ005
    return Path("matrix-results") / f"{slug}-{stamp}"


def _print_analysis(
    config: MatrixConfig,
    combinations: list[MatrixCombination],
    pattern: str | None,
) -> None:
    estimate = estimate_execution(combinations, config.runs_per_combination)

    overview = Table(title=f"Matrix: {config.name}", show_header=False)
    overview.add_column("Field", style="dim")
    overview.add_column("Value")
    if config.description:
        overview.add_row("Description", config.description)
    overview.add_row("Base scenario", config.base_scenario)
    overview.add_row("Axes", str(len(config.matrix)))
    overview.add_row("Combinations", str(estimate.total_combinations))
    overview.add_row("Runs per combination", str(config.runs_per_combination))
    overview.add_row("Total runs", str(estimate.total_runs))
    if pattern:
        overview.add_row(
            "Filter",
            f"{pattern} ({len(combinations)} of {count_combinations(config)} combinations)",
        )
    overview.add_row(
        "Estimated time",
        f"{format_duration(estimate.duration.realistic)} "
        f"({format_duration(estimate.duration.optimistic)} - "
        f"{format_duration(estimate.duration.pessimistic)})",
    )
    console.print(overview)

    table = Table(show_header=True, header_style="bold")
    table.add_column("#", style="dim")
    table.add_column("ID", no_wrap=True)
    table.add_column("Parameters")
    for combo in combinations[:MAX_PREVIEW_ROWS]:
        params = ", ".join(f"{k}={json.dumps(v)}" for k, v in combo.parameters.items())
        table.add_row(str(combo.metadata.combination_index), combo.id, params)
    console.print(table)
    if len(combinations) > MAX_PREVIEW_ROWS:
        console.print(f"[dim]... and {len(combinations) - MAX_PREVIEW_ROWS} more[/dim]")


def print_summary(summary: MatrixExecutionSummary, output_dir: Path | None = None) -> None:
    """Print totals and the per-combination breakdown of a summary."""
    table = Table(title="Matrix Execution Summary", show_header=True, header_style="bold")
    table.add_column("Combination", no_wrap=True)
    table.add_column("Parameters")
    table.add_column("Success", justify="right")
    table.add_column("Rate", justify="right")
    table.add_column("Avg duration", justify="right")
    for combo in summary.combinations:
        style = "green" if combo.failed_runs == 0 and combo.total_runs > 0 else "red"
        params = ", ".join(f"{k}={json.dumps(v)}" for k, v in combo.parameters.items())
        table.add_row(
            combo.combination_id,
            params,
            f"[{style}]{combo.successful_runs}/{combo.total_runs}[/{style}]",
            f"{combo.success_rate * 100:.1f}%",
            format_duration(combo.average_duration / 1000),
        )
    console.print(table)

    console.print(f"\n[bold]Total runs:[/bold] {summary.total_runs}")
    console.print(f"[green]Successful:[/green] {summary.successful_runs}")
    console.print(f"[red]Failed:[/red] {summary.failed_runs}")
    console.print(f"[bold]Success rate:[/bold] {summary.success_rate * 100:.1f}%")
    console.print(f"[dim]Duration:[/dim] {format_duration(summary.total_duration / 1000)}")
    if output_dir is not None:
        console.print(f"[dim]Results:[/dim] {output_dir}")


async def _execute(
    orchestrator: MatrixOrchestrator,
    processes: ProcessRegistry,
) -> None:
    task = asyncio.current_task()
    shutdown = GracefulShutdown(
        processes,
        on_shutdown=task.cancel if task is not None else None,
    )
    shutdown.install()
    try:
        _ = await orchestrator.run()
    finally:
        shutdown.uninstall()


def run(
    config_file: Path = typer.Argument(
        ...,
        help="Path to matrix configuration YAML file",
        exists=True,
        dir_okay=False,
    ),
    dry_run: bool = typer.Option(
        False,
        "--dry-run", "-n",
        help="Show the matrix analysis without executing anything",
    ),
    parallel: Optional[int] = typer.Option(
        None,
        "--parallel", "-p",
        min=1,
        help="Maximum runs in flight at once",
    ),
    pattern: Optional[str] = typer.Option(
        None,
        "--filter", "-f",
        help="Only run combinations whose parameters contain this text",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose", "-v",
        help="Show detailed progress and debug logging",
    ),
    output_dir: Optional[Path] = typer.Option(
        None,
        "--output-dir", "-o",
        help="Directory for results (default: matrix-results/<name>-<timestamp>)",
    ),
    timeout: Optional[float] = typer.Option(
        None,
        "--timeout", "-t",
        help="Per-run timeout in seconds",
    ),
    fail_fast: bool = typer.Option(
        False,
        "--fail-fast",
        help="Stop scheduling runs after the first failure",
    ),
) -> None:
    r"""Run a scenario across every combination of a parameter matrix.

    Example matrix.yaml:

    \b
        name: temperature-sweep
        base_scenario: scenarios/greeting.yaml
        runs_per_combination: 3
        command: [my-agent-test, "{{scenario_path}}"]
        matrix:
          - parameter: character.llm.temperature
            values: [0.1, 0.7]
          - parameter: run[0].input
            values: ["Hi", "Hello there"]
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        settings = load_settings()
        config = MatrixConfig.from_yaml(config_file)
        base = load_base_scenario(Path(config.base_scenario))
    except MatrixConfigError as e:
        raise _fail(str(e), e.hint) from e

    validation = validate_parameter_paths(base, config.matrix)
    if not validation.valid:
        console.print("[red]Error:[/red] Parameter paths not found in base scenario:")
        for check in validation.checks:
            if check.valid:
                continue
            console.print(f"  [bold]{check.path}[/bold]: {check.error}")
            if check.suggestion:
                console.print(f"    [dim]{check.suggestion}[/dim]")
        raise typer.Exit(1)

    try:
        combinations = generate_combinations(config.matrix)
    except MatrixConfigError as e:
        raise _fail(str(e), e.hint) from e
    problems = validate_combinations(combinations)
    if problems:
        raise _fail("; ".join(problems))

    if pattern:
        combinations = filter_combinations(combinations, pattern)
        if not combinations:
            console.print(f"[yellow]No combinations match filter '{pattern}'[/yellow]")
            raise typer.Exit(1)

    _print_analysis(config, combinations, pattern)

    total_runs = len(combinations) * config.runs_per_combination
    if total_runs > LARGE_MATRIX_RUNS:
        console.print(
            f"\n[yellow]Warning:[/yellow] {total_runs} runs is a large matrix. "
            "Consider --filter or fewer runs per combination."
        )

    if dry_run:
        console.print("\n[yellow]Dry run - nothing executed[/yellow]")
        return

    destination = output_dir or _default_output_dir(config.name)
    if not check_output_writable(destination):
        raise _fail(
            f"Cannot write to output directory '{destination}'",
            "Choose a writable --output-dir.",
        )
    processes = ProcessRegistry(grace_period=settings.kill_grace_period)
    try:
        runner: ScenarioRunner = get_runner(config.runner, config, processes)
        options = ExecutionOptions.from_settings(settings, destination)
        overrides: dict[str, object] = {}
        if parallel is not None:
            overrides["max_parallel"] = parallel
        if timeout is not None:
            overrides["run_timeout"] = timeout
        if fail_fast:
            overrides["continue_on_failure"] = False
        options = dataclasses.replace(options, **overrides)  # type: ignore[arg-type]
    except MatrixConfigError as e:
        raise _fail(str(e), e.hint) from e

    def on_progress(message: str, event_type: ProgressEventType, _data: object) -> None:
        if event_type in _QUIET_EVENTS and not verbose:
            return
        style = _EVENT_STYLES.get(event_type)
        console.print(f"[{style}]{message}[/{style}]" if style else message)

    def on_recommendation(message: str) -> None:
        console.print(f"[yellow]Recommendation:[/yellow] {message}")

    options.on_progress = on_progress
    options.on_recommendation = on_recommendation

    orchestrator = MatrixOrchestrator(
        config,
        combinations,
        options,
        runner,
        base_scenario=base,
    )
    console.print(
        f"\n[bold]Executing {total_runs} runs[/bold] "
        f"(parallel: {options.max_parallel}, timeout: {options.run_timeout:g}s)\n"
    )

    exit_code = 0
    try:
        asyncio.run(_execute(orchestrator, processes))
    except asyncio.CancelledError:
        console.print("\n[yellow]Interrupted - partial results were saved[/yellow]")
        exit_code = EXIT_INTERRUPTED
    except MatrixConfigError as e:
        raise _fail(str(e), e.hint) from e
    except MatrixError as e:
        console.print(f"\n[red]Stopped:[/red] {e}")
        exit_code = 1

    if orchestrator.summary is not None:
        console.print()
        print_summary(orchestrator.summary, destination)
        if orchestrator.summary.failed_runs > 0 and exit_code == 0:
            exit_code = 1

    if exit_code != 0:
        raise typer.Exit(exit_code)
