# Copyright (c) Syntropy Systems
"""matrixrun show command."""
from __future__ import annotations

from pathlib import Path

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from matrixrun.aggregator import load_run_results, load_summary
from matrixrun.cli.run import print_summary

console = Console()


def show(
    output_dir: Path = typer.Argument(
        ...,
        help="Results directory written by 'matrixrun run'",
        exists=True,
        file_okay=False,
    ),
    failures: bool = typer.Option(
        False,
        "--failures",
        help="Also list every failed run with its error",
    ),
) -> None:
    """Show the summary of a finished matrix execution."""
    try:
        summary = load_summary(output_dir)
    except (OSError, ValidationError) as e:
        console.print(f"[red]Error:[/red] Could not read summary: {e}")
        raise typer.Exit(1) from e

    if summary is None:
        console.print(f"[red]Error:[/red] No summary.json in {output_dir}")
        raise typer.Exit(1)

    print_summary(summary, output_dir)

    if not failures:
        return

    failed = [r for r in load_run_results(output_dir) if not r.success]
    if not failed:
        console.print("\n[green]No failed runs[/green]")
        return

    table = Table(title="Failed runs", show_header=True, header_style="bold")
    table.add_column("Run", no_wrap=True)
    table.add_column("Combination", no_wrap=True)
    table.add_column("Error")
    for result in failed:
        error = result.error or "-"
        if result.timed_out:
            error = f"[yellow]timeout[/yellow] {error}"
        table.add_row(result.run_id, result.combination_id, error)
    console.print(table)
