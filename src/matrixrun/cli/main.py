# Copyright (c) Syntropy Systems
"""Main CLI entry point for matrixrun."""

import typer

from matrixrun.cli.run import run
from matrixrun.cli.show import show

app = typer.Typer(
    name="matrixrun",
    help=(
        "Scenario matrix testing. Run one scenario across every combination "
        "of parameters, each run isolated."
    ),
    no_args_is_help=True,
    add_completion=False,
)

# Register commands
_ = app.command()(run)
_ = app.command()(show)


if __name__ == "__main__":
    app()
