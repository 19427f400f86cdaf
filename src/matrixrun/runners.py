# Copyright (c) Syntropy Systems
"""Scenario runner registry and the built-in command runner."""
from __future__ import annotations

import asyncio
import logging
import os
import sys
import time
from typing import TYPE_CHECKING

from matrixrun.errors import MatrixConfigError
from matrixrun.executor import ScenarioOutcome
from matrixrun.isolation import scoped_environment
from matrixrun.processes import ProcessRegistry, setup_pdeathsig

if TYPE_CHECKING:
    from collections.abc import Callable

    from matrixrun.executor import ScenarioRequest, ScenarioRunner
    from matrixrun.models.matrix import MatrixConfig

logger = logging.getLogger(__name__)

_registry: dict[str, Callable[[MatrixConfig, ProcessRegistry], ScenarioRunner]] = {}


def register_runner(
    name: str,
    factory: Callable[[MatrixConfig, ProcessRegistry], ScenarioRunner],
) -> None:
    """Make a scenario runner available under ``name``."""
    if not name:
        msg = "Runner name must be non-empty"
        raise ValueError(msg)
    _registry[name] = factory


def unregister_runner(name: str) -> None:
    _ = _registry.pop(name, None)


def available_runners() -> list[str]:
    return sorted(_registry)


def get_runner(
    name: str,
    config: MatrixConfig,
    processes: ProcessRegistry | None = None,
) -> ScenarioRunner:
    """Build the runner registered as ``name`` for ``config``."""
    factory = _registry.get(name)
    if factory is None:
        msg = f"Unknown scenario runner '{name}'"
        raise MatrixConfigError(
            msg,
            hint=f"Available runners: {', '.join(available_runners()) or 'none'}",
        )
    return factory(config, processes if processes is not None else ProcessRegistry())


def substitute_templates(argv: list[str], request: ScenarioRequest) -> list[str]:
    """Replace {{scenario_path}}, {{run_id}} and {{log_path}} in command argv."""
    replacements = {
        "{{scenario_path}}": request.scenario_path,
        "{{run_id}}": request.run_id,
        "{{log_path}}": str(request.context.log_path),
    }
    result: list[str] = []
    for arg in argv:
        for placeholder, value in replacements.items():
            arg = arg.replace(placeholder, value)  # noqa: PLW2901
        result.append(arg)
    return result


class CommandRunner:
    """Runs a scenario by spawning a command.

    The child gets the run's isolated environment, runs in its own process
    group, and succeeds when it exits with status 0. Its combined output is
    written to the run log and returned as execution output.
    """

    command_argv: list[str]
    processes: ProcessRegistry
    grace_period: float

    def __init__(
        self,
        command_argv: list[str],
        processes: ProcessRegistry,
        grace_period: float | None = None,
    ) -> None:
        if not command_argv:
            msg = "The command runner needs a non-empty command"
            raise MatrixConfigError(
                msg,
                hint="Add e.g. `command: [my-agent-test, '{{scenario_path}}']` to the matrix config.",
            )
        self.command_argv = command_argv
        self.processes = processes
        self.grace_period = grace_period if grace_period is not None else processes.grace_period

    async def __call__(self, request: ScenarioRequest) -> ScenarioOutcome:
        argv = substitute_templates(self.command_argv, request)
        env = os.environ.copy()
        env.update(request.environment)
        env["MATRIXRUN_SCENARIO_PATH"] = request.scenario_path
        if request.backend is not None:
            env["MATRIXRUN_AGENT_NAME"] = request.backend.agent_name

        started = time.monotonic()
        process = await asyncio.create_subprocess_exec(
            *argv,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            env=env,
            cwd=str(request.context.temp_dir),
            start_new_session=True,
            preexec_fn=setup_pdeathsig if sys.platform == "linux" else None,  # noqa: PLW1509
        )
        self.processes.register(request.run_id, process)
        try:
            stdout, _ = await process.communicate()
        except asyncio.CancelledError:
            _ = await asyncio.shield(self.processes.terminate(request.run_id, self.grace_period))
            raise
        finally:
            self.processes.unregister(request.run_id)

        output = stdout.decode("utf-8", errors="replace")
        with request.context.log_path.open("a") as f:
            _ = f.write(output)

        exit_code = process.returncode
        logger.debug("Command for %s exited with %s", request.run_id, exit_code)
        return ScenarioOutcome(
            success=exit_code == 0,
            execution_outputs=[output] if output else [],
            duration_ms=(time.monotonic() - started) * 1000,
            error=None if exit_code == 0 else f"Command exited with code {exit_code}",
        )


def _command_runner(config: MatrixConfig, processes: ProcessRegistry) -> ScenarioRunner:
    return CommandRunner(config.command or [], processes)


register_runner("command", _command_runner)


def with_scoped_environment(runner: ScenarioRunner) -> ScenarioRunner:
    """Wrap an in-process runner that reads its settings from ``os.environ``.

    The wrapped runner sees the run's isolated variables in ``os.environ``.
    Calls are serialized, so only one such run executes at a time.
    """

    async def scoped(request: ScenarioRequest) -> ScenarioOutcome:
        async with scoped_environment(request.environment):
            return await runner(request)

    return scoped
