# Copyright (c) Syntropy Systems
"""Per-run isolated workspaces.

Every run gets its own directory under ``<output>/temp/<run_id>/`` holding a
database directory, a log file and the materialized scenario. Runs never share
any of these, and a workspace is removed once its run has been recorded.
"""
from __future__ import annotations

import asyncio
import contextlib
import itertools
import logging
import math
import os
import secrets
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, cast

import yaml

from matrixrun.errors import IsolationError
from matrixrun.overrides import apply_overrides

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Mapping

    from matrixrun.models.base import JSONValue

logger = logging.getLogger(__name__)

TEMP_DIR_NAME = "temp"
BASE_RUN_DISK_ESTIMATE = 50 * 1024 * 1024

_run_sequence = itertools.count()
_environment_lock: asyncio.Lock | None = None


def reset_run_sequence() -> None:
    """Restart run numbering at zero."""
    global _run_sequence  # noqa: PLW0603
    _run_sequence = itertools.count()


def generate_run_id(sequence: int | None = None) -> str:
    """Return a unique run id of the form ``run-<seq>-<8 hex>``.

    The random suffix keeps ids unique even when sequences repeat.
    """
    if sequence is None:
        sequence = next(_run_sequence)
    return f"run-{sequence:03d}-{secrets.token_hex(4)}"


@dataclass
class IsolationContext:
    """Paths owned by a single run."""

    run_id: str
    temp_dir: Path
    db_path: Path
    log_path: Path
    scenario_path: Path
    _cleaned: bool = field(default=False, repr=False)

    @property
    def cleaned(self) -> bool:
        return self._cleaned

    def cleanup(self) -> None:
        """Remove the workspace. Safe to call more than once."""
        if self._cleaned:
            return
        self._cleaned = True
        try:
            shutil.rmtree(self.temp_dir)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning("Failed to clean up isolated environment %s: %s", self.run_id, e)


def create_isolated_environment(run_id: str, output_root: Path) -> IsolationContext:
    """Create the workspace for ``run_id`` under ``output_root``."""
    temp_dir = output_root / TEMP_DIR_NAME / run_id
    context = IsolationContext(
        run_id=run_id,
        temp_dir=temp_dir,
        db_path=temp_dir / "database",
        log_path=temp_dir / "logs" / "run.log",
        scenario_path=temp_dir / "scenario.yaml",
    )
    try:
        context.db_path.mkdir(parents=True, exist_ok=True)
        context.log_path.parent.mkdir(parents=True, exist_ok=True)
        context.log_path.touch()
    except OSError as e:
        context.cleanup()
        msg = f"Failed to create isolated environment for {run_id}: {e}"
        raise IsolationError(msg) from e
    logger.debug("Created isolated environment %s at %s", run_id, temp_dir)
    return context


def validate_isolation_context(context: IsolationContext) -> bool:
    """Return True if every workspace directory exists."""
    return (
        context.temp_dir.is_dir()
        and context.db_path.is_dir()
        and context.log_path.parent.is_dir()
    )


def isolated_environment_variables(context: IsolationContext) -> dict[str, str]:
    """Environment overrides pointing a child at the run's own workspace.

    Only the overrides are returned; ``os.environ`` is not read or changed.
    """
    temp_dir = str(context.temp_dir)
    return {
        "DATABASE_URL": f"file://{context.db_path}/database.db",
        "PGLITE_DATA_DIR": str(context.db_path),
        "TMPDIR": temp_dir,
        "TEMP": temp_dir,
        "TMP": temp_dir,
        "LOG_FILE": str(context.log_path),
        "LOG_LEVEL": "debug",
        "MATRIXRUN_ISOLATED_RUN": "true",
        "MATRIXRUN_RUN_ID": context.run_id,
        "DISABLE_GLOBAL_CACHE": "true",
    }


def _get_environment_lock() -> asyncio.Lock:
    global _environment_lock  # noqa: PLW0603
    if _environment_lock is None:
        _environment_lock = asyncio.Lock()
    return _environment_lock


@contextlib.asynccontextmanager
async def scoped_environment(overrides: Mapping[str, str]) -> AsyncIterator[None]:
    """Apply ``overrides`` to ``os.environ`` for the duration of the block.

    Only one run at a time may be inside a scoped environment. Previous values
    are restored on exit, including on error.
    """
    async with _get_environment_lock():
        previous = {key: os.environ.get(key) for key in overrides}
        os.environ.update(overrides)
        try:
            yield
        finally:
            for key, value in previous.items():
                if value is None:
                    _ = os.environ.pop(key, None)
                else:
                    os.environ[key] = value


def write_scenario(
    context: IsolationContext,
    base_scenario: Mapping[str, object],
    parameters: Mapping[str, JSONValue],
) -> dict[str, object]:
    """Write the scenario with ``parameters`` applied and return it."""
    scenario = apply_overrides(base_scenario, parameters)
    with context.scenario_path.open("w") as f:
        yaml.safe_dump(scenario, f, sort_keys=False)
    return scenario


def measure_directory(path: Path) -> tuple[int, int]:
    """Return (total bytes, file count) under ``path``.

    Files that vanish while walking are skipped.
    """
    total = 0
    count = 0
    if not path.exists():
        return 0, 0
    for entry in path.rglob("*"):
        try:
            if entry.is_file():
                total += entry.stat().st_size
                count += 1
        except OSError:
            continue
    return total, count


def estimate_run_disk_space(base_scenario: Mapping[str, object]) -> int:
    """Rough upper bound on the bytes one run writes."""
    steps = base_scenario.get("run")
    step_count = 1
    evaluation_count = 0
    if isinstance(steps, list) and steps:
        step_list = cast("list[object]", steps)
        step_count = len(step_list)
        for step in step_list:
            if isinstance(step, dict):
                evaluations = cast("dict[str, object]", step).get("evaluations")
                if isinstance(evaluations, list):
                    evaluation_count += len(cast("list[object]", evaluations))
    multiplier = 1 + step_count * 0.1 + evaluation_count * 0.05
    return math.ceil(BASE_RUN_DISK_ESTIMATE * multiplier)


def check_output_writable(output_root: Path) -> bool:
    """Return True if ``output_root`` exists or can be created."""
    try:
        output_root.mkdir(parents=True, exist_ok=True)
    except OSError:
        return False
    return os.access(output_root, os.W_OK)
