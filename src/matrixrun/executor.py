# Copyright (c) Syntropy Systems
"""Execution of a single matrix run inside its isolated workspace."""
from __future__ import annotations

import asyncio
import logging
import math
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Protocol

from matrixrun.errors import RunTimeoutError
from matrixrun.isolation import isolated_environment_variables, measure_directory, write_scenario
from matrixrun.models.run import RunMetrics, RunResult
from matrixrun.system_metrics import get_system_resources

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Mapping

    from matrixrun.isolation import IsolationContext
    from matrixrun.models.base import JSONValue
    from matrixrun.models.matrix import MatrixCombination
    from matrixrun.progress import ProgressTracker
    from matrixrun.system_metrics import SystemResources

logger = logging.getLogger(__name__)

CHARS_PER_TOKEN = 4


class Backend(Protocol):
    """A long-lived service scenarios talk to, e.g. an agent server."""

    async def aclose(self) -> None: ...


@dataclass
class BackendLease:
    """A backend handed to one run under a unique agent name.

    Only the owner of a lease (``shared`` is False) may close the backend.
    """

    backend: Backend
    agent_name: str
    shared: bool


@dataclass
class ScenarioRequest:
    """Everything a scenario runner needs for one run."""

    run_id: str
    combination_id: str
    scenario: dict[str, object]
    scenario_path: str
    context: IsolationContext
    environment: dict[str, str]
    parameters: Mapping[str, JSONValue]
    backend: BackendLease | None = None
    report_progress: Callable[[float, str], None] | None = None


@dataclass
class ScenarioOutcome:
    """What a scenario runner reports back."""

    success: bool
    evaluation_results: list[JSONValue] = field(default_factory=list)
    execution_outputs: list[str] = field(default_factory=list)
    token_count_hint: int | None = None
    duration_ms: float = 0.0
    error: str | None = None

    def to_payload(self) -> dict[str, JSONValue]:
        return {
            "success": self.success,
            "evaluationResults": self.evaluation_results,
            "executionOutputs": list(self.execution_outputs),
            "durationMs": self.duration_ms,
        }


class ScenarioRunner(Protocol):
    async def __call__(self, request: ScenarioRequest) -> ScenarioOutcome: ...


def estimate_tokens(outputs: list[str]) -> int:
    """Approximate token count of text output."""
    return sum(math.ceil(len(text) / CHARS_PER_TOKEN) for text in outputs)


def _snapshot(context: IsolationContext) -> SystemResources | None:
    try:
        return get_system_resources(context.temp_dir.parent, sample_cpu=False)
    except Exception as exc:  # noqa: BLE001
        logger.debug("Resource snapshot failed for %s: %s", context.run_id, exc)
        return None


def _metrics(
    context: IsolationContext,
    before: SystemResources | None,
    outcome: ScenarioOutcome | None,
) -> RunMetrics:
    after = _snapshot(context)
    memory_delta = 0.0
    cpu = 0.0
    if after is not None:
        cpu = after.cpu_usage
        if before is not None:
            memory_delta = after.memory_usage - before.memory_usage
    disk_bytes, _ = measure_directory(context.temp_dir)
    tokens = 0
    if outcome is not None:
        if outcome.token_count_hint is not None:
            tokens = outcome.token_count_hint
        else:
            tokens = estimate_tokens(outcome.execution_outputs)
    return RunMetrics(
        memory_usage=memory_delta,
        disk_usage=disk_bytes,
        token_count=tokens,
        cpu_usage=cpu,
    )


async def _run_with_deadline(
    run_id: str,
    runner: ScenarioRunner,
    request: ScenarioRequest,
    timeout: float,
) -> ScenarioOutcome:
    """Await the runner, raising RunTimeoutError only if the deadline passes.

    A TimeoutError raised by the runner itself propagates unchanged.
    """
    task = asyncio.get_running_loop().create_task(runner(request), name=f"{run_id}-scenario")
    try:
        done, _ = await asyncio.wait({task}, timeout=timeout)
    except asyncio.CancelledError:
        _ = task.cancel()
        _ = await asyncio.gather(task, return_exceptions=True)
        raise
    if not done:
        _ = task.cancel()
        _ = await asyncio.gather(task, return_exceptions=True)
        raise RunTimeoutError(run_id, timeout)
    return task.result()


async def execute_one(
    run_id: str,
    combination: MatrixCombination,
    base_scenario: Mapping[str, object],
    context: IsolationContext,
    timeout: float,
    runner: ScenarioRunner,
    backend: BackendLease | None = None,
    backend_factory: Callable[[], Awaitable[Backend]] | None = None,
    progress: ProgressTracker | None = None,
) -> RunResult:
    """Run one scenario and return its result.

    Problems inside the run (runner errors, timeouts, a failing backend) are
    reported in the result rather than raised. The workspace is always cleaned
    up before returning.
    """
    start_time = datetime.now(timezone.utc)
    started = time.monotonic()
    before: SystemResources | None = None
    outcome: ScenarioOutcome | None = None
    error: str | None = None
    timed_out = False
    own_backend: Backend | None = None

    if progress is not None:
        progress.start_run(run_id, combination.id, combination.parameters)

    try:
        scenario = write_scenario(context, base_scenario, combination.parameters)
        before = _snapshot(context)

        if backend is None and backend_factory is not None:
            own_backend = await backend_factory()
            backend = BackendLease(backend=own_backend, agent_name=f"agent-{run_id}", shared=False)

        def report(fraction: float, status: str) -> None:
            if progress is not None:
                progress.update_run_progress(run_id, fraction, status)

        request = ScenarioRequest(
            run_id=run_id,
            combination_id=combination.id,
            scenario=scenario,
            scenario_path=str(context.scenario_path),
            context=context,
            environment=isolated_environment_variables(context),
            parameters=dict(combination.parameters),
            backend=backend,
            report_progress=report,
        )
        outcome = await _run_with_deadline(run_id, runner, request, timeout)
        if not outcome.success:
            error = outcome.error or "Scenario reported failure"
    except asyncio.CancelledError:
        context.cleanup()
        raise
    except RunTimeoutError as e:
        timed_out = True
        error = str(e)
        logger.warning("%s", error)
    except Exception as e:
        error = str(e) or type(e).__name__
        logger.warning("Run %s failed: %s", run_id, error)
    finally:
        if own_backend is not None:
            try:
                await own_backend.aclose()
            except Exception as exc:
                logger.exception("Failed to stop backend for %s", run_id, exc_info=exc)

    duration_ms = (time.monotonic() - started) * 1000
    success = error is None and outcome is not None and outcome.success
    try:
        metrics = _metrics(context, before, outcome if success else None)
    except Exception as exc:  # noqa: BLE001
        logger.debug("Metric collection failed for %s: %s", run_id, exc)
        metrics = RunMetrics()
    finally:
        context.cleanup()

    if progress is not None:
        if timed_out:
            progress.timeout_run(run_id, timeout * 1000)
        else:
            progress.complete_run(run_id, success, duration_ms, error)

    return RunResult(
        run_id=run_id,
        combination_id=combination.id,
        parameters=dict(combination.parameters),
        start_time=start_time,
        end_time=datetime.now(timezone.utc),
        duration=duration_ms,
        success=success,
        scenario_result=outcome.to_payload() if outcome is not None else None,
        error=error,
        timed_out=timed_out,
        metrics=metrics,
    )
