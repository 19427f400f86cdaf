# Copyright (c) Syntropy Systems
"""Matrix execution: scheduling runs under a concurrency cap."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING

from matrixrun.aggregator import ResultAggregator, build_execution_summary
from matrixrun.config import MatrixSettings
from matrixrun.errors import IsolationError, MatrixConfigError, RunFailedError, RunTimeoutError
from matrixrun.executor import BackendLease, execute_one
from matrixrun.isolation import (
    create_isolated_environment,
    estimate_run_disk_space,
    generate_run_id,
    validate_isolation_context,
)
from matrixrun.models.matrix import load_base_scenario
from matrixrun.models.run import RunMetrics, RunResult
from matrixrun.progress import ProgressTracker
from matrixrun.system_metrics import ResourceMonitor, ResourceThresholds, get_system_resources

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Mapping, Sequence

    from matrixrun.executor import Backend, ScenarioRunner
    from matrixrun.isolation import IsolationContext
    from matrixrun.models.matrix import MatrixCombination, MatrixConfig
    from matrixrun.models.run import MatrixExecutionSummary
    from matrixrun.progress import CombinationProgress, ProgressEventType
    from matrixrun.system_metrics import ResourceAlert, SystemResources

logger = logging.getLogger(__name__)


class RunState(str, Enum):
    PENDING = "pending"
    ISOLATING = "isolating"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed-out"
    CLEANED_UP = "cleaned-up"


class MatrixPhase(str, Enum):
    INITIALIZING = "initializing"
    EXECUTING = "executing"
    COMPLETED = "completed"


@dataclass
class ExecutionOptions:
    """How a matrix is executed."""

    output_dir: Path
    max_parallel: int = 1
    run_timeout: float = 300.0
    continue_on_failure: bool = True
    shared_backend: bool = True
    resource_check_interval: float = 5.0
    max_history_size: int = 200
    min_runs_for_eta: int = 3
    thresholds: ResourceThresholds = field(default_factory=ResourceThresholds)
    on_progress: Callable[[str, ProgressEventType, object], None] | None = None
    on_combination_complete: Callable[[CombinationProgress], None] | None = None
    on_resource_warning: Callable[[ResourceAlert], None] | None = None
    on_resource_update: Callable[[SystemResources], None] | None = None
    on_recommendation: Callable[[str], None] | None = None
    resource_sampler: Callable[[], SystemResources] | None = None

    def __post_init__(self) -> None:
        if self.max_parallel < 1:
            msg = "max_parallel must be at least 1"
            raise MatrixConfigError(msg, hint="Use --parallel 1 or higher.")
        if self.run_timeout <= 0:
            msg = "run_timeout must be positive"
            raise MatrixConfigError(msg, hint="Use --timeout with a positive number of seconds.")

    @classmethod
    def from_settings(cls, settings: MatrixSettings, output_dir: Path) -> ExecutionOptions:
        t = settings.thresholds
        return cls(
            output_dir=output_dir,
            max_parallel=settings.max_parallel,
            run_timeout=settings.run_timeout,
            continue_on_failure=settings.continue_on_failure,
            shared_backend=settings.shared_backend,
            resource_check_interval=settings.resource_check_interval,
            max_history_size=settings.max_history_size,
            min_runs_for_eta=settings.min_runs_for_eta,
            thresholds=ResourceThresholds(
                memory_warning=t.memory_warning,
                memory_critical=t.memory_critical,
                disk_warning=t.disk_warning,
                disk_critical=t.disk_critical,
                cpu_warning=t.cpu_warning,
                cpu_critical=t.cpu_critical,
            ),
        )


@dataclass
class ActiveRun:
    run_id: str
    combination_id: str
    state: RunState = RunState.PENDING
    context: IsolationContext | None = None


class MatrixOrchestrator:
    """Runs every combination of a matrix, each repetition in isolation.

    At most ``max_parallel`` runs are in flight. A failing run becomes a
    failed RunResult and execution continues, unless ``continue_on_failure``
    is off, in which case no new runs start and the first failure is raised
    once in-flight runs have settled and teardown is done.
    """

    config: MatrixConfig
    combinations: list[MatrixCombination]
    options: ExecutionOptions
    runner: ScenarioRunner
    backend_factory: Callable[[], Awaitable[Backend]] | None
    phase: MatrixPhase
    results: list[RunResult]
    run_states: dict[str, RunState]
    summary: MatrixExecutionSummary | None
    peak_in_flight: int
    progress: ProgressTracker
    monitor: ResourceMonitor
    aggregator: ResultAggregator
    _base_scenario: Mapping[str, object] | None
    _in_flight: set[asyncio.Task[None]]
    _active: dict[str, ActiveRun]
    _sequence: int
    _failure: Exception | None
    _shared_backend: Backend | None

    def __init__(
        self,
        config: MatrixConfig,
        combinations: Sequence[MatrixCombination],
        options: ExecutionOptions,
        runner: ScenarioRunner,
        backend_factory: Callable[[], Awaitable[Backend]] | None = None,
        base_scenario: Mapping[str, object] | None = None,
    ) -> None:
        self.config = config
        self.combinations = list(combinations)
        self.options = options
        self.runner = runner
        self.backend_factory = backend_factory
        self.phase = MatrixPhase.INITIALIZING
        self.results = []
        self.run_states = {}
        self.summary = None
        self.peak_in_flight = 0
        self._base_scenario = base_scenario
        self._in_flight = set()
        self._active = {}
        self._sequence = 0
        self._failure = None
        self._shared_backend = None

        self.progress = ProgressTracker(
            total_combinations=len(self.combinations),
            runs_per_combination=config.runs_per_combination,
            on_progress=options.on_progress,
            on_combination_complete=options.on_combination_complete,
            min_runs_for_eta=options.min_runs_for_eta,
        )
        self.monitor = ResourceMonitor(
            thresholds=options.thresholds,
            on_alert=self._on_alert,
            on_update=options.on_resource_update,
            on_recommendation=options.on_recommendation,
            check_interval=options.resource_check_interval,
            max_history_size=options.max_history_size,
            sampler=options.resource_sampler,
        )
        self.aggregator = ResultAggregator(options.output_dir)

    @property
    def total_runs(self) -> int:
        return len(self.combinations) * self.config.runs_per_combination

    def _on_alert(self, alert: ResourceAlert) -> None:
        self.progress.report_resource_warning(alert.resource, alert.current_usage, alert.message)
        if self.options.on_resource_warning is not None:
            self.options.on_resource_warning(alert)

    def _initialize(self) -> Mapping[str, object]:
        base = self._base_scenario
        if base is None:
            base = load_base_scenario(Path(self.config.base_scenario))
        try:
            self.aggregator.prepare()
        except OSError as e:
            msg = f"Cannot write to output directory '{self.options.output_dir}': {e}"
            raise MatrixConfigError(msg, hint="Choose a writable --output-dir.") from e
        _ = self.aggregator.save_config(self.config)

        # Advisory only: a low-disk alert is raised but execution proceeds
        concurrent = min(self.options.max_parallel, max(self.total_runs, 1))
        _ = self.monitor.check_disk_space(estimate_run_disk_space(base) * concurrent)
        return base

    async def run(self) -> list[RunResult]:
        """Execute the whole matrix and return every RunResult."""
        base = self._initialize()
        start_time = datetime.now(timezone.utc)
        self.progress.start_matrix()
        self.monitor.start()
        self.phase = MatrixPhase.EXECUTING
        try:
            if (
                self.options.shared_backend
                and self.backend_factory is not None
                and self.total_runs > 1
            ):
                self._shared_backend = await self.backend_factory()
                logger.info("Started shared backend for %d runs", self.total_runs)

            for combination in self.combinations:
                if self._failure is not None:
                    break
                await self._run_combination(combination, base)

            if self._in_flight:
                _ = await asyncio.gather(*self._in_flight, return_exceptions=True)
        finally:
            await self._teardown()
            self._finalize(start_time)

        if self._failure is not None:
            raise self._failure
        return list(self.results)

    async def _run_combination(
        self,
        combination: MatrixCombination,
        base: Mapping[str, object],
    ) -> None:
        self.progress.start_combination(combination.id, combination.parameters)
        tasks: list[asyncio.Task[None]] = []
        for _ in range(self.config.runs_per_combination):
            await self._wait_for_slot()
            if self._failure is not None:
                break
            run_id = generate_run_id(self._sequence)
            self._sequence += 1
            self._active[run_id] = ActiveRun(run_id=run_id, combination_id=combination.id)
            self._set_state(run_id, RunState.PENDING)
            task = asyncio.get_running_loop().create_task(
                self._run_one(run_id, combination, base), name=run_id
            )
            self._in_flight.add(task)
            task.add_done_callback(self._in_flight.discard)
            self.peak_in_flight = max(self.peak_in_flight, len(self._in_flight))
            tasks.append(task)

        if tasks:
            _ = await asyncio.gather(*tasks, return_exceptions=True)
        # A combination cut short by fail-fast is not complete
        if len(tasks) == self.config.runs_per_combination:
            self.progress.complete_combination(combination.id)

    async def _wait_for_slot(self) -> None:
        while len(self._in_flight) >= self.options.max_parallel:
            done, _ = await asyncio.wait(self._in_flight, return_when=asyncio.FIRST_COMPLETED)
            self._in_flight -= done

    def _set_state(self, run_id: str, state: RunState) -> None:
        self.run_states[run_id] = state
        active = self._active.get(run_id)
        if active is not None:
            active.state = state

    async def _run_one(
        self,
        run_id: str,
        combination: MatrixCombination,
        base: Mapping[str, object],
    ) -> None:
        context: IsolationContext | None = None
        try:
            self._set_state(run_id, RunState.ISOLATING)
            context = create_isolated_environment(run_id, self.options.output_dir)
            if not validate_isolation_context(context):
                context.cleanup()
                msg = f"Workspace for {run_id} is incomplete"
                raise IsolationError(msg)
            self._active[run_id].context = context

            self._set_state(run_id, RunState.RUNNING)
            lease = None
            if self._shared_backend is not None:
                lease = BackendLease(
                    backend=self._shared_backend,
                    agent_name=f"agent-{run_id}",
                    shared=True,
                )
            result = await execute_one(
                run_id,
                combination,
                base,
                context,
                timeout=self.options.run_timeout,
                runner=self.runner,
                backend=lease,
                backend_factory=None if lease is not None else self.backend_factory,
                progress=self.progress,
            )
        except Exception as e:  # noqa: BLE001
            result = self._failed_result(run_id, combination, e)

        if result.timed_out:
            self._set_state(run_id, RunState.TIMED_OUT)
        else:
            self._set_state(run_id, RunState.SUCCEEDED if result.success else RunState.FAILED)

        self.results.append(result)
        _ = self.aggregator.save_run_result(result)
        if context is not None:
            context.cleanup()
        self._set_state(run_id, RunState.CLEANED_UP)
        _ = self._active.pop(run_id, None)

        if not result.success and not self.options.continue_on_failure and self._failure is None:
            if result.timed_out:
                self._failure = RunTimeoutError(run_id, self.options.run_timeout)
            else:
                self._failure = RunFailedError(run_id, result.error)

    def _failed_result(
        self,
        run_id: str,
        combination: MatrixCombination,
        error: Exception,
    ) -> RunResult:
        reason = str(error) or type(error).__name__
        if isinstance(error, IsolationError):
            logger.warning("Isolation failed for %s: %s", run_id, reason)
        else:
            logger.exception("Run %s crashed", run_id, exc_info=error)

        # Runs that never reached the executor are unknown to the tracker
        if not self.progress.has_run(run_id):
            self.progress.start_run(run_id, combination.id, combination.parameters)
        self.progress.complete_run(run_id, False, 0.0, reason)

        metrics = RunMetrics()
        try:
            snapshot = get_system_resources(self.options.output_dir, sample_cpu=False)
            metrics = RunMetrics(cpu_usage=snapshot.cpu_usage)
        except Exception as exc:  # noqa: BLE001
            logger.debug("Resource snapshot failed for %s: %s", run_id, exc)
        now = datetime.now(timezone.utc)
        return RunResult(
            run_id=run_id,
            combination_id=combination.id,
            parameters=dict(combination.parameters),
            start_time=now,
            end_time=now,
            duration=0.0,
            success=False,
            error=reason,
            metrics=metrics,
        )

    async def _teardown(self) -> None:
        for task in list(self._in_flight):
            _ = task.cancel()
        if self._in_flight:
            _ = await asyncio.gather(*self._in_flight, return_exceptions=True)

        self.monitor.stop()

        if self._shared_backend is not None:
            try:
                await self._shared_backend.aclose()
            except Exception as exc:
                logger.exception("Failed to stop shared backend", exc_info=exc)
            self._shared_backend = None

        for active in list(self._active.values()):
            if active.context is not None:
                active.context.cleanup()
            self._set_state(active.run_id, RunState.CLEANED_UP)
        self._active.clear()

    def _finalize(self, start_time: datetime) -> None:
        end_time = datetime.now(timezone.utc)
        self.summary = build_execution_summary(
            self.combinations,
            self.results,
            start_time,
            end_time,
            self.monitor.get_statistics(),
        )
        _ = self.aggregator.save_summary(self.summary)
        self.phase = MatrixPhase.COMPLETED
        self.progress.complete_matrix()


async def execute_matrix_runs(
    config: MatrixConfig,
    combinations: Sequence[MatrixCombination],
    options: ExecutionOptions,
    runner: ScenarioRunner,
    backend_factory: Callable[[], Awaitable[Backend]] | None = None,
    base_scenario: Mapping[str, object] | None = None,
) -> list[RunResult]:
    """Execute a matrix and return every RunResult."""
    orchestrator = MatrixOrchestrator(
        config,
        combinations,
        options,
        runner,
        backend_factory=backend_factory,
        base_scenario=base_scenario,
    )
    return await orchestrator.run()
