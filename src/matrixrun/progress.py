# Copyright (c) Syntropy Systems
"""Progress tracking for matrix executions."""
from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping

    from matrixrun.models.base import JSONValue

ROLLING_WINDOW = 100
DEFAULT_MIN_RUNS_FOR_ETA = 3


class ProgressEventType(str, Enum):
    """Kinds of progress events."""

    MATRIX_STARTED = "MATRIX_STARTED"
    COMBINATION_STARTED = "COMBINATION_STARTED"
    RUN_STARTED = "RUN_STARTED"
    PROGRESS_UPDATE = "PROGRESS_UPDATE"
    RUN_COMPLETED = "RUN_COMPLETED"
    RUN_FAILED = "RUN_FAILED"
    TIMEOUT = "TIMEOUT"
    COMBINATION_COMPLETED = "COMBINATION_COMPLETED"
    MATRIX_COMPLETED = "MATRIX_COMPLETED"
    RESOURCE_WARNING = "RESOURCE_WARNING"
    ERROR = "ERROR"


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class RunProgress:
    run_id: str
    combination_id: str
    parameters: Mapping[str, JSONValue]
    start_time: datetime = field(default_factory=_now)
    completion_time: datetime | None = None
    progress: float = 0.0
    status: str = "Starting..."
    success: bool | None = None
    error: str | None = None
    duration: float = 0.0  # milliseconds
    timed_out: bool = False


@dataclass
class CombinationProgress:
    combination_id: str
    parameters: Mapping[str, JSONValue]
    total_runs: int
    completed_runs: int = 0
    successful_runs: int = 0
    failed_runs: int = 0
    success_rate: float = 0.0
    average_duration: float = 0.0
    start_time: datetime = field(default_factory=_now)
    completion_time: datetime | None = None

    @property
    def completed(self) -> bool:
        return self.completion_time is not None


@dataclass
class MatrixProgress:
    """Snapshot of the whole execution. Durations in milliseconds."""

    total_combinations: int
    total_runs: int
    completed_combinations: int
    completed_runs: int
    failed_runs: int
    successful_runs: int
    overall_progress: float
    average_run_duration: float
    estimated_time_remaining: float | None
    start_time: datetime
    estimated_completion_time: datetime | None


def format_millis(milliseconds: float) -> str:
    """Format a millisecond duration as ``850ms``, ``12s``, ``3m 5s`` or ``1h 2m``."""
    if milliseconds < 1000:  # noqa: PLR2004
        return f"{round(milliseconds)}ms"
    seconds = int(milliseconds // 1000)
    if seconds < 60:  # noqa: PLR2004
        return f"{seconds}s"
    minutes, seconds = divmod(seconds, 60)
    if minutes < 60:  # noqa: PLR2004
        return f"{minutes}m {seconds}s"
    hours, minutes = divmod(minutes, 60)
    return f"{hours}h {minutes}m"


class ProgressTracker:
    """Counts runs and combinations and reports every transition.

    Completing a run twice, or a run that was never started, does nothing, so
    ``completed_runs == successful_runs + failed_runs`` always holds.
    """

    total_combinations: int
    runs_per_combination: int
    show_parameters: bool
    calculate_eta: bool
    min_runs_for_eta: int
    start_time: datetime
    _on_progress: Callable[[str, ProgressEventType, object], None] | None
    _on_combination_complete: Callable[[CombinationProgress], None] | None
    _combinations: dict[str, CombinationProgress]
    _runs: dict[str, RunProgress]
    _durations: deque[float]

    def __init__(
        self,
        total_combinations: int,
        runs_per_combination: int,
        on_progress: Callable[[str, ProgressEventType, object], None] | None = None,
        on_combination_complete: Callable[[CombinationProgress], None] | None = None,
        show_parameters: bool = True,  # noqa: FBT001, FBT002
        calculate_eta: bool = True,  # noqa: FBT001, FBT002
        min_runs_for_eta: int = DEFAULT_MIN_RUNS_FOR_ETA,
    ) -> None:
        self.total_combinations = total_combinations
        self.runs_per_combination = runs_per_combination
        self.show_parameters = show_parameters
        self.calculate_eta = calculate_eta
        self.min_runs_for_eta = min_runs_for_eta
        self.start_time = _now()
        self._on_progress = on_progress
        self._on_combination_complete = on_combination_complete
        self._combinations = {}
        self._runs = {}
        self._durations = deque(maxlen=ROLLING_WINDOW)

    @property
    def total_runs(self) -> int:
        return self.total_combinations * self.runs_per_combination

    def _emit(self, message: str, event_type: ProgressEventType, data: object = None) -> None:
        if self._on_progress is not None:
            self._on_progress(message, event_type, data)

    def _combination_number(self, combination_id: str) -> int:
        return list(self._combinations).index(combination_id) + 1

    def start_matrix(self) -> None:
        self.start_time = _now()
        self._emit(
            f"Starting matrix: {self.total_combinations} combinations, {self.total_runs} runs",
            ProgressEventType.MATRIX_STARTED,
            {"totalCombinations": self.total_combinations, "totalRuns": self.total_runs},
        )

    def start_combination(self, combination_id: str, parameters: Mapping[str, JSONValue]) -> None:
        if combination_id not in self._combinations:
            self._combinations[combination_id] = CombinationProgress(
                combination_id=combination_id,
                parameters=parameters,
                total_runs=self.runs_per_combination,
            )
        number = self._combination_number(combination_id)
        self._emit(
            f"Starting combination {number}/{self.total_combinations}",
            ProgressEventType.COMBINATION_STARTED,
            {"combinationId": combination_id, "parameters": dict(parameters)},
        )

    def start_run(
        self,
        run_id: str,
        combination_id: str,
        parameters: Mapping[str, JSONValue],
    ) -> None:
        """Start tracking a run."""
        combination = self._combinations.get(combination_id)
        if combination is None:
            combination = CombinationProgress(
                combination_id=combination_id,
                parameters=parameters,
                total_runs=self.runs_per_combination,
            )
            self._combinations[combination_id] = combination
        self._runs[run_id] = RunProgress(
            run_id=run_id,
            combination_id=combination_id,
            parameters=parameters,
        )

        run_number = self.get_overall_progress().completed_runs + 1
        parameter_info = ""
        if self.show_parameters and parameters:
            pairs = ", ".join(f"{key}={value}" for key, value in parameters.items())
            parameter_info = f" ({pairs})"
        message = (
            f"Executing run {run_number} of {self.total_runs} "
            f"(Combination {self._combination_number(combination_id)}/{self.total_combinations}, "
            f"Run {combination.completed_runs + 1}/{self.runs_per_combination}){parameter_info}"
        )
        self._emit(
            message,
            ProgressEventType.RUN_STARTED,
            {
                "runId": run_id,
                "combinationId": combination_id,
                "runNumber": run_number,
                "totalRuns": self.total_runs,
            },
        )

    def update_run_progress(self, run_id: str, progress: float, status: str) -> None:
        run = self._runs.get(run_id)
        if run is None or run.completion_time is not None:
            return
        run.progress = min(max(progress, 0.0), 1.0)
        run.status = status
        self._emit(
            f"Run {run_id}: {round(run.progress * 100)}% - {status}",
            ProgressEventType.PROGRESS_UPDATE,
            {"runId": run_id, "progress": run.progress, "status": status},
        )

    def complete_run(
        self,
        run_id: str,
        success: bool,  # noqa: FBT001
        duration: float,
        error: str | None = None,
    ) -> None:
        """Record a finished run. ``duration`` is in milliseconds."""
        run = self._runs.get(run_id)
        if run is None or run.completion_time is not None:
            return

        run.completion_time = _now()
        run.success = success
        run.duration = duration
        run.error = error
        run.progress = 1.0

        combination = self._combinations[run.combination_id]
        combination.completed_runs += 1
        if success:
            combination.successful_runs += 1
        else:
            combination.failed_runs += 1
        combination.success_rate = combination.successful_runs / combination.completed_runs
        finished = [
            r.duration
            for r in self._runs.values()
            if r.combination_id == run.combination_id and r.completion_time is not None
        ]
        combination.average_duration = sum(finished) / len(finished)

        self._durations.append(duration)

        completed = self.get_overall_progress().completed_runs
        if success:
            self._emit(
                f"Run {completed} completed successfully in {format_millis(duration)}",
                ProgressEventType.RUN_COMPLETED,
                {"runId": run_id, "duration": duration, "success": True},
            )
        else:
            self._emit(
                f"Run {completed} failed: {error or 'Unknown error'}",
                ProgressEventType.RUN_FAILED,
                {"runId": run_id, "duration": duration, "success": False, "error": error},
            )

        if self.calculate_eta and len(self._durations) >= self.min_runs_for_eta:
            self._emit_eta()

        if combination.completed_runs >= combination.total_runs:
            self.complete_combination(run.combination_id)

    def timeout_run(self, run_id: str, timeout_ms: float) -> None:
        """Record a run that ran out of time. Counts as a failure."""
        run = self._runs.get(run_id)
        if run is None or run.completion_time is not None:
            return
        run.timed_out = True
        seconds = timeout_ms / 1000
        self.complete_run(run_id, False, timeout_ms, f"Timeout after {seconds:g} seconds")
        self._emit(
            f"Run {run_id} timed out after {seconds:g} seconds",
            ProgressEventType.TIMEOUT,
            {"runId": run_id, "timeoutMs": timeout_ms},
        )

    def complete_combination(self, combination_id: str) -> None:
        """Mark a combination finished. Only the first call has any effect."""
        combination = self._combinations.get(combination_id)
        if combination is None or combination.completed:
            return
        combination.completion_time = _now()

        message = (
            f"Combination {self._combination_number(combination_id)}/{self.total_combinations} "
            f"completed ({round(combination.success_rate * 100)}% success rate, "
            f"avg: {format_millis(combination.average_duration)})"
        )
        self._emit(message, ProgressEventType.COMBINATION_COMPLETED, combination)
        if self._on_combination_complete is not None:
            self._on_combination_complete(combination)

    def complete_matrix(self) -> None:
        progress = self.get_overall_progress()
        self._emit(
            f"Matrix completed: {progress.successful_runs}/{progress.total_runs} runs succeeded",
            ProgressEventType.MATRIX_COMPLETED,
            progress,
        )

    def report_resource_warning(self, resource: str, usage: float, message: str) -> None:
        self._emit(
            f"Resource warning: {resource} at {usage:.1f}% - {message}",
            ProgressEventType.RESOURCE_WARNING,
            {"resource": resource, "usage": usage, "message": message},
        )

    def report_error(self, message: str, data: object = None) -> None:
        self._emit(message, ProgressEventType.ERROR, data)

    def get_overall_progress(self) -> MatrixProgress:
        runs = list(self._runs.values())
        completed = sum(1 for r in runs if r.completion_time is not None)
        successful = sum(1 for r in runs if r.success is True)
        failed = sum(1 for r in runs if r.success is False)
        completed_combinations = sum(1 for c in self._combinations.values() if c.completed)
        total = self.total_runs

        average = sum(self._durations) / len(self._durations) if self._durations else 0.0
        remaining = total - completed
        eta: float | None = None
        if len(self._durations) >= self.min_runs_for_eta and remaining > 0 and average > 0:
            eta = remaining * average

        return MatrixProgress(
            total_combinations=self.total_combinations,
            total_runs=total,
            completed_combinations=completed_combinations,
            completed_runs=completed,
            failed_runs=failed,
            successful_runs=successful,
            overall_progress=completed / total if total > 0 else 0.0,
            average_run_duration=average,
            estimated_time_remaining=eta,
            start_time=self.start_time,
            estimated_completion_time=(
                _now() + timedelta(milliseconds=eta) if eta is not None else None
            ),
        )

    def has_run(self, run_id: str) -> bool:
        return run_id in self._runs

    def get_combination_progress(self, combination_id: str) -> CombinationProgress | None:
        return self._combinations.get(combination_id)

    def export_progress_data(self) -> dict[str, object]:
        """Everything tracked so far, for reporting."""
        overall = self.get_overall_progress()
        done = overall.completed_runs
        return {
            "overall_progress": overall,
            "combinations": dict(self._combinations),
            "runs": dict(self._runs),
            "start_time": self.start_time,
            "statistics": {
                "average_run_duration": overall.average_run_duration,
                "success_rate": overall.successful_runs / done if done else 0.0,
                "failure_rate": overall.failed_runs / done if done else 0.0,
                "total_duration": (_now() - self.start_time).total_seconds() * 1000,
            },
        }

    def _emit_eta(self) -> None:
        progress = self.get_overall_progress()
        if progress.estimated_time_remaining is None:
            return
        finish = progress.estimated_completion_time
        finish_text = finish.astimezone().strftime("%H:%M:%S") if finish else "unknown"
        self._emit(
            f"ETA: {format_millis(progress.estimated_time_remaining)} (completion: {finish_text})",
            ProgressEventType.PROGRESS_UPDATE,
            {
                "estimatedTimeRemaining": progress.estimated_time_remaining,
                "estimatedCompletionTime": finish,
            },
        )
