# Copyright (c) Syntropy Systems
"""Pydantic models for run results and matrix summaries."""

from __future__ import annotations

from datetime import datetime

from pydantic import Field

from .base import JSONValue, ReportModel


class RunMetrics(ReportModel):
    """Resource figures collected for one run."""

    memory_usage: float = 0.0  # percentage points gained during the run
    disk_usage: int = 0  # bytes written to the run workspace
    token_count: int = 0
    cpu_usage: float = 0.0


class RunResult(ReportModel):
    """Outcome of one run attempt. Written to runs/<runId>.json."""

    run_id: str
    combination_id: str
    parameters: dict[str, JSONValue] = Field(default_factory=dict)
    start_time: datetime
    end_time: datetime
    duration: float  # milliseconds
    success: bool
    scenario_result: JSONValue = None
    error: str | None = None
    timed_out: bool = False
    metrics: RunMetrics = Field(default_factory=RunMetrics)


class CombinationSummary(ReportModel):
    """Rollup of every run sharing a combination id."""

    combination_id: str
    parameters: dict[str, JSONValue] = Field(default_factory=dict)
    total_runs: int
    successful_runs: int
    failed_runs: int
    success_rate: float
    average_duration: float
    runs: list[RunResult] = Field(default_factory=list)


class ResourceUsage(ReportModel):
    """Peak and average host usage over a matrix execution (percent)."""

    peak_memory_usage: float = 0.0
    peak_disk_usage: float = 0.0
    peak_cpu_usage: float = 0.0
    average_memory_usage: float = 0.0
    average_disk_usage: float = 0.0
    average_cpu_usage: float = 0.0


class MatrixExecutionSummary(ReportModel):
    """Final rollup of a matrix execution. Written to summary.json."""

    total_runs: int
    successful_runs: int
    failed_runs: int
    total_duration: float
    average_run_time: float
    success_rate: float
    combinations: list[CombinationSummary] = Field(default_factory=list)
    start_time: datetime
    end_time: datetime
    resource_usage: ResourceUsage = Field(default_factory=ResourceUsage)
