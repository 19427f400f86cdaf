# Copyright (c) Syntropy Systems
"""Result persistence and summary rollups.

Output layout::

    <output>/config.yaml
    <output>/runs/<run_id>.json
    <output>/summary.json
    <output>/logs/matrix-execution.log
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING

import yaml
from pydantic import ValidationError

from matrixrun.models.run import (
    CombinationSummary,
    MatrixExecutionSummary,
    ResourceUsage,
    RunResult,
)

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping, Sequence
    from datetime import datetime

    from matrixrun.models.base import JSONValue
    from matrixrun.models.matrix import MatrixCombination, MatrixConfig
    from matrixrun.system_metrics import ResourceStatistics

logger = logging.getLogger(__name__)

CONFIG_FILE = "config.yaml"
RUNS_DIR = "runs"
SUMMARY_FILE = "summary.json"
LOGS_DIR = "logs"
EXECUTION_LOG = "matrix-execution.log"


def summarize_combination(
    combination_id: str,
    results: Iterable[RunResult],
    parameters: Mapping[str, JSONValue] | None = None,
) -> CombinationSummary:
    """Roll up the results belonging to ``combination_id``."""
    runs = [r for r in results if r.combination_id == combination_id]
    successful = sum(1 for r in runs if r.success)
    if parameters is None:
        parameters = runs[0].parameters if runs else {}
    return CombinationSummary(
        combination_id=combination_id,
        parameters=dict(parameters),
        total_runs=len(runs),
        successful_runs=successful,
        failed_runs=len(runs) - successful,
        success_rate=successful / len(runs) if runs else 0.0,
        average_duration=sum(r.duration for r in runs) / len(runs) if runs else 0.0,
        runs=runs,
    )


def build_execution_summary(
    combinations: Sequence[MatrixCombination],
    results: Sequence[RunResult],
    start_time: datetime,
    end_time: datetime,
    stats: ResourceStatistics | None = None,
) -> MatrixExecutionSummary:
    """Build the final summary. Every combination appears, even with no successes."""
    successful = sum(1 for r in results if r.success)
    total = len(results)
    usage = ResourceUsage()
    if stats is not None:
        usage = ResourceUsage(
            peak_memory_usage=stats.memory.max,
            peak_disk_usage=stats.disk.max,
            peak_cpu_usage=stats.cpu.max,
            average_memory_usage=stats.memory.average,
            average_disk_usage=stats.disk.average,
            average_cpu_usage=stats.cpu.average,
        )
    return MatrixExecutionSummary(
        total_runs=total,
        successful_runs=successful,
        failed_runs=total - successful,
        total_duration=(end_time - start_time).total_seconds() * 1000,
        average_run_time=sum(r.duration for r in results) / total if total else 0.0,
        success_rate=successful / total if total else 0.0,
        combinations=[
            summarize_combination(combo.id, results, combo.parameters) for combo in combinations
        ],
        start_time=start_time,
        end_time=end_time,
        resource_usage=usage,
    )


def format_summary_log(summary: MatrixExecutionSummary) -> str:
    """Human-readable text version of a summary."""
    usage = summary.resource_usage
    lines = [
        "Matrix Execution Summary",
        "========================",
        f"Start Time: {summary.start_time.isoformat()}",
        f"End Time: {summary.end_time.isoformat()}",
        f"Total Duration: {summary.total_duration:.0f}ms",
        f"Total Runs: {summary.total_runs}",
        f"Successful Runs: {summary.successful_runs}",
        f"Failed Runs: {summary.failed_runs}",
        f"Success Rate: {summary.success_rate * 100:.1f}%",
        f"Average Run Time: {summary.average_run_time:.0f}ms",
        "",
        "Resource Usage:",
        f"- Peak Memory: {usage.peak_memory_usage:.1f}%",
        f"- Peak Disk: {usage.peak_disk_usage:.1f}%",
        f"- Peak CPU: {usage.peak_cpu_usage:.1f}%",
        "",
        "Combination Results:",
    ]
    lines.extend(
        f"- {combo.combination_id}: {combo.successful_runs}/{combo.total_runs} success "
        f"({combo.success_rate * 100:.1f}%)"
        for combo in summary.combinations
    )
    return "\n".join(lines) + "\n"


class ResultAggregator:
    """Writes matrix output files.

    Write failures are logged and swallowed so that a full disk never takes
    down the runs being recorded.
    """

    output_dir: Path

    def __init__(self, output_dir: Path) -> None:
        self.output_dir = output_dir

    @property
    def runs_dir(self) -> Path:
        return self.output_dir / RUNS_DIR

    @property
    def summary_path(self) -> Path:
        return self.output_dir / SUMMARY_FILE

    @property
    def log_path(self) -> Path:
        return self.output_dir / LOGS_DIR / EXECUTION_LOG

    def prepare(self) -> None:
        """Create the output directories. Raises OSError if that's impossible."""
        self.runs_dir.mkdir(parents=True, exist_ok=True)
        self.log_path.parent.mkdir(parents=True, exist_ok=True)

    def save_config(self, config: MatrixConfig) -> bool:
        try:
            data = config.model_dump(mode="json", exclude_none=True)
            with (self.output_dir / CONFIG_FILE).open("w") as f:
                yaml.safe_dump(data, f, sort_keys=False)
        except (OSError, yaml.YAMLError) as e:
            logger.warning("Failed to save matrix configuration: %s", e)
            return False
        return True

    def save_run_result(self, result: RunResult) -> bool:
        try:
            self.runs_dir.mkdir(parents=True, exist_ok=True)
            path = self.runs_dir / f"{result.run_id}.json"
            _ = path.write_text(result.model_dump_json(by_alias=True, indent=2))
        except (OSError, ValueError) as e:
            logger.warning("Failed to save result for %s: %s", result.run_id, e)
            return False
        return True

    def save_summary(self, summary: MatrixExecutionSummary) -> bool:
        try:
            _ = self.summary_path.write_text(summary.model_dump_json(by_alias=True, indent=2))
            self.log_path.parent.mkdir(parents=True, exist_ok=True)
            _ = self.log_path.write_text(format_summary_log(summary))
        except (OSError, ValueError) as e:
            logger.warning("Failed to save matrix summary: %s", e)
            return False
        return True


def load_run_results(output_dir: Path) -> list[RunResult]:
    """Read every saved run result, skipping unreadable files."""
    runs_dir = output_dir / RUNS_DIR
    if not runs_dir.is_dir():
        return []
    results: list[RunResult] = []
    for path in sorted(runs_dir.glob("*.json")):
        try:
            results.append(RunResult.model_validate_json(path.read_text()))
        except (OSError, ValidationError) as e:
            logger.warning("Skipping unreadable run result %s: %s", path.name, e)
    return results


def load_summary(output_dir: Path) -> MatrixExecutionSummary | None:
    path = output_dir / SUMMARY_FILE
    if not path.exists():
        return None
    return MatrixExecutionSummary.model_validate_json(path.read_text())
