# Copyright (c) Syntropy Systems
"""Pydantic models for matrixrun."""

from matrixrun.models.matrix import (
    CombinationMetadata,
    MatrixAxis,
    MatrixCombination,
    MatrixConfig,
    load_base_scenario,
)
from matrixrun.models.run import (
    CombinationSummary,
    MatrixExecutionSummary,
    ResourceUsage,
    RunMetrics,
    RunResult,
)

__all__ = [
    "CombinationMetadata",
    "CombinationSummary",
    "MatrixAxis",
    "MatrixCombination",
    "MatrixConfig",
    "MatrixExecutionSummary",
    "ResourceUsage",
    "RunMetrics",
    "RunResult",
    "load_base_scenario",
]
