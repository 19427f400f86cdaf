# Copyright (c) Syntropy Systems
"""Matrix combination generation, filtering and planning."""
from __future__ import annotations

import hashlib
import itertools
import json
from dataclasses import dataclass
from typing import TYPE_CHECKING

from matrixrun.errors import MatrixConfigError
from matrixrun.models.matrix import CombinationMetadata, MatrixCombination

if TYPE_CHECKING:
    from collections.abc import Iterator, Mapping, Sequence

    from matrixrun.models.base import JSONValue
    from matrixrun.models.matrix import MatrixAxis, MatrixConfig

ID_HASH_LENGTH = 8
ID_INDEX_WIDTH = 3

# Planning estimates, seconds
DEFAULT_RUN_ESTIMATE = 30
DEFAULT_SETUP_OVERHEAD = 5
OPTIMISTIC_FACTOR = 0.5
PESSIMISTIC_FACTOR = 2.0


def _canonical(value: JSONValue) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"))


def parameter_hash(parameters: Mapping[str, JSONValue]) -> str:
    """Stable hash of a parameter map, independent of key order."""
    canonical = "&".join(
        f"{key}={_canonical(parameters[key])}" for key in sorted(parameters)
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:ID_HASH_LENGTH]


def combination_id(parameters: Mapping[str, JSONValue], index: int) -> str:
    """Build the id ``combo-<index>-<hash>`` for a combination."""
    return f"combo-{index:0{ID_INDEX_WIDTH}d}-{parameter_hash(parameters)}"


def iter_parameter_sets(axes: Sequence[MatrixAxis]) -> Iterator[dict[str, JSONValue]]:
    """Yield the Cartesian product of axis values, right-most axis fastest.

    Yields nothing when there are no axes.
    """
    if not axes:
        return

    names: list[str] = []
    values: list[list[JSONValue]] = []
    for axis in axes:
        if not axis.values:
            msg = f"Axis '{axis.parameter}' must have at least one value"
            raise MatrixConfigError(msg, hint="Add values to the axis or remove it.")
        names.append(axis.parameter)
        values.append(axis.values)

    for combo in itertools.product(*values):
        yield dict(zip(names, combo))


def generate_combinations(axes: Sequence[MatrixAxis]) -> list[MatrixCombination]:
    """Generate every parameter combination with a reproducible id."""
    parameter_sets = list(iter_parameter_sets(axes))
    total = len(parameter_sets)
    return [
        MatrixCombination(
            id=combination_id(params, index),
            parameters=params,
            metadata=CombinationMetadata(combination_index=index, total_combinations=total),
        )
        for index, params in enumerate(parameter_sets)
    ]


def generate_matrix_combinations(config: MatrixConfig) -> list[MatrixCombination]:
    """Generate every combination described by a matrix config."""
    return generate_combinations(config.matrix)


def filter_combinations(
    combinations: Sequence[MatrixCombination],
    pattern: str,
) -> list[MatrixCombination]:
    """Keep combinations whose serialized parameters contain ``pattern``.

    Matching is a case-insensitive substring test.
    """
    needle = pattern.lower()
    return [
        combo
        for combo in combinations
        if needle in json.dumps(combo.parameters).lower()
    ]


def validate_combinations(combinations: Sequence[MatrixCombination]) -> list[str]:
    """Return one error message per combination whose parameters can't be serialized."""
    errors: list[str] = []
    for combo in combinations:
        try:
            _ = json.dumps(combo.parameters)
        except (TypeError, ValueError):
            errors.append(f"Combination {combo.id} has non-serializable parameter values")
    return errors


@dataclass
class DurationEstimate:
    """Estimated wall time in seconds."""

    optimistic: int
    realistic: int
    pessimistic: int


@dataclass
class ExecutionEstimate:
    """Planning figures for a matrix execution."""

    total_combinations: int
    total_runs: int
    duration: DurationEstimate


def estimate_execution(
    combinations: Sequence[MatrixCombination],
    runs_per_combination: int,
    run_estimate: float = DEFAULT_RUN_ESTIMATE,
    setup_overhead: float = DEFAULT_SETUP_OVERHEAD,
) -> ExecutionEstimate:
    """Estimate execution time with a linear model."""
    total_combinations = len(combinations)
    total_runs = total_combinations * runs_per_combination
    setup = total_combinations * setup_overhead

    def bound(factor: float) -> int:
        return round(total_runs * run_estimate * factor + setup)

    return ExecutionEstimate(
        total_combinations=total_combinations,
        total_runs=total_runs,
        duration=DurationEstimate(
            optimistic=bound(OPTIMISTIC_FACTOR),
            realistic=bound(1.0),
            pessimistic=bound(PESSIMISTIC_FACTOR),
        ),
    )


def format_duration(seconds: float) -> str:
    """Format seconds as ``45s``, ``3m 20s`` or ``2h 5m``."""
    total_seconds = int(seconds)
    if total_seconds < 60:
        return f"{total_seconds}s"
    if total_seconds < 3600:
        minutes = total_seconds // 60
        secs = total_seconds % 60
        return f"{minutes}m {secs}s"
    hours = total_seconds // 3600
    minutes = (total_seconds % 3600) // 60
    return f"{hours}h {minutes}m"


def count_combinations(config: MatrixConfig) -> int:
    """Number of combinations a config expands to, without generating them."""
    return config.total_combinations


def count_runs(config: MatrixConfig) -> int:
    return config.total_runs
