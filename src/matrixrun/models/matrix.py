# Copyright (c) Syntropy Systems
"""Pydantic models for matrix configuration and combinations."""

from __future__ import annotations

import json
from pathlib import Path
from typing import cast

import yaml
from pydantic import Field, ValidationError, field_validator

from matrixrun.errors import MatrixConfigError, ParameterPathError
from matrixrun.overrides import parse_parameter_path

from .base import JSONValue, MatrixBaseModel, ReportModel

DEFAULT_RUNNER = "command"


class MatrixAxis(MatrixBaseModel):
    """One axis of variation: a parameter path and the values to try."""

    parameter: str = Field(min_length=1)
    values: list[JSONValue] = Field(min_length=1)

    @field_validator("parameter")
    @classmethod
    def _check_path(cls, value: str) -> str:
        try:
            _ = parse_parameter_path(value)
        except ParameterPathError as e:
            raise ValueError(str(e)) from e
        return value


class MatrixConfig(MatrixBaseModel):
    """Configuration for running a base scenario across a parameter matrix."""

    name: str = Field(min_length=1)
    description: str | None = None
    base_scenario: str = Field(min_length=1)
    runs_per_combination: int = Field(default=1, ge=1)
    matrix: list[MatrixAxis] = Field(min_length=1)
    runner: str = DEFAULT_RUNNER
    command: list[str] | None = None

    @classmethod
    def from_dict(cls, data: object, base_dir: Path | None = None) -> MatrixConfig:
        """Validate a parsed configuration mapping.

        Relative ``base_scenario`` paths resolve against ``base_dir``.
        """
        if not isinstance(data, dict):
            msg = "Matrix config must be a mapping"
            raise MatrixConfigError(msg, hint="Check that your YAML syntax is valid.")
        raw = dict(cast("dict[str, object]", data))

        base_scenario = raw.get("base_scenario")
        if base_dir is not None and isinstance(base_scenario, str) and base_scenario:
            scenario_path = Path(base_scenario)
            if not scenario_path.is_absolute():
                raw["base_scenario"] = str((base_dir / scenario_path).resolve())

        try:
            return cls.model_validate(raw)
        except ValidationError as e:
            problems = [
                f"{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}"
                for err in e.errors()
            ]
            msg = "Matrix configuration validation failed:\n  " + "\n  ".join(problems)
            raise MatrixConfigError(
                msg,
                hint="Fix the configuration errors listed above and try again.",
            ) from e

    @classmethod
    def from_yaml(cls, path: Path) -> MatrixConfig:
        """Load matrix configuration from a YAML file."""
        if not path.exists():
            msg = f"Matrix configuration file not found at '{path}'"
            raise MatrixConfigError(msg, hint="Make sure the file exists and the path is correct.")
        try:
            with path.open() as f:
                data = cast("object", yaml.safe_load(f))
        except yaml.YAMLError as e:
            msg = f"Failed to parse YAML configuration file: {e}"
            raise MatrixConfigError(msg, hint="Check that your YAML syntax is valid.") from e
        return cls.from_dict(data, base_dir=path.resolve().parent)

    @property
    def total_combinations(self) -> int:
        total = 1
        for axis in self.matrix:
            total *= len(axis.values)
        return total

    @property
    def total_runs(self) -> int:
        return self.total_combinations * self.runs_per_combination


def load_base_scenario(path: Path) -> dict[str, object]:
    """Load the base scenario document (YAML or JSON)."""
    if not path.exists():
        msg = f"Base scenario file not found at '{path}'"
        raise MatrixConfigError(
            msg,
            hint="Make sure the base_scenario path in your matrix config is correct.",
        )
    text = path.read_text()
    try:
        data = cast("object", json.loads(text))
    except json.JSONDecodeError:
        try:
            data = cast("object", yaml.safe_load(text))
        except yaml.YAMLError as e:
            msg = f"Failed to parse base scenario file: {e}"
            raise MatrixConfigError(msg, hint="Check that the scenario is valid YAML.") from e
    if not isinstance(data, dict):
        msg = f"Base scenario at '{path}' must be a mapping"
        raise MatrixConfigError(msg, hint="The top level of a scenario file is a mapping.")
    return cast("dict[str, object]", data)


class CombinationMetadata(ReportModel):
    """Position of a combination within its matrix."""

    combination_index: int
    total_combinations: int


class MatrixCombination(ReportModel):
    """One selection of exactly one value per axis. Immutable."""

    id: str
    parameters: dict[str, JSONValue]
    metadata: CombinationMetadata
