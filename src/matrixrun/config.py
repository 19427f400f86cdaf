# Copyright (c) Syntropy Systems
"""Engine settings for matrixrun."""
from __future__ import annotations

from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import cast

import yaml

from matrixrun.errors import MatrixConfigError

SETTINGS_DIR_NAME = ".matrixrun"


@dataclass
class ThresholdSettings:
    """Warning/critical usage levels, in percent."""

    memory_warning: float = 75.0
    memory_critical: float = 90.0
    disk_warning: float = 80.0
    disk_critical: float = 95.0
    cpu_warning: float = 80.0
    cpu_critical: float = 95.0


@dataclass
class MatrixSettings:
    """Settings for the matrix engine."""

    # Runs allowed in flight at once
    max_parallel: int = 1

    # Per-run time budget (seconds)
    run_timeout: float = 300.0

    # Keep going after a failed run
    continue_on_failure: bool = True

    # Resource sampling interval (seconds)
    resource_check_interval: float = 5.0

    # Resource samples retained in memory
    max_history_size: int = 200

    # Completed runs needed before an ETA is reported
    min_runs_for_eta: int = 3

    # Lease one backend to every run instead of one per run
    shared_backend: bool = True

    # Grace period before SIGKILL after SIGTERM (seconds)
    kill_grace_period: float = 10.0

    thresholds: ThresholdSettings = field(default_factory=ThresholdSettings)


def find_matrixrun_dir(start_path: Path | None = None) -> Path | None:
    """Find the nearest .matrixrun directory by walking up from start_path.

    Returns None if no .matrixrun directory is found.
    """
    if start_path is None:
        start_path = Path.cwd()

    current = start_path.resolve()
    for candidate in (current, *current.parents):
        settings_dir = candidate / SETTINGS_DIR_NAME
        if settings_dir.is_dir():
            return settings_dir
    return None


def get_global_settings_dir() -> Path:
    """Get the global settings directory (~/.matrixrun)."""
    return Path.home() / SETTINGS_DIR_NAME


def _apply(target: object, data: dict[str, object]) -> None:
    for f in fields(target):  # type: ignore[arg-type]
        if f.name not in data or f.name == "thresholds":
            continue
        value = data[f.name]
        current = getattr(target, f.name)
        if isinstance(current, bool):
            if isinstance(value, bool):
                setattr(target, f.name, value)
        elif isinstance(value, (int, float)) and not isinstance(value, bool):
            setattr(target, f.name, type(current)(value))


def load_settings(settings_dir: Path | None = None) -> MatrixSettings:
    """Load settings from .matrixrun/config.yaml or defaults.

    Looks for settings in:
    1. Provided settings_dir
    2. Nearest .matrixrun directory walking up
    3. ~/.matrixrun/config.yaml
    4. Defaults
    """
    settings = MatrixSettings()

    config_path = None
    if settings_dir is not None:
        config_path = settings_dir / "config.yaml"
    else:
        found_dir = find_matrixrun_dir()
        if found_dir is not None:
            config_path = found_dir / "config.yaml"
        else:
            global_config = get_global_settings_dir() / "config.yaml"
            if global_config.exists():
                config_path = global_config

    if config_path is None or not config_path.exists():
        return settings

    try:
        with config_path.open() as f:
            raw = cast("object", yaml.safe_load(f) or {})
    except yaml.YAMLError as e:
        msg = f"Failed to parse settings file '{config_path}': {e}"
        raise MatrixConfigError(msg, hint="Check that your YAML syntax is valid.") from e
    if not isinstance(raw, dict):
        msg = f"Settings file '{config_path}' must be a mapping"
        raise MatrixConfigError(msg)

    data = cast("dict[str, object]", raw)
    _apply(settings, data)
    thresholds = data.get("thresholds")
    if isinstance(thresholds, dict):
        _apply(settings.thresholds, cast("dict[str, object]", thresholds))

    if settings.max_parallel < 1:
        msg = "max_parallel must be at least 1"
        raise MatrixConfigError(msg, hint=f"Fix max_parallel in {config_path}.")
    if settings.kill_grace_period < 0:
        msg = "kill_grace_period must not be negative"
        raise MatrixConfigError(msg, hint=f"Fix kill_grace_period in {config_path}.")
    return settings
