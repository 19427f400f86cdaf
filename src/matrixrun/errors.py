# Copyright (c) Syntropy Systems
"""Exception types raised by matrixrun."""
from __future__ import annotations


class MatrixError(Exception):
    """Base class for matrixrun errors."""


class MatrixConfigError(MatrixError):
    """Invalid matrix configuration, detected before execution starts."""

    hint: str | None

    def __init__(self, message: str, hint: str | None = None) -> None:
        super().__init__(message)
        self.hint = hint


class ThresholdConfigError(MatrixConfigError):
    """Resource thresholds where a warning level is not below its critical level."""


class ParameterPathError(MatrixError):
    """A parameter path is malformed or does not resolve in the scenario."""


class IsolationError(MatrixError):
    """A run workspace could not be created."""


class RunTimeoutError(MatrixError):
    """A single run exceeded its time budget."""

    run_id: str
    timeout: float

    def __init__(self, run_id: str, timeout: float) -> None:
        super().__init__(f"Run {run_id} timed out after {timeout:g}s")
        self.run_id = run_id
        self.timeout = timeout


class RunFailedError(MatrixError):
    """A run failed while the matrix was set to stop at the first failure."""

    run_id: str

    def __init__(self, run_id: str, reason: str | None = None) -> None:
        super().__init__(f"Run {run_id} failed: {reason or 'unknown error'}")
        self.run_id = run_id
