"""
matrixrun - Scenario matrix testing for conversational agents.

Run one scenario across every combination of parameter variations, each run
isolated, and collect the results.
"""

from matrixrun.combinations import filter_combinations, generate_combinations
from matrixrun.models import MatrixConfig
from matrixrun.orchestrator import ExecutionOptions, MatrixOrchestrator, execute_matrix_runs

__version__ = "0.1.0"
__all__ = [
    "ExecutionOptions",
    "MatrixConfig",
    "MatrixOrchestrator",
    "__version__",
    "execute_matrix_runs",
    "filter_combinations",
    "generate_combinations",
]
