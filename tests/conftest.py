# Copyright (c) Syntropy Systems
"""Pytest fixtures for matrixrun tests."""

import asyncio
import os
import tempfile
from collections.abc import Generator
from pathlib import Path

import pytest
import yaml

from matrixrun.executor import ScenarioOutcome, ScenarioRequest
from matrixrun.isolation import reset_run_sequence
from matrixrun.system_metrics import SystemResources

# Store original cwd at module load time
_original_cwd = Path.cwd()

BASE_SCENARIO = {
    "name": "greeting",
    "character": {"name": "Ada", "llm": {"model": "small", "temperature": 0.5}},
    "run": [
        {"input": "Hello", "evaluations": [{"type": "string_contains", "value": "hi"}]},
    ],
}


def make_resources(memory: float = 10.0, disk: float = 10.0, cpu: float = 10.0, cores: int = 4):
    """Build a SystemResources snapshot with the given percentages."""
    gb = 1024**3
    return SystemResources(
        memory_usage=memory,
        total_memory=16 * gb,
        free_memory=8 * gb,
        disk_usage=disk,
        total_disk=500 * gb,
        free_disk=250 * gb,
        cpu_usage=cpu,
        cpu_cores=cores,
        load_average=(0.0, 0.0, 0.0),
    )


class FakeRunner:
    """Scenario runner that records calls and tracks concurrency.

    Fails every run whose parameters contain ``fail_when`` (a key/value pair),
    and raises instead when ``raise_when`` matches.
    """

    def __init__(self, delay=0.01, fail_when=None, raise_when=None, hang_when=None):
        self.delay = delay
        self.fail_when = fail_when
        self.raise_when = raise_when
        self.hang_when = hang_when
        self.requests: list[ScenarioRequest] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.events: list[tuple[str, str]] = []

    @staticmethod
    def _matches(request, rule):
        if rule is None:
            return False
        key, value = rule
        return request.parameters.get(key) == value

    async def __call__(self, request: ScenarioRequest) -> ScenarioOutcome:
        self.requests.append(request)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        self.events.append(("start", request.run_id))
        try:
            if self._matches(request, self.hang_when):
                await asyncio.sleep(3600)
            await asyncio.sleep(self.delay)
            if self._matches(request, self.raise_when):
                msg = "agent crashed"
                raise RuntimeError(msg)
            if request.report_progress is not None:
                request.report_progress(0.5, "halfway")
            success = not self._matches(request, self.fail_when)
            return ScenarioOutcome(
                success=success,
                execution_outputs=["hello there, how can I help?"],
                duration_ms=self.delay * 1000,
                error=None if success else "evaluation failed",
            )
        finally:
            self.in_flight -= 1
            self.events.append(("end", request.run_id))


@pytest.fixture(autouse=True)
def _reset_sequence() -> None:
    reset_run_sequence()


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for testing."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def fake_runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def quiet_sampler():
    """Resource sampler returning a fixed, low-usage snapshot."""
    return lambda: make_resources()


@pytest.fixture
def base_scenario() -> dict:
    import copy

    return copy.deepcopy(BASE_SCENARIO)


@pytest.fixture
def matrix_project(temp_dir: Path) -> Generator[Path, None, None]:
    """Create a project with a base scenario and a 2x3 matrix config."""
    (temp_dir / "scenario.yaml").write_text(yaml.safe_dump(BASE_SCENARIO))
    config = {
        "name": "temperature-sweep",
        "description": "Try temperatures and models",
        "base_scenario": "scenario.yaml",
        "runs_per_combination": 1,
        "command": ["true"],
        "matrix": [
            {"parameter": "character.llm.model", "values": ["small", "large"]},
            {"parameter": "character.llm.temperature", "values": [0.1, 0.5, 0.9]},
        ],
    }
    (temp_dir / "matrix.yaml").write_text(yaml.safe_dump(config))

    # Keep settings lookup inside the project
    (temp_dir / ".matrixrun").mkdir()

    os.chdir(temp_dir)

    yield temp_dir

    # Always return to original cwd
    os.chdir(_original_cwd)
