# Copyright (c) Syntropy Systems
"""Tests for matrix execution scheduling."""

import json

import pytest

from matrixrun.combinations import generate_matrix_combinations
from matrixrun.errors import MatrixConfigError, RunFailedError, RunTimeoutError
from matrixrun.models import MatrixConfig
from matrixrun.orchestrator import (
    ExecutionOptions,
    MatrixOrchestrator,
    MatrixPhase,
    RunState,
    execute_matrix_runs,
)
from matrixrun.progress import ProgressEventType

from conftest import FakeRunner


def make_config(runs=1, temperatures=(0.1, 0.5, 0.9), models=("small", "large")):
    return MatrixConfig.from_dict(
        {
            "name": "sweep",
            "base_scenario": "scenario.yaml",
            "runs_per_combination": runs,
            "matrix": [
                {"parameter": "character.llm.model", "values": list(models)},
                {"parameter": "character.llm.temperature", "values": list(temperatures)},
            ],
        }
    )


class FakeBackend:
    def __init__(self):
        self.closed = 0

    async def aclose(self):
        self.closed += 1


class BackendFactory:
    def __init__(self):
        self.created = []

    async def __call__(self):
        backend = FakeBackend()
        self.created.append(backend)
        return backend


@pytest.fixture
def options(temp_dir, quiet_sampler):
    return ExecutionOptions(output_dir=temp_dir / "out", resource_sampler=quiet_sampler)


class TestExecutionOptions:
    def test_rejects_bad_parallelism(self, temp_dir):
        with pytest.raises(MatrixConfigError):
            _ = ExecutionOptions(output_dir=temp_dir, max_parallel=0)

    def test_rejects_bad_timeout(self, temp_dir):
        with pytest.raises(MatrixConfigError):
            _ = ExecutionOptions(output_dir=temp_dir, run_timeout=0)


class TestMatrixExecution:
    """Tests for end-to-end matrix execution."""

    @pytest.mark.asyncio
    async def test_every_repetition_runs(self, options, fake_runner, base_scenario):
        """Test that C combinations x R repetitions produce C*R results."""
        config = make_config(runs=2)
        combos = generate_matrix_combinations(config)
        results = await execute_matrix_runs(
            config, combos, options, fake_runner, base_scenario=base_scenario
        )

        assert len(results) == 12
        assert len({r.run_id for r in results}) == 12
        for combo in combos:
            assert sum(1 for r in results if r.combination_id == combo.id) == 2
        assert all(r.success for r in results)

    @pytest.mark.asyncio
    async def test_runner_sees_overridden_scenario(self, options, fake_runner, base_scenario):
        config = make_config(models=("large",), temperatures=(0.9,))
        combos = generate_matrix_combinations(config)
        _ = await execute_matrix_runs(
            config, combos, options, fake_runner, base_scenario=base_scenario
        )

        request = fake_runner.requests[0]
        assert request.scenario["character"]["llm"] == {"model": "large", "temperature": 0.9}
        assert request.environment["MATRIXRUN_RUN_ID"] == request.run_id
        assert base_scenario["character"]["llm"]["model"] == "small"

    @pytest.mark.asyncio
    async def test_summary_written(self, options, fake_runner, base_scenario):
        """Test the 2x3 matrix writes summary.json with six runs."""
        config = make_config()
        combos = generate_matrix_combinations(config)
        orchestrator = MatrixOrchestrator(
            config, combos, options, fake_runner, base_scenario=base_scenario
        )
        _ = await orchestrator.run()

        out = options.output_dir
        summary = json.loads((out / "summary.json").read_text())
        assert summary["totalRuns"] == 6
        assert summary["successfulRuns"] == 6
        assert summary["successRate"] == 1.0
        assert len(summary["combinations"]) == 6
        assert len(list((out / "runs").glob("*.json"))) == 6
        assert (out / "config.yaml").exists()
        assert (out / "logs" / "matrix-execution.log").read_text().startswith(
            "Matrix Execution Summary"
        )
        assert orchestrator.phase == MatrixPhase.COMPLETED
        assert set(orchestrator.run_states.values()) == {RunState.CLEANED_UP}

    @pytest.mark.asyncio
    async def test_workspaces_cleaned(self, options, fake_runner, base_scenario):
        config = make_config()
        _ = await execute_matrix_runs(
            config,
            generate_matrix_combinations(config),
            options,
            fake_runner,
            base_scenario=base_scenario,
        )
        temp_root = options.output_dir / "temp"
        assert not temp_root.exists() or list(temp_root.iterdir()) == []
        for request in fake_runner.requests:
            assert not request.context.temp_dir.exists()

    @pytest.mark.asyncio
    async def test_empty_combination_list(self, options, fake_runner, base_scenario):
        config = make_config()
        orchestrator = MatrixOrchestrator(
            config, [], options, fake_runner, base_scenario=base_scenario
        )
        assert await orchestrator.run() == []
        assert orchestrator.summary is not None
        assert orchestrator.summary.total_runs == 0
        assert orchestrator.summary.success_rate == 0.0


class TestConcurrency:
    """Tests for the parallelism limit."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("limit", [1, 2, 3])
    async def test_max_parallel_respected(self, temp_dir, quiet_sampler, base_scenario, limit):
        runner = FakeRunner(delay=0.02)
        options = ExecutionOptions(
            output_dir=temp_dir / "out",
            max_parallel=limit,
            resource_sampler=quiet_sampler,
        )
        config = make_config(runs=4, models=("small",), temperatures=(0.1, 0.5))
        orchestrator = MatrixOrchestrator(
            config,
            generate_matrix_combinations(config),
            options,
            runner,
            base_scenario=base_scenario,
        )
        results = await orchestrator.run()

        assert len(results) == 8
        assert runner.max_in_flight <= limit
        assert orchestrator.peak_in_flight <= limit
        if limit > 1:
            assert runner.max_in_flight > 1

    @pytest.mark.asyncio
    async def test_sequential_runs_do_not_overlap(self, options, fake_runner, base_scenario):
        config = make_config(runs=2, models=("small",), temperatures=(0.1,))
        _ = await execute_matrix_runs(
            config,
            generate_matrix_combinations(config),
            options,
            fake_runner,
            base_scenario=base_scenario,
        )
        kinds = [kind for kind, _ in fake_runner.events]
        assert kinds == ["start", "end", "start", "end"]


class TestFailureContainment:
    """Tests that one run's failure does not abort the matrix."""

    @pytest.mark.asyncio
    async def test_failing_combination_still_summarized(self, options, base_scenario):
        runner = FakeRunner(fail_when=("character.llm.model", "large"))
        config = make_config(runs=2)
        combos = generate_matrix_combinations(config)
        orchestrator = MatrixOrchestrator(
            config, combos, options, runner, base_scenario=base_scenario
        )
        results = await orchestrator.run()

        assert len(results) == 12
        summary = orchestrator.summary
        assert summary.failed_runs == 6
        assert summary.successful_runs == 6
        assert summary.success_rate == 0.5
        large = [c for c in summary.combinations if c.parameters["character.llm.model"] == "large"]
        assert len(large) == 3
        assert all(c.successful_runs == 0 and c.total_runs == 2 for c in large)
        assert all(r.error == "evaluation failed" for r in results if not r.success)

    @pytest.mark.asyncio
    async def test_runner_exception_becomes_failed_result(self, options, base_scenario):
        runner = FakeRunner(raise_when=("character.llm.temperature", 0.5))
        config = make_config()
        results = await execute_matrix_runs(
            config,
            generate_matrix_combinations(config),
            options,
            runner,
            base_scenario=base_scenario,
        )
        failed = [r for r in results if not r.success]
        assert len(results) == 6
        assert len(failed) == 2
        assert all(r.error == "agent crashed" for r in failed)

    @pytest.mark.asyncio
    async def test_timeout_recorded(self, temp_dir, quiet_sampler, base_scenario):
        runner = FakeRunner(hang_when=("character.llm.temperature", 0.9))
        options = ExecutionOptions(
            output_dir=temp_dir / "out",
            max_parallel=2,
            run_timeout=0.1,
            resource_sampler=quiet_sampler,
        )
        config = make_config()
        events = []
        options.on_progress = lambda message, kind, data: events.append(kind)
        orchestrator = MatrixOrchestrator(
            config,
            generate_matrix_combinations(config),
            options,
            runner,
            base_scenario=base_scenario,
        )
        results = await orchestrator.run()

        timed_out = [r for r in results if r.timed_out]
        assert len(results) == 6
        assert len(timed_out) == 2
        assert all(not r.success for r in timed_out)
        assert all("timed out" in r.error for r in timed_out)
        assert orchestrator.summary.failed_runs == 2
        assert ProgressEventType.TIMEOUT in events

    @pytest.mark.asyncio
    async def test_fail_fast_stops_and_raises(self, temp_dir, quiet_sampler, base_scenario):
        runner = FakeRunner(fail_when=("character.llm.model", "small"))
        options = ExecutionOptions(
            output_dir=temp_dir / "out",
            continue_on_failure=False,
            resource_sampler=quiet_sampler,
        )
        config = make_config()
        orchestrator = MatrixOrchestrator(
            config,
            generate_matrix_combinations(config),
            options,
            runner,
            base_scenario=base_scenario,
        )
        with pytest.raises(RunFailedError):
            _ = await orchestrator.run()

        assert len(orchestrator.results) == 1
        assert (options.output_dir / "summary.json").exists()
        assert orchestrator.phase == MatrixPhase.COMPLETED

    @pytest.mark.asyncio
    async def test_fail_fast_leaves_cut_short_combination_incomplete(
        self, temp_dir, quiet_sampler, base_scenario
    ):
        """Test that stopping mid-combination does not report it as completed."""
        events = []
        finished = []
        options = ExecutionOptions(
            output_dir=temp_dir / "out",
            continue_on_failure=False,
            resource_sampler=quiet_sampler,
            on_progress=lambda message, kind, data: events.append(kind),
            on_combination_complete=finished.append,
        )
        config = make_config(runs=3, models=("small",), temperatures=(0.1,))
        orchestrator = MatrixOrchestrator(
            config,
            generate_matrix_combinations(config),
            options,
            FakeRunner(fail_when=("character.llm.model", "small")),
            base_scenario=base_scenario,
        )
        with pytest.raises(RunFailedError):
            _ = await orchestrator.run()

        assert len(orchestrator.results) == 1
        assert ProgressEventType.COMBINATION_COMPLETED not in events
        assert finished == []
        assert events[-1] == ProgressEventType.MATRIX_COMPLETED

    @pytest.mark.asyncio
    async def test_isolation_failure_becomes_failed_results(
        self, options, fake_runner, base_scenario
    ):
        """Test that runs whose workspace can't be created fail without aborting."""
        options.output_dir.mkdir(parents=True)
        (options.output_dir / "temp").write_text("not a directory")
        config = make_config(runs=2)
        orchestrator = MatrixOrchestrator(
            config,
            generate_matrix_combinations(config),
            options,
            fake_runner,
            base_scenario=base_scenario,
        )
        results = await orchestrator.run()

        assert len(results) == 12
        assert all(not r.success and not r.timed_out for r in results)
        assert all(r.error for r in results)
        assert fake_runner.requests == []
        summary = json.loads((options.output_dir / "summary.json").read_text())
        assert summary["totalRuns"] == 12
        assert summary["failedRuns"] == 12
        assert set(orchestrator.run_states.values()) == {RunState.CLEANED_UP}

    @pytest.mark.asyncio
    async def test_fail_fast_timeout(self, temp_dir, quiet_sampler, base_scenario):
        runner = FakeRunner(hang_when=("character.llm.model", "small"))
        options = ExecutionOptions(
            output_dir=temp_dir / "out",
            continue_on_failure=False,
            run_timeout=0.05,
            resource_sampler=quiet_sampler,
        )
        config = make_config()
        with pytest.raises(RunTimeoutError):
            _ = await execute_matrix_runs(
                config,
                generate_matrix_combinations(config),
                options,
                runner,
                base_scenario=base_scenario,
            )


class TestSharedBackend:
    """Tests for backend lifecycle."""

    @pytest.mark.asyncio
    async def test_shared_backend_closed_once(self, options, fake_runner, base_scenario):
        factory = BackendFactory()
        config = make_config()
        _ = await execute_matrix_runs(
            config,
            generate_matrix_combinations(config),
            options,
            fake_runner,
            backend_factory=factory,
            base_scenario=base_scenario,
        )

        assert len(factory.created) == 1
        assert factory.created[0].closed == 1
        leases = [r.backend for r in fake_runner.requests]
        assert all(lease.shared for lease in leases)
        assert all(lease.backend is factory.created[0] for lease in leases)
        assert len({lease.agent_name for lease in leases}) == 6

    @pytest.mark.asyncio
    async def test_single_run_uses_own_backend(self, options, fake_runner, base_scenario):
        factory = BackendFactory()
        config = make_config(models=("small",), temperatures=(0.1,))
        _ = await execute_matrix_runs(
            config,
            generate_matrix_combinations(config),
            options,
            fake_runner,
            backend_factory=factory,
            base_scenario=base_scenario,
        )

        assert len(factory.created) == 1
        assert factory.created[0].closed == 1
        assert not fake_runner.requests[0].backend.shared

    @pytest.mark.asyncio
    async def test_sharing_disabled(self, temp_dir, quiet_sampler, fake_runner, base_scenario):
        factory = BackendFactory()
        options = ExecutionOptions(
            output_dir=temp_dir / "out",
            shared_backend=False,
            resource_sampler=quiet_sampler,
        )
        config = make_config()
        _ = await execute_matrix_runs(
            config,
            generate_matrix_combinations(config),
            options,
            fake_runner,
            backend_factory=factory,
            base_scenario=base_scenario,
        )
        assert len(factory.created) == 6
        assert all(backend.closed == 1 for backend in factory.created)


class TestProgressReporting:
    @pytest.mark.asyncio
    async def test_events_and_combination_callbacks(self, temp_dir, quiet_sampler, base_scenario):
        events = []
        finished = []
        options = ExecutionOptions(
            output_dir=temp_dir / "out",
            resource_sampler=quiet_sampler,
            on_progress=lambda message, kind, data: events.append(kind),
            on_combination_complete=finished.append,
        )
        config = make_config(runs=2)
        _ = await execute_matrix_runs(
            config,
            generate_matrix_combinations(config),
            options,
            FakeRunner(),
            base_scenario=base_scenario,
        )

        assert events[0] == ProgressEventType.MATRIX_STARTED
        assert events[-1] == ProgressEventType.MATRIX_COMPLETED
        assert events.count(ProgressEventType.RUN_STARTED) == 12
        assert events.count(ProgressEventType.RUN_COMPLETED) == 12
        assert events.count(ProgressEventType.COMBINATION_COMPLETED) == 6
        assert len(finished) == 6

    @pytest.mark.asyncio
    async def test_resource_warnings_forwarded(self, temp_dir, base_scenario):
        from conftest import make_resources

        alerts = []
        options = ExecutionOptions(
            output_dir=temp_dir / "out",
            resource_check_interval=0.01,
            resource_sampler=lambda: make_resources(memory=85),
            on_resource_warning=alerts.append,
        )
        config = make_config(runs=3, models=("small",), temperatures=(0.1,))
        orchestrator = MatrixOrchestrator(
            config,
            generate_matrix_combinations(config),
            options,
            FakeRunner(delay=0.03),
            base_scenario=base_scenario,
        )
        _ = await orchestrator.run()

        assert alerts
        assert alerts[0].resource == "memory"
        assert orchestrator.summary.resource_usage.peak_memory_usage == 85
        assert not orchestrator.monitor.running
