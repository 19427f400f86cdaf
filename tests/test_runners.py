# Copyright (c) Syntropy Systems
"""Tests for scenario runners."""

import asyncio
import os

import pytest

from matrixrun.errors import MatrixConfigError
from matrixrun.executor import BackendLease, ScenarioOutcome, ScenarioRequest
from matrixrun.isolation import (
    create_isolated_environment,
    generate_run_id,
    isolated_environment_variables,
)
from matrixrun.models import MatrixConfig
from matrixrun.processes import ProcessRegistry
from matrixrun.runners import (
    CommandRunner,
    available_runners,
    get_runner,
    register_runner,
    substitute_templates,
    unregister_runner,
    with_scoped_environment,
)


def make_request(temp_dir, scenario=None):
    context = create_isolated_environment(generate_run_id(), temp_dir)
    context.scenario_path.write_text("name: test\n")
    return ScenarioRequest(
        run_id=context.run_id,
        combination_id="combo-000-deadbeef",
        scenario=scenario or {"name": "test"},
        scenario_path=str(context.scenario_path),
        context=context,
        environment=isolated_environment_variables(context),
        parameters={},
    )


def make_config(command=None, runner="command"):
    data = {
        "name": "m",
        "base_scenario": "s.yaml",
        "runner": runner,
        "matrix": [{"parameter": "a", "values": [1]}],
    }
    if command is not None:
        data["command"] = command
    return MatrixConfig.from_dict(data)


class TestRegistry:
    """Tests for looking up runners by name."""

    def test_command_runner_registered(self):
        assert "command" in available_runners()
        runner = get_runner("command", make_config(command=["true"]))
        assert isinstance(runner, CommandRunner)

    def test_unknown_runner(self):
        with pytest.raises(MatrixConfigError) as exc_info:
            _ = get_runner("nope", make_config(runner="nope"))
        assert "command" in exc_info.value.hint

    def test_register_custom(self):
        async def runner(request):
            return ScenarioOutcome(success=True)

        register_runner("inline", lambda config, processes: runner)
        try:
            assert get_runner("inline", make_config()) is runner
        finally:
            unregister_runner("inline")
        assert "inline" not in available_runners()

    def test_command_runner_uses_registry_grace_period(self):
        processes = ProcessRegistry(grace_period=0.5)
        runner = get_runner("command", make_config(command=["true"]), processes)
        assert runner.grace_period == 0.5

    def test_command_required(self):
        with pytest.raises(MatrixConfigError):
            _ = get_runner("command", make_config())


class TestTemplates:
    def test_substitution(self, temp_dir):
        request = make_request(temp_dir)
        argv = substitute_templates(
            ["agent", "--scenario={{scenario_path}}", "{{run_id}}", "{{log_path}}"],
            request,
        )
        assert argv == [
            "agent",
            f"--scenario={request.scenario_path}",
            request.run_id,
            str(request.context.log_path),
        ]


class TestCommandRunner:
    """Tests for running scenarios as child processes."""

    @pytest.mark.asyncio
    async def test_exit_zero_succeeds(self, temp_dir):
        processes = ProcessRegistry()
        outcome = await CommandRunner(["true"], processes)(make_request(temp_dir))
        assert outcome.success
        assert outcome.error is None
        assert len(processes) == 0

    @pytest.mark.asyncio
    async def test_nonzero_exit_fails(self, temp_dir):
        outcome = await CommandRunner(["false"], ProcessRegistry())(make_request(temp_dir))
        assert not outcome.success
        assert outcome.error == "Command exited with code 1"

    @pytest.mark.asyncio
    async def test_child_gets_isolated_environment(self, temp_dir):
        request = make_request(temp_dir)
        request.backend = BackendLease(backend=object(), agent_name="agent-x", shared=True)
        runner = CommandRunner(
            [
                "sh",
                "-c",
                'echo "$MATRIXRUN_RUN_ID $MATRIXRUN_AGENT_NAME $TMPDIR"; cat "$1"',
                "sh",
                "{{scenario_path}}",
            ],
            ProcessRegistry(),
        )
        outcome = await runner(request)

        assert outcome.success
        output = outcome.execution_outputs[0]
        assert f"{request.run_id} agent-x {request.context.temp_dir}" in output
        assert "name: test" in output
        assert output in request.context.log_path.read_text()

    @pytest.mark.asyncio
    async def test_cancel_kills_stubborn_child(self, temp_dir):
        """Test that cancelling a run escalates to SIGKILL after the grace period."""
        processes = ProcessRegistry(grace_period=0.2)
        runner = CommandRunner(["sh", "-c", "trap '' TERM; sleep 30"], processes)
        task = asyncio.ensure_future(runner(make_request(temp_dir)))
        await asyncio.sleep(0.2)
        assert len(processes) == 1

        _ = task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await asyncio.wait_for(task, timeout=5)
        assert len(processes) == 0

    @pytest.mark.asyncio
    async def test_missing_executable(self, temp_dir):
        with pytest.raises(OSError):
            _ = await CommandRunner(["definitely-not-a-real-binary-xyz"], ProcessRegistry())(
                make_request(temp_dir)
            )


class TestScopedRunner:
    @pytest.mark.asyncio
    async def test_environment_visible_during_run(self, temp_dir):
        seen = {}

        async def runner(request):
            seen["run_id"] = os.environ.get("MATRIXRUN_RUN_ID")
            return ScenarioOutcome(success=True)

        request = make_request(temp_dir)
        before = os.environ.get("MATRIXRUN_RUN_ID")
        outcome = await with_scoped_environment(runner)(request)

        assert outcome.success
        assert seen["run_id"] == request.run_id
        assert os.environ.get("MATRIXRUN_RUN_ID") == before
