from pathlib import Path

import pytest

from matrixci.actions import ActionRegistry
from matrixci.dsl import job, sh, uses
from matrixci.errors import CollaboratorUnavailable
from matrixci.executor import CommandOutcome, StepExecutor, SubprocessExecutor, layer_env, resolve_env, step_label
from matrixci.matrix import expand
from matrixci.model import FAILURE, SUCCESS


def _instance(*steps, **kwargs):
    return expand(job("build", *steps, **kwargs))[0]


def _run(executor, inst, index=0, env=None, cwd="/work"):
    return executor.execute(inst.job.steps[index], instance=inst, env=env or {}, cwd=Path(cwd), index=index)


class TestLayerEnv:

    def test_last_write_wins(self):
        merged = layer_env({"A": "1", "B": "1"}, {"B": "2", "C": "3"}, {})
        assert merged == {"A": "1", "B": "2", "C": "3"}

    def test_overrides_see_base_and_matrix(self):
        merged = layer_env({"ROOT": "/opt"}, {"TOOLCHAIN": "${{ env.ROOT }}/${{ matrix.rust }}"}, {"rust": "nightly"})
        assert merged["TOOLCHAIN"] == "/opt/nightly"

    def test_base_is_not_mutated(self):
        base = {"A": "1"}
        layer_env(base, {"A": "2"}, {})
        assert base == {"A": "1"}

    def test_resolve_env_in_declaration_order(self):
        resolved = resolve_env({"ROOT": "/opt", "BIN": "${{ env.ROOT }}/bin", "EARLY": "${{ env.LATE }}", "LATE": "x"})
        assert resolved == {"ROOT": "/opt", "BIN": "/opt/bin", "EARLY": "", "LATE": "x"}


class TestCommandSteps:

    def test_success(self, fake, step_executor):
        inst = _instance(sh("cargo build --target ${{ matrix.os }}"), matrix={"os": ["linux"]})
        result = _run(step_executor, inst)
        assert result.status == SUCCESS
        assert result.exit_code == 0
        assert fake.commands == ["cargo build --target linux"]
        assert result.stdout == b"cargo build --target linux\n"

    def test_non_zero_exit(self, fake, step_executor):
        fake.on("cargo test", exit_code=101, stderr=b"test failed\n")
        inst = _instance(sh("cargo test", name="Tests"))
        result = _run(step_executor, inst)
        assert result.status == FAILURE
        assert result.exit_code == 101
        assert result.stderr == b"test failed\n"
        assert "Tests" in result.error
        assert "exit=101" in result.error

    def test_step_env_layered_over_job_env(self, fake, step_executor):
        inst = _instance(sh("env", env={"LEVEL": "step", "EXTRA": "${{ env.LEVEL }}"}))
        _run(step_executor, inst, env={"LEVEL": "job", "KEEP": "1"})
        assert fake.calls[0].env == {"LEVEL": "step", "EXTRA": "job", "KEEP": "1"}

    def test_working_directories(self, fake, step_executor):
        inst = _instance(sh("make"), sh("make", cwd="sub/${{ matrix.os }}"), matrix={"os": ["linux"]}, cwd="proj")
        _run(step_executor, inst, 0)
        _run(step_executor, inst, 1)
        assert fake.calls[0].cwd == Path("/work/proj")
        assert fake.calls[1].cwd == Path("/work/sub/linux")

    def test_label_is_interpolated(self, step_executor):
        inst = _instance(sh("make", name="Build on ${{ matrix.os }}"), matrix={"os": ["macos"]})
        assert _run(step_executor, inst).name == "Build on macos"

    def test_label_uses_env(self, step_executor):
        inst = _instance(sh("make", name="Build ${{ env.TARGET }}"))
        assert _run(step_executor, inst, env={"TARGET": "arm"}).name == "Build arm"

    def test_label_without_env_keeps_env_reference(self):
        inst = _instance(sh("make", name="Build ${{ env.TARGET }} on ${{ matrix.os }}"), matrix={"os": ["linux"]})
        assert step_label(inst.job.steps[0], inst) == "Build ${{ env.TARGET }} on ${{ matrix.os }}"
        assert step_label(inst.job.steps[0], inst, {}) == "Build  on linux"

    def test_unexpected_error_becomes_failure(self):
        class Broken:
            def execute(self, command, env, cwd):
                raise RuntimeError("boom")

        inst = _instance(sh("make"))
        result = _run(StepExecutor(Broken()), inst)
        assert result.status == FAILURE
        assert result.error == "RuntimeError: boom"


class TestRetries:

    def test_recovers_after_unavailable(self, fake):
        attempts = []
        delays = []

        def flaky(command, env, cwd):
            attempts.append(command)
            if len(attempts) < 3:
                raise CollaboratorUnavailable("command executor", "connection refused")
            return CommandOutcome(0)

        fake.on("make", hook=flaky)
        executor = StepExecutor(fake, retries=2, backoff=0.5, sleep=delays.append)
        result = _run(executor, _instance(sh("make")))
        assert result.status == SUCCESS
        assert len(attempts) == 3
        assert delays == [0.5, 1.0]

    def test_gives_up(self, fake):
        def down(command, env, cwd):
            raise CollaboratorUnavailable("command executor", "connection refused")

        fake.on("make", hook=down)
        executor = StepExecutor(fake, retries=1, backoff=0.1, sleep=lambda _s: None)
        result = _run(executor, _instance(sh("make")))
        assert result.status == FAILURE
        assert result.exit_code is None
        assert "unavailable" in result.error
        assert len(fake.calls) == 2

    def test_plain_failure_is_not_retried(self, fake):
        fake.on("make", exit_code=2)
        executor = StepExecutor(fake, retries=3, sleep=lambda _s: pytest.fail("should not sleep"))
        _run(executor, _instance(sh("make")))
        assert len(fake.calls) == 1


class TestActionSteps:

    def test_shell_action_receives_inputs(self, fake):
        registry = ActionRegistry(fake)
        registry.shell("hecrj/setup-rust-action", "v1.0.2", "rustup default ${{ inputs.rust-version }}")
        executor = StepExecutor(fake, registry)
        inst = _instance(uses("hecrj/setup-rust-action@v1.0.2", rust_version="${{ matrix.rust }}"),
                         matrix={"rust": ["nightly"]})
        result = _run(executor, inst)
        assert result.status == SUCCESS
        assert fake.commands == ["rustup default nightly"]

    def test_callable_action(self, fake):
        registry = ActionRegistry()
        seen = {}

        @registry.action("local/check")
        def check(params, env, cwd):
            seen.update(params)
            return 3

        inst = _instance(uses("local/check@v9", level="high"))
        result = _run(StepExecutor(fake, registry), inst)
        assert seen == {"level": "high"}
        assert result.status == FAILURE
        assert result.exit_code == 3

    def test_unknown_action(self, fake):
        inst = _instance(uses("actions/checkout@v2"))
        result = _run(StepExecutor(fake, ActionRegistry(fake)), inst)
        assert result.status == FAILURE
        assert result.error == "action not registered: actions/checkout@v2"
        assert fake.calls == []

    def test_no_registry(self, fake):
        inst = _instance(uses("actions/checkout@v2"))
        result = _run(StepExecutor(fake), inst)
        assert result.status == FAILURE
        assert "actions/checkout@v2" in result.error


class TestSubprocessExecutor:

    def test_runs_in_shell(self, tmp_path):
        outcome = SubprocessExecutor().execute("echo $GREETING; exit 3", {"GREETING": "hi"}, tmp_path)
        assert outcome.exit_code == 3
        assert outcome.stdout == b"hi\n"

    def test_missing_directory(self, tmp_path):
        outcome = SubprocessExecutor().execute("true", {}, tmp_path / "missing")
        assert outcome.exit_code == 1
        assert b"not found" in outcome.stderr

    def test_timeout(self, tmp_path):
        outcome = SubprocessExecutor(timeout=0.2).execute("sleep 5", {}, tmp_path)
        assert outcome.exit_code == 124
