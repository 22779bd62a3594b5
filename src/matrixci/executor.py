# executor.py
from __future__ import annotations

import logging
import os
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Mapping, Optional, Protocol, Tuple, TypeVar

from .errors import ActionNotFound, CollaboratorUnavailable, StepExecutionFailure
from .interpolate import UnknownReference, references, render, render_mapping
from .model import ACTION, COMMAND, FAILURE, SUCCESS, JobInstance, StepDefinition, StepResult

if TYPE_CHECKING:
    from .actions import ActionRegistry

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class CommandOutcome:
    """What a command executor reports back for one command."""
    exit_code: int
    stdout: bytes = b""
    stderr: bytes = b""


class CommandExecutor(Protocol):
    def execute(self, command: str, env: Mapping[str, str], cwd: Path) -> CommandOutcome:
        ...


# ----------------------------------------------------------------------
# Default collaborator: local shell
# ----------------------------------------------------------------------

class SubprocessExecutor:
    """
    Runs commands through the local shell.

    The supplied env is layered over os.environ unless inherit_env is False.
    A missing working directory is reported as a failing outcome; failing to
    spawn the shell at all raises CollaboratorUnavailable.
    """

    def __init__(self, *, inherit_env: bool = True, shell: str | None = None, timeout: float | None = None):
        self.inherit_env = inherit_env
        self.shell = shell
        self.timeout = timeout

    def execute(self, command: str, env: Mapping[str, str], cwd: Path) -> CommandOutcome:
        cwd = Path(cwd)
        if not cwd.is_dir():
            return CommandOutcome(exit_code=1, stderr=f"working directory not found: {cwd}\n".encode())

        full_env = os.environ.copy() if self.inherit_env else {}
        full_env.update(env)

        try:
            proc = subprocess.run(
                command,
                shell=True,
                executable=self.shell,
                cwd=str(cwd),
                env=full_env,
                capture_output=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as e:
            stderr = (e.stderr or b"") + f"\ntimed out after {self.timeout}s\n".encode()
            return CommandOutcome(exit_code=124, stdout=e.stdout or b"", stderr=stderr)
        except OSError as e:
            raise CollaboratorUnavailable("command executor", str(e), {"command": command}) from e

        return CommandOutcome(exit_code=proc.returncode, stdout=proc.stdout, stderr=proc.stderr)


# ----------------------------------------------------------------------
# Step executor
# ----------------------------------------------------------------------

def step_label(step: StepDefinition, instance: JobInstance, env: Optional[Mapping[str, str]] = None) -> str:
    """
    Display name with references resolved. Without an env, labels that use
    env references are shown as written rather than with blanks.
    """
    if env is None and any(ns == "env" for ns, _ in references(step.display_name)):
        return step.display_name
    try:
        return render(step.display_name, matrix=instance.axes, env=env)
    except UnknownReference:
        return step.display_name


def resolve_env(values: Mapping[str, str]) -> dict[str, str]:
    """Render a top-level env in order; each value sees the keys declared above it."""
    resolved: dict[str, str] = {}
    for key, value in values.items():
        resolved[key] = render(value, env=resolved)
    return resolved


def layer_env(base: Mapping[str, str], overrides: Mapping[str, str], matrix: Mapping[str, object]) -> dict[str, str]:
    """Overlay `overrides` (interpolated against `base`) on a copy of `base`."""
    merged = dict(base)
    merged.update(render_mapping(overrides, matrix=matrix, env=base))
    return merged


class StepExecutor:
    """
    Runs exactly one step and turns whatever happened into a StepResult.

    Nothing raised by a collaborator escapes: non-zero exits, unknown actions,
    exhausted retries and unexpected errors all become failing results.
    """

    def __init__(
        self,
        commands: CommandExecutor,
        actions: Optional["ActionRegistry"] = None,
        *,
        retries: int = 2,
        backoff: float = 0.5,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.commands = commands
        self.actions = actions
        self.retries = max(0, retries)
        self.backoff = backoff
        self._sleep = sleep

    def execute(
        self,
        step: StepDefinition,
        *,
        instance: JobInstance,
        env: Mapping[str, str],
        cwd: Path,
        index: int,
    ) -> StepResult:
        name = step_label(step, instance, env)
        started = time.monotonic()
        command: str | None = None

        try:
            step_env = layer_env(env, step.env, instance.axes)
            if step.kind == COMMAND:
                command, step_cwd = self._prepare_command(step, instance, step_env, cwd)
                logger.debug("[%s] %s: %s (cwd=%s)", instance.name, name, command, step_cwd)
                outcome = self._with_retry(lambda: self.commands.execute(command, step_env, step_cwd))
            elif step.kind == ACTION:
                outcome = self._run_action(step, instance, step_env, cwd)
            else:
                raise ValueError(f"unknown step kind {step.kind!r}")
        except (CollaboratorUnavailable, ActionNotFound, UnknownReference) as e:
            return StepResult(index=index, name=name, status=FAILURE, duration=time.monotonic() - started, error=str(e))
        except Exception as e:
            logger.debug("[%s] %s raised", instance.name, name, exc_info=True)
            return StepResult(
                index=index,
                name=name,
                status=FAILURE,
                duration=time.monotonic() - started,
                error=f"{type(e).__name__}: {e}",
            )

        duration = time.monotonic() - started
        if outcome.exit_code == 0:
            return StepResult(
                index=index,
                name=name,
                status=SUCCESS,
                exit_code=0,
                stdout=outcome.stdout,
                stderr=outcome.stderr,
                duration=duration,
            )

        failure = StepExecutionFailure(job=instance.name, step=name, exit_code=outcome.exit_code, command=command)
        return StepResult(
            index=index,
            name=name,
            status=FAILURE,
            exit_code=outcome.exit_code,
            stdout=outcome.stdout,
            stderr=outcome.stderr,
            duration=duration,
            error=str(failure),
        )

    def _prepare_command(
        self,
        step: StepDefinition,
        instance: JobInstance,
        env: Mapping[str, str],
        cwd: Path,
    ) -> Tuple[str, Path]:
        command = render(step.command.run, matrix=instance.axes, env=env)
        cwd_template = step.command.cwd or instance.job.cwd
        if cwd_template:
            cwd = Path(cwd) / render(cwd_template, matrix=instance.axes, env=env)
        return command, Path(cwd)

    def _run_action(self, step: StepDefinition, instance: JobInstance, env: Mapping[str, str], cwd: Path):
        ref = step.action
        if self.actions is None:
            raise ActionNotFound(ref.name, ref.version)

        action = self._with_retry(lambda: self.actions.resolve(ref.name, ref.version))
        params = render_mapping(ref.params, matrix=instance.axes, env=env)
        if instance.job.cwd:
            cwd = Path(cwd) / render(instance.job.cwd, matrix=instance.axes, env=env)
        logger.debug("[%s] %s: %s %s", instance.name, step.display_name, ref.ref, params)
        return self._with_retry(lambda: action.run(params, env, Path(cwd)))

    def _with_retry(self, fn: Callable[[], T]) -> T:
        attempt = 0
        while True:
            try:
                return fn()
            except CollaboratorUnavailable as e:
                if attempt >= self.retries:
                    raise
                delay = self.backoff * (2 ** attempt)
                attempt += 1
                logger.warning(
                    "%s unavailable (attempt %d/%d), retrying in %.2fs: %s",
                    e.collaborator, attempt, self.retries + 1, delay, e.message,
                )
                self._sleep(delay)
