# src/matrixci/dsl.py
from __future__ import annotations

from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from .model import DEFAULT_RUNNER, JobDefinition, PipelineConfig, StepDefinition


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def sh(cmd: str, *, name: str | None = None, cwd: str | None = None,
       env: Optional[Dict[str, Any]] = None) -> StepDefinition:
    """Create a shell step."""
    return StepDefinition.shell(cmd, name=name, cwd=cwd, env=env)


def uses(ref: str, *, name: str | None = None, env: Optional[Dict[str, Any]] = None,
         **params: Any) -> StepDefinition:
    """
    Create an action step: uses("hecrj/setup-rust-action@v1.0.2", rust_version="nightly").

    Underscores in keyword names become dashes so they match `with:` keys.
    """
    with_ = {k.replace("_", "-"): v for k, v in params.items()}
    return StepDefinition.uses(ref, name=name, params=with_, env=env)


# ---------------------------------------------------------------------
# Functional Job helper
# ---------------------------------------------------------------------

def job(
    name: str,
    *steps: StepDefinition,  # allow: job("x", sh(...), sh(...))
    steps_list: Optional[List[StepDefinition]] = None,  # allow: job("x", steps_list=[...])
    runs_on: str = DEFAULT_RUNNER,
    matrix: Optional[Mapping[str, Sequence[Any]]] = None,
    include: Optional[List[Mapping[str, Any]]] = None,
    exclude: Optional[List[Mapping[str, Any]]] = None,
    env: Optional[Dict[str, Any]] = None,
    needs: Optional[List[str]] = None,
    fail_fast: bool = False,
    cwd: str | None = None,  # default working directory for command steps
) -> JobDefinition:
    steps_final: List[StepDefinition] = []
    if steps_list:
        steps_final.extend(list(steps_list))
    steps_final.extend(list(steps))

    return JobDefinition(
        name=name,
        steps=tuple(steps_final),
        runs_on=runs_on,
        matrix={k: list(v) for k, v in (matrix or {}).items()},
        include=tuple(include or ()),
        exclude=tuple(exclude or ()),
        env=env or {},
        needs=tuple(needs or ()),
        fail_fast=fail_fast,
        cwd=cwd,
    )


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class JobBuilder:
    def __init__(self, name: str):
        self.name = name
        self._runs_on: str = DEFAULT_RUNNER
        self._needs: list[str] = []
        self._steps: list[StepDefinition] = []
        self._env: dict[str, str] = {}
        self._matrix: dict[str, list] = {}
        self._include: list[dict] = []
        self._exclude: list[dict] = []
        self._fail_fast: bool = False
        self._cwd: str | None = None

    def runs_on(self, label: str):
        self._runs_on = label
        return self

    def depends_on(self, *job_names: str):
        self._needs.extend(job_names)
        return self

    def define_step(self, run: str, name: str | None = None, cwd: str | None = None, **env: Any):
        self._steps.append(sh(run, name=name, cwd=cwd, env=env or None))
        return self

    def use_action(self, ref: str, name: str | None = None, **params: Any):
        self._steps.append(uses(ref, name=name, **params))
        return self

    def with_env(self, **env):
        # force values to str so they are valid process env values
        self._env.update({k: str(v) for k, v in env.items()})
        return self

    def with_axis(self, axis: str, values: Iterable[Any]):
        self._matrix[axis] = list(values)
        return self

    def with_include(self, **entry: Any):
        self._include.append(entry)
        return self

    def with_exclude(self, **entry: Any):
        self._exclude.append(entry)
        return self

    def fail_fast(self, enabled: bool = True):
        self._fail_fast = enabled
        return self

    def in_directory(self, cwd: str):
        self._cwd = cwd
        return self

    def build(self) -> JobDefinition:
        return job(
            self.name,
            steps_list=self._steps,
            runs_on=self._runs_on,
            matrix=self._matrix,
            include=self._include,
            exclude=self._exclude,
            env=self._env,
            needs=self._needs,
            fail_fast=self._fail_fast,
            cwd=self._cwd,
        )


def build(name: str) -> JobBuilder:
    """Convenience: build('test').define_step(...).build()"""
    return JobBuilder(name)


# ---------------------------------------------------------------------
# Pipeline helper (single-file story)
# ---------------------------------------------------------------------

def pipeline(
    *jobs: JobDefinition,
    on: Iterable[str] = ("push",),
    env: Optional[Dict[str, Any]] = None,
    name: str = "pipeline",
    fail_fast: bool = False,
) -> PipelineConfig:
    """
    Pipeline definition helper.

    Users can write:
        from matrixci.dsl import pipeline, job, sh

        def workflow():
            return pipeline(
                job("build", sh("cargo build"), matrix={"os": ["ubuntu", "macos"]}),
                on=["push"],
            )
    """
    if isinstance(on, str):
        on = [on]
    return PipelineConfig(
        name=name,
        triggers=frozenset(on),
        jobs=tuple(jobs),
        env=env or {},
        fail_fast=fail_fast,
    )
