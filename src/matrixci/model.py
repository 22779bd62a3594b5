# model.py
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Tuple

from .dag import build_dag, topo_levels
from .errors import MalformedConfig
from .interpolate import NAMESPACES, UnknownReference, references, render, stringify

# Step kinds (tag of the StepDefinition union)
COMMAND = "command"
ACTION = "action"

# Step / job statuses
SUCCESS = "success"
FAILURE = "failure"
SKIPPED = "skipped"
CANCELLED = "skipped-cancelled"

DEFAULT_RUNNER = "local"


@dataclass(frozen=True)
class ActionRef:
    """A reusable action: `uses: name@version` plus its `with:` parameters."""
    name: str
    version: str
    params: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "params", dict(self.params))

    @property
    def ref(self) -> str:
        return f"{self.name}@{self.version}"

    @classmethod
    def parse(cls, ref: str, params: Optional[Mapping[str, Any]] = None) -> "ActionRef":
        name, sep, version = str(ref).strip().rpartition("@")
        if not sep or not name or not version:
            raise MalformedConfig(f"action reference must look like name@version, got {ref!r}")
        return cls(name=name, version=version, params=params or {})


@dataclass(frozen=True)
class CommandStep:
    """An inline shell command template."""
    run: str
    cwd: str | None = None


@dataclass(frozen=True)
class StepDefinition:
    """
    Tagged union: `kind` says which of `command` / `action` is populated.

    `name` and `env` apply to either variant. `env` holds step-local overrides
    layered on top of the job environment.
    """
    kind: str
    command: Optional[CommandStep] = None
    action: Optional[ActionRef] = None
    name: str | None = None
    env: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.kind == COMMAND:
            if self.command is None or self.action is not None:
                raise MalformedConfig("command step must carry exactly a command")
        elif self.kind == ACTION:
            if self.action is None or self.command is not None:
                raise MalformedConfig("action step must carry exactly an action reference")
        else:
            raise MalformedConfig(f"unknown step kind {self.kind!r}")
        object.__setattr__(self, "env", {k: stringify(v) for k, v in self.env.items()})

    @classmethod
    def shell(cls, run: str, *, name: str | None = None, cwd: str | None = None,
              env: Optional[Mapping[str, str]] = None) -> "StepDefinition":
        return cls(kind=COMMAND, command=CommandStep(run=run, cwd=cwd), name=name, env=env or {})

    @classmethod
    def uses(cls, ref: str, *, name: str | None = None, params: Optional[Mapping[str, Any]] = None,
             env: Optional[Mapping[str, str]] = None) -> "StepDefinition":
        return cls(kind=ACTION, action=ActionRef.parse(ref, params), name=name, env=env or {})

    @property
    def display_name(self) -> str:
        if self.name:
            return self.name
        if self.kind == COMMAND:
            first = self.command.run.strip().splitlines()
            return f"Run {first[0]}" if first else "Run"
        return f"Run {self.action.ref}"

    def templates(self) -> List[str]:
        """Every string that is interpolated when the step runs."""
        out = [v for v in self.env.values()]
        if self.name:
            out.append(self.name)
        if self.kind == COMMAND:
            out.append(self.command.run)
            if self.command.cwd:
                out.append(self.command.cwd)
        else:
            out.extend(stringify(v) for v in self.action.params.values())
        return out


def _has_duplicates(values: Tuple[Any, ...]) -> bool:
    # values may be unhashable (mappings are valid matrix values)
    for i, v in enumerate(values):
        if v in values[i + 1:]:
            return True
    return False


@dataclass(frozen=True)
class JobDefinition:
    """
    A CI job: runner label, matrix axes and an ordered list of steps.

    `needs` orders jobs against each other; `fail_fast` cancels the sibling
    matrix legs of this job once one of them fails.
    """
    name: str
    steps: Tuple[StepDefinition, ...]
    runs_on: str = DEFAULT_RUNNER
    matrix: Mapping[str, Tuple[Any, ...]] = field(default_factory=dict)
    env: Mapping[str, str] = field(default_factory=dict)
    needs: Tuple[str, ...] = ()
    fail_fast: bool = False
    cwd: str | None = None
    include: Tuple[Mapping[str, Any], ...] = ()
    exclude: Tuple[Mapping[str, Any], ...] = ()

    def __post_init__(self) -> None:
        where = f"jobs.{self.name}"
        if not self.name:
            raise MalformedConfig("job name must not be empty", where="jobs")

        object.__setattr__(self, "steps", tuple(self.steps))
        object.__setattr__(self, "needs", tuple(self.needs))
        object.__setattr__(self, "env", {k: stringify(v) for k, v in self.env.items()})
        object.__setattr__(self, "matrix", {k: tuple(v) for k, v in self.matrix.items()})
        object.__setattr__(self, "include", tuple(dict(e) for e in self.include))
        object.__setattr__(self, "exclude", tuple(dict(e) for e in self.exclude))

        if not self.steps:
            raise MalformedConfig("job must have at least one step", where=f"{where}.steps")

        for axis, values in self.matrix.items():
            if _has_duplicates(values):
                raise MalformedConfig(f"axis '{axis}' lists a value more than once", where=f"{where}.strategy.matrix")

        for entry in self.exclude:
            unknown = sorted(k for k in entry if k not in self.matrix)
            if unknown:
                raise MalformedConfig(f"exclude references unknown axes {unknown}", where=f"{where}.strategy.matrix.exclude")

        self._check_references(where)

    @property
    def axes(self) -> List[str]:
        return list(self.matrix)

    @property
    def known_axes(self) -> FrozenSet[str]:
        keys = set(self.matrix)
        for entry in self.include:
            keys.update(entry)
        return frozenset(keys)

    def _check_references(self, where: str) -> None:
        known = self.known_axes
        checks: List[Tuple[str, str]] = [(f"{where}.runs-on", self.runs_on)]
        checks += [(f"{where}.env.{k}", v) for k, v in self.env.items()]
        if self.cwd:
            checks.append((f"{where}.defaults.run.working-directory", self.cwd))
        for i, step in enumerate(self.steps):
            checks += [(f"{where}.steps[{i}]", t) for t in step.templates()]

        for loc, template in checks:
            for ns, key in references(template):
                if ns not in NAMESPACES or ns == "inputs":
                    raise MalformedConfig(f"unsupported reference namespace '{ns}'", where=loc)
                if ns == "matrix" and key not in known:
                    raise MalformedConfig(
                        f"references matrix axis '{key}' which is not declared (axes: {sorted(known)})",
                        where=loc,
                    )


@dataclass(frozen=True)
class PipelineConfig:
    """A whole pipeline. Immutable once built."""
    triggers: FrozenSet[str]
    jobs: Tuple[JobDefinition, ...]
    env: Mapping[str, str] = field(default_factory=dict)
    name: str = "pipeline"
    fail_fast: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "triggers", frozenset(self.triggers))
        object.__setattr__(self, "jobs", tuple(self.jobs))
        object.__setattr__(self, "env", {k: stringify(v) for k, v in self.env.items()})

        if not self.triggers:
            raise MalformedConfig("pipeline must declare at least one trigger", where="on")
        if not self.jobs:
            raise MalformedConfig("pipeline must declare at least one job", where="jobs")

        for k, v in self.env.items():
            for ns, _key in references(v):
                if ns != "env":
                    raise MalformedConfig(f"pipeline env may only reference env, not '{ns}'", where=f"env.{k}")

        # duplicate names, unknown needs and cycles
        adj, indeg = build_dag(self.jobs)
        topo_levels(adj, indeg)

    def job(self, name: str) -> JobDefinition:
        for j in self.jobs:
            if j.name == name:
                return j
        raise KeyError(name)

    @property
    def job_names(self) -> List[str]:
        return [j.name for j in self.jobs]


_SLUG = re.compile(r"[^A-Za-z0-9_.-]+")


@dataclass(frozen=True)
class JobInstance:
    """A JobDefinition bound to one concrete axis assignment."""
    job: JobDefinition
    axes: Mapping[str, Any] = field(default_factory=dict)
    index: int = 0

    @property
    def name(self) -> str:
        if not self.axes:
            return self.job.name
        return f"{self.job.name} ({', '.join(stringify(v) for v in self.axes.values())})"

    @property
    def runs_on(self) -> str:
        try:
            return render(self.job.runs_on, matrix=self.axes)
        except UnknownReference:
            # axis only introduced by some include entries
            return self.job.runs_on

    @property
    def slug(self) -> str:
        """Filesystem-safe identifier, unique within a run."""
        return _SLUG.sub("-", f"{self.job.name}-{self.index}").strip("-")


def _tail(data: bytes, limit: int) -> str:
    # data[-0:] would be the whole buffer
    if limit <= 0:
        return ""
    return data[-limit:].decode("utf-8", errors="replace")


@dataclass
class StepResult:
    index: int
    name: str
    status: str
    exit_code: int | None = None
    stdout: bytes = b""
    stderr: bytes = b""
    duration: float = 0.0
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.status == SUCCESS

    def to_dict(self, output_limit: int = 4000) -> Dict[str, Any]:
        return {
            "index": self.index,
            "name": self.name,
            "status": self.status,
            "exit_code": self.exit_code,
            "duration": round(self.duration, 3),
            "stdout": _tail(self.stdout, output_limit),
            "stderr": _tail(self.stderr, output_limit),
            "error": self.error,
        }


@dataclass
class JobReport:
    instance: JobInstance
    steps: List[StepResult] = field(default_factory=list)
    blocked_by: str | None = None  # name of the failed dependency, if any

    @property
    def success(self) -> bool:
        return bool(self.steps) and all(s.success for s in self.steps)

    @property
    def status(self) -> str:
        if self.success:
            return SUCCESS
        if any(s.status == FAILURE for s in self.steps):
            return FAILURE
        if any(s.status == CANCELLED for s in self.steps):
            return "cancelled"
        return SKIPPED

    @property
    def failed_step(self) -> Optional[StepResult]:
        for s in self.steps:
            if s.status == FAILURE:
                return s
        return None

    @property
    def duration(self) -> float:
        return sum(s.duration for s in self.steps)

    def to_dict(self, output_limit: int = 4000) -> Dict[str, Any]:
        return {
            "job": self.instance.job.name,
            "name": self.instance.name,
            "runs_on": self.instance.runs_on,
            "matrix": {k: stringify(v) for k, v in self.instance.axes.items()},
            "status": self.status,
            "success": self.success,
            "blocked_by": self.blocked_by,
            "duration": round(self.duration, 3),
            "steps": [s.to_dict(output_limit) for s in self.steps],
        }


@dataclass
class PipelineReport:
    pipeline: str
    event: str
    triggered: bool = True
    jobs: List[JobReport] = field(default_factory=list)
    expansion_errors: Dict[str, str] = field(default_factory=dict)
    duration: float = 0.0

    @property
    def success(self) -> bool:
        return not self.expansion_errors and all(j.success for j in self.jobs)

    @property
    def status(self) -> str:
        if not self.triggered:
            return "not-triggered"
        return SUCCESS if self.success else FAILURE

    @property
    def failed_jobs(self) -> List[JobReport]:
        return [j for j in self.jobs if not j.success]

    def jobs_named(self, name: str) -> List[JobReport]:
        return [j for j in self.jobs if j.instance.job.name == name]

    def to_dict(self, output_limit: int = 4000) -> Dict[str, Any]:
        return {
            "pipeline": self.pipeline,
            "event": self.event,
            "triggered": self.triggered,
            "status": self.status,
            "success": self.success,
            "duration": round(self.duration, 3),
            "expansion_errors": dict(self.expansion_errors),
            "jobs": [j.to_dict(output_limit) for j in self.jobs],
        }
