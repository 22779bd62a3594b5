# errors.py
from __future__ import annotations

from dataclasses import dataclass, field


class PipelineError(Exception):
    """Base class for everything matrixci raises on purpose."""


class ConfigError(PipelineError):
    """Raised while building a PipelineConfig. Fatal to the whole run."""


@dataclass
class MalformedConfig(ConfigError):
    """
    Structured config error.

    `where` is a dotted location inside the document (e.g. "jobs.build.steps[2]")
    so the CLI can point at the offending entry without a traceback.
    """
    message: str
    where: str | None = None
    source: str | None = None

    def __str__(self) -> str:
        prefix = ""
        if self.source:
            prefix += f"{self.source}: "
        if self.where:
            prefix += f"{self.where}: "
        return f"{prefix}{self.message}"


@dataclass
class DuplicateJobName(ConfigError):
    name: str
    source: str | None = None

    def __str__(self) -> str:
        prefix = f"{self.source}: " if self.source else ""
        return f"{prefix}duplicate job name: {self.name!r}"


@dataclass
class EmptyAxis(ConfigError):
    job: str
    axis: str

    def __str__(self) -> str:
        return f"job '{self.job}': matrix axis '{self.axis}' has no values"


@dataclass
class StepExecutionFailure(PipelineError):
    """A step ran and reported a non-zero status."""
    job: str
    step: str
    exit_code: int
    command: str | None = None

    def __str__(self) -> str:
        msg = f"[{self.job}] step '{self.step}' failed (exit={self.exit_code})"
        if self.command:
            msg += f": {self.command}"
        return msg


@dataclass
class CollaboratorUnavailable(PipelineError):
    """The command executor or action registry could not be reached."""
    collaborator: str
    message: str
    details: dict = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [f"{self.collaborator} unavailable: {self.message}"]
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


@dataclass
class ActionNotFound(PipelineError):
    name: str
    version: str

    def __str__(self) -> str:
        return f"action not registered: {self.name}@{self.version}"


@dataclass
class CancelledByFailFast(PipelineError):
    """Recorded for steps that never ran because the run was cancelled."""
    job: str
    step: str

    def __str__(self) -> str:
        return f"[{self.job}] step '{self.step}' cancelled (fail-fast)"
