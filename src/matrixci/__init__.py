from .actions import ActionRegistry, load_actions
from .config import load_config, parse_config
from .dsl import build, job, pipeline, sh, uses, JobBuilder
from .executor import CommandOutcome, StepExecutor, SubprocessExecutor
from .matrix import expand
from .model import JobDefinition, JobInstance, JobReport, PipelineConfig, PipelineReport, StepDefinition, StepResult
from .runner import PipelineRunner, run_pipeline

__all__ = [
    "ActionRegistry", "load_actions",
    "load_config", "parse_config",
    "build", "job", "pipeline", "sh", "uses", "JobBuilder",
    "CommandOutcome", "StepExecutor", "SubprocessExecutor",
    "expand",
    "JobDefinition", "JobInstance", "JobReport", "PipelineConfig", "PipelineReport", "StepDefinition", "StepResult",
    "PipelineRunner", "run_pipeline",
]
