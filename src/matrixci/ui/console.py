"""Console output formatting utilities for matrixci."""

from __future__ import annotations

import sys
from typing import TYPE_CHECKING, Dict, List, Optional, TextIO

if TYPE_CHECKING:
    from ..model import JobInstance, PipelineConfig, PipelineReport

_STATUS_MARKS = {
    "success": "✓",
    "failure": "✗",
    "skipped": "⏭",
    "skipped-cancelled": "⊘",
    "cancelled": "⊘",
}


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False, out: Optional[TextIO] = None, err: Optional[TextIO] = None):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            out: Stream for regular output (defaults to sys.stdout at call time)
            err: Stream for errors (defaults to sys.stderr at call time)
        """
        self.debug = debug
        self._out = out
        self._err = err

    @property
    def out(self) -> TextIO:
        return self._out or sys.stdout

    @property
    def err(self) -> TextIO:
        return self._err or sys.stderr

    def _print(self, *args, **kwargs) -> None:
        print(*args, file=self.out, **kwargs)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._print(f"\n{title}")
        self._print("-" * len(title))

    def print_run_started(self, pipeline: str, event: str, source: str, instance_count: int) -> None:
        """Print run start information."""
        self._print("\nRUN STARTED")
        self._print(f"Pipeline: {pipeline}")
        self._print(f"Source: {source}")
        self._print(f"Event: {event}")
        self._print(f"Job instances: {instance_count}")
        self._print()

    def print_not_triggered(self, pipeline: str, event: str, triggers: List[str]) -> None:
        self._print(f"\nPipeline '{pipeline}' is not triggered by '{event}' (triggers: {', '.join(triggers)})")

    def print_plan(
        self,
        config: "PipelineConfig",
        stages: List[List[str]],
        instances: Dict[str, List["JobInstance"]],
        errors: Dict[str, str],
    ) -> None:
        """Print the expanded plan, one block per stage."""
        self.print_header(f"PLAN: {config.name}")
        self._print(f"Triggers: {', '.join(sorted(config.triggers))}")
        for idx, stage in enumerate(stages):
            self._print(f"\nStage {idx + 1}:")
            for job_name in stage:
                if job_name in errors:
                    self._print(f"  {job_name} (cannot expand: {errors[job_name]})")
                    continue
                for inst in instances.get(job_name, []):
                    self._print(f"  {inst.name} [runs-on: {inst.runs_on}]")
                    for step in inst.job.steps:
                        self._print(f"    - {step.display_name}")

    def print_report(self, report: "PipelineReport") -> None:
        """Print final results summary."""
        self._print("\n" + "=" * 40)
        self._print("RESULTS")
        self._print("=" * 40)
        for job_name, error in report.expansion_errors.items():
            self._print(f"  {job_name}: ERROR ({error})")
        for job in report.jobs:
            mark = _STATUS_MARKS.get(job.status, "?")
            line = f"  {mark} {job.instance.name}: {job.status.upper()} ({job.duration:.1f}s)"
            if job.blocked_by:
                line += f" [needs {job.blocked_by}]"
            self._print(line)
            for step in job.steps:
                step_mark = _STATUS_MARKS.get(step.status, "?")
                self._print(f"      {step_mark} {step.name}: {step.status} ({step.duration:.1f}s)")
            failed = job.failed_step
            if failed is not None:
                self.print_failure(failed.name, failed.error or "", exit_code=failed.exit_code,
                                   output=failed.stderr or failed.stdout)
        self._print("-" * 40)
        self._print(f"PIPELINE: {report.status.upper()} ({report.duration:.1f}s)")

    def print_failure(
        self,
        name: str,
        reason: str,
        exit_code: Optional[int] = None,
        output: bytes = b"",
        tail: int = 20,
    ) -> None:
        """
        Print failure details for a step.

        Args:
            name: Step name
            reason: Failure reason/error message
            exit_code: Optional exit code
            output: Captured output; only the last `tail` lines are shown unless debug
            tail: Number of output lines shown in non-debug mode
        """
        self._print(f"        STEP FAILED: {name}")
        if exit_code is not None:
            self._print(f"        Exit code: {exit_code}")
        if reason:
            first = reason.split("\n")[0]
            self._print(f"        Error: {reason if self.debug else first}")
        text = output.decode("utf-8", errors="replace").rstrip()
        if text:
            lines = text.splitlines()
            if not self.debug:
                lines = lines[-tail:]
            for line in lines:
                self._print(f"        | {line}")

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        print(f"\nERROR: {title}", file=self.err)
        print(f"{message}", file=self.err)
        if details:
            for detail in details:
                print(f"  {detail}", file=self.err)
        if suggestion:
            print(f"\n{suggestion}", file=self.err)

    def print_exception(self, exc: Exception) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exception(type(exc), exc, exc.__traceback__, file=self.err)
        else:
            print(f"Error: {exc}", file=self.err)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        self._print(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            print(f"[DEBUG] {message}", file=self.err)


# Global console instance (will be initialized by CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
