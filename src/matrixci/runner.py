# runner.py
from __future__ import annotations

import logging
import os
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Dict, List, Optional, Set, Tuple

from .actions import ActionRegistry
from .dag import build_dag, dependents_closure, topo_levels
from .errors import CancelledByFailFast, ConfigError
from .executor import CommandExecutor, StepExecutor, SubprocessExecutor, layer_env, resolve_env, step_label
from .interpolate import UnknownReference
from .matrix import expand
from .model import (
    CANCELLED,
    FAILURE,
    SKIPPED,
    JobInstance,
    JobReport,
    PipelineConfig,
    PipelineReport,
    StepResult,
)
from .report import ReportSink

logger = logging.getLogger(__name__)

# Run states
IDLE = "idle"
EXPANDING = "expanding"
RUNNING = "running"
AGGREGATING = "aggregating"
DONE = "done"

Plan = Tuple[List[List[str]], Dict[str, List[JobInstance]], Dict[str, str]]


def default_workers() -> int:
    c = os.cpu_count() or 2
    return max(1, c - 1)


class PipelineRunner:
    """
    Runs one PipelineConfig per triggered event.

    Instances (matrix legs) run concurrently on a thread pool; the steps of one
    instance run strictly in order. A failing step stops only its own instance
    unless fail-fast is on, in which case every other instance is cancelled at
    its next step boundary. Jobs with `needs` start once every instance of
    their dependencies succeeded.
    """

    def __init__(
        self,
        config: PipelineConfig,
        step_executor: StepExecutor,
        *,
        workspace: str | Path = ".",
        max_workers: int | None = None,
        fail_fast: bool | None = None,
        strict_axes: bool = False,
        isolate: bool = False,
        work_dir: str | Path = ".matrixci/work",
        sink: Optional[ReportSink] = None,
    ):
        self.config = config
        self.step_executor = step_executor
        self.workspace = Path(workspace).resolve()
        self.max_workers = max_workers or default_workers()
        self.fail_fast = config.fail_fast if fail_fast is None else fail_fast
        self.strict_axes = strict_axes
        self.isolate = isolate
        self.work_dir = Path(work_dir)
        self.sink = sink
        self.state = IDLE
        # pipeline env may reference keys declared above it
        self.base_env = resolve_env(config.env)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def triggered_by(self, event: str) -> bool:
        return event in self.config.triggers

    def expand_all(self) -> Tuple[Dict[str, List[JobInstance]], Dict[str, str]]:
        """
        Expand every job. With strict_axes a bad matrix aborts the run;
        otherwise the error is recorded against that job only.
        """
        instances: Dict[str, List[JobInstance]] = {}
        errors: Dict[str, str] = {}
        for job in self.config.jobs:
            try:
                instances[job.name] = expand(job)
            except ConfigError as e:
                if self.strict_axes:
                    raise
                logger.error("job '%s' cannot be expanded: %s", job.name, e)
                errors[job.name] = str(e)
        return instances, errors

    def plan(self) -> Plan:
        adj, indeg = build_dag(self.config.jobs)
        stages = topo_levels(adj, indeg)
        instances, errors = self.expand_all()
        return stages, instances, errors

    def run(self, event: str, cancel: Optional[threading.Event] = None) -> PipelineReport:
        """
        Execute the pipeline for `event` and return the complete report.

        `cancel` lets the caller stop the run (e.g. on Ctrl-C); it is also the
        event set by run-level fail-fast.
        """
        started = time.monotonic()
        self.state = IDLE

        if not self.triggered_by(event):
            logger.info("pipeline '%s' not triggered by '%s'", self.config.name, event)
            report = PipelineReport(pipeline=self.config.name, event=event, triggered=False)
            self._transition(DONE)
            self._emit(report)
            return report

        self._transition(EXPANDING)
        instances, errors = self.expand_all()

        self._transition(RUNNING)
        results = self._schedule(instances, errors, cancel or threading.Event())

        self._transition(AGGREGATING)
        ordered = [
            results[(job.name, inst.index)]
            for job in self.config.jobs
            for inst in instances.get(job.name, [])
        ]
        report = PipelineReport(
            pipeline=self.config.name,
            event=event,
            jobs=ordered,
            expansion_errors=errors,
            duration=time.monotonic() - started,
        )

        self._transition(DONE)
        logger.info("pipeline '%s' finished: %s", self.config.name, report.status)
        self._emit(report)
        return report

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def _schedule(
        self,
        instances: Dict[str, List[JobInstance]],
        errors: Dict[str, str],
        cancel: threading.Event,
    ) -> Dict[Tuple[str, int], JobReport]:
        adj, indeg = build_dag(self.config.jobs)
        indeg = dict(indeg)

        remaining: Dict[str, int] = {name: len(insts) for name, insts in instances.items()}
        job_ok: Dict[str, bool] = {job.name: True for job in self.config.jobs}
        job_cancel: Dict[str, threading.Event] = {job.name: threading.Event() for job in self.config.jobs}
        blocked: Set[str] = set()
        results: Dict[Tuple[str, int], JobReport] = {}
        ready: List[str] = []

        def job_finished(name: str, ok: bool) -> None:
            if ok:
                for nxt in sorted(adj[name]):
                    indeg[nxt] -= 1
                    if indeg[nxt] == 0 and nxt not in blocked and nxt not in errors:
                        ready.append(nxt)
                return
            for dependent in dependents_closure(adj, name):
                if dependent in blocked:
                    continue
                blocked.add(dependent)
                logger.info("job '%s' skipped: dependency '%s' failed", dependent, name)
                for inst in instances.get(dependent, []):
                    results[(dependent, inst.index)] = self._blocked_report(inst, name)

        for job in self.config.jobs:
            if job.name in errors:
                job_finished(job.name, ok=False)
        ready.extend(
            job.name for job in self.config.jobs
            if indeg[job.name] == 0 and job.name not in errors and job.name not in blocked
        )

        in_flight: Dict[Future, Tuple[str, int]] = {}

        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            try:
                while ready or in_flight:
                    # schedule every instance of every ready job
                    while ready:
                        name = ready.pop(0)
                        for inst in instances[name]:
                            fut = pool.submit(self._run_instance, inst, cancel, job_cancel[name])
                            in_flight[fut] = (name, inst.index)

                    if not in_flight:
                        break

                    # wait for one completion, then loop to schedule newly-ready jobs
                    fut = next(as_completed(list(in_flight.keys())))
                    name, index = in_flight.pop(fut)

                    try:
                        report = fut.result()
                    except Exception as e:
                        logger.exception("instance %s/%d crashed", name, index)
                        inst = instances[name][index]
                        report = self._crashed_report(inst, e)
                        self._signal_failure(inst, cancel, job_cancel[name])
                    results[(name, index)] = report

                    if not report.success:
                        job_ok[name] = False
                    remaining[name] -= 1
                    if remaining[name] == 0:
                        job_finished(name, job_ok[name])
            except KeyboardInterrupt:
                # running steps finish, nothing new starts
                cancel.set()
                raise

        return results

    # ------------------------------------------------------------------
    # One instance
    # ------------------------------------------------------------------

    def _instance_dir(self, inst: JobInstance) -> Path:
        if not self.isolate:
            return self.workspace
        path = self.workspace / self.work_dir / inst.slug
        path.mkdir(parents=True, exist_ok=True)
        return path

    def _job_env(self, inst: JobInstance) -> Dict[str, str]:
        return layer_env(self.base_env, inst.job.env, inst.axes)

    def _label_env(self, inst: JobInstance) -> Optional[Dict[str, str]]:
        try:
            return self._job_env(inst)
        except UnknownReference:
            return None

    def _signal_failure(self, inst: JobInstance, cancel: threading.Event, job_cancel: threading.Event) -> None:
        if inst.job.fail_fast:
            job_cancel.set()
        if self.fail_fast:
            cancel.set()

    def _run_instance(self, inst: JobInstance, cancel: threading.Event, job_cancel: threading.Event) -> JobReport:
        try:
            env = self._job_env(inst)
        except UnknownReference as e:
            logger.error("[%s] job env: %s", inst.name, e)
            report = self._failed_at_start(inst, f"job env: {e}")
            self._signal_failure(inst, cancel, job_cancel)
            return report

        cwd = self._instance_dir(inst)
        logger.info("[%s] started on %s", inst.name, inst.runs_on)
        results: List[StepResult] = []
        failed = False

        for i, step in enumerate(inst.job.steps):
            label = step_label(step, inst, env)
            if failed:
                results.append(StepResult(index=i, name=label, status=SKIPPED, error="previous step failed"))
                continue
            # cancellation is only honoured between steps
            if cancel.is_set() or job_cancel.is_set():
                results.append(
                    StepResult(index=i, name=label, status=CANCELLED, error=str(CancelledByFailFast(inst.name, label)))
                )
                continue

            logger.info("[%s] ▶ %s", inst.name, label)
            result = self.step_executor.execute(step, instance=inst, env=env, cwd=cwd, index=i)
            results.append(result)
            if not result.success:
                failed = True
                logger.error("[%s] ✗ %s: %s", inst.name, label, result.error)

        report = JobReport(instance=inst, steps=results)
        if failed:
            self._signal_failure(inst, cancel, job_cancel)
        logger.info("[%s] %s", inst.name, report.status)
        return report

    def _blocked_report(self, inst: JobInstance, dependency: str) -> JobReport:
        env = self._label_env(inst)
        steps = [
            StepResult(index=i, name=step_label(s, inst, env), status=SKIPPED, error=f"dependency '{dependency}' failed")
            for i, s in enumerate(inst.job.steps)
        ]
        return JobReport(instance=inst, steps=steps, blocked_by=dependency)

    def _failed_at_start(self, inst: JobInstance, error: str) -> JobReport:
        """First step failed with `error`, the rest skipped."""
        env = self._label_env(inst)
        first, *rest = inst.job.steps
        steps = [StepResult(index=0, name=step_label(first, inst, env), status=FAILURE, error=error)]
        steps += [
            StepResult(index=i, name=step_label(s, inst, env), status=SKIPPED, error="previous step failed")
            for i, s in enumerate(rest, start=1)
        ]
        return JobReport(instance=inst, steps=steps)

    def _crashed_report(self, inst: JobInstance, exc: Exception) -> JobReport:
        return self._failed_at_start(inst, f"{type(exc).__name__}: {exc}")

    # ------------------------------------------------------------------

    def _transition(self, state: str) -> None:
        logger.debug("pipeline '%s': %s -> %s", self.config.name, self.state, state)
        self.state = state

    def _emit(self, report: PipelineReport) -> None:
        if self.sink is None:
            return
        try:
            self.sink.emit(report)
        except Exception:
            logger.exception("report sink failed")


def run_pipeline(
    config: PipelineConfig,
    event: str,
    *,
    commands: Optional[CommandExecutor] = None,
    actions: Optional[ActionRegistry] = None,
    retries: int = 2,
    backoff: float = 0.5,
    cancel: Optional[threading.Event] = None,
    **runner_kwargs,
) -> PipelineReport:
    """Convenience wrapper: wire a StepExecutor and run the pipeline once."""
    commands = commands or SubprocessExecutor()
    executor = StepExecutor(commands, actions, retries=retries, backoff=backoff)
    runner = PipelineRunner(config, executor, **runner_kwargs)
    return runner.run(event, cancel=cancel)
