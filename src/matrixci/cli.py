# cli.py
from __future__ import annotations

import logging
import sys
import threading
from pathlib import Path

import click

from matrixci import settings
from matrixci.actions import ActionRegistry, load_actions
from matrixci.config import load_config
from matrixci.errors import ConfigError
from matrixci.executor import StepExecutor, SubprocessExecutor
from matrixci.report import ConsoleSink, JsonReportSink, MultiSink
from matrixci.runner import PipelineRunner
from matrixci.ui.console import Console, get_console, set_console
from matrixci.ui.log import setup_logging

DEFAULT_CONFIG_NAMES = ("matrixci.yml", "matrixci.yaml", "matrixci_workflow.py")


def find_config_files(root: Path = Path(".")) -> list[Path]:
    """
    Find candidate pipeline files in a directory.

    Returns:
        List of Path objects for pipeline files
    """
    found = [root / name for name in DEFAULT_CONFIG_NAMES if (root / name).exists()]
    for path in sorted(root.glob("*.pipeline.yml")) + sorted(root.glob("*.pipeline.yaml")):
        if path not in found:
            found.append(path)
    return found


def discover_config(config_arg: str | None) -> Path:
    """
    Discover the pipeline file from argument or default.

    Raises:
        SystemExit: If the file cannot be found or several candidates exist
    """
    console = get_console()

    if config_arg:
        config_path = Path(config_arg)
        if not config_path.exists():
            console.print_error(
                "Pipeline file not found",
                f"Could not find pipeline file: {config_arg}",
                suggestion="Create a pipeline file or specify a different path:\n  matrixci run --config my.pipeline.yml",
            )
            sys.exit(1)
        return config_path

    candidates = find_config_files()

    if len(candidates) == 0:
        console.print_error(
            "No pipeline file found",
            "Could not find any pipeline files.",
            details=["Looked for:", *(f"  {n}" for n in DEFAULT_CONFIG_NAMES), "  *.pipeline.yml"],
            suggestion="Create matrixci.yml, or specify a pipeline explicitly:\n  matrixci run --config ci.yml",
        )
        sys.exit(1)

    if len(candidates) > 1:
        file_list = "\n".join(f"  {f}" for f in candidates)
        console.print_error(
            "Multiple pipeline files found",
            "Found multiple pipeline files. Please specify which one to use:",
            details=[file_list],
            suggestion="Specify a pipeline explicitly:\n  matrixci run --config matrixci.yml",
        )
        sys.exit(1)

    return candidates[0]


def _load(config_path: Path, ctx: click.Context):
    console = get_console()
    try:
        return load_config(config_path)
    except ConfigError as e:
        console.print_error("Invalid pipeline", str(e))
        sys.exit(1)
    except Exception as e:
        console.print_error(
            "Failed to load pipeline",
            f"Could not load pipeline from {config_path}",
            details=[str(e)],
        )
        if ctx.obj.get("debug", False):
            console.print_exception(e)
        sys.exit(1)


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """matrixci: matrix-aware CI pipeline runner."""
    console = Console(debug=debug)
    set_console(console)
    setup_logging(logging.DEBUG if debug else settings.LOG_LEVEL)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.option("--config", "config", default=None, help="Pipeline file (defaults to matrixci.yml if present)")
@click.pass_context
def validate(ctx, config):
    """Check that a pipeline file is well formed."""
    console = get_console()
    config_path = discover_config(config)
    pipeline = _load(config_path, ctx)
    console.print_info(
        f"{config_path}: OK ({len(pipeline.jobs)} job(s), triggers: {', '.join(sorted(pipeline.triggers))})"
    )


@cli.command()
@click.option("--config", "config", default=None, help="Pipeline file (defaults to matrixci.yml if present)")
@click.pass_context
def plan(ctx, config):
    """Show the job instances a run would execute."""
    console = get_console()
    config_path = discover_config(config)
    pipeline = _load(config_path, ctx)

    runner = PipelineRunner(pipeline, StepExecutor(SubprocessExecutor()))
    stages, instances, errors = runner.plan()
    console.print_plan(pipeline, stages, instances, errors)
    if errors:
        sys.exit(1)


@cli.command()
@click.option("--config", "config", default=None, help="Pipeline file (defaults to matrixci.yml if present)")
@click.option("--event", default=settings.EVENT, show_default=True, help="Trigger event for this run")
@click.option("--workers", default=settings.MAX_WORKERS, type=int, help="Number of parallel job instances")
@click.option("--fail-fast/--no-fail-fast", default=None, help="Cancel every instance after the first failure (overrides the pipeline)")
@click.option("--strict-axes/--lenient-axes", default=False, show_default=True, help="Abort the run if any job matrix cannot be expanded")
@click.option("--isolate/--no-isolate", default=False, show_default=True, help="Give every job instance its own working directory")
@click.option("--work-dir", default=settings.WORK_DIR, show_default=True, help="Base directory for isolated instances")
@click.option("--actions", "actions_file", default=None, help="Python file defining register(registry) for `uses:` steps")
@click.option("--report-json", default=None, help="Also write the report as JSON to this path")
@click.option("--retries", default=settings.RETRIES, show_default=True, type=int, help="Retries when a collaborator is unavailable")
@click.pass_context
def run(ctx, config, event, workers, fail_fast, strict_axes, isolate, work_dir, actions_file, report_json, retries):
    """Run a pipeline for one trigger event."""
    console = get_console()
    config_path = discover_config(config)
    pipeline = _load(config_path, ctx)

    commands = SubprocessExecutor(timeout=settings.COMMAND_TIMEOUT)
    registry = ActionRegistry(commands)
    cancel = threading.Event()

    try:
        if actions_file:
            load_actions(actions_file, registry)

        sinks = [ConsoleSink(console)]
        if report_json:
            sinks.append(JsonReportSink(report_json))

        runner = PipelineRunner(
            pipeline,
            StepExecutor(commands, registry, retries=retries, backoff=settings.BACKOFF_SECONDS),
            workspace=config_path.resolve().parent,
            max_workers=workers,
            fail_fast=fail_fast,
            strict_axes=strict_axes,
            isolate=isolate,
            work_dir=work_dir,
            sink=MultiSink(sinks),
        )
        console.print_debug(
            f"workspace={runner.workspace} workers={runner.max_workers} "
            f"fail_fast={runner.fail_fast} isolate={runner.isolate} actions={registry.refs()}"
        )

        if not runner.triggered_by(event):
            console.print_not_triggered(pipeline.name, event, sorted(pipeline.triggers))
            return

        _, instances, _ = runner.plan()
        console.print_run_started(
            pipeline=pipeline.name,
            event=event,
            source=config_path.name,
            instance_count=sum(len(v) for v in instances.values()),
        )

        report = runner.run(event, cancel=cancel)

        if not report.success:
            sys.exit(1)

    except KeyboardInterrupt:
        cancel.set()
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except ConfigError as e:
        console.print_error("Invalid pipeline", str(e))
        sys.exit(1)
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)


if __name__ == "__main__":
    cli()
