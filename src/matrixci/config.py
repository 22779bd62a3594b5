# config.py
"""
Pipeline documents -> PipelineConfig.

YAML documents follow the GitHub Actions workflow layout:

    name: Rust
    on: [push]
    env:
      CARGO_TERM_COLOR: always
    jobs:
      build:
        runs-on: ${{ matrix.os }}
        strategy:
          fail-fast: false
          matrix:
            os: [ubuntu-20.04]
            rust: [nightly]
        steps:
          - name: Build
            run: cargo build --verbose
          - uses: hecrj/setup-rust-action@v1.0.2
            with:
              rust-version: ${{ matrix.rust }}

Python workflow files define `workflow()` (or `PIPELINE`) returning a
PipelineConfig built with matrixci.dsl, or a plain mapping in the layout above.
"""
from __future__ import annotations

import logging
import runpy
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Tuple

import yaml

from .errors import DuplicateJobName, MalformedConfig
from .model import DEFAULT_RUNNER, JobDefinition, PipelineConfig, StepDefinition

logger = logging.getLogger(__name__)

YAML_SUFFIXES = (".yml", ".yaml")

_PIPELINE_KEYS = {"name", "on", True, "env", "jobs", "fail-fast"}
_JOB_KEYS = {"name", "runs-on", "needs", "env", "defaults", "strategy", "steps"}
_STEP_KEYS = {"name", "run", "uses", "with", "env", "working-directory"}


# ----------------------------------------------------------------------
# YAML loading (duplicate keys are remembered, not silently dropped)
# ----------------------------------------------------------------------

class _Mapping(dict):
    duplicate_keys: List[Any]


class _Loader(yaml.SafeLoader):
    pass


def _construct_mapping(loader: _Loader, node: yaml.MappingNode) -> _Mapping:
    loader.flatten_mapping(node)
    out = _Mapping()
    out.duplicate_keys = []
    for key_node, value_node in node.value:
        key = loader.construct_object(key_node, deep=True)
        value = loader.construct_object(value_node, deep=True)
        if key in out:
            out.duplicate_keys.append(key)
        out[key] = value
    return out


_Loader.add_constructor(yaml.resolver.BaseResolver.DEFAULT_MAPPING_TAG, _construct_mapping)


def load_yaml(text: str, *, source: str | None = None) -> Any:
    try:
        return yaml.load(text, Loader=_Loader)
    except yaml.YAMLError as e:
        raise MalformedConfig(f"invalid YAML: {e}", source=source) from e


# ----------------------------------------------------------------------
# Field helpers
# ----------------------------------------------------------------------

def _duplicates(mapping: Mapping) -> List[Any]:
    return list(getattr(mapping, "duplicate_keys", []) or [])


def _warn_unknown(mapping: Mapping, allowed: Iterable[Any], where: str) -> None:
    allowed = set(allowed)
    for key in mapping:
        if key not in allowed:
            logger.warning("%s: ignoring unsupported key %r", where, key)


def _mapping(value: Any, where: str, *, required: bool = False) -> Mapping:
    if value is None:
        if required:
            raise MalformedConfig("is required", where=where)
        return {}
    if not isinstance(value, Mapping):
        raise MalformedConfig(f"must be a mapping, got {type(value).__name__}", where=where)
    dupes = _duplicates(value)
    if dupes:
        raise MalformedConfig(f"duplicate keys {dupes}", where=where)
    return value


def _str_list(value: Any, where: str) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if isinstance(value, list) and all(isinstance(v, str) for v in value):
        return list(value)
    raise MalformedConfig("must be a string or a list of strings", where=where)


def _bool(value: Any, where: str) -> bool:
    if not isinstance(value, bool):
        raise MalformedConfig(f"must be true or false, got {value!r}", where=where)
    return value


def _env(value: Any, where: str) -> Dict[str, str]:
    env = _mapping(value, where)
    out: Dict[str, str] = {}
    for k, v in env.items():
        if isinstance(v, (Mapping, list)) or v is None:
            raise MalformedConfig("environment values must be scalars", where=f"{where}.{k}")
        out[str(k)] = v
    return out


def _parse_triggers(document: Mapping) -> List[str]:
    # YAML 1.1 reads a bare `on` key as boolean true
    raw = document.get("on", document.get(True))
    if raw is None:
        raise MalformedConfig("pipeline must declare its triggers", where="on")
    if isinstance(raw, str):
        triggers = [raw]
    elif isinstance(raw, list):
        triggers = _str_list(raw, "on")
    elif isinstance(raw, Mapping):
        triggers = [str(k) for k in raw]
    else:
        raise MalformedConfig("must be an event name, a list or a mapping", where="on")
    if not triggers:
        raise MalformedConfig("pipeline must declare at least one trigger", where="on")
    return triggers


# ----------------------------------------------------------------------
# Steps / jobs
# ----------------------------------------------------------------------

def _parse_step(raw: Any, where: str) -> StepDefinition:
    step = _mapping(raw, where, required=True)
    _warn_unknown(step, _STEP_KEYS, where)

    has_run, has_uses = "run" in step, "uses" in step
    if has_run == has_uses:
        raise MalformedConfig("step must have exactly one of 'run' or 'uses'", where=where)

    name = step.get("name")
    if name is not None and not isinstance(name, str):
        name = str(name)
    env = _env(step.get("env"), f"{where}.env")

    try:
        if has_run:
            if "with" in step:
                raise MalformedConfig("'with' is only valid on 'uses' steps")
            run = step["run"]
            if not isinstance(run, str) or not run.strip():
                raise MalformedConfig("'run' must be a non-empty string")
            cwd = step.get("working-directory")
            return StepDefinition.shell(run, name=name, cwd=str(cwd) if cwd is not None else None, env=env)

        if "working-directory" in step:
            raise MalformedConfig("'working-directory' is only valid on 'run' steps")
        params = _mapping(step.get("with"), f"{where}.with")
        return StepDefinition.uses(str(step["uses"]), name=name, params=dict(params), env=env)
    except MalformedConfig as e:
        if e.where is None:
            e.where = where
        raise


def _parse_matrix(raw: Any, where: str) -> Tuple[Dict[str, list], List[dict], List[dict]]:
    matrix = _mapping(raw, where)
    axes: Dict[str, list] = {}
    include: List[dict] = []
    exclude: List[dict] = []

    for key, values in matrix.items():
        if key in ("include", "exclude"):
            if not isinstance(values, list) or not all(isinstance(e, Mapping) for e in values):
                raise MalformedConfig(f"'{key}' must be a list of mappings", where=f"{where}.{key}")
            (include if key == "include" else exclude).extend(dict(e) for e in values)
            continue
        if not isinstance(values, list):
            raise MalformedConfig("matrix axis must be a list of values", where=f"{where}.{key}")
        axes[str(key)] = values

    return axes, include, exclude


def _parse_job(name: str, raw: Any) -> JobDefinition:
    where = f"jobs.{name}"
    job = _mapping(raw, where, required=True)
    _warn_unknown(job, _JOB_KEYS, where)

    runs_on = job.get("runs-on", DEFAULT_RUNNER)
    if not isinstance(runs_on, str):
        raise MalformedConfig("must be a runner label", where=f"{where}.runs-on")

    strategy = _mapping(job.get("strategy"), f"{where}.strategy")
    axes, include, exclude = _parse_matrix(strategy.get("matrix"), f"{where}.strategy.matrix")
    fail_fast = _bool(strategy.get("fail-fast", False), f"{where}.strategy.fail-fast")

    defaults = _mapping(job.get("defaults"), f"{where}.defaults")
    run_defaults = _mapping(defaults.get("run"), f"{where}.defaults.run")
    cwd = run_defaults.get("working-directory")

    raw_steps = job.get("steps")
    if raw_steps is None:
        raise MalformedConfig("job must have at least one step", where=f"{where}.steps")
    if not isinstance(raw_steps, list):
        raise MalformedConfig("must be a list of steps", where=f"{where}.steps")
    steps = [_parse_step(s, f"{where}.steps[{i}]") for i, s in enumerate(raw_steps)]

    return JobDefinition(
        name=name,
        steps=tuple(steps),
        runs_on=runs_on,
        matrix=axes,
        env=_env(job.get("env"), f"{where}.env"),
        needs=tuple(_str_list(job.get("needs"), f"{where}.needs")),
        fail_fast=fail_fast,
        cwd=str(cwd) if cwd is not None else None,
        include=tuple(include),
        exclude=tuple(exclude),
    )


def _parse_jobs(raw: Any) -> List[JobDefinition]:
    if raw is None:
        raise MalformedConfig("pipeline must declare at least one job", where="jobs")

    if isinstance(raw, Mapping):
        dupes = _duplicates(raw)
        if dupes:
            raise DuplicateJobName(str(dupes[0]))
        return [_parse_job(str(name), job) for name, job in raw.items()]

    if isinstance(raw, list):
        jobs: List[JobDefinition] = []
        for i, job in enumerate(raw):
            if not isinstance(job, Mapping) or not job.get("name"):
                raise MalformedConfig("list-form jobs need a 'name'", where=f"jobs[{i}]")
            jobs.append(_parse_job(str(job["name"]), job))
        return jobs

    raise MalformedConfig("must be a mapping or a list of jobs", where="jobs")


# ----------------------------------------------------------------------
# Public API
# ----------------------------------------------------------------------

def parse_config(document: Any, *, source: str | None = None, default_name: str = "pipeline") -> PipelineConfig:
    """Build a PipelineConfig from an already-decoded document."""
    try:
        if not isinstance(document, Mapping):
            raise MalformedConfig("pipeline document must be a mapping")
        dupes = _duplicates(document)
        if dupes:
            raise MalformedConfig(f"duplicate top-level keys {dupes}")
        _warn_unknown(document, _PIPELINE_KEYS, "pipeline")

        return PipelineConfig(
            name=str(document.get("name") or default_name),
            triggers=frozenset(_parse_triggers(document)),
            env=_env(document.get("env"), "env"),
            jobs=tuple(_parse_jobs(document.get("jobs"))),
            fail_fast=_bool(document.get("fail-fast", False), "fail-fast"),
        )
    except (MalformedConfig, DuplicateJobName) as e:
        if e.source is None:
            e.source = source
        raise


def load_config(path: str | Path) -> PipelineConfig:
    """
    Load a pipeline from a .yml/.yaml document or a .py workflow file.

    A .py file must define either:
      - workflow() -> PipelineConfig | mapping
      - PIPELINE = PipelineConfig | mapping
    """
    cfg_path = Path(path).expanduser().resolve()
    if not cfg_path.exists():
        raise FileNotFoundError(f"Pipeline file not found: {cfg_path}")

    if cfg_path.suffix in YAML_SUFFIXES:
        document = load_yaml(cfg_path.read_text(encoding="utf-8"), source=cfg_path.name)
        return parse_config(document, source=cfg_path.name, default_name=cfg_path.stem)

    if cfg_path.suffix == ".py":
        globals_dict = runpy.run_path(str(cfg_path), run_name=f"matrixci_workflow_{cfg_path.stem}")
        if "workflow" in globals_dict and callable(globals_dict["workflow"]):
            loaded = globals_dict["workflow"]()
        elif "PIPELINE" in globals_dict:
            loaded = globals_dict["PIPELINE"]
        else:
            raise TypeError(f"{cfg_path.name} must define workflow() or PIPELINE")

        if isinstance(loaded, PipelineConfig):
            return loaded
        if isinstance(loaded, Mapping):
            return parse_config(loaded, source=cfg_path.name, default_name=cfg_path.stem)
        raise TypeError(
            "Workflow must return/define a PipelineConfig or a mapping. "
            "Build one with matrixci.dsl.pipeline(...)."
        )

    raise ValueError(f"Unsupported pipeline file type: {cfg_path.name} (expected .yml, .yaml or .py)")

