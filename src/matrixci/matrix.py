# matrix.py
from __future__ import annotations

import itertools
from typing import Any, Dict, List, Mapping

from .errors import EmptyAxis, MalformedConfig
from .model import JobDefinition, JobInstance


def _matches(combo: Mapping[str, Any], entry: Mapping[str, Any]) -> bool:
    return all(k in combo and combo[k] == v for k, v in entry.items())


def _apply_include(
    combos: List[Dict[str, Any]],
    include: List[Mapping[str, Any]],
    original_axes: List[str],
) -> List[Dict[str, Any]]:
    """
    An include entry extends every original combination it does not conflict
    with on an original axis. Values added by earlier includes may be
    overwritten, original axis values never are. An entry that extends nothing
    becomes a combination of its own.
    """
    base = len(combos)
    for entry in include:
        extended = False
        for combo in combos[:base]:
            if all(combo[k] == v for k, v in entry.items() if k in original_axes):
                combo.update(entry)
                extended = True
        if not extended:
            combos.append(dict(entry))
    return combos


def combinations(job: JobDefinition) -> List[Dict[str, Any]]:
    """
    Axis assignments for a job, in declaration order:
    axes in the order they were declared, values in the order they were listed,
    rightmost axis varying fastest.
    """
    for axis, values in job.matrix.items():
        if not values:
            raise EmptyAxis(job=job.name, axis=axis)

    axes = job.axes
    if not axes:
        # no axes: one plain instance, or one per include entry
        return [dict(e) for e in job.include] or [{}]

    combos = [dict(zip(axes, values)) for values in itertools.product(*(job.matrix[a] for a in axes))]
    combos = [c for c in combos if not any(_matches(c, e) for e in job.exclude)]
    combos = _apply_include(combos, list(job.include), axes)

    if not combos:
        raise MalformedConfig(
            "every matrix combination is excluded",
            where=f"jobs.{job.name}.strategy.matrix",
        )
    return combos


def expand(job: JobDefinition) -> List[JobInstance]:
    """Expand one job definition into its concrete instances."""
    return [JobInstance(job=job, axes=combo, index=i) for i, combo in enumerate(combinations(job))]
