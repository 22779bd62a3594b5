# interpolate.py
"""
`${{ namespace.key }}` template references.

Only three namespaces exist:
  - matrix: the job instance's axis assignment
  - env:    the layered environment visible at that point
  - inputs: parameters handed to a shell-template action

Unknown env keys render as an empty string (shell semantics). Unknown matrix
and inputs keys are errors; matrix keys are checked when the config is built.
"""
from __future__ import annotations

import re
from typing import Any, List, Mapping, Tuple

NAMESPACES = ("matrix", "env", "inputs")

_REF = re.compile(r"\$\{\{\s*([A-Za-z_][\w-]*)\.([A-Za-z0-9_][\w.-]*?)\s*\}\}")


class UnknownReference(KeyError):
    def __init__(self, namespace: str, key: str):
        super().__init__(f"{namespace}.{key}")
        self.namespace = namespace
        self.key = key

    def __str__(self) -> str:
        return f"unknown reference ${{{{ {self.namespace}.{self.key} }}}}"


def references(template: Any) -> List[Tuple[str, str]]:
    """Return every (namespace, key) referenced by the template, in order."""
    if not isinstance(template, str):
        return []
    return [(m.group(1), m.group(2)) for m in _REF.finditer(template)]


def stringify(value: Any) -> str:
    if isinstance(value, bool):
        # YAML true/false should look the way they were written
        return "true" if value else "false"
    return str(value)


def render(
    template: str,
    *,
    matrix: Mapping[str, Any] | None = None,
    env: Mapping[str, str] | None = None,
    inputs: Mapping[str, Any] | None = None,
) -> str:
    matrix = matrix or {}
    env = env or {}

    def _sub(m: re.Match) -> str:
        ns, key = m.group(1), m.group(2)
        if ns == "matrix":
            if key not in matrix:
                raise UnknownReference(ns, key)
            return stringify(matrix[key])
        if ns == "env":
            return env.get(key, "")
        if ns == "inputs":
            if inputs is None or key not in inputs:
                raise UnknownReference(ns, key)
            return stringify(inputs[key])
        raise UnknownReference(ns, key)

    return _REF.sub(_sub, template)


def render_mapping(
    values: Mapping[str, Any],
    *,
    matrix: Mapping[str, Any] | None = None,
    env: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """Render every value of a mapping; non-string values are stringified first."""
    return {
        k: render(stringify(v), matrix=matrix, env=env)
        for k, v in values.items()
    }
