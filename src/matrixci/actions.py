# actions.py
"""
Action registry: `uses: name@version` -> something runnable.

An action is anything with `run(params, env, cwd) -> CommandOutcome`. Two
flavours ship here:

  - ShellAction:    a command template using ${{ inputs.<name> }}, executed
                    through the registry's command executor
  - CallableAction: a plain Python function

Registrations can live in a Python file that defines `register(registry)`:

    def register(registry):
        registry.shell("actions/checkout", "v2", "git status --short")

        @registry.action("local/hello", "*")
        def hello(params, env, cwd):
            print("hello", params.get("who", "world"))
            return 0
"""
from __future__ import annotations

import runpy
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Protocol, Tuple, Union

from .errors import ActionNotFound
from .executor import CommandExecutor, CommandOutcome
from .interpolate import render

ANY_VERSION = "*"


class Action(Protocol):
    def run(self, params: Mapping[str, str], env: Mapping[str, str], cwd: Path) -> CommandOutcome:
        ...


class ShellAction:
    """An action implemented as a shell command template."""

    def __init__(
        self,
        template: str,
        commands: CommandExecutor,
        *,
        defaults: Optional[Mapping[str, Any]] = None,
        required: Iterable[str] = (),
    ):
        self.template = template
        self.commands = commands
        self.defaults = dict(defaults or {})
        self.required = list(required)

    def run(self, params: Mapping[str, str], env: Mapping[str, str], cwd: Path) -> CommandOutcome:
        inputs = dict(self.defaults)
        inputs.update(params)
        missing = [r for r in self.required if inputs.get(r) in (None, "")]
        if missing:
            return CommandOutcome(exit_code=2, stderr=f"missing required input(s): {', '.join(missing)}\n".encode())
        command = render(self.template, env=env, inputs=inputs)
        return self.commands.execute(command, env, cwd)


ActionFn = Callable[[Mapping[str, str], Mapping[str, str], Path], Union[int, CommandOutcome, None]]


class CallableAction:
    """Wraps fn(params, env, cwd); returning None or an int is allowed."""

    def __init__(self, fn: ActionFn):
        self.fn = fn

    def run(self, params: Mapping[str, str], env: Mapping[str, str], cwd: Path) -> CommandOutcome:
        result = self.fn(params, env, cwd)
        if result is None:
            return CommandOutcome(exit_code=0)
        if isinstance(result, CommandOutcome):
            return result
        return CommandOutcome(exit_code=int(result))


class ActionRegistry:
    """Maps (name, version) to an Action. A version of "*" matches any version."""

    def __init__(self, commands: Optional[CommandExecutor] = None):
        self.commands = commands
        self._actions: Dict[Tuple[str, str], Action] = {}

    def register(self, name: str, version: str, action: Action) -> Action:
        key = (name, version)
        if key in self._actions:
            raise ValueError(f"Action already registered: {name}@{version}")
        self._actions[key] = action
        return action

    def action(self, name: str, version: str = ANY_VERSION):
        """Decorator: register a Python function as an action."""
        def decorator(fn: ActionFn) -> ActionFn:
            self.register(name, version, CallableAction(fn))
            return fn
        return decorator

    def shell(self, name: str, version: str, template: str, **kwargs: Any) -> ShellAction:
        if self.commands is None:
            raise ValueError("ActionRegistry has no command executor; pass one to register shell actions")
        action = ShellAction(template, self.commands, **kwargs)
        self.register(name, version, action)
        return action

    def resolve(self, name: str, version: str) -> Action:
        action = self._actions.get((name, version)) or self._actions.get((name, ANY_VERSION))
        if action is None:
            raise ActionNotFound(name, version)
        return action

    def __contains__(self, ref: str) -> bool:
        name, _, version = ref.rpartition("@")
        return (name, version) in self._actions or (name, ANY_VERSION) in self._actions

    def refs(self) -> List[str]:
        return sorted(f"{n}@{v}" for n, v in self._actions)


def load_actions(path: str | Path, registry: ActionRegistry) -> ActionRegistry:
    """
    Run a Python file that defines `register(registry)` and let it populate
    the registry.
    """
    actions_path = Path(path).expanduser().resolve()
    if not actions_path.exists():
        raise FileNotFoundError(f"Actions file not found: {actions_path}")
    if actions_path.suffix != ".py":
        raise ValueError(f"Actions file must be a .py file, got: {actions_path.name}")

    globals_dict = runpy.run_path(str(actions_path), run_name=f"matrixci_actions_{actions_path.stem}")
    register = globals_dict.get("register")
    if not callable(register):
        raise TypeError(f"{actions_path.name} must define register(registry)")
    register(registry)
    return registry
