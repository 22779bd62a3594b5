"""Shared fixtures: an in-memory command executor and small config helpers."""
from __future__ import annotations

import logging
import textwrap
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Tuple, Union

import pytest

from matrixci.config import load_yaml, parse_config
from matrixci.executor import CommandOutcome, StepExecutor

Rule = Union[CommandOutcome, Callable[[str, Dict[str, str], Path], CommandOutcome]]


@dataclass
class Call:
    command: str
    env: Dict[str, str] = field(default_factory=dict)
    cwd: Path = Path(".")


class FakeCommandExecutor:
    """
    Records every command and answers from rules.

    The first rule whose fragment occurs in the command wins; commands that
    match nothing succeed and echo themselves on stdout. Safe to call from
    several worker threads.
    """

    def __init__(self):
        self.calls: List[Call] = []
        self.rules: List[Tuple[str, Rule]] = []
        self._lock = threading.Lock()

    def on(self, fragment: str, exit_code: int = 0, stdout: bytes = b"", stderr: bytes = b"", hook=None):
        self.rules.append((fragment, hook or CommandOutcome(exit_code, stdout, stderr)))
        return self

    def execute(self, command, env, cwd):
        with self._lock:
            self.calls.append(Call(command, dict(env), Path(cwd)))
        for fragment, rule in self.rules:
            if fragment in command:
                return rule(command, env, cwd) if callable(rule) else rule
        return CommandOutcome(0, stdout=f"{command}\n".encode())

    @property
    def commands(self) -> List[str]:
        with self._lock:
            return [c.command for c in self.calls]


@pytest.fixture
def fake():
    return FakeCommandExecutor()


@pytest.fixture
def step_executor(fake):
    return StepExecutor(fake, retries=2, backoff=0.01, sleep=lambda _s: None)


@pytest.fixture(autouse=True)
def _reset_matrixci_logger():
    yield
    # CliRunner closes the streams the CLI attached handlers to
    logger = logging.getLogger("matrixci")
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)
    logger.setLevel(logging.NOTSET)


def config_from_yaml(text: str, source: str = "test.yml"):
    return parse_config(load_yaml(textwrap.dedent(text), source=source), source=source)
