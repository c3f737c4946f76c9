from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, ClassVar, Sequence
import subprocess

from ..executors import Executor
from ..types import Action, ApplyResult


class Provider(ABC):
    """Inspect/apply surface over one external subsystem."""

    kind: ClassVar[str] = ""

    @abstractmethod
    def inspect(self, resource: Any, executor: Executor) -> Any:
        """Read the current state of ``resource``; never mutates."""

    @abstractmethod
    def apply(self, action: Action, executor: Executor) -> ApplyResult:
        """Perform exactly one mutating operation; a no-op when already converged."""

    @abstractmethod
    def absent_state(self, resource: Any) -> Any:
        """State assumed for ``resource`` when it cannot be inspected."""

    def prepare(self, actions: Sequence[Action], executor: Executor) -> None:
        """Called once with a run of consecutive actions of the same operation."""


def failure_detail(exc: BaseException) -> str:
    """One-line description of a failed command or OS error."""

    if isinstance(exc, subprocess.CalledProcessError):
        prefix = f"rc={exc.returncode}"
        for text in (exc.stderr, exc.output):
            if not text:
                continue
            stripped = str(text).strip()
            if not stripped:
                continue
            line = stripped.splitlines()[0]
            line = (line[:157] + "...") if len(line) > 160 else line
            return f"{prefix}: {line}"
        return prefix
    return str(exc) or exc.__class__.__name__


def unsupported(action: Action) -> str:
    return f"{action.operation.value} is not supported for {action.resource.kind} resources"
