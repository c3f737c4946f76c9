from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Optional

import pytest

from stagehand_automation.executors import CommandResult, Executor


class ScriptedExecutor(Executor):
    """Executor that answers commands from a table instead of running them.

    ``responses`` maps a command tuple to ``(returncode, stdout)`` or to a
    list of such pairs consumed in order (the last one repeats). Unknown
    commands succeed with empty output. Files and symlinks live in dicts.
    """

    def __init__(self, *, dry_run: bool = False, binaries=()):
        super().__init__(dry_run=dry_run)
        self.responses: dict[tuple[str, ...], object] = {}
        self.calls: list[list[str]] = []
        self.binaries: set[str] = set(binaries)
        self.files: dict[Path, str] = {}
        self.links: dict[Path, str] = {}
        self.backups: list[Path] = []

    def respond(self, command, returncode: int = 0, stdout: str = "", stderr: str = "") -> None:
        self.responses[tuple(command)] = (returncode, stdout, stderr)

    def script(self, command, *results) -> None:
        self.responses[tuple(command)] = [
            (item[0], item[1] if len(item) > 1 else "", item[2] if len(item) > 2 else "")
            for item in results
        ]

    def run(self, command, *, check=True, mutable=True, privileged=None, timeout=None, input_text=None):
        cmd = list(command)
        self.calls.append(cmd)
        if self.dry_run and mutable:
            return CommandResult(cmd, "", "skipped (dry-run)", 0)
        response = self.responses.get(tuple(cmd), (0, "", ""))
        if isinstance(response, list):
            response = response.pop(0) if len(response) > 1 else response[0]
        returncode, stdout, stderr = response
        if check and returncode != 0:
            raise subprocess.CalledProcessError(returncode, cmd, stdout, stderr)
        return CommandResult(cmd, stdout, stderr, returncode)

    def which(self, binary: str) -> Optional[str]:
        return f"/usr/bin/{binary}" if binary in self.binaries else None

    def ran(self, *command: str) -> bool:
        return list(command) in self.calls

    def read_file(self, path: Path) -> Optional[str]:
        return self.files.get(Path(path))

    def write_file(self, path: Path, *, content: str, mode: Optional[int]) -> tuple[bool, str]:
        if self.files.get(Path(path)) == content:
            return False, "noop"
        if not self.dry_run:
            self.files[Path(path)] = content
        return True, "content"

    def readlink(self, path: Path) -> Optional[str]:
        return self.links.get(Path(path))

    def symlink(self, target: Path, link: Path) -> bool:
        if self.links.get(Path(link)) == str(target):
            return False
        self.files.pop(Path(link), None)
        self.links[Path(link)] = str(target)
        return True

    def backup(self, path: Path, suffix: str) -> Optional[Path]:
        path = Path(path)
        if path not in self.files:
            return None
        destination = path.with_name(f"{path.name}.{suffix}")
        self.files[destination] = self.files[path]
        self.backups.append(destination)
        return destination


@pytest.fixture
def executor() -> ScriptedExecutor:
    return ScriptedExecutor()
