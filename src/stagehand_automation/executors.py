from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence
import logging
import os
import shlex
import shutil
import subprocess

logger = logging.getLogger(__name__)


@dataclass
class CommandResult:
    command: list[str]
    stdout: str
    stderr: str
    returncode: int


def detect_elevation(mode: str = "auto") -> list[str]:
    """Return the command prefix used for privileged commands."""

    mode = mode.lower()
    if mode == "none":
        return []
    if mode == "sudo":
        return ["sudo"]
    if mode != "auto":
        raise ValueError(f"Unknown elevation mode '{mode}'")
    if hasattr(os, "geteuid") and os.geteuid() == 0:
        return []
    if shutil.which("sudo"):
        return ["sudo"]
    logger.warning("Not running as root and sudo is unavailable; privileged commands may fail")
    return []


class Executor:
    """Execution context handed to every provider call.

    Carries the dry-run flag and the privilege-elevation prefix so nothing
    in the providers depends on process-wide state.
    """

    def __init__(self, *, dry_run: bool = False, elevate: Optional[Sequence[str]] = None):
        self.dry_run = dry_run
        self.elevate = list(elevate or [])

    def run(
        self,
        command: Sequence[str],
        *,
        check: bool = True,
        mutable: bool = True,
        privileged: Optional[bool] = None,
        timeout: Optional[float] = None,
        input_text: Optional[str] = None,
    ) -> CommandResult:
        """Run ``command`` and optionally skip it during dry-runs.

        ``privileged`` defaults to ``mutable``: read-only queries run as the
        invoking user unless a provider asks otherwise.
        """

        cmd_list = list(command)
        if privileged is None:
            privileged = mutable
        if privileged and self.elevate:
            cmd_list = [*self.elevate, *cmd_list]
        if self.dry_run and mutable:
            logger.debug("CMD (dry-run) %s", shlex.join(cmd_list))
            return CommandResult(cmd_list, "", "skipped (dry-run)", 0)

        logger.debug("CMD %s", shlex.join(cmd_list))
        try:
            proc = subprocess.run(
                cmd_list,
                capture_output=True,
                text=True,
                check=False,
                timeout=timeout,
                input=input_text,
            )
        except FileNotFoundError as exc:
            result = CommandResult(cmd_list, "", str(exc), 127)
        except subprocess.TimeoutExpired:
            # Same code coreutils ``timeout`` reports.
            result = CommandResult(cmd_list, "", f"timed out after {timeout}s", 124)
        else:
            result = CommandResult(cmd_list, proc.stdout, proc.stderr, proc.returncode)
        if check and result.returncode != 0:
            raise subprocess.CalledProcessError(
                result.returncode,
                cmd_list,
                result.stdout,
                result.stderr,
            )
        return result

    def which(self, binary: str) -> Optional[str]:
        return shutil.which(binary)

    # File primitives -----------------------------------------------------
    def read_file(self, path: Path) -> Optional[str]:
        raise NotImplementedError

    def write_file(self, path: Path, *, content: str, mode: Optional[int]) -> tuple[bool, str]:
        raise NotImplementedError

    def readlink(self, path: Path) -> Optional[str]:
        raise NotImplementedError

    def symlink(self, target: Path, link: Path) -> bool:
        raise NotImplementedError

    def backup(self, path: Path, suffix: str) -> Optional[Path]:
        raise NotImplementedError


class LocalExecutor(Executor):
    """Executor that acts directly on the local host."""

    def read_file(self, path: Path) -> Optional[str]:
        try:
            return path.read_text()
        except FileNotFoundError:
            return None

    def write_file(self, path: Path, *, content: str, mode: Optional[int]) -> tuple[bool, str]:
        current = self.read_file(path)
        if current == content:
            return False, "noop"
        if self.dry_run:
            return True, "content"
        if self.elevate:
            self.run(["install", "-d", "-m", "0755", str(path.parent)])
            self.run(["tee", str(path)], input_text=content)
            if mode is not None:
                self.run(["chmod", f"{mode:04o}", str(path)])
        else:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content)
            if mode is not None:
                os.chmod(path, mode)
        return True, "content"

    def readlink(self, path: Path) -> Optional[str]:
        if not path.is_symlink():
            return None
        return os.readlink(path)

    def symlink(self, target: Path, link: Path) -> bool:
        if self.readlink(link) == str(target):
            return False
        if self.dry_run:
            return True
        if self.elevate:
            self.run(["ln", "-sfn", str(target), str(link)])
            return True
        # ``symlink`` refuses to replace an existing entry, so clear it first.
        if link.exists() or link.is_symlink():
            link.unlink()
        link.parent.mkdir(parents=True, exist_ok=True)
        os.symlink(target, link)
        return True

    def backup(self, path: Path, suffix: str) -> Optional[Path]:
        if not path.exists() or path.is_symlink():
            return None
        destination = path.with_name(f"{path.name}.{suffix}")
        if self.dry_run:
            return destination
        if self.elevate:
            self.run(["cp", "-a", str(path), str(destination)])
        else:
            shutil.copy2(path, destination)
        return destination
