from __future__ import annotations

import logging
import subprocess
import time
from dataclasses import dataclass
from typing import Callable, Optional

from .base import Provider, failure_detail, unsupported
from .package import PackageProvider
from ..errors import InstallFailed, ProviderInspectError
from ..executors import Executor
from ..types import Action, ApplyResult, Operation, Snap

logger = logging.getLogger(__name__)

SNAPD_PACKAGE = "snapd"


def parse_snap_list(text: str) -> list[str]:
    """Return snap names from ``snap list`` output.

    The output is a whitespace-aligned table: a header row whose first
    column is ``Name``, then one row per snap with the name first. Any
    other leading rows (warnings, blank lines) are ignored.
    """

    names: list[str] = []
    header_seen = False
    for line in text.splitlines():
        fields = line.split()
        if not fields:
            continue
        if not header_seen:
            header_seen = fields[0] == "Name"
            continue
        names.append(fields[0])
    return names


@dataclass
class SnapCli:
    executable: str = "snap"

    def available(self, executor: Executor) -> bool:
        return executor.which(self.executable) is not None

    def list_installed(self, executor: Executor) -> list[str]:
        result = executor.run([self.executable, "list"], check=False, mutable=False)
        if result.returncode != 0:
            # ``snap list`` exits non-zero when nothing is installed yet.
            return []
        return parse_snap_list(result.stdout)

    def install(self, executor: Executor, name: str, *, classic: bool = False) -> None:
        command = [self.executable, "install", name]
        if classic:
            command.append("--classic")
        executor.run(command)


@dataclass
class SnapState:
    installed: bool
    tool_present: bool = True


class SnapProvider(Provider):
    """Install snaps, bootstrapping snapd itself when needed."""

    kind = "snap"

    def __init__(
        self,
        snap: Optional[SnapCli] = None,
        packages: Optional[PackageProvider] = None,
        *,
        settle: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.snap = snap or SnapCli()
        self.packages = packages or PackageProvider()
        self.settle = settle
        self.sleep = sleep

    def inspect(self, resource: Snap, executor: Executor) -> SnapState:
        if not self.snap.available(executor):
            return SnapState(installed=False, tool_present=False)
        try:
            installed = self.snap.list_installed(executor)
        except OSError as exc:
            raise ProviderInspectError(resource.resource_id, failure_detail(exc)) from exc
        return SnapState(installed=resource.name in installed)

    def absent_state(self, resource: Snap) -> SnapState:
        return SnapState(installed=False)

    def apply(self, action: Action, executor: Executor) -> ApplyResult:
        if action.operation is not Operation.INSTALL_SNAP:
            raise InstallFailed(action.resource_id, unsupported(action), transient=False)
        resource: Snap = action.resource  # type: ignore[assignment]

        if not self.snap.available(executor):
            logger.info("snap not found; installing %s", SNAPD_PACKAGE)
            self.packages.install(executor, [SNAPD_PACKAGE], resource_id=action.resource_id)
            # snapd needs a moment before it accepts install requests.
            self.sleep(self.settle)

        try:
            if resource.name in self.snap.list_installed(executor):
                return ApplyResult(changed=False, detail="already-installed")
            self.snap.install(executor, resource.name, classic=resource.classic)
        except subprocess.CalledProcessError as exc:
            classic = " --classic" if resource.classic else ""
            raise InstallFailed(
                action.resource_id,
                failure_detail(exc),
                remediation=f"sudo snap install {resource.name}{classic}",
            ) from exc
        detail = "installed (classic)" if resource.classic else "installed"
        return ApplyResult(changed=True, detail=detail)
