from __future__ import annotations

import logging
import re
import subprocess
from dataclasses import dataclass
from typing import Optional

from .base import Provider, failure_detail, unsupported
from ..errors import ImportFailed
from ..executors import Executor
from ..types import Action, ApplyResult, Operation, Pool

logger = logging.getLogger(__name__)

IMPORTED = "imported"
IMPORTABLE = "importable"
ABSENT = "absent"
UNKNOWN = "unknown"

_POOL_LINE = re.compile(r"^\s*pool:\s+(\S+)\s*$")


def parse_importable(text: str) -> list[str]:
    """Return pool names from the output of ``zpool import`` with no arguments.

    Every importable pool is introduced by a ``pool: <name>`` line. The
    indentation of that line differs between ZFS releases, so it is ignored.
    """

    names: list[str] = []
    for line in text.splitlines():
        match = _POOL_LINE.match(line)
        if match:
            names.append(match.group(1))
    return names


@dataclass
class ZpoolCli:
    executable: str = "zpool"

    def available(self, executor: Executor) -> bool:
        return executor.which(self.executable) is not None

    def list_imported(self, executor: Executor) -> Optional[list[str]]:
        """Names of imported pools, or None when zfs cannot be queried yet."""

        result = executor.run(
            [self.executable, "list", "-H", "-o", "name"], check=False, mutable=False
        )
        if result.returncode != 0:
            return None
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    def list_importable(self, executor: Executor) -> list[str]:
        # Scanning devices for importable pools needs root.
        result = executor.run(
            [self.executable, "import"], check=False, mutable=False, privileged=True
        )
        return parse_importable(result.stdout)

    def import_pool(self, executor: Executor, name: str, *, force: bool = False) -> None:
        command = [self.executable, "import"]
        if force:
            command.append("-f")
        command.append(name)
        executor.run(command)

    def load_module(self, executor: Executor) -> None:
        executor.run(["modprobe", "zfs"], check=False)


@dataclass
class PoolState:
    status: str
    note: str = ""


class PoolProvider(Provider):
    """Import ZFS pools that are present but not yet imported."""

    kind = "pool"

    def __init__(self, zpool: ZpoolCli | None = None):
        self.zpool = zpool or ZpoolCli()

    def inspect(self, resource: Pool, executor: Executor) -> PoolState:
        # Tooling installed or loaded later in the same run must not hide the pool.
        if not self.zpool.available(executor):
            return PoolState(UNKNOWN, note="zpool command not found")
        imported = self.zpool.list_imported(executor)
        if imported is None:
            return PoolState(UNKNOWN, note="zfs module not loaded")
        if resource.name in imported:
            return PoolState(IMPORTED)
        if resource.name in self.zpool.list_importable(executor):
            return PoolState(IMPORTABLE)
        return PoolState(ABSENT, note=f"no importable pool named '{resource.name}' detected")

    def absent_state(self, resource: Pool) -> PoolState:
        return PoolState(ABSENT, note="pool state could not be read")

    def apply(self, action: Action, executor: Executor) -> ApplyResult:
        if action.operation is not Operation.IMPORT_POOL:
            raise ImportFailed(action.resource_id, unsupported(action))
        name = action.resource.name

        if self.zpool.available(executor):
            self.zpool.load_module(executor)
        state = self.inspect(action.resource, executor)
        if state.status == IMPORTED:
            return ApplyResult(changed=False, detail="already imported")
        if state.status in (ABSENT, UNKNOWN):
            # A missing optional pool is informational, never a failure.
            logger.info("pool %s: %s; skipping", name, state.note)
            return ApplyResult(changed=False, detail=f"{state.note}; skipping")

        try:
            self.zpool.import_pool(executor, name)
            return ApplyResult(changed=True, detail="imported")
        except subprocess.CalledProcessError as exc:
            logger.warning("Standard import of pool %s failed (%s); trying forced import", name, failure_detail(exc))

        # Forcing is only safe once a plain import has been refused.
        try:
            self.zpool.import_pool(executor, name, force=True)
        except subprocess.CalledProcessError as exc:
            raise ImportFailed(
                action.resource_id,
                failure_detail(exc),
                remediation=f"sudo zpool import -f {name}",
            ) from exc
        return ApplyResult(changed=True, detail="imported with -f")
