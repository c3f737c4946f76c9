from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass

from .base import Provider, failure_detail, unsupported
from ..errors import ProviderInspectError, ServiceStartFailed
from ..executors import Executor
from ..types import Action, ApplyResult, Operation, Service

logger = logging.getLogger(__name__)


@dataclass
class SystemCtl:
    executable: str = "systemctl"

    def available(self, executor: Executor) -> bool:
        return executor.which(self.executable) is not None

    def is_enabled(self, executor: Executor, service: str) -> bool:
        result = executor.run([self.executable, "is-enabled", service], check=False, mutable=False)
        return result.returncode == 0

    def is_active(self, executor: Executor, service: str) -> bool:
        result = executor.run([self.executable, "is-active", service], check=False, mutable=False)
        return result.returncode == 0

    def unit_exists(self, executor: Executor, service: str) -> bool:
        unit = service if service.endswith(".service") else f"{service}.service"
        result = executor.run(
            [self.executable, "list-unit-files", unit, "--no-legend"],
            check=False,
            mutable=False,
        )
        return result.returncode == 0 and any(
            line.split()[0] == unit for line in result.stdout.splitlines() if line.strip()
        )

    def enable(self, executor: Executor, service: str) -> None:
        executor.run([self.executable, "enable", service])

    def start(self, executor: Executor, service: str) -> None:
        executor.run([self.executable, "start", service])

    def restart(self, executor: Executor, service: str) -> None:
        executor.run([self.executable, "restart", service])


@dataclass
class ServiceState:
    enabled: bool
    active: bool


class ServiceProvider(Provider):
    """Manage systemd services."""

    kind = "service"

    def __init__(self, systemctl: SystemCtl | None = None):
        self.systemctl = systemctl or SystemCtl()

    def inspect(self, resource: Service, executor: Executor) -> ServiceState:
        if not self.systemctl.available(executor):
            raise ProviderInspectError(resource.resource_id, "systemctl is not available on this host")
        return ServiceState(
            enabled=self.systemctl.is_enabled(executor, resource.name),
            active=self.systemctl.is_active(executor, resource.name),
        )

    def absent_state(self, resource: Service) -> ServiceState:
        return ServiceState(enabled=False, active=False)

    def apply(self, action: Action, executor: Executor) -> ApplyResult:
        name = action.resource.name
        try:
            if action.operation is Operation.ENABLE_SERVICE:
                if self.systemctl.is_enabled(executor, name):
                    return ApplyResult(changed=False, detail="already-enabled")
                logger.debug("Enabling service %s", name)
                self.systemctl.enable(executor, name)
                return ApplyResult(changed=True, detail="enabled")

            if action.operation is Operation.START_SERVICE:
                if self.systemctl.is_active(executor, name):
                    return ApplyResult(changed=False, detail="already-active")
                logger.debug("Starting service %s", name)
                self.systemctl.start(executor, name)
                if not executor.dry_run and not self.systemctl.is_active(executor, name):
                    raise ServiceStartFailed(
                        action.resource_id,
                        "service did not become active",
                        remediation=f"journalctl -u {name}",
                    )
                return ApplyResult(changed=True, detail="started")

            if action.operation is Operation.RESTART_DAEMON:
                logger.debug("Restarting service %s", name)
                self.systemctl.restart(executor, name)
                return ApplyResult(changed=True, detail="restarted")
        except subprocess.CalledProcessError as exc:
            raise ServiceStartFailed(
                action.resource_id,
                failure_detail(exc),
                remediation=f"journalctl -u {name}",
            ) from exc

        raise ServiceStartFailed(action.resource_id, unsupported(action), transient=False)
