from __future__ import annotations

import json
import logging
import subprocess
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional

from .base import Provider, failure_detail, unsupported
from ..errors import ContainerStartFailed, ProviderInspectError, PullFailed
from ..executors import Executor
from ..types import Action, ApplyResult, Container, Operation

if TYPE_CHECKING:
    from ..remediation import DnsRemediator

logger = logging.getLogger(__name__)


@dataclass
class ContainerInfo:
    name: str
    running: bool


def parse_ps_lines(text: str) -> list[ContainerInfo]:
    """Parse ``docker ps --format '{{json .}}'`` output, one JSON object per line.

    ``Names`` may hold several comma-separated aliases; each is reported.
    Engines without a ``State`` field are judged by ``Status`` starting
    with ``Up``.
    """

    containers: list[ContainerInfo] = []
    for line in text.splitlines():
        if not line.strip():
            continue
        try:
            info = json.loads(line)
        except json.JSONDecodeError:
            logger.debug("Ignoring unparsable docker ps line: %s", line)
            continue
        state = str(info.get("State", "")).lower()
        if state:
            running = state == "running"
        else:
            running = str(info.get("Status", "")).startswith("Up")
        for name in str(info.get("Names", "")).split(","):
            name = name.strip()
            if name:
                containers.append(ContainerInfo(name=name, running=running))
    return containers


def build_run_command(spec: Container, executable: str = "docker") -> list[str]:
    command = [executable, "run", "-d", "--name", spec.name]
    if spec.network_mode:
        command.append(f"--network={spec.network_mode}")
    for host_port, container_port in spec.ports:
        command.extend(["-p", f"{host_port}:{container_port}"])
    for host in spec.extra_hosts:
        command.append(f"--add-host={host}")
    for key, value in spec.env:
        command.extend(["-e", f"{key}={value}"])
    for volume, mount_path in spec.volumes:
        command.extend(["-v", f"{volume}:{mount_path}"])
    if spec.restart_policy:
        command.append(f"--restart={spec.restart_policy}")
    command.append(spec.image)
    return command


@dataclass
class DockerCli:
    executable: str = "docker"

    def available(self, executor: Executor) -> bool:
        return executor.which(self.executable) is not None

    def list_containers(self, executor: Executor, *, all: bool = True) -> list[ContainerInfo]:
        command = [self.executable, "ps", "--format", "{{json .}}"]
        if all:
            command.insert(2, "-a")
        result = executor.run(command, mutable=False, privileged=True)
        return parse_ps_lines(result.stdout)

    def image_present(self, executor: Executor, image: str) -> bool:
        result = executor.run(
            [self.executable, "image", "inspect", image],
            check=False,
            mutable=False,
            privileged=True,
        )
        return result.returncode == 0

    def is_daemon_active(self, executor: Executor) -> bool:
        result = executor.run(
            [self.executable, "info", "--format", "{{.ServerVersion}}"],
            check=False,
            mutable=False,
            privileged=True,
        )
        return result.returncode == 0

    def pull(self, executor: Executor, image: str) -> None:
        executor.run([self.executable, "pull", image])

    def run(self, executor: Executor, spec: Container) -> None:
        executor.run(build_run_command(spec, self.executable))

    def start(self, executor: Executor, name: str) -> None:
        executor.run([self.executable, "start", name])


@dataclass
class ContainerState:
    exists: bool
    running: bool


class ContainerProvider(Provider):
    """Keep exactly one container per name, created, started or left alone."""

    kind = "container"

    def __init__(self, docker: Optional[DockerCli] = None, remediator: Optional["DnsRemediator"] = None):
        self.docker = docker or DockerCli()
        self.remediator = remediator

    def inspect(self, resource: Container, executor: Executor) -> ContainerState:
        if not self.docker.available(executor):
            raise ProviderInspectError(resource.resource_id, "docker CLI not found")
        try:
            containers = self.docker.list_containers(executor, all=True)
        except (subprocess.CalledProcessError, OSError) as exc:
            reason = failure_detail(exc)
            if not self.docker.is_daemon_active(executor):
                reason = f"container runtime daemon is not running ({reason})"
            raise ProviderInspectError(resource.resource_id, reason) from exc
        for info in containers:
            if info.name == resource.name:
                return ContainerState(exists=True, running=info.running)
        return ContainerState(exists=False, running=False)

    def absent_state(self, resource: Container) -> ContainerState:
        return ContainerState(exists=False, running=False)

    def apply(self, action: Action, executor: Executor) -> ApplyResult:
        if action.operation is Operation.PULL_IMAGE:
            return self._pull(action, executor)
        if action.operation in (Operation.RUN_CONTAINER, Operation.START_CONTAINER):
            return self._ensure_running(action, executor)
        raise ContainerStartFailed(action.resource_id, unsupported(action), transient=False)

    def _pull(self, action: Action, executor: Executor) -> ApplyResult:
        image = action.resource.image
        try:
            self.docker.pull(executor, image)
            return ApplyResult(changed=True, detail=f"pulled {image}")
        except subprocess.CalledProcessError as exc:
            logger.warning("Pull of %s failed (%s); checking DNS before retrying", image, failure_detail(exc))

        if self.remediator is not None:
            if not self.remediator.remediate(executor):
                logger.warning("DNS remediation did not restore resolution; retrying pull anyway")

        try:
            self.docker.pull(executor, image)
        except subprocess.CalledProcessError as exc:
            cached = self.docker.image_present(executor, image)
            reason = failure_detail(exc)
            if cached:
                reason = f"{reason}; using cached image"
            raise PullFailed(
                action.resource_id,
                reason,
                transient=False,
                recoverable=cached,
                remediation=f"sudo docker pull {image}",
            ) from exc
        return ApplyResult(changed=True, detail=f"pulled {image} after DNS remediation")

    def _ensure_running(self, action: Action, executor: Executor) -> ApplyResult:
        resource: Container = action.resource  # type: ignore[assignment]
        try:
            state = self.inspect(resource, executor)
        except ProviderInspectError as exc:
            raise ContainerStartFailed(action.resource_id, exc.reason) from exc

        try:
            if state.running:
                return ApplyResult(changed=False, detail="already running")
            if state.exists:
                logger.info("Starting existing container %s", resource.name)
                self.docker.start(executor, resource.name)
                return ApplyResult(changed=True, detail="started existing container")
            self.docker.run(executor, resource)
        except subprocess.CalledProcessError as exc:
            raise ContainerStartFailed(
                action.resource_id,
                failure_detail(exc),
                remediation=f"sudo docker logs {resource.name}",
            ) from exc
        return ApplyResult(changed=True, detail=f"created from {resource.image}")
