"""Best-effort repair of name resolution for the host and the container runtime.

Registry pulls usually fail for one reason on a freshly provisioned host:
the resolver stub is broken and the container daemon cached that broken
configuration when it started. The remediator rewrites host resolver
configuration to known public upstreams, restarts the runtime so it
re-reads it, and optionally pins the runtime's own DNS list.
"""

from __future__ import annotations

import json
import logging
import subprocess
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

from .errors import ProviderApplyError
from .executors import Executor
from .providers.dns import DNSProvider
from .providers.service import SystemCtl
from .types import DNSConfig

logger = logging.getLogger(__name__)

DOCKER_DAEMON_JSON = Path("/etc/docker/daemon.json")


@dataclass
class RemediationSettings:
    canary: str = "ghcr.io"
    upstreams: tuple[str, ...] = ("1.1.1.1", "1.0.0.1", "8.8.8.8", "8.8.4.4")
    fallback: tuple[str, ...] = ("9.9.9.9", "149.112.112.112")
    docker_dns_override: bool = True
    runtime_service: str = "docker"
    daemon_json: Path = field(default=DOCKER_DAEMON_JSON)
    settle: float = 2.0


def merge_daemon_dns(text: Optional[str], nameservers: tuple[str, ...]) -> Optional[str]:
    """Return daemon.json with its ``dns`` list set, or None when unchanged.

    Other keys are kept. Unparsable content is left alone.
    """

    data: dict = {}
    if text and text.strip():
        try:
            data = json.loads(text)
        except json.JSONDecodeError:
            logger.warning("Existing daemon.json is not valid JSON; leaving it untouched")
            return None
        if not isinstance(data, dict):
            logger.warning("Existing daemon.json is not a JSON object; leaving it untouched")
            return None
    if data.get("dns") == list(nameservers):
        return None
    data["dns"] = list(nameservers)
    return json.dumps(data, indent=2) + "\n"


class DnsRemediator:
    def __init__(
        self,
        dns: Optional[DNSProvider] = None,
        systemctl: Optional[SystemCtl] = None,
        settings: Optional[RemediationSettings] = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.dns = dns or DNSProvider()
        self.systemctl = systemctl or SystemCtl()
        self.settings = settings or RemediationSettings()
        self.sleep = sleep

    def resolves(self, executor: Executor, host: Optional[str] = None) -> bool:
        host = host or self.settings.canary
        result = executor.run(["getent", "ahosts", host], check=False, mutable=False)
        return result.returncode == 0 and bool(result.stdout.strip())

    def remediate(self, executor: Executor) -> bool:
        """Run every repair step and report whether the canary resolves afterwards."""

        settings = self.settings
        if self.resolves(executor):
            logger.info("DNS resolves %s; restarting %s to refresh its resolver", settings.canary, settings.runtime_service)
        else:
            logger.warning("Cannot resolve %s; switching host resolvers to public upstreams", settings.canary)
            self._fix_host_resolver(executor)

        self._restart_runtime(executor)
        if settings.docker_dns_override and self._override_runtime_dns(executor):
            self._restart_runtime(executor)

        ok = self.resolves(executor)
        if ok:
            logger.info("DNS remediation complete; %s resolves", settings.canary)
        else:
            logger.warning("DNS still cannot resolve %s after remediation", settings.canary)
        return ok

    def _fix_host_resolver(self, executor: Executor) -> None:
        config = DNSConfig(nameservers=self.settings.upstreams, fallback=self.settings.fallback)
        try:
            self.dns.converge(executor, config)
        except ProviderApplyError as exc:
            logger.warning("Host resolver update failed: %s", exc)
            return
        self.sleep(self.settings.settle)

    def _restart_runtime(self, executor: Executor) -> None:
        name = self.settings.runtime_service
        if not self.systemctl.available(executor):
            logger.debug("systemctl unavailable; not restarting %s", name)
            return
        try:
            self.systemctl.restart(executor, name)
        except subprocess.CalledProcessError as exc:
            logger.warning("Restart of %s failed (rc=%s)", name, exc.returncode)
            return
        self.sleep(self.settings.settle)

    def _override_runtime_dns(self, executor: Executor) -> bool:
        path = self.settings.daemon_json
        try:
            merged = merge_daemon_dns(executor.read_file(path), self.settings.upstreams)
            if merged is None:
                return False
            changed, _ = executor.write_file(path, content=merged, mode=0o644)
        except (OSError, subprocess.CalledProcessError) as exc:
            logger.warning("Could not update %s: %s", path, exc)
            return False
        if changed:
            logger.info("Set runtime DNS servers in %s", path)
        return changed
