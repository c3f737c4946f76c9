"""Host resolver configuration.

Two mutually exclusive strategies exist: hosts running systemd-resolved get
``/etc/systemd/resolved.conf`` patched and ``/etc/resolv.conf`` pointed at
the resolved-managed upstream file; every other host gets its static
``/etc/resolv.conf`` patched directly. The strategy is detected per host.
"""

from __future__ import annotations

import logging
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

from .base import Provider, failure_detail, unsupported
from .service import SystemCtl
from ..errors import ConfigWriteFailed, ProviderInspectError, ServiceStartFailed
from ..executors import Executor
from ..types import Action, ApplyResult, DNSConfig, Operation

logger = logging.getLogger(__name__)

RESOLVED = "resolved"
STATIC = "static"

RESOLVED_UNIT = "systemd-resolved"
RESOLVED_CONF = Path("/etc/systemd/resolved.conf")
RESOLV_CONF = Path("/etc/resolv.conf")
# The upstream list maintained by resolved. The stub file next to it points
# at 127.0.0.53, which loops when the stub itself is what is broken.
MANAGED_RESOLV_CONF = Path("/run/systemd/resolve/resolv.conf")

DEFAULT_RESOLV_OPTIONS = "options timeout:2 attempts:2 rotate"


def _yes_no(value: bool) -> str:
    return "yes" if value else "no"


def parse_resolved_conf(text: Optional[str]) -> dict[str, str]:
    """Return the active ``Key=Value`` pairs of the ``[Resolve]`` section."""

    values: dict[str, str] = {}
    in_resolve = False
    for line in (text or "").splitlines():
        stripped = line.strip()
        if stripped.startswith("[") and stripped.endswith("]"):
            in_resolve = stripped == "[Resolve]"
            continue
        if not in_resolve or not stripped or stripped.startswith(("#", ";")):
            continue
        key, sep, value = stripped.partition("=")
        if sep:
            values[key.strip()] = value.strip()
    return values


def patch_resolved_conf(text: Optional[str], values: dict[str, str]) -> str:
    """Merge ``values`` into the ``[Resolve]`` section of a resolved.conf.

    Active ``Key=`` lines in that section are rewritten in place, later
    duplicates of a patched key are dropped, keys not yet present are added
    at the end of the section, and every other line (comments, other
    sections, unrelated keys) is kept. Empty input yields a minimal document.
    """

    out: list[str] = []
    written: set[str] = set()
    in_resolve = False
    seen_resolve = False

    def close_section() -> None:
        missing = [key for key in values if key not in written]
        # Keep trailing blank lines after the keys we add.
        trailing: list[str] = []
        while out and not out[-1].strip():
            trailing.append(out.pop())
        for key in missing:
            out.append(f"{key}={values[key]}")
            written.add(key)
        out.extend(trailing)

    for line in (text or "").splitlines():
        stripped = line.strip()
        if stripped.startswith("[") and stripped.endswith("]"):
            if in_resolve:
                close_section()
            in_resolve = stripped == "[Resolve]"
            seen_resolve = seen_resolve or in_resolve
            out.append(line)
            continue
        if in_resolve and stripped and not stripped.startswith(("#", ";")):
            key = stripped.partition("=")[0].strip()
            if key in values:
                if key not in written:
                    out.append(f"{key}={values[key]}")
                    written.add(key)
                continue
        out.append(line)

    if in_resolve:
        close_section()
    if not seen_resolve:
        if out and out[-1].strip():
            out.append("")
        out.append("[Resolve]")
        close_section()
    return "\n".join(out) + "\n"


def parse_resolv_conf(text: Optional[str]) -> list[str]:
    servers: list[str] = []
    for line in (text or "").splitlines():
        fields = line.split()
        if len(fields) >= 2 and fields[0] == "nameserver":
            servers.append(fields[1])
    return servers


def patch_resolv_conf(text: Optional[str], nameservers: Sequence[str]) -> str:
    """Replace the ``nameserver`` lines of a resolv.conf.

    The new lines take the place of the first existing ``nameserver`` line
    (or the top of the file when there is none); ``search``, ``options`` and
    comments stay. A missing file gets a default ``options`` line as well.
    """

    new_lines = [f"nameserver {server}" for server in nameservers]
    if not text or not text.strip():
        return "\n".join([*new_lines, DEFAULT_RESOLV_OPTIONS]) + "\n"

    out: list[str] = []
    inserted = False
    for line in text.splitlines():
        fields = line.split()
        if fields and fields[0] == "nameserver":
            if not inserted:
                out.extend(new_lines)
                inserted = True
            continue
        out.append(line)
    if not inserted:
        out = [*new_lines, *out]
    return "\n".join(out) + "\n"


@dataclass
class DnsState:
    strategy: str
    nameservers: tuple[str, ...] = ()
    fallback: tuple[str, ...] = ()
    stub_listener: Optional[bool] = None
    linked: bool = True

    def matches(self, resource: DNSConfig) -> bool:
        if self.strategy == RESOLVED:
            return (
                self.nameservers == tuple(resource.nameservers)
                and self.fallback == tuple(resource.fallback)
                and self.stub_listener == resource.stub_listener
                and self.linked
            )
        return self.nameservers == tuple(resource.nameservers) + tuple(resource.fallback)


class ResolvedStrategy:
    name = RESOLVED

    def __init__(
        self,
        systemctl: Optional[SystemCtl] = None,
        *,
        conf_path: Path = RESOLVED_CONF,
        resolv_conf: Path = RESOLV_CONF,
        managed: Path = MANAGED_RESOLV_CONF,
    ):
        self.systemctl = systemctl or SystemCtl()
        self.conf_path = conf_path
        self.resolv_conf = resolv_conf
        self.managed = managed

    def read(self, executor: Executor) -> DnsState:
        values = parse_resolved_conf(executor.read_file(self.conf_path))
        listener = values.get("DNSStubListener")
        return DnsState(
            strategy=self.name,
            nameservers=tuple(values.get("DNS", "").split()),
            fallback=tuple(values.get("FallbackDNS", "").split()),
            stub_listener=None if listener is None else listener.lower() in {"yes", "true", "1", "udp", "tcp"},
            linked=executor.readlink(self.resolv_conf) == str(self.managed),
        )

    def write(self, executor: Executor, resource: DNSConfig) -> tuple[bool, str]:
        current = executor.read_file(self.conf_path)
        patched = patch_resolved_conf(
            current,
            {
                "DNS": " ".join(resource.nameservers),
                "FallbackDNS": " ".join(resource.fallback),
                "DNSStubListener": _yes_no(resource.stub_listener),
            },
        )
        details: list[str] = []
        changed, _ = executor.write_file(self.conf_path, content=patched, mode=0o644)
        if changed:
            details.append("resolved.conf" if current else "resolved.conf (created)")
        if executor.readlink(self.resolv_conf) != str(self.managed):
            backup = executor.backup(self.resolv_conf, f"backup.{int(time.time())}")
            if backup is not None:
                details.append(f"backup={backup}")
            executor.symlink(self.managed, self.resolv_conf)
            details.append(f"resolv.conf->{self.managed}")
            changed = True
        return changed, ", ".join(details) if details else "noop"

    def restart(self, executor: Executor) -> bool:
        self.systemctl.enable(executor, RESOLVED_UNIT)
        self.systemctl.restart(executor, RESOLVED_UNIT)
        return True


class StaticResolvConfStrategy:
    name = STATIC

    def __init__(self, *, resolv_conf: Path = RESOLV_CONF):
        self.resolv_conf = resolv_conf

    def read(self, executor: Executor) -> DnsState:
        servers = parse_resolv_conf(executor.read_file(self.resolv_conf))
        return DnsState(strategy=self.name, nameservers=tuple(servers))

    def write(self, executor: Executor, resource: DNSConfig) -> tuple[bool, str]:
        current = executor.read_file(self.resolv_conf)
        patched = patch_resolv_conf(current, [*resource.nameservers, *resource.fallback])
        changed, _ = executor.write_file(self.resolv_conf, content=patched, mode=0o644)
        return changed, "resolv.conf" if changed else "noop"

    def restart(self, executor: Executor) -> bool:
        return False


def detect_strategy(executor: Executor, systemctl: Optional[SystemCtl] = None):
    """Pick the strategy for this host by probing for systemd-resolved."""

    systemctl = systemctl or SystemCtl()
    if systemctl.available(executor) and (
        systemctl.is_active(executor, RESOLVED_UNIT)
        or executor.which("resolvectl") is not None
        or systemctl.unit_exists(executor, RESOLVED_UNIT)
    ):
        return ResolvedStrategy(systemctl)
    return StaticResolvConfStrategy()


class DNSProvider(Provider):
    """Merge desired upstream resolvers into the host's resolver configuration."""

    kind = "dns"

    def __init__(self, strategy=None, systemctl: Optional[SystemCtl] = None):
        self._strategy = strategy
        self.systemctl = systemctl or SystemCtl()

    def strategy_for(self, executor: Executor):
        if self._strategy is None:
            self._strategy = detect_strategy(executor, self.systemctl)
            logger.debug("dns strategy=%s", self._strategy.name)
        return self._strategy

    def inspect(self, resource: DNSConfig, executor: Executor) -> DnsState:
        try:
            return self.strategy_for(executor).read(executor)
        except OSError as exc:
            raise ProviderInspectError(resource.resource_id, failure_detail(exc)) from exc

    def absent_state(self, resource: DNSConfig) -> DnsState:
        return DnsState(strategy="unknown", linked=False)

    def apply(self, action: Action, executor: Executor) -> ApplyResult:
        strategy = self.strategy_for(executor)
        if action.operation is Operation.WRITE_CONFIG:
            try:
                changed, detail = strategy.write(executor, action.resource)
            except (OSError, subprocess.CalledProcessError) as exc:
                raise ConfigWriteFailed(action.resource_id, failure_detail(exc)) from exc
            return ApplyResult(changed=changed, detail=f"{strategy.name}: {detail}")

        if action.operation is Operation.RESTART_DAEMON:
            try:
                restarted = strategy.restart(executor)
            except subprocess.CalledProcessError as exc:
                raise ServiceStartFailed(
                    action.resource_id,
                    failure_detail(exc),
                    remediation=f"sudo systemctl restart {RESOLVED_UNIT}",
                ) from exc
            if not restarted:
                return ApplyResult(changed=False, detail=f"{strategy.name}: no resolver daemon to restart")
            return ApplyResult(changed=True, detail=f"restarted {RESOLVED_UNIT}")

        raise ConfigWriteFailed(action.resource_id, unsupported(action))

    def converge(self, executor: Executor, resource: DNSConfig) -> bool:
        """Write ``resource`` and restart the resolver if anything changed."""

        write = self.apply(Action(resource, Operation.WRITE_CONFIG), executor)
        if write.changed:
            self.apply(Action(resource, Operation.RESTART_DAEMON), executor)
        return write.changed
