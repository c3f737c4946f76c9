from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import ClassVar, Optional, Union

from .errors import ConfigurationError


def resource_id(kind: str, name: str) -> str:
    return f"{kind}:{name}"


class _Resource:
    """Identity helpers shared by every resource kind."""

    kind: ClassVar[str] = ""

    @property
    def resource_id(self) -> str:
        return resource_id(self.kind, self.name)  # type: ignore[attr-defined]

    def _check_name(self) -> None:
        name = getattr(self, "name", None)
        if not isinstance(name, str) or not name.strip():
            raise ConfigurationError(f"{self.kind} resource requires a non-empty name")


@dataclass(frozen=True)
class Package(_Resource):
    kind: ClassVar[str] = "package"

    name: str
    depends_on: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        self._check_name()


@dataclass(frozen=True)
class Service(_Resource):
    kind: ClassVar[str] = "service"

    name: str
    enabled: bool = True
    running: bool = True
    health_url: Optional[str] = None
    depends_on: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        self._check_name()


@dataclass(frozen=True)
class Snap(_Resource):
    kind: ClassVar[str] = "snap"

    name: str
    classic: bool = False
    depends_on: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        self._check_name()


@dataclass(frozen=True)
class Pool(_Resource):
    kind: ClassVar[str] = "pool"

    name: str
    depends_on: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        self._check_name()


@dataclass(frozen=True)
class Container(_Resource):
    kind: ClassVar[str] = "container"

    name: str
    image: str = ""
    network_mode: Optional[str] = None
    env: tuple[tuple[str, str], ...] = ()
    volumes: tuple[tuple[str, str], ...] = ()
    restart_policy: Optional[str] = None
    ports: tuple[tuple[str, str], ...] = ()
    extra_hosts: tuple[str, ...] = ()
    health_url: Optional[str] = None
    depends_on: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        self._check_name()
        if not self.image:
            raise ConfigurationError(f"container '{self.name}' requires an image")


@dataclass(frozen=True)
class DNSConfig(_Resource):
    kind: ClassVar[str] = "dns"

    nameservers: tuple[str, ...] = ()
    fallback: tuple[str, ...] = ()
    stub_listener: bool = True
    name: str = "resolver"
    depends_on: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        self._check_name()
        if not self.nameservers:
            raise ConfigurationError("dns configuration requires at least one nameserver")


ResourceModel = Union[Package, Service, Snap, Pool, Container, DNSConfig]


class Operation(Enum):
    INSTALL = "Install"
    ENABLE_SERVICE = "EnableService"
    START_SERVICE = "StartService"
    INSTALL_SNAP = "InstallSnap"
    IMPORT_POOL = "ImportPool"
    PULL_IMAGE = "PullImage"
    RUN_CONTAINER = "RunContainer"
    START_CONTAINER = "StartContainer"
    WRITE_CONFIG = "WriteConfig"
    RESTART_DAEMON = "RestartDaemon"


@dataclass(frozen=True)
class RetryPolicy:
    """How many times an action may be attempted and how long to wait between tries."""

    max_attempts: int = 1
    backoff: float = 0.0
    retry_on: tuple[type[BaseException], ...] = ()

    def should_retry(self, exc: BaseException, attempt: int) -> bool:
        if attempt >= self.max_attempts:
            return False
        if not self.retry_on or not isinstance(exc, self.retry_on):
            return False
        return bool(getattr(exc, "transient", True))


NO_RETRY = RetryPolicy()


@dataclass(frozen=True)
class Action:
    resource: ResourceModel
    operation: Operation
    preconditions: tuple[str, ...] = ()
    retry: RetryPolicy = NO_RETRY

    @property
    def resource_id(self) -> str:
        return self.resource.resource_id

    def describe(self) -> str:
        subject = self.resource.name
        if self.operation is Operation.PULL_IMAGE and isinstance(self.resource, Container):
            subject = self.resource.image
        return f"{self.operation.value}({subject})"


@dataclass
class ApplyResult:
    changed: bool
    detail: str
    remediation: Optional[str] = None


class Outcome(Enum):
    SATISFIED = "satisfied"
    APPLIED = "applied"
    RETRIED = "retried-then-applied"
    FAILED_RECOVERED = "failed-recovered"
    FAILED_FATAL = "failed-fatal"
    BLOCKED = "blocked"


_OK_OUTCOMES = {Outcome.SATISFIED, Outcome.APPLIED, Outcome.RETRIED}


@dataclass
class ReportEntry:
    resource_id: str
    operation: Optional[Operation]
    outcome: Outcome
    duration: float = 0.0
    detail: str = ""
    remediation: Optional[str] = None
    attempts: int = 0


@dataclass
class ExecutionReport:
    entries: list[ReportEntry] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    not_attempted: list[Action] = field(default_factory=list)
    aborted: bool = False

    def record(self, entry: ReportEntry) -> None:
        self.entries.append(entry)

    def warn(self, message: str) -> None:
        self.warnings.append(message)

    def abort(self, remaining: list[Action]) -> None:
        self.aborted = True
        self.not_attempted.extend(remaining)

    @property
    def ok(self) -> bool:
        return not any(entry.outcome is Outcome.FAILED_FATAL for entry in self.entries)

    def outcomes(self) -> list[Outcome]:
        return [entry.outcome for entry in self.entries]

    def failed_resources(self) -> set[str]:
        failed = {
            entry.resource_id
            for entry in self.entries
            if entry.outcome in {Outcome.FAILED_FATAL, Outcome.BLOCKED}
        }
        failed.update(action.resource_id for action in self.not_attempted)
        return failed

    def converged_resources(self) -> list[str]:
        """Resources whose every recorded entry ended in a good state."""

        seen: dict[str, bool] = {}
        for entry in self.entries:
            good = entry.outcome in _OK_OUTCOMES
            seen[entry.resource_id] = seen.get(entry.resource_id, True) and good
        skipped = {action.resource_id for action in self.not_attempted}
        return [rid for rid, good in seen.items() if good and rid not in skipped]

    def follow_ups(self) -> list[str]:
        items: list[str] = []
        for entry in self.entries:
            if entry.outcome in _OK_OUTCOMES:
                continue
            line = f"{entry.resource_id}: {entry.detail}" if entry.detail else entry.resource_id
            if entry.remediation:
                line = f"{line} (try: {entry.remediation})"
            items.append(line)
        for action in self.not_attempted:
            items.append(f"{action.resource_id}: {action.describe()} not attempted")
        items.extend(self.warnings)
        return items
