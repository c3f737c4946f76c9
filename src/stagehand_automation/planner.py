"""Diff desired resources against inspected state and emit ordered actions.

The planner never mutates the host. Its output is a pure function of the
declared resources and whatever the providers report, so running it again
after a successful convergence yields no actions.
"""

from __future__ import annotations

import heapq
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Optional, Sequence

from .errors import (
    ConfigurationError,
    ContainerStartFailed,
    InstallFailed,
    ProviderInspectError,
    ServiceStartFailed,
)
from .executors import Executor
from .providers.base import Provider
from .providers.pool import ABSENT, IMPORTABLE, UNKNOWN
from .types import (
    NO_RETRY,
    Action,
    Container,
    DNSConfig,
    Operation,
    Package,
    Pool,
    ResourceModel,
    RetryPolicy,
    Service,
    Snap,
)

logger = logging.getLogger(__name__)

DEFAULT_RUNTIME_SERVICE = "docker"
NETWORK_KINDS = frozenset({Package.kind, Snap.kind, Container.kind})

_RETRYABLE: dict[Operation, tuple[type[BaseException], ...]] = {
    Operation.START_SERVICE: (ServiceStartFailed,),
    Operation.RESTART_DAEMON: (ServiceStartFailed,),
    Operation.INSTALL_SNAP: (InstallFailed,),
    Operation.START_CONTAINER: (ContainerStartFailed,),
}


@dataclass(frozen=True)
class RetrySettings:
    attempts: int = 2
    backoff: float = 2.0


def retry_policy_for(operation: Operation, settings: RetrySettings) -> RetryPolicy:
    retry_on = _RETRYABLE.get(operation)
    if not retry_on or settings.attempts <= 1:
        return NO_RETRY
    return RetryPolicy(max_attempts=settings.attempts, backoff=settings.backoff, retry_on=retry_on)


@dataclass
class Observation:
    resource_id: str
    detail: str


@dataclass
class ConvergencePlan:
    actions: list[Action] = field(default_factory=list)
    satisfied: list[Observation] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def empty(self) -> bool:
        return not self.actions


# Diff functions return the operations still needed and, when none are, a
# note describing why the resource counts as satisfied.
def _diff_package(resource: Package, state: Any) -> tuple[list[Operation], str]:
    if state.installed:
        return [], "installed"
    return [Operation.INSTALL], ""


def _diff_service(resource: Service, state: Any) -> tuple[list[Operation], str]:
    ops: list[Operation] = []
    if resource.enabled and not state.enabled:
        ops.append(Operation.ENABLE_SERVICE)
    if resource.running and not state.active:
        ops.append(Operation.START_SERVICE)
    flags = [name for name, on in (("enabled", state.enabled), ("active", state.active)) if on]
    return ops, ", ".join(flags) or "nothing required"


def _diff_snap(resource: Snap, state: Any) -> tuple[list[Operation], str]:
    if state.installed:
        return [], "installed"
    return [Operation.INSTALL_SNAP], ""


def _diff_pool(resource: Pool, state: Any) -> tuple[list[Operation], str]:
    if state.status in (IMPORTABLE, UNKNOWN):
        return [Operation.IMPORT_POOL], ""
    if state.status == ABSENT:
        return [], f"not present: {state.note}" if state.note else "not present"
    return [], "imported"


def _diff_container(resource: Container, state: Any) -> tuple[list[Operation], str]:
    if state.running:
        return [], "running"
    if state.exists:
        return [Operation.START_CONTAINER], ""
    return [Operation.PULL_IMAGE, Operation.RUN_CONTAINER], ""


def _diff_dns(resource: DNSConfig, state: Any) -> tuple[list[Operation], str]:
    if state.matches(resource):
        return [], f"{state.strategy} configuration current"
    return [Operation.WRITE_CONFIG, Operation.RESTART_DAEMON], ""


DIFFS: dict[str, Callable[[Any, Any], tuple[list[Operation], str]]] = {
    Package.kind: _diff_package,
    Service.kind: _diff_service,
    Snap.kind: _diff_snap,
    Pool.kind: _diff_pool,
    Container.kind: _diff_container,
    DNSConfig.kind: _diff_dns,
}


def validate_resources(resources: Sequence[ResourceModel]) -> None:
    seen: set[str] = set()
    for resource in resources:
        rid = resource.resource_id
        if rid in seen:
            raise ConfigurationError(f"Resource '{rid}' is declared more than once")
        seen.add(rid)


def _closure(start: Iterable[str], edges: dict[str, set[str]]) -> set[str]:
    seen: set[str] = set()
    stack = list(start)
    while stack:
        node = stack.pop()
        if node in seen:
            continue
        seen.add(node)
        stack.extend(edges.get(node, ()))
    return seen


def dependency_map(
    resources: Sequence[ResourceModel],
    *,
    runtime_service: str = DEFAULT_RUNTIME_SERVICE,
) -> dict[str, set[str]]:
    """Predecessors of every resource, explicit and implicit.

    Implicit edges: a declared DNS configuration precedes every
    network-dependent resource (unless DNS itself depends on it), and a
    declared container-runtime service precedes every container. These
    affect ordering only and never become action preconditions.
    """

    ids = {resource.resource_id for resource in resources}
    edges: dict[str, set[str]] = {}
    for resource in resources:
        deps = set(resource.depends_on)
        unknown = sorted(deps - ids)
        if unknown:
            raise ConfigurationError(
                f"{resource.resource_id} depends on undeclared resource(s): {', '.join(unknown)}"
            )
        if resource.resource_id in deps:
            raise ConfigurationError(f"{resource.resource_id} depends on itself")
        edges[resource.resource_id] = deps

    dns = next((r for r in resources if isinstance(r, DNSConfig)), None)
    if dns is not None:
        dns_needs = _closure(edges[dns.resource_id], edges)
        for resource in resources:
            rid = resource.resource_id
            if resource.kind in NETWORK_KINDS and rid not in dns_needs:
                edges[rid].add(dns.resource_id)

    runtime_id = Service(name=runtime_service).resource_id
    if runtime_id in ids:
        runtime_needs = _closure(edges[runtime_id], edges)
        for resource in resources:
            if isinstance(resource, Container) and resource.resource_id not in runtime_needs:
                edges[resource.resource_id].add(runtime_id)
    return edges


def order_resources(
    resources: Sequence[ResourceModel], edges: dict[str, set[str]]
) -> list[ResourceModel]:
    """Stable topological order: among ready resources, declaration order wins."""

    index = {resource.resource_id: pos for pos, resource in enumerate(resources)}
    in_degree = {rid: len(deps) for rid, deps in edges.items()}
    dependents: dict[str, list[str]] = {rid: [] for rid in edges}
    for rid, deps in edges.items():
        for dep in deps:
            dependents[dep].append(rid)

    ready = [index[rid] for rid, degree in in_degree.items() if degree == 0]
    heapq.heapify(ready)
    ordered: list[ResourceModel] = []
    while ready:
        resource = resources[heapq.heappop(ready)]
        ordered.append(resource)
        for child in dependents[resource.resource_id]:
            in_degree[child] -= 1
            if in_degree[child] == 0:
                heapq.heappush(ready, index[child])

    if len(ordered) != len(resources):
        stuck = sorted((rid for rid, degree in in_degree.items() if degree > 0), key=index.get)
        raise ConfigurationError(f"Dependency cycle between: {', '.join(stuck)}")
    return ordered


class ConvergencePlanner:
    def __init__(
        self,
        providers: dict[str, Provider],
        executor: Executor,
        retry_settings: Optional[RetrySettings] = None,
        *,
        runtime_service: str = DEFAULT_RUNTIME_SERVICE,
    ):
        self.providers = providers
        self.executor = executor
        self.retry_settings = retry_settings or RetrySettings()
        self.runtime_service = runtime_service

    def plan(self, desired: Sequence[ResourceModel]) -> list[Action]:
        return self.survey(desired).actions

    def survey(self, desired: Sequence[ResourceModel]) -> ConvergencePlan:
        """Inspect every resource and build the full plan.

        All validation happens before the first inspect call, so a bad
        declaration never results in partial work.
        """

        desired = list(desired)
        validate_resources(desired)
        for resource in desired:
            if resource.kind not in self.providers:
                raise ConfigurationError(f"No provider registered for kind '{resource.kind}'")
        edges = dependency_map(desired, runtime_service=self.runtime_service)
        ordered = order_resources(desired, edges)

        plan = ConvergencePlan()
        for resource in ordered:
            state = self._inspect(resource, plan)
            operations, note = DIFFS[resource.kind](resource, state)
            if not operations:
                logger.debug("%s satisfied (%s)", resource.resource_id, note)
                plan.satisfied.append(Observation(resource.resource_id, note))
                continue
            # Only declared dependencies block; implicit edges just order the run.
            preconditions = tuple(sorted(resource.depends_on))
            for operation in operations:
                plan.actions.append(
                    Action(
                        resource=resource,
                        operation=operation,
                        preconditions=preconditions,
                        retry=retry_policy_for(operation, self.retry_settings),
                    )
                )
        logger.info(
            "plan: %d action(s), %d resource(s) already satisfied",
            len(plan.actions),
            len(plan.satisfied),
        )
        return plan

    def _inspect(self, resource: ResourceModel, plan: ConvergencePlan) -> Any:
        provider = self.providers[resource.kind]
        try:
            return provider.inspect(resource, self.executor)
        except ProviderInspectError as exc:
            message = f"{resource.resource_id}: could not read state ({exc.reason}); assuming absent"
            logger.warning(message)
            plan.warnings.append(message)
            return provider.absent_state(resource)
