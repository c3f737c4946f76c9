from __future__ import annotations

import logging
import time
from typing import Callable, Iterable, Optional, Sequence

from .config import StagehandConfig
from .errors import VerificationTimeout
from .executors import Executor, LocalExecutor, detect_elevation
from .health import HealthVerifier, HttpClient, HttpProbe, ServiceActiveProbe
from .planner import DEFAULT_RUNTIME_SERVICE, ConvergencePlan, ConvergencePlanner, RetrySettings
from .probe import ConnectivityProbe
from .providers import (
    ContainerProvider,
    DNSProvider,
    PackageProvider,
    PoolProvider,
    Provider,
    ServiceProvider,
    SnapProvider,
    SystemCtl,
)
from .remediation import DnsRemediator, RemediationSettings
from .runner import DEFAULT_FOUNDATIONAL, ActionRunner
from .types import (
    Action,
    Container,
    ExecutionReport,
    Outcome,
    ReportEntry,
    ResourceModel,
    Service,
)

logger = logging.getLogger(__name__)


def build_providers(
    cfg: Optional[StagehandConfig] = None,
    *,
    sleep: Callable[[float], None] = time.sleep,
) -> dict[str, Provider]:
    """Wire the standard providers together for a local host."""

    cfg = cfg or StagehandConfig()
    systemctl = SystemCtl()
    packages = PackageProvider(preferred=cfg.package_manager, refresh_index=cfg.refresh_package_index)
    dns = DNSProvider(systemctl=systemctl)
    remediator = DnsRemediator(
        dns,
        systemctl,
        RemediationSettings(
            canary=cfg.dns_canary,
            upstreams=cfg.dns_upstreams,
            fallback=cfg.dns_fallback,
            docker_dns_override=cfg.docker_dns_override,
            runtime_service=cfg.runtime_service,
        ),
        sleep=sleep,
    )
    providers: list[Provider] = [
        packages,
        ServiceProvider(systemctl),
        SnapProvider(packages=packages, sleep=sleep),
        PoolProvider(),
        ContainerProvider(remediator=remediator),
        dns,
    ]
    return {provider.kind: provider for provider in providers}


class ConvergenceEngine:
    """Probe, plan, apply and verify, in that order."""

    def __init__(
        self,
        executor: Executor,
        providers: dict[str, Provider],
        *,
        probe: Optional[ConnectivityProbe] = None,
        verifier: Optional[HealthVerifier] = None,
        retry: Optional[RetrySettings] = None,
        foundational: Iterable[str] = DEFAULT_FOUNDATIONAL,
        runtime_service: str = DEFAULT_RUNTIME_SERVICE,
        http_client: Optional[HttpClient] = None,
        systemctl: Optional[SystemCtl] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        progress_callback: Optional[Callable[[Action], None]] = None,
    ):
        self.executor = executor
        self.providers = providers
        self.probe = probe
        self.verifier = verifier or HealthVerifier(sleep=sleep, clock=clock)
        self.http_client = http_client
        self.systemctl = systemctl or SystemCtl()
        self.planner = ConvergencePlanner(providers, executor, retry, runtime_service=runtime_service)
        self.runner = ActionRunner(
            providers,
            executor,
            foundational=foundational,
            sleep=sleep,
            clock=clock,
            progress_callback=progress_callback,
        )

    @classmethod
    def from_config(
        cls,
        cfg: StagehandConfig,
        *,
        dry_run: bool = False,
        progress_callback: Optional[Callable[[Action], None]] = None,
    ) -> "ConvergenceEngine":
        executor = LocalExecutor(dry_run=dry_run, elevate=detect_elevation(cfg.elevate))
        return cls(
            executor,
            build_providers(cfg),
            probe=ConnectivityProbe(executor, cfg.endpoints, cfg.connectivity_timeout),
            verifier=HealthVerifier(cfg.health_timeout, cfg.health_interval),
            retry=RetrySettings(attempts=cfg.retry_attempts, backoff=cfg.retry_backoff),
            foundational=cfg.foundational,
            runtime_service=cfg.runtime_service,
            progress_callback=progress_callback,
        )

    def preflight(self) -> None:
        if self.probe is not None:
            self.probe.require()

    def plan(self, resources: Sequence[ResourceModel]) -> ConvergencePlan:
        return self.planner.survey(resources)

    def converge(
        self,
        resources: Sequence[ResourceModel],
        *,
        check_connectivity: bool = True,
        plan: Optional[ConvergencePlan] = None,
    ) -> ExecutionReport:
        """Bring the host to the declared state and return what happened.

        ``ConnectivityError`` and ``ConfigurationError`` propagate before
        anything is changed; everything after that lands in the report.
        """

        if check_connectivity:
            self.preflight()
        plan = plan or self.plan(resources)

        report = ExecutionReport()
        for warning in plan.warnings:
            report.warn(warning)
        for observation in plan.satisfied:
            report.record(
                ReportEntry(
                    resource_id=observation.resource_id,
                    operation=None,
                    outcome=Outcome.SATISFIED,
                    detail=observation.detail,
                )
            )
        self.runner.run(plan.actions, report)
        if not report.aborted:
            self.verify(resources, report)
        return report

    def verify(self, resources: Sequence[ResourceModel], report: ExecutionReport) -> None:
        failed = report.failed_resources()
        for resource in resources:
            if resource.resource_id in failed:
                continue
            probe = self._probe_for(resource)
            if probe is None:
                continue
            logger.info("Waiting for %s to become healthy", resource.resource_id)
            try:
                self.verifier.ensure_healthy(resource.resource_id, probe)
            except VerificationTimeout as exc:
                logger.warning("%s", exc)
                report.warn(str(exc))

    def _probe_for(self, resource: ResourceModel):
        health_url = getattr(resource, "health_url", None)
        if isinstance(resource, (Container, Service)) and health_url:
            return HttpProbe(health_url, client=self.http_client)
        if isinstance(resource, Service) and resource.running:
            return ServiceActiveProbe(self.executor, resource.name, systemctl=self.systemctl)
        return None
