import pytest

from stagehand_automation.engine import ConvergenceEngine, build_providers
from stagehand_automation.errors import ConfigWriteFailed, ConnectivityError
from stagehand_automation.health import HealthVerifier
from stagehand_automation.probe import ConnectivityProbe
from stagehand_automation.providers.container import ContainerInfo, ContainerProvider
from stagehand_automation.providers.dns import DNSProvider, DnsState
from stagehand_automation.providers.package import PackageManager, PackageProvider
from stagehand_automation.providers.pool import PoolProvider
from stagehand_automation.providers.service import ServiceProvider
from stagehand_automation.types import Container, DNSConfig, Outcome, Package, Pool, Service

SCENARIO = [
    Package("curl"),
    Service("docker", enabled=True, running=True),
    Container("app", image="x:latest", network_mode="host"),
]


class FakePackageManager(PackageManager):
    name = "fake"

    def __init__(self):
        self.installed: set[str] = set()

    def install(self, executor, packages):  # type: ignore[override]
        self.installed.update(packages)

    def is_installed(self, executor, package):  # type: ignore[override]
        return package in self.installed


class FakeSystemCtl:
    def __init__(self):
        self.enabled: set[str] = set()
        self.active: set[str] = set()

    def available(self, executor):
        return True

    def is_enabled(self, executor, name):
        return name in self.enabled

    def is_active(self, executor, name):
        return name in self.active

    def enable(self, executor, name):
        self.enabled.add(name)

    def start(self, executor, name):
        self.active.add(name)

    def restart(self, executor, name):
        self.active.add(name)


class FakeDocker:
    def __init__(self):
        self.containers: dict[str, bool] = {}
        self.images: set[str] = set()
        self.runs = 0

    def available(self, executor):
        return True

    def list_containers(self, executor, *, all=True):
        return [ContainerInfo(name, running) for name, running in self.containers.items()]

    def image_present(self, executor, image):
        return image in self.images

    def pull(self, executor, image):
        self.images.add(image)

    def run(self, executor, spec):
        self.runs += 1
        self.containers[spec.name] = True

    def start(self, executor, name):
        self.containers[name] = True


class AlwaysDown:
    def get_status(self, url, timeout):
        return 503


@pytest.fixture
def host():
    systemctl = FakeSystemCtl()
    docker = FakeDocker()
    providers = {
        "package": PackageProvider(FakePackageManager()),
        "service": ServiceProvider(systemctl),
        "container": ContainerProvider(docker),
    }
    return providers, systemctl, docker


def _engine(executor, providers, systemctl, **kwargs):
    clock = iter(range(0, 10_000))
    return ConvergenceEngine(
        executor,
        providers,
        verifier=HealthVerifier(timeout=3, interval=1, sleep=lambda _: None, clock=lambda: float(next(clock))),
        systemctl=systemctl,
        sleep=lambda _: None,
        clock=lambda: 0.0,
        **kwargs,
    )


def test_fresh_host_converges_with_five_applied_actions(executor, host):
    providers, systemctl, docker = host
    engine = _engine(executor, providers, systemctl)

    report = engine.converge(SCENARIO, check_connectivity=False)

    assert [(e.resource_id, e.operation.value) for e in report.entries] == [
        ("package:curl", "Install"),
        ("service:docker", "EnableService"),
        ("service:docker", "StartService"),
        ("container:app", "PullImage"),
        ("container:app", "RunContainer"),
    ]
    assert report.outcomes() == [Outcome.APPLIED] * 5
    assert report.ok is True
    assert report.warnings == []
    assert engine.plan(SCENARIO).actions == []


def test_second_run_is_all_satisfied_and_creates_nothing(executor, host):
    providers, systemctl, docker = host
    engine = _engine(executor, providers, systemctl)
    engine.converge(SCENARIO, check_connectivity=False)

    report = engine.converge(SCENARIO, check_connectivity=False)

    assert report.outcomes() == [Outcome.SATISFIED] * 3
    assert docker.runs == 1


def test_running_container_is_reported_satisfied(executor, host):
    providers, systemctl, docker = host
    docker.containers["app"] = True

    report = _engine(executor, providers, systemctl).converge(SCENARIO, check_connectivity=False)

    satisfied = [e for e in report.entries if e.outcome is Outcome.SATISFIED]
    assert [e.resource_id for e in satisfied] == ["container:app"]
    assert not any(e.operation and e.operation.value in {"RunContainer", "StartContainer"} for e in report.entries)
    assert report.ok is True


def test_connectivity_failure_stops_before_any_change(executor, host):
    providers, systemctl, docker = host
    executor.respond(["ping", "-c", "1", "-W", "2", "1.1.1.1"], 1)
    executor.respond(["ping", "-c", "1", "-W", "2", "8.8.8.8"], 1)
    engine = _engine(executor, providers, systemctl, probe=ConnectivityProbe(executor))

    with pytest.raises(ConnectivityError):
        engine.converge(SCENARIO)

    assert systemctl.enabled == set()
    assert docker.runs == 0


def test_unhealthy_endpoint_is_a_warning_not_a_failure(executor, host):
    providers, systemctl, docker = host
    desired = [Container("web", image="y:latest", health_url="http://127.0.0.1:8080/")]

    report = _engine(executor, providers, systemctl, http_client=AlwaysDown()).converge(
        desired, check_connectivity=False
    )

    assert report.ok is True
    assert report.warnings == ["container:web did not become healthy within 3s"]


def test_build_providers_covers_every_kind():
    providers = build_providers(sleep=lambda _: None)

    assert sorted(providers) == ["container", "dns", "package", "pool", "service", "snap"]
    assert providers["container"].remediator is not None


class FailingDNSProvider(DNSProvider):
    def inspect(self, resource, executor):
        return DnsState(strategy="static")

    def apply(self, action, executor):
        raise ConfigWriteFailed(action.resource_id, "read-only file system")


def test_failed_dns_write_does_not_block_packages(executor, host):
    providers, systemctl, docker = host
    providers["dns"] = FailingDNSProvider(systemctl=systemctl)
    desired = [DNSConfig(nameservers=("1.1.1.1",)), Package("curl")]

    report = _engine(executor, providers, systemctl).converge(desired, check_connectivity=False)

    outcomes = {(e.resource_id, e.operation.value): e.outcome for e in report.entries}
    assert outcomes[("dns:resolver", "WriteConfig")] is Outcome.FAILED_FATAL
    assert outcomes[("dns:resolver", "RestartDaemon")] is Outcome.BLOCKED
    assert outcomes[("package:curl", "Install")] is Outcome.APPLIED
    assert providers["package"].inspect(Package("curl"), executor).installed is True


class ZfsPackageManager(FakePackageManager):
    def __init__(self, executor):
        super().__init__()
        self.executor = executor

    def install(self, executor, packages):  # type: ignore[override]
        super().install(executor, packages)
        if "zfsutils-linux" in packages:
            self.executor.binaries.add("zpool")


def test_pool_is_imported_in_the_run_that_installs_zfs(executor, host):
    _, systemctl, _ = host
    providers = {"package": PackageProvider(ZfsPackageManager(executor)), "pool": PoolProvider()}
    executor.script(["zpool", "list", "-H", "-o", "name"], (0, ""), (0, "tank\n"))
    executor.respond(["zpool", "import"], 0, "   pool: tank\n     id: 42\n")
    desired = [Package("zfsutils-linux"), Pool("tank")]
    engine = _engine(executor, providers, systemctl)

    report = engine.converge(desired, check_connectivity=False)

    assert [(e.resource_id, e.operation.value, e.outcome) for e in report.entries] == [
        ("package:zfsutils-linux", "Install", Outcome.APPLIED),
        ("pool:tank", "ImportPool", Outcome.APPLIED),
    ]
    assert executor.ran("zpool", "import", "tank")
    assert engine.plan(desired).actions == []
