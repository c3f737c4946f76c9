from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional, Sequence
import logging
import subprocess

from .base import Provider, failure_detail, unsupported
from ..errors import InstallFailed, ProviderInspectError
from ..executors import Executor
from ..types import Action, ApplyResult, Operation, Package

logger = logging.getLogger(__name__)


@dataclass
class PackageState:
    installed: bool


class PackageProvider(Provider):
    """Install packages using the detected package manager."""

    kind = "package"

    def __init__(
        self,
        manager: Optional["PackageManager"] = None,
        *,
        preferred: Optional[str] = None,
        refresh_index: bool = False,
    ):
        self._manager = manager
        self.preferred = preferred
        self.refresh_index = refresh_index
        self._refreshed = False
        self._batched: dict[str, str] = {}

    def manager_for(self, executor: Executor) -> "PackageManager":
        if self._manager is None:
            self._manager = PackageManagerFactory.create(self.preferred, executor)
        return self._manager

    def inspect(self, resource: Package, executor: Executor) -> PackageState:
        try:
            manager = self.manager_for(executor)
            return PackageState(installed=manager.is_installed(executor, resource.name))
        except (RuntimeError, ValueError, OSError, subprocess.CalledProcessError) as exc:
            raise ProviderInspectError(resource.resource_id, failure_detail(exc)) from exc

    def absent_state(self, resource: Package) -> PackageState:
        return PackageState(installed=False)

    def prepare(self, actions: Sequence[Action], executor: Executor) -> None:
        """Install a run of planned packages with a single installer call.

        On failure nothing is marked, and each action installs on its own so
        the failing package is reported against the right resource.
        """

        names = [action.resource.name for action in actions if action.operation is Operation.INSTALL]
        if len(names) < 2:
            return
        try:
            result = self.install(executor, names)
        except InstallFailed as exc:
            logger.warning("Batch install of %s failed (%s); installing one at a time", names, exc.reason)
            return
        self._batched = {name: result.detail for name in names}

    def apply(self, action: Action, executor: Executor) -> ApplyResult:
        if action.operation is not Operation.INSTALL:
            raise InstallFailed(action.resource_id, unsupported(action), transient=False)
        name = action.resource.name
        if name in self._batched:
            return ApplyResult(changed=True, detail=f"{self._batched.pop(name)} (batched)")
        return self.install(executor, [name], resource_id=action.resource_id)

    def install(
        self,
        executor: Executor,
        packages: Iterable[str],
        *,
        resource_id: Optional[str] = None,
    ) -> ApplyResult:
        """Install the missing subset of ``packages``."""

        names = list(packages)
        rid = resource_id or f"package:{','.join(names)}"
        try:
            manager = self.manager_for(executor)
            refresh = self.refresh_index and not self._refreshed
            changed, details = manager.ensure_present(executor, names, refresh=refresh)
            if changed and refresh:
                self._refreshed = True
        except subprocess.CalledProcessError as exc:
            raise InstallFailed(rid, failure_detail(exc), transient=False) from exc
        except (RuntimeError, ValueError, OSError) as exc:
            raise InstallFailed(rid, failure_detail(exc), transient=False) from exc
        logger.debug("package-manager=%s packages=%s %s", manager.name, names, details)
        return ApplyResult(changed=changed, detail=f"manager={manager.name} {details}")


class PackageManagerFactory:
    _MANAGERS = [
        ("apt-get", "apt", lambda: AptPackageManager()),
        ("dnf", "dnf", lambda: DnfPackageManager()),
        ("yum", "yum", lambda: YumPackageManager()),
        ("pacman", "pacman", lambda: PacmanPackageManager()),
    ]

    @classmethod
    def create(cls, preferred: Optional[object], executor: Executor) -> "PackageManager":
        if isinstance(preferred, str):
            preferred = preferred.lower()
            for _, key, factory in cls._MANAGERS:
                if key == preferred:
                    return factory()
            raise ValueError(f"Unknown package manager '{preferred}'")
        for binary, _, factory in cls._MANAGERS:
            if executor.which(binary):
                return factory()
        raise RuntimeError("No supported package manager found on PATH")


class PackageManager:
    name = "generic"

    def ensure_present(
        self, executor: Executor, packages: Iterable[str], *, refresh: bool = False
    ) -> tuple[bool, str]:
        # Only hand the installer what is missing; some backends exit non-zero
        # when asked to install something already current.
        needed = [pkg for pkg in packages if not self.is_installed(executor, pkg)]
        if not needed:
            return False, "already-installed"
        if refresh:
            self.refresh(executor)
        self.install(executor, needed)
        return True, f"installed={','.join(needed)}"

    def refresh(self, executor: Executor) -> None:
        """Refresh the package index; backends without one do nothing."""

    def install(self, executor: Executor, packages: list[str]) -> None:
        raise NotImplementedError

    def is_installed(self, executor: Executor, package: str) -> bool:
        raise NotImplementedError


@dataclass
class DpkgQuery:
    executable: str = "dpkg-query"

    def check(self, executor: Executor, package: str) -> bool:
        result = executor.run(
            [self.executable, "-W", "-f", "${Status}", package],
            check=False,
            mutable=False,
        )
        return result.returncode == 0 and result.stdout.strip().endswith(" installed")


class AptPackageManager(PackageManager):
    name = "apt"

    def __init__(self) -> None:
        self.query = DpkgQuery()

    def refresh(self, executor: Executor) -> None:
        executor.run(["apt-get", "update", "-y"])

    def install(self, executor: Executor, packages: list[str]) -> None:
        executor.run(
            ["env", "DEBIAN_FRONTEND=noninteractive", "apt-get", "install", "-y", *packages]
        )

    def is_installed(self, executor: Executor, package: str) -> bool:
        return self.query.check(executor, package)


class DnfPackageManager(PackageManager):
    name = "dnf"

    def refresh(self, executor: Executor) -> None:
        executor.run(["dnf", "makecache", "-y"])

    def install(self, executor: Executor, packages: list[str]) -> None:
        executor.run(["dnf", "install", "-y", *packages])

    def is_installed(self, executor: Executor, package: str) -> bool:
        result = executor.run(["rpm", "-q", package], check=False, mutable=False)
        return result.returncode == 0


class YumPackageManager(DnfPackageManager):
    name = "yum"

    def refresh(self, executor: Executor) -> None:  # type: ignore[override]
        executor.run(["yum", "makecache", "-y"])

    def install(self, executor: Executor, packages: list[str]) -> None:  # type: ignore[override]
        executor.run(["yum", "install", "-y", *packages])


class PacmanPackageManager(PackageManager):
    name = "pacman"

    def refresh(self, executor: Executor) -> None:
        executor.run(["pacman", "-Sy", "--noconfirm"])

    def install(self, executor: Executor, packages: list[str]) -> None:
        executor.run(["pacman", "-S", "--noconfirm", *packages])

    def is_installed(self, executor: Executor, package: str) -> bool:
        result = executor.run(["pacman", "-Qi", package], check=False, mutable=False)
        return result.returncode == 0
