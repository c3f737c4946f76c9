from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

try:
    import tomllib  # type: ignore[attr-defined]
except ModuleNotFoundError:  # pragma: no cover
    import tomli as tomllib  # type: ignore[no-redef]

from .errors import ConfigurationError


DEFAULT_CONFIG = Path("/etc/stagehand/main.conf")
DEFAULT_MANIFEST = Path("/etc/stagehand/host.toml")
ELEVATION_MODES = ("auto", "sudo", "none")


@dataclass
class StagehandConfig:
    manifest: Path = DEFAULT_MANIFEST
    package_manager: Optional[str] = None
    refresh_package_index: bool = False
    elevate: str = "auto"
    endpoints: tuple[str, ...] = ("1.1.1.1", "8.8.8.8")
    connectivity_timeout: float = 2.0
    foundational: tuple[str, ...] = ("package", "service")
    retry_attempts: int = 2
    retry_backoff: float = 2.0
    dns_canary: str = "ghcr.io"
    dns_upstreams: tuple[str, ...] = ("1.1.1.1", "1.0.0.1", "8.8.8.8", "8.8.4.4")
    dns_fallback: tuple[str, ...] = ("9.9.9.9", "149.112.112.112")
    docker_dns_override: bool = True
    runtime_service: str = "docker"
    health_timeout: float = 60.0
    health_interval: float = 1.0


def load_config(path: Path) -> StagehandConfig:
    path = Path(path)
    if not path.exists():
        return StagehandConfig()
    try:
        data = tomllib.loads(path.read_text())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigurationError(f"{path}: {exc}") from None

    cfg = StagehandConfig()
    defaults = _section(data, "defaults", path)
    connectivity = _section(data, "connectivity", path)
    policy = _section(data, "policy", path)
    dns = _section(data, "dns", path)
    health = _section(data, "health", path)

    manifest = defaults.get("manifest")
    package_manager = defaults.get("package_manager")
    elevate = str(defaults.get("elevate", cfg.elevate)).lower()
    if elevate not in ELEVATION_MODES:
        raise ConfigurationError(f"{path}: elevate must be one of {', '.join(ELEVATION_MODES)}, got '{elevate}'")

    retry_attempts = _number(policy, "retry_attempts", cfg.retry_attempts, path, int)
    if retry_attempts < 1:
        raise ConfigurationError(f"{path}: policy.retry_attempts must be at least 1")

    return StagehandConfig(
        manifest=Path(manifest) if manifest else cfg.manifest,
        package_manager=str(package_manager).lower() if package_manager else None,
        refresh_package_index=bool(defaults.get("refresh_package_index", cfg.refresh_package_index)),
        elevate=elevate,
        endpoints=_strings(connectivity, "endpoints", cfg.endpoints, path),
        connectivity_timeout=_number(connectivity, "timeout", cfg.connectivity_timeout, path),
        foundational=_strings(policy, "foundational", cfg.foundational, path),
        retry_attempts=retry_attempts,
        retry_backoff=_number(policy, "retry_backoff", cfg.retry_backoff, path),
        dns_canary=str(dns.get("canary", cfg.dns_canary)),
        dns_upstreams=_strings(dns, "upstreams", cfg.dns_upstreams, path),
        dns_fallback=_strings(dns, "fallback", cfg.dns_fallback, path),
        docker_dns_override=bool(dns.get("docker_dns_override", cfg.docker_dns_override)),
        runtime_service=str(dns.get("runtime_service", cfg.runtime_service)),
        health_timeout=_number(health, "timeout", cfg.health_timeout, path),
        health_interval=_number(health, "interval", cfg.health_interval, path),
    )


def _section(data: dict[str, Any], name: str, path: Path) -> dict[str, Any]:
    section = data.get(name, {})
    if not isinstance(section, dict):
        raise ConfigurationError(f"{path}: [{name}] must be a table")
    return section


def _strings(section: dict[str, Any], key: str, default: tuple[str, ...], path: Path) -> tuple[str, ...]:
    value = section.get(key)
    if value is None:
        return default
    if isinstance(value, str):
        value = value.split()
    if not isinstance(value, list):
        raise ConfigurationError(f"{path}: {key} must be a list of strings")
    return tuple(str(item) for item in value)


def _number(section: dict[str, Any], key: str, default, path: Path, kind=float):
    value = section.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigurationError(f"{path}: {key} must be a number")
    return kind(value)
