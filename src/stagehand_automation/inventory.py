from __future__ import annotations

from pathlib import Path
from typing import Any, Optional

try:
    import tomllib  # type: ignore[attr-defined]
except ModuleNotFoundError:  # pragma: no cover
    import tomli as tomllib  # type: ignore[no-redef]

from .errors import ConfigurationError
from .types import Container, DNSConfig, Package, Pool, ResourceModel, Service, Snap

_ALLOWED_KEYS: dict[str, set[str]] = {
    Package.kind: {"name", "names", "depends_on"},
    Service.kind: {"name", "enabled", "running", "health_url", "depends_on"},
    Snap.kind: {"name", "classic", "depends_on"},
    Pool.kind: {"name", "depends_on"},
    Container.kind: {
        "name",
        "image",
        "network_mode",
        "env",
        "volumes",
        "restart_policy",
        "ports",
        "extra_hosts",
        "health_url",
        "depends_on",
    },
    DNSConfig.kind: {"nameservers", "fallback", "stub_listener", "depends_on"},
}
_TOP_LEVEL = set(_ALLOWED_KEYS) | {"include", "notes"}


class ManifestLoader:
    """Loads desired host state from TOML manifests.

    Top-level ``notes`` are free-form manual steps collected into ``notes``
    in include order; they are reported, never executed.
    """

    def __init__(self) -> None:
        self.notes: list[str] = []

    def load(self, path: Path) -> list[ResourceModel]:
        self.notes = []
        return self._load(Path(path), set())

    def _load(self, path: Path, seen: set[Path]) -> list[ResourceModel]:
        real = path.resolve()
        if real in seen:
            raise ConfigurationError(f"Recursive include detected for {path}")
        seen = seen | {real}
        try:
            data = tomllib.loads(path.read_text())
        except FileNotFoundError:
            raise ConfigurationError(f"Manifest {path} does not exist") from None
        except tomllib.TOMLDecodeError as exc:
            raise ConfigurationError(f"{path}: {exc}") from None

        unknown = sorted(set(data) - _TOP_LEVEL)
        if unknown:
            raise ConfigurationError(f"{path}: unknown section(s) {', '.join(unknown)}")

        resources: list[ResourceModel] = []
        for include in _strings(data.get("include"), "include", path):
            resources.extend(self._load(path.parent / include, seen))
        self.notes.extend(_strings(data.get("notes"), "notes", path))
        resources.extend(self.parse(data, source=str(path)))
        return resources

    def parse(self, data: dict[str, Any], *, source: str = "<manifest>") -> list[ResourceModel]:
        resources: list[ResourceModel] = []
        for kind in (Package.kind, Service.kind, Snap.kind, Pool.kind, Container.kind):
            entries = data.get(kind, [])
            if isinstance(entries, dict):
                entries = [entries]
            if not isinstance(entries, list):
                raise ConfigurationError(f"{source}: [[{kind}]] must be an array of tables")
            for position, entry in enumerate(entries, start=1):
                where = f"{source}: {kind} #{position}"
                if not isinstance(entry, dict):
                    raise ConfigurationError(f"{where} must be a table")
                _check_keys(entry, kind, where)
                resources.extend(self._build(kind, entry, where))

        dns = data.get(DNSConfig.kind)
        if dns is not None:
            if not isinstance(dns, dict):
                raise ConfigurationError(f"{source}: [dns] must be a table")
            _check_keys(dns, DNSConfig.kind, f"{source}: dns")
            resources.append(
                DNSConfig(
                    nameservers=_strings(dns.get("nameservers"), "nameservers", source),
                    fallback=_strings(dns.get("fallback"), "fallback", source),
                    stub_listener=_bool(dns.get("stub_listener", True), "stub_listener", source),
                    depends_on=_strings(dns.get("depends_on"), "depends_on", source),
                )
            )
        return resources

    @staticmethod
    def _build(kind: str, entry: dict[str, Any], where: str) -> list[ResourceModel]:
        depends = _strings(entry.get("depends_on"), "depends_on", where)
        name = entry.get("name")
        if name is not None and not isinstance(name, str):
            raise ConfigurationError(f"{where}: name must be a string")

        if kind == Package.kind:
            names = _strings(entry.get("names"), "names", where)
            if name:
                names = (name, *names)
            if not names:
                raise ConfigurationError(f"{where}: package requires 'name' or 'names'")
            return [Package(name=item, depends_on=depends) for item in names]

        if kind == Service.kind:
            return [
                Service(
                    name=name or "",
                    enabled=_bool(entry.get("enabled", True), "enabled", where),
                    running=_bool(entry.get("running", True), "running", where),
                    health_url=_optional_str(entry.get("health_url"), "health_url", where),
                    depends_on=depends,
                )
            ]

        if kind == Snap.kind:
            return [
                Snap(
                    name=name or "",
                    classic=_bool(entry.get("classic", False), "classic", where),
                    depends_on=depends,
                )
            ]

        if kind == Pool.kind:
            return [Pool(name=name or "", depends_on=depends)]

        return [
            Container(
                name=name or "",
                image=_optional_str(entry.get("image"), "image", where) or "",
                network_mode=_optional_str(entry.get("network_mode"), "network_mode", where),
                env=_env(entry.get("env"), where),
                volumes=_pairs(entry.get("volumes"), "volumes", where),
                restart_policy=_optional_str(entry.get("restart_policy"), "restart_policy", where),
                ports=_pairs(entry.get("ports"), "ports", where),
                extra_hosts=_strings(entry.get("extra_hosts"), "extra_hosts", where),
                health_url=_optional_str(entry.get("health_url"), "health_url", where),
                depends_on=depends,
            )
        ]


def _check_keys(entry: dict[str, Any], kind: str, where: str) -> None:
    unknown = sorted(set(entry) - _ALLOWED_KEYS[kind])
    if unknown:
        raise ConfigurationError(f"{where}: unknown key(s) {', '.join(unknown)}")


def _as_list(value: Any, key: str, where: Any) -> list[Any]:
    if value is None:
        return []
    if isinstance(value, (str, int, float, bool)):
        return [value]
    if not isinstance(value, list):
        raise ConfigurationError(f"{where}: {key} must be a string or a list")
    return value


def _strings(value: Any, key: str, where: Any) -> tuple[str, ...]:
    items = _as_list(value, key, where)
    if not all(isinstance(item, str) for item in items):
        raise ConfigurationError(f"{where}: {key} must contain only strings")
    return tuple(items)


def _bool(value: Any, key: str, where: str) -> bool:
    if not isinstance(value, bool):
        raise ConfigurationError(f"{where}: {key} must be true or false")
    return value


def _optional_str(value: Any, key: str, where: str) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ConfigurationError(f"{where}: {key} must be a string")
    return value


def _env(value: Any, where: str) -> tuple[tuple[str, str], ...]:
    if value is None:
        return ()
    if isinstance(value, dict):
        return tuple((str(key), str(val)) for key, val in value.items())
    pairs: list[tuple[str, str]] = []
    for item in _strings(value, "env", where):
        key, sep, val = item.partition("=")
        if not sep or not key:
            raise ConfigurationError(f"{where}: env entry '{item}' is not KEY=VALUE")
        pairs.append((key, val))
    return tuple(pairs)


def _pairs(value: Any, key: str, where: str) -> tuple[tuple[str, str], ...]:
    pairs: list[tuple[str, str]] = []
    for item in _strings(value, key, where):
        left, sep, right = item.partition(":")
        if not sep or not left or not right:
            raise ConfigurationError(f"{where}: {key} entry '{item}' must look like 'a:b'")
        pairs.append((left, right))
    return tuple(pairs)
