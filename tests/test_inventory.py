from pathlib import Path

import pytest

from stagehand_automation.errors import ConfigurationError
from stagehand_automation.inventory import ManifestLoader
from stagehand_automation.types import Container, DNSConfig, Package, Pool, Service, Snap

MANIFEST = """
[[package]]
names = ["curl", "git"]

[[service]]
name = "docker"
depends_on = "package:curl"

[[snap]]
name = "pycharm-community"
classic = true

[[pool]]
name = "tank"

[[container]]
name = "open-webui"
image = "ghcr.io/open-webui/open-webui:main"
network_mode = "host"
env = { OLLAMA_BASE_URL = "http://127.0.0.1:11434" }
volumes = ["open-webui:/app/backend/data"]
restart_policy = "always"
health_url = "http://127.0.0.1:8080/"

[dns]
nameservers = ["1.1.1.1", "8.8.8.8"]
fallback = ["9.9.9.9"]
"""


def test_load_manifest_builds_typed_resources(tmp_path: Path) -> None:
    path = tmp_path / "host.toml"
    path.write_text(MANIFEST)

    resources = ManifestLoader().load(path)

    assert resources == [
        Package("curl"),
        Package("git"),
        Service("docker", depends_on=("package:curl",)),
        Snap("pycharm-community", classic=True),
        Pool("tank"),
        Container(
            "open-webui",
            image="ghcr.io/open-webui/open-webui:main",
            network_mode="host",
            env=(("OLLAMA_BASE_URL", "http://127.0.0.1:11434"),),
            volumes=(("open-webui", "/app/backend/data"),),
            restart_policy="always",
            health_url="http://127.0.0.1:8080/",
        ),
        DNSConfig(nameservers=("1.1.1.1", "8.8.8.8"), fallback=("9.9.9.9",)),
    ]


def test_env_and_ports_accept_string_forms() -> None:
    resources = ManifestLoader().parse(
        {"container": [{"name": "app", "image": "x", "env": ["A=1", "B=x=y"], "ports": ["3000:8080"]}]}
    )

    assert resources[0].env == (("A", "1"), ("B", "x=y"))
    assert resources[0].ports == (("3000", "8080"),)


def test_includes_are_resolved_relative_to_the_file(tmp_path: Path) -> None:
    (tmp_path / "common").mkdir()
    (tmp_path / "common" / "base.toml").write_text('[[package]]\nname = "curl"\n')
    main = tmp_path / "host.toml"
    main.write_text('include = ["common/base.toml"]\n\n[[snap]]\nname = "spotify"\n')

    resources = ManifestLoader().load(main)

    assert resources == [Package("curl"), Snap("spotify")]


def test_recursive_include_is_rejected(tmp_path: Path) -> None:
    a = tmp_path / "a.toml"
    b = tmp_path / "b.toml"
    a.write_text('include = "b.toml"\n')
    b.write_text('include = "a.toml"\n')

    with pytest.raises(ConfigurationError, match="Recursive include"):
        ManifestLoader().load(a)


def test_notes_are_collected_in_include_order(tmp_path: Path) -> None:
    (tmp_path / "base.toml").write_text('notes = ["sudo install -m 0755 -d /etc/apt/keyrings"]\n')
    main = tmp_path / "host.toml"
    main.write_text('include = ["base.toml"]\nnotes = ["ollama pull qwen2.5:32b-instruct"]\n')
    loader = ManifestLoader()

    assert loader.load(main) == []
    assert loader.notes == [
        "sudo install -m 0755 -d /etc/apt/keyrings",
        "ollama pull qwen2.5:32b-instruct",
    ]


@pytest.mark.parametrize(
    "data, message",
    [
        ({"container": [{"name": "app"}]}, "requires an image"),
        ({"service": [{"enabled": True}]}, "non-empty name"),
        ({"snap": [{"name": "x", "classic": "yes"}]}, "true or false"),
        ({"package": [{"name": "x", "version": "1"}]}, "unknown key"),
        ({"dns": {"fallback": ["9.9.9.9"]}}, "at least one nameserver"),
        ({"container": [{"name": "app", "image": "x", "volumes": ["nocolon"]}]}, "a:b"),
    ],
)
def test_malformed_entries_raise_configuration_error(data, message) -> None:
    with pytest.raises(ConfigurationError, match=message):
        ManifestLoader().parse(data)


def test_unknown_section_and_bad_toml(tmp_path: Path) -> None:
    path = tmp_path / "host.toml"
    path.write_text('[[printer]]\nname = "laser"\n')
    with pytest.raises(ConfigurationError, match="unknown section"):
        ManifestLoader().load(path)

    path.write_text("[[package]\n")
    with pytest.raises(ConfigurationError):
        ManifestLoader().load(path)

    with pytest.raises(ConfigurationError, match="does not exist"):
        ManifestLoader().load(tmp_path / "missing.toml")
