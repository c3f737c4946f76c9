import pytest

from stagehand_automation.errors import InstallFailed
from stagehand_automation.providers.snap import SnapCli, SnapProvider, parse_snap_list
from stagehand_automation.types import Action, ApplyResult, Operation, Snap

SNAP_LIST = """\
Name               Version         Rev    Tracking         Publisher   Notes
code-insiders      1.90.0          1670   latest/stable    vscode      classic
core22             20240111        1122   latest/stable    canonical   base
snapd              2.61.1          20671  latest/stable    canonical   snapd
"""


class FakePackages:
    def __init__(self):
        self.installed: list[list[str]] = []

    def install(self, executor, packages, *, resource_id=None):
        self.installed.append(list(packages))
        return ApplyResult(changed=True, detail="installed")


def test_parse_snap_list_takes_first_column_after_header():
    assert parse_snap_list("warning: something\n" + SNAP_LIST) == ["code-insiders", "core22", "snapd"]
    assert parse_snap_list("") == []


def test_installed_check_is_exact_name(executor):
    executor.binaries.add("snap")
    executor.respond(["snap", "list"], 0, SNAP_LIST)
    provider = SnapProvider(packages=FakePackages(), sleep=lambda _: None)

    assert provider.inspect(Snap("code-insiders"), executor).installed is True
    assert provider.inspect(Snap("code"), executor).installed is False


def test_install_with_classic_flag(executor):
    executor.binaries.add("snap")
    executor.respond(["snap", "list"], 0, SNAP_LIST)
    provider = SnapProvider(packages=FakePackages(), sleep=lambda _: None)

    result = provider.apply(Action(Snap("pycharm-community", classic=True), Operation.INSTALL_SNAP), executor)

    assert result.changed is True
    assert result.detail == "installed (classic)"
    assert executor.ran("snap", "install", "pycharm-community", "--classic")


def test_already_installed_snap_is_noop(executor):
    executor.binaries.add("snap")
    executor.respond(["snap", "list"], 0, SNAP_LIST)
    provider = SnapProvider(packages=FakePackages(), sleep=lambda _: None)

    result = provider.apply(Action(Snap("core22"), Operation.INSTALL_SNAP), executor)

    assert result.changed is False
    assert not any(call[:2] == ["snap", "install"] for call in executor.calls)


def test_missing_snapd_is_bootstrapped_first(executor):
    packages = FakePackages()
    sleeps: list[float] = []
    provider = SnapProvider(packages=packages, sleep=sleeps.append)

    class AppearingSnap(SnapCli):
        def available(self, executor) -> bool:
            return bool(packages.installed)

    provider.snap = AppearingSnap()
    state = provider.inspect(Snap("spotify"), executor)
    assert state.tool_present is False
    assert state.installed is False

    result = provider.apply(Action(Snap("spotify"), Operation.INSTALL_SNAP), executor)

    assert packages.installed == [["snapd"]]
    assert sleeps == [2.0]
    assert result.changed is True
    assert executor.ran("snap", "install", "spotify")


def test_snap_install_failure_carries_remediation(executor):
    executor.binaries.add("snap")
    executor.respond(["snap", "install", "slack"], 1, "", "error: cannot install \"slack\"")
    provider = SnapProvider(packages=FakePackages(), sleep=lambda _: None)

    with pytest.raises(InstallFailed) as excinfo:
        provider.apply(Action(Snap("slack"), Operation.INSTALL_SNAP), executor)

    assert excinfo.value.remediation == "sudo snap install slack"
    assert excinfo.value.transient is True
