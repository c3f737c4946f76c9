from pathlib import Path

from stagehand_automation import cli
from stagehand_automation.errors import ConnectivityError
from stagehand_automation.planner import ConvergencePlan, Observation
from stagehand_automation.types import (
    Action,
    ExecutionReport,
    Operation,
    Outcome,
    Package,
    ReportEntry,
)


def test_format_entry_failed(monkeypatch):
    monkeypatch.setenv("NO_COLOR", "1")
    entry = ReportEntry("pool:tank", Operation.IMPORT_POOL, Outcome.FAILED_FATAL, detail="I/O error")

    assert cli.format_entry(entry) == "pool:tank::ImportPool failed - I/O error"


def test_format_entry_satisfied_observation(monkeypatch):
    monkeypatch.setenv("NO_COLOR", "1")
    entry = ReportEntry("container:app", None, Outcome.SATISFIED, detail="running")

    assert cli.format_entry(entry) == "container:app::Inspect ok - running"


def test_summary_counts_and_follow_ups(monkeypatch):
    monkeypatch.setenv("NO_COLOR", "1")
    report = ExecutionReport()
    report.record(ReportEntry("package:curl", Operation.INSTALL, Outcome.APPLIED))
    report.record(ReportEntry("service:docker", None, Outcome.SATISFIED))
    report.record(
        ReportEntry(
            "pool:tank",
            Operation.IMPORT_POOL,
            Outcome.FAILED_FATAL,
            detail="cannot import",
            remediation="sudo zpool import -f tank",
        )
    )
    report.warn("container:web did not become healthy within 60s")

    summary = cli.Summary(report)

    assert summary.render() == "Satisfied: 1 | Applied: 1 | Warnings: 1 | Failures: 1"
    details = summary.render_follow_ups()
    assert "Converged: package:curl, service:docker" in details
    assert "pool:tank: cannot import (try: sudo zpool import -f tank)" in details
    assert "container:web did not become healthy within 60s" in details


def test_summary_lists_manual_steps_last(monkeypatch):
    monkeypatch.setenv("NO_COLOR", "1")
    report = ExecutionReport()
    report.record(ReportEntry("package:curl", Operation.INSTALL, Outcome.APPLIED))

    details = cli.Summary(report, notes=["ollama pull qwen2.5:32b-instruct"]).render_follow_ups()

    assert details.splitlines()[-2:] == ["Manual steps:", "  - ollama pull qwen2.5:32b-instruct"]


def test_format_plan_lists_pending_actions(monkeypatch):
    monkeypatch.setenv("NO_COLOR", "1")
    plan = ConvergencePlan(
        actions=[Action(Package("curl"), Operation.INSTALL)],
        satisfied=[Observation("service:docker", "enabled, active")],
    )

    text = cli.format_plan(plan)

    assert "package:curl::Install(curl) would run" in text
    assert "service:docker ok - enabled, active" in text
    assert text.endswith("Planned actions: 1 | Satisfied: 1")


class StubEngine:
    def __init__(self, *, fail_preflight=False, report=None):
        self.fail_preflight = fail_preflight
        self.report = report or ExecutionReport()
        self.converged = False

    def preflight(self):
        if self.fail_preflight:
            raise ConnectivityError("no network connectivity")

    def plan(self, resources):
        return ConvergencePlan(actions=[Action(Package("curl"), Operation.INSTALL)])

    def converge(self, resources, *, check_connectivity=True, plan=None):
        self.converged = True
        return self.report


def _patch_engine(monkeypatch, engine):
    monkeypatch.setattr(cli.ConvergenceEngine, "from_config", classmethod(lambda cls, cfg, **kw: engine))


def _manifest(tmp_path: Path) -> str:
    path = tmp_path / "host.toml"
    path.write_text('[[package]]\nname = "curl"\n')
    return str(path)


def test_main_exit_codes(monkeypatch, tmp_path, capsys):
    monkeypatch.setenv("NO_COLOR", "1")
    args = [_manifest(tmp_path), "--config", str(tmp_path / "none.conf")]

    _patch_engine(monkeypatch, StubEngine(fail_preflight=True))
    assert cli.main(args) == cli.EXIT_NO_NETWORK

    failed = ExecutionReport()
    failed.record(ReportEntry("package:curl", Operation.INSTALL, Outcome.FAILED_FATAL, detail="dpkg locked"))
    _patch_engine(monkeypatch, StubEngine(report=failed))
    assert cli.main(args) == cli.EXIT_FAILED

    ok = ExecutionReport()
    ok.record(ReportEntry("package:curl", Operation.INSTALL, Outcome.APPLIED))
    _patch_engine(monkeypatch, StubEngine(report=ok))
    assert cli.main(args) == cli.EXIT_OK
    assert "Applied: 1" in capsys.readouterr().out


def test_dry_run_plans_without_converging(monkeypatch, tmp_path, capsys):
    monkeypatch.setenv("NO_COLOR", "1")
    engine = StubEngine()
    _patch_engine(monkeypatch, engine)

    code = cli.main([_manifest(tmp_path), "--config", str(tmp_path / "none.conf"), "--dry-run"])

    assert code == cli.EXIT_OK
    assert engine.converged is False
    assert "Install(curl) would run" in capsys.readouterr().out


def test_bad_manifest_exits_one(monkeypatch, tmp_path, capsys):
    bad = tmp_path / "host.toml"
    bad.write_text('[[container]]\nname = "app"\n')

    code = cli.main([str(bad), "--config", str(tmp_path / "none.conf")])

    assert code == cli.EXIT_FAILED
    assert "requires an image" in capsys.readouterr().err
