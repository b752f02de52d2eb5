"""
tests/unit/test_verify.py — Report printing, probe registry, and exit codes of scripts/verify.py.
"""

import io

from rich.console import Console

import scripts.verify as verify
from config.settings import Settings
from scripts.checks import CallableCheck
from scripts.health import Probe, ProbeResult, ProbeState, Report


def _report(*states):
    return Report(
        [ProbeResult("1-prerequisites", f"probe-{i}", state, "msg") for i, state in enumerate(states)]
    )


def _capture():
    return Console(file=io.StringIO(), width=200, color_system=None)


# ---------------------------------------------------------------------------
# Probe registry
# ---------------------------------------------------------------------------


def test_build_probes_covers_all_stages(cfg, manifest):
    probes = verify.build_probes(cfg, manifest)
    assert len(probes) == 4 + 7 + 5 + 4 + 1 + 4
    stages = []
    for p in probes:
        if p.stage not in stages:
            stages.append(p.stage)
    assert stages == list(verify.STAGE_LABELS)


def test_run_verification_runs_each_probe_once(cfg, manifest, monkeypatch):
    calls = []

    def _probe(name, ok):
        return Probe("2-app-pods", name, CallableCheck(lambda t: calls.append(name) or ok, name))

    monkeypatch.setattr(verify, "build_probes", lambda c, m: [_probe("a", True), _probe("b", False)])
    report = verify.run_verification(cfg, manifest)
    assert calls == ["a", "b"]
    assert (report.total, report.passed, report.failed) == (2, 1, 1)


def test_run_until_healthy_retries_whole_checker(manifest, monkeypatch):
    cfg = Settings(VERIFY_WAIT_SECONDS=30, POLL_INITIAL_SECONDS=0.01, POLL_MAX_SECONDS=0.02)
    reports = [_report(ProbeState.FAILED), _report(ProbeState.PASSED)]
    monkeypatch.setattr(verify, "run_verification", lambda c, m=None: reports.pop(0))
    report = verify.run_until_healthy(cfg, manifest)
    assert report.ok
    assert reports == []


# ---------------------------------------------------------------------------
# Report printing
# ---------------------------------------------------------------------------


def test_print_report_groups_by_stage_and_tallies():
    report = Report(
        [
            ProbeResult("1-prerequisites", "Docker running", ProbeState.PASSED, "ok"),
            ProbeResult("4-endpoints", "Grafana UI (30030)", ProbeState.FAILED, "not reachable", "refused"),
            ProbeResult("4-endpoints", "Prometheus UI (30090)", ProbeState.TIMED_OUT, "timed out (10s)"),
        ]
    )
    out = _capture()
    assert verify._print_report(report, out=out) is False
    text = out.file.getvalue()
    assert "1. Prerequisites:" in text
    assert "4. Endpoints reachable (via NodePort):" in text
    assert "Grafana UI (30030): not reachable" in text
    assert "refused" in text
    assert "Results: 1 passed, 2 failed (3 probes)" in text


def test_print_report_all_passed():
    assert verify._print_report(_report(ProbeState.PASSED), out=_capture()) is True


# ---------------------------------------------------------------------------
# Exit codes
# ---------------------------------------------------------------------------


def _patch_main(monkeypatch, run):
    monkeypatch.setattr(verify, "load_settings", lambda: Settings())
    monkeypatch.setattr(verify, "run_verification", run)
    monkeypatch.setattr(verify.output, "console", _capture())


def test_main_exit_0_when_all_pass(monkeypatch):
    _patch_main(monkeypatch, lambda cfg: _report(ProbeState.PASSED, ProbeState.PASSED))
    assert verify.main() == verify.EXIT_OK


def test_main_exit_1_when_any_fail(monkeypatch):
    _patch_main(monkeypatch, lambda cfg: _report(ProbeState.PASSED, ProbeState.TIMED_OUT))
    assert verify.main() == verify.EXIT_PROBES_FAILED


def test_main_exit_2_when_checker_crashes(monkeypatch):
    def _crash(cfg):
        raise FileNotFoundError("Lab manifest not found: /nowhere/lab.yml")

    _patch_main(monkeypatch, _crash)
    assert verify.main() == verify.EXIT_CRASHED
    assert "Health checker crashed" in verify.output.console.file.getvalue()


def test_main_exit_2_on_invalid_settings(monkeypatch):
    def _bad():
        return Settings(PROBE_WORKERS=0)

    monkeypatch.setattr(verify, "load_settings", _bad)
    monkeypatch.setattr(verify.output, "console", _capture())
    assert verify.main() == verify.EXIT_CRASHED
