#!/usr/bin/env python3
"""
scripts/verify.py — Health check for the running monitoring lab.

Runs every probe once (no fail-fast) and prints a per-stage report plus a
final tally. Each stage delegates to a probe module in scripts/health/.

Stages:
  1. Prerequisites       (docker, kind cluster, kubectl context, helm)
  2. Application pods    (one per service in lab.yml)
  3. Monitoring pods     (Prometheus, Grafana, Alertmanager, operator, exporter)
  4. Endpoints           (NodePort HTTP health URLs)
  5. Prometheus targets  (informational up/total ratio)
  6. Metrics             (actuator scrape from inside each metrics-enabled pod)

Exit codes:
  0  all probes passed
  1  one or more probes failed or timed out
  2  the checker itself crashed (bad configuration, unreadable manifest, ...)

Usage:
    python3 scripts/verify.py          # reads .env from the working directory

Importable (used by integration tests):
    from scripts.verify import run_verification
    report = run_verification(cfg)
"""

from __future__ import annotations

import pathlib
import sys

# Add project root to path so health modules and config are importable
_ROOT = pathlib.Path(__file__).parent.parent
sys.path.insert(0, str(_ROOT))

from rich.console import Console  # noqa: E402
from rich.markup import escape  # noqa: E402

from config.settings import Settings, load_settings  # noqa: E402
from scripts import output  # noqa: E402
from scripts.checks import CallableCheck, Verdict  # noqa: E402
from scripts.errors import ReadyTimeout  # noqa: E402
from scripts.health import Probe, Report  # noqa: E402
from scripts.health import checker  # noqa: E402
from scripts.health import endpoints as health_endpoints  # noqa: E402
from scripts.health import metrics as health_metrics  # noqa: E402
from scripts.health import pods as health_pods  # noqa: E402
from scripts.health import prerequisites as health_prerequisites  # noqa: E402
from scripts.health import targets as health_targets  # noqa: E402
from scripts.lab_manifest import LabManifest, parse_manifest  # noqa: E402
from scripts.polling import wait_until  # noqa: E402

EXIT_OK = 0
EXIT_PROBES_FAILED = 1
EXIT_CRASHED = 2

STAGE_LABELS = {
    health_prerequisites.STAGE: "1. Prerequisites",
    health_pods.STAGE_APP: "2. Application Namespace (pods)",
    health_pods.STAGE_MONITORING: "3. Monitoring Namespace (pods)",
    health_endpoints.STAGE: "4. Endpoints reachable (via NodePort)",
    health_targets.STAGE: "5. Prometheus targets scraping",
    health_metrics.STAGE: "6. Metrics available",
}


def build_probes(cfg: Settings, manifest: LabManifest) -> list[Probe]:
    probes: list[Probe] = []
    for module in (
        health_prerequisites,
        health_pods,
        health_endpoints,
        health_targets,
        health_metrics,
    ):
        probes.extend(module.build_probes(cfg, manifest))
    return probes


def run_verification(cfg: Settings, manifest: LabManifest | None = None) -> Report:
    """Run all probes once and return the Report."""
    if manifest is None:
        manifest = parse_manifest(cfg.lab_manifest_path)
    probes = build_probes(cfg, manifest)
    return checker.run_probes(probes, timeout=cfg.PROBE_TIMEOUT_SECONDS, workers=cfg.PROBE_WORKERS)


def run_until_healthy(cfg: Settings, manifest: LabManifest | None = None) -> Report:
    """Re-run the whole checker until every probe passes or VERIFY_WAIT_SECONDS elapse."""
    if manifest is None:
        manifest = parse_manifest(cfg.lab_manifest_path)
    last: dict[str, Report] = {}

    def _attempt(timeout: float | None) -> Verdict:  # noqa: ARG001
        report = run_verification(cfg, manifest)
        last["report"] = report
        return Verdict(report.ok, f"{report.passed}/{report.total} passed")

    try:
        wait_until(
            CallableCheck(_attempt, "monitoring stack healthy"),
            timeout=cfg.VERIFY_WAIT_SECONDS,
            initial=cfg.POLL_INITIAL_SECONDS,
            maximum=cfg.POLL_MAX_SECONDS,
        )
    except ReadyTimeout:
        pass
    return last["report"]


def _print_report(report: Report, out: Console | None = None) -> bool:
    """Print formatted results. Returns True if all passed."""
    out = out or output.console
    out.print()
    output.banner("Monitoring Stack Health Check", out=out)

    current_stage = None
    for r in report.results:
        if r.stage != current_stage:
            current_stage = r.stage
            out.print(f"\n[bold]{STAGE_LABELS.get(r.stage, r.stage)}:[/bold]")
        output.status_line(r.state.value, f"{r.name}: {r.message}", out=out)
        if r.detail and not r.passed:
            out.print(f"      {r.detail}", style="dim", markup=False, highlight=False)

    out.print()
    out.print(
        f"  Results: [green]{report.passed} passed[/green], "
        f"[red]{report.failed} failed[/red] ({report.total} probes)"
    )
    return report.ok


def main() -> int:
    try:
        cfg = load_settings()
        output.configure_logging(cfg.LOG_LEVEL)
        output.print_settings(cfg.describe())
        if cfg.VERIFY_WAIT_SECONDS > 0:
            report = run_until_healthy(cfg)
        else:
            report = run_verification(cfg)
    except Exception as exc:  # noqa: BLE001
        output.console.print(f"[red]Health checker crashed:[/red] {escape(str(exc))}")
        return EXIT_CRASHED
    return EXIT_OK if _print_report(report) else EXIT_PROBES_FAILED


if __name__ == "__main__":
    sys.exit(main())
