"""
scripts/health/metrics.py — Actuator metrics exposure probes.

For each metrics-enabled service, resolves the first pod by label and runs
curl inside it against /actuator/prometheus. The probe passes when the
scrape body contains the JVM memory marker.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from scripts.checks import Check, Verdict, run_command
from scripts.health import Probe

if TYPE_CHECKING:
    from config.settings import Settings
    from scripts.lab_manifest import LabManifest, ServiceSpec

STAGE = "6-metrics"


class PodMetricsCheck(Check):
    def __init__(self, cfg: Settings, service: ServiceSpec, marker: str) -> None:
        self.context = cfg.kube_context
        self.namespace = cfg.APP_NAMESPACE
        self.service = service
        self.marker = marker
        self.description = f"{service.name} /actuator/prometheus"

    def _kubectl(self, *args: str) -> list[str]:
        return ["kubectl", "--context", self.context, *args]

    def evaluate(self, timeout: float | None = None) -> Verdict:
        try:
            lookup = run_command(
                self._kubectl(
                    "get",
                    "pod",
                    "-l",
                    f"app={self.service.name}",
                    "-n",
                    self.namespace,
                    "-o",
                    "jsonpath={.items[0].metadata.name}",
                ),
                timeout=timeout,
            )
        except FileNotFoundError:
            return Verdict(False, "'kubectl' not found")
        pod = lookup.stdout.strip() if lookup.returncode == 0 else ""
        if not pod:
            return Verdict(False, f"{self.service.name} pod not found")

        scrape = run_command(
            self._kubectl(
                "exec",
                pod,
                "-n",
                self.namespace,
                "--",
                "curl",
                "-sf",
                f"localhost:{self.service.port}/actuator/prometheus",
            ),
            timeout=timeout,
        )
        if scrape.returncode != 0:
            return Verdict(
                False,
                f"scrape failed in {pod} (exit {scrape.returncode})",
                detail=scrape.stderr.strip()[:500] or None,
            )
        if self.marker not in scrape.stdout:
            return Verdict(False, f"'{self.marker}' not exposed by {pod}")
        return Verdict(True, f"{self.marker} metrics exposed by {pod}")


def build_probes(cfg: Settings, manifest: LabManifest) -> list[Probe]:
    return [
        Probe(
            STAGE,
            f"{svc.name} /actuator/prometheus",
            PodMetricsCheck(cfg, svc, manifest.metrics_marker),
        )
        for svc in manifest.metrics_services
    ]
