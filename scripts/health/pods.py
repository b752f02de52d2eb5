"""
scripts/health/pods.py — Pod phase probes for the application and monitoring namespaces.

A probe passes when the first pod matching the label selector reports phase
Running.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from scripts.checks import ExternalProcess
from scripts.health import Probe

if TYPE_CHECKING:
    from config.settings import Settings
    from scripts.lab_manifest import LabManifest

STAGE_APP = "2-app-pods"
STAGE_MONITORING = "3-monitoring-pods"


def pod_running(cfg: Settings, namespace: str, selector: str) -> ExternalProcess:
    return ExternalProcess(
        [
            "kubectl",
            "--context",
            cfg.kube_context,
            "get",
            "pod",
            "-l",
            selector,
            "-n",
            namespace,
            "-o",
            "jsonpath={.items[0].status.phase}",
        ],
        expect_output=r"\bRunning\b",
        description=f"{selector} in {namespace}",
    )


def build_probes(cfg: Settings, manifest: LabManifest) -> list[Probe]:
    probes = [
        Probe(STAGE_APP, f"{svc.name} running", pod_running(cfg, cfg.APP_NAMESPACE, f"app={svc.name}"))
        for svc in manifest.services
    ]
    probes.extend(
        Probe(
            STAGE_MONITORING,
            f"{comp.name} running",
            pod_running(cfg, cfg.MONITORING_NAMESPACE, f"app.kubernetes.io/name={comp.label}"),
        )
        for comp in manifest.monitoring_components
    )
    return probes
