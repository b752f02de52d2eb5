"""
scripts/health/targets.py — Prometheus scrape-target ratio probe.

Informational: reports how many active targets are UP. The probe passes as
long as the targets document can be fetched and parsed.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from scripts.checks import PrometheusTargetsCheck
from scripts.health import Probe

if TYPE_CHECKING:
    from config.settings import Settings
    from scripts.lab_manifest import LabManifest

STAGE = "5-targets"


def build_probes(cfg: Settings, manifest: LabManifest) -> list[Probe]:  # noqa: ARG001
    return [Probe(STAGE, "Prometheus targets", PrometheusTargetsCheck(cfg.local_url("prometheus")))]
