"""
scripts/health/endpoints.py — NodePort HTTP endpoint probes.

Uses the published NodePorts on localhost, so no port-forward is needed.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from scripts.checks import HttpCheck
from scripts.health import Probe

if TYPE_CHECKING:
    from config.settings import Settings
    from scripts.lab_manifest import LabManifest

STAGE = "4-endpoints"


def build_probes(cfg: Settings, manifest: LabManifest) -> list[Probe]:
    return [
        Probe(
            STAGE,
            f"{ep.name} ({cfg.ports[ep.port_key]})",
            HttpCheck(cfg.local_url(ep.port_key, ep.path)),
        )
        for ep in manifest.endpoints
    ]
