"""
scripts/health/prerequisites.py — Tooling and cluster reachability probes.

Each probe shells out to the collaborator's own CLI and passes on exit 0.
"""

from __future__ import annotations

import re
from typing import TYPE_CHECKING

from scripts.checks import ExternalProcess
from scripts.health import Probe

if TYPE_CHECKING:
    from config.settings import Settings
    from scripts.lab_manifest import LabManifest

STAGE = "1-prerequisites"


def build_probes(cfg: Settings, manifest: LabManifest) -> list[Probe]:  # noqa: ARG001
    return [
        Probe(STAGE, "Docker running", ExternalProcess(["docker", "info"])),
        Probe(
            STAGE,
            "Kind cluster running",
            ExternalProcess(
                ["kind", "get", "clusters"],
                expect_output=rf"^{re.escape(cfg.CLUSTER_NAME)}$",
            ),
        ),
        Probe(
            STAGE,
            "kubectl configured",
            ExternalProcess(["kubectl", "cluster-info", "--context", cfg.kube_context]),
        ),
        Probe(STAGE, "Helm installed", ExternalProcess(["helm", "version"])),
    ]
