"""
scripts/health — Composable probe modules for the monitoring lab.

Each probe module exposes a build_probes(cfg, manifest) function that returns
a list of Probe objects. verify.py collects them all and hands them to
checker.run_probes(), which returns a Report.

Usage:
    from scripts.health import Probe, Report
    from scripts.health.endpoints import build_probes as endpoint_probes
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from scripts.checks import Check


class ProbeState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    PASSED = "passed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


@dataclass(frozen=True)
class Probe:
    stage: str
    name: str
    condition: Check


@dataclass
class ProbeResult:
    stage: str
    name: str
    state: ProbeState = ProbeState.PENDING
    message: str = ""
    detail: str | None = None
    duration_s: float = 0.0

    @property
    def passed(self) -> bool:
        return self.state is ProbeState.PASSED

    def __str__(self) -> str:
        status = {
            ProbeState.PASSED: "PASS",
            ProbeState.TIMED_OUT: "TIME",
        }.get(self.state, "FAIL")
        line = f"  [{status}] {self.name}: {self.message}"
        if self.detail and not self.passed:
            line += f"\n         {self.detail}"
        return line


@dataclass
class Report:
    results: list[ProbeResult] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.results)

    @property
    def passed(self) -> int:
        return sum(1 for r in self.results if r.passed)

    @property
    def failed(self) -> int:
        # timed_out folds into failed
        return self.total - self.passed

    @property
    def ok(self) -> bool:
        return self.failed == 0

    def outcomes(self) -> list[tuple[str, str]]:
        return [(r.name, r.state.value) for r in self.results]
