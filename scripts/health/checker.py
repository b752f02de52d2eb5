"""
scripts/health/checker.py — Run every probe once and collect a Report.

No fail-fast: a probe that fails, errors, or exceeds its budget is recorded
and the run continues. Each probe's condition runs on its own daemon thread
joined with the per-probe timeout, so a hung command cannot stall the batch.
With workers > 1 probes are spread over a thread pool; each outcome lands in
the slot matching the probe's registration index.
"""

from __future__ import annotations

import logging
import subprocess
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Sequence

from scripts.checks import Verdict
from scripts.errors import ProbeFailed, ProbeTimedOut
from scripts.health import Probe, ProbeResult, ProbeState, Report

logger = logging.getLogger(__name__)


def _evaluate_with_budget(probe: Probe, timeout: float) -> Verdict:
    box: dict[str, object] = {}

    def _target() -> None:
        try:
            box["verdict"] = probe.condition.evaluate(timeout)
        except Exception as exc:  # noqa: BLE001 - re-raised on the caller thread
            box["error"] = exc

    worker = threading.Thread(target=_target, name=f"probe:{probe.name}", daemon=True)
    worker.start()
    worker.join(timeout)
    if worker.is_alive():
        raise ProbeTimedOut(probe.name, timeout)
    if "error" in box:
        raise box["error"]  # type: ignore[misc]
    return box["verdict"]  # type: ignore[return-value]


def run_probe(probe: Probe, timeout: float) -> ProbeResult:
    result = ProbeResult(stage=probe.stage, name=probe.name, state=ProbeState.RUNNING)
    start = time.monotonic()
    try:
        verdict = _evaluate_with_budget(probe, timeout)
        result.state = ProbeState.PASSED if verdict.ok else ProbeState.FAILED
        result.message = verdict.message
        result.detail = verdict.detail
    except ProbeTimedOut as exc:
        result.state = ProbeState.TIMED_OUT
        result.message = str(exc)
    except (subprocess.TimeoutExpired, TimeoutError):
        result.state = ProbeState.TIMED_OUT
        result.message = f"timed out ({timeout:g}s)"
    except ProbeFailed as exc:
        result.state = ProbeState.FAILED
        result.message = str(exc)
    except Exception as exc:  # noqa: BLE001
        result.state = ProbeState.FAILED
        result.message = f"error: {exc}"
    result.duration_s = time.monotonic() - start
    logger.debug("probe %s -> %s (%.2fs)", probe.name, result.state.value, result.duration_s)
    return result


def run_probes(probes: Sequence[Probe], timeout: float = 10.0, workers: int = 1) -> Report:
    """Execute every probe exactly once and return the Report."""
    slots: list[ProbeResult | None] = [None] * len(probes)

    def _run(index: int) -> None:
        slots[index] = run_probe(probes[index], timeout)

    if workers <= 1 or len(probes) <= 1:
        for index in range(len(probes)):
            _run(index)
    else:
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="probe") as executor:
            futures = [executor.submit(_run, index) for index in range(len(probes))]
            for future in futures:
                future.result()

    return Report(results=[r for r in slots if r is not None])
