"""
scripts/errors.py — Error taxonomy shared by the provisioner and the verifier.

Provisioner errors (DependencyMissing, StepFailed) halt the pipeline.
Probe errors (ProbeFailed, ProbeTimedOut) are recorded on the probe result
and never escape run_probes().
"""

from __future__ import annotations


class LabError(Exception):
    """Base class for every error raised by the lab tooling."""


class DependencyMissing(LabError):
    def __init__(self, tool: str, step: str | None = None) -> None:
        self.tool = tool
        self.step = step
        where = f" (needed by step '{step}')" if step else ""
        super().__init__(f"required tool '{tool}' not found on PATH{where}")


class StepFailed(LabError):
    def __init__(self, step: str, reason: str, completed: list | None = None) -> None:
        self.step = step
        self.reason = reason
        self.completed = completed or []
        super().__init__(f"step '{step}' failed: {reason}")


class ActionFailed(LabError):
    """An action's external command or check reported failure."""

    def __init__(self, message: str, detail: str | None = None) -> None:
        self.message = message
        self.detail = detail
        super().__init__(f"{message}: {detail}" if detail else message)


class ReadyTimeout(LabError):
    def __init__(self, what: str, timeout_seconds: float, last: str | None = None) -> None:
        self.what = what
        self.timeout_seconds = timeout_seconds
        self.last = last
        msg = f"{what} not ready after {timeout_seconds:g}s"
        if last:
            msg += f" (last: {last})"
        super().__init__(msg)


class ProbeFailed(LabError):
    """A probe's condition errored; recorded as a failed outcome."""


class ProbeTimedOut(ProbeFailed):
    def __init__(self, name: str, timeout_seconds: float) -> None:
        self.name = name
        self.timeout_seconds = timeout_seconds
        super().__init__(f"timed out ({timeout_seconds:g}s)")
