"""
scripts/checks.py — Checks shared by provisioning steps and health probes.

A Check is data: an external command, an HTTP request, or a file lookup that
evaluates to a Verdict. The same object serves as a step's idempotency check,
a probe's condition, or (through perform()) a step action that must succeed.

Variants:
  ExternalProcess         run a command; pass on exit 0 (optionally output match)
  HttpCheck               GET a URL; pass on a non-error HTTP status
  FileExistsCheck         a path (or glob) exists
  ToolCheck               a binary resolves on PATH
  PrometheusTargetsCheck  count healthy scrape targets (informational)
  AllOf / CallableCheck   composition and adapters

Timeouts are not converted into verdicts here: subprocess.TimeoutExpired and
TimeoutError propagate so callers can tell "timed out" from "failed".
"""

from __future__ import annotations

import json
import re
import shutil
import subprocess
import urllib.error
import urllib.request
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Mapping, Sequence

from scripts.errors import ActionFailed, ProbeFailed

OUTPUT_TAIL = 500


@dataclass(frozen=True)
class Verdict:
    ok: bool
    message: str
    detail: str | None = None


class Check:
    """Base class. Subclasses implement evaluate()."""

    description = "check"

    def evaluate(self, timeout: float | None = None) -> Verdict:
        raise NotImplementedError

    def perform(self, timeout: float | None = None) -> Verdict:
        """Evaluate as an action: a failed verdict raises ActionFailed."""
        verdict = self.evaluate(timeout)
        if not verdict.ok:
            raise ActionFailed(verdict.message, verdict.detail)
        return verdict

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.description}>"


def _tail(text: str, limit: int = OUTPUT_TAIL) -> str:
    text = text.strip()
    return text if len(text) <= limit else "..." + text[-limit:]


def run_command(
    argv: Sequence[str],
    timeout: float | None = None,
    cwd: str | Path | None = None,
    env: Mapping[str, str] | None = None,
) -> subprocess.CompletedProcess:
    """subprocess.run with captured text output. Raises FileNotFoundError if argv[0] is missing."""
    return subprocess.run(
        list(argv),
        capture_output=True,
        text=True,
        timeout=timeout,
        cwd=str(cwd) if cwd is not None else None,
        env=dict(env) if env is not None else None,
    )


class ExternalProcess(Check):
    def __init__(
        self,
        argv: Sequence[str],
        *,
        expect_output: str | None = None,
        cwd: str | Path | None = None,
        env: Mapping[str, str] | None = None,
        description: str | None = None,
    ) -> None:
        if not argv:
            raise ValueError("ExternalProcess needs a non-empty argv")
        self.argv = [str(a) for a in argv]
        self.expect_output = re.compile(expect_output, re.MULTILINE) if expect_output else None
        self.cwd = cwd
        self.env = env
        self.description = description or " ".join(self.argv)

    def evaluate(self, timeout: float | None = None) -> Verdict:
        try:
            result = run_command(self.argv, timeout=timeout, cwd=self.cwd, env=self.env)
        except FileNotFoundError:
            return Verdict(False, f"'{self.argv[0]}' not found")
        output = (result.stdout or "") + "\n" + (result.stderr or "")
        if result.returncode != 0:
            return Verdict(
                False,
                f"{self.argv[0]} exited with code {result.returncode}",
                detail=_tail(output) or None,
            )
        if self.expect_output and not self.expect_output.search(result.stdout or ""):
            return Verdict(
                False,
                f"output did not match /{self.expect_output.pattern}/",
                detail=_tail(output) or None,
            )
        return Verdict(True, "ok")


class HttpCheck(Check):
    def __init__(self, url: str, *, description: str | None = None) -> None:
        self.url = url
        self.description = description or url

    def _open(self, timeout: float | None):
        return urllib.request.urlopen(self.url, timeout=timeout)

    def evaluate(self, timeout: float | None = None) -> Verdict:
        try:
            with self._open(timeout) as resp:
                status = getattr(resp, "status", 200)
                if status >= 400:
                    return Verdict(False, f"unexpected status {status}")
                return Verdict(True, f"HTTP {status}")
        except urllib.error.HTTPError as e:
            return Verdict(False, f"HTTP {e.code} from {self.url}")
        except urllib.error.URLError as e:
            if isinstance(e.reason, TimeoutError):
                raise TimeoutError(f"{self.url} timed out") from e
            return Verdict(False, f"not reachable at {self.url}", detail=str(e.reason))


def fetch_json(url: str, timeout: float | None = None) -> Any:
    with urllib.request.urlopen(url, timeout=timeout) as resp:
        return json.loads(resp.read())


class FileExistsCheck(Check):
    def __init__(self, path: str | Path, *, pattern: str | None = None, description: str | None = None) -> None:
        self.path = Path(path)
        self.pattern = pattern
        self.description = description or (f"{self.path}/{pattern}" if pattern else str(self.path))

    def evaluate(self, timeout: float | None = None) -> Verdict:  # noqa: ARG002
        if self.pattern:
            matches = sorted(self.path.glob(self.pattern)) if self.path.is_dir() else []
            if matches:
                return Verdict(True, f"found {matches[0]}")
            return Verdict(False, f"no match for {self.description}")
        if self.path.exists():
            return Verdict(True, f"found {self.path}")
        return Verdict(False, f"missing {self.path}")


class ToolCheck(FileExistsCheck):
    """FileExistsCheck resolved through PATH."""

    def __init__(self, binary: str) -> None:
        self.binary = binary
        super().__init__(binary, description=f"{binary} on PATH")

    def evaluate(self, timeout: float | None = None) -> Verdict:  # noqa: ARG002
        found = shutil.which(self.binary)
        if found:
            return Verdict(True, f"{self.binary} at {found}")
        return Verdict(False, f"{self.binary} not found on PATH")


class AllOf(Check):
    def __init__(self, checks: Sequence[Check], *, description: str | None = None) -> None:
        self.checks = list(checks)
        self.description = description or " and ".join(c.description for c in self.checks)

    def evaluate(self, timeout: float | None = None) -> Verdict:
        for check in self.checks:
            verdict = check.evaluate(timeout)
            if not verdict.ok:
                return Verdict(False, f"{check.description}: {verdict.message}", verdict.detail)
        return Verdict(True, f"{len(self.checks)} check(s) ok")


class CallableCheck(Check):
    """Adapt fn(timeout) -> bool | Verdict into a Check."""

    def __init__(self, fn: Callable[[float | None], bool | Verdict], description: str) -> None:
        self.fn = fn
        self.description = description

    def evaluate(self, timeout: float | None = None) -> Verdict:
        outcome = self.fn(timeout)
        if isinstance(outcome, Verdict):
            return outcome
        return Verdict(bool(outcome), "ok" if outcome else "condition false")


def count_healthy_targets(payload: Any) -> tuple[int, int]:
    """Return (up, total) from a Prometheus /api/v1/targets document."""
    try:
        targets = payload["data"]["activeTargets"]
    except (KeyError, TypeError) as exc:
        raise ProbeFailed(f"malformed targets document: missing {exc}") from exc
    if not isinstance(targets, list):
        raise ProbeFailed("malformed targets document: activeTargets is not a list")
    up = sum(1 for t in targets if isinstance(t, dict) and t.get("health") == "up")
    return up, len(targets)


class PrometheusTargetsCheck(HttpCheck):
    """Informational: passes whenever the targets document round-trips."""

    def __init__(self, base_url: str) -> None:
        super().__init__(
            f"{base_url.rstrip('/')}/api/v1/targets",
            description="Prometheus targets scraping",
        )

    def evaluate(self, timeout: float | None = None) -> Verdict:
        try:
            with self._open(timeout) as resp:
                raw = resp.read()
        except urllib.error.URLError as e:
            if isinstance(e.reason, TimeoutError):
                raise TimeoutError(f"{self.url} timed out") from e
            return Verdict(False, "Cannot reach Prometheus targets API", detail=str(e))
        try:
            payload = json.loads(raw)
        except ValueError as exc:
            raise ProbeFailed(f"targets document is not JSON: {exc}") from exc
        up, total = count_healthy_targets(payload)
        return Verdict(True, f"Prometheus has {up}/{total} active targets UP")
