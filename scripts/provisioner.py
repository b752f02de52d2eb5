"""
scripts/provisioner.py — Ordered, idempotent, fail-fast step runner.

Each Step pairs an idempotency check with an action. Before running an
action the provisioner evaluates the check; a passing check means the effect
already holds and the action is skipped. The first failing action stops the
pipeline. Nothing is rolled back: earlier steps are idempotent, so running the
pipeline again resumes where it stopped.
"""

from __future__ import annotations

import logging
import shutil
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Sequence, Union

from rich.console import Console

from scripts import output
from scripts.checks import Check
from scripts.errors import ActionFailed, DependencyMissing, StepFailed

if TYPE_CHECKING:
    from config.settings import Settings

logger = logging.getLogger(__name__)

Action = Union[Check, Sequence[Check], Callable[["Settings"], Any]]

STATUS_SATISFIED = "satisfied"
STATUS_DONE = "done"


@dataclass
class Step:
    name: str
    description: str
    action: Action
    check: Check | None = None
    requires: tuple[str, ...] = ()


@dataclass(frozen=True)
class Pipeline:
    steps: tuple[Step, ...]

    def __post_init__(self) -> None:
        names = [s.name for s in self.steps]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(f"duplicate step name(s): {', '.join(duplicates)}")

    def names(self) -> list[str]:
        return [s.name for s in self.steps]

    def get(self, name: str) -> Step:
        for step in self.steps:
            if step.name == name:
                return step
        raise ValueError(f"unknown step '{name}'; valid steps: {', '.join(self.names())}")


@dataclass
class StepRecord:
    name: str
    status: str
    duration_s: float


@dataclass
class Provisioner:
    pipeline: Pipeline
    cfg: Settings
    out: Console = field(default_factory=lambda: output.console)

    def run(self) -> list[StepRecord]:
        """Run every step in order. Raises StepFailed/DependencyMissing on the first failure."""
        records: list[StepRecord] = []
        for step in self.pipeline.steps:
            try:
                records.append(self._execute(step))
            except StepFailed as exc:
                exc.completed = list(records)
                raise
        return records

    def run_step(self, name: str) -> StepRecord:
        """Run one named step in isolation, bypassing the rest of the pipeline."""
        return self._execute(self.pipeline.get(name))

    def _execute(self, step: Step) -> StepRecord:
        output.banner(f"STEP: {step.description}", out=self.out)
        start = time.monotonic()

        for tool in step.requires:
            if shutil.which(tool) is None:
                logger.error("step %s: required tool %s missing", step.name, tool)
                raise DependencyMissing(tool, step.name)

        if self._already_satisfied(step):
            output.status_line("satisfied", f"{step.name}: already satisfied", out=self.out)
            logger.info("step %s already satisfied", step.name)
            return StepRecord(step.name, STATUS_SATISFIED, time.monotonic() - start)

        logger.info("step %s start", step.name)
        try:
            self._run_action(step)
        except (StepFailed, DependencyMissing):
            raise
        except ActionFailed as exc:
            output.status_line("failed", f"{step.name}: {exc.message}", out=self.out)
            raise StepFailed(step.name, str(exc)) from exc
        except Exception as exc:
            output.status_line("failed", f"{step.name}: {exc}", out=self.out)
            logger.exception("step %s raised", step.name)
            raise StepFailed(step.name, f"{type(exc).__name__}: {exc}") from exc

        duration = time.monotonic() - start
        output.status_line("done", f"{step.name} ({duration:.1f}s)", out=self.out)
        logger.info("step %s end %.2fs", step.name, duration)
        return StepRecord(step.name, STATUS_DONE, duration)

    def _already_satisfied(self, step: Step) -> bool:
        if step.check is None:
            return False
        try:
            verdict = step.check.evaluate(self.cfg.COMMAND_TIMEOUT_SECONDS)
        except Exception as exc:  # noqa: BLE001
            logger.debug("step %s check errored, treating as unsatisfied: %s", step.name, exc)
            return False
        return verdict.ok

    def _run_action(self, step: Step) -> None:
        action = step.action
        timeout = self.cfg.COMMAND_TIMEOUT_SECONDS
        if isinstance(action, Check):
            action.perform(timeout)
        elif isinstance(action, (list, tuple)):
            for item in action:
                logger.info("step %s: %s", step.name, item.description)
                item.perform(timeout)
        else:
            action(self.cfg)
