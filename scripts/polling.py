"""
scripts/polling.py — Poll-until-ready gate with bounded timeout.

Replaces fixed sleep-based gating. Re-evaluates a Check with exponential
backoff (POLL_INITIAL_SECONDS doubling up to POLL_MAX_SECONDS) until it
passes or READY_TIMEOUT_SECONDS elapse, then raises ReadyTimeout with the
last verdict. Errors raised by the check count as "not ready yet".
"""

from __future__ import annotations

import logging
import subprocess
import time
from typing import Callable

from tenacity import (
    RetryError,
    Retrying,
    retry_if_result,
    stop_after_attempt,
    stop_after_delay,
    wait_exponential,
)

from scripts.checks import Check, Verdict
from scripts.errors import LabError, ReadyTimeout

logger = logging.getLogger(__name__)


def wait_until(
    check: Check,
    *,
    timeout: float,
    initial: float = 1.0,
    maximum: float = 15.0,
    attempt_timeout: float | None = None,
    max_attempts: int | None = None,
    what: str | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> Verdict:
    """Block until check passes. Returns the passing Verdict."""
    what = what or check.description

    def _attempt() -> Verdict:
        try:
            verdict = check.evaluate(attempt_timeout)
        except (LabError, OSError, subprocess.SubprocessError) as exc:
            verdict = Verdict(False, f"error: {exc}")
        if not verdict.ok:
            logger.debug("waiting for %s: %s", what, verdict.message)
        return verdict

    stop = stop_after_delay(timeout)
    if max_attempts is not None:
        stop = stop | stop_after_attempt(max_attempts)

    retrying = Retrying(
        stop=stop,
        wait=wait_exponential(multiplier=initial, min=initial, max=maximum),
        retry=retry_if_result(lambda v: not v.ok),
        sleep=sleep,
    )
    try:
        verdict = retrying(_attempt)
    except RetryError as exc:
        last = exc.last_attempt.result()
        raise ReadyTimeout(what, timeout, last.message if last else None) from None
    logger.info("%s ready", what)
    return verdict
