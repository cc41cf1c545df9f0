"""Health state machine.

  starting  --success-->            healthy
  starting  --failure in grace-->   starting   (not counted)
  *         --failure after grace-> counter + 1; counter >= retries -> unhealthy
  *         --success-->            healthy, counter = 0

The monitor only reports; restarting an unhealthy process is the
orchestrator's job.
"""

from __future__ import annotations

import json
import logging
import os
import threading
import time
import uuid
from typing import Any, Callable, Literal

from shipyard.runtime.probe import ProbeResult

HealthState = Literal["starting", "healthy", "unhealthy"]
STARTING: HealthState = "starting"
HEALTHY: HealthState = "healthy"
UNHEALTHY: HealthState = "unhealthy"

logger = logging.getLogger(__name__)


class HealthMonitor:
    def __init__(
        self,
        *,
        start_period_s: float,
        retries: int,
        clock: Callable[[], float] = time.monotonic,
        started_at: float | None = None,
        on_transition: Callable[[HealthState, HealthState, ProbeResult], None] | None = None,
    ):
        if retries < 1:
            raise ValueError("retries must be >= 1")
        self.start_period_s = start_period_s
        self.retries = retries
        self._clock = clock
        self.started_at = clock() if started_at is None else started_at
        self._on_transition = on_transition
        self._lock = threading.Lock()

        self.state: HealthState = STARTING
        self.consecutive_failures = 0
        self.probes = 0
        self.ignored_failures = 0
        self.last_result: ProbeResult | None = None

    def in_grace_period(self, now: float | None = None) -> bool:
        current = self._clock() if now is None else now
        return self.state == STARTING and current - self.started_at < self.start_period_s

    def record(self, result: ProbeResult, *, now: float | None = None) -> HealthState:
        """Apply one probe result; `now` is when that probe started (defaults to the clock)."""

        current = self._clock() if now is None else now
        with self._lock:
            previous = self.state
            self.probes += 1
            self.last_result = result
            if result.ok:
                self.consecutive_failures = 0
                self.state = HEALTHY
            elif self.in_grace_period(current):
                self.ignored_failures += 1
                logger.debug("Probe failure ignored during start period: %s", result.error)
            else:
                self.consecutive_failures += 1
                if self.consecutive_failures >= self.retries:
                    self.state = UNHEALTHY
            state = self.state

        if state != previous:
            log = logger.warning if state == UNHEALTHY else logger.info
            log(
                "Health %s -> %s (consecutive_failures=%d, last=%s)",
                previous,
                state,
                self.consecutive_failures,
                result.error or result.status_code,
            )
            if self._on_transition is not None:
                self._on_transition(previous, state, result)
        return state

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            return {
                "state": self.state,
                "consecutive_failures": self.consecutive_failures,
                "retries": self.retries,
                "probes": self.probes,
                "ignored_failures": self.ignored_failures,
                "last_result": self.last_result.summary() if self.last_result else None,
            }


def write_status_file(path: str, payload: dict[str, Any]) -> None:
    """Atomically replace `path` with `payload` as JSON, for the orchestrator to read."""

    os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
    tmp = f"{path}.tmp-{uuid.uuid4().hex[:8]}"
    with open(tmp, "w", encoding="utf-8") as handle:
        json.dump(payload, handle, indent=2)
        handle.write("\n")
    os.replace(tmp, path)
