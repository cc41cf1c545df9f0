from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Protocol

import requests

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProbeResult:
    ok: bool
    status_code: int | None = None
    error: str | None = None
    elapsed_s: float = 0.0

    def summary(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "status_code": self.status_code,
            "error": self.error,
            "elapsed_s": round(self.elapsed_s, 3),
        }


class Probe(Protocol):
    def probe(self) -> ProbeResult:
        ...


class HttpProbe:
    """One GET per probe; any exception or a status >= 400 is a failure."""

    def __init__(self, url: str, *, timeout_s: float, session: requests.Session | None = None):
        self.url = url
        self.timeout_s = timeout_s
        self._session = session or requests.Session()

    def probe(self) -> ProbeResult:
        started = time.monotonic()
        try:
            response = self._session.get(self.url, timeout=self.timeout_s)
        except requests.exceptions.RequestException as exc:
            # A timed-out request is abandoned; the application is never signalled.
            return ProbeResult(
                ok=False,
                error=f"{type(exc).__name__}: {exc}",
                elapsed_s=time.monotonic() - started,
            )
        try:
            status = response.status_code
        finally:
            response.close()
        return ProbeResult(
            ok=status < 400,
            status_code=status,
            error=None if status < 400 else f"HTTP {status}",
            elapsed_s=time.monotonic() - started,
        )


class ProbeLoop:
    """Probes on a fixed cadence from a daemon thread, without backoff.

    `cadence` is asked for the delay after each probe, so the caller can use a
    shorter interval during the start period. The delay is measured from the
    start of the previous probe; a slow probe delays the next one but never
    overlaps it. `on_result` gets each result together with the clock reading
    taken when that probe started.
    """

    def __init__(
        self,
        probe: Probe,
        *,
        cadence: Callable[[], float],
        on_result: Callable[[ProbeResult, float], None],
        clock: Callable[[], float] = time.monotonic,
        name: str = "shipyard-probe",
    ):
        self._probe = probe
        self._cadence = cadence
        self._on_result = on_result
        self._clock = clock
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)

    def start(self) -> None:
        self._thread.start()

    def stop(self, timeout: float | None = None) -> None:
        self._stop.set()
        if self._thread.is_alive():
            self._thread.join(timeout)

    @property
    def running(self) -> bool:
        return self._thread.is_alive()

    def _run(self) -> None:
        while not self._stop.is_set():
            started = self._clock()
            result = self._probe.probe()
            if self._stop.is_set():
                break
            try:
                self._on_result(result, started)
            except Exception:
                logger.exception("Health probe result handler failed")
            delay = max(0.0, started + self._cadence() - self._clock())
            if self._stop.wait(delay):
                break
