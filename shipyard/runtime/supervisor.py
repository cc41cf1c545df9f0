from __future__ import annotations

import logging
import os
import signal
import subprocess
import time
from typing import Any, Callable, Mapping, Sequence

from pipelinekit import utc_now_iso8601
from shipyard.errors import RuntimeStartupError
from shipyard.framework.config import HealthcheckConfig, IdentityConfig, RuntimeConfig
from shipyard.runtime.health import HealthMonitor, write_status_file
from shipyard.runtime.identity import drop_privileges
from shipyard.runtime.probe import HttpProbe, Probe, ProbeLoop, ProbeResult
from shipyard.runtime.settings import PORT_ENV_VAR, check_port_available, probe_url, resolve_port

_FORWARDED_SIGNALS = (signal.SIGTERM, signal.SIGINT)


class Supervisor:
    """Start one application process as the runtime identity and report its health.

    The supervisor never restarts or kills the process because of failed
    probes; it exits with the process's own exit code.
    """

    def __init__(
        self,
        *,
        runtime: RuntimeConfig,
        healthcheck: HealthcheckConfig,
        identity: IdentityConfig,
        command: Sequence[str] | None = None,
        environ: Mapping[str, str] | None = None,
        logger: logging.Logger | None = None,
        drop_privileges_fn: Callable[[IdentityConfig], bool] = drop_privileges,
        probe_factory: Callable[[str, float], Probe] | None = None,
        popen: Callable[..., Any] = subprocess.Popen,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.runtime = runtime
        self.healthcheck = healthcheck
        self.identity = identity
        self.command = list(command or runtime.start_command)
        if not self.command:
            raise RuntimeStartupError("No start command configured")
        self.environ = dict(os.environ if environ is None else environ)
        self.logger = logger or logging.getLogger("shipyard.runtime")
        self._drop_privileges = drop_privileges_fn
        self._probe_factory = probe_factory or (lambda url, timeout: HttpProbe(url, timeout_s=timeout))
        self._popen = popen
        self._clock = clock
        self.monitor: HealthMonitor | None = None
        self.port: int | None = None

    def _write_status(self, monitor: HealthMonitor) -> None:
        path = self.runtime.status_file
        if not path:
            return
        payload = monitor.snapshot()
        payload.update({"port": self.port, "updated_at": utc_now_iso8601()})
        try:
            write_status_file(path, payload)
        except OSError:
            self.logger.exception("Failed to write health status file %s", path)

    def prepare(self) -> dict[str, str]:
        """Drop privileges, resolve and check the port; returns the child environment."""

        self._drop_privileges(self.identity)
        port = resolve_port(self.environ, default=self.runtime.port)
        check_port_available(port)
        self.port = port
        env = dict(self.environ)
        env[PORT_ENV_VAR] = str(port)
        return env

    def run(self) -> int:
        env = self.prepare()
        port = int(env[PORT_ENV_VAR])
        cwd = self.runtime.workdir if os.path.isdir(self.runtime.workdir) else None
        self.logger.info("Starting %s on port %d", " ".join(self.command), port)
        try:
            proc = self._popen(self.command, env=env, cwd=cwd)
        except OSError as exc:
            raise RuntimeStartupError(f"Cannot start {' '.join(self.command)}: {exc}") from exc

        hc = self.healthcheck
        monitor = HealthMonitor(
            start_period_s=hc.start_period_s,
            retries=hc.retries,
            clock=self._clock,
        )
        self.monitor = monitor
        self._write_status(monitor)

        def on_result(result: ProbeResult, started: float) -> None:
            # A probe launched inside the start period is judged by its launch time.
            monitor.record(result, now=started)
            self._write_status(monitor)

        url = probe_url(port, self.runtime.status_path)
        loop = ProbeLoop(
            self._probe_factory(url, hc.timeout_s),
            cadence=lambda: hc.start_interval_s if monitor.in_grace_period() else hc.interval_s,
            on_result=on_result,
            clock=self._clock,
        )
        self.logger.info(
            "Probing %s every %ss (timeout %ss, start period %ss, retries %d)",
            url,
            hc.interval_s,
            hc.timeout_s,
            hc.start_period_s,
            hc.retries,
        )

        previous_handlers = self._forward_signals(proc)
        loop.start()
        try:
            returncode = proc.wait()
        finally:
            loop.stop(timeout=hc.timeout_s)
            self._restore_signals(previous_handlers)
        self.logger.info("Application exited with code %s", returncode)
        return int(returncode)

    def _forward_signals(self, proc: Any) -> dict[int, Any]:
        previous: dict[int, Any] = {}

        def forward(signum: int, _frame: Any) -> None:
            self.logger.info("Forwarding signal %d to the application", signum)
            proc.send_signal(signum)

        for signum in _FORWARDED_SIGNALS:
            try:
                previous[signum] = signal.signal(signum, forward)
            except ValueError:
                # Not the main thread; leave default handling in place.
                continue
        return previous

    def _restore_signals(self, previous: dict[int, Any]) -> None:
        for signum, handler in previous.items():
            signal.signal(signum, handler)
