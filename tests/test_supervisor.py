import json
import socket
import time

import pytest

from shipyard.errors import RuntimeStartupError
from shipyard.framework.config import HealthcheckConfig, IdentityConfig, RuntimeConfig
from shipyard.runtime.probe import ProbeResult
from shipyard.runtime.supervisor import Supervisor

FAST_HEALTHCHECK = HealthcheckConfig(interval_s=0.05, timeout_s=0.02, start_period_s=0.0, retries=3, start_interval_s=0.01)


def _free_port():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("0.0.0.0", 0))
        return sock.getsockname()[1]


class OkProbe:
    def probe(self):
        return ProbeResult(ok=True, status_code=200)


class FakeProc:
    """Exits once the supervisor has finished handling its first probe."""

    def __init__(self, holder, returncode=0):
        self._holder = holder
        self.returncode = returncode
        self.signals = []

    def wait(self):
        deadline = time.monotonic() + 5.0
        while time.monotonic() < deadline:
            monitor = self._holder["supervisor"].monitor
            if monitor is not None and monitor.probes >= 2:
                break
            time.sleep(0.01)
        return self.returncode

    def send_signal(self, signum):
        self.signals.append(signum)


def _supervisor(tmp_path, *, environ, popen, drops=None, probe_urls=None):
    holder = {}
    drops = [] if drops is None else drops
    runtime = RuntimeConfig(workdir=str(tmp_path), status_file=str(tmp_path / "health.json"))

    def probe_factory(url, timeout):
        if probe_urls is not None:
            probe_urls.append((url, timeout))
        return OkProbe()

    supervisor = Supervisor(
        runtime=runtime,
        healthcheck=FAST_HEALTHCHECK,
        identity=IdentityConfig(),
        environ=environ,
        drop_privileges_fn=lambda identity: drops.append(identity.owner) or False,
        probe_factory=probe_factory,
        popen=lambda argv, **kwargs: popen(holder, argv, **kwargs),
    )
    holder["supervisor"] = supervisor
    return supervisor


def test_supervisor_drops_privileges_passes_port_and_reports_health(tmp_path):
    port = _free_port()
    started = []
    drops = []
    probe_urls = []

    def popen(holder, argv, **kwargs):
        started.append((argv, kwargs))
        return FakeProc(holder, returncode=7)

    supervisor = _supervisor(
        tmp_path, environ={"PORT": str(port), "HOME": "/home/node"}, popen=popen, drops=drops, probe_urls=probe_urls
    )

    assert supervisor.run() == 7

    assert drops == ["node:node"]
    argv, kwargs = started[0]
    assert argv == ["npm", "run", "start"]
    assert kwargs["env"]["PORT"] == str(port)
    assert kwargs["env"]["HOME"] == "/home/node"
    assert kwargs["cwd"] == str(tmp_path)
    assert probe_urls == [(f"http://localhost:{port}/api/v1/status", 0.02)]
    assert supervisor.monitor.state == "healthy"
    status = json.loads((tmp_path / "health.json").read_text(encoding="utf-8"))
    assert status["state"] == "healthy"
    assert status["port"] == port


def test_unset_port_defaults_to_runtime_port(tmp_path):
    supervisor = _supervisor(tmp_path, environ={}, popen=None)
    supervisor.runtime = RuntimeConfig(port=_free_port())

    env = supervisor.prepare()

    assert env["PORT"] == str(supervisor.runtime.port)


def test_unstartable_command_is_a_startup_error(tmp_path):
    def popen(_holder, argv, **_kwargs):
        raise FileNotFoundError(2, "No such file or directory", argv[0])

    supervisor = _supervisor(tmp_path, environ={"PORT": str(_free_port())}, popen=popen)

    with pytest.raises(RuntimeStartupError, match=r"Cannot start npm run start"):
        supervisor.run()
    assert supervisor.monitor is None


def test_invalid_port_fails_before_the_application_starts(tmp_path):
    started = []

    def popen(holder, argv, **kwargs):
        started.append(argv)
        return FakeProc(holder)

    supervisor = _supervisor(tmp_path, environ={"PORT": "not-a-port"}, popen=popen)

    with pytest.raises(RuntimeStartupError, match=r"Invalid PORT"):
        supervisor.run()
    assert started == []


def test_empty_command_is_rejected():
    with pytest.raises(RuntimeStartupError, match=r"No start command configured"):
        Supervisor(
            runtime=RuntimeConfig(start_command=()),
            healthcheck=FAST_HEALTHCHECK,
            identity=IdentityConfig(),
            environ={},
        )


def test_probe_started_in_start_period_is_not_counted_when_it_fails_late(tmp_path):
    clock = {"now": 0.0}

    class LateFailingProbe:
        def probe(self):
            clock["now"] += 0.5
            return ProbeResult(ok=False, error="ReadTimeout")

    class ExitAfterFirstProbe:
        def __init__(self, holder):
            self._holder = holder

        def wait(self):
            deadline = time.monotonic() + 5.0
            while time.monotonic() < deadline:
                monitor = self._holder["supervisor"].monitor
                if monitor is not None and monitor.probes >= 1:
                    break
                time.sleep(0.01)
            return 0

    holder = {}
    supervisor = Supervisor(
        runtime=RuntimeConfig(workdir=str(tmp_path)),
        healthcheck=HealthcheckConfig(interval_s=10.0, timeout_s=1.0, start_period_s=0.3, retries=1, start_interval_s=10.0),
        identity=IdentityConfig(),
        environ={"PORT": str(_free_port())},
        drop_privileges_fn=lambda identity: False,
        probe_factory=lambda url, timeout: LateFailingProbe(),
        popen=lambda argv, **kwargs: ExitAfterFirstProbe(holder),
        clock=lambda: clock["now"],
    )
    holder["supervisor"] = supervisor

    assert supervisor.run() == 0

    snapshot = supervisor.monitor.snapshot()
    assert snapshot["state"] == "starting"
    assert snapshot["ignored_failures"] == 1
    assert snapshot["consecutive_failures"] == 0
