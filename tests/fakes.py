"""
In-process stand-ins for the container engine and the readiness probe.
"""
import socket
import threading
import time

from stackup.RUNNERS.container_runner import StopOutcome
from stackup.RUNNERS.readiness_probe import ProbeOutcome, ProbeResult
from stackup.errors import ServiceStartError, StackError


class FakeRunner:
    """Keeps container state in memory and records every call."""

    def __init__(self, refuse=(), unclean=(), running=(), crash=None):
        self.refuse = set(refuse)
        self.crash = dict(crash or {})
        self.unclean = set(unclean)
        self.running = set(running)
        self.started = []
        self.stopped = []
        self.logged = []
        self._lock = threading.Lock()

    def start(self, spec):
        if spec.name in self.crash:
            raise self.crash[spec.name]
        if spec.name in self.refuse:
            raise ServiceStartError("engine refused to start container", service=spec.name)
        with self._lock:
            self.started.append(spec.name)
            self.running.add(spec.name)

    def stop(self, spec, grace=10.0):
        with self._lock:
            self.stopped.append(spec.name)
            existed = spec.name in self.running
            self.running.discard(spec.name)
        if spec.name in self.unclean:
            return StopOutcome(existed=existed, clean=False, elapsed=grace,
                               detail=f"did not exit within the {grace:g}s grace period and was killed")
        return StopOutcome(existed=existed, clean=True, elapsed=0.01)

    def state(self, spec):
        return "running" if spec.name in self.running else None

    def logs(self, spec, follow=False, tail=None):
        self.logged.append((spec.name, follow, tail))
        return 0


class BrokenStopRunner(FakeRunner):
    def stop(self, spec, grace=10.0):
        with self._lock:
            self.stopped.append(spec.name)
        raise StackError("permission denied", service=spec.name)


class CrashingProbe:
    """Raises an error the probe would never translate itself."""

    def wait(self, host, port, cancel=None):
        raise RuntimeError("probe thread died")

    def check(self, host, port):
        return False


class FakeProbe:
    """
    Ports in ``ready`` answer after ``delay`` seconds; ports in ``blocking``
    wait until cancelled; everything else times out.
    """

    def __init__(self, ready=(), blocking=(), delay=0.0):
        self.ready = set(ready)
        self.blocking = set(blocking)
        self.delay = delay
        self.entered = threading.Event()
        self.finished = {}
        self._lock = threading.Lock()

    def wait(self, host, port, cancel=None):
        cancel = cancel or threading.Event()
        started = time.monotonic()
        if port in self.blocking:
            self.entered.set()
            cancel.wait(10)
            outcome = ProbeOutcome.CANCELLED if cancel.is_set() else ProbeOutcome.FAILED
            return ProbeResult(outcome, time.monotonic() - started, 1)
        if self.delay:
            time.sleep(self.delay)
        with self._lock:
            self.finished[port] = time.monotonic()
        if port in self.ready:
            return ProbeResult(ProbeOutcome.READY, time.monotonic() - started, 1)
        return ProbeResult(ProbeOutcome.FAILED, time.monotonic() - started, 3, "Connection refused")

    def check(self, host, port):
        return port in self.ready


def free_port():
    """A TCP port nothing is listening on right now."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(('127.0.0.1', 0))
        return s.getsockname()[1]
