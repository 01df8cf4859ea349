import socket
import threading
import time

import pytest

from stackup.RUNNERS.readiness_probe import ProbeOutcome, ReadinessProbe
from fakes import free_port


@pytest.fixture
def listening_port():
    server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    server.bind(('127.0.0.1', 0))
    server.listen(5)
    yield server.getsockname()[1]
    server.close()


def test_ready_when_port_accepts(listening_port):
    result = ReadinessProbe(timeout=2, interval=0.1).wait('127.0.0.1', listening_port)
    assert result.outcome == ProbeOutcome.READY
    assert result.ready
    assert result.attempts == 1


def test_becomes_ready_once_listener_appears():
    port = free_port()
    server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)

    def open_later():
        server.bind(('127.0.0.1', port))
        server.listen(5)

    timer = threading.Timer(0.3, open_later)
    timer.start()
    try:
        result = ReadinessProbe(timeout=5, interval=0.1).wait('127.0.0.1', port)
    finally:
        timer.join()
        server.close()
    assert result.ready
    assert result.attempts > 1


def test_fails_within_timeout():
    port = free_port()
    probe = ReadinessProbe(timeout=0.5, interval=0.1, connect_timeout=0.2)

    started = time.monotonic()
    result = probe.wait('127.0.0.1', port)
    wall = time.monotonic() - started

    assert result.outcome == ProbeOutcome.FAILED
    assert result.attempts >= 2
    assert result.error
    assert wall < 0.5 + 0.2 + 0.5


def test_cancel_stops_waiting_promptly():
    port = free_port()
    cancel = threading.Event()
    timer = threading.Timer(0.2, cancel.set)
    timer.start()

    started = time.monotonic()
    result = ReadinessProbe(timeout=30, interval=0.5).wait('127.0.0.1', port, cancel=cancel)
    wall = time.monotonic() - started
    timer.join()

    assert result.outcome == ProbeOutcome.CANCELLED
    assert wall < 2


def test_cancelled_before_first_attempt():
    cancel = threading.Event()
    cancel.set()
    result = ReadinessProbe(timeout=5).wait('127.0.0.1', free_port(), cancel=cancel)
    assert result.outcome == ProbeOutcome.CANCELLED
    assert result.attempts == 0


def test_check(listening_port):
    probe = ReadinessProbe(connect_timeout=0.5)
    assert probe.check('127.0.0.1', listening_port)
    assert not probe.check('127.0.0.1', free_port())


@pytest.mark.parametrize('kwargs', [{'timeout': 0}, {'interval': -1}, {'connect_timeout': 0}])
def test_rejects_non_positive_settings(kwargs):
    with pytest.raises(ValueError):
        ReadinessProbe(**kwargs)
