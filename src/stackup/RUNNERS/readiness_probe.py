# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Readiness probing for services: poll a TCP port until it accepts connections,
a timeout elapses, or the caller cancels.
"""
import logging
import socket
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from tenacity import (
    Retrying,
    RetryError,
    before_sleep_log,
    retry_if_exception_type,
    stop_before_delay,
    stop_when_event_set,
    wait_fixed,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0
DEFAULT_INTERVAL = 0.5
DEFAULT_CONNECT_TIMEOUT = 1.0


class ProbeOutcome(str, Enum):
    """Result of waiting for a port."""

    READY = "ready"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class ProbeResult:
    """Outcome of a readiness wait."""

    outcome: ProbeOutcome
    elapsed: float
    attempts: int = 0
    error: str = ""

    @property
    def ready(self) -> bool:
        return self.outcome == ProbeOutcome.READY


class _Cancelled(Exception):
    """Raised inside an attempt once the cancel event is set."""


class ReadinessProbe:
    """
    Polls a host/port at a fixed interval until it accepts a TCP connection.

    The loop is bounded: it never starts an attempt that would begin after
    the timeout, so a wait returns within ``timeout + connect_timeout``.
    """

    def __init__(
        self,
        timeout: float = DEFAULT_TIMEOUT,
        interval: float = DEFAULT_INTERVAL,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
    ):
        """
        Initializes the probe.

        Args:
            timeout: Seconds to keep trying before reporting failure.
            interval: Seconds between attempts.
            connect_timeout: Upper bound for a single connection attempt.
        """
        if timeout <= 0 or interval <= 0 or connect_timeout <= 0:
            raise ValueError("timeout, interval and connect_timeout must be positive")
        self.timeout = timeout
        self.interval = interval
        self.connect_timeout = connect_timeout

    def check(self, host: str, port: int) -> bool:
        """
        Single connection attempt.

        Args:
            host: Host to connect to.
            port: TCP port.

        Returns:
            True if the port accepted the connection.
        """
        try:
            with socket.create_connection((host, port), timeout=self.connect_timeout):
                return True
        except OSError:
            return False

    def wait(self, host: str, port: int, cancel: Optional[threading.Event] = None) -> ProbeResult:
        """
        Waits for the port to accept connections.

        Args:
            host: Host to connect to.
            port: TCP port.
            cancel: Setting this event aborts the wait promptly.

        Returns:
            ProbeResult with READY, FAILED (timeout) or CANCELLED.
        """
        cancel = cancel or threading.Event()
        started = time.monotonic()
        attempts = 0

        def attempt():
            nonlocal attempts
            if cancel.is_set():
                raise _Cancelled()
            attempts += 1
            remaining = self.timeout - (time.monotonic() - started)
            connect_timeout = max(0.05, min(self.connect_timeout, remaining))
            with socket.create_connection((host, port), timeout=connect_timeout):
                pass

        retryer = Retrying(
            stop=stop_before_delay(self.timeout) | stop_when_event_set(cancel),
            wait=wait_fixed(self.interval),
            retry=retry_if_exception_type(OSError),
            # Sleeping on the event lets a cancel cut the interval short
            sleep=cancel.wait,
            before_sleep=before_sleep_log(logger, logging.DEBUG),
        )

        try:
            retryer(attempt)
        except _Cancelled:
            return self._result(ProbeOutcome.CANCELLED, started, attempts, host, port)
        except RetryError as e:
            if cancel.is_set():
                return self._result(ProbeOutcome.CANCELLED, started, attempts, host, port)
            last = e.last_attempt.exception()
            return self._result(ProbeOutcome.FAILED, started, attempts, host, port, error=str(last or "timeout"))

        return self._result(ProbeOutcome.READY, started, attempts, host, port)

    def _result(self, outcome, started, attempts, host, port, error=""):
        elapsed = time.monotonic() - started
        logger.debug("Probe %s:%s %s after %.2fs (%d attempts)", host, port, outcome.value, elapsed, attempts)
        return ProbeResult(outcome=outcome, elapsed=elapsed, attempts=attempts, error=error)
