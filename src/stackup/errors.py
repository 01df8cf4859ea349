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
Exception hierarchy for stack configuration and orchestration failures.
"""
from typing import List, Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from .MODELS.stack_status import StatusSnapshot


class StackError(Exception):
    """
    Base class for all stackup errors.

    Every error carries the name of the offending service (when there is one)
    and the seconds elapsed before it was raised.
    """

    def __init__(self, message: str, service: Optional[str] = None, elapsed: float = 0.0):
        super().__init__(message)
        self.message = message
        self.service = service
        self.elapsed = elapsed

    def __str__(self) -> str:
        if self.service:
            return f"{self.service}: {self.message}"
        return self.message


class ValidationError(StackError):
    """The stack definition is malformed. Raised before any service starts."""


class UnknownProfile(StackError):
    """A requested profile matches no service in the definition."""

    def __init__(self, profile: str, known: Optional[List[str]] = None):
        known = sorted(known or [])
        hint = f" (known profiles: {', '.join(known)})" if known else ""
        super().__init__(f"Unknown profile '{profile}'{hint}")
        self.profile = profile
        self.known = known


class ServiceStartError(StackError):
    """The container engine refused to launch a service."""


class DependencyNotReady(StackError):
    """A service was not started because a dependency never reached Ready."""

    def __init__(self, service: str, dependencies: List[str], elapsed: float = 0.0):
        super().__init__(f"dependency not ready: {', '.join(dependencies)}", service=service, elapsed=elapsed)
        self.dependencies = list(dependencies)


class ReadinessTimeout(StackError):
    """A service did not accept connections before the readiness timeout."""

    def __init__(self, service: str, host: str, port: int, elapsed: float, attempts: int = 0):
        super().__init__(
            f"not accepting connections on {host}:{port} after {elapsed:.1f}s "
            f"({attempts} attempts)",
            service=service,
            elapsed=elapsed,
        )
        self.host = host
        self.port = port
        self.attempts = attempts


class PartialStartupFailure(StackError):
    """
    One or more selected services never reached Ready.

    :param failures: Per-service errors, in declaration order.
    :param snapshot: Status of the whole stack once every probe settled.
    """

    def __init__(self, failures: List[StackError], snapshot: "StatusSnapshot", elapsed: float = 0.0):
        names = [f.service for f in failures]
        super().__init__(
            f"{len(failures)} service(s) failed to become ready: {', '.join(names)}",
            elapsed=elapsed,
        )
        self.failures = failures
        self.snapshot = snapshot

    @property
    def failed_services(self) -> List[str]:
        return [f.service for f in self.failures]


class StartupCancelled(StackError):
    """Startup was cancelled; services started so far have been torn down."""


class IllegalStateTransition(StackError):
    """The stack was asked to move between phases the lifecycle does not allow."""
