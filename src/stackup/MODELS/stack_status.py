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
Per-service and whole-stack lifecycle state, with immutable snapshots for readers.
"""
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Iterable, Mapping, Optional

from ..errors import IllegalStateTransition


class ServicePhase(str, Enum):
    """Lifecycle phase of a single service."""

    PENDING = "pending"
    STARTING = "starting"
    READY = "ready"
    FAILED = "failed"
    STOPPED = "stopped"


class StackPhase(str, Enum):
    """Lifecycle phase of the stack as a whole."""

    IDLE = "idle"
    STARTING = "starting"
    READY = "ready"
    PARTIALLY_FAILED = "partially-failed"
    STOPPING = "stopping"
    STOPPED = "stopped"


# Allowed stack transitions. STOPPED only leaves through a new STARTING cycle.
_STACK_TRANSITIONS = {
    StackPhase.IDLE: {StackPhase.STARTING, StackPhase.STOPPING},
    StackPhase.STARTING: {StackPhase.READY, StackPhase.PARTIALLY_FAILED, StackPhase.STOPPING},
    StackPhase.READY: {StackPhase.STOPPING},
    StackPhase.PARTIALLY_FAILED: {StackPhase.STOPPING},
    StackPhase.STOPPING: {StackPhase.STOPPED},
    StackPhase.STOPPED: {StackPhase.STARTING},
}


@dataclass(frozen=True)
class ServiceState:
    """State of one service at a point in time."""

    phase: ServicePhase = ServicePhase.PENDING
    reason: Optional[str] = None
    elapsed: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {"phase": self.phase.value, "reason": self.reason, "elapsed": round(self.elapsed, 3)}


@dataclass(frozen=True)
class StatusSnapshot:
    """
    Immutable view of the stack handed to callers and observers.
    """

    phase: StackPhase
    services: Mapping[str, ServiceState]
    taken_at: str

    def failed(self):
        """Names of services in the FAILED phase, in declaration order."""
        return [name for name, st in self.services.items() if st.phase == ServicePhase.FAILED]

    def in_phase(self, phase: ServicePhase):
        return [name for name, st in self.services.items() if st.phase == phase]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "phase": self.phase.value,
            "taken_at": self.taken_at,
            "services": {name: st.to_dict() for name, st in self.services.items()},
        }


class StackStatus:
    """
    Owned, lifecycle-scoped status table for one orchestrator.

    Batches of transitions are applied under a lock, so a snapshot never
    shows half of a batch.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._phase = StackPhase.IDLE
        self._services: Dict[str, ServiceState] = {}
        self._observed_phase: Optional[StackPhase] = None

    @property
    def phase(self) -> StackPhase:
        with self._lock:
            return self._phase

    def reset(self, names: Iterable[str], phase: StackPhase) -> None:
        """
        Starts a new cycle: every named service goes back to PENDING.
        """
        with self._lock:
            self._check(phase)
            self._phase = phase
            self._services = {name: ServiceState() for name in names}

    def apply(
        self,
        changes: Mapping[str, ServiceState],
        phase: Optional[StackPhase] = None,
    ) -> None:
        """
        Applies a batch of service transitions, and optionally a stack phase
        change, atomically.
        """
        with self._lock:
            if phase is not None and phase != self._phase:
                self._check(phase)
            for name, state in changes.items():
                self._services[name] = state
            if phase is not None:
                self._phase = phase

    def replace(self, services: Mapping[str, ServiceState], phase: StackPhase) -> None:
        """
        Overwrites the table with observed state. Only valid before this
        orchestrator has driven any transition of its own.
        """
        with self._lock:
            if self._phase != StackPhase.IDLE:
                raise IllegalStateTransition(
                    f"cannot replace observed state while stack is {self._phase.value}"
                )
            self._services = dict(services)
            self._observed_phase = phase

    def snapshot(self) -> StatusSnapshot:
        with self._lock:
            phase = self._phase
            if phase == StackPhase.IDLE and self._observed_phase is not None:
                phase = self._observed_phase
            return StatusSnapshot(
                phase=phase,
                services=MappingProxyType(dict(self._services)),
                taken_at=datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            )

    def get(self, name: str) -> ServiceState:
        with self._lock:
            return self._services.get(name, ServiceState())

    def _check(self, target: StackPhase) -> None:
        if target not in _STACK_TRANSITIONS[self._phase]:
            raise IllegalStateTransition(
                f"stack cannot move from {self._phase.value} to {target.value}"
            )
