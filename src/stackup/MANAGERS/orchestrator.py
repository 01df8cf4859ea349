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
Orchestration for multiple services, managing dependencies and readiness.
"""
import concurrent.futures
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from ..MODELS.stack_definition import StackDefinition
from ..MODELS.service_spec import ServiceSpec, RestartPolicy
from ..MODELS.stack_status import (
    ServicePhase,
    ServiceState,
    StackPhase,
    StackStatus,
    StatusSnapshot,
)
from ..RUNNERS.dependency_resolver import DependencyResolver
from ..RUNNERS.readiness_probe import ProbeOutcome, ReadinessProbe
from ..errors import (
    DependencyNotReady,
    PartialStartupFailure,
    ReadinessTimeout,
    ServiceStartError,
    StackError,
    StartupCancelled,
)
from .profile_resolver import ProfileResolver

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StopIssue:
    """A service that did not stop cleanly during teardown."""

    service: str
    reason: str
    elapsed: float
    restart: RestartPolicy


class Orchestrator:
    """
    Orchestrates the services of one stack: parallel start in dependency
    waves, readiness probing, aggregate status and ordered teardown.

    The runner is any object with ``start(spec)``, ``stop(spec, grace)`` and
    ``state(spec)``; the probe any object with ``wait(host, port, cancel)``
    and ``check(host, port)``.
    """

    def __init__(
        self,
        definition: StackDefinition,
        runner,
        probe=None,
        on_change: Optional[Callable[[StatusSnapshot], None]] = None,
        grace: float = 10.0,
    ):
        """
        Initializes the orchestrator.

        :param definition: The validated stack definition.
        :param runner: Launches and stops service containers.
        :param probe: Readiness probe. Defaults to one built from the stack's readiness settings.
        :param on_change: Called with a snapshot after every settled batch of transitions.
        :param grace: Seconds a service gets to stop before it is killed.
        """
        self.definition = definition
        self.runner = runner
        self.probe = probe or ReadinessProbe(
            timeout=definition.readiness.timeout,
            interval=definition.readiness.interval,
        )
        self.on_change = on_change
        self.grace = grace

        self.profiles = ProfileResolver()
        self.resolver = DependencyResolver()
        self.status = StackStatus()
        self.ready = threading.Event()
        self.stop_issues: List[StopIssue] = []

        self._cancel = threading.Event()
        self._lifecycle = threading.RLock()
        self._started: List[ServiceSpec] = []

    def snapshot(self) -> StatusSnapshot:
        """
        Returns an immutable view of the current status.
        """
        return self.status.snapshot()

    def wait_ready(self, timeout: Optional[float] = None) -> bool:
        """
        Blocks until every selected service is Ready, or the timeout passes.
        """
        return self.ready.wait(timeout)

    def cancel(self) -> None:
        """
        Aborts in-flight readiness probes. Safe to call from any thread.

        The event is armed before up() resolves anything, so a cancel that
        lands while up() is still getting ready is not lost. A cancel with no
        startup running applies to the next up(), until down() clears it.
        """
        logger.info("Cancelling stack startup")
        self._cancel.set()

    def up(self, profile: Optional[str] = None) -> StatusSnapshot:
        """
        Starts the selected services and waits for them to become ready.

        :param profile: Profile to activate in addition to the always-on services.
        :return: Snapshot of the Ready stack.
        :raises UnknownProfile: Before anything starts, if the profile matches no service.
        :raises PartialStartupFailure: If any selected service never reached Ready.
        :raises StartupCancelled: If cancel() was called; started services are torn down.
        """
        selected = self.profiles.resolve(self.definition, profile)

        with self._lifecycle:
            started_at = time.monotonic()
            self.status.reset([svc.name for svc in selected], StackPhase.STARTING)
            self._started = []
            self.stop_issues = []
            self.ready.clear()
            self._notify()

            try:
                return self._start_waves(selected, started_at)
            finally:
                # Fresh event for the next cycle; this one may be set
                self._cancel = threading.Event()

    def _start_waves(self, selected: List[ServiceSpec], started_at: float) -> StatusSnapshot:
        waves = self.resolver.waves(selected)
        logger.info(
            "Starting %d service(s) in %d wave(s): %s",
            len(selected), len(waves),
            " | ".join(", ".join(svc.name for svc in wave) for wave in waves),
        )

        errors: Dict[str, StackError] = {}
        for wave in waves:
            if self._cancel.is_set():
                break
            errors.update(self._run_wave(wave, started_at))

        elapsed = time.monotonic() - started_at

        if self._cancel.is_set():
            leftover = {
                name: ServiceState(ServicePhase.STOPPED, reason="startup cancelled", elapsed=elapsed)
                for name, state in self.snapshot().services.items()
                if state.phase in (ServicePhase.PENDING, ServicePhase.STARTING)
            }
            self.status.apply(leftover)
            self._notify()
            self.down()
            raise StartupCancelled("startup cancelled", elapsed=elapsed)

        failures = [errors[svc.name] for svc in selected if svc.name in errors]
        if failures:
            self.status.apply({}, StackPhase.PARTIALLY_FAILED)
            snapshot = self._notify()
            for failure in failures:
                logger.error("Service %s", failure)
            raise PartialStartupFailure(failures, snapshot, elapsed=elapsed)

        self.status.apply({}, StackPhase.READY)
        snapshot = self._notify()
        self.ready.set()
        logger.info("Stack ready after %.1fs", elapsed)
        return snapshot

    def down(self) -> StatusSnapshot:
        """
        Stops services in reverse start order. When this orchestrator started
        nothing (e.g. a fresh CLI process), every defined service is stopped in
        reverse dependency order. Calling it again is a no-op.

        :return: Snapshot of the Stopped stack.
        """
        with self._lifecycle:
            phase = self.status.phase
            if phase == StackPhase.STOPPED:
                logger.info("Stack already stopped")
                return self.snapshot()

            self.ready.clear()
            if phase == StackPhase.IDLE:
                by_name = self.definition.by_name()
                order = self.resolver.resolve_order(self.definition.services)
                targets = [by_name[name] for name in reversed(order)]
                self.status.reset(self.definition.names, StackPhase.STOPPING)
            else:
                targets = list(reversed(self._started))
                self.status.apply({}, StackPhase.STOPPING)
            self._notify()

            for spec in targets:
                self._stop_service(spec)

            self._started = []
            self._cancel = threading.Event()
            self.status.apply({}, StackPhase.STOPPED)
            snapshot = self._notify()
            if self.stop_issues:
                logger.warning("%d service(s) did not stop cleanly", len(self.stop_issues))
            return snapshot

    def refresh(self, profile: Optional[str] = None) -> StatusSnapshot:
        """
        Rebuilds status from what the container engine reports, for a process
        that did not start the stack itself. A live orchestrator keeps its own view.
        """
        selected = self.profiles.resolve(self.definition, profile)

        with self._lifecycle:
            if self.status.phase != StackPhase.IDLE:
                return self.snapshot()

            states = {}
            for spec in selected:
                engine_state = self.runner.state(spec)
                if engine_state is None:
                    states[spec.name] = ServiceState(ServicePhase.STOPPED)
                elif engine_state == "running":
                    if self.probe.check(self.definition.host, spec.published_port):
                        states[spec.name] = ServiceState(ServicePhase.READY)
                    else:
                        states[spec.name] = ServiceState(ServicePhase.STARTING, reason="not accepting connections yet")
                elif engine_state == "created":
                    states[spec.name] = ServiceState(ServicePhase.PENDING)
                elif engine_state == "restarting":
                    states[spec.name] = ServiceState(ServicePhase.STARTING, reason="restarting")
                else:
                    states[spec.name] = ServiceState(ServicePhase.FAILED, reason=f"container {engine_state}")

            self.status.replace(states, _derive_phase(states))
            return self.snapshot()

    def _run_wave(self, wave: List[ServiceSpec], started_at: float) -> Dict[str, StackError]:
        """
        Starts one wave in parallel and applies every result in a single batch
        once all probes have settled. Workers never raise, so every launched
        container is recorded for teardown.
        """
        current = self.snapshot().services
        errors: Dict[str, StackError] = {}
        launch = []
        changes: Dict[str, ServiceState] = {}

        for spec in wave:
            not_ready = [d for d in spec.depends_on if d in current and current[d].phase != ServicePhase.READY]
            if not_ready:
                error = DependencyNotReady(spec.name, not_ready, elapsed=time.monotonic() - started_at)
                errors[spec.name] = error
                changes[spec.name] = ServiceState(ServicePhase.FAILED, reason=error.message, elapsed=error.elapsed)
                logger.warning("[%s] Not starting, %s", spec.name, error.message)
            else:
                launch.append(spec)
                changes[spec.name] = ServiceState(ServicePhase.STARTING)

        self.status.apply(changes)
        self._notify()
        if not launch:
            return errors

        with concurrent.futures.ThreadPoolExecutor(
            max_workers=len(launch), thread_name_prefix="stackup"
        ) as pool:
            futures = [pool.submit(self._start_and_probe, spec) for spec in launch]
            try:
                concurrent.futures.wait(futures)
            except KeyboardInterrupt:
                logger.warning("Interrupted, cancelling readiness probes")
                self.cancel()
                concurrent.futures.wait(futures)

        results = {}
        for spec, future in zip(launch, futures):
            state, error, launched = future.result()
            results[spec.name] = state
            if error is not None:
                errors[spec.name] = error
            if launched:
                self._started.append(spec)

        self.status.apply(results)
        self._notify()
        return errors

    def _start_and_probe(self, spec: ServiceSpec) -> Tuple[ServiceState, Optional[StackError], bool]:
        """
        Worker: launch one service and wait for it. Never touches shared status.

        :return: (final state, error if it failed, whether a container was launched)
        """
        started = time.monotonic()
        if self._cancel.is_set():
            return ServiceState(ServicePhase.STOPPED, reason="startup cancelled"), None, False

        try:
            self.runner.start(spec)
        except StackError as e:
            e.service = e.service or spec.name
            e.elapsed = time.monotonic() - started
            logger.error("[%s] Failed to start: %s", spec.name, e.message)
            return ServiceState(ServicePhase.FAILED, reason=e.message, elapsed=e.elapsed), e, False
        except Exception as e:
            error = self._unexpected(spec, "start", e, started)
            return ServiceState(ServicePhase.FAILED, reason=error.message, elapsed=error.elapsed), error, False

        host, port = self.definition.host, spec.published_port
        try:
            result = self.probe.wait(host, port, cancel=self._cancel)
        except Exception as e:
            error = self._unexpected(spec, "readiness probe", e, started)
            return ServiceState(ServicePhase.FAILED, reason=error.message, elapsed=error.elapsed), error, True
        elapsed = time.monotonic() - started

        if result.outcome == ProbeOutcome.READY:
            logger.info("[%s] Ready on %s:%s after %.1fs", spec.name, host, port, elapsed)
            return ServiceState(ServicePhase.READY, elapsed=elapsed), None, True
        if result.outcome == ProbeOutcome.CANCELLED:
            return ServiceState(ServicePhase.STOPPED, reason="readiness probe cancelled", elapsed=elapsed), None, True

        error = ReadinessTimeout(spec.name, host, port, elapsed=result.elapsed, attempts=result.attempts)
        logger.warning("[%s] %s", spec.name, error.message)
        return ServiceState(ServicePhase.FAILED, reason=error.message, elapsed=elapsed), error, True

    def _unexpected(self, spec: ServiceSpec, stage: str, exc: Exception, started: float) -> ServiceStartError:
        """
        Wraps an error the runner or probe did not translate itself.
        """
        error = ServiceStartError(
            f"{stage} failed: {type(exc).__name__}: {exc}",
            service=spec.name,
            elapsed=time.monotonic() - started,
        )
        logger.error("[%s] %s", spec.name, error.message, exc_info=exc)
        return error

    def _stop_service(self, spec: ServiceSpec) -> None:
        """
        Stops one service. A service that will not stop is reported, never retried.
        """
        logger.info("Stopping service: %s", spec.name)
        try:
            outcome = self.runner.stop(spec, self.grace)
        except StackError as e:
            self._report_stop_issue(spec, e.message, e.elapsed)
            self.status.apply({spec.name: ServiceState(ServicePhase.FAILED, reason=e.message, elapsed=e.elapsed)})
            self._notify()
            return

        if not outcome.clean:
            self._report_stop_issue(spec, outcome.detail, outcome.elapsed)
        self.status.apply({spec.name: ServiceState(ServicePhase.STOPPED, reason=outcome.detail or None,
                                                   elapsed=outcome.elapsed)})
        self._notify()

    def _report_stop_issue(self, spec: ServiceSpec, reason: str, elapsed: float) -> None:
        issue = StopIssue(service=spec.name, reason=reason, elapsed=elapsed, restart=spec.restart)
        self.stop_issues.append(issue)
        if spec.restart == RestartPolicy.ALWAYS:
            logger.warning("[%s] Service with restart policy 'always' %s; not retrying", spec.name, reason)
        else:
            logger.warning("[%s] %s", spec.name, reason)

    def _notify(self) -> StatusSnapshot:
        snapshot = self.status.snapshot()
        if self.on_change:
            self.on_change(snapshot)
        return snapshot


def _derive_phase(states: Dict[str, ServiceState]) -> StackPhase:
    """
    Stack phase implied by observed service states.
    """
    phases = {state.phase for state in states.values()}
    if phases <= {ServicePhase.STOPPED}:
        return StackPhase.STOPPED
    if phases == {ServicePhase.READY}:
        return StackPhase.READY
    if ServicePhase.FAILED in phases or ServicePhase.STOPPED in phases:
        return StackPhase.PARTIALLY_FAILED
    return StackPhase.STARTING
