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
Launching, stopping and inspecting service containers through the container engine CLI.
"""
import logging
import math
import os
import socket
import subprocess
import time
from dataclasses import dataclass
from typing import List, Optional

from ..MODELS.service_spec import ServiceSpec, VolumeBinding
from ..errors import ServiceStartError, StackError

logger = logging.getLogger(__name__)

PROJECT_LABEL = "stackup.project"
SERVICE_LABEL = "stackup.service"


@dataclass(frozen=True)
class StopOutcome:
    """Result of stopping one service container."""

    existed: bool
    clean: bool
    elapsed: float
    detail: str = ""


class ContainerRunner:
    """
    Drives ``docker`` (or a CLI-compatible engine such as ``podman``) for one project.

    Containers are named ``<project>-<service>`` and labelled with the project,
    so a later invocation can find them without any local state.
    """
    def __init__(self, project: str, base_dir: str = ".", docker_bin: str = "docker"):
        """
        Initializes the runner.

        Args:
            project (str): Project name used as the container name prefix.
            base_dir (str): Directory relative host paths are resolved against.
            docker_bin (str): Container engine executable.
        """
        self.project = project
        self.base_dir = os.path.abspath(base_dir)
        self.docker_bin = docker_bin

    def container_name(self, spec: ServiceSpec) -> str:
        return f"{self.project}-{spec.name}"

    def build_run_command(self, spec: ServiceSpec) -> List[str]:
        """
        Builds the detached ``run`` invocation for a service.

        Args:
            spec (ServiceSpec): The service to launch.

        Returns:
            List[str]: Command and arguments, never passed through a shell.
        """
        command = [
            self.docker_bin, "run", "-d",
            "--name", self.container_name(spec),
            "--label", f"{PROJECT_LABEL}={self.project}",
            "--label", f"{SERVICE_LABEL}={spec.name}",
            "--restart", spec.restart.value,
            "-p", f"{spec.published_port}:{spec.port}",
        ]
        for key, value in spec.environment.items():
            command += ["-e", f"{key}={value}"]
        for volume in spec.volumes:
            command += ["-v", self._volume_flag(volume)]
        command.append(spec.image)
        command += spec.command
        return command

    def start(self, spec: ServiceSpec) -> None:
        """
        Launches the service container. A container that is already running is left alone;
        a stale stopped one is removed first.

        Raises:
            ServiceStartError: If the host port is taken or the engine refuses to start it.
        """
        name = self.container_name(spec)
        existing = self.state(spec)
        if existing == "running":
            logger.info("[%s] Container %s already running", spec.name, name)
            return
        if existing is not None:
            logger.info("[%s] Removing stale container %s (%s)", spec.name, name, existing)
            self._run([self.docker_bin, "rm", "-f", name])

        if _port_taken(spec.published_port):
            raise ServiceStartError(f"host port {spec.published_port} is already in use", service=spec.name)

        command = self.build_run_command(spec)
        logger.info("[%s] Starting container %s from %s", spec.name, name, spec.image)
        logger.debug("[%s] Command: %s", spec.name, " ".join(_masked(command)))

        started = time.monotonic()
        result = self._run(command)
        if result.returncode != 0:
            raise ServiceStartError(
                f"engine refused to start container: {result.stderr.strip() or result.returncode}",
                service=spec.name,
                elapsed=time.monotonic() - started,
            )

    def stop(self, spec: ServiceSpec, grace: float = 10.0) -> StopOutcome:
        """
        Stops and removes the service container. The engine sends SIGTERM, then SIGKILL
        once the grace period expires.

        Args:
            spec (ServiceSpec): The service to stop.
            grace (float): Seconds to wait for a clean exit before the engine kills it.

        Returns:
            StopOutcome: Whether the container existed and stopped within the grace period.
        """
        name = self.container_name(spec)
        # The engine takes whole seconds, rounded up
        wait = max(0, math.ceil(grace))
        started = time.monotonic()
        result = self._run([self.docker_bin, "stop", "-t", str(wait), name], timeout=wait + 30)
        elapsed = time.monotonic() - started

        if result.returncode != 0:
            if "no such container" in result.stderr.lower():
                logger.debug("[%s] No container to stop", spec.name)
                return StopOutcome(existed=False, clean=True, elapsed=elapsed)
            raise StackError(
                f"failed to stop container {name}: {result.stderr.strip()}",
                service=spec.name,
                elapsed=elapsed,
            )

        removed = self._run([self.docker_bin, "rm", name])
        if removed.returncode != 0:
            logger.warning("[%s] Could not remove container %s: %s", spec.name, name, removed.stderr.strip())

        # With no grace period the kill is what was asked for
        if wait > 0 and elapsed >= wait:
            return StopOutcome(
                existed=True,
                clean=False,
                elapsed=elapsed,
                detail=f"did not exit within the {grace:g}s grace period and was killed",
            )
        return StopOutcome(existed=True, clean=True, elapsed=elapsed)

    def state(self, spec: ServiceSpec) -> Optional[str]:
        """
        Gets the engine's view of the container.

        Returns:
            Optional[str]: 'running', 'exited', 'restarting', ... or None if there is no container.
        """
        result = self._run(
            [self.docker_bin, "inspect", "-f", "{{.State.Status}}", self.container_name(spec)],
            timeout=30,
        )
        if result.returncode != 0:
            return None
        return result.stdout.strip() or None

    def logs(self, spec: ServiceSpec, follow: bool = False, tail: Optional[int] = None) -> int:
        """
        Streams the container's logs to this process's stdout/stderr.

        Returns:
            int: Exit code of the engine's logs command.
        """
        command = [self.docker_bin, "logs"]
        if follow:
            command.append("--follow")
        if tail is not None:
            command += ["--tail", str(tail)]
        command.append(self.container_name(spec))
        try:
            return subprocess.call(command, shell=False)
        except FileNotFoundError as e:
            raise StackError(f"container engine '{self.docker_bin}' not found") from e
        except OSError as e:
            raise StackError(f"could not run container engine '{self.docker_bin}': {e}") from e

    def resolve_source(self, source: str) -> str:
        """
        Resolves the source path of a volume.

        :param source: The source path or named volume.
        :return: The absolute host path, or the volume name unchanged.
        """
        if not os.path.isabs(source) and not source.startswith(('.', '~')):
            return source
        return os.path.abspath(os.path.join(self.base_dir, os.path.expanduser(source)))

    def _volume_flag(self, volume: VolumeBinding) -> str:
        suffix = ":ro" if volume.read_only else ""
        return f"{self.resolve_source(volume.source)}:{volume.target}{suffix}"

    def _run(self, command: List[str], timeout: Optional[float] = None) -> subprocess.CompletedProcess:
        try:
            # Avoid shell=True, arguments come from the stack file (CWE-78)
            return subprocess.run(command, capture_output=True, text=True, timeout=timeout, shell=False)
        except FileNotFoundError as e:
            raise StackError(f"container engine '{self.docker_bin}' not found") from e
        except subprocess.TimeoutExpired as e:
            raise StackError(f"'{' '.join(command[:2])}' timed out after {timeout:g}s") from e
        except OSError as e:
            raise StackError(f"could not run container engine '{self.docker_bin}': {e}") from e


def _port_taken(port: int) -> bool:
    """
    True when something on this host already listens on the port, on any interface.
    """
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        try:
            s.bind(("", port))
        except OSError:
            return True
    return False


def _masked(command: List[str]) -> List[str]:
    """
    Hides environment values so credentials stay out of logs.
    """
    masked = []
    hide_next = False
    for arg in command:
        if hide_next and '=' in arg:
            arg = arg.split('=', 1)[0] + '=***'
        masked.append(arg)
        hide_next = arg == '-e'
    return masked
