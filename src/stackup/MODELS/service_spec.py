"""
Models for defining services, including restart policies, volume bindings and profiles.
"""
from typing import Dict, Optional, FrozenSet, Tuple
from pydantic import BaseModel, ConfigDict, field_validator
from enum import Enum
import re

_NAME_RE = re.compile(r"[a-zA-Z0-9][a-zA-Z0-9_.-]*")


class RestartPolicy(str, Enum):
    """
    Restart behaviour handed to the container engine.
    Values match the engine's ``--restart`` flag.
    """
    NEVER = "no"
    UNLESS_STOPPED = "unless-stopped"
    ALWAYS = "always"


class VolumeBinding(BaseModel):
    """
    Defines a mapping between a host path (or named volume) and a container path.
    """
    model_config = ConfigDict(frozen=True)

    source: str
    target: str
    read_only: bool = False

    @field_validator("source", "target")
    @classmethod
    def _not_empty(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("volume path must not be empty")
        return value.strip()


class ServiceSpec(BaseModel):
    """
    The full, immutable definition of a single service in the stack.
    """
    model_config = ConfigDict(frozen=True)

    name: str
    image: str

    # Networking
    port: int
    host_port: Optional[int] = None

    # Environment, resolved at parse time
    environment: Dict[str, str] = {}

    # Storage
    volumes: Tuple[VolumeBinding, ...] = ()

    # Lifecycle
    profiles: FrozenSet[str] = frozenset()
    restart: RestartPolicy = RestartPolicy.NEVER
    depends_on: Tuple[str, ...] = ()
    command: Tuple[str, ...] = ()

    @field_validator("name")
    @classmethod
    def _valid_name(cls, value: str) -> str:
        if not _NAME_RE.fullmatch(value):
            raise ValueError(f"invalid service name '{value}', use letters, digits, '_', '.' or '-'")
        return value

    @field_validator("image")
    @classmethod
    def _required(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("must not be empty")
        return value.strip()

    @field_validator("port", "host_port")
    @classmethod
    def _valid_port(cls, value: Optional[int]) -> Optional[int]:
        if value is not None and not 0 < value < 65536:
            raise ValueError(f"port {value} is outside 1-65535")
        return value

    def __hash__(self) -> int:
        # environment is a dict, so hash it as sorted pairs
        return hash((
            self.name, self.image, self.port, self.host_port,
            tuple(sorted(self.environment.items())), self.volumes,
            self.profiles, self.restart, self.depends_on, self.command,
        ))

    @property
    def published_port(self) -> int:
        """The host port the service is reachable on."""
        return self.host_port if self.host_port is not None else self.port

    @property
    def always_on(self) -> bool:
        """True when the service is not gated behind any profile."""
        return not self.profiles

    def in_profile(self, profile: Optional[str]) -> bool:
        """
        Whether the service runs for the given profile request.
        """
        return self.always_on or (profile is not None and profile in self.profiles)
