"""
Models for overall stack configuration.
"""
from typing import Dict, List, Optional, Tuple, FrozenSet
from pydantic import BaseModel, ConfigDict, field_validator, model_validator
from .service_spec import ServiceSpec
from ..RUNNERS.dependency_resolver import DependencyResolver


class ParameterSpec(BaseModel):
    """
    A runtime parameter declared by the stack file.

    Resolved at invocation time from an explicit flag, then the named
    environment variable, then the default.
    """
    model_config = ConfigDict(frozen=True)

    name: str
    env: Optional[str] = None
    default: Optional[str] = None
    description: str = ""

    @property
    def env_name(self) -> str:
        return self.env or self.name


class ReadinessSettings(BaseModel):
    """
    Stack-wide readiness polling settings.
    """
    model_config = ConfigDict(frozen=True)

    timeout: float = 30.0
    interval: float = 0.5

    @field_validator("timeout", "interval")
    @classmethod
    def _positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("must be positive")
        return value


class StackDefinition(BaseModel):
    """
    Complete configuration for a multi-service stack.
    Services keep their declaration order.
    """
    model_config = ConfigDict(frozen=True)

    project: str
    services: Tuple[ServiceSpec, ...]
    profiles: FrozenSet[str] = frozenset()
    parameters: Tuple[ParameterSpec, ...] = ()
    host: str = "127.0.0.1"
    readiness: ReadinessSettings = ReadinessSettings()
    base_dir: str = "."

    @model_validator(mode="after")
    def _check_invariants(self) -> "StackDefinition":
        seen = set()
        for svc in self.services:
            if svc.name in seen:
                raise ValueError(f"duplicate service name '{svc.name}'")
            seen.add(svc.name)

        for svc in self.services:
            undefined = svc.profiles - self.profiles
            if undefined:
                raise ValueError(
                    f"service '{svc.name}' references undefined profile(s): "
                    f"{', '.join(sorted(undefined))}"
                )

        DependencyResolver().validate(self.services)
        return self

    @property
    def names(self) -> List[str]:
        return [svc.name for svc in self.services]

    def get(self, name: str) -> ServiceSpec:
        for svc in self.services:
            if svc.name == name:
                return svc
        raise KeyError(name)

    def by_name(self) -> Dict[str, ServiceSpec]:
        return {svc.name: svc for svc in self.services}
