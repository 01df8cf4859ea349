"""
Resolution of runtime parameters and the environment used for interpolation.
"""
import logging
import os
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, Mapping, Optional

from dotenv import dotenv_values

from ..MODELS.stack_definition import ParameterSpec
from ..errors import ValidationError

logger = logging.getLogger(__name__)


class ParameterSource(str, Enum):
    """Where a resolved parameter value came from."""
    FLAG = "flag"
    ENV = "env"
    DEFAULT = "default"


@dataclass(frozen=True)
class ResolvedParameter:
    name: str
    value: str
    source: ParameterSource


class ParameterResolver:
    """
    Resolves declared parameters by precedence: explicit flag > environment variable > default.
    """
    def __init__(self, environ: Optional[Mapping[str, str]] = None):
        """
        :param environ: Environment to read from. Defaults to the process environment.
        """
        self.environ = dict(os.environ) if environ is None else dict(environ)

    def resolve(self, spec: ParameterSpec, flags: Optional[Mapping[str, str]] = None) -> ResolvedParameter:
        """
        Resolves a single parameter. Exactly one source wins.

        :param spec: The declared parameter.
        :param flags: Values passed explicitly on the command line.
        :return: The resolved value and its source.
        :raises ValidationError: If no source provides a value.
        """
        flags = flags or {}
        if spec.name in flags:
            resolved = ResolvedParameter(spec.name, flags[spec.name], ParameterSource.FLAG)
        elif spec.env_name in self.environ:
            resolved = ResolvedParameter(spec.name, self.environ[spec.env_name], ParameterSource.ENV)
        elif spec.default is not None:
            resolved = ResolvedParameter(spec.name, spec.default, ParameterSource.DEFAULT)
        else:
            raise ValidationError(
                f"parameter '{spec.name}' has no value: pass --param {spec.name}=VALUE "
                f"or set {spec.env_name}"
            )

        logger.info("Parameter %s resolved from %s: %s", resolved.name, resolved.source.value, resolved.value)
        return resolved

    def resolve_all(
        self,
        specs: Iterable[ParameterSpec],
        flags: Optional[Mapping[str, str]] = None,
    ) -> Dict[str, ResolvedParameter]:
        """
        Resolves every declared parameter. Flags naming undeclared parameters are rejected.
        """
        specs = list(specs)
        flags = dict(flags or {})
        declared = {p.name for p in specs}
        unknown = sorted(set(flags) - declared)
        if unknown:
            raise ValidationError(f"unknown parameter(s): {', '.join(unknown)}")

        return {p.name: self.resolve(p, flags) for p in specs}

    def interpolation_context(self, resolved: Mapping[str, ResolvedParameter]) -> Dict[str, str]:
        """
        The mapping used for ${VAR} interpolation: the environment, overlaid with parameter values.
        """
        context = dict(self.environ)
        context.update({name: param.value for name, param in resolved.items()})
        return context


def load_environment(env_file: Optional[str] = None) -> Dict[str, str]:
    """
    Merges a .env file with the process environment. Process variables win,
    matching how the container engine's own compose tooling behaves.

    :param env_file: Path to the .env file. Missing files are ignored.
    """
    merged: Dict[str, str] = {}
    if env_file and os.path.exists(env_file):
        file_env = dotenv_values(env_file)
        merged.update({k: v for k, v in file_env.items() if v is not None})
        logger.debug("Loaded %d variable(s) from %s", len(merged), env_file)
    merged.update(os.environ)
    return merged


def parse_flag_pairs(pairs: Iterable[str]) -> Dict[str, str]:
    """
    Turns ``NAME=VALUE`` command-line pairs into a mapping.

    :raises ValidationError: If a pair has no '=' or an empty name.
    """
    result = {}
    for pair in pairs:
        if '=' not in pair:
            raise ValidationError(f"expected NAME=VALUE, got '{pair}'")
        key, value = pair.split('=', 1)
        key = key.strip()
        if not key:
            raise ValidationError(f"expected NAME=VALUE, got '{pair}'")
        result[key] = value
    return result
