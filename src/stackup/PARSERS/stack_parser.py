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
Parser for stack definition YAML files.
"""
import logging
import os
import re
import shlex
from collections.abc import Hashable
from typing import Dict, Any, List, Mapping, Optional

import pydantic
import yaml

from ..MODELS.stack_definition import StackDefinition, ParameterSpec, ReadinessSettings
from ..MODELS.service_spec import ServiceSpec, RestartPolicy, VolumeBinding
from ..MANAGERS.parameter_resolver import ParameterResolver
from ..UTILS.string_interpolation import EnvironmentInterpolator
from ..errors import ValidationError, StackError

logger = logging.getLogger(__name__)

_MERGE_TAG = 'tag:yaml.org,2002:merge'


class _UniqueKeyLoader(yaml.SafeLoader):
    """
    SafeLoader that refuses duplicate mapping keys instead of keeping the last one.
    """
    def construct_mapping(self, node, deep=False):
        if isinstance(node, yaml.MappingNode):
            seen = set()
            for key_node, _ in node.value:
                if key_node.tag == _MERGE_TAG:
                    continue
                key = self.construct_object(key_node, deep=deep)
                if not isinstance(key, Hashable):
                    continue
                if key in seen:
                    raise yaml.constructor.ConstructorError(
                        "while constructing a mapping", node.start_mark,
                        f"found duplicate key '{key}'", key_node.start_mark)
                seen.add(key)
        return super().construct_mapping(node, deep=deep)


def project_name_from(value: str) -> str:
    """
    Normalises a directory or user supplied name into a container name prefix.
    """
    name = re.sub(r'[^a-z0-9_.-]+', '-', value.lower()).strip('-_.')
    return name or 'stack'


class StackParser:
    """
    Parser for stack.yml files.
    """
    def __init__(self, context: Optional[Mapping[str, str]] = None):
        """
        Initializes the parser with an optional environment context for parameters and interpolation.

        :param context: A dictionary of environment variables. Defaults to the process environment.
        """
        self.context = dict(os.environ) if context is None else dict(context)

    def parse(self, stack_path: str, flags: Optional[Mapping[str, str]] = None,
              project: Optional[str] = None) -> StackDefinition:
        """
        Parses a stack file from a path. Relative volume paths resolve against the file's directory.

        :param stack_path: Path to the stack file.
        :param flags: Parameter values passed explicitly on the command line.
        :param project: Project name override.
        :return: Parsed configuration.
        """
        with open(stack_path, 'r') as f:
            content = f.read()
        base_dir = os.path.dirname(os.path.abspath(stack_path))
        return self.parse_from_string(content, flags=flags, project=project, base_dir=base_dir)

    def parse_from_string(self, content: str, flags: Optional[Mapping[str, str]] = None,
                          project: Optional[str] = None, base_dir: str = ".") -> StackDefinition:
        """
        Parses a stack file from a string.

        :param content: YAML content of the stack file.
        :return: Parsed configuration.
        :raises ValidationError: On malformed YAML or an invalid definition.
        """
        try:
            data = yaml.load(content, Loader=_UniqueKeyLoader)
        except yaml.YAMLError as e:
            raise ValidationError(f"invalid YAML: {e}") from e
        return self.parse_data(data, flags=flags, project=project, base_dir=base_dir)

    def parse_data(self, data: Any, flags: Optional[Mapping[str, str]] = None,
                   project: Optional[str] = None, base_dir: str = ".") -> StackDefinition:
        """
        Builds a StackDefinition from already-loaded data. Has no side effects.

        :param data: The document as produced by yaml.safe_load.
        :param flags: Parameter values passed explicitly on the command line.
        :param project: Project name override.
        :param base_dir: Directory that relative host paths are resolved against.
        :return: The validated definition.
        :raises ValidationError: If the definition breaks any invariant.
        """
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ValidationError("stack file must be a mapping at the top level")

        try:
            parameters = self._parse_parameters(data.get('parameters'))
            resolver = ParameterResolver(self.context)
            resolved = resolver.resolve_all(parameters, flags)
            context = resolver.interpolation_context(resolved)

            body = {k: v for k, v in data.items() if k != 'parameters'}
            body = EnvironmentInterpolator.interpolate_tree(body, context)

            services = [self._parse_service(name, spec, context)
                        for name, spec in self._service_entries(body.get('services'))]
            if not services:
                raise ValidationError("stack defines no services")

            readiness = body.get('readiness') or {}
            if not isinstance(readiness, dict):
                raise ValidationError("'readiness' must be a mapping")

            return StackDefinition(
                project=project_name_from(project or str(body.get('name') or os.path.basename(os.path.abspath(base_dir)))),
                services=tuple(services),
                profiles=frozenset(str(p) for p in self._to_list(body.get('profiles'))),
                parameters=tuple(parameters),
                host=str(body.get('host') or '127.0.0.1'),
                readiness=ReadinessSettings(**readiness),
                base_dir=os.path.abspath(base_dir),
            )
        except StackError:
            raise
        except pydantic.ValidationError as e:
            raise ValidationError(_describe(e)) from e
        except KeyError as e:
            # InterpolationError for ${VAR:?message}
            raise ValidationError(str(e)) from e
        except (ValueError, TypeError) as e:
            raise ValidationError(str(e)) from e

    def _service_entries(self, services: Any) -> List[tuple]:
        """
        Accepts either a mapping of name -> spec, or a list of specs carrying 'name'.
        """
        if services is None:
            return []
        if isinstance(services, dict):
            return list(services.items())
        if isinstance(services, list):
            entries = []
            seen = set()
            for spec in services:
                if not isinstance(spec, dict) or not spec.get('name'):
                    raise ValidationError("every entry of a 'services' list needs a 'name'")
                name = str(spec['name'])
                if name in seen:
                    raise ValidationError(f"duplicate service name '{name}'", service=name)
                seen.add(name)
                entries.append((name, {k: v for k, v in spec.items() if k != 'name'}))
            return entries
        raise ValidationError("'services' must be a mapping or a list")

    def _parse_parameters(self, spec: Any) -> List[ParameterSpec]:
        """
        Parses the 'parameters' section. A bare string value is taken as the default.
        """
        if not spec:
            return []
        if not isinstance(spec, dict):
            raise ValidationError("'parameters' must be a mapping")
        params = []
        for name, value in spec.items():
            if value is None:
                value = {}
            elif not isinstance(value, dict):
                value = {'default': value}
            default = value.get('default')
            params.append(ParameterSpec(
                name=str(name),
                env=value.get('env'),
                default=None if default is None else str(default),
                description=str(value.get('description', '')),
            ))
        return params

    def _parse_service(self, name: Any, spec: Any, context: Dict[str, str]) -> ServiceSpec:
        """
        Parses a single service definition.

        :param name: The name of the service.
        :param spec: The service specification dictionary.
        :param context: Environment used to fill variables declared without a value.
        :return: A ServiceSpec instance.
        """
        name = str(name)
        if not isinstance(spec, dict):
            raise ValidationError("service definition must be a mapping", service=name)

        try:
            port, host_port = self._parse_port(spec.get('port', spec.get('ports')))

            # Volumes
            volumes = []
            for v in self._to_list(spec.get('volumes')):
                if isinstance(v, str):
                    parts = v.split(':')
                    if len(parts) == 2:
                        volumes.append(VolumeBinding(source=parts[0], target=parts[1]))
                    elif len(parts) == 3 and parts[2] in ('ro', 'rw'):
                        volumes.append(VolumeBinding(source=parts[0], target=parts[1], read_only=(parts[2] == 'ro')))
                    else:
                        raise ValueError(f"volume '{v}' must be SOURCE:TARGET[:ro]")
                elif isinstance(v, dict):
                    volumes.append(VolumeBinding(
                        source=str(v.get('source') or ''),
                        target=str(v.get('target') or ''),
                        read_only=bool(v.get('read_only', False)),
                    ))
                else:
                    raise ValueError(f"unsupported volume entry: {v!r}")

            depends_on = spec.get('depends_on', [])
            if isinstance(depends_on, dict):
                depends_on = list(depends_on.keys())

            return ServiceSpec(
                name=name,
                image=str(spec.get('image') or ''),
                port=port,
                host_port=host_port,
                environment=self._parse_environment(spec.get('environment'), context),
                volumes=tuple(volumes),
                profiles=frozenset(str(p) for p in self._to_list(spec.get('profiles'))),
                restart=self._parse_restart(spec.get('restart')),
                depends_on=tuple(str(d) for d in self._to_list(depends_on)),
                command=self._parse_command(spec.get('command')),
            )
        except StackError as e:
            e.service = e.service or name
            raise
        except pydantic.ValidationError as e:
            raise ValidationError(_describe(e), service=name) from e
        except (ValueError, TypeError, KeyError) as e:
            raise ValidationError(str(e), service=name) from e

    def _parse_port(self, value: Any):
        """
        Accepts 5432, "5432", "15432:5432" or {target: 5432, published: 15432}.
        A one-element list is unwrapped.

        :return: (container_port, host_port or None)
        """
        if isinstance(value, list):
            if len(value) != 1:
                raise ValueError("exactly one port must be exposed")
            value = value[0]
        if value is None or isinstance(value, bool):
            raise ValueError("an exposed 'port' is required")
        if isinstance(value, int):
            return value, None
        if isinstance(value, dict):
            published = value.get('published')
            return int(value['target']), int(published) if published is not None else None
        parts = str(value).strip().split(':')
        if len(parts) == 1:
            return int(parts[0]), None
        if len(parts) == 2:
            return int(parts[1]), int(parts[0])
        raise ValueError(f"port '{value}' must be PORT or HOST:CONTAINER")

    def _parse_environment(self, env_spec: Any, context: Dict[str, str]) -> Dict[str, str]:
        """
        Variables declared without a value are taken from the context, and dropped if unset there.
        """
        environment: Dict[str, Optional[str]] = {}
        if env_spec is None:
            return {}
        if isinstance(env_spec, list):
            for e in env_spec:
                e = str(e)
                if '=' in e:
                    k, v = e.split('=', 1)
                    environment[k] = v
                else:
                    environment[e] = None
        elif isinstance(env_spec, dict):
            environment = {str(k): (None if v is None else _scalar(v)) for k, v in env_spec.items()}
        else:
            raise ValueError("'environment' must be a mapping or a list")

        resolved = {}
        for key, value in environment.items():
            if value is None:
                if key in context:
                    resolved[key] = context[key]
                else:
                    logger.debug("Environment variable %s not set, omitting", key)
                continue
            resolved[key] = value
        return resolved

    def _parse_restart(self, value: Any) -> RestartPolicy:
        # YAML reads an unquoted `no` as False
        if value is None or value is False:
            return RestartPolicy.NEVER
        value = str(value).strip().lower()
        if value == 'never':
            return RestartPolicy.NEVER
        try:
            return RestartPolicy(value)
        except ValueError:
            allowed = ', '.join(p.value for p in RestartPolicy)
            raise ValueError(f"restart policy '{value}' must be one of: {allowed}") from None

    def _parse_command(self, value: Any) -> List[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return shlex.split(value)
        return [str(v) for v in value]

    def _to_list(self, val: Any) -> List[Any]:
        """
        Helper to ensure a value is a list.

        :param val: The value to convert.
        :return: A list.
        """
        if val is None:
            return []
        if isinstance(val, (str, dict)):
            return [val]
        return list(val)


def _scalar(value: Any) -> str:
    if isinstance(value, bool):
        return 'true' if value else 'false'
    return str(value)


def _describe(error: pydantic.ValidationError) -> str:
    """
    Flattens a pydantic error into one readable line.
    """
    parts = []
    for err in error.errors():
        loc = '.'.join(str(p) for p in err.get('loc', ()))
        msg = err.get('msg', '').replace('Value error, ', '')
        parts.append(f"{loc}: {msg}" if loc else msg)
    return '; '.join(parts)
