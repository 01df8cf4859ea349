"""
Utilities for string interpolation using environment variables.
"""
import logging
import re
from typing import Dict, Any

logger = logging.getLogger(__name__)


class InterpolationError(KeyError):
    """Raised for ${VAR:?message} when VAR is unset or empty."""

    def __str__(self) -> str:
        return self.args[0] if self.args else ""


class EnvironmentInterpolator:
    """
    Utility for interpolating environment variables in strings.
    Supports ${VAR}, ${VAR:-default}, ${VAR:+value} and ${VAR:?message}.
    """
    # Group 1: VAR name
    # Group 2: -, + or ?
    # Group 3: default, value or message
    PATTERN = re.compile(r'\$\{([^}:]+)(?::(-|\+|\?)([^}]*))?\}')

    @staticmethod
    def interpolate(template: str, context: Dict[str, str]) -> str:
        """
        Interpolates environment variables in the template string using the provided context.

        :param template: The string containing ${VAR} placeholders.
        :param context: The environment variables context.
        :return: The interpolated string.
        :raises InterpolationError: If a ${VAR:?message} variable is unset or empty.
        """
        def replace(match):
            """
            Internal replacement function for re.sub.
            """
            var_name = match.group(1).strip()
            modifier = match.group(2)
            alt_value = match.group(3)

            value = context.get(var_name)

            if modifier == '-':
                # ${VAR:-default} -> use default if VAR is unset or empty
                return value if value else alt_value
            elif modifier == '+':
                # ${VAR:+value} -> use alt_value if VAR is set and not empty, else empty
                return alt_value if value else ''
            elif modifier == '?':
                if not value:
                    raise InterpolationError(alt_value or f"Variable {var_name} is required")
                return value
            else:
                if value is not None:
                    return value
                logger.warning("Variable %s is not set, substituting an empty string", var_name)
                return ''

        return EnvironmentInterpolator.PATTERN.sub(replace, template)

    @classmethod
    def interpolate_tree(cls, node: Any, context: Dict[str, str]) -> Any:
        """
        Interpolates every string inside a parsed YAML tree. Mapping keys are left as-is.

        :param node: A scalar, list or dict as produced by yaml.safe_load.
        :param context: The environment variables context.
        :return: A new tree with strings interpolated.
        """
        if isinstance(node, str):
            return cls.interpolate(node, context)
        if isinstance(node, dict):
            return {k: cls.interpolate_tree(v, context) for k, v in node.items()}
        if isinstance(node, list):
            return [cls.interpolate_tree(v, context) for v in node]
        return node
