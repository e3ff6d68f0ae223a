"""
Utilities for string interpolation using environment variables.
"""
import re
from typing import Dict, List

_PATTERN = re.compile(r'\$\$|\$\{([A-Za-z_][A-Za-z0-9_]*)(?::?(-|\+)([^}]*))?\}')


class EnvironmentInterpolator:
    """
    Utility for interpolating environment variables in strings.
    Supports ${VAR}, ${VAR:-default}, ${VAR:+value} and $$ as a literal dollar.
    """
    @staticmethod
    def interpolate(template: str, context: Dict[str, str], strict: bool = True) -> str:
        """
        Interpolates environment variables in the template string using the provided context.

        :param template: The string containing ${VAR} placeholders.
        :param context: The environment variables context.
        :param strict: Raise on unset variables without a default instead of
            substituting an empty string.
        :return: The interpolated string.
        :raises KeyError: If a variable is not found, no default is provided and strict is set.
        """
        def replace(match):
            if match.group(0) == "$$":
                return "$"
            var_name = match.group(1)
            modifier = match.group(2)  # None, '-', or '+'
            alt_value = match.group(3) or ""
            value = context.get(var_name)

            if modifier == '-':
                return value if value else alt_value
            if modifier == '+':
                return alt_value if value else ''
            if value is not None:
                return value
            if strict:
                raise KeyError(f"Variable {var_name} not found in context")
            return ''

        return _PATTERN.sub(replace, template)

    @staticmethod
    def missing(template: str, context: Dict[str, str]) -> List[str]:
        """
        Lists the variables referenced without a default that the context lacks.
        """
        names = []
        for match in _PATTERN.finditer(template):
            name = match.group(1)
            if name and match.group(2) is None and name not in context and name not in names:
                names.append(name)
        return names
