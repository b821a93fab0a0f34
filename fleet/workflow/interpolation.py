"""Placeholder substitution over structured values.

Substitution always builds new containers; the input is never mutated.
"""
from __future__ import annotations

import re
from typing import Any, Mapping, Pattern, Tuple

VARIABLE_PATTERN = re.compile(r"\$\{([\w.]+)\}")
PARAMETER_PATTERN = re.compile(r"\{\{\s*([\w.]+)\s*\}\}")

_MISSING = object()


def lookup(values: Mapping[str, Any], path: str) -> Tuple[bool, Any]:
    """Resolve a dotted ``path`` through nested mappings and sequences."""
    if path in values:
        return True, values[path]
    current: Any = values
    for part in path.split("."):
        if isinstance(current, Mapping):
            current = current.get(part, _MISSING)
        elif isinstance(current, (list, tuple)) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            return False, None
        if current is _MISSING:
            return False, None
    return True, current


def interpolate(value: Any, variables: Mapping[str, Any], pattern: Pattern[str] = VARIABLE_PATTERN) -> Any:
    """Replace placeholders in every string inside ``value``.

    A string made of exactly one placeholder takes the variable's value with
    its type intact. Placeholders embedded in longer strings are rendered with
    ``str``. Unknown names are left as written.
    """
    if isinstance(value, str):
        whole = pattern.fullmatch(value)
        if whole is not None:
            found, resolved = lookup(variables, whole.group(1))
            return resolved if found else value

        def render(match: "re.Match[str]") -> str:
            found, resolved = lookup(variables, match.group(1))
            return str(resolved) if found else match.group(0)

        return pattern.sub(render, value)
    if isinstance(value, Mapping):
        return {key: interpolate(item, variables, pattern) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [interpolate(item, variables, pattern) for item in value]
    return value


def substitute_parameters(value: Any, parameters: Mapping[str, Any]) -> Any:
    """Template flavour of ``interpolate`` using ``{{name}}`` placeholders."""
    return interpolate(value, parameters, PARAMETER_PATTERN)
