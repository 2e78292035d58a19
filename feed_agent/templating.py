"""
Placeholder interpolation for feed templates and ordering expressions.

Only variable lookup is supported: `{{ title }}`, `{{ author.name }}`,
`{{ links.0 }}`. Missing values render as the empty string.
"""

from __future__ import annotations

import json
import re
from typing import Any, Mapping

_PLACEHOLDER_RE = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_]*(?:\.[A-Za-z0-9_]+)*)\s*\}\}")


def lookup(context: Mapping[str, Any], path: str) -> Any:
    """Resolve a dotted path against nested mappings and lists."""
    current: Any = context
    for part in path.split("."):
        if isinstance(current, Mapping):
            if part not in current:
                return None
            current = current[part]
        elif isinstance(current, list) and part.isdigit():
            index = int(part)
            if index >= len(current):
                return None
            current = current[index]
        else:
            return None
    return current


def _to_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True)
    return str(value)


def interpolate(template: str, context: Mapping[str, Any]) -> str:
    return _PLACEHOLDER_RE.sub(lambda match: _to_text(lookup(context, match.group(1))), template)


def interpolate_structure(value: Any, context: Mapping[str, Any]) -> Any:
    """Interpolate every string inside nested dicts/lists; other values pass through."""
    if isinstance(value, str):
        return interpolate(value, context)
    if isinstance(value, dict):
        return {key: interpolate_structure(item, context) for key, item in value.items()}
    if isinstance(value, list):
        return [interpolate_structure(item, context) for item in value]
    return value
