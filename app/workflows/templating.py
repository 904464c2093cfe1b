"""``{{field_name}}`` placeholder interpolation for messages and payloads."""

import re
from typing import Any, Mapping

from .conditions import as_text

PLACEHOLDER = re.compile(r"\{\{\s*([A-Za-z0-9_.]+)\s*\}\}")


def lookup(data: Mapping[str, Any], path: str) -> Any:
    """Resolve ``a.b.c`` through nested mappings; missing parts yield None."""
    current: Any = data
    for part in path.split("."):
        if not isinstance(current, Mapping) or part not in current:
            return None
        current = current[part]
    return current


def render(template: str, data: Mapping[str, Any]) -> str:
    """Replace every placeholder with the matching value; unknown fields render empty."""
    return PLACEHOLDER.sub(lambda m: as_text(lookup(data, m.group(1))), template)


def render_value(value: Any, data: Mapping[str, Any]) -> Any:
    """Render strings inside arbitrarily nested dicts and lists."""
    if isinstance(value, str):
        return render(value, data)
    if isinstance(value, dict):
        return {k: render_value(v, data) for k, v in value.items()}
    if isinstance(value, list):
        return [render_value(v, data) for v in value]
    return value
