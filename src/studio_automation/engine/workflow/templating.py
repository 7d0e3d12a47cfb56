"""``{{ path }}`` placeholders in step configuration.

Paths are dotted and walk mappings by key and lists by index. A value that is
exactly one placeholder resolves to the referenced value with its type
intact; placeholders embedded in longer strings are substituted as text.
Unresolvable paths render as ``None`` (or an empty string when embedded).
"""

from __future__ import annotations

import json
import re
from collections.abc import Mapping

from pydantic import JsonValue

_PLACEHOLDER = re.compile(r"\{\{\s*([\w.\-]+)\s*\}\}")


def resolve_path(path: str, scope: Mapping[str, JsonValue]) -> JsonValue:
    current: JsonValue = dict(scope)
    for part in path.split("."):
        if isinstance(current, dict):
            if part not in current:
                return None
            current = current[part]
        elif isinstance(current, list):
            try:
                current = current[int(part)]
            except (ValueError, IndexError):
                return None
        else:
            return None
    return current


def _as_text(value: JsonValue) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False)


def render(value: JsonValue, scope: Mapping[str, JsonValue]) -> JsonValue:
    if isinstance(value, str):
        whole = _PLACEHOLDER.fullmatch(value.strip())
        if whole is not None:
            return resolve_path(whole.group(1), scope)
        return _PLACEHOLDER.sub(lambda m: _as_text(resolve_path(m.group(1), scope)), value)
    if isinstance(value, dict):
        return {key: render(item, scope) for key, item in value.items()}
    if isinstance(value, list):
        return [render(item, scope) for item in value]
    return value


def render_config(
    config: Mapping[str, JsonValue], scope: Mapping[str, JsonValue]
) -> dict[str, JsonValue]:
    return {key: render(item, scope) for key, item in config.items()}
