"""Placeholder interpolation and dot-path extraction for skill templates."""

from __future__ import annotations

import json
import re
import shlex
from typing import Any, Mapping

_PLACEHOLDER = re.compile(r"\{(\w+)\}")
_BRACKET = re.compile(r"\[(\d+|\*|\?)\]")

_MISSING = object()


def extract_by_path(value: Any, path: str | None) -> Any:
    """Walk ``foo.bar``, ``foo[0].bar``, ``foo[*].bar`` (map) and ``foo[?].bar`` (first hit).

    Returns ``None`` when any segment is missing.
    """
    if not path:
        return value
    segments = [seg for seg in _BRACKET.sub(r".\1", path).split(".") if seg != ""]
    result = _walk(value, segments)
    return None if result is _MISSING else result


def _walk(current: Any, segments: list[str]) -> Any:
    for index, segment in enumerate(segments):
        if current is None:
            return _MISSING
        rest = segments[index + 1 :]
        if segment == "*":
            if not isinstance(current, list):
                return _MISSING
            if not rest:
                return current
            mapped = [_walk(element, rest) for element in current]
            return [None if item is _MISSING else item for item in mapped]
        if segment == "?":
            if not isinstance(current, list):
                return _MISSING
            if not rest:
                return current[0] if current else _MISSING
            for element in current:
                found = _walk(element, rest)
                if found is not _MISSING and found is not None:
                    return found
            return _MISSING
        if isinstance(current, list):
            if not segment.isdigit() or int(segment) >= len(current):
                return _MISSING
            current = current[int(segment)]
            continue
        if isinstance(current, Mapping):
            if segment not in current:
                return _MISSING
            current = current[segment]
            continue
        return _MISSING
    return current


def _format_value(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    return json.dumps(value)


def interpolate_string(template: str, variables: Mapping[str, Any]) -> str:
    def _replace(match: re.Match[str]) -> str:
        value = variables.get(match.group(1))
        if value is None:
            return ""
        return _format_value(value)

    return _PLACEHOLDER.sub(_replace, template)


def interpolate_shell(template: str, variables: Mapping[str, Any]) -> str:
    """Interpolate into a shell command line; every substituted value is one quoted word."""

    def _replace(match: re.Match[str]) -> str:
        value = variables.get(match.group(1))
        return shlex.quote("" if value is None else _format_value(value))

    return _PLACEHOLDER.sub(_replace, template)


def interpolate_template(template: str, fields: Mapping[str, Any]) -> str:
    """Like ``interpolate_string`` but joins lists with ``", "`` for readable output."""

    def _replace(match: re.Match[str]) -> str:
        value = fields.get(match.group(1))
        if value is None:
            return ""
        if isinstance(value, list):
            return ", ".join(_format_value(item) for item in value)
        return _format_value(value)

    return _PLACEHOLDER.sub(_replace, template)


def interpolate_body(template: Any, variables: Mapping[str, Any]) -> Any:
    if isinstance(template, str):
        return interpolate_string(template, variables)
    if isinstance(template, list):
        return [interpolate_body(item, variables) for item in template]
    if isinstance(template, dict):
        return {key: interpolate_body(item, variables) for key, item in template.items()}
    return template
