from __future__ import annotations

import json
import math
from typing import Any
import collections.abc

import pystache
import yaml

from hibiki.hibiki_datatypes import is_number, to_display_string
from hibiki.hibiki_errors import exception_message
from hibiki.hibiki_structural import deep_copy


def _to_builtin(obj: Any) -> Any:
    # Plain JSON-able data; special values become their display strings
    if isinstance(obj, list):
        return [_to_builtin(x) for x in obj]
    if isinstance(obj, collections.abc.Mapping):
        return {str(k): _to_builtin(v) for k, v in obj.items()}
    if obj is None or isinstance(obj, (str, bool)):
        return obj
    if is_number(obj):
        return None if math.isnan(obj) or math.isinf(obj) else obj
    return to_display_string(obj)


def to_json(value: Any, *, pretty: bool = False, resolve_lvalues: bool = True) -> str:
    """
    Deep-copies `value` (resolving LValues unless suppressed) and renders it
    as JSON. Special values are rendered as their bracketed display string.
    Raises CycleError for self-referential input.
    """
    built = _to_builtin(deep_copy(value, resolve_lvalues=resolve_lvalues))
    if pretty:
        return json.dumps(built, ensure_ascii=False, indent=2)
    return json.dumps(built, ensure_ascii=False, separators=(",", ":"))


def deserialize(text: str, *, fmt: str = "yaml") -> Any:
    """
    Loads Hibiki data from JSON or YAML text. Parse errors propagate as
    json.JSONDecodeError / yaml.YAMLError.
    """
    f = (fmt or '').lower()
    if f == 'json':
        return json.loads(text)
    if f == 'yaml':
        return yaml.safe_load(text)
    raise ValueError(f"Unsupported data format: {fmt!r}")


def serialize(value: Any, *, fmt: str, pretty: bool = True) -> str:
    """Convert a Hibiki value into text. fmt: 'json' | 'yaml'."""
    f = (fmt or '').lower()
    if f == 'json':
        return to_json(value, pretty=pretty)
    if f == 'yaml':
        return yaml.safe_dump(_to_builtin(deep_copy(value)), sort_keys=False, allow_unicode=True)
    raise ValueError(f"Unsupported data format: {fmt!r}")


def _printf_arg(v: Any) -> Any:
    if v is None:
        return "null"
    if isinstance(v, (str, bool, int, float)):
        return v
    return to_display_string(v)


def format_value(value: Any, fmt: Any) -> str:
    """
    The `format` filter. `json` / `json-compact` render JSON, a template
    containing `{{` is rendered as mustache, anything else is printf-style
    with an array value spreading into the arguments.
    """
    try:
        if fmt is None or fmt == "":
            return to_display_string(value)
        if fmt == "json":
            return to_json(value, pretty=True)
        if fmt == "json-compact":
            return to_json(value)
        if not isinstance(fmt, str):
            fmt = to_display_string(fmt)
        if "{{" in fmt:
            view = _to_builtin(deep_copy(value))
            if not isinstance(view, dict):
                view = {"value": view}
            return pystache.Renderer(escape=lambda u: u).render(fmt, view)
        if isinstance(value, list):
            args = tuple(_printf_arg(v) for v in value)
        else:
            args = (_printf_arg(value),)
        return fmt % args
    except Exception as e:
        return f"format-error[{exception_message(e)}]"


__all__ = [
    "to_json",
    "deserialize",
    "serialize",
    "format_value",
]
