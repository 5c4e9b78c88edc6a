"""Pretty-printing of JSON-shaped values with long string leaves truncated."""

from __future__ import annotations

import json
import math
from typing import Any


def truncation_marker(hidden: int) -> str:
    return f"…[+{hidden} chars]"


def truncate_strings(value: Any, limit: int) -> tuple[Any, bool]:
    """Copy ``value`` with every string leaf longer than ``limit`` shortened.

    Object keys are left untouched so the structure is unchanged.
    """

    if isinstance(value, str):
        if len(value) > limit:
            return value[:limit] + truncation_marker(len(value) - limit), True
        return value, False
    if isinstance(value, dict):
        result: dict[Any, Any] = {}
        truncated = False
        for key, item in value.items():
            result[key], cut = truncate_strings(item, limit)
            truncated = truncated or cut
        return result, truncated
    if isinstance(value, (list, tuple)):
        items = []
        truncated = False
        for item in value:
            copy, cut = truncate_strings(item, limit)
            items.append(copy)
            truncated = truncated or cut
        return items, truncated
    return value, False


def render(value: Any, limit: int) -> tuple[str, bool]:
    """Return ``(pretty_json, truncated)``; non-finite floats raise ValueError."""

    shortened, truncated = truncate_strings(value, limit)
    return json.dumps(shortened, indent=2, ensure_ascii=False, allow_nan=False), truncated


def jsonable(value: Any) -> Any:
    """Coerce decoded MessagePack data into something ``json.dumps`` accepts."""

    if isinstance(value, (bytes, bytearray)):
        data = bytes(value)
        try:
            return data.decode("utf-8")
        except UnicodeDecodeError:
            return "0x" + data.hex()
    if isinstance(value, dict):
        return {_key_text(key): jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [jsonable(item) for item in value]
    if isinstance(value, float) and not math.isfinite(value):
        return repr(value)
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    return repr(value)


def _key_text(key: Any) -> str:
    if isinstance(key, str):
        return key
    converted = jsonable(key)
    return converted if isinstance(converted, str) else json.dumps(converted, ensure_ascii=False)
