"""Shared utility functions used across CVPA modules."""
from __future__ import annotations

import json
from typing import Any

_MISSING = object()


def json_parse(value: str | None, default: Any = _MISSING) -> Any:
    """Safely parse a JSON string, returning *default* on failure.

    If no default is given, returns ``{}`` on parse error.
    """
    try:
        return json.loads(value or "")
    except (json.JSONDecodeError, TypeError):
        return {} if default is _MISSING else default


def normalize_mentions(value: Any) -> list[dict[str, Any]]:
    """Coerce a stored mention list (JSON text or native list) into a list of dicts.

    Never raises: unparseable text and unexpected shapes yield ``[]``. Bare
    strings inside the list are treated as ``{"text": <string>}``.
    """
    if isinstance(value, (str, bytes)):
        value = json_parse(value, [])
    if not isinstance(value, list):
        return []
    items: list[dict[str, Any]] = []
    for item in value:
        if isinstance(item, dict):
            items.append(item)
        elif isinstance(item, str):
            items.append({"text": item})
    return items
