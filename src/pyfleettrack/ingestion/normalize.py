"""Normalization helpers.

Centralizes defensive parsing of loosely typed producer payloads.
"""

from __future__ import annotations

import math
from collections.abc import Mapping
from typing import Any

_PLACEHOLDERS = frozenset({"", "--"})


def safe_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str) and value.strip() in _PLACEHOLDERS:
        return None
    try:
        result = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(result) or math.isinf(result):
        return None
    return result


def safe_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text if text else None


def first_present(data: Mapping[str, Any], *keys: str) -> Any:
    """Value of the first key in *keys* that is present and not a placeholder."""
    for key in keys:
        value = data.get(key)
        if value is None:
            continue
        if isinstance(value, str) and value.strip() in _PLACEHOLDERS:
            continue
        return value
    return None


def unwrap_payload(data: Mapping[str, Any]) -> Mapping[str, Any]:
    """Unwrap ``{"position": {...}}`` / ``{"data": {...}}`` envelopes.

    Identity keys on the outer object are kept when the inner one lacks them.
    """
    for envelope in ("position", "data", "payload"):
        inner = data.get(envelope)
        if isinstance(inner, Mapping):
            merged = dict(inner)
            for key, value in data.items():
                if key != envelope and key not in merged:
                    merged[key] = value
            return merged
    return data
