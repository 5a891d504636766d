"""Shared serialization helpers for snapshots and telemetry."""

from __future__ import annotations

from enum import Enum
from typing import Any


def make_json_safe(obj: Any, depth: int = 0, max_depth: int = 10) -> Any:
    """Recursively convert objects to JSON-serializable forms."""
    if depth > max_depth:
        return str(obj)
    if obj is None or isinstance(obj, (str, int, float, bool)):
        return obj
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, dict):
        return {str(k): make_json_safe(v, depth + 1, max_depth) for k, v in obj.items()}
    if isinstance(obj, (list, tuple, set, frozenset)):
        items = sorted(obj, key=repr) if isinstance(obj, (set, frozenset)) else obj
        return [make_json_safe(x, depth + 1, max_depth) for x in items]
    if hasattr(obj, "to_dict"):
        try:
            return make_json_safe(obj.to_dict(), depth + 1, max_depth)
        except Exception:
            return str(obj)
    return str(obj)
