"""Byte-weight and metadata estimates for values held by workers."""

from __future__ import annotations

import sys
from typing import Any, Dict


def estimate_nbytes(value: Any) -> int:
    nbytes = getattr(value, "nbytes", None)
    if isinstance(nbytes, int):
        return nbytes
    if isinstance(value, (bytes, bytearray, memoryview)):
        return len(value)
    if isinstance(value, (list, tuple)):
        return sys.getsizeof(value) + sum(estimate_nbytes(v) for v in value[:1024])
    if isinstance(value, dict):
        return sys.getsizeof(value) + sum(
            estimate_nbytes(k) + estimate_nbytes(v) for k, v in list(value.items())[:1024]
        )
    try:
        return sys.getsizeof(value)
    except TypeError:
        return 0


def describe_value(value: Any) -> Dict[str, Any]:
    """Type/shape metadata recorded with a chunk."""
    meta: Dict[str, Any] = {"type": f"{type(value).__module__}.{type(value).__qualname__}"}
    shape = getattr(value, "shape", None)
    if isinstance(shape, tuple):
        meta["shape"] = list(shape)
    dtype = getattr(value, "dtype", None)
    if dtype is not None:
        meta["dtype"] = str(dtype)
    elif isinstance(value, (list, tuple, dict, str, bytes)):
        meta["length"] = len(value)
    return meta
