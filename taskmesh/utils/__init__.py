"""Utility helpers."""

from .error_classifier import classify_error
from .serialization import make_json_safe
from .sizing import describe_value, estimate_nbytes

__all__ = ["classify_error", "make_json_safe", "describe_value", "estimate_nbytes"]
