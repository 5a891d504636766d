"""Error classification utilities for worker-side failures."""

import re
from typing import Optional, Union

from taskmesh.common import ErrorCode

_RESOURCE_PATTERNS = [
    r"out of memory",
    r"cannot allocate memory",
    r"memoryerror",
    r"too many open files",
    r"no space left on device",
    r"resource temporarily unavailable",
]

_TIMEOUT_PATTERNS = [
    r"timeout",
    r"timed out",
    r"time.*limit.*exceeded",
    r"deadline.*exceeded",
]

_TRANSFER_PATTERNS = [
    r"pickl",
    r"serializ",
    r"can't get attribute",
    r"broken pipe",
    r"connection.*(reset|refused|closed)",
]


def classify_error(error: Union[BaseException, str, None], context: Optional[str] = None) -> ErrorCode:
    """Classify an exception (or its message) raised by a task into an error code."""
    if error is None:
        return ErrorCode.UNKNOWN_ERROR

    if isinstance(error, BaseException):
        if isinstance(error, MemoryError):
            return ErrorCode.RESOURCE_ERROR
        if isinstance(error, TimeoutError):
            return ErrorCode.TIMEOUT_ERROR
        error_message = f"{type(error).__name__}: {error}"
    else:
        error_message = str(error)

    if not error_message:
        return ErrorCode.UNKNOWN_ERROR

    error_lower = error_message.lower()

    if any(re.search(pattern, error_lower) for pattern in _RESOURCE_PATTERNS):
        return ErrorCode.RESOURCE_ERROR

    if any(re.search(pattern, error_lower) for pattern in _TIMEOUT_PATTERNS):
        return ErrorCode.TIMEOUT_ERROR

    if any(re.search(pattern, error_lower) for pattern in _TRANSFER_PATTERNS):
        return ErrorCode.DATA_TRANSFER_ERROR

    if context == "transfer":
        return ErrorCode.DATA_TRANSFER_ERROR
    if context == "execution":
        return ErrorCode.EXECUTION_ERROR

    return ErrorCode.UNKNOWN_ERROR
