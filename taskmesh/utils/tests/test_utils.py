import json

import numpy as np
import pytest

from taskmesh.common import ErrorCode, TaskStatus
from taskmesh.utils.error_classifier import classify_error
from taskmesh.utils.serialization import make_json_safe
from taskmesh.utils.sizing import describe_value, estimate_nbytes


@pytest.mark.parametrize(
    "error,context,expected",
    [
        (MemoryError(), None, ErrorCode.RESOURCE_ERROR),
        (TimeoutError("slow"), None, ErrorCode.TIMEOUT_ERROR),
        (OSError("Too many open files"), None, ErrorCode.RESOURCE_ERROR),
        ("operation timed out", None, ErrorCode.TIMEOUT_ERROR),
        (ValueError("Can't pickle local object"), None, ErrorCode.DATA_TRANSFER_ERROR),
        (ZeroDivisionError("division by zero"), "execution", ErrorCode.EXECUTION_ERROR),
        (ZeroDivisionError("division by zero"), None, ErrorCode.UNKNOWN_ERROR),
        (None, "execution", ErrorCode.UNKNOWN_ERROR),
    ],
)
def test_classify_error(error, context, expected):
    assert classify_error(error, context) == expected


def test_estimate_nbytes():
    assert estimate_nbytes(np.zeros(10, dtype=np.float64)) == 80
    assert estimate_nbytes(b"abcd") == 4
    assert estimate_nbytes([1, 2, 3]) > 0


def test_describe_value():
    meta = describe_value(np.zeros((2, 3), dtype=np.int32))
    assert meta["shape"] == [2, 3]
    assert meta["dtype"] == "int32"
    assert describe_value([1, 2])["length"] == 2
    assert describe_value(3)["type"] == "builtins.int"


def test_make_json_safe():
    data = make_json_safe({1: {TaskStatus.COMPLETED, TaskStatus.FAILED}, "err": ValueError("x"), "t": (1, 2)})
    json.dumps(data)
    assert data["1"] == ["completed", "failed"]
    assert data["t"] == [1, 2]
    assert data["err"] == "x"
