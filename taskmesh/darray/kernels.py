"""Block-level functions run on workers.

Everything here is module level so process workers can unpickle it.
"""

from __future__ import annotations

import functools
import operator
from typing import Any, Callable, Tuple, Union

import numpy as np

BINARY_OPS = {
    "add": operator.add,
    "sub": operator.sub,
    "mul": operator.mul,
    "truediv": operator.truediv,
}

REDUCTIONS = {
    "sum": (np.sum, operator.add),
    "prod": (np.prod, operator.mul),
    "max": (np.max, max),
    "min": (np.min, min),
}

Reducer = Union[str, Callable[[Any, Any], Any]]


def take_block(block: np.ndarray) -> np.ndarray:
    return np.array(block, copy=True)


def fill_block(shape: Tuple[int, ...], value: Any, dtype: Any) -> np.ndarray:
    return np.full(shape, value, dtype=dtype)


def rand_block(shape: Tuple[int, ...], seed: int, index: int) -> np.ndarray:
    rng = np.random.default_rng([seed, index])
    return rng.random(shape)


def map_block(func: Callable[[np.ndarray], Any], block: np.ndarray) -> np.ndarray:
    return np.asarray(func(block))


def binary_block(op: str, left: Any, right: Any, reverse: bool = False) -> np.ndarray:
    fn = BINARY_OPS[op]
    if reverse:
        left, right = right, left
    return np.asarray(fn(left, right))


def reduce_block(op: Reducer, block: np.ndarray) -> Any:
    if isinstance(op, str):
        return REDUCTIONS[op][0](block)
    return functools.reduce(op, np.ravel(block).tolist())


def combine(op: Reducer, *partials: Any) -> Any:
    """Fold partial results strictly left to right."""
    fn = REDUCTIONS[op][1] if isinstance(op, str) else op
    return functools.reduce(fn, partials)
