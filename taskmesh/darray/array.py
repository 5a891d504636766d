"""Distributed arrays built from per-block tasks.

Blocks tile the global index space in row-major order. Along each dimension
every block has the requested size except the last, which holds the
remainder. Reductions reduce each block on its worker, then fold the
partial results strictly left to right in row-major block order, so results
are reproducible for a given partitioning.
"""

from __future__ import annotations

import itertools
import math
from typing import Any, Callable, Dict, Iterator, Optional, Sequence, Tuple

import numpy as np

from taskmesh.core.handles import TaskHandle
from taskmesh.darray import kernels
from taskmesh.errors import PartitionError
from taskmesh.runtime import Context, get_context

BlockIndex = Tuple[int, ...]


class Blocks:
    """Block partition: the block shape along each dimension."""

    def __init__(self, *block_shape: int):
        if len(block_shape) == 1 and isinstance(block_shape[0], (tuple, list)):
            block_shape = tuple(block_shape[0])
        if not block_shape:
            raise PartitionError("Blocks needs at least one dimension")
        for size in block_shape:
            if not isinstance(size, (int, np.integer)) or isinstance(size, bool) or size <= 0:
                raise PartitionError(f"Block sizes must be positive integers, got {block_shape}")
        self.block_shape: Tuple[int, ...] = tuple(int(s) for s in block_shape)

    @property
    def ndim(self) -> int:
        return len(self.block_shape)

    def grid(self, shape: Sequence[int]) -> Tuple[int, ...]:
        """Number of blocks along each dimension of ``shape``."""
        self._check(shape)
        return tuple(max(1, math.ceil(n / b)) for n, b in zip(shape, self.block_shape))

    def subdomains(self, shape: Sequence[int]) -> Dict[BlockIndex, Tuple[slice, ...]]:
        """Slices of every block, keyed by block index in row-major order."""
        grid = self.grid(shape)
        domains: Dict[BlockIndex, Tuple[slice, ...]] = {}
        for index in itertools.product(*(range(g) for g in grid)):
            domains[index] = tuple(
                slice(i * b, min((i + 1) * b, n)) for i, b, n in zip(index, self.block_shape, shape)
            )
        return domains

    def _check(self, shape: Sequence[int]) -> None:
        if len(shape) != self.ndim:
            raise PartitionError(
                f"Partition {self.block_shape} has rank {self.ndim} but the array has shape {tuple(shape)}"
            )
        if any(n < 0 for n in shape):
            raise PartitionError(f"Invalid shape {tuple(shape)}")

    def __eq__(self, other: object) -> bool:
        return isinstance(other, Blocks) and other.block_shape == self.block_shape

    def __hash__(self) -> int:
        return hash(self.block_shape)

    def __repr__(self) -> str:
        return f"Blocks{self.block_shape}"


def _coerce_blocks(blocks: Any) -> Blocks:
    if isinstance(blocks, Blocks):
        return blocks
    if isinstance(blocks, (tuple, list)):
        return Blocks(*blocks)
    raise PartitionError(f"Expected Blocks or a tuple of block sizes, got {type(blocks).__name__}")


def _shape_of(domain: Tuple[slice, ...]) -> Tuple[int, ...]:
    return tuple(s.stop - s.start for s in domain)


class DArray:
    """An array held as a grid of block tasks."""

    def __init__(
        self,
        shape: Sequence[int],
        blocks: Blocks,
        chunks: Dict[BlockIndex, TaskHandle],
        context: Context,
        dtype: Any = None,
    ):
        self.shape = tuple(int(n) for n in shape)
        self.blocks = blocks
        self.chunks = chunks
        self.context = context
        self.dtype = np.dtype(dtype) if dtype is not None else None
        expected = set(blocks.subdomains(self.shape))
        if set(chunks) != expected:
            raise PartitionError("Chunks do not tile the array exactly")

    @property
    def ndim(self) -> int:
        return len(self.shape)

    @property
    def grid(self) -> Tuple[int, ...]:
        return self.blocks.grid(self.shape)

    def subdomains(self) -> Dict[BlockIndex, Tuple[slice, ...]]:
        return self.blocks.subdomains(self.shape)

    def indices(self) -> Iterator[BlockIndex]:
        """Block indices in row-major order."""
        return iter(sorted(self.chunks))

    def collect(self, timeout: Optional[float] = None) -> np.ndarray:
        """Fetch every block and assemble the full array locally."""
        domains = self.subdomains()
        parts = {index: np.asarray(self.chunks[index].fetch(timeout=timeout)) for index in self.indices()}
        dtype = self.dtype if self.dtype is not None else np.result_type(*parts.values())
        out = np.empty(self.shape, dtype=dtype)
        for index, part in parts.items():
            domain = domains[index]
            if part.shape != _shape_of(domain):
                raise PartitionError(f"Block {index} has shape {part.shape}, expected {_shape_of(domain)}")
            out[domain] = part
        return out

    def _derive(self, chunks: Dict[BlockIndex, TaskHandle], dtype: Any = None) -> "DArray":
        return DArray(self.shape, self.blocks, chunks, self.context, dtype=dtype)

    def map(self, func: Callable[[np.ndarray], Any]) -> "DArray":
        """Apply ``func`` to every block; it must preserve the block shape."""
        chunks = {
            index: self.context.spawn(kernels.map_block, func, handle)
            for index, handle in sorted(self.chunks.items())
        }
        return self._derive(chunks)

    def _binary(self, op: str, other: Any, reverse: bool = False) -> "DArray":
        if isinstance(other, DArray):
            if other.shape != self.shape or other.blocks != self.blocks:
                raise PartitionError(
                    f"Cannot combine {self.shape}/{self.blocks} with {other.shape}/{other.blocks}"
                )
            chunks = {
                index: self.context.spawn(kernels.binary_block, op, handle, other.chunks[index], reverse)
                for index, handle in sorted(self.chunks.items())
            }
        elif np.isscalar(other):
            chunks = {
                index: self.context.spawn(kernels.binary_block, op, handle, other, reverse)
                for index, handle in sorted(self.chunks.items())
            }
        else:
            return NotImplemented
        return self._derive(chunks)

    def __add__(self, other):
        return self._binary("add", other)

    def __radd__(self, other):
        return self._binary("add", other, reverse=True)

    def __sub__(self, other):
        return self._binary("sub", other)

    def __rsub__(self, other):
        return self._binary("sub", other, reverse=True)

    def __mul__(self, other):
        return self._binary("mul", other)

    def __rmul__(self, other):
        return self._binary("mul", other, reverse=True)

    def __truediv__(self, other):
        return self._binary("truediv", other)

    def __rtruediv__(self, other):
        return self._binary("truediv", other, reverse=True)

    def reduce(self, op: kernels.Reducer) -> TaskHandle:
        """Reduce every block on its worker, then fold the partials in row-major order."""
        if isinstance(op, str) and op not in kernels.REDUCTIONS:
            raise ValueError(f"Unknown reduction {op!r}; expected one of {sorted(kernels.REDUCTIONS)}")
        partials = [self.context.spawn(kernels.reduce_block, op, self.chunks[index]) for index in self.indices()]
        return self.context.spawn(kernels.combine, op, *partials)

    def sum(self) -> TaskHandle:
        return self.reduce("sum")

    def prod(self) -> TaskHandle:
        return self.reduce("prod")

    def max(self) -> TaskHandle:
        return self.reduce("max")

    def min(self) -> TaskHandle:
        return self.reduce("min")

    def __repr__(self) -> str:
        return f"DArray(shape={self.shape}, blocks={self.blocks.block_shape}, grid={self.grid})"


def distribute(array: Any, blocks: Any, context: Optional[Context] = None) -> DArray:
    """Split a local array into blocks, one task per block."""
    ctx = context or get_context()
    arr = np.asarray(array)
    if arr.ndim == 0:
        raise PartitionError("Cannot distribute a zero-dimensional array")
    layout = _coerce_blocks(blocks)
    chunks = {
        index: ctx.spawn(kernels.take_block, np.ascontiguousarray(arr[domain]))
        for index, domain in layout.subdomains(arr.shape).items()
    }
    return DArray(arr.shape, layout, chunks, ctx, dtype=arr.dtype)


def _allocate(
    shape: Sequence[int],
    blocks: Any,
    make: Callable[[BlockIndex, Tuple[int, ...], int], Tuple[Callable[..., Any], tuple]],
    dtype: Any,
    context: Optional[Context],
) -> DArray:
    ctx = context or get_context()
    shape = tuple(int(n) for n in shape)
    layout = _coerce_blocks(blocks)
    chunks: Dict[BlockIndex, TaskHandle] = {}
    for linear, (index, domain) in enumerate(layout.subdomains(shape).items()):
        func, args = make(index, _shape_of(domain), linear)
        chunks[index] = ctx.spawn(func, *args)
    return DArray(shape, layout, chunks, ctx, dtype=dtype)


def full(shape: Sequence[int], value: Any, blocks: Any, dtype: Any = None, context: Optional[Context] = None) -> DArray:
    dtype = np.dtype(dtype) if dtype is not None else np.asarray(value).dtype
    return _allocate(
        shape,
        blocks,
        lambda index, block_shape, linear: (kernels.fill_block, (block_shape, value, dtype)),
        dtype,
        context,
    )


def zeros(shape: Sequence[int], blocks: Any, dtype: Any = float, context: Optional[Context] = None) -> DArray:
    return full(shape, 0, blocks, dtype=dtype, context=context)


def ones(shape: Sequence[int], blocks: Any, dtype: Any = float, context: Optional[Context] = None) -> DArray:
    return full(shape, 1, blocks, dtype=dtype, context=context)


def rand(shape: Sequence[int], blocks: Any, seed: Optional[int] = None, context: Optional[Context] = None) -> DArray:
    """Uniform [0, 1) values; block ``k`` in row-major order draws from ``(seed, k)``."""
    if seed is None:
        seed = int(np.random.SeedSequence().entropy % (2**63))
    return _allocate(
        shape,
        blocks,
        lambda index, block_shape, linear: (kernels.rand_block, (block_shape, seed, linear)),
        np.float64,
        context,
    )


def collect(darray: DArray, timeout: Optional[float] = None) -> np.ndarray:
    return darray.collect(timeout=timeout)


__all__ = ["Blocks", "DArray", "distribute", "collect", "zeros", "ones", "full", "rand"]
