"""Distributed arrays partitioned into per-worker blocks."""

from .array import Blocks, DArray, collect, distribute, full, ones, rand, zeros

__all__ = ["Blocks", "DArray", "collect", "distribute", "full", "ones", "rand", "zeros"]
