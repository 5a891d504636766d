import numpy as np
import pytest

from taskmesh import ExecutionError
from taskmesh.darray import Blocks, DArray, collect, distribute, full, ones, rand, zeros
from taskmesh.errors import PartitionError


def double(block):
    return block * 2


def shrink(block):
    return block[:1]


def test_blocks_grid_and_subdomains():
    blocks = Blocks(2, 3)
    assert blocks.grid((4, 7)) == (2, 3)
    domains = blocks.subdomains((4, 7))
    assert list(domains) == [(0, 0), (0, 1), (0, 2), (1, 0), (1, 1), (1, 2)]
    assert domains[(1, 2)] == (slice(2, 4), slice(6, 7))
    assert Blocks((2, 3)) == blocks


@pytest.mark.parametrize("bad", [(), (0, 2), (-1,), (1.5,), (True,)])
def test_invalid_block_shapes(bad):
    with pytest.raises(PartitionError):
        Blocks(*bad)


def test_rank_mismatch_is_rejected():
    with pytest.raises(PartitionError):
        Blocks(2).grid((4, 4))


def test_distribute_and_collect_exact(ctx):
    source = np.arange(16, dtype=np.int32).reshape(4, 4)
    arr = distribute(source, Blocks(2, 2), context=ctx)
    assert arr.grid == (2, 2)
    assert len(arr.chunks) == 4
    out = arr.collect(timeout=10)
    assert out.dtype == np.int32
    np.testing.assert_array_equal(out, source)


def test_remainder_blocks(ctx):
    source = np.arange(35.0).reshape(5, 7)
    arr = distribute(source, (2, 3), context=ctx)
    assert arr.grid == (3, 3)
    assert arr.chunks[(2, 2)].fetch(timeout=10).shape == (1, 1)
    np.testing.assert_array_equal(collect(arr, timeout=10), source)


def test_distribute_rejects_scalars(ctx):
    with pytest.raises(PartitionError):
        distribute(np.float64(1.0), Blocks(1), context=ctx)


def test_constructors(ctx):
    np.testing.assert_array_equal(zeros((3, 4), (2, 2), context=ctx).collect(timeout=10), np.zeros((3, 4)))
    np.testing.assert_array_equal(ones((3,), (2,), dtype=np.int64, context=ctx).collect(timeout=10), [1, 1, 1])
    filled = full((2, 2), 7, (1, 2), context=ctx).collect(timeout=10)
    assert filled.dtype == np.asarray(7).dtype
    np.testing.assert_array_equal(filled, np.full((2, 2), 7))


def test_rand_is_reproducible_for_a_seed(ctx):
    a = rand((6, 6), (3, 3), seed=42, context=ctx).collect(timeout=10)
    b = rand((6, 6), (3, 3), seed=42, context=ctx).collect(timeout=10)
    c = rand((6, 6), (3, 3), seed=43, context=ctx).collect(timeout=10)
    np.testing.assert_array_equal(a, b)
    assert not np.array_equal(a, c)
    assert ((a >= 0) & (a < 1)).all()


def test_elementwise_ops(ctx):
    x = np.arange(1.0, 17.0).reshape(4, 4)
    y = np.full((4, 4), 2.0)
    a = distribute(x, Blocks(2, 2), context=ctx)
    b = distribute(y, Blocks(2, 2), context=ctx)
    np.testing.assert_array_equal((a + b).collect(timeout=10), x + y)
    np.testing.assert_array_equal((a - b).collect(timeout=10), x - y)
    np.testing.assert_array_equal((a * 3).collect(timeout=10), x * 3)
    np.testing.assert_array_equal((a / b).collect(timeout=10), x / y)
    np.testing.assert_array_equal((10 - a).collect(timeout=10), 10 - x)
    np.testing.assert_array_equal((1 / a).collect(timeout=10), 1 / x)
    np.testing.assert_array_equal((2 + a).collect(timeout=10), 2 + x)


def test_mismatched_partitions_are_rejected(ctx):
    a = zeros((4, 4), (2, 2), context=ctx)
    with pytest.raises(PartitionError):
        a + zeros((4, 4), (4, 2), context=ctx)
    with pytest.raises(PartitionError):
        a + zeros((4, 2), (2, 2), context=ctx)


def test_reductions(ctx):
    arr = distribute(np.arange(16).reshape(4, 4), Blocks(2, 2), context=ctx)
    assert arr.sum().fetch(timeout=10) == 120
    assert arr.max().fetch(timeout=10) == 15
    assert arr.min().fetch(timeout=10) == 0
    assert distribute(np.arange(1, 7), Blocks(4), context=ctx).prod().fetch(timeout=10) == 720


def test_custom_reduction_folds_in_block_order(ctx):
    arr = distribute(np.array(list("abcde")), Blocks(2), context=ctx)
    assert arr.reduce(lambda acc, x: acc + x).fetch(timeout=10) == "abcde"


def test_unknown_reduction(ctx):
    with pytest.raises(ValueError):
        zeros((2,), (1,), context=ctx).reduce("median")


def test_map(ctx):
    source = np.arange(9.0).reshape(3, 3)
    arr = distribute(source, (2, 2), context=ctx).map(double)
    assert isinstance(arr, DArray)
    np.testing.assert_array_equal(arr.collect(timeout=10), source * 2)


def test_map_must_preserve_block_shape(ctx):
    arr = distribute(np.arange(4.0).reshape(2, 2), (2, 2), context=ctx).map(shrink)
    with pytest.raises(PartitionError):
        arr.collect(timeout=10)


def test_block_failures_surface_on_collect(ctx):
    arr = distribute(np.arange(4.0), (2,), context=ctx).map(np.linalg.inv)
    with pytest.raises(ExecutionError):
        arr.collect(timeout=10)
