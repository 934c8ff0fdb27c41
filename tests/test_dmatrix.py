"""
Tests for DMatrix without a process group.

Tests cover:
- Construction and column distribution (simulated with scatter_local)
- Ownership-checked get/set
- Local algebra on every partition
- Collectives on a single partition
- Error taxonomy
"""

import copy
import math
import os
import sys
import warnings

import numpy as np
import pytest
import torch

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
from torch_dmat import (
    DMatrix,
    multiply,
    multiply_transposed,
    sync_matrix,
    scatter_local,
    gather_local,
    column_counts,
    DMatrixError,
    DimensionMismatch,
    OwnershipViolation,
    OutOfRange,
    InvalidArgument,
)


def create_matrix(rows, cols, scale=10, offset=0, dtype=torch.float64):
    """A[i, j] = i * scale + j + offset"""
    i = torch.arange(rows, dtype=dtype).unsqueeze(1)
    j = torch.arange(cols, dtype=dtype).unsqueeze(0)
    return i * scale + j + offset


def apply_parts(parts, func):
    return [func(p) for p in parts]


# ============================================================================
# Construction
# ============================================================================

class TestDMatrixCreation:

    def test_create_single_partition(self):
        A = create_matrix(3, 4)
        D = DMatrix.from_global(A)

        assert D.shape == (3, 4)
        assert D.num_rows == 3
        assert D.num_cols == 4
        assert D.num_partitions == 1
        assert D.rank == 0
        assert torch.equal(D.local_data, A)

    def test_local_slice_is_a_copy(self):
        A = create_matrix(3, 4)
        D = DMatrix.from_global(A)
        A[0, 0] = -1.0
        assert D.get(0, 0) == 0.0

    @pytest.mark.parametrize('num_partitions', [1, 2, 3, 4, 5])
    def test_column_distribution(self, num_partitions):
        cols = num_partitions * 2 + 1
        A = create_matrix(3, cols, scale=100)
        parts = scatter_local(A, num_partitions)
        base, remainder = divmod(cols, num_partitions)

        for rank, D in enumerate(parts):
            assert D.local_data.shape == (3, base + (1 if rank < remainder else 0))
            for j in range(D.local_cols):
                global_j = D.global_col_index(j)
                assert D.local_col_index(global_j) == j
                assert D.owner_process(global_j) == rank
                assert torch.equal(D.local_data[:, j], A[:, global_j])

    def test_three_by_seven_over_three(self):
        parts = scatter_local(create_matrix(3, 7), 3)
        assert [p.local_cols for p in parts] == [3, 2, 2]
        assert [p.start_col for p in parts] == [0, 3, 5]
        assert parts[0].owner_process(6) == 2
        assert parts[0].local_col_index(6) == 1

    @pytest.mark.parametrize('shape', [(1, 1), (4, 6), (3, 7), (5, 2), (0, 3), (2, 0)])
    @pytest.mark.parametrize('num_partitions', [1, 2, 3, 4])
    def test_scatter_gather_roundtrip(self, shape, num_partitions):
        A = torch.randn(*shape, dtype=torch.float64)
        with warnings.catch_warnings():
            warnings.simplefilter('ignore')
            parts = scatter_local(A, num_partitions)
        assert torch.equal(gather_local(parts), A)

    def test_from_list_and_numpy(self):
        D = DMatrix.from_global([[1, 2, 3], [4, 5, 6]])
        assert D.dtype == torch.float64
        assert D.shape == (2, 3)

        D = DMatrix.from_global(np.ones((2, 3), dtype=np.float32))
        assert D.dtype == torch.float32

        D = DMatrix.from_global(np.ones((2, 3)), dtype=torch.float32)
        assert D.dtype == torch.float32

    def test_more_partitions_than_columns_warns(self):
        with pytest.warns(UserWarning):
            D = DMatrix.from_global(create_matrix(2, 2), num_partitions=4, rank=3)
        assert D.local_cols == 0
        assert D.local_data.shape == (2, 0)

    def test_verbose_prints_partition_info(self, capsys):
        DMatrix.from_global(create_matrix(3, 7), num_partitions=3, rank=1, verbose=True)
        out = capsys.readouterr().out
        assert "[Partition 1/3]" in out
        assert "[3, 5)" in out

    def test_invalid_rank(self):
        with pytest.raises(InvalidArgument):
            DMatrix.from_global(create_matrix(2, 4), num_partitions=2, rank=2)
        with pytest.raises(InvalidArgument):
            DMatrix.from_global(create_matrix(2, 4), num_partitions=0, rank=0)

    def test_not_a_matrix(self):
        with pytest.raises(DimensionMismatch):
            DMatrix.from_global(torch.ones(3))

    def test_local_shape_checked(self):
        with pytest.raises(DimensionMismatch):
            DMatrix(torch.zeros(3, 3), (3, 7), rank=1, num_partitions=3)

    def test_copy_is_deep(self):
        A = create_matrix(3, 5, scale=5)
        original = DMatrix.from_global(A)
        for duplicate in (original.copy(), copy.copy(original), copy.deepcopy(original)):
            assert duplicate.shape == original.shape
            assert torch.equal(duplicate.local_data, original.local_data)
            duplicate.set(0, 0, 42.0)
            assert original.get(0, 0) == 0.0

        modified = original.copy().apply(lambda x: 2 * x)
        assert not torch.equal(original.gather(), modified.gather())

    def test_to_device(self):
        D = DMatrix.from_global(create_matrix(2, 3))
        moved = D.cpu()
        assert moved.device.type == 'cpu'
        assert not moved.is_cuda
        assert torch.equal(moved.gather(), create_matrix(2, 3))

    def test_moved_matrix_owns_its_data(self):
        D = DMatrix.from_global(create_matrix(2, 3))
        moved = D.cpu()
        moved.set(0, 0, 7.0)
        assert D.get(0, 0) == 0.0
        same = D.to(D.device)
        same.fill(-1.0)
        assert torch.equal(D.gather(), create_matrix(2, 3))

    @pytest.mark.skipif(not torch.cuda.is_available(), reason="CUDA not available")
    def test_cuda(self):
        D = DMatrix.from_global(create_matrix(2, 3)).cuda()
        assert D.is_cuda
        assert torch.equal(D.gather().cpu(), create_matrix(2, 3))

    def test_repr(self):
        D = DMatrix.from_global(create_matrix(3, 7), num_partitions=3, rank=2)
        assert repr(D) == ("DMatrix(shape=(3, 7), rank=2, num_partitions=3, "
                           "columns=[5, 7), device=cpu)")


# ============================================================================
# Element access
# ============================================================================

class TestElementAccess:

    def test_get_set_owned(self):
        num_partitions = 3
        A = create_matrix(2, num_partitions, scale=num_partitions)
        for rank, D in enumerate(scatter_local(A, num_partitions)):
            assert D.get(1, rank) == num_partitions + rank
            D.set(1, rank, 99.0)
            assert D.get(1, rank) == 99.0

    def test_get_set_remote_raises(self):
        num_partitions = 3
        A = create_matrix(2, num_partitions)
        for rank, D in enumerate(scatter_local(A, num_partitions)):
            remote = (rank + 1) % num_partitions
            with pytest.raises(OwnershipViolation) as info:
                D.get(1, remote)
            assert info.value.owner == remote
            assert info.value.rank == rank
            with pytest.raises(OwnershipViolation):
                D.set(1, remote, 100.0)
            # nothing was written
            assert torch.equal(D.local_data, A[:, D.start_col:D.start_col + D.local_cols])

    @pytest.mark.parametrize('i, j', [(-1, 0), (2, 0), (0, -1), (0, 7), (5, 9)])
    def test_out_of_range(self, i, j):
        D = DMatrix.from_global(create_matrix(2, 7))
        with pytest.raises(OutOfRange):
            D.get(i, j)
        with pytest.raises(OutOfRange):
            D.set(i, j, 1.0)

    def test_errors_share_a_base_class(self):
        D = DMatrix.from_global(create_matrix(2, 4), num_partitions=2, rank=0)
        with pytest.raises(DMatrixError):
            D.get(0, 3)
        with pytest.raises(DMatrixError):
            D.get(0, 4)
        with pytest.raises(LookupError):
            D.get(0, 3)

    def test_column_single_process(self):
        A = create_matrix(3, 4)
        D = DMatrix.from_global(A)
        assert torch.equal(D.column(2), A[:, 2])
        with pytest.raises(OutOfRange):
            D.column(4)


# ============================================================================
# Local algebra
# ============================================================================

class TestLocalOperations:

    @pytest.fixture
    def matrices(self):
        A = create_matrix(3, 4, scale=4, offset=1)
        B = create_matrix(3, 4, scale=4, offset=1) * 2
        return A, B

    @pytest.mark.parametrize('num_partitions', [1, 2, 3, 4])
    def test_add_sub_scale(self, matrices, num_partitions):
        A, B = matrices
        parts_a = scatter_local(A, num_partitions)
        parts_b = scatter_local(B, num_partitions)

        assert torch.equal(gather_local([a + b for a, b in zip(parts_a, parts_b)]), A + B)
        assert torch.equal(gather_local([b - a for a, b in zip(parts_a, parts_b)]), B - A)
        assert torch.equal(gather_local(apply_parts(parts_a, lambda p: p * 3.0)), A * 3.0)
        assert torch.equal(gather_local(apply_parts(parts_a, lambda p: 3.0 * p)), A * 3.0)
        assert torch.equal(gather_local(apply_parts(parts_a, lambda p: -p)), -A)

    @pytest.mark.parametrize('num_partitions', [1, 2, 3])
    def test_fill(self, matrices, num_partitions):
        A, _ = matrices
        parts = scatter_local(A, num_partitions)
        for p in parts:
            p.fill(3.14)
        assert torch.allclose(gather_local(parts), torch.full_like(A, 3.14))

    @pytest.mark.parametrize('num_partitions', [1, 2, 3])
    def test_sub_mul(self, matrices, num_partitions):
        A, B = matrices
        parts_a = scatter_local(A, num_partitions)
        parts_b = scatter_local(B, num_partitions)
        for a, b in zip(parts_a, parts_b):
            assert a.sub_mul(2.0, b) is a
        assert torch.allclose(gather_local(parts_a), A - 2.0 * B)
        # other operand untouched
        assert torch.equal(gather_local(parts_b), B)

    @pytest.mark.parametrize('num_partitions', [1, 2, 5])
    def test_apply(self, num_partitions):
        A = create_matrix(2, 5, scale=1)
        parts = scatter_local(A, num_partitions)

        squared = gather_local(apply_parts(parts, lambda p: p.apply(lambda x: x * x)))
        assert torch.equal(squared, A * A)

        exp = gather_local(apply_parts(parts, lambda p: p.apply(torch.exp)))
        assert torch.allclose(exp, torch.exp(A))

        scalar = gather_local(apply_parts(parts, lambda p: p.apply(math.sqrt, vectorized=False)))
        assert torch.allclose(scalar, torch.sqrt(A))

    @pytest.mark.parametrize('num_partitions', [1, 2, 3])
    @pytest.mark.parametrize('vectorized', [True, False])
    def test_apply_binary(self, num_partitions, vectorized):
        A = create_matrix(3, 4, scale=1)
        i = torch.arange(3, dtype=torch.float64).unsqueeze(1)
        j = torch.arange(4, dtype=torch.float64).unsqueeze(0)
        B = i * j
        parts = [
            DMatrix.apply_binary(a, b, lambda x, y: x + y, vectorized=vectorized)
            for a, b in zip(scatter_local(A, num_partitions), scatter_local(B, num_partitions))
        ]
        assert torch.equal(gather_local(parts), A + B)

    def test_apply_result_owns_its_data(self):
        A = create_matrix(2, 3, offset=1)
        D = DMatrix.from_global(A)
        for func in (lambda x: x, lambda x: x[:, :], lambda x: x.view(2, 3)):
            E = D.apply(func)
            E.fill(0.0)
            assert torch.equal(D.gather(), A)

        B = create_matrix(2, 3, offset=5)
        b = DMatrix.from_global(B)
        for func in (lambda x, y: x, lambda x, y: y):
            E = DMatrix.apply_binary(D, b, func)
            E.sub_mul(1.0, D)
            assert torch.equal(D.gather(), A)
            assert torch.equal(b.gather(), B)

    def test_apply_must_be_elementwise(self):
        D = DMatrix.from_global(create_matrix(2, 3))
        with pytest.raises(DimensionMismatch):
            D.apply(lambda x: x.sum())

    def test_operations_return_new_matrices(self, matrices):
        A, B = matrices
        a, b = DMatrix.from_global(A), DMatrix.from_global(B)
        c = a + b
        c.set(0, 0, -5.0)
        assert a.get(0, 0) == A[0, 0].item()
        assert b.get(0, 0) == B[0, 0].item()

    def test_shape_mismatch(self):
        a = DMatrix.from_global(create_matrix(3, 4))
        b = DMatrix.from_global(create_matrix(3, 5))
        c = DMatrix.from_global(create_matrix(2, 4))
        for other in (b, c):
            with pytest.raises(DimensionMismatch):
                a + other
            with pytest.raises(DimensionMismatch):
                a - other
            with pytest.raises(DimensionMismatch):
                a.sub_mul(1.0, other)
            with pytest.raises(DimensionMismatch):
                DMatrix.apply_binary(a, other, lambda x, y: x * y)

    def test_partition_mismatch(self):
        A = create_matrix(3, 6)
        a = DMatrix.from_global(A, num_partitions=2, rank=0)
        b = DMatrix.from_global(A, num_partitions=3, rank=0)
        c = DMatrix.from_global(A, num_partitions=2, rank=1)
        for other in (b, c):
            with pytest.raises(DimensionMismatch):
                a + other

    def test_unsupported_operands(self):
        a = DMatrix.from_global(create_matrix(2, 2))
        with pytest.raises(TypeError):
            a + 1.0
        with pytest.raises(TypeError):
            a * a


# ============================================================================
# Products
# ============================================================================

class TestProducts:

    @pytest.mark.parametrize('num_partitions', [1, 2, 3, 4, 5])
    def test_multiply(self, num_partitions):
        left = create_matrix(2, 3, scale=3, offset=1)
        right = create_matrix(3, 4, scale=4, offset=1)
        with warnings.catch_warnings():
            warnings.simplefilter('ignore')
            parts = [multiply(left, r) for r in scatter_local(right, num_partitions)]

        expected = torch.tensor(np.asarray(left) @ np.asarray(right))
        assert all(p.shape == (2, 4) for p in parts)
        assert torch.allclose(gather_local(parts), expected, atol=1e-8)

    def test_multiply_keeps_partition(self):
        right = create_matrix(3, 7)
        parts = scatter_local(right, 3)
        result = multiply(torch.eye(3, dtype=torch.float64), parts[1])
        assert result.rank == 1
        assert result.start_col == parts[1].start_col
        assert torch.equal(result.local_data, parts[1].local_data)

    def test_multiply_dimension_mismatch(self):
        right = DMatrix.from_global(create_matrix(3, 4))
        with pytest.raises(DimensionMismatch):
            multiply(torch.ones(2, 4, dtype=torch.float64), right)

    def test_multiply_transposed_single_process(self):
        A = create_matrix(3, 5, scale=5, offset=1)
        B = create_matrix(4, 5, scale=5, offset=2)
        a, b = DMatrix.from_global(A), DMatrix.from_global(B)
        expected = A @ B.T
        assert torch.allclose(a.multiply_transposed(b), expected)
        assert torch.allclose(multiply_transposed(a, b), expected)

    def test_multiply_transposed_mismatch(self):
        a = DMatrix.from_global(create_matrix(3, 5))
        b = DMatrix.from_global(create_matrix(3, 4))
        with pytest.raises(DimensionMismatch):
            a.multiply_transposed(b)

    def test_dtype_mismatch(self):
        a = DMatrix.from_global(create_matrix(3, 5))
        b = DMatrix.from_global(create_matrix(4, 5, dtype=torch.float32))
        with pytest.raises(InvalidArgument):
            a.multiply_transposed(b)
        with pytest.raises(InvalidArgument):
            multiply_transposed(b, a)
        c = DMatrix.from_global(create_matrix(3, 5, dtype=torch.float32))
        with pytest.raises(InvalidArgument):
            a.copy().sub_mul(2.0, c)

    def test_transpose_single_process(self):
        A = create_matrix(3, 4)
        T = DMatrix.from_global(A).transpose()
        assert T.shape == (4, 3)
        assert torch.equal(T, A.T)


# ============================================================================
# Reductions and collectives without a process group
# ============================================================================

class TestSingleProcessCollectives:

    def test_sum(self):
        A = create_matrix(3, 5, scale=5, offset=1)
        D = DMatrix.from_global(A)
        assert D.sum() == pytest.approx(A.sum().item())
        assert isinstance(D.sum(), float)

    def test_norm(self):
        A = create_matrix(3, 5)
        assert DMatrix.from_global(A).norm() == pytest.approx(torch.linalg.norm(A).item())

    def test_gather(self):
        A = create_matrix(4, 6)
        assert torch.equal(DMatrix.from_global(A).gather(), A)

    def test_collective_needs_process_group(self):
        parts = scatter_local(create_matrix(3, 6), 2)
        for collective in (
            lambda p: p.gather(),
            lambda p: p.transpose(),
            lambda p: p.sum(),
            lambda p: p.norm(),
            lambda p: p.multiply_transposed(p),
            lambda p: p.column(p.start_col),
        ):
            with pytest.raises(InvalidArgument):
                collective(parts[0])

    def test_sync_matrix_single_process(self):
        A = create_matrix(2, 3)
        assert sync_matrix(A, src=0) is A
        assert torch.equal(sync_matrix(A, src=0, rank=0), create_matrix(2, 3))

    @pytest.mark.parametrize('src', [-1, 1, 5])
    def test_sync_matrix_invalid_source(self, src):
        with pytest.raises(InvalidArgument):
            sync_matrix(create_matrix(2, 3), src=src)

    def test_sync_matrix_invalid_input(self):
        with pytest.raises(InvalidArgument):
            sync_matrix([[1.0, 2.0]], src=0)
        with pytest.raises(DimensionMismatch):
            sync_matrix(torch.ones(3), src=0)

    def test_from_global_distributed_single_process(self):
        A = create_matrix(3, 4)
        D = DMatrix.from_global_distributed(A, src=0)
        assert torch.equal(D.gather(), A)
        with pytest.raises(InvalidArgument):
            DMatrix.from_global_distributed(None, src=0)
        with pytest.raises(DimensionMismatch):
            DMatrix.from_global_distributed(torch.ones(3), src=0)
        with pytest.raises(InvalidArgument):
            DMatrix.from_global_distributed("not a matrix", src=0)

    def test_gather_local_checks_parts(self):
        parts = scatter_local(create_matrix(3, 6), 3)
        with pytest.raises(InvalidArgument):
            gather_local([])
        with pytest.raises(InvalidArgument):
            gather_local(parts[:2])
        with pytest.raises(InvalidArgument):
            gather_local([parts[1], parts[0], parts[2]])
        assert column_counts(6, 3) == [p.local_cols for p in parts]
