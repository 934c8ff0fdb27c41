#!/usr/bin/env python
"""
Basic Usage Examples for torch-dmat

Runs in a single process: every rank's partition is built locally with
scatter_local, which is how the layout can be inspected without torchrun.

This example demonstrates:
1. Column partitioning and index conversions
2. Ownership-checked element access
3. Local algebra on partitions
4. Replicated-left matrix products
"""

import torch
from torch_dmat import (
    DMatrix,
    OwnershipViolation,
    column_counts,
    gather_local,
    multiply,
    scatter_local,
)


# =============================================================================
# 1. Partitioning
# =============================================================================

def example_1_partition():
    """Split a 3x7 matrix over 3 ranks: the remainder goes to rank 0."""
    A = torch.arange(21, dtype=torch.float64).reshape(3, 7)
    parts = scatter_local(A, num_partitions=3)

    print(f"Column counts: {column_counts(7, 3)}")
    for part in parts:
        print(f"  {part}")
    print(f"Owner of column 6: {parts[0].owner_process(6)}, "
          f"local index {parts[0].local_col_index(6)}")

    assert torch.equal(gather_local(parts), A)
    return parts


# =============================================================================
# 2. Element access
# =============================================================================

def example_2_get_set(parts):
    """get/set only work on owned columns."""
    D = parts[1]
    print(f"Rank 1 reads A[2, 4] = {D.get(2, 4)}")
    D.set(2, 4, -1.0)
    print(f"Rank 1 writes A[2, 4] = {D.get(2, 4)}")

    try:
        D.get(0, 0)
    except OwnershipViolation as e:
        print(f"Rank 1 reads A[0, 0]: {e}")


# =============================================================================
# 3. Local algebra
# =============================================================================

def example_3_algebra():
    """Elementwise operations never leave the local slice."""
    A = torch.randn(4, 10, dtype=torch.float64)
    B = torch.randn(4, 10, dtype=torch.float64)

    result = []
    for a, b in zip(scatter_local(A, 4), scatter_local(B, 4)):
        c = (a + b) * 0.5
        c.sub_mul(0.1, DMatrix.apply_binary(a, b, torch.maximum))
        result.append(c.apply(torch.relu))

    expected = torch.relu((A + B) * 0.5 - 0.1 * torch.maximum(A, B))
    print(f"Max error: {(gather_local(result) - expected).abs().max().item():.2e}")


# =============================================================================
# 4. Products
# =============================================================================

def example_4_multiply():
    """L @ D keeps the column partition of D."""
    L = torch.randn(2, 3, dtype=torch.float64)
    R = torch.randn(3, 5, dtype=torch.float64)

    parts = [multiply(L, r) for r in scatter_local(R, 2)]
    print(f"Product partitions: {[p.local_cols for p in parts]}")
    print(f"Max error: {(gather_local(parts) - L @ R).abs().max().item():.2e}")


if __name__ == "__main__":
    parts = example_1_partition()
    example_2_get_set(parts)
    example_3_algebra()
    example_4_multiply()
