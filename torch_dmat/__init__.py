"""
torch-dmat: column-distributed dense matrices for PyTorch

A dense matrix is split by columns across the processes of a
``torch.distributed`` process group. Each process stores its contiguous
range of columns as a ``torch.Tensor``; the distributed matrix exposes the
usual algebra on top of it.

Features
--------
- Deterministic column partitioning, remainder columns on the lowest ranks
- Local elementwise algebra: +, -, scalar *, apply, apply_binary, sub_mul, fill
- Collectives: gather, transpose, sum, norm, multiply_transposed, column
- Replicated-left matrix product ``multiply(L, D)`` without communication
- Same code on CPU (gloo) and CUDA (nccl), single-process fallback

Usage
-----
>>> # torchrun --nproc_per_node=4 script.py
>>> import torch
>>> from torch_dmat import DMatrix, comm, multiply, sync_matrix
>>>
>>> comm.init_process_group()
>>> A = torch.empty(100, 1000, dtype=torch.float64)
>>> if comm.get_rank() == 0:
...     A.normal_()
>>> sync_matrix(A, src=0)                # same values on every rank
>>>
>>> D = DMatrix.from_global(A)           # 250 columns per rank
>>> D.sub_mul(0.1, D.apply(torch.tanh))  # local
>>> G = D.multiply_transposed(D)         # [100, 100] on every rank
>>> total = D.sum()
>>> A_new = D.gather()                   # [100, 1000] on every rank
"""

from . import comm

from .check import (
    DMatrixError,
    DimensionMismatch,
    OwnershipViolation,
    OutOfRange,
    InvalidArgument,
)

from .partition import (
    ColumnPartition,
    column_range,
    column_counts,
    column_offsets,
    owner_of,
    local_index_of,
    global_index_of,
    partition_columns,
)

from .distributed import (
    DMatrix,
    multiply,
    multiply_transposed,
    sync_matrix,
    scatter_local,
    gather_local,
)

__version__ = "0.1.0"
__author__ = "walkerchi"

__all__ = [
    "comm",
    # Errors
    "DMatrixError",
    "DimensionMismatch",
    "OwnershipViolation",
    "OutOfRange",
    "InvalidArgument",
    # Partitioning
    "ColumnPartition",
    "column_range",
    "column_counts",
    "column_offsets",
    "owner_of",
    "local_index_of",
    "global_index_of",
    "partition_columns",
    # Distributed matrix
    "DMatrix",
    "multiply",
    "multiply_transposed",
    "sync_matrix",
    "scatter_local",
    "gather_local",
    # Version
    "__version__",
]
