"""
Column partitioning for distributed dense matrices.

The C global columns are split into P contiguous ranges, one per process.
Every rank gets ``C // P`` columns and the first ``C % P`` ranks get one
extra column each. All functions here are pure: every process computes the
same layout for every other process without communicating.

Example
-------
>>> column_range(7, 3, 0)
(0, 3)
>>> owner_of(7, 3, 6)
2
>>> local_index_of(7, 3, 6)
1
"""

import torch
from typing import List, Tuple
from dataclasses import dataclass

from .check import check_index, check_rank, InvalidArgument


def _check_layout(num_cols: int, num_partitions: int):
    if num_partitions < 1:
        raise InvalidArgument(f"number of partitions must be >= 1, got {num_partitions}")
    if num_cols < 0:
        raise InvalidArgument(f"number of columns must be >= 0, got {num_cols}")


def column_range(num_cols: int, num_partitions: int, rank: int) -> Tuple[int, int]:
    """
    Column range owned by a rank.

    Parameters
    ----------
    num_cols : int
        Global number of columns C
    num_partitions : int
        Number of processes P
    rank : int
        Rank in [0, P)

    Returns
    -------
    start, count : int
        The rank owns global columns ``[start, start + count)``
    """
    _check_layout(num_cols, num_partitions)
    check_rank("rank", rank, num_partitions)
    base, remainder = divmod(num_cols, num_partitions)
    count = base + (1 if rank < remainder else 0)
    start = rank * base + min(rank, remainder)
    return start, count


def column_counts(num_cols: int, num_partitions: int) -> List[int]:
    """Number of columns owned by every rank, in rank order."""
    _check_layout(num_cols, num_partitions)
    base, remainder = divmod(num_cols, num_partitions)
    return [base + (1 if r < remainder else 0) for r in range(num_partitions)]


def column_offsets(num_cols: int, num_partitions: int) -> List[int]:
    """First global column of every rank, in rank order."""
    offsets = []
    start = 0
    for count in column_counts(num_cols, num_partitions):
        offsets.append(start)
        start += count
    return offsets


def owner_of(num_cols: int, num_partitions: int, col: int) -> int:
    """
    Rank owning a global column.

    Raises
    ------
    OutOfRange
        If ``col`` is outside ``[0, num_cols)``
    """
    _check_layout(num_cols, num_partitions)
    check_index("column", col, num_cols)
    base, remainder = divmod(num_cols, num_partitions)
    # the first `remainder` ranks hold base + 1 columns
    wide = remainder * (base + 1)
    if col < wide:
        return col // (base + 1)
    return remainder + (col - wide) // base


def local_index_of(num_cols: int, num_partitions: int, col: int) -> int:
    """Position of a global column inside its owner's local slice."""
    owner = owner_of(num_cols, num_partitions, col)
    start, _ = column_range(num_cols, num_partitions, owner)
    return col - start


def global_index_of(num_cols: int, num_partitions: int, rank: int, local_col: int) -> int:
    """Global column of the ``local_col``-th column owned by ``rank``."""
    start, count = column_range(num_cols, num_partitions, rank)
    check_index("local column", local_col, count)
    return start + local_col


def partition_columns(num_cols: int, num_partitions: int) -> torch.Tensor:
    """
    Owner of every column, vectorized.

    Returns
    -------
    partition_ids : torch.Tensor
        Rank owning each column [num_cols]
    """
    counts = torch.tensor(column_counts(num_cols, num_partitions), dtype=torch.int64)
    return torch.repeat_interleave(torch.arange(num_partitions, dtype=torch.int64), counts)


@dataclass(frozen=True)
class ColumnPartition:
    """Column layout of a matrix with ``num_cols`` columns over ``num_partitions`` ranks"""
    num_cols: int
    num_partitions: int

    def __post_init__(self):
        _check_layout(self.num_cols, self.num_partitions)

    def column_range(self, rank: int) -> Tuple[int, int]:
        return column_range(self.num_cols, self.num_partitions, rank)

    def owner_of(self, col: int) -> int:
        return owner_of(self.num_cols, self.num_partitions, col)

    def local_index_of(self, col: int) -> int:
        return local_index_of(self.num_cols, self.num_partitions, col)

    def global_index_of(self, rank: int, local_col: int) -> int:
        return global_index_of(self.num_cols, self.num_partitions, rank, local_col)

    @property
    def counts(self) -> List[int]:
        return column_counts(self.num_cols, self.num_partitions)

    @property
    def offsets(self) -> List[int]:
        return column_offsets(self.num_cols, self.num_partitions)
