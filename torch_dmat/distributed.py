"""
Column-distributed dense matrix.

The global matrix is split by columns across the processes of a
``torch.distributed`` process group. Each process keeps a dense
``torch.Tensor`` holding its contiguous range of columns (see
``torch_dmat.partition``) and the same algebraic API as a full matrix.

Elementwise operations only touch the local slice. Operations that need data
from other processes (gather, transpose, sum, multiply_transposed, column)
are collectives: every process must call them, in the same order.

Every error is raised from metadata known locally, before any
communication, so all processes fail together instead of leaving some of
them blocked in a collective.

Example
-------
>>> # torchrun --nproc_per_node=3 script.py
>>> import torch
>>> from torch_dmat import DMatrix, comm, multiply
>>> comm.init_process_group()
>>>
>>> torch.manual_seed(0)                   # same matrix on every rank
>>> A = torch.randn(3, 7, dtype=torch.float64)
>>> D = DMatrix.from_global(A)             # rank 0 keeps 3 columns, ranks 1-2 keep 2
>>>
>>> E = (D + D) * 0.5                      # local, no communication
>>> L = torch.randn(2, 3, dtype=torch.float64)
>>> P = multiply(L, D)                     # L @ A, same column partition
>>> G = D.multiply_transposed(D)           # A @ A.T, replicated on all ranks
>>> assert torch.allclose(P.gather(), L @ A)
"""

import numbers
import warnings
import torch
from typing import Callable, List, Optional, Tuple, Union

from . import comm
from . import dense
from .partition import ColumnPartition
from .check import (
    check_index,
    check_rank,
    check_dense,
    check_same_partition,
    check_same_dtype,
    check_matmul_shapes,
    DimensionMismatch,
    InvalidArgument,
    OwnershipViolation,
)


class DMatrix:
    """
    Dense matrix distributed by columns.

    Attributes
    ----------
    local_data : torch.Tensor
        Columns owned by this process [num_rows, local_cols]
    global_shape : Tuple[int, int]
        Shape of the global matrix
    rank : int
        Rank whose columns are stored
    num_partitions : int
        Number of processes the columns are split across
    start_col : int
        First global column stored locally
    partition : ColumnPartition
        Column layout shared by all processes

    Example
    -------
    >>> D = DMatrix.from_global(torch.arange(21.).reshape(3, 7), num_partitions=3, rank=2)
    >>> D.local_cols, D.start_col
    (2, 5)
    >>> D.get(1, 6)
    13.0
    >>> D.get(1, 0)    # owned by rank 0
    Traceback (most recent call last):
        ...
    OwnershipViolation: column 0 is owned by rank 0, not by rank 2; ...
    """

    def __init__(
        self,
        local_data: torch.Tensor,
        global_shape: Tuple[int, int],
        rank: int,
        num_partitions: int,
        verbose: bool = False
    ):
        check_dense("local_data", local_data)
        check_rank("rank", rank, num_partitions)

        self.partition = ColumnPartition(int(global_shape[1]), num_partitions)
        start, count = self.partition.column_range(rank)
        if tuple(local_data.shape) != (global_shape[0], count):
            raise DimensionMismatch("local_data", tuple(local_data.shape), (global_shape[0], count))

        self.local_data = local_data
        self.global_shape = (int(global_shape[0]), int(global_shape[1]))
        self.rank = rank
        self.num_partitions = num_partitions
        self.start_col = start
        self._verbose = verbose

        if verbose:
            self._print_partition_info()

    def _print_partition_info(self):
        """Print partition info for user awareness"""
        print(f"[Partition {self.rank}/{self.num_partitions}] "
              f"Columns: [{self.start_col}, {self.start_col + self.local_cols}) = "
              f"{self.local_cols} local | "
              f"Global: {self.num_rows}x{self.num_cols} | "
              f"Device: {self.device}")

    def _like(self, local_data: torch.Tensor) -> "DMatrix":
        """New matrix with the same layout and different local values"""
        return DMatrix(local_data, self.global_shape, self.rank, self.num_partitions)

    def _check_collective(self):
        """A collective needs one process per partition, and this process's own partition"""
        world_size = comm.get_world_size()
        if self.num_partitions != world_size:
            raise InvalidArgument(
                f"matrix is partitioned over {self.num_partitions} processes "
                f"but the process group has {world_size}"
            )
        if self.rank != comm.get_rank():
            raise InvalidArgument(
                f"matrix holds the partition of rank {self.rank} "
                f"but this process is rank {comm.get_rank()}"
            )

    # =========================================================================
    # Construction
    # =========================================================================

    @classmethod
    def from_global(
        cls,
        matrix,
        num_partitions: Optional[int] = None,
        rank: Optional[int] = None,
        dtype: Optional[torch.dtype] = None,
        device: Optional[Union[str, torch.device]] = None,
        verbose: bool = False
    ) -> "DMatrix":
        """
        Keep this rank's columns of a full matrix.

        The full matrix must hold the same values on every process; this is
        not verified. Use ``sync_matrix`` or ``from_global_distributed`` when
        only one process has the data.

        Parameters
        ----------
        matrix : torch.Tensor, numpy.ndarray or nested sequence
            Full matrix [m, n]
        num_partitions : int, optional
            Number of processes. Defaults to the process group size.
        rank : int, optional
            Partition to keep. Defaults to this process's rank.
        dtype : torch.dtype, optional
            Data type of the local slice
        device : str or torch.device, optional
            Device of the local slice
        verbose : bool
            Whether to print partition info

        Returns
        -------
        DMatrix
            Local portion of the distributed matrix
        """
        matrix = dense.as_matrix(matrix, dtype=dtype, device=device)
        if num_partitions is None:
            num_partitions = comm.get_world_size()
        if rank is None:
            rank = comm.get_rank()
        check_rank("rank", rank, num_partitions)

        num_rows, num_cols = matrix.shape
        if num_partitions > num_cols:
            warnings.warn(f"{num_partitions} partitions for {num_cols} columns: "
                          f"ranks >= {num_cols} own no columns")

        start, count = ColumnPartition(num_cols, num_partitions).column_range(rank)
        local_data = matrix[:, start:start + count].clone()
        return cls(local_data, (num_rows, num_cols), rank, num_partitions, verbose=verbose)

    @classmethod
    def from_global_distributed(
        cls,
        matrix=None,
        src: int = 0,
        dtype: torch.dtype = torch.float64,
        device: Union[str, torch.device] = 'cpu',
        verbose: bool = False
    ) -> "DMatrix":
        """
        Distribute a full matrix known only on rank ``src``.

        Rank ``src`` broadcasts the shape and then the values, after which
        every rank keeps its own columns. Collective.

        Parameters
        ----------
        matrix : torch.Tensor, optional
            Full matrix on rank ``src``; ignored on the other ranks
        src : int
            Rank holding the data
        dtype : torch.dtype
            Data type used on every rank
        device : str or torch.device
            Device of the local slice
        verbose : bool
            Whether to print partition info (rank ``src`` only)
        """
        check_rank("src", src, comm.get_world_size())
        rank = comm.get_rank()
        if isinstance(device, str):
            device = torch.device(device)

        # header is [ndim, rows, cols], ndim -1 when rank src has no usable data;
        # every rank validates it so a bad input fails the whole group
        header = torch.tensor([-1, 0, 0], dtype=torch.int64, device=device)
        error = None
        if rank == src and matrix is not None:
            try:
                matrix = torch.as_tensor(matrix)
            except (TypeError, ValueError, RuntimeError) as e:
                error = e
            else:
                rows, cols = matrix.shape if matrix.ndim == 2 else (0, 0)
                header = torch.tensor([matrix.ndim, rows, cols], dtype=torch.int64, device=device)

        comm.broadcast(header, src=src)
        ndim, rows, cols = header.tolist()
        if ndim < 0:
            raise InvalidArgument(f"rank {src} must provide a matrix") from error
        if ndim != 2:
            raise DimensionMismatch("matrix", f"{ndim}-d tensor on rank {src}", "(m,n)")

        if rank == src:
            matrix = dense.as_matrix(matrix, dtype=dtype, device=device)
        else:
            matrix = torch.zeros((rows, cols), dtype=dtype, device=device)
        sync_matrix(matrix, src=src)

        return cls.from_global(matrix, verbose=verbose and rank == src)

    def copy(self) -> "DMatrix":
        """Deep copy of the local slice, no communication"""
        return DMatrix(self.local_data.clone(), self.global_shape, self.rank, self.num_partitions)

    def __copy__(self) -> "DMatrix":
        return self.copy()

    def __deepcopy__(self, memo) -> "DMatrix":
        return self.copy()

    def to(self, device: Union[str, torch.device]) -> "DMatrix":
        """
        Move the local slice to a different device.

        Parameters
        ----------
        device : str or torch.device
            Target device ('cpu', 'cuda', 'cuda:0', etc.)

        Returns
        -------
        DMatrix
            New distributed matrix on the target device
        """
        if isinstance(device, str):
            device = torch.device(device)
        return self._like(self.local_data.to(device, copy=True))

    def cuda(self, device: Optional[int] = None) -> "DMatrix":
        """Move to CUDA device"""
        if device is not None:
            return self.to(f'cuda:{device}')
        return self.to('cuda')

    def cpu(self) -> "DMatrix":
        """Move to CPU"""
        return self.to('cpu')

    # =========================================================================
    # Properties
    # =========================================================================

    @property
    def shape(self) -> Tuple[int, int]:
        """Global shape"""
        return self.global_shape

    @property
    def num_rows(self) -> int:
        return self.global_shape[0]

    @property
    def num_cols(self) -> int:
        return self.global_shape[1]

    @property
    def local_cols(self) -> int:
        """Number of columns stored on this process"""
        return self.local_data.size(1)

    @property
    def dtype(self) -> torch.dtype:
        return self.local_data.dtype

    @property
    def device(self) -> torch.device:
        return self.local_data.device

    @property
    def is_cuda(self) -> bool:
        return self.local_data.is_cuda

    def get_local_data(self) -> torch.Tensor:
        return self.local_data

    # =========================================================================
    # Column indexing
    # =========================================================================

    def global_col_index(self, local_col: int) -> int:
        """Global index of a local column of this process"""
        return self.partition.global_index_of(self.rank, local_col)

    def local_col_index(self, global_col: int) -> int:
        """Index of a global column inside its owner's slice"""
        return self.partition.local_index_of(global_col)

    def owner_process(self, global_col: int) -> int:
        """Rank owning a global column"""
        return self.partition.owner_of(global_col)

    def _owned_local_index(self, i: int, j: int) -> int:
        check_index("row", i, self.num_rows)
        owner = self.owner_process(j)
        if owner != self.rank:
            raise OwnershipViolation(j, owner, self.rank)
        return j - self.start_col

    def get(self, i: int, j: int) -> float:
        """
        Element ``(i, j)`` of the global matrix.

        Raises
        ------
        OutOfRange
            If ``(i, j)`` is outside the global shape
        OwnershipViolation
            If column ``j`` is stored on another process
        """
        return self.local_data[i, self._owned_local_index(i, j)].item()

    def set(self, i: int, j: int, value: float) -> None:
        """Set element ``(i, j)``; column ``j`` must be owned by this process"""
        self.local_data[i, self._owned_local_index(i, j)] = value

    def column(self, j: int) -> torch.Tensor:
        """
        Global column ``j`` on every process.

        The owner broadcasts the column. Collective.

        Returns
        -------
        torch.Tensor
            Column values [num_rows]
        """
        owner = self.owner_process(j)
        self._check_collective()
        if owner == self.rank:
            values = self.local_data[:, j - self.start_col].clone()
        else:
            values = torch.zeros(self.num_rows, dtype=self.dtype, device=self.device)
        return comm.broadcast(values, src=owner)

    # =========================================================================
    # Local operations (no communication)
    # =========================================================================

    def fill(self, value: float) -> "DMatrix":
        """Set every element to ``value``, in place"""
        self.local_data.fill_(value)
        return self

    def __add__(self, other: "DMatrix") -> "DMatrix":
        if not isinstance(other, DMatrix):
            return NotImplemented
        check_same_partition(self, other)
        return self._like(self.local_data + other.local_data)

    def __sub__(self, other: "DMatrix") -> "DMatrix":
        if not isinstance(other, DMatrix):
            return NotImplemented
        check_same_partition(self, other)
        return self._like(self.local_data - other.local_data)

    def __mul__(self, scalar: float) -> "DMatrix":
        if isinstance(scalar, torch.Tensor) and scalar.ndim == 0:
            scalar = scalar.item()
        if not isinstance(scalar, numbers.Number):
            return NotImplemented
        return self._like(self.local_data * scalar)

    __rmul__ = __mul__

    def __neg__(self) -> "DMatrix":
        return self._like(-self.local_data)

    def sub_mul(self, scalar: float, other: "DMatrix") -> "DMatrix":
        """In-place ``self -= scalar * other``"""
        check_same_partition(self, other)
        check_same_dtype(self, other)
        dense.sub_mul(self.local_data, scalar, other.local_data)
        return self

    def apply(self, func: Callable, vectorized: bool = True) -> "DMatrix":
        """
        Elementwise map.

        Parameters
        ----------
        func : callable
            Receives the local tensor when ``vectorized`` (``torch.exp``,
            ``lambda x: x * x``), or one float per element otherwise.
        vectorized : bool
            How ``func`` is called
        """
        return self._like(dense.apply(self.local_data, func, vectorized=vectorized))

    @staticmethod
    def apply_binary(
        a: "DMatrix",
        b: "DMatrix",
        func: Callable,
        vectorized: bool = True
    ) -> "DMatrix":
        """Elementwise ``func(a, b)`` of two matrices with the same partition"""
        check_same_partition(a, b)
        return a._like(dense.apply_binary(a.local_data, b.local_data, func, vectorized=vectorized))

    # =========================================================================
    # Collective operations
    # =========================================================================

    def gather(self) -> torch.Tensor:
        """
        Full matrix on every process. Collective.

        Local slices have different widths when the columns do not divide
        evenly; they are exchanged padded and trimmed with the partition
        counts, then concatenated in rank order.

        Returns
        -------
        torch.Tensor
            [num_rows, num_cols]
        """
        self._check_collective()
        return comm.all_gather_varlen(self.local_data, sizes=self.partition.counts, dim=1)

    def transpose(self) -> torch.Tensor:
        """
        Full transposed matrix on every process. Collective.

        Each process transposes its column slice into a row slice of the
        result; row slices are all-gathered in rank order.

        Returns
        -------
        torch.Tensor
            [num_cols, num_rows]
        """
        self._check_collective()
        rows = comm.all_gather_varlen(self.local_data.T, sizes=self.partition.counts, dim=0)
        return rows.contiguous()

    def multiply_transposed(self, other: "DMatrix") -> torch.Tensor:
        """
        ``self @ other.T`` on every process. Collective.

        Columns are the contraction dimension, so each process multiplies
        its own slices and the partial products are summed with all-reduce.

        Parameters
        ----------
        other : DMatrix
            Same number of columns, partition and dtype as ``self``

        Returns
        -------
        torch.Tensor
            [self.num_rows, other.num_rows]
        """
        check_same_partition(self, other, same_rows=False)
        check_same_dtype(self, other)
        self._check_collective()
        partial = self.local_data @ other.local_data.T
        return comm.all_reduce_sum(partial)

    def sum(self) -> float:
        """Sum of all elements, same value on every process. Collective."""
        self._check_collective()
        local = self.local_data.sum().reshape(1)
        return comm.all_reduce_sum(local).item()

    def norm(self) -> float:
        """Frobenius norm, same value on every process. Collective."""
        self._check_collective()
        local = (self.local_data ** 2).sum().reshape(1)
        return comm.all_reduce_sum(local).sqrt().item()

    def __repr__(self) -> str:
        return (f"DMatrix(shape={self.global_shape}, rank={self.rank}, "
                f"num_partitions={self.num_partitions}, "
                f"columns=[{self.start_col}, {self.start_col + self.local_cols}), "
                f"device={self.device})")


def multiply(left, right: DMatrix) -> DMatrix:
    """
    ``left @ right`` for a full ``left`` and a distributed ``right``.

    ``left`` must hold the same values on every process. The product only
    mixes rows, so each process multiplies its own columns and the result
    keeps the partition of ``right``. No communication.

    Parameters
    ----------
    left : torch.Tensor
        Full matrix [m, k]
    right : DMatrix
        Distributed matrix [k, n]

    Returns
    -------
    DMatrix
        Distributed matrix [m, n]
    """
    left = dense.as_matrix(left, dtype=right.dtype, device=right.device)
    check_matmul_shapes(tuple(left.shape), right.shape)
    local_data = left @ right.local_data
    return DMatrix(local_data, (left.size(0), right.num_cols), right.rank, right.num_partitions)


def multiply_transposed(a: DMatrix, b: DMatrix) -> torch.Tensor:
    """``a @ b.T`` on every process, see ``DMatrix.multiply_transposed``"""
    return a.multiply_transposed(b)


def sync_matrix(matrix: torch.Tensor, src: int = 0, rank: Optional[int] = None) -> torch.Tensor:
    """
    Broadcast a full matrix from rank ``src``, in place. Collective.

    Every process must pass a tensor of the same shape and dtype; afterwards
    all of them hold the values of rank ``src``.

    Parameters
    ----------
    matrix : torch.Tensor
        [m, n] matrix, overwritten on every rank but ``src``
    src : int
        Rank holding the values
    rank : int, optional
        Caller's rank, checked against the process group size when given

    Returns
    -------
    torch.Tensor
        ``matrix``
    """
    world_size = comm.get_world_size()
    check_rank("src", src, world_size)
    if rank is not None:
        check_rank("rank", rank, world_size)
    if not isinstance(matrix, torch.Tensor):
        raise InvalidArgument(f"sync_matrix expects a torch.Tensor, got {type(matrix).__name__}")
    check_dense("matrix", matrix)
    return comm.broadcast(matrix, src=src)


def scatter_local(
    matrix,
    num_partitions: int,
    device: Optional[Union[str, torch.device]] = None
) -> List[DMatrix]:
    """
    Every rank's partition of ``matrix``, built in a single process.

    Useful for testing/debugging without actual distributed setup.
    """
    return [
        DMatrix.from_global(matrix, num_partitions=num_partitions, rank=r, device=device)
        for r in range(num_partitions)
    ]


def gather_local(parts: List[DMatrix]) -> torch.Tensor:
    """
    Full matrix from a complete list of partitions, see ``scatter_local``.

    Parameters
    ----------
    parts : List[DMatrix]
        One partition per rank, in rank order
    """
    if len(parts) == 0:
        raise InvalidArgument("gather_local needs at least one partition")
    first = parts[0]
    if len(parts) != first.num_partitions:
        raise InvalidArgument(f"expected {first.num_partitions} partitions, got {len(parts)}")
    for r, part in enumerate(parts):
        if part.rank != r:
            raise InvalidArgument(f"partition {r} holds the columns of rank {part.rank}")
        if part.shape != first.shape or part.num_partitions != first.num_partitions:
            raise DimensionMismatch(f"parts[{r}]", part.shape, first.shape)
    return torch.cat([part.local_data.to(first.device) for part in parts], dim=1)
