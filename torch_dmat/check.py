import torch


class DMatrixError(Exception):
    """Base class for all errors raised by torch_dmat"""


class DimensionMismatch(DMatrixError, ValueError):
    def __init__(self, name, shape, expected_shape):
        self.name = name
        self.shape = shape
        self.expected_shape = expected_shape
        super().__init__(f"{name} has shape {shape} expected {expected_shape}")


class OwnershipViolation(DMatrixError, LookupError):
    def __init__(self, col, owner, rank):
        self.col = col
        self.owner = owner
        self.rank = rank
        super().__init__(
            f"column {col} is owned by rank {owner}, not by rank {rank}; "
            f"use gather() or column() for remote access"
        )


class OutOfRange(DMatrixError, IndexError):
    def __init__(self, name, index, bound):
        self.name = name
        self.index = index
        self.bound = bound
        super().__init__(f"{name} index {index} out of range [0, {bound})")


class InvalidArgument(DMatrixError, ValueError):
    pass


def check_index(name: str, index: int, bound: int):
    """
    Check that ``0 <= index < bound``

    Negative indices are rejected, there is no wrap-around.
    """
    if not 0 <= index < bound:
        raise OutOfRange(name, index, bound)


def check_rank(name: str, rank: int, num_partitions: int):
    """
    Check that a rank addresses one of ``num_partitions`` processes

    Parameters
    ----------
    name: str
        name of the argument, used in the message
    rank: int
        rank to check
    num_partitions: int
        number of processes
    """
    if num_partitions < 1:
        raise InvalidArgument(f"number of partitions must be >= 1, got {num_partitions}")
    if not 0 <= rank < num_partitions:
        raise InvalidArgument(f"{name} {rank} out of range [0, {num_partitions})")


def check_dense(name: str, matrix: torch.Tensor):
    if matrix.ndim != 2:
        raise DimensionMismatch(name, tuple(matrix.shape), "(m,n)")


def check_same_partition(a, b, same_rows: bool = True):
    """
    Check that two distributed matrices can be combined column by column

    Parameters
    ----------
    a: DMatrix
        left operand
    b: DMatrix
        right operand
    same_rows: bool
        also require the same number of rows
    """
    if same_rows and a.shape != b.shape:
        raise DimensionMismatch("other", b.shape, a.shape)
    if a.num_cols != b.num_cols:
        raise DimensionMismatch("other", b.shape, f"(m, {a.num_cols})")
    if a.num_partitions != b.num_partitions:
        raise DimensionMismatch(
            "other", f"{b.shape} over {b.num_partitions} partitions",
            f"{a.shape} over {a.num_partitions} partitions"
        )
    if a.rank != b.rank:
        raise DimensionMismatch(
            "other", f"partition of rank {b.rank}", f"partition of rank {a.rank}"
        )


def check_matmul_shapes(left_shape: tuple, right_shape: tuple):
    """
    Check the inner dimensions of ``left @ right``
    """
    if left_shape[1] != right_shape[0]:
        raise DimensionMismatch(
            "right", right_shape, f"({left_shape[1]}, n)"
        )


def check_same_dtype(a, b):
    """
    Check that two distributed matrices hold the same data type
    """
    if a.dtype != b.dtype:
        raise InvalidArgument(f"dtype mismatch: {a.dtype} and {b.dtype}")
