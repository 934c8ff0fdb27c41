"""
Dense matrix helpers on top of ``torch.Tensor``.

``torch.Tensor`` is the single-process dense matrix used for every local
slice. This module adds the few operations it does not spell out directly.
"""

import torch
from typing import Callable, Optional, Union

from .check import check_dense, DimensionMismatch


def as_matrix(
    data,
    dtype: Optional[torch.dtype] = None,
    device: Optional[Union[str, torch.device]] = None
) -> torch.Tensor:
    """
    Coerce ``data`` to a 2-D floating point tensor.

    Tensors keep their floating dtype; anything else (lists, numpy arrays,
    integer tensors) becomes float64 unless ``dtype`` is given.

    Parameters
    ----------
    data : torch.Tensor, numpy.ndarray or nested sequence
        [m, n] matrix
    dtype : torch.dtype, optional
        Target data type
    device : str or torch.device, optional
        Target device
    """
    matrix = torch.as_tensor(data)
    if dtype is None and not matrix.is_floating_point():
        dtype = torch.float64
    matrix = matrix.to(device=device if device is not None else matrix.device, dtype=dtype)
    check_dense("matrix", matrix)
    return matrix


def sub_mul(matrix: torch.Tensor, scalar: float, other: torch.Tensor) -> torch.Tensor:
    """In-place ``matrix -= scalar * other``"""
    if matrix.shape != other.shape:
        raise DimensionMismatch("other", tuple(other.shape), tuple(matrix.shape))
    return matrix.sub_(other, alpha=scalar)


def _owned(result: torch.Tensor, *inputs: torch.Tensor) -> torch.Tensor:
    """Copy ``result`` when it shares memory with one of ``inputs`` or is a view"""
    if result._base is not None or any(result.data_ptr() == t.data_ptr() for t in inputs):
        return result.clone()
    return result


def apply(
    matrix: torch.Tensor,
    func: Callable,
    vectorized: bool = True
) -> torch.Tensor:
    """
    Elementwise map, returning a new tensor.

    Parameters
    ----------
    matrix : torch.Tensor
        [m, n] input
    func : callable
        If ``vectorized``, called once with the whole tensor and must return
        a tensor of the same shape (``torch.exp``, ``lambda x: x * x``).
        Otherwise called with one Python float per element.
    vectorized : bool
        See ``func``
    """
    if vectorized:
        result = torch.as_tensor(func(matrix), dtype=matrix.dtype, device=matrix.device)
        if result.shape != matrix.shape:
            raise DimensionMismatch("func(matrix)", tuple(result.shape), tuple(matrix.shape))
        return _owned(result, matrix)
    # apply_ only runs on CPU tensors
    return matrix.cpu().clone().apply_(func).to(matrix.device)


def apply_binary(
    a: torch.Tensor,
    b: torch.Tensor,
    func: Callable,
    vectorized: bool = True
) -> torch.Tensor:
    """Elementwise combination of two same-shaped tensors, see ``apply``."""
    if a.shape != b.shape:
        raise DimensionMismatch("b", tuple(b.shape), tuple(a.shape))
    if vectorized:
        result = torch.as_tensor(func(a, b), dtype=a.dtype, device=a.device)
        if result.shape != a.shape:
            raise DimensionMismatch("func(a, b)", tuple(result.shape), tuple(a.shape))
        return _owned(result, a, b)
    values = [func(x, y) for x, y in zip(a.flatten().tolist(), b.flatten().tolist())]
    return torch.tensor(values, dtype=a.dtype, device=a.device).reshape(a.shape)
