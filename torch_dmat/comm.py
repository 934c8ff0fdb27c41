"""
Thin layer over ``torch.distributed`` used by the distributed matrix.

Every collective falls back to the identity when no process group is
initialized, so single-process code runs unchanged. With the NCCL backend,
CPU tensors are staged on the current CUDA device for the collective and the
result is returned on the caller's device.

Example
-------
>>> # torchrun --nproc_per_node=4 script.py
>>> from torch_dmat import comm
>>> comm.init_process_group()
>>> rank, world_size = comm.get_rank(), comm.get_world_size()
"""

import os
import torch
from typing import List, Optional

from .check import check_rank, DimensionMismatch

try:
    import torch.distributed as dist
    DIST_AVAILABLE = dist.is_available()
except ImportError:
    DIST_AVAILABLE = False


def is_distributed() -> bool:
    """True when a process group is initialized"""
    return DIST_AVAILABLE and dist.is_initialized()


def get_rank() -> int:
    return dist.get_rank() if is_distributed() else 0


def get_world_size() -> int:
    return dist.get_world_size() if is_distributed() else 1


def init_process_group(backend: Optional[str] = None, **kwargs) -> None:
    """
    Initialize the default process group from the ``torchrun`` environment.

    Does nothing if a group already exists.

    Parameters
    ----------
    backend : str, optional
        'gloo' or 'nccl'. Defaults to 'nccl' when CUDA is available, else 'gloo'.
    **kwargs
        Forwarded to ``torch.distributed.init_process_group`` (``rank``,
        ``world_size``, ``init_method`` ...). Without them, ``RANK``,
        ``WORLD_SIZE``, ``MASTER_ADDR`` and ``MASTER_PORT`` are read from the
        environment.
    """
    if not DIST_AVAILABLE:
        raise RuntimeError("torch.distributed is not available in this build of PyTorch")
    if dist.is_initialized():
        return
    if backend is None:
        backend = 'nccl' if torch.cuda.is_available() else 'gloo'
    if 'init_method' not in kwargs:
        os.environ.setdefault('MASTER_ADDR', 'localhost')
        os.environ.setdefault('MASTER_PORT', '29500')
    dist.init_process_group(backend, **kwargs)


def _stage(tensor: torch.Tensor) -> torch.Tensor:
    """Contiguous copy of ``tensor`` on a device the backend accepts"""
    if dist.get_backend() == 'nccl' and not tensor.is_cuda:
        # NCCL requires CUDA tensors
        return tensor.to(torch.device('cuda', torch.cuda.current_device()))
    return tensor.clone().contiguous()


def all_reduce_sum(tensor: torch.Tensor) -> torch.Tensor:
    """
    Elementwise sum of ``tensor`` over all ranks.

    Returns a new tensor on ``tensor.device``; the input is left untouched.
    """
    if not is_distributed() or tensor.numel() == 0:
        return tensor.clone()
    result = _stage(tensor)
    dist.all_reduce(result, op=dist.ReduceOp.SUM)
    return result.to(tensor.device)


def broadcast(tensor: torch.Tensor, src: int = 0) -> torch.Tensor:
    """
    Overwrite ``tensor`` in place with its value on rank ``src``.

    Returns ``tensor``.
    """
    check_rank("src", src, get_world_size())
    if not is_distributed():
        return tensor
    buffer = _stage(tensor)
    dist.broadcast(buffer, src=src)
    tensor.copy_(buffer)
    return tensor


def all_gather_sizes(size: int, device: Optional[torch.device] = None) -> List[int]:
    """Exchange one integer per rank, returned in rank order"""
    if not is_distributed():
        return [size]
    local = torch.tensor([size], dtype=torch.int64, device=device)
    staged = _stage(local)
    sizes = [torch.zeros_like(staged) for _ in range(get_world_size())]
    dist.all_gather(sizes, staged)
    return [int(s.item()) for s in sizes]


def all_gather_varlen(
    tensor: torch.Tensor,
    sizes: Optional[List[int]] = None,
    dim: int = 0
) -> torch.Tensor:
    """
    Concatenate tensors of different lengths along ``dim`` in rank order.

    ``torch.distributed.all_gather`` needs equal shapes, so every rank pads
    its contribution to the largest length and the padding is trimmed after
    the exchange.

    Parameters
    ----------
    tensor : torch.Tensor
        Local contribution; all dimensions except ``dim`` must agree across ranks
    sizes : List[int], optional
        Length along ``dim`` of every rank's contribution. Exchanged with an
        extra collective when not given.
    dim : int
        Concatenation dimension

    Returns
    -------
    torch.Tensor
        Same result on every rank, on ``tensor.device``
    """
    if not is_distributed():
        return tensor.clone()
    world_size = get_world_size()
    if sizes is None:
        sizes = all_gather_sizes(tensor.size(dim), device=tensor.device)
    if len(sizes) != world_size:
        raise DimensionMismatch("sizes", len(sizes), world_size)
    if sizes[get_rank()] != tensor.size(dim):
        raise DimensionMismatch("tensor", tuple(tensor.shape), f"size {sizes[get_rank()]} along dim {dim}")

    moved = tensor.movedim(dim, 0)
    max_size = max(sizes)
    padded = torch.zeros((max_size,) + tuple(moved.shape[1:]), dtype=tensor.dtype, device=tensor.device)
    if padded.numel() == 0:
        # nothing to exchange, shapes already agree on every rank
        shape = (sum(sizes),) + tuple(moved.shape[1:])
        return torch.zeros(shape, dtype=tensor.dtype, device=tensor.device).movedim(0, dim)
    padded[:moved.size(0)] = moved
    padded = _stage(padded)

    gathered = [torch.zeros_like(padded) for _ in range(world_size)]
    dist.all_gather(gathered, padded)

    pieces = [part[:size] for part, size in zip(gathered, sizes)]
    return torch.cat(pieces, dim=0).movedim(0, dim).to(tensor.device)
