"""
Collective helpers over an optional mpi4py communicator.

comm=None means a single serial partition: every collective is the identity.
"""

from __future__ import annotations

import numpy as np


def get_world_comm():
    """Return MPI.COMM_WORLD when mpi4py is installed, else None (serial)."""
    try:
        from mpi4py import MPI
    except ImportError:
        return None
    return MPI.COMM_WORLD


def comm_rank(comm) -> int:
    if comm is None:
        return 0
    return int(comm.Get_rank())


def comm_size(comm) -> int:
    if comm is None:
        return 1
    return int(comm.Get_size())


def allreduce_sum_inplace(comm, arr: np.ndarray) -> np.ndarray:
    """Sum arr across all partitions in place (blocking collective)."""
    if comm is None or comm_size(comm) == 1:
        return arr
    from mpi4py import MPI

    buf = np.ascontiguousarray(arr)
    comm.Allreduce(MPI.IN_PLACE, buf, op=MPI.SUM)
    if buf is not arr:
        arr[...] = buf
    return arr


def allreduce_scalar(comm, value: float, op: str = "sum") -> float:
    if comm is None or comm_size(comm) == 1:
        return float(value)
    from mpi4py import MPI

    mpi_op = {"sum": MPI.SUM, "max": MPI.MAX, "min": MPI.MIN}[op]
    return float(comm.allreduce(float(value), op=mpi_op))

