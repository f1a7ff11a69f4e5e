"""
Error norms against a reference solution and simple field integrals.

Errors are integrated on the owned cells with the degree + 2 quadrature and
combined across partitions (sqrt of summed squares, or max for Linf).
"""

from __future__ import annotations

from enum import Enum
from typing import Iterator, Protocol

import numpy as np

from core.discretization import Discretization
from core.fe_values import reinit
from core.field import DistributedField
from core.types import FloatArray
from parallel.comm import allreduce_scalar

_CELL_BATCH = 4096


class NormType(str, Enum):
    L2 = "L2"
    H1_SEMINORM = "H1_seminorm"
    H1 = "H1"
    LINF = "Linf"


class ExactSolution(Protocol):
    def value(self, points: FloatArray, t: float) -> FloatArray: ...

    def gradient(self, points: FloatArray, t: float) -> FloatArray: ...


def _owned_batches(disc: Discretization) -> Iterator[np.ndarray]:
    owned = disc.dof_handler.owned_cells(disc.rank)
    for start in range(0, owned.size, _CELL_BATCH):
        yield owned[start : start + _CELL_BATCH]


def compute_error(
    disc: Discretization,
    solution: DistributedField,
    exact: ExactSolution,
    t: float,
    norm: NormType | str = NormType.L2,
) -> float:
    """Global error ||u_h - u(t)|| in the requested norm (collective)."""
    norm = NormType(norm)
    need_values = norm in (NormType.L2, NormType.H1, NormType.LINF)
    need_grads = norm in (NormType.H1_SEMINORM, NormType.H1)

    local_sq = 0.0
    local_max = 0.0
    for cells in _owned_batches(disc):
        fev = reinit(disc.dof_handler, cells, disc.error_quadrature)
        xq = fev.quadrature_points
        if need_values:
            diff = fev.function_values(solution) - exact.value(xq, t)
            if norm == NormType.LINF:
                local_max = max(local_max, float(np.max(np.abs(diff))) if diff.size else 0.0)
            else:
                local_sq += float(np.sum(diff**2 * fev.JxW))
        if need_grads:
            gdiff = fev.function_gradients(solution) - exact.gradient(xq, t)
            local_sq += float(np.sum(np.sum(gdiff**2, axis=-1) * fev.JxW))

    if norm == NormType.LINF:
        return allreduce_scalar(disc.comm, local_max, op="max")
    return float(np.sqrt(allreduce_scalar(disc.comm, local_sq, op="sum")))


def integrate_field(disc: Discretization, solution: DistributedField) -> float:
    """Integral of the field over the domain (collective)."""
    fev = disc.fe_values
    local = float(np.sum(fev.function_values(solution) * fev.JxW)) if fev.n_cells else 0.0
    return allreduce_scalar(disc.comm, local, op="sum")


def field_range(disc: Discretization, solution: DistributedField) -> tuple[float, float]:
    """(min, max) of the owned DoF values across partitions (collective)."""
    owned = solution.owned_values()
    lo = float(owned.min()) if owned.size else np.inf
    hi = float(owned.max()) if owned.size else -np.inf
    return allreduce_scalar(disc.comm, lo, op="min"), allreduce_scalar(disc.comm, hi, op="max")
