"""
Per-cell quadrature data for a batch of cells.

All arrays carry a leading cell axis so element kernels work on the whole batch
with einsum. Geometry is affine (straight-sided tetrahedra) for every degree.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import numpy as np

from .dofs import DofHandler
from .quadrature import QuadratureRule
from .types import FloatArray, IntArray

_DEGENERATE_REL_TOL = 1.0e-12


@dataclass(frozen=True, slots=True)
class FEValues:
    cells: IntArray  # (n_cells,) mesh cell ids
    dof_indices: IntArray  # (n_cells, n_loc)
    shape_values: FloatArray  # (n_q, n_loc)
    shape_gradients: FloatArray  # (n_cells, n_q, n_loc, 3)
    JxW: FloatArray  # (n_cells, n_q)
    quadrature_points: FloatArray  # (n_cells, n_q, 3)

    @property
    def n_cells(self) -> int:
        return int(self.cells.shape[0])

    @property
    def n_q(self) -> int:
        return int(self.shape_values.shape[0])

    @property
    def dofs_per_cell(self) -> int:
        return int(self.shape_values.shape[1])

    def subset(self, sl: slice) -> "FEValues":
        """View of a contiguous range of the batch."""
        return FEValues(
            cells=self.cells[sl],
            dof_indices=self.dof_indices[sl],
            shape_values=self.shape_values,
            shape_gradients=self.shape_gradients[sl],
            JxW=self.JxW[sl],
            quadrature_points=self.quadrature_points[sl],
        )

    def _local_values(self, field: Any) -> FloatArray:
        values = getattr(field, "values", field)
        values = np.asarray(values, dtype=np.float64)
        n_needed = int(self.dof_indices.max()) + 1 if self.dof_indices.size else 0
        if values.ndim != 1 or values.shape[0] < n_needed:
            raise ValueError(
                f"Field of shape {values.shape} cannot be evaluated on cells needing {n_needed} DoFs"
            )
        return values[self.dof_indices]

    def function_values(self, field: Any) -> FloatArray:
        """Field values at quadrature points, shape (n_cells, n_q)."""
        u_loc = self._local_values(field)
        return np.einsum("ql,cl->cq", self.shape_values, u_loc)

    def function_gradients(self, field: Any) -> FloatArray:
        """Field gradients at quadrature points, shape (n_cells, n_q, 3)."""
        u_loc = self._local_values(field)
        return np.einsum("cqld,cl->cqd", self.shape_gradients, u_loc)


def reinit(dof_handler: DofHandler, cells: IntArray, quadrature: QuadratureRule) -> FEValues:
    """
    Evaluate shape functions, mapped gradients and JxW on the given cells.

    Raises ValueError on a degenerate (zero or inverted) cell.
    """
    cells = np.asarray(cells, dtype=np.int64)
    fe = dof_handler.fe
    mesh = dof_handler.mesh

    verts = mesh.nodes[mesh.cells[cells]]  # (c, 4, 3)
    jac = np.transpose(verts[:, 1:, :] - verts[:, :1, :], (0, 2, 1))  # columns x_k - x_0
    det = np.linalg.det(jac) if cells.size else np.zeros(0)

    scale = np.max(np.abs(jac), axis=(1, 2)) ** 3 if cells.size else np.zeros(0)
    bad = det <= _DEGENERATE_REL_TOL * scale
    if np.any(bad):
        first = int(cells[np.flatnonzero(bad)[0]])
        raise ValueError(f"Degenerate or inverted cell {first} (det J = {det[bad][0]:.3e})")

    inv_jac = np.linalg.inv(jac) if cells.size else np.zeros((0, 3, 3))

    phi = fe.values(quadrature.points)
    grad_ref = fe.ref_gradients(quadrature.points)
    grad_phys = np.einsum("qlk,ckm->cqlm", grad_ref, inv_jac)

    JxW = det[:, None] * quadrature.weights[None, :]
    xq = verts[:, :1, :] + np.einsum("cij,qj->cqi", jac, quadrature.points)

    return FEValues(
        cells=cells,
        dof_indices=np.ascontiguousarray(dof_handler.cell_dofs[cells]),
        shape_values=phi,
        shape_gradients=grad_phys,
        JxW=JxW,
        quadrature_points=xq,
    )
