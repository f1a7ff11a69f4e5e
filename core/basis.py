"""
Lagrange finite elements on the reference tetrahedron (degree 1 and 2).

Local DoF ordering: the four vertices, then (degree 2) the six edge midpoints
in the order of EDGES, which matches VTK's quadratic tetrahedron.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from .types import SUPPORTED_DEGREES, FloatArray

EDGES = ((0, 1), (1, 2), (0, 2), (0, 3), (1, 3), (2, 3))

_REF_VERTICES = np.array(
    [[0.0, 0.0, 0.0], [1.0, 0.0, 0.0], [0.0, 1.0, 0.0], [0.0, 0.0, 1.0]],
    dtype=np.float64,
)

# Gradients of the barycentric coordinates with respect to reference coordinates.
_BARY_GRADS = np.array(
    [[-1.0, -1.0, -1.0], [1.0, 0.0, 0.0], [0.0, 1.0, 0.0], [0.0, 0.0, 1.0]],
    dtype=np.float64,
)


def barycentric(ref_points: FloatArray) -> FloatArray:
    ref_points = np.asarray(ref_points, dtype=np.float64)
    lam0 = 1.0 - ref_points.sum(axis=-1)
    return np.concatenate([lam0[..., None], ref_points], axis=-1)


@dataclass(frozen=True, slots=True)
class LagrangeTet:
    degree: int

    def __post_init__(self) -> None:
        if int(self.degree) not in SUPPORTED_DEGREES:
            raise ValueError(f"Unsupported degree {self.degree}; supported: {list(SUPPORTED_DEGREES)}")

    @property
    def dofs_per_cell(self) -> int:
        return 4 if self.degree == 1 else 10

    def support_points(self) -> FloatArray:
        """Reference coordinates of the local DoFs, shape (dofs_per_cell, 3)."""
        if self.degree == 1:
            return _REF_VERTICES.copy()
        mids = np.array([0.5 * (_REF_VERTICES[i] + _REF_VERTICES[j]) for i, j in EDGES])
        return np.concatenate([_REF_VERTICES, mids], axis=0)

    def values(self, ref_points: FloatArray) -> FloatArray:
        """Shape function values, shape (n_points, dofs_per_cell)."""
        lam = barycentric(ref_points)
        if self.degree == 1:
            return lam
        vert = lam * (2.0 * lam - 1.0)
        edge = np.stack([4.0 * lam[..., i] * lam[..., j] for i, j in EDGES], axis=-1)
        return np.concatenate([vert, edge], axis=-1)

    def ref_gradients(self, ref_points: FloatArray) -> FloatArray:
        """Shape function gradients in reference coordinates, shape (n_points, dofs_per_cell, 3)."""
        lam = barycentric(ref_points)
        n_pts = lam.shape[0]
        if self.degree == 1:
            return np.broadcast_to(_BARY_GRADS, (n_pts, 4, 3)).copy()
        vert = (4.0 * lam - 1.0)[..., None] * _BARY_GRADS[None, :, :]
        edge = np.stack(
            [
                4.0 * (lam[:, i, None] * _BARY_GRADS[j] + lam[:, j, None] * _BARY_GRADS[i])
                for i, j in EDGES
            ],
            axis=1,
        )
        return np.concatenate([vert, edge], axis=1)
