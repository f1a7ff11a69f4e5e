"""
Quadrature rules on the reference tetrahedron {x, y, z >= 0, x + y + z <= 1}.
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache

import numpy as np
from scipy.special import roots_jacobi

from .types import FloatArray

REFERENCE_VOLUME = 1.0 / 6.0


@dataclass(frozen=True, slots=True)
class QuadratureRule:
    points: FloatArray  # (n_q, 3) reference coordinates
    weights: FloatArray  # (n_q,), sums to 1/6

    @property
    def size(self) -> int:
        return int(self.weights.shape[0])


def _gauss_jacobi_unit(n: int, alpha: float) -> tuple[FloatArray, FloatArray]:
    """Nodes/weights on [0, 1] for the weight (1 - t)^alpha."""
    x, w = roots_jacobi(n, alpha, 0.0)
    t = 0.5 * (x + 1.0)
    w = w / 2.0 ** (alpha + 1.0)
    return t, w


@lru_cache(maxsize=None)
def gauss_simplex(n_points_1d: int) -> QuadratureRule:
    """
    Conical-product Gauss rule with n_points_1d points per collapsed direction.

    Exact for polynomials of total degree 2 * n_points_1d - 1. Uses the collapse
    x = a, y = b (1 - a), z = c (1 - a)(1 - b), with Jacobian (1 - a)^2 (1 - b).
    """
    n = int(n_points_1d)
    if n < 1:
        raise ValueError(f"n_points_1d must be >= 1, got {n}")

    a, wa = _gauss_jacobi_unit(n, 2.0)
    b, wb = _gauss_jacobi_unit(n, 1.0)
    c, wc = _gauss_jacobi_unit(n, 0.0)

    A, B, C = np.meshgrid(a, b, c, indexing="ij")
    WA, WB, WC = np.meshgrid(wa, wb, wc, indexing="ij")

    x = A
    y = B * (1.0 - A)
    z = C * (1.0 - A) * (1.0 - B)
    points = np.stack([x.ravel(), y.ravel(), z.ravel()], axis=-1)
    weights = (WA * WB * WC).ravel()

    points.flags.writeable = False
    weights.flags.writeable = False
    return QuadratureRule(points=points, weights=weights)
