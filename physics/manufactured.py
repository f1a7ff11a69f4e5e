"""
Manufactured solution for verification runs on the unit cube:

    u(x, t) = exp(-t) cos(pi x) cos(pi y) cos(pi z)

Its normal derivative vanishes on every face of [0, 1]^3, so it satisfies the
zero-flux boundary condition. With D = d I the matching source term is

    f = u_t - d lap(u) - alpha u (1 - u) = (3 pi^2 d - 1) u - alpha u (1 - u).
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from core.types import FloatArray


@dataclass(frozen=True, slots=True)
class ManufacturedSolution:
    d: float = 1.0
    alpha: float = 0.1

    def value(self, points: FloatArray, t: float) -> FloatArray:
        p = np.pi * np.asarray(points, dtype=np.float64)
        return np.exp(-t) * np.cos(p[..., 0]) * np.cos(p[..., 1]) * np.cos(p[..., 2])

    def gradient(self, points: FloatArray, t: float) -> FloatArray:
        p = np.pi * np.asarray(points, dtype=np.float64)
        c = np.cos(p)
        s = np.sin(p)
        g = np.stack(
            [
                -s[..., 0] * c[..., 1] * c[..., 2],
                -c[..., 0] * s[..., 1] * c[..., 2],
                -c[..., 0] * c[..., 1] * s[..., 2],
            ],
            axis=-1,
        )
        return np.pi * np.exp(-t) * g

    def forcing(self, points: FloatArray, t: float) -> FloatArray:
        u = self.value(points, t)
        return (3.0 * np.pi**2 * self.d - 1.0) * u - self.alpha * u * (1.0 - u)

    def initial(self, points: FloatArray) -> FloatArray:
        return self.value(points, 0.0)
