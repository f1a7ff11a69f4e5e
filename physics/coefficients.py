"""
Coefficient evaluators: diffusion tensor D(x), forcing f(x, t), initial data u0(x).

All evaluators take points of shape (..., 3) and are pure. Tensors come back
with shape (..., 3, 3).

Anisotropic tensors follow D = d_ext I + d_axn n (x) n, where n is a unit
fibre direction:
- radial: n = (x - center) / |x - center|
- circumferential: n is the unit tangent of circles around the z axis through center
- axonal: n is a fixed direction
Where the fibre direction is undefined (on the center or the axis) n = 0.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import partial
from typing import Callable, Optional

import numpy as np

from core.types import CaseConfig, FloatArray, Vec3
from physics.initial import build_initial
from physics.manufactured import ManufacturedSolution

logger = logging.getLogger(__name__)

DiffusionFn = Callable[[FloatArray, float], FloatArray]
ForcingFn = Callable[[FloatArray, float], FloatArray]

_DIRECTION_EPS = 1.0e-14


def _unit(vec: FloatArray) -> FloatArray:
    norm = np.linalg.norm(vec, axis=-1, keepdims=True)
    safe = np.where(norm > _DIRECTION_EPS, norm, 1.0)
    return np.where(norm > _DIRECTION_EPS, vec / safe, 0.0)


def _fibre_tensor(n: FloatArray, d_ext: float, d_axn: float) -> FloatArray:
    eye = np.eye(3, dtype=np.float64)
    return d_ext * eye + d_axn * np.einsum("...i,...j->...ij", n, n)


def isotropic_tensor(points: FloatArray, t: float, d_ext: float) -> FloatArray:
    points = np.asarray(points, dtype=np.float64)
    return np.broadcast_to(d_ext * np.eye(3), points.shape[:-1] + (3, 3)).copy()


def radial_tensor(points: FloatArray, t: float, d_ext: float, d_axn: float, center: Vec3) -> FloatArray:
    rel = np.asarray(points, dtype=np.float64) - np.asarray(center, dtype=np.float64)
    return _fibre_tensor(_unit(rel), d_ext, d_axn)


def circumferential_tensor(
    points: FloatArray, t: float, d_ext: float, d_axn: float, center: Vec3
) -> FloatArray:
    rel = np.asarray(points, dtype=np.float64) - np.asarray(center, dtype=np.float64)
    tangent = np.stack([-rel[..., 1], rel[..., 0], np.zeros_like(rel[..., 0])], axis=-1)
    return _fibre_tensor(_unit(tangent), d_ext, d_axn)


def axonal_tensor(
    points: FloatArray, t: float, d_ext: float, d_axn: float, direction: Vec3
) -> FloatArray:
    points = np.asarray(points, dtype=np.float64)
    n = _unit(np.asarray(direction, dtype=np.float64))
    n = np.broadcast_to(n, points.shape)
    return _fibre_tensor(n, d_ext, d_axn)


def constant_forcing(points: FloatArray, t: float, value: float) -> FloatArray:
    points = np.asarray(points, dtype=np.float64)
    return np.full(points.shape[:-1], float(value), dtype=np.float64)


@dataclass(frozen=True, slots=True)
class CoefficientSet:
    diffusion: DiffusionFn
    forcing: ForcingFn
    initial: Callable[[FloatArray], FloatArray]
    exact: Optional[ManufacturedSolution] = None


def build_diffusion(cfg: CaseConfig) -> DiffusionFn:
    diff = cfg.physics.diffusion
    kind = str(diff.tensor_type).lower()
    if kind == "isotropic":
        return partial(isotropic_tensor, d_ext=diff.d_ext)
    if kind == "radial":
        return partial(radial_tensor, d_ext=diff.d_ext, d_axn=diff.d_axn, center=diff.center)
    if kind == "circumferential":
        return partial(circumferential_tensor, d_ext=diff.d_ext, d_axn=diff.d_axn, center=diff.center)
    if kind == "axonal":
        return partial(axonal_tensor, d_ext=diff.d_ext, d_axn=diff.d_axn, direction=diff.axon_direction)
    raise ValueError(f"Unknown diffusion tensor type {diff.tensor_type!r}")


def build_coefficients(cfg: CaseConfig) -> CoefficientSet:
    diffusion = build_diffusion(cfg)
    if cfg.verification.manufactured:
        exact = ManufacturedSolution(d=float(cfg.physics.diffusion.d_ext), alpha=float(cfg.physics.alpha))
        logger.info("Using manufactured solution (d=%.3e, alpha=%.3e)", exact.d, exact.alpha)
        return CoefficientSet(
            diffusion=diffusion,
            forcing=exact.forcing,
            initial=exact.initial,
            exact=exact,
        )
    return CoefficientSet(
        diffusion=diffusion,
        forcing=partial(constant_forcing, value=cfg.physics.forcing),
        initial=build_initial(cfg.physics.initial),
    )
