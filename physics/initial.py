from __future__ import annotations

from functools import partial
from typing import Callable

import numpy as np

from core.types import CaseInitial, FloatArray, Vec3

InitialFn = Callable[[FloatArray], FloatArray]


def constant_initial(points: FloatArray, value: float) -> FloatArray:
    points = np.asarray(points, dtype=np.float64)
    return np.full(points.shape[:-1], float(value), dtype=np.float64)


def ball_initial(points: FloatArray, value: float, center: Vec3, radius: float) -> FloatArray:
    """value inside the closed ball |x - center| <= radius, 0 outside."""
    points = np.asarray(points, dtype=np.float64)
    dist = np.linalg.norm(points - np.asarray(center, dtype=np.float64), axis=-1)
    return np.where(dist <= float(radius), float(value), 0.0)


def gaussian_initial(points: FloatArray, value: float, center: Vec3, radius: float) -> FloatArray:
    """value * exp(-|x - center|^2 / (2 radius^2))."""
    points = np.asarray(points, dtype=np.float64)
    r2 = np.sum((points - np.asarray(center, dtype=np.float64)) ** 2, axis=-1)
    return float(value) * np.exp(-r2 / (2.0 * float(radius) ** 2))


def build_initial(init: CaseInitial) -> InitialFn:
    kind = str(init.kind).lower()
    if kind == "constant":
        return partial(constant_initial, value=init.value)
    if kind == "ball":
        return partial(ball_initial, value=init.value, center=init.center, radius=init.radius)
    if kind == "gaussian":
        return partial(gaussian_initial, value=init.value, center=init.center, radius=init.radius)
    raise ValueError(f"Unknown initial condition kind {init.kind!r}")
