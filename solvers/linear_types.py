"""
Result of one Krylov solve, shared by the SciPy and PETSc backends.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import numpy as np

from core.types import FloatArray


@dataclass(slots=True)
class LinearSolveResult:
    """converged=False means the iteration cap was hit; x is then the last iterate."""

    x: FloatArray
    converged: bool
    n_iter: int
    residual_norm: float
    rel_residual: float
    method: str
    message: Optional[str] = None
    diag: Dict[str, Any] = field(default_factory=dict)


def zero_rhs_result(n: int, method: str) -> LinearSolveResult:
    """A x = 0 has the solution x = 0; no iterations are spent on it."""
    return LinearSolveResult(
        x=np.zeros(int(n), dtype=np.float64),
        converged=True,
        n_iter=0,
        residual_norm=0.0,
        rel_residual=0.0,
        method=method,
    )
