"""
Backend selection for the Newton linear system J delta = R.

Both backends take the replicated SciPy CSR Jacobian and a full-length
right-hand side and return the full solution on every rank. Under MPI the
SciPy backend solves the whole system redundantly on each rank.
"""

from __future__ import annotations

import logging
from typing import Optional

import numpy as np

from core.types import CaseConfig
from parallel.comm import comm_size
from solvers.linear_types import LinearSolveResult
from solvers.petsc_linear import solve_linear_system_petsc
from solvers.scipy_linear import solve_linear_system_scipy

logger = logging.getLogger(__name__)

_BACKENDS = ("scipy", "petsc")


def solve_linear_system(
    A,
    b,
    cfg: CaseConfig,
    x0: Optional[np.ndarray] = None,
    comm=None,
) -> LinearSolveResult:
    backend = str(cfg.linear.backend).lower()
    if backend not in _BACKENDS:
        raise ValueError(f"Unknown linear backend {backend!r} (expected one of {list(_BACKENDS)}).")
    logger.debug(
        "linear solve: backend=%s n=%d nnz=%d ranks=%d",
        backend,
        A.shape[0],
        getattr(A, "nnz", -1),
        comm_size(comm),
    )

    if backend == "petsc":
        return solve_linear_system_petsc(A=A, b=b, cfg=cfg, x0=x0, comm=comm)
    return solve_linear_system_scipy(A=A, b=b, cfg=cfg, x0=x0)
