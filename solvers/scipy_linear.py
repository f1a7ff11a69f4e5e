"""
SciPy backend: preconditioned conjugate gradients for the SPD Newton system.

Stopping rule: ||b - A x|| <= tolerance_factor * ||b|| or max_iterations.
Hitting the iteration cap is not an error: the last iterate is returned with
converged=False and a warning is logged.
"""

from __future__ import annotations

import logging
from typing import Optional

import numpy as np
import scipy.sparse as sp
import scipy.sparse.linalg as spla

from core.types import CaseConfig, CaseLinear
from solvers.linear_types import LinearSolveResult, zero_rhs_result

logger = logging.getLogger(__name__)


def _as_csr(A) -> sp.csr_matrix:
    """Ensure matrix is CSR sparse format."""
    if sp.issparse(A):
        return A.tocsr()
    if isinstance(A, np.ndarray):
        if A.ndim != 2:
            raise TypeError(f"Expected 2D array for A, got ndim={A.ndim}")
        return sp.csr_matrix(A)
    raise TypeError(f"Unsupported matrix type for A: {type(A)}")


def ssor_preconditioner(A: sp.csr_matrix, omega: float = 1.0) -> spla.LinearOperator:
    """
    Symmetric SOR: M^{-1} r = omega (2 - omega) (D + omega U)^{-1} D (D + omega L)^{-1} r.
    """
    diag = A.diagonal()
    if np.any(diag == 0.0):
        raise ValueError("SSOR preconditioner requires a nonzero diagonal.")
    lower = sp.tril(A, k=-1, format="csr")
    upper = sp.triu(A, k=1, format="csr")
    D = sp.diags(diag, format="csr")
    fwd = (D + omega * lower).tocsr()
    bwd = (D + omega * upper).tocsr()
    scale = omega * (2.0 - omega)

    def _apply(r):
        y = spla.spsolve_triangular(fwd, np.ravel(r), lower=True)
        return scale * spla.spsolve_triangular(bwd, diag * y, lower=False)

    return spla.LinearOperator(A.shape, matvec=_apply, dtype=np.float64)


def jacobi_preconditioner(A: sp.csr_matrix) -> spla.LinearOperator:
    diag = A.diagonal()
    if np.any(diag == 0.0):
        raise ValueError("Jacobi preconditioner requires a nonzero diagonal.")
    inv = 1.0 / diag
    return spla.LinearOperator(A.shape, matvec=lambda r: inv * np.ravel(r), dtype=np.float64)


def build_preconditioner(A: sp.csr_matrix, linear: CaseLinear) -> Optional[spla.LinearOperator]:
    kind = str(linear.preconditioner).lower()
    if kind == "ssor":
        return ssor_preconditioner(A, omega=float(linear.relaxation))
    if kind == "jacobi":
        return jacobi_preconditioner(A)
    if kind == "none":
        return None
    raise ValueError(f"Unknown preconditioner {linear.preconditioner!r}")


def solve_linear_system_scipy(
    A,
    b: np.ndarray,
    cfg: CaseConfig,
    x0: Optional[np.ndarray] = None,
) -> LinearSolveResult:
    """Solve A x = b with CG (+ SSOR/Jacobi) using cfg.linear."""
    A_csr = _as_csr(A)
    if A_csr.shape[0] != A_csr.shape[1]:
        raise ValueError(f"A must be square, got shape {A_csr.shape}")
    N = A_csr.shape[0]

    b = np.asarray(b, dtype=np.float64)
    if b.shape != (N,):
        raise ValueError(f"b shape {b.shape} does not match A dimension {N}")
    if x0 is not None:
        x0 = np.asarray(x0, dtype=np.float64)
        if x0.shape != (N,):
            raise ValueError(f"x0 shape {x0.shape} does not match A dimension {N}")

    linear = cfg.linear
    method = f"cg+{str(linear.preconditioner).lower()}"
    rtol = float(linear.tolerance_factor)
    max_it = int(linear.max_iterations)

    b_norm = float(np.linalg.norm(b))
    if b_norm == 0.0:
        return zero_rhs_result(N, method)

    M = build_preconditioner(A_csr, linear)

    n_iter = 0

    def _count(_xk) -> None:
        nonlocal n_iter
        n_iter += 1

    x, info = spla.cg(A_csr, b, x0=x0, rtol=rtol, atol=0.0, maxiter=max_it, M=M, callback=_count)
    if info < 0:
        msg = f"CG breakdown (info={info})"
        logger.error(msg)
        raise RuntimeError(msg)

    r = b - A_csr.dot(x)
    res_norm = float(np.linalg.norm(r))
    rel = res_norm / b_norm
    converged = info == 0

    if not converged:
        logger.warning(
            "Linear solve not converged: iterations=%d residual=%.3e rel=%.3e method=%s rtol=%.3e",
            n_iter,
            res_norm,
            rel,
            method,
            rtol,
        )
    else:
        logger.debug("Linear solve converged: iterations=%d rel=%.3e method=%s", n_iter, rel, method)

    return LinearSolveResult(
        x=np.asarray(x, dtype=np.float64),
        converged=converged,
        n_iter=n_iter,
        residual_norm=res_norm,
        rel_residual=rel,
        method=method,
        message=None if converged else f"CG reached max_iterations={max_it}",
    )
