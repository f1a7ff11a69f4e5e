"""
PETSc backend: KSP CG + symmetric SOR on a distributed AIJ matrix.

The Newton system arrives as a replicated SciPy CSR matrix and right-hand
side; each rank hands PETSc only the rows of its ownership range. The solution
is gathered back to every rank.

Options set here (pc_sor_symmetric, pc_sor_omega) are only injected when the
user did not pass them on the command line, so -<prefix>ksp_* / -<prefix>pc_*
options still take precedence through setFromOptions().
"""

from __future__ import annotations

import logging
from typing import Any, Optional, Tuple

import numpy as np
import scipy.sparse as sp

from core.types import CaseConfig
from solvers.linear_types import LinearSolveResult, zero_rhs_result

logger = logging.getLogger(__name__)

_PC_TYPES = {"ssor": "sor", "jacobi": "jacobi", "none": "none"}


def _get_petsc():
    from parallel.mpi_bootstrap import bootstrap_mpi_before_petsc

    bootstrap_mpi_before_petsc()
    from petsc4py import PETSc

    return PETSc


def _petsc_comm(PETSc, comm):
    return PETSc.COMM_WORLD if comm is None else comm


def csr_to_petsc(A: sp.csr_matrix, b: np.ndarray, comm=None) -> Tuple[Any, Any]:
    """Build an MPI AIJ matrix and vector from replicated CSR data (rows split by PETSc)."""
    PETSc = _get_petsc()
    pcomm = _petsc_comm(PETSc, comm)
    A = sp.csr_matrix(A)
    N = A.shape[0]

    b_p = PETSc.Vec().createMPI((PETSc.DECIDE, N), comm=pcomm)
    r0, r1 = b_p.getOwnershipRange()
    n_local = r1 - r0

    rows = A[r0:r1]
    rows.sort_indices()
    csr = (
        rows.indptr.astype(PETSc.IntType),
        rows.indices.astype(PETSc.IntType),
        rows.data.astype(PETSc.ScalarType),
    )
    A_p = PETSc.Mat().createAIJ(size=((n_local, N), (n_local, N)), csr=csr, comm=pcomm)
    A_p.assemble()

    b_p.array[:] = np.asarray(b, dtype=np.float64)[r0:r1]
    b_p.assemble()
    return A_p, b_p


def _inject_option(opts, key: str, value) -> None:
    if opts.hasName(key):
        return
    opts.setValue(key, value)


def _gather_to_all(PETSc, x) -> np.ndarray:
    scatter, x_all = PETSc.Scatter.toAll(x)
    try:
        scatter.scatter(x, x_all, addv=PETSc.InsertMode.INSERT, mode=PETSc.ScatterMode.FORWARD)
        return np.asarray(x_all.getArray(), dtype=np.float64).copy()
    finally:
        scatter.destroy()
        x_all.destroy()


def solve_linear_system_petsc(
    A,
    b: np.ndarray,
    cfg: CaseConfig,
    x0: Optional[np.ndarray] = None,
    comm=None,
) -> LinearSolveResult:
    PETSc = _get_petsc()
    linear = cfg.linear
    b = np.asarray(b, dtype=np.float64)
    N = b.shape[0]
    if A.shape != (N, N):
        raise ValueError(f"A shape {A.shape} does not match b length {N}")

    b_norm = float(np.linalg.norm(b))
    pc_name = str(linear.preconditioner).lower()
    if b_norm == 0.0:
        return zero_rhs_result(N, f"cg+{_PC_TYPES[pc_name]}")

    A_p, b_p = csr_to_petsc(A, b, comm=comm)
    prefix = str(getattr(linear, "options_prefix", "") or "")

    ksp = PETSc.KSP().create(comm=A_p.getComm())
    try:
        ksp.setOptionsPrefix(prefix)
        ksp.setOperators(A_p, A_p)
        ksp.setType("cg")
        ksp.setNormType(PETSc.KSP.NormType.UNPRECONDITIONED)
        ksp.setTolerances(rtol=float(linear.tolerance_factor), atol=0.0, max_it=int(linear.max_iterations))

        pc = ksp.getPC()
        pc.setType(_PC_TYPES[pc_name])
        if pc_name == "ssor":
            opts = PETSc.Options(prefix)
            _inject_option(opts, "pc_sor_symmetric", None)
            _inject_option(opts, "pc_sor_omega", str(float(linear.relaxation)))

        ksp.setFromOptions()

        x = A_p.createVecRight()
        x.set(0.0)
        if x0 is not None:
            r0, r1 = x.getOwnershipRange()
            x.array[:] = np.asarray(x0, dtype=np.float64)[r0:r1]
            ksp.setInitialGuessNonzero(True)

        ksp.solve(b_p, x)

        reason = int(ksp.getConvergedReason())
        n_iter = int(ksp.getIterationNumber())
        method = f"{ksp.getType()}+{ksp.getPC().getType()}"
        x_all = _gather_to_all(PETSc, x)
    finally:
        ksp.destroy()
        A_p.destroy()
        b_p.destroy()

    if reason < 0 and reason != int(PETSc.KSP.ConvergedReason.DIVERGED_ITS):
        msg = f"PETSc KSP breakdown (reason={reason})"
        logger.error(msg)
        raise RuntimeError(msg)

    res_norm = float(np.linalg.norm(b - A.dot(x_all)))
    rel = res_norm / b_norm
    converged = reason > 0
    if not converged:
        logger.warning(
            "PETSc KSP not converged: reason=%d iterations=%d residual=%.3e rel=%.3e method=%s",
            reason,
            n_iter,
            res_norm,
            rel,
            method,
        )

    return LinearSolveResult(
        x=x_all,
        converged=converged,
        n_iter=n_iter,
        residual_norm=res_norm,
        rel_residual=rel,
        method=method,
        message=None if converged else f"PETSc KSP reached max_it (reason={reason})",
        diag={"ksp_reason": reason, "options_prefix": prefix},
    )
