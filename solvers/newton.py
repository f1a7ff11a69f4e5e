"""
Newton iteration for one implicit step, with check-before-solve ordering:

    n_iter = 0
    loop:
        assemble J(u), R(u); r = ||R||
        r <= tol            -> CONVERGED (no solve this pass)
        solve J delta = R (CG); u += delta; n_iter += 1
        n_iter == max_iter  -> MAX_ITER_REACHED (warning, not an error)

n_iter counts linear solves and never exceeds max_iterations. The reported
residual is the one computed before the last solve; no extra assembly is
spent re-evaluating it after the final update.
"""

from __future__ import annotations

import logging
from typing import List

import numpy as np

from assembly.residual_global import assemble_system
from core.field import DistributedField
from solvers.nonlinear_context import NonlinearContext
from solvers.nonlinear_types import (
    NewtonStatus,
    NonlinearDiagnostics,
    NonlinearSolveResult,
    NumericalBreakdownError,
)
from solvers.solver_linear import solve_linear_system

logger = logging.getLogger(__name__)


def solve_newton(ctx: NonlinearContext, solution: DistributedField) -> NonlinearSolveResult:
    """Drive the residual of ctx below tolerance, updating solution in place."""
    cfg = ctx.cfg
    max_iter = int(cfg.newton.max_iterations)
    tol = float(cfg.newton.tolerance)
    disc = ctx.disc

    history: List[float] = []
    linear_iters: List[int] = []
    n_iter = 0
    status = NewtonStatus.ITERATING

    while status == NewtonStatus.ITERATING:
        system = assemble_system(ctx, solution)
        res_norm = system.residual.norm_l2()
        if not np.isfinite(res_norm):
            raise NumericalBreakdownError(
                f"Non-finite Newton residual at t={ctx.t_new:.6e} (iteration {n_iter})"
            )
        history.append(res_norm)
        logger.info("newton iter=%d t=%.6e res=%.6e", n_iter, ctx.t_new, res_norm)

        if res_norm <= tol:
            status = NewtonStatus.CONVERGED
            break

        lin = solve_linear_system(
            A=system.jacobian(disc),
            b=np.array(system.residual.values),
            cfg=cfg,
            comm=disc.comm,
        )
        linear_iters.append(int(lin.n_iter))
        logger.info("  CG iterations=%d rel=%.3e", lin.n_iter, lin.rel_residual)

        delta = np.asarray(lin.x, dtype=np.float64)
        if not np.all(np.isfinite(delta)):
            raise NumericalBreakdownError(
                f"Non-finite Newton update at t={ctx.t_new:.6e} (iteration {n_iter})"
            )
        solution.add_owned(delta)
        solution.update_ghosts()
        n_iter += 1

        if n_iter >= max_iter:
            status = NewtonStatus.MAX_ITER_REACHED
            logger.warning(
                "Newton reached max_iterations=%d at t=%.6e (last res=%.3e > tol=%.3e)",
                max_iter,
                ctx.t_new,
                res_norm,
                tol,
            )

    diag = NonlinearDiagnostics(
        status=status,
        method="newton",
        n_iter=n_iter,
        res_norm_2=history[-1],
        history_res_norm=history,
        linear_iterations=linear_iters,
        message=None if status == NewtonStatus.CONVERGED else "max_iterations reached",
    )
    return NonlinearSolveResult(u=solution, diag=diag)
