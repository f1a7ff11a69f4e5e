"""
Nonlinear solve context for a single timestep.

Everything the Newton residual depends on besides the current iterate is held
here explicitly: the discretization, the step coefficients, the frozen
previous-step solution and the forcing sampled at both time levels.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict

import numpy as np

from assembly.element_local import StepCoefficients
from assembly.residual_global import GlobalSystem
from core.discretization import Discretization
from core.field import DistributedField
from core.types import CaseConfig, FloatArray


@dataclass(slots=True)
class NonlinearContext:
    cfg: CaseConfig
    disc: Discretization
    system: GlobalSystem
    coeffs: StepCoefficients

    t_old: float
    t_new: float

    solution_old: DistributedField
    u_old_q: FloatArray  # (n_c, n_q)
    grad_u_old_q: FloatArray  # (n_c, n_q, 3)
    f_new_q: FloatArray  # (n_c, n_q)
    f_old_q: FloatArray  # (n_c, n_q)

    meta: Dict[str, Any] = field(default_factory=dict)

    @property
    def dt(self) -> float:
        return self.coeffs.dt

    @property
    def comm(self):
        return self.disc.comm

    @property
    def rank(self) -> int:
        return self.disc.rank


def build_nonlinear_context_for_step(
    cfg: CaseConfig,
    disc: Discretization,
    system: GlobalSystem,
    solution: DistributedField,
    *,
    t_old: float,
    dt: float | None = None,
) -> NonlinearContext:
    """Snapshot solution as u_old and sample everything that stays fixed during the step."""
    dt_val = float(cfg.time.dt if dt is None else dt)
    if dt_val <= 0.0:
        raise ValueError(f"dt must be positive, got {dt_val}")
    t_new = float(t_old) + dt_val

    solution_old = solution.copy()
    fev = disc.fe_values
    forcing = disc.coefficients.forcing
    coeffs = StepCoefficients(dt=dt_val, alpha=float(cfg.physics.alpha), theta=float(cfg.time.theta))
    if coeffs.theta < 1.0:
        f_old_q = np.asarray(forcing(fev.quadrature_points, float(t_old)), dtype=np.float64)
    else:
        f_old_q = np.zeros((fev.n_cells, fev.n_q), dtype=np.float64)

    return NonlinearContext(
        cfg=cfg,
        disc=disc,
        system=system,
        coeffs=coeffs,
        t_old=float(t_old),
        t_new=t_new,
        solution_old=solution_old,
        u_old_q=fev.function_values(solution_old),
        grad_u_old_q=fev.function_gradients(solution_old),
        f_new_q=np.asarray(forcing(fev.quadrature_points, t_new), dtype=np.float64),
        f_old_q=f_old_q,
    )
