"""
Time integration of the Fisher-Kolmogorov problem.

Loop:
- time starts at 0 with the interpolated initial condition;
- each step advances time += dt, snapshots u_old, runs Newton and reports
  diagnostics through on_step(step, t, solution, diag);
- the loop runs while time < T - 0.5 dt, i.e. round(T / dt) steps without
  floating-point drift adding or dropping one.

Newton or CG hitting their caps does not stop the loop; non-finite values do
(NumericalBreakdownError propagates).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from assembly.residual_global import GlobalSystem, make_global_system
from core.discretization import Discretization
from core.field import DistributedField
from core.types import CaseConfig
from diagnostics.error_norms import compute_error, field_range, integrate_field
from solvers.newton import solve_newton
from solvers.nonlinear_context import build_nonlinear_context_for_step
from solvers.nonlinear_types import NewtonStatus, NonlinearDiagnostics

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class StepDiagnostics:
    """Diagnostics for a single timestep."""

    step: int
    t_old: float
    t_new: float
    dt: float

    newton_status: NewtonStatus
    newton_iterations: int
    newton_residual: float
    linear_iterations: int

    u_min: float
    u_max: float
    mass: float

    errors: Dict[str, float] = field(default_factory=dict)
    newton_history: List[float] = field(default_factory=list)


@dataclass(slots=True)
class StepResult:
    """Result of a single timestep."""

    solution: DistributedField
    diag: StepDiagnostics
    nonlinear: NonlinearDiagnostics


@dataclass(slots=True)
class TimeLoopResult:
    n_steps: int
    t_final: float
    solution: DistributedField
    steps: List[StepDiagnostics] = field(default_factory=list)

    @property
    def all_converged(self) -> bool:
        return all(d.newton_status == NewtonStatus.CONVERGED for d in self.steps)


OnStep = Callable[[int, float, DistributedField, Optional[StepDiagnostics]], None]


def count_time_steps(T: float, dt: float) -> int:
    """Number of steps taken by the guarded loop (time += dt while time < T - dt/2)."""
    if dt <= 0.0:
        raise ValueError(f"dt must be positive, got {dt}")
    time = 0.0
    n = 0
    while time < T - 0.5 * dt:
        time += dt
        n += 1
    return n


def measure_errors(
    disc: Discretization, cfg: CaseConfig, solution: DistributedField, t: float
) -> Dict[str, float]:
    exact = disc.coefficients.exact
    if exact is None:
        return {}
    return {name: compute_error(disc, solution, exact, t, name) for name in cfg.verification.norms}


def advance_one_step(
    disc: Discretization,
    cfg: CaseConfig,
    solution: DistributedField,
    t_old: float,
    step_id: int,
    *,
    system: Optional[GlobalSystem] = None,
) -> StepResult:
    """Advance solution (in place) from t_old to t_old + dt."""
    if system is None:
        system = make_global_system(disc)
    dt = float(cfg.time.dt)

    ctx = build_nonlinear_context_for_step(cfg, disc, system, solution, t_old=t_old, dt=dt)
    res = solve_newton(ctx, solution)
    nl = res.diag

    u_min, u_max = field_range(disc, solution)
    diag = StepDiagnostics(
        step=int(step_id),
        t_old=ctx.t_old,
        t_new=ctx.t_new,
        dt=dt,
        newton_status=nl.status,
        newton_iterations=nl.n_iter,
        newton_residual=nl.res_norm_2,
        linear_iterations=int(sum(nl.linear_iterations)),
        u_min=u_min,
        u_max=u_max,
        mass=integrate_field(disc, solution),
        errors=measure_errors(disc, cfg, solution, ctx.t_new),
        newton_history=list(nl.history_res_norm),
    )
    return StepResult(solution=solution, diag=diag, nonlinear=nl)


def run_time_loop(
    disc: Discretization,
    cfg: CaseConfig,
    solution: DistributedField,
    on_step: Optional[OnStep] = None,
    max_steps: Optional[int] = None,
) -> TimeLoopResult:
    """Integrate from t = 0 to T; solution holds u0 on entry and u(T) on return."""
    T = float(cfg.time.T)
    dt = float(cfg.time.dt)
    system = make_global_system(disc)

    time = 0.0
    step = 0
    steps: List[StepDiagnostics] = []
    while time < T - 0.5 * dt:
        if max_steps is not None and step >= int(max_steps):
            logger.info("Stopping after max_steps=%d at t=%.6e", max_steps, time)
            break
        step += 1
        res = advance_one_step(disc, cfg, solution, time, step, system=system)
        time = res.diag.t_new
        steps.append(res.diag)
        _log_step(res.diag)
        if on_step is not None:
            on_step(step, time, solution, res.diag)

    return TimeLoopResult(n_steps=step, t_final=time, solution=solution, steps=steps)


def _log_step(d: StepDiagnostics) -> None:
    err = " ".join(f"{k}={v:.3e}" for k, v in d.errors.items())
    logger.info(
        "step=%d t=[%.6e -> %.6e] newton=%s iters=%d res=%.3e cg=%d u[min,max]=[%.4e, %.4e] mass=%.6e%s",
        d.step,
        d.t_old,
        d.t_new,
        d.newton_status.value,
        d.newton_iterations,
        d.newton_residual,
        d.linear_iterations,
        d.u_min,
        d.u_max,
        d.mass,
        f" {err}" if err else "",
    )
