"""
Newton iteration and the time loop.

Tests:
1. Step counting: round(T / dt) steps, no drift from repeated addition
2. Spatially uniform data follows the backward-Euler logistic recursion
3. Newton converges in a handful of iterations with a decreasing residual
4. tolerance = 0 stops at max_iterations with MAX_ITER_REACHED (no exception)
5. Non-finite iterate raises NumericalBreakdownError
6. alpha = 0, f = 0 conserves the integral of u
7. on_step callback and max_steps
"""

from __future__ import annotations

import numpy as np
import pytest

from assembly.residual_global import make_global_system
from core.discretization import build_discretization, interpolate
from diagnostics.error_norms import integrate_field
from solvers.newton import solve_newton
from solvers.nonlinear_context import build_nonlinear_context_for_step
from solvers.nonlinear_types import NewtonStatus, NumericalBreakdownError
from solvers.timestepper import advance_one_step, count_time_steps, run_time_loop


@pytest.mark.parametrize(
    "T, dt, expected",
    [(1.0, 0.25, 4), (1.0, 0.1, 10), (0.3, 0.1, 3), (0.7, 0.1, 7), (1.0, 1.0, 1), (0.04, 0.1, 0)],
)
def test_count_time_steps(T, dt, expected):
    assert count_time_steps(T, dt) == expected


def test_count_time_steps_rejects_nonpositive_dt():
    with pytest.raises(ValueError):
        count_time_steps(1.0, 0.0)


def test_time_loop_takes_expected_steps(make_case):
    cfg = make_case(mesh={"n_cells": 1}, time={"T": 1.0, "dt": 0.25})
    disc = build_discretization(cfg)
    u = interpolate(disc, disc.coefficients.initial)
    result = run_time_loop(disc, cfg, u)
    assert result.n_steps == 4
    assert result.t_final == pytest.approx(1.0)
    assert [d.step for d in result.steps] == [1, 2, 3, 4]
    assert result.all_converged


def _backward_euler_logistic(u0: float, alpha: float, dt: float, n: int) -> float:
    u = u0
    a = dt * alpha
    for _ in range(n):
        # a u^2 + (1 - a) u - u_old = 0, positive root
        u = (-(1.0 - a) + np.sqrt((1.0 - a) ** 2 + 4.0 * a * u)) / (2.0 * a)
    return u


@pytest.mark.parametrize("degree", [1, 2])
def test_uniform_state_follows_logistic_growth(make_case, degree):
    alpha, dt, T = 0.1, 0.01, 1.0
    cfg = make_case(
        mesh={"n_cells": 2, "degree": degree},
        physics={"alpha": alpha},
        initial={"kind": "constant", "value": 0.5},
        time={"T": T, "dt": dt},
        newton={"tolerance": 1e-12},
    )
    disc = build_discretization(cfg)
    u = interpolate(disc, disc.coefficients.initial)
    result = run_time_loop(disc, cfg, u)

    expected = _backward_euler_logistic(0.5, alpha, dt, result.n_steps)
    assert np.allclose(u.values, expected, rtol=0.0, atol=1e-8)
    assert np.allclose(u.values, 1.0 / (1.0 + np.exp(-alpha * T)), atol=1e-3)
    for d in result.steps:
        assert d.newton_status == NewtonStatus.CONVERGED
        assert d.newton_iterations <= 5
        assert d.u_min == pytest.approx(d.u_max)


def test_newton_residual_history_decreases(make_case):
    cfg = make_case(
        mesh={"n_cells": 2},
        physics={"alpha": 5.0},
        initial={"kind": "gaussian", "value": 0.9, "center": (0.5, 0.5, 0.5), "radius": 0.3},
        time={"dt": 0.2},
    )
    disc = build_discretization(cfg)
    u = interpolate(disc, disc.coefficients.initial)
    res = advance_one_step(disc, cfg, u, 0.0, 1)

    hist = res.nonlinear.history_res_norm
    assert res.nonlinear.converged
    assert len(hist) == res.nonlinear.n_iter + 1
    assert hist[-1] <= cfg.newton.tolerance
    assert all(b < a for a, b in zip(hist[:-1], hist[1:]))
    assert res.diag.linear_iterations == sum(res.nonlinear.linear_iterations)
    assert res.diag.t_new == pytest.approx(0.2)


def test_zero_tolerance_hits_iteration_cap(make_case):
    cfg = make_case(
        mesh={"n_cells": 2},
        physics={"alpha": 1.0},
        initial={"kind": "gaussian", "value": 0.7, "center": (0.3, 0.5, 0.5), "radius": 0.25},
        newton={"tolerance": 0.0, "max_iterations": 3},
    )
    disc = build_discretization(cfg)
    u = interpolate(disc, disc.coefficients.initial)
    ctx = build_nonlinear_context_for_step(cfg, disc, make_global_system(disc), u, t_old=0.0)
    res = solve_newton(ctx, u)

    assert res.diag.status == NewtonStatus.MAX_ITER_REACHED
    assert not res.diag.converged
    assert res.diag.n_iter == 3
    assert len(res.diag.history_res_norm) == 3
    assert len(res.diag.linear_iterations) == 3
    assert res.diag.message == "max_iterations reached"


def test_time_loop_continues_after_iteration_cap(make_case):
    cfg = make_case(
        mesh={"n_cells": 1},
        initial={"kind": "gaussian", "value": 0.7, "center": (0.3, 0.5, 0.5), "radius": 0.25},
        newton={"tolerance": 0.0, "max_iterations": 1},
        time={"T": 0.3, "dt": 0.1},
    )
    disc = build_discretization(cfg)
    u = interpolate(disc, disc.coefficients.initial)
    result = run_time_loop(disc, cfg, u)
    assert result.n_steps == 3
    assert not result.all_converged


def test_non_finite_iterate_raises(make_case):
    cfg = make_case(mesh={"n_cells": 1})
    disc = build_discretization(cfg)
    u = interpolate(disc, disc.coefficients.initial)
    ctx = build_nonlinear_context_for_step(cfg, disc, make_global_system(disc), u, t_old=0.0)
    bad = np.array(u.values)
    bad[0] = np.nan
    u.set_all(bad)
    with pytest.raises(NumericalBreakdownError):
        solve_newton(ctx, u)


@pytest.mark.parametrize("degree", [1, 2])
def test_mass_conserved_without_reaction(make_case, degree):
    cfg = make_case(
        mesh={"n_cells": 2, "degree": degree},
        physics={"alpha": 0.0, "forcing": 0.0},
        diffusion={"tensor_type": "axonal", "d_ext": 0.5, "d_axn": 1.0, "axon_direction": (1.0, 1.0, 0.0)},
        initial={"kind": "gaussian", "value": 1.0, "center": (0.2, 0.2, 0.2), "radius": 0.3},
        time={"T": 0.2, "dt": 0.05},
    )
    disc = build_discretization(cfg)
    u = interpolate(disc, disc.coefficients.initial)
    mass0 = integrate_field(disc, u)
    result = run_time_loop(disc, cfg, u)

    assert result.steps[-1].mass == pytest.approx(mass0, rel=1e-9)
    assert integrate_field(disc, u) == pytest.approx(mass0, rel=1e-9)
    # Diffusion only spreads the bump.
    assert result.steps[-1].u_max < float(np.max(interpolate(disc, disc.coefficients.initial).values))


def test_on_step_and_max_steps(make_case):
    cfg = make_case(mesh={"n_cells": 1}, time={"T": 1.0, "dt": 0.1})
    disc = build_discretization(cfg)
    u = interpolate(disc, disc.coefficients.initial)
    seen = []
    result = run_time_loop(
        disc, cfg, u, on_step=lambda step, t, sol, diag: seen.append((step, t, diag.step)), max_steps=3
    )
    assert result.n_steps == 3
    assert [s for s, _, _ in seen] == [1, 2, 3]
    assert [d for _, _, d in seen] == [1, 2, 3]
    assert seen[-1][1] == pytest.approx(0.3)
