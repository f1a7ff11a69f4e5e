"""
Linear solver backends for the SPD Newton system.

Tests:
1. SciPy CG agrees with a direct solve for every preconditioner
2. SSOR operator equals omega (2 - omega) (D + omega U)^-1 D (D + omega L)^-1
3. Zero right-hand side returns zero without iterating
4. Iteration cap returns converged=False instead of raising
5. Dispatcher validates the backend name
6. PETSc backend (skipped without petsc4py) matches SciPy
7. On assembled Newton systems ||J dx - r|| <= tolerance_factor ||r|| unless the cap was hit
"""

from __future__ import annotations

from types import SimpleNamespace

import numpy as np
import pytest
import scipy.sparse as sp
import scipy.sparse.linalg as spla

from assembly.residual_global import assemble_system, make_global_system
from core.discretization import build_discretization, interpolate
from core.types import CaseLinear
from solvers.nonlinear_context import build_nonlinear_context_for_step
from solvers.scipy_linear import solve_linear_system_scipy, ssor_preconditioner
from solvers.solver_linear import solve_linear_system


def _spd_matrix(n: int = 40) -> sp.csr_matrix:
    main = 2.5 * np.ones(n)
    off = -1.0 * np.ones(n - 1)
    far = -0.25 * np.ones(n - 5)
    return sp.diags([main, off, off, far, far], [0, -1, 1, -5, 5], format="csr")


def _cfg(**linear):
    return SimpleNamespace(linear=CaseLinear(**{"tolerance_factor": 1e-12, **linear}))


@pytest.mark.parametrize("pc", ["ssor", "jacobi", "none"])
def test_scipy_cg_matches_direct_solve(pc):
    A = _spd_matrix()
    b = np.linspace(-1.0, 2.0, A.shape[0])
    res = solve_linear_system_scipy(A, b, _cfg(preconditioner=pc, relaxation=1.2))

    assert res.converged
    assert res.method == f"cg+{pc}"
    assert res.n_iter > 0
    assert res.rel_residual <= 1e-10
    assert np.allclose(res.x, spla.spsolve(A.tocsc(), b), atol=1e-9)


def test_ssor_preconditioner_formula():
    A = _spd_matrix(12)
    omega = 1.3
    M = ssor_preconditioner(A, omega)
    dense = A.toarray()
    D = np.diag(np.diag(dense))
    L = np.tril(dense, k=-1)
    U = np.triu(dense, k=1)
    expected = omega * (2.0 - omega) * np.linalg.solve(D + omega * U, D @ np.linalg.solve(D + omega * L, np.eye(12)))

    r = np.arange(1.0, 13.0)
    assert np.allclose(M.matvec(r), expected @ r)


def test_zero_rhs_returns_zero():
    A = _spd_matrix(10)
    res = solve_linear_system_scipy(A, np.zeros(10), _cfg())
    assert res.converged
    assert res.n_iter == 0
    assert np.array_equal(res.x, np.zeros(10))
    assert res.method == "cg+ssor"
    assert res.diag == {}


def test_iteration_cap_is_soft():
    A = _spd_matrix(60)
    b = np.ones(60)
    res = solve_linear_system_scipy(A, b, _cfg(preconditioner="none", max_iterations=2))
    assert not res.converged
    assert res.n_iter == 2
    assert res.message is not None
    assert np.all(np.isfinite(res.x))


def test_shape_mismatch_rejected():
    with pytest.raises(ValueError):
        solve_linear_system_scipy(_spd_matrix(10), np.ones(9), _cfg())


def test_dense_input_accepted():
    A = _spd_matrix(8).toarray()
    b = np.ones(8)
    res = solve_linear_system_scipy(A, b, _cfg())
    assert np.allclose(A @ res.x, b, atol=1e-9)


def test_dispatch_rejects_unknown_backend():
    cfg = SimpleNamespace(linear=SimpleNamespace(backend="trilinos"))
    with pytest.raises(ValueError):
        solve_linear_system(_spd_matrix(4), np.ones(4), cfg)


def test_dispatch_to_scipy():
    A = _spd_matrix(16)
    b = np.ones(16)
    res = solve_linear_system(A, b, _cfg(backend="scipy"))
    assert res.method == "cg+ssor"
    assert np.allclose(A @ res.x, b, atol=1e-9)


def test_petsc_backend_matches_scipy():
    pytest.importorskip("petsc4py")
    from solvers.petsc_linear import solve_linear_system_petsc

    A = _spd_matrix()
    b = np.linspace(1.0, 3.0, A.shape[0])
    res = solve_linear_system_petsc(A, b, _cfg(backend="petsc", relaxation=1.0))

    assert res.converged
    assert res.method == "cg+sor"
    assert res.diag["ksp_reason"] > 0
    assert np.allclose(res.x, spla.spsolve(A.tocsc(), b), atol=1e-8)


@pytest.mark.parametrize("degree", [1, 2])
@pytest.mark.parametrize("tol", [1e-2, 1e-4, 1e-6])
def test_newton_system_meets_relative_tolerance(make_case, degree, tol):
    cfg = make_case(
        mesh={"n_cells": 2, "degree": degree},
        physics={"alpha": 2.0},
        diffusion={"tensor_type": "axonal", "d_ext": 1.0, "d_axn": 10.0, "axon_direction": (1.0, 0.5, 0.0)},
        initial={"kind": "gaussian", "value": 0.8, "center": (0.4, 0.5, 0.5), "radius": 0.3},
        time={"dt": 0.1},
        linear={"tolerance_factor": tol},
    )
    disc = build_discretization(cfg)
    u = interpolate(disc, disc.coefficients.initial)
    ctx = build_nonlinear_context_for_step(cfg, disc, make_global_system(disc), u, t_old=0.0)
    system = assemble_system(ctx, u)
    A = system.jacobian(disc)
    b = np.array(system.residual.values)
    assert np.linalg.norm(b) > 0.0

    res = solve_linear_system(A, b, cfg)

    bound = tol * np.linalg.norm(b) * (1.0 + 1e-8)
    assert np.linalg.norm(A @ res.x - b) <= bound or not res.converged
    assert res.converged
