"""
Global Newton system assembly.

Tests:
1. Jacobian equals -dR/du (central differences; residual is quadratic in u)
2. Diffusion part of the residual sums to zero (zero-flux boundary)
3. Residual parts add up to the assembled residual
4. Repeated assembly with unchanged inputs is bit-identical
5. Partition views (2 parts, one process) sum to the serial system
6. Element kernel input validation
"""

from __future__ import annotations

import numpy as np
import pytest

from assembly.element_local import StepCoefficients
from assembly.residual_global import assemble_residual_parts, assemble_system, make_global_system
from core.discretization import build_discretization, interpolate
from solvers.nonlinear_context import build_nonlinear_context_for_step


def _setup(cfg, *, rank=None, n_partitions=None, mesh=None):
    disc = build_discretization(cfg, mesh=mesh, rank=rank, n_partitions=n_partitions)
    u_old = interpolate(disc, disc.coefficients.initial)
    system = make_global_system(disc)
    ctx = build_nonlinear_context_for_step(cfg, disc, system, u_old, t_old=0.0)
    return disc, ctx


def _residual_at(ctx, disc, values):
    field = disc.new_field()
    field.set_all(values)
    return np.array(assemble_system(ctx, field).residual.values)


def _perturbed_state(disc):
    x = disc.dof_handler.support_points
    return 0.4 + 0.3 * np.sin(2.0 * x[:, 0]) * np.cos(x[:, 1] + x[:, 2])


@pytest.mark.parametrize(
    "degree, tensor, theta",
    [
        (1, "isotropic", 1.0),
        (2, "isotropic", 1.0),
        (1, "radial", 0.5),
        (2, "axonal", 0.5),
    ],
)
def test_jacobian_is_negative_residual_derivative(make_case, degree, tensor, theta):
    cfg = make_case(
        mesh={"n_cells": 1, "degree": degree},
        physics={"alpha": 1.5, "forcing": 0.7},
        diffusion={"tensor_type": tensor, "d_ext": 0.8, "d_axn": 2.0, "center": (0.3, 0.4, 0.5)},
        initial={"kind": "gaussian", "value": 0.9, "center": (0.5, 0.5, 0.5), "radius": 0.3},
        time={"dt": 0.05, "theta": theta},
    )
    disc, ctx = _setup(cfg)
    u = _perturbed_state(disc)

    field = disc.new_field()
    field.set_all(u)
    J = assemble_system(ctx, field).jacobian(disc).toarray()

    eps = 1e-6
    fd = np.zeros_like(J)
    for j in range(disc.n_dofs):
        up, um = u.copy(), u.copy()
        up[j] += eps
        um[j] -= eps
        fd[:, j] = -(_residual_at(ctx, disc, up) - _residual_at(ctx, disc, um)) / (2.0 * eps)

    assert np.allclose(J, fd, rtol=1e-6, atol=1e-8 * np.abs(J).max())


def test_jacobian_symmetric_for_isotropic_diffusion(make_case):
    cfg = make_case(mesh={"n_cells": 2, "degree": 2}, initial={"kind": "gaussian", "value": 0.5})
    disc, ctx = _setup(cfg)
    field = disc.new_field()
    field.set_all(_perturbed_state(disc))
    J = assemble_system(ctx, field).jacobian(disc)
    assert abs(J - J.T).max() <= 1e-12 * abs(J).max()


@pytest.mark.parametrize("degree", [1, 2])
def test_diffusion_residual_sums_to_zero(make_case, degree):
    cfg = make_case(mesh={"n_cells": 2, "degree": degree}, diffusion={"tensor_type": "radial"})
    disc, ctx = _setup(cfg)
    field = disc.new_field()
    field.set_all(_perturbed_state(disc))

    parts = assemble_residual_parts(ctx, field)
    assert set(parts) == {"time", "diffusion", "reaction", "forcing"}
    scale = np.abs(parts["diffusion"]).max()
    assert scale > 0.0
    assert abs(parts["diffusion"].sum()) <= 1e-12 * scale

    total = parts["time"] + parts["diffusion"] + parts["reaction"] + parts["forcing"]
    assert np.allclose(total, np.array(assemble_system(ctx, field).residual.values), atol=1e-14)


def test_residual_vanishes_for_steady_constant_state(make_case):
    # u = 1 is a fixed point of the logistic reaction with no forcing.
    cfg = make_case(initial={"kind": "constant", "value": 1.0}, physics={"alpha": 2.0})
    disc, ctx = _setup(cfg)
    res = _residual_at(ctx, disc, np.ones(disc.n_dofs))
    assert np.abs(res).max() < 1e-14


def test_assembly_is_idempotent(make_case):
    cfg = make_case(mesh={"n_cells": 2, "degree": 2}, initial={"kind": "gaussian"})
    disc, ctx = _setup(cfg)
    field = disc.new_field()
    field.set_all(_perturbed_state(disc))

    first = assemble_system(ctx, field)
    J1, R1 = first.jacobian_data.copy(), np.array(first.residual.values)
    second = assemble_system(ctx, field)
    assert np.array_equal(J1, second.jacobian_data)
    assert np.array_equal(R1, np.array(second.residual.values))


@pytest.mark.parametrize("degree", [1, 2])
def test_partition_views_sum_to_serial_system(make_case, degree):
    cfg = make_case(
        mesh={"n_cells": 2, "degree": degree},
        initial={"kind": "gaussian", "value": 0.8, "center": (0.2, 0.3, 0.4), "radius": 0.4},
        physics={"alpha": 1.0},
    )
    disc_serial, ctx_serial = _setup(cfg)
    u = _perturbed_state(disc_serial)
    serial = assemble_system(ctx_serial, _full_field(disc_serial, u))
    J_serial = serial.jacobian_data.copy()
    R_serial = np.array(serial.residual.values)

    J_sum = np.zeros_like(J_serial)
    R_sum = np.zeros_like(R_serial)
    owned = np.zeros(disc_serial.n_dofs, dtype=int)
    for rank in (0, 1):
        disc, ctx = _setup(cfg, rank=rank, n_partitions=2, mesh=disc_serial.mesh)
        assert disc.fe_values.n_cells < disc_serial.mesh.n_cells
        part = assemble_system(ctx, _full_field(disc, u))
        J_sum += part.jacobian_data
        R_sum += np.array(part.residual.values)
        owned += disc.owned_mask

    assert np.array_equal(owned, np.ones(disc_serial.n_dofs, dtype=int))
    assert np.allclose(J_sum, J_serial, rtol=0.0, atol=1e-13 * np.abs(J_serial).max())
    assert np.allclose(R_sum, R_serial, rtol=0.0, atol=1e-13 * np.abs(R_serial).max())


def _full_field(disc, values):
    field = disc.new_field()
    field.set_all(values)
    return field


@pytest.mark.parametrize("kwargs", [{"dt": 0.0, "alpha": 1.0}, {"dt": 0.1, "alpha": 1.0, "theta": 1.5}])
def test_step_coefficients_validation(kwargs):
    with pytest.raises(ValueError):
        StepCoefficients(**kwargs)
