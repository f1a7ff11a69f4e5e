"""
Global Newton system: Jacobian J(u) and residual R(u) = -F(u) for one step.

Assembly protocol (every call):
  zero -> loop over owned cells in batches -> element kernel -> scatter-add
  -> finalize (sum partition contributions; collective).

Cells owned by other partitions are skipped; their contributions arrive in
the finalize step. Repeated calls with the same inputs give identical output.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Dict, Iterator

import numpy as np
import scipy.sparse as sp

from assembly.element_local import ElementSamples, assemble_element, residual_contributions
from core.field import DistributedField
from core.types import FloatArray
from parallel.comm import allreduce_sum_inplace

if TYPE_CHECKING:
    from core.discretization import Discretization
    from solvers.nonlinear_context import NonlinearContext

logger = logging.getLogger(__name__)

CELL_BATCH = 4096


@dataclass(slots=True)
class GlobalSystem:
    """Jacobian values (on the shared CSR pattern) and residual vector, sized once."""

    jacobian_data: FloatArray
    residual: DistributedField

    def jacobian(self, disc: "Discretization") -> sp.csr_matrix:
        return disc.pattern.to_csr(self.jacobian_data)


def make_global_system(disc: "Discretization") -> GlobalSystem:
    return GlobalSystem(
        jacobian_data=np.zeros(disc.pattern.nnz, dtype=np.float64),
        residual=disc.new_field(),
    )


def _batches(n: int, size: int = CELL_BATCH) -> Iterator[slice]:
    for start in range(0, n, size):
        yield slice(start, min(start + size, n))


def element_samples(ctx: "NonlinearContext", solution: DistributedField, sl: slice) -> ElementSamples:
    """Gather quadrature-point data of owned-cell batch sl for the current iterate."""
    fev = ctx.disc.fe_values.subset(sl)
    return ElementSamples(
        phi=fev.shape_values,
        grad_phi=fev.shape_gradients,
        JxW=fev.JxW,
        u=fev.function_values(solution),
        grad_u=fev.function_gradients(solution),
        u_old=ctx.u_old_q[sl],
        grad_u_old=ctx.grad_u_old_q[sl],
        D=ctx.disc.diffusion_q[sl],
        f_new=ctx.f_new_q[sl],
        f_old=ctx.f_old_q[sl],
    )


def assemble_system(ctx: "NonlinearContext", solution: DistributedField) -> GlobalSystem:
    """Fill ctx.system with J(u) and R(u) for the given iterate (collective)."""
    disc = ctx.disc
    system = ctx.system
    fev = disc.fe_values
    nnz = disc.pattern.nnz
    positions = disc.pattern.cell_positions[fev.cells]

    system.jacobian_data.fill(0.0)
    system.residual.zero()

    for sl in _batches(fev.n_cells):
        samples = element_samples(ctx, solution, sl)
        A_local, b_local = assemble_element(samples, ctx.coeffs)
        system.jacobian_data += np.bincount(positions[sl].ravel(), weights=A_local.ravel(), minlength=nnz)
        system.residual.add_local(fev.dof_indices[sl].ravel(), b_local.ravel())

    allreduce_sum_inplace(disc.comm, system.jacobian_data)
    system.residual.compress()
    return system


def assemble_residual_parts(ctx: "NonlinearContext", solution: DistributedField) -> Dict[str, FloatArray]:
    """Global residual split into time / diffusion / reaction / forcing vectors (collective)."""
    disc = ctx.disc
    fev = disc.fe_values
    parts: Dict[str, DistributedField] = {}

    for sl in _batches(fev.n_cells):
        samples = element_samples(ctx, solution, sl)
        local = residual_contributions(samples, ctx.coeffs)
        for name, b_local in local.items():
            if name not in parts:
                parts[name] = disc.new_field()
            parts[name].add_local(fev.dof_indices[sl].ravel(), b_local.ravel())

    out: Dict[str, FloatArray] = {}
    for name in ("time", "diffusion", "reaction", "forcing"):
        vec = parts.get(name) or disc.new_field()
        vec.compress()
        out[name] = np.array(vec.values)
    return out
