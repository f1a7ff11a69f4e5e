"""
One-time setup of everything the time loop reads but never changes:
mesh + partition, finite element, quadratures, DoF numbering, the
quadrature-point arena of the owned cells, the Jacobian sparsity pattern and
the coefficient evaluators.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Optional

import numpy as np

from assembly.jacobian_pattern import JacobianPattern, build_jacobian_pattern
from parallel.comm import comm_rank, comm_size
from physics.coefficients import CoefficientSet, build_coefficients

from .basis import LagrangeTet
from .dofs import DofHandler, distribute_dofs
from .fe_values import FEValues, reinit
from .field import DistributedField
from .mesh import TetMesh, build_box_mesh, read_gmsh_mesh
from .quadrature import QuadratureRule, gauss_simplex
from .types import CaseConfig, FloatArray

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Discretization:
    mesh: TetMesh
    fe: LagrangeTet
    dof_handler: DofHandler
    quadrature: QuadratureRule
    error_quadrature: QuadratureRule
    fe_values: FEValues  # owned cells, assembly quadrature
    diffusion_q: FloatArray  # D at fe_values quadrature points, (n_c, n_q, 3, 3)
    pattern: JacobianPattern
    coefficients: CoefficientSet
    rank: int
    comm: object = None

    @property
    def n_dofs(self) -> int:
        return self.dof_handler.n_dofs

    @property
    def owned_mask(self) -> np.ndarray:
        return self.dof_handler.owned_mask(self.rank)

    def new_field(self) -> DistributedField:
        return DistributedField(self.n_dofs, self.owned_mask, self.comm)


def build_mesh(cfg: CaseConfig) -> TetMesh:
    if cfg.mesh.source == "file":
        return read_gmsh_mesh(cfg.paths.mesh_file)
    return build_box_mesh(cfg.mesh.n_cells, cfg.mesh.box_min, cfg.mesh.box_max)


def build_discretization(
    cfg: CaseConfig,
    comm=None,
    *,
    mesh: Optional[TetMesh] = None,
    rank: Optional[int] = None,
    n_partitions: Optional[int] = None,
) -> Discretization:
    """
    Build the discretization for this partition.

    rank / n_partitions default to the communicator's; overriding them lets a
    serial process build the view of one partition of a larger run.
    """
    rank = comm_rank(comm) if rank is None else int(rank)
    n_parts = comm_size(comm) if n_partitions is None else int(n_partitions)

    if mesh is None:
        mesh = build_mesh(cfg)
    if mesh.n_partitions != n_parts:
        mesh = mesh.with_partition(n_parts)

    fe = LagrangeTet(cfg.mesh.degree)
    dof_handler = distribute_dofs(mesh, fe)
    quadrature = gauss_simplex(fe.degree + 1)
    error_quadrature = gauss_simplex(fe.degree + 2)

    owned = dof_handler.owned_cells(rank)
    fev = reinit(dof_handler, owned, quadrature)
    coefficients = build_coefficients(cfg)
    diffusion_q = np.asarray(coefficients.diffusion(fev.quadrature_points, 0.0), dtype=np.float64)

    pattern = build_jacobian_pattern(dof_handler)

    logger.info(
        "Discretization: degree=%d cells=%d (owned %d) dofs=%d (owned %d) nnz=%d partitions=%d",
        fe.degree,
        mesh.n_cells,
        owned.size,
        dof_handler.n_dofs,
        int(dof_handler.owned_mask(rank).sum()),
        pattern.nnz,
        n_parts,
    )
    return Discretization(
        mesh=mesh,
        fe=fe,
        dof_handler=dof_handler,
        quadrature=quadrature,
        error_quadrature=error_quadrature,
        fe_values=fev,
        diffusion_q=diffusion_q,
        pattern=pattern,
        coefficients=coefficients,
        rank=rank,
        comm=comm,
    )


def interpolate(disc: Discretization, fn: Callable[[FloatArray], FloatArray]) -> DistributedField:
    """Nodal interpolation of fn onto the DoF support points."""
    field = disc.new_field()
    values = np.asarray(fn(disc.dof_handler.support_points), dtype=np.float64)
    if values.shape != (disc.n_dofs,):
        raise ValueError(f"interpolated values have shape {values.shape}, expected ({disc.n_dofs},)")
    field.set_all(values)
    return field
