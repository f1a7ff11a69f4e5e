"""
Global DoF numbering for continuous Lagrange elements on a TetMesh.

Vertex DoFs take the mesh node ids [0, n_nodes); degree-2 edge DoFs follow,
numbered by the sorted list of unique mesh edges. Every partition computes the
same numbering from the replicated mesh, so no communication is needed here.

Ownership: a DoF belongs to the smallest partition id among its adjacent cells.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np

from .basis import EDGES, LagrangeTet
from .mesh import TetMesh
from .types import FloatArray, IntArray

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class DofHandler:
    mesh: TetMesh
    fe: LagrangeTet
    cell_dofs: IntArray  # (n_cells, dofs_per_cell)
    support_points: FloatArray  # (n_dofs, 3)
    owner: IntArray  # (n_dofs,)

    @property
    def n_dofs(self) -> int:
        return int(self.support_points.shape[0])

    @property
    def dofs_per_cell(self) -> int:
        return int(self.cell_dofs.shape[1])

    def owned_cells(self, rank: int) -> IntArray:
        return np.flatnonzero(self.mesh.cell_partition == int(rank))

    def locally_owned_dofs(self, rank: int) -> IntArray:
        return np.flatnonzero(self.owner == int(rank))

    def locally_relevant_dofs(self, rank: int) -> IntArray:
        """Owned DoFs plus every DoF touched by an owned cell (ghosts)."""
        touched = self.cell_dofs[self.owned_cells(rank)].ravel()
        return np.union1d(self.locally_owned_dofs(rank), touched)

    def owned_mask(self, rank: int) -> np.ndarray:
        return self.owner == int(rank)


def distribute_dofs(mesh: TetMesh, fe: LagrangeTet) -> DofHandler:
    cells = mesh.cells
    if fe.degree == 1:
        cell_dofs = cells.copy()
        support = mesh.nodes.copy()
    else:
        local_edges = np.stack([np.sort(cells[:, [i, j]], axis=1) for i, j in EDGES], axis=1)
        flat = local_edges.reshape(-1, 2)
        unique_edges, inverse = np.unique(flat, axis=0, return_inverse=True)
        edge_ids = inverse.reshape(cells.shape[0], len(EDGES)) + mesh.n_nodes
        cell_dofs = np.concatenate([cells, edge_ids], axis=1)
        mids = 0.5 * (mesh.nodes[unique_edges[:, 0]] + mesh.nodes[unique_edges[:, 1]])
        support = np.concatenate([mesh.nodes, mids], axis=0)

    n_dofs = support.shape[0]
    owner = np.full(n_dofs, np.iinfo(np.int64).max, dtype=np.int64)
    part = np.repeat(mesh.cell_partition, cell_dofs.shape[1])
    np.minimum.at(owner, cell_dofs.ravel(), part)
    if np.any(owner == np.iinfo(np.int64).max):
        # Nodes not attached to any cell are owned by partition 0.
        orphan = owner == np.iinfo(np.int64).max
        logger.warning("distribute_dofs: %d DoFs belong to no cell", int(orphan.sum()))
        owner[orphan] = 0

    cell_dofs = np.ascontiguousarray(cell_dofs, dtype=np.int64)
    for arr in (cell_dofs, support, owner):
        arr.flags.writeable = False

    logger.debug("distribute_dofs: degree=%d n_dofs=%d", fe.degree, n_dofs)
    return DofHandler(mesh=mesh, fe=fe, cell_dofs=cell_dofs, support_points=support, owner=owner)
