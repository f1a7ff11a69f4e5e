"""
Tetrahedral mesh construction, loading and partitioning.

Conventions:
- nodes.shape == (n_nodes, 3); cells.shape == (n_cells, 4), zero-based node ids.
- Every stored cell has a positive orientation: det[x1-x0, x2-x0, x3-x0] > 0.
- cell_partition[c] is the partition (MPI rank) owning cell c.
"""

from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass, field, replace
from pathlib import Path

import numpy as np

from .types import FloatArray, IntArray, Vec3

logger = logging.getLogger(__name__)

# Gmsh element types carrying tetrahedra: 4-node and 10-node (vertices first).
_GMSH_TET_TYPES = {4: 4, 11: 10}


@dataclass(frozen=True, slots=True)
class TetMesh:
    """Immutable tetrahedral mesh with per-cell partition ids."""

    nodes: FloatArray
    cells: IntArray
    cell_partition: IntArray = field(default=None)  # type: ignore[assignment]

    def __post_init__(self) -> None:
        nodes = np.ascontiguousarray(self.nodes, dtype=np.float64)
        cells = np.ascontiguousarray(self.cells, dtype=np.int64)
        if nodes.ndim != 2 or nodes.shape[1] != 3:
            raise ValueError(f"nodes must have shape (n, 3), got {nodes.shape}")
        if cells.ndim != 2 or cells.shape[1] != 4:
            raise ValueError(f"cells must have shape (m, 4), got {cells.shape}")
        if cells.size and (cells.min() < 0 or cells.max() >= nodes.shape[0]):
            raise ValueError("cells reference nodes outside [0, n_nodes).")
        part = self.cell_partition
        if part is None:
            part = np.zeros(cells.shape[0], dtype=np.int64)
        part = np.ascontiguousarray(part, dtype=np.int64)
        if part.shape != (cells.shape[0],):
            raise ValueError(f"cell_partition shape {part.shape} != ({cells.shape[0]},)")
        nodes.flags.writeable = False
        cells.flags.writeable = False
        part.flags.writeable = False
        object.__setattr__(self, "nodes", nodes)
        object.__setattr__(self, "cells", cells)
        object.__setattr__(self, "cell_partition", part)

    @property
    def n_nodes(self) -> int:
        return int(self.nodes.shape[0])

    @property
    def n_cells(self) -> int:
        return int(self.cells.shape[0])

    @property
    def n_partitions(self) -> int:
        if self.n_cells == 0:
            return 1
        return int(self.cell_partition.max()) + 1

    def cell_vertices(self) -> FloatArray:
        """Return vertex coordinates of every cell, shape (n_cells, 4, 3)."""
        return self.nodes[self.cells]

    def cell_volumes(self) -> FloatArray:
        return np.abs(_signed_volumes(self.cell_vertices()))

    def cell_diameters(self) -> FloatArray:
        """Longest edge of each cell."""
        verts = self.cell_vertices()
        lengths = [
            np.linalg.norm(verts[:, j] - verts[:, i], axis=-1)
            for i, j in itertools.combinations(range(4), 2)
        ]
        return np.max(np.stack(lengths, axis=-1), axis=-1)

    def with_partition(self, n_parts: int) -> "TetMesh":
        """Return a copy of the mesh partitioned into n_parts pieces."""
        return replace(self, cell_partition=partition_cells(self, n_parts))


def _signed_volumes(verts: FloatArray) -> FloatArray:
    e1 = verts[:, 1] - verts[:, 0]
    e2 = verts[:, 2] - verts[:, 0]
    e3 = verts[:, 3] - verts[:, 0]
    return np.einsum("ci,ci->c", e1, np.cross(e2, e3)) / 6.0


def _orient_positive(nodes: FloatArray, cells: IntArray) -> IntArray:
    """Swap two vertices of negatively oriented cells."""
    cells = np.array(cells, dtype=np.int64, copy=True)
    vol = _signed_volumes(nodes[cells])
    if np.any(vol == 0.0):
        bad = int(np.flatnonzero(vol == 0.0)[0])
        raise ValueError(f"Degenerate (zero-volume) cell {bad} in mesh.")
    neg = vol < 0.0
    cells[neg, 2], cells[neg, 3] = cells[neg, 3].copy(), cells[neg, 2].copy()
    return cells


def build_box_mesh(
    n_cells: int,
    box_min: Vec3 = (0.0, 0.0, 0.0),
    box_max: Vec3 = (1.0, 1.0, 1.0),
) -> TetMesh:
    """
    Structured box mesh: n_cells^3 hexahedra, each split into 6 tetrahedra.

    The split follows the main diagonal of every hexahedron (Kuhn split), which
    is conforming across neighbouring hexahedra.
    """
    n = int(n_cells)
    if n < 1:
        raise ValueError(f"n_cells must be >= 1, got {n}")
    lo = np.asarray(box_min, dtype=np.float64)
    hi = np.asarray(box_max, dtype=np.float64)

    axes = [np.linspace(lo[k], hi[k], n + 1) for k in range(3)]
    X, Y, Z = np.meshgrid(*axes, indexing="ij")
    nodes = np.stack([X.ravel(), Y.ravel(), Z.ravel()], axis=-1)

    def node_id(i, j, k):
        return (i * (n + 1) + j) * (n + 1) + k

    ii, jj, kk = np.meshgrid(np.arange(n), np.arange(n), np.arange(n), indexing="ij")
    base = np.stack([ii.ravel(), jj.ravel(), kk.ravel()], axis=-1)

    unit = np.eye(3, dtype=np.int64)
    cells = []
    for perm in itertools.permutations(range(3)):
        c0 = base
        c1 = c0 + unit[perm[0]]
        c2 = c1 + unit[perm[1]]
        c3 = c2 + unit[perm[2]]
        corners = [node_id(c[:, 0], c[:, 1], c[:, 2]) for c in (c0, c1, c2, c3)]
        cells.append(np.stack(corners, axis=-1))
    cells = np.concatenate(cells, axis=0)

    cells = _orient_positive(nodes, cells)
    logger.debug("build_box_mesh: n=%d nodes=%d cells=%d", n, nodes.shape[0], cells.shape[0])
    return TetMesh(nodes=nodes, cells=cells)


def read_gmsh_mesh(path: str | Path) -> TetMesh:
    """Load the tetrahedra of a Gmsh .msh file (vertices only for 10-node cells)."""
    import gmsh

    path = Path(path)
    if not path.is_file():
        raise FileNotFoundError(f"Mesh file not found: {path}")

    gmsh.initialize()
    try:
        gmsh.option.setNumber("General.Terminal", 0)
        gmsh.open(str(path))

        node_tags, flat_coords, _ = gmsh.model.mesh.get_nodes()
        coords = np.asarray(flat_coords, dtype=np.float64).reshape(-1, 3)
        tag_to_row = {int(tag): i for i, tag in enumerate(node_tags)}

        blocks = []
        element_types, _, element_node_tags = gmsh.model.mesh.get_elements(dim=3)
        for etype, flat_nodes in zip(element_types, element_node_tags):
            nodes_per_cell = _GMSH_TET_TYPES.get(int(etype))
            if nodes_per_cell is None:
                logger.debug("read_gmsh_mesh: skipping element type %d", etype)
                continue
            conn = np.asarray(flat_nodes, dtype=np.int64).reshape(-1, nodes_per_cell)[:, :4]
            blocks.append(conn)
    finally:
        gmsh.finalize()

    if not blocks:
        raise ValueError(f"No tetrahedral cells found in {path}")

    conn_tags = np.concatenate(blocks, axis=0)
    rows = np.vectorize(tag_to_row.__getitem__, otypes=[np.int64])(conn_tags)

    # Drop nodes not referenced by any tetrahedron (e.g. high-order or surface-only nodes).
    used = np.unique(rows)
    renumber = np.full(coords.shape[0], -1, dtype=np.int64)
    renumber[used] = np.arange(used.size, dtype=np.int64)
    nodes = coords[used]
    cells = _orient_positive(nodes, renumber[rows])

    logger.info("Read mesh %s: %d nodes, %d cells", path, nodes.shape[0], cells.shape[0])
    return TetMesh(nodes=nodes, cells=cells)


def partition_cells(mesh: TetMesh, n_parts: int) -> IntArray:
    """
    Balanced recursive coordinate bisection of cell centroids.

    Returns an array of partition ids in [0, n_parts).
    """
    n_parts = int(n_parts)
    if n_parts < 1:
        raise ValueError(f"n_parts must be >= 1, got {n_parts}")
    part = np.zeros(mesh.n_cells, dtype=np.int64)
    if n_parts == 1 or mesh.n_cells == 0:
        return part
    if n_parts > mesh.n_cells:
        raise ValueError(f"Cannot split {mesh.n_cells} cells into {n_parts} partitions.")

    centroids = mesh.cell_vertices().mean(axis=1)

    def _bisect(idx: IntArray, first: int, count: int) -> None:
        if count == 1:
            part[idx] = first
            return
        pts = centroids[idx]
        axis = int(np.argmax(pts.max(axis=0) - pts.min(axis=0)))
        order = idx[np.argsort(pts[:, axis], kind="stable")]
        n_left = count // 2
        split = int(round(order.size * n_left / count))
        _bisect(order[:split], first, n_left)
        _bisect(order[split:], first + n_left, count - n_left)

    _bisect(np.arange(mesh.n_cells, dtype=np.int64), 0, n_parts)
    return part
