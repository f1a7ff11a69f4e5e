"""
Mesh construction, partitioning, DoF numbering and the Jacobian pattern.

Tests:
1. Box mesh: 6 n^3 positively oriented cells filling the box volume
2. Partitioning is balanced and rejects more parts than cells
3. P1 DoFs are the mesh nodes; P2 DoFs on a box match the 2n vertex grid
4. Each DoF is owned by the smallest adjacent partition; owned sets split the DoFs
5. Jacobian pattern couples exactly the DoF pairs sharing a cell
"""

from __future__ import annotations

import numpy as np
import pytest

from assembly.jacobian_pattern import build_jacobian_pattern
from core.basis import LagrangeTet
from core.dofs import distribute_dofs
from core.mesh import TetMesh, build_box_mesh, partition_cells


@pytest.mark.parametrize("n", [1, 3])
def test_box_mesh_counts_and_volume(n):
    mesh = build_box_mesh(n, (0.0, -1.0, 0.0), (2.0, 1.0, 0.5))
    assert mesh.n_nodes == (n + 1) ** 3
    assert mesh.n_cells == 6 * n**3
    assert mesh.cell_volumes().sum() == pytest.approx(2.0 * 2.0 * 0.5, rel=1e-12)

    verts = mesh.cell_vertices()
    e1, e2, e3 = (verts[:, k] - verts[:, 0] for k in (1, 2, 3))
    signed = np.einsum("ci,ci->c", e1, np.cross(e2, e3))
    assert np.all(signed > 0.0)


def test_mesh_arrays_are_read_only():
    mesh = build_box_mesh(1)
    with pytest.raises(ValueError):
        mesh.nodes[0, 0] = 5.0
    assert mesh.n_partitions == 1


def test_cell_diameter_is_longest_edge():
    mesh = build_box_mesh(2)
    # Kuhn cells of a cube with side 1/2 all contain the body diagonal.
    assert np.allclose(mesh.cell_diameters(), np.sqrt(3.0) / 2.0)


def test_mesh_rejects_bad_connectivity():
    nodes = np.zeros((3, 3))
    with pytest.raises(ValueError):
        TetMesh(nodes=nodes, cells=np.array([[0, 1, 2, 3]]))


@pytest.mark.parametrize("n_parts", [2, 3, 4])
def test_partition_is_balanced(n_parts):
    mesh = build_box_mesh(3)
    part = partition_cells(mesh, n_parts)
    counts = np.bincount(part, minlength=n_parts)
    assert counts.sum() == mesh.n_cells
    assert counts.max() - counts.min() <= 1
    assert mesh.with_partition(n_parts).n_partitions == n_parts


def test_partition_rejects_too_many_parts():
    mesh = build_box_mesh(1)
    with pytest.raises(ValueError):
        partition_cells(mesh, mesh.n_cells + 1)


def test_p1_dofs_are_mesh_nodes():
    mesh = build_box_mesh(2)
    dh = distribute_dofs(mesh, LagrangeTet(1))
    assert dh.n_dofs == mesh.n_nodes
    assert np.array_equal(dh.cell_dofs, mesh.cells)
    assert np.allclose(dh.support_points, mesh.nodes)


@pytest.mark.parametrize("n", [1, 2])
def test_p2_dofs_match_refined_grid(n):
    mesh = build_box_mesh(n)
    dh = distribute_dofs(mesh, LagrangeTet(2))
    assert dh.n_dofs == (2 * n + 1) ** 3
    assert dh.dofs_per_cell == 10

    # Edge DoFs are shared: every support point is distinct and lies on the 2n grid.
    pts = dh.support_points * (2 * n)
    assert np.allclose(pts, np.round(pts))
    assert np.unique(np.round(pts).astype(int), axis=0).shape[0] == dh.n_dofs


@pytest.mark.parametrize("degree", [1, 2])
def test_ownership_is_minimum_adjacent_partition(degree):
    mesh = build_box_mesh(2).with_partition(3)
    dh = distribute_dofs(mesh, LagrangeTet(degree))

    expected = np.full(dh.n_dofs, 99, dtype=np.int64)
    for c in range(mesh.n_cells):
        for d in dh.cell_dofs[c]:
            expected[d] = min(expected[d], mesh.cell_partition[c])
    assert np.array_equal(dh.owner, expected)

    masks = np.stack([dh.owned_mask(r) for r in range(3)])
    assert np.array_equal(masks.sum(axis=0), np.ones(dh.n_dofs))

    for r in range(3):
        relevant = dh.locally_relevant_dofs(r)
        assert np.all(np.isin(dh.locally_owned_dofs(r), relevant))
        assert np.all(np.isin(dh.cell_dofs[dh.owned_cells(r)], relevant))


@pytest.mark.parametrize("degree", [1, 2])
def test_jacobian_pattern_matches_cell_coupling(degree):
    mesh = build_box_mesh(2)
    dh = distribute_dofs(mesh, LagrangeTet(degree))
    pattern = build_jacobian_pattern(dh)

    dense = np.zeros((dh.n_dofs, dh.n_dofs), dtype=bool)
    for cd in dh.cell_dofs:
        dense[np.ix_(cd, cd)] = True
    assert pattern.nnz == int(dense.sum())

    ones = pattern.to_csr(np.ones(pattern.nnz)).toarray()
    assert np.array_equal(ones > 0.0, dense)

    # Every local (i, j) slot points at the global (row, col) entry.
    rows = np.searchsorted(pattern.indptr, pattern.cell_positions, side="right") - 1
    cols = pattern.indices[pattern.cell_positions]
    assert np.array_equal(rows, np.repeat(dh.cell_dofs[:, :, None], dh.dofs_per_cell, axis=2))
    assert np.array_equal(cols, np.repeat(dh.cell_dofs[:, None, :], dh.dofs_per_cell, axis=1))


def test_pattern_rejects_wrong_data_length():
    dh = distribute_dofs(build_box_mesh(1), LagrangeTet(1))
    pattern = build_jacobian_pattern(dh)
    with pytest.raises(ValueError):
        pattern.to_csr(np.ones(pattern.nnz + 1))
