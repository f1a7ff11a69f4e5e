"""
CSR sparsity pattern of the global Jacobian, built once from the cell-DoF map.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple

import numpy as np
import scipy.sparse as sp

from core.dofs import DofHandler
from core.types import FloatArray, IntArray


@dataclass(frozen=True, slots=True)
class JacobianPattern:
    """CSR pattern plus the data slot of every local (i, j) entry of every cell."""

    indptr: IntArray
    indices: IntArray
    shape: Tuple[int, int]
    cell_positions: IntArray  # (n_cells, n_loc, n_loc)

    @property
    def nnz(self) -> int:
        return int(self.indices.shape[0])

    def to_csr(self, data: FloatArray) -> sp.csr_matrix:
        data = np.asarray(data, dtype=np.float64)
        if data.shape != (self.nnz,):
            raise ValueError(f"data shape {data.shape} != ({self.nnz},)")
        return sp.csr_matrix((data, self.indices, self.indptr), shape=self.shape)


def build_jacobian_pattern(dof_handler: DofHandler) -> JacobianPattern:
    """
    Couple every pair of DoFs sharing a cell.

    Keys row * n + col sorted ascending are exactly the CSR order (row-major,
    sorted column indices), so a searchsorted gives each entry's data slot.
    """
    n = dof_handler.n_dofs
    cd = dof_handler.cell_dofs
    n_cells, n_loc = cd.shape

    rows = np.repeat(cd, n_loc, axis=1).reshape(n_cells, n_loc, n_loc)
    cols = np.tile(cd, (1, n_loc)).reshape(n_cells, n_loc, n_loc)
    keys = rows.astype(np.int64) * n + cols

    unique_keys = np.unique(keys.ravel())
    pat_rows = unique_keys // n
    indices = (unique_keys % n).astype(np.int64)
    indptr = np.zeros(n + 1, dtype=np.int64)
    np.cumsum(np.bincount(pat_rows, minlength=n), out=indptr[1:])

    positions = np.searchsorted(unique_keys, keys).astype(np.int64)

    for arr in (indptr, indices, positions):
        arr.flags.writeable = False
    return JacobianPattern(indptr=indptr, indices=indices, shape=(n, n), cell_positions=positions)
