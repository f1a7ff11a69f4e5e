"""
DoF vector with owned/ghost bookkeeping.

Every partition stores the full-length vector. Entries owned by this partition
are authoritative; all other entries are ghosts, valid only after
update_ghosts(). Accumulation vectors (residuals) are filled with add_local()
and summed across partitions by compress().
"""

from __future__ import annotations

from typing import Optional

import numpy as np

from parallel.comm import allreduce_scalar, allreduce_sum_inplace

from .types import FloatArray, IntArray


class DistributedField:
    __slots__ = ("_values", "owned_mask", "comm")

    def __init__(self, n_dofs: int, owned_mask: Optional[np.ndarray] = None, comm=None) -> None:
        n_dofs = int(n_dofs)
        if n_dofs < 0:
            raise ValueError(f"n_dofs must be >= 0, got {n_dofs}")
        if owned_mask is None:
            owned_mask = np.ones(n_dofs, dtype=bool)
        owned_mask = np.asarray(owned_mask, dtype=bool)
        if owned_mask.shape != (n_dofs,):
            raise ValueError(f"owned_mask shape {owned_mask.shape} != ({n_dofs},)")
        self._values = np.zeros(n_dofs, dtype=np.float64)
        self.owned_mask = owned_mask
        self.comm = comm

    @property
    def n_dofs(self) -> int:
        return int(self._values.shape[0])

    @property
    def values(self) -> FloatArray:
        """Ghosted values (read-only view)."""
        view = self._values.view()
        view.flags.writeable = False
        return view

    def _check_full(self, arr, what: str) -> FloatArray:
        arr = np.asarray(arr, dtype=np.float64)
        if arr.shape != self._values.shape:
            raise ValueError(f"{what}: expected shape {self._values.shape}, got {arr.shape}")
        return arr

    def owned_values(self) -> FloatArray:
        return self._values[self.owned_mask].copy()

    def set_owned(self, values) -> None:
        """Overwrite owned entries from a full-length array; ghosts are stale until update_ghosts()."""
        values = self._check_full(values, "set_owned")
        self._values[self.owned_mask] = values[self.owned_mask]

    def set_all(self, values) -> None:
        """Overwrite owned and ghost entries with values that agree on every partition."""
        self._values[:] = self._check_full(values, "set_all")

    def add_owned(self, delta, scale: float = 1.0) -> None:
        delta = self._check_full(delta, "add_owned")
        self._values[self.owned_mask] += scale * delta[self.owned_mask]

    def update_ghosts(self) -> None:
        """Broadcast owned entries to every partition (collective)."""
        buf = np.where(self.owned_mask, self._values, 0.0)
        allreduce_sum_inplace(self.comm, buf)
        self._values[:] = buf

    def zero(self) -> None:
        self._values.fill(0.0)

    def add_local(self, indices: IntArray, contributions: FloatArray) -> None:
        """Scatter-add local contributions (repeated indices accumulate)."""
        np.add.at(self._values, np.asarray(indices, dtype=np.int64), np.asarray(contributions, dtype=np.float64))

    def compress(self) -> None:
        """Sum local contributions of all partitions into the global vector (collective)."""
        allreduce_sum_inplace(self.comm, self._values)

    def norm_l2(self) -> float:
        owned = self._values[self.owned_mask]
        return float(np.sqrt(allreduce_scalar(self.comm, float(np.dot(owned, owned)), op="sum")))

    def is_finite(self) -> bool:
        local_ok = 1.0 if np.all(np.isfinite(self._values[self.owned_mask])) else 0.0
        return allreduce_scalar(self.comm, local_ok, op="min") > 0.0

    def copy(self) -> "DistributedField":
        out = DistributedField(self.n_dofs, self.owned_mask, self.comm)
        out._values[:] = self._values
        return out

    def assign(self, other: "DistributedField") -> None:
        if other.n_dofs != self.n_dofs:
            raise ValueError(f"assign: size mismatch {other.n_dofs} != {self.n_dofs}")
        self._values[:] = other._values

    def __repr__(self) -> str:
        return f"DistributedField(n_dofs={self.n_dofs}, n_owned={int(self.owned_mask.sum())})"
