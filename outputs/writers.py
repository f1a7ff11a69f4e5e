"""
Output helpers:
- get_run_dir / should_write: output directory and cadence.
- write_step_npz: DoF vector + DoF coordinates + connectivity per step.
- write_step_vtu / PvdCollection: ParaView output through PyVista (optional).
- ScalarsWriter: one CSV row of step diagnostics per step.

Every writer is a no-op on ranks other than 0; all ranks hold the full
solution vector, so rank 0 writes the whole field.
"""

from __future__ import annotations

import csv
import logging
from pathlib import Path
from typing import TYPE_CHECKING, List, Optional, Tuple

import numpy as np

from core.discretization import Discretization
from core.field import DistributedField
from core.types import CaseConfig
from parallel.comm import comm_rank

if TYPE_CHECKING:  # pragma: no cover - type checking only
    from solvers.timestepper import StepDiagnostics

logger = logging.getLogger(__name__)

# VTK cell type ids
_VTK_TETRA = 10
_VTK_QUADRATIC_TETRA = 24


def _is_writer(disc: Discretization) -> bool:
    return comm_rank(disc.comm) == 0


def get_run_dir(cfg: CaseConfig) -> Path:
    """Directory of the current run (cfg.paths.case_dir), created on first use."""
    run_dir = Path(cfg.paths.case_dir)
    run_dir.mkdir(parents=True, exist_ok=True)
    return run_dir


def should_write(cfg: CaseConfig, step_id: int) -> bool:
    """Step 0 and every output.every-th step; output.every == 0 disables field output."""
    out = cfg.output
    if not out.enabled or out.every <= 0:
        return False
    return step_id % out.every == 0


def _step_name(step_id: int, ext: str) -> str:
    return f"step_{step_id:06d}.{ext}"


def write_step_npz(
    disc: Discretization,
    solution: DistributedField,
    step_id: int,
    t: float,
    run_dir: Path,
) -> Optional[Path]:
    """
    Output: <run_dir>/steps/step_{step_id:06d}.npz

    Contents: step_id, t, degree, u (n_dofs), points (n_dofs, 3),
    cells (n_cells, dofs_per_cell) and partition (n_cells).
    """
    if not _is_writer(disc):
        return None
    steps_dir = Path(run_dir) / "steps"
    steps_dir.mkdir(parents=True, exist_ok=True)
    out_path = steps_dir / _step_name(step_id, "npz")
    np.savez(
        out_path,
        step_id=np.asarray(step_id, dtype=np.int32),
        t=np.asarray(t, dtype=np.float64),
        degree=np.asarray(disc.fe.degree, dtype=np.int32),
        u=np.asarray(solution.values, dtype=np.float64),
        points=np.asarray(disc.dof_handler.support_points, dtype=np.float64),
        cells=np.asarray(disc.dof_handler.cell_dofs, dtype=np.int64),
        partition=np.asarray(disc.mesh.cell_partition, dtype=np.int32),
    )
    logger.debug("Wrote step file: %s", out_path)
    return out_path


def build_vtk_grid(disc: Discretization, solution: DistributedField):
    """PyVista UnstructuredGrid with point data 'u' and cell data 'partitioning'."""
    import pyvista as pv

    cell_dofs = np.asarray(disc.dof_handler.cell_dofs, dtype=np.int64)
    n_cells, n_loc = cell_dofs.shape
    cells = np.hstack([np.full((n_cells, 1), n_loc, dtype=np.int64), cell_dofs]).ravel()
    vtk_type = _VTK_TETRA if disc.fe.degree == 1 else _VTK_QUADRATIC_TETRA
    celltypes = np.full(n_cells, vtk_type, dtype=np.uint8)

    grid = pv.UnstructuredGrid(cells, celltypes, np.asarray(disc.dof_handler.support_points, dtype=np.float64))
    grid.point_data["u"] = np.asarray(solution.values, dtype=np.float64)
    grid.cell_data["partitioning"] = np.asarray(disc.mesh.cell_partition, dtype=np.int32)
    return grid


def write_step_vtu(
    disc: Discretization,
    solution: DistributedField,
    step_id: int,
    t: float,
    run_dir: Path,
) -> Optional[Path]:
    """Output: <run_dir>/steps/step_{step_id:06d}.vtu"""
    if not _is_writer(disc):
        return None
    steps_dir = Path(run_dir) / "steps"
    steps_dir.mkdir(parents=True, exist_ok=True)
    out_path = steps_dir / _step_name(step_id, "vtu")
    grid = build_vtk_grid(disc, solution)
    grid.field_data["TimeValue"] = [float(t)]
    grid.save(str(out_path))
    logger.debug("Wrote step file: %s", out_path)
    return out_path


class PvdCollection:
    """Index of .vtu files with their times, written as a ParaView .pvd collection."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self.entries: List[Tuple[float, str]] = []

    def add(self, t: float, vtu_path: Path) -> None:
        rel = Path(vtu_path).resolve().relative_to(self.path.parent.resolve())
        self.entries.append((float(t), rel.as_posix()))

    def write(self) -> Path:
        lines = [
            '<?xml version="1.0"?>',
            '<VTKFile type="Collection" version="0.1" byte_order="LittleEndian">',
            "  <Collection>",
        ]
        for t, name in self.entries:
            lines.append(f'    <DataSet timestep="{t:.12g}" group="" part="0" file="{name}"/>')
        lines.append("  </Collection>")
        lines.append("</VTKFile>")
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text("\n".join(lines) + "\n")
        return self.path


class StepOutput:
    """Field output for one run: npz or vtu (+ .pvd index), by cfg.output."""

    def __init__(self, cfg: CaseConfig, disc: Discretization, run_dir: Path) -> None:
        self.cfg = cfg
        self.disc = disc
        self.run_dir = Path(run_dir)
        self.pvd = PvdCollection(self.run_dir / "solution.pvd") if cfg.output.format == "vtu" else None

    def __call__(self, step_id: int, t: float, solution: DistributedField) -> Optional[Path]:
        if not should_write(self.cfg, step_id):
            return None
        return self.write_now(step_id, t, solution)

    def write_now(self, step_id: int, t: float, solution: DistributedField) -> Optional[Path]:
        """Write regardless of the output cadence."""
        if self.pvd is None:
            return write_step_npz(self.disc, solution, step_id, t, self.run_dir)
        path = write_step_vtu(self.disc, solution, step_id, t, self.run_dir)
        if path is not None:
            self.pvd.add(t, path)
            self.pvd.write()
        return path


_SCALAR_FIELDS = [
    "step",
    "t",
    "newton_status",
    "newton_iter",
    "newton_res",
    "cg_iter",
    "u_min",
    "u_max",
    "mass",
]


class ScalarsWriter:
    def __init__(
        self,
        cfg: CaseConfig,
        *,
        out_dir: Path | str,
        comm=None,
    ) -> None:
        self.cfg = cfg
        self.norms = list(cfg.verification.norms) if cfg.verification.manufactured else []
        self.fields = _SCALAR_FIELDS + [f"err_{n}" for n in self.norms]
        self.enabled = bool(cfg.output.scalars) and comm_rank(comm) == 0
        self.out_path = Path(out_dir) / "scalars.csv"
        self._fh = None
        self._writer = None
        if self.enabled:
            self._open()

    def _open(self) -> None:
        self.out_path.parent.mkdir(parents=True, exist_ok=True)
        self._fh = self.out_path.open("w", newline="")
        self._writer = csv.writer(self._fh)
        self._writer.writerow(self.fields)
        self._fh.flush()

    def write(self, diag: "StepDiagnostics") -> None:
        if not self.enabled or self._writer is None:
            return
        row = [
            diag.step,
            f"{diag.t_new:.9e}",
            diag.newton_status.value,
            diag.newton_iterations,
            f"{diag.newton_residual:.6e}",
            diag.linear_iterations,
            f"{diag.u_min:.9e}",
            f"{diag.u_max:.9e}",
            f"{diag.mass:.9e}",
        ]
        row += [f"{diag.errors.get(n, float('nan')):.6e}" for n in self.norms]
        self._writer.writerow(row)
        self._fh.flush()

    def close(self) -> None:
        if self._fh is not None:
            try:
                self._fh.close()
            finally:
                self._fh = None
                self._writer = None
