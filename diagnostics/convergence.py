"""
Convergence study with the manufactured solution: run the same case on a
sequence of box meshes, shrinking dt with h, and report observed rates

    rate_k = log(e_k / e_{k+1}) / log(h_k / h_{k+1}).
"""

from __future__ import annotations

import csv
import logging
import math
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from core.discretization import build_discretization, interpolate
from core.types import CaseConfig, CaseConfigError
from parallel.comm import comm_rank
from solvers.timestepper import measure_errors, run_time_loop

logger = logging.getLogger(__name__)

DT_SCALINGS = ("h2", "h", "fixed")


@dataclass(slots=True)
class ConvergenceRow:
    n_cells: int
    h: float
    dt: float
    n_dofs: int
    t_final: float
    errors: Dict[str, float] = field(default_factory=dict)


@dataclass(slots=True)
class ConvergenceTable:
    norms: List[str]
    rows: List[ConvergenceRow] = field(default_factory=list)

    def add(self, row: ConvergenceRow) -> None:
        self.rows.append(row)

    def rates(self, norm: str) -> List[float]:
        out: List[float] = []
        for a, b in zip(self.rows[:-1], self.rows[1:]):
            ea, eb = a.errors.get(norm, math.nan), b.errors.get(norm, math.nan)
            if ea > 0.0 and eb > 0.0 and a.h != b.h:
                out.append(math.log(ea / eb) / math.log(a.h / b.h))
            else:
                out.append(math.nan)
        return out

    def write_csv(self, path: str | Path) -> Path:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        rates = {n: [math.nan] + self.rates(n) for n in self.norms}
        with path.open("w", newline="") as fh:
            writer = csv.writer(fh)
            header = ["n_cells", "h", "dt", "n_dofs", "t_final"]
            for n in self.norms:
                header += [f"err_{n}", f"rate_{n}"]
            writer.writerow(header)
            for k, row in enumerate(self.rows):
                line = [row.n_cells, f"{row.h:.6e}", f"{row.dt:.6e}", row.n_dofs, f"{row.t_final:.6e}"]
                for n in self.norms:
                    line += [f"{row.errors.get(n, math.nan):.6e}", f"{rates[n][k]:.4f}"]
                writer.writerow(line)
        return path

    def format(self) -> str:
        lines = []
        for k, row in enumerate(self.rows):
            parts = [f"n={row.n_cells:4d} h={row.h:.4e} dt={row.dt:.3e}"]
            for n in self.norms:
                rate = self.rates(n)[k - 1] if k > 0 else math.nan
                parts.append(f"{n}={row.errors.get(n, math.nan):.4e} (rate {rate:.2f})")
            lines.append("  ".join(parts))
        return "\n".join(lines)


def _scaled_dt(dt0: float, h0: float, h: float, scaling: str) -> float:
    if scaling == "h2":
        return dt0 * (h / h0) ** 2
    if scaling == "h":
        return dt0 * (h / h0)
    return dt0


def run_convergence_study(
    cfg: CaseConfig,
    refinements: Sequence[int],
    dt_scaling: str = "h2",
    comm=None,
    out_csv: Optional[Path] = None,
) -> ConvergenceTable:
    """Run the manufactured case for each n_cells in refinements (coarse to fine)."""
    if not cfg.verification.manufactured:
        raise CaseConfigError("Convergence study requires verification.manufactured = true.")
    if cfg.mesh.source != "box":
        raise CaseConfigError("Convergence study refines box meshes (mesh.source = 'box').")
    if dt_scaling not in DT_SCALINGS:
        raise CaseConfigError(f"dt_scaling={dt_scaling!r}, allowed={list(DT_SCALINGS)}")
    refinements = [int(n) for n in refinements]
    if not refinements or any(n < 1 for n in refinements):
        raise CaseConfigError(f"refinements must be positive integers, got {refinements}")

    table = ConvergenceTable(norms=list(cfg.verification.norms))
    h0: Optional[float] = None
    for n in refinements:
        cfg_k = replace(cfg, mesh=replace(cfg.mesh, n_cells=n))
        disc = build_discretization(cfg_k, comm)
        h = float(disc.mesh.cell_diameters().max())
        if h0 is None:
            h0 = h
        dt = _scaled_dt(float(cfg.time.dt), h0, h, dt_scaling)
        cfg_k = replace(cfg_k, time=replace(cfg.time, dt=dt))

        solution = interpolate(disc, disc.coefficients.initial)
        result = run_time_loop(disc, cfg_k, solution)
        errors = measure_errors(disc, cfg_k, solution, result.t_final)

        row = ConvergenceRow(
            n_cells=n, h=h, dt=dt, n_dofs=disc.n_dofs, t_final=result.t_final, errors=errors
        )
        table.add(row)
        logger.info(
            "convergence n=%d h=%.4e dt=%.3e dofs=%d %s",
            n,
            h,
            dt,
            disc.n_dofs,
            " ".join(f"{k}={v:.4e}" for k, v in errors.items()),
        )

    if out_csv is not None and comm_rank(comm) == 0:
        table.write_csv(out_csv)
    return table
