"""
Convergence study driver for manufactured-solution cases.

    python -m driver.run_convergence CASE --refinements 2 4 8 [--dt-scaling h2]

Writes <output_root>/<case_id>/convergence.csv and logs the error table with
observed rates. Exit codes follow driver.run_fk_case.
"""

from __future__ import annotations

import argparse
import logging
import traceback
from typing import Optional, Sequence

from core.config_loader import load_case_config
from core.logging_utils import get_log_level_from_env, setup_logging
from core.types import CaseConfigError
from diagnostics.convergence import DT_SCALINGS, run_convergence_study
from driver.run_fk_case import EXIT_BREAKDOWN, EXIT_CONFIG, EXIT_OK, EXIT_UNEXPECTED
from outputs.writers import get_run_dir
from parallel.comm import comm_rank, get_world_comm
from parallel.mpi_bootstrap import bootstrap_mpi, bootstrap_mpi_before_petsc
from solvers.nonlinear_types import NumericalBreakdownError

logger = logging.getLogger(__name__)


def run_convergence(
    cfg_path: str,
    refinements: Sequence[int],
    *,
    dt_scaling: str = "h2",
    log_level: int | str = logging.INFO,
) -> int:
    bootstrap_mpi()
    comm = get_world_comm()
    rank = comm_rank(comm)
    setup_logging(rank, level=get_log_level_from_env(default=log_level), quiet_nonroot=True)
    try:
        cfg = load_case_config(cfg_path)
        if cfg.linear.backend == "petsc":
            bootstrap_mpi_before_petsc()
        cfg.paths.case_dir = cfg.paths.output_root / cfg.case.id
        out_csv = (get_run_dir(cfg) if rank == 0 else cfg.paths.case_dir) / "convergence.csv"

        table = run_convergence_study(cfg, refinements, dt_scaling=dt_scaling, comm=comm, out_csv=out_csv)
        logger.info("Convergence table (dt scaling %s):\n%s", dt_scaling, table.format())
        logger.info("Wrote %s", out_csv)
        return EXIT_OK
    except CaseConfigError as exc:
        logger.error("Configuration error: %s", exc)
        return EXIT_CONFIG
    except NumericalBreakdownError as exc:
        logger.error("Numerical breakdown: %s", exc)
        return EXIT_BREAKDOWN
    except Exception:
        logger.error("Unhandled exception:\n%s", traceback.format_exc())
        return EXIT_UNEXPECTED


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Manufactured-solution convergence study.")
    parser.add_argument("case", help="Path to a manufactured case file (.yaml or .prm).")
    parser.add_argument("--refinements", type=int, nargs="+", default=[2, 4, 8], help="Cells per box edge.")
    parser.add_argument("--dt-scaling", choices=DT_SCALINGS, default="h2", help="How dt shrinks with h.")
    parser.add_argument("--log-level", default="INFO")
    args = parser.parse_args(argv)
    return run_convergence(
        args.case,
        args.refinements,
        dt_scaling=args.dt_scaling,
        log_level=args.log_level,
    )


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
