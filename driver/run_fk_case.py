"""
Driver for a single Fisher-Kolmogorov case (SciPy serial or PETSc/MPI).

Responsibilities:
- Load CaseConfig from YAML or .prm; apply CLI overrides.
- Bootstrap MPI (and PETSc when requested) before any solve.
- Build the discretization, interpolate u0, write step 0.
- Run the time loop with per-step output and scalar logging.
- Report final errors for manufactured cases.

Exit codes: 0 success, 2 configuration error, 3 numerical breakdown,
99 unexpected exception.
"""

from __future__ import annotations

import argparse
import logging
import shutil
import traceback
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Optional, Sequence, Tuple

from core.config_loader import load_case_config
from core.discretization import build_discretization, interpolate
from core.logging_utils import (
    close_run_log,
    get_log_level_from_env,
    is_root_rank,
    open_run_log,
    setup_logging,
)
from core.types import CaseConfig, CaseConfigError
from outputs.writers import ScalarsWriter, StepOutput
from parallel.comm import comm_rank, comm_size, get_world_comm
from parallel.mpi_bootstrap import bootstrap_mpi, bootstrap_mpi_before_petsc
from solvers.nonlinear_types import NumericalBreakdownError
from solvers.timestepper import count_time_steps, measure_errors, run_time_loop

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_CONFIG = 2
EXIT_BREAKDOWN = 3
EXIT_UNEXPECTED = 99


def _prepare_run_dir(cfg: CaseConfig, cfg_path: str, comm=None) -> Path:
    """Create <output_root>/<case_id>/<timestamp> on rank 0 and copy the config into it."""
    stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    run_dir = Path(cfg.paths.output_root) / cfg.case.id / stamp
    cfg.paths.case_dir = run_dir
    if not is_root_rank(comm):
        return run_dir
    run_dir.mkdir(parents=True, exist_ok=True)
    try:
        shutil.copy2(cfg_path, run_dir / Path(cfg_path).name)
    except OSError as exc:  # pragma: no cover - best-effort copy
        logger.warning("Failed to copy config to run dir: %s", exc)
    return run_dir


def _apply_overrides(cfg: CaseConfig, backend: Optional[str]) -> CaseConfig:
    if backend is not None:
        cfg = replace(cfg, linear=replace(cfg.linear, backend=backend))
    return cfg


def run_case(
    cfg_path: str,
    *,
    backend: Optional[str] = None,
    dry_run: bool = False,
    max_steps: Optional[int] = None,
    log_level: int | str = logging.INFO,
    petsc_args: Sequence[str] = (),
) -> int:
    """Run one case. Return an exit code (0 on success).

    petsc_args are handed to PETSc unparsed (e.g. ["-ksp_monitor"]).
    """
    cfg_path = str(cfg_path)
    bootstrap_mpi()
    comm = get_world_comm()
    rank, size = comm_rank(comm), comm_size(comm)
    level = get_log_level_from_env(default=log_level)
    setup_logging(rank, level=level, quiet_nonroot=True)

    scalars = None
    run_log = None
    solution = None
    disc = None
    writer = None
    t_last = 0.0
    step_last = 0
    try:
        cfg = _apply_overrides(load_case_config(cfg_path), backend)
        if cfg.linear.backend == "petsc":
            bootstrap_mpi_before_petsc(petsc_args)
        elif size > 1:
            raise CaseConfigError(f"linear.backend=scipy requires a single MPI rank (got {size}).")

        n_steps = count_time_steps(cfg.time.T, cfg.time.dt)
        logger.info(
            "Case '%s': degree=%d T=%.4e dt=%.4e theta=%.2f steps=%d backend=%s ranks=%d",
            cfg.case.id,
            cfg.mesh.degree,
            cfg.time.T,
            cfg.time.dt,
            cfg.time.theta,
            n_steps,
            cfg.linear.backend,
            size,
        )

        disc = build_discretization(cfg, comm)
        if dry_run:
            logger.info("Dry run: discretization built (%d DoFs); skipping time stepping.", disc.n_dofs)
            return EXIT_OK

        run_dir = _prepare_run_dir(cfg, cfg_path, comm)
        run_log = open_run_log(run_dir, rank, level)
        writer = StepOutput(cfg, disc, run_dir)
        scalars = ScalarsWriter(cfg, out_dir=run_dir, comm=comm)

        solution = interpolate(disc, disc.coefficients.initial)
        writer(0, 0.0, solution)

        def _on_step(step: int, t: float, sol, diag) -> None:
            nonlocal t_last, step_last
            t_last, step_last = t, step
            writer(step, t, sol)
            if diag is not None:
                scalars.write(diag)

        result = run_time_loop(disc, cfg, solution, on_step=_on_step, max_steps=max_steps)

        if disc.coefficients.exact is not None:
            errors = measure_errors(disc, cfg, solution, result.t_final)
            for name, value in errors.items():
                logger.info("Final error at t=%.6e: %s = %.6e", result.t_final, name, value)
        if not result.all_converged:
            logger.warning("Some steps ended with Newton at max_iterations; see scalars.csv.")
        logger.info("Completed run: t=%.6e after %d steps.", result.t_final, result.n_steps)
        return EXIT_OK
    except CaseConfigError as exc:
        logger.error("Configuration error: %s", exc)
        return EXIT_CONFIG
    except NumericalBreakdownError as exc:
        logger.error("Numerical breakdown: %s", exc)
        if writer is not None and solution is not None:
            # Last state reached, tagged with the failing step.
            writer.write_now(step_last + 1, t_last, solution)
        return EXIT_BREAKDOWN
    except Exception:
        logger.error("Unhandled exception:\n%s", traceback.format_exc())
        return EXIT_UNEXPECTED
    finally:
        if scalars is not None:
            scalars.close()
        close_run_log(run_log)


def _parse_args(argv: Optional[Sequence[str]] = None) -> Tuple[argparse.Namespace, list[str]]:
    parser = argparse.ArgumentParser(description="Run a Fisher-Kolmogorov case.")
    parser.add_argument("case", help="Path to case file (.yaml, .yml or .prm).")
    parser.add_argument(
        "--backend",
        choices=("scipy", "petsc"),
        default=None,
        help="Override linear backend (default: use config).",
    )
    parser.add_argument(
        "--max-steps",
        type=int,
        default=None,
        help="Stop after this many time steps.",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Load config and build the discretization only; skip time stepping.",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Logging level (overridden by FK_LOG_LEVEL).",
    )
    args, unknown = parser.parse_known_args(argv)
    return args, list(unknown)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args, petsc_args = _parse_args(argv)
    return run_case(
        args.case,
        backend=args.backend,
        dry_run=args.dry_run,
        max_steps=args.max_steps,
        log_level=args.log_level,
        petsc_args=petsc_args,
    )


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
