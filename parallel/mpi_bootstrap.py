"""
MPI / PETSc start-up order.

mpi4py has to initialise MPI before petsc4py does, and PETSc should only see
its own command-line options: the drivers parse theirs first and pass the
leftovers here. Both steps run at most once per process.
"""

from __future__ import annotations

import logging
import sys
from typing import Optional, Sequence

logger = logging.getLogger(__name__)

_MPI_READY = False
_PETSC_READY = False


def bootstrap_mpi() -> bool:
    """Import mpi4py (which initialises MPI). Return False when mpi4py is not installed."""
    global _MPI_READY
    if _MPI_READY:
        return True
    try:
        from mpi4py import MPI  # noqa: F401
    except ImportError:
        logger.debug("mpi4py not available; running serially.")
        return False
    _MPI_READY = True
    return True


def bootstrap_mpi_before_petsc(petsc_args: Optional[Sequence[str]] = None) -> None:
    """
    Initialise petsc4py after MPI with the given PETSc options (e.g. ["-ksp_monitor"]).

    Options passed after the first call are ignored with a warning. Raises
    ImportError when petsc4py is not installed.
    """
    global _PETSC_READY
    args = list(petsc_args or [])
    if _PETSC_READY:
        if args:
            logger.warning("PETSc already initialised; ignoring options %s", args)
        return

    bootstrap_mpi()
    import petsc4py

    petsc4py.init([sys.argv[0] if sys.argv else "fk3d", *args])
    _PETSC_READY = True
    logger.debug("petsc4py initialised with options %s", args)
