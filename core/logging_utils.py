"""
Logging setup for the drivers.

Modules log through logging.getLogger(__name__) and never configure handlers
themselves. setup_logging() installs one console handler on the root logger;
every record it emits carries the MPI rank, and ranks other than 0 print only
warnings and errors. open_run_log() adds a per-run log file on rank 0.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional

from parallel.comm import comm_rank, get_world_comm

LOG_FORMAT = "%(asctime)s %(levelname)s [rank %(rank)d] [%(name)s] %(message)s"

ENV_LOG_LEVEL = "FK_LOG_LEVEL"
ENV_DEBUG = "FK_DEBUG"

_CONSOLE_HANDLER = "fk-console"
_TRUTHY = frozenset({"1", "true", "yes", "on"})


class RankFilter(logging.Filter):
    """Stamp records with the rank of the emitting process."""

    def __init__(self, rank: int) -> None:
        super().__init__()
        self.rank = int(rank)

    def filter(self, record: logging.LogRecord) -> bool:
        record.rank = self.rank
        return True


def _parse_level(value, default_level: int) -> int:
    if value is None:
        return default_level
    if isinstance(value, int):
        return value
    text = str(value).strip().upper()
    if not text:
        return default_level
    if text.isdigit():
        return int(text)
    resolved = logging.getLevelName(text)
    return resolved if isinstance(resolved, int) else default_level


def is_root_rank(comm=None) -> bool:
    """True on rank 0 of comm (of COMM_WORLD when comm is None and mpi4py is present)."""
    return comm_rank(comm if comm is not None else get_world_comm()) == 0


def get_log_level_from_env(default: str | int = "INFO") -> int:
    """
    FK_LOG_LEVEL wins; otherwise a truthy FK_DEBUG selects DEBUG; otherwise default.
    """
    default_level = _parse_level(default, logging.INFO)
    env_level = os.environ.get(ENV_LOG_LEVEL)
    if env_level:
        return _parse_level(env_level, default_level)
    if str(os.environ.get(ENV_DEBUG, "")).strip().lower() in _TRUTHY:
        return logging.DEBUG
    return default_level


def _console_handler(root: logging.Logger) -> logging.Handler:
    for handler in root.handlers:
        if handler.get_name() == _CONSOLE_HANDLER:
            return handler
    handler = logging.StreamHandler()
    handler.set_name(_CONSOLE_HANDLER)
    root.addHandler(handler)
    return handler


def setup_logging(rank: int = 0, *, level: int = logging.INFO, quiet_nonroot: bool = True) -> None:
    """Configure the root logger; safe to call again (the console handler is reused)."""
    root = logging.getLogger()
    root.setLevel(level)

    console = _console_handler(root)
    console.setFormatter(logging.Formatter(LOG_FORMAT))
    for old in list(console.filters):
        console.removeFilter(old)
    console.addFilter(RankFilter(rank))
    if quiet_nonroot and rank != 0:
        console.setLevel(max(level, logging.WARNING))
    else:
        console.setLevel(level)


def open_run_log(run_dir: Path | str, rank: int, level: int = logging.INFO) -> Optional[logging.Handler]:
    """Mirror the log into <run_dir>/run.log on rank 0; pass the handler to close_run_log()."""
    if rank != 0:
        return None
    path = Path(run_dir) / "run.log"
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler.addFilter(RankFilter(rank))
    handler.setLevel(level)
    logging.getLogger().addHandler(handler)
    return handler


def close_run_log(handler: Optional[logging.Handler]) -> None:
    if handler is None:
        return
    logging.getLogger().removeHandler(handler)
    handler.close()
