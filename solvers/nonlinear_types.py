"""
Shared nonlinear solver result types.

Iteration-cap shortfalls are reported through NewtonStatus; only a
non-finite residual or update raises (NumericalBreakdownError).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from core.field import DistributedField


class NewtonStatus(str, Enum):
    ITERATING = "iterating"
    CONVERGED = "converged"
    MAX_ITER_REACHED = "max_iter_reached"


class NumericalBreakdownError(RuntimeError):
    """Residual or Newton update became NaN/Inf."""


@dataclass(slots=True)
class NonlinearDiagnostics:
    status: NewtonStatus
    method: str
    n_iter: int
    res_norm_2: float
    history_res_norm: List[float] = field(default_factory=list)
    linear_iterations: List[int] = field(default_factory=list)
    message: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def converged(self) -> bool:
        return self.status == NewtonStatus.CONVERGED


@dataclass(slots=True)
class NonlinearSolveResult:
    u: DistributedField
    diag: NonlinearDiagnostics
