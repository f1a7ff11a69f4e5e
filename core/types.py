"""
Strongly typed containers for case configuration.

Global shape and sign conventions:
- Points are stored as (..., 3) float64 arrays; tensors as (..., 3, 3).
- DoF vectors are 1D float64 arrays of length n_dofs (global numbering).
- The residual vector stores the NEGATIVE strong-form residual, so that
  J @ delta = residual gives the additive Newton update u <- u + delta.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Tuple

import numpy as np
from numpy.typing import NDArray

FloatArray = NDArray[np.float64]
IntArray = NDArray[np.int64]

Vec3 = Tuple[float, float, float]

SUPPORTED_DEGREES = (1, 2)
DIFFUSION_TENSOR_TYPES = ("isotropic", "radial", "circumferential", "axonal")
INITIAL_KINDS = ("constant", "ball", "gaussian")
LINEAR_BACKENDS = ("scipy", "petsc")
PRECONDITIONERS = ("ssor", "jacobi", "none")
OUTPUT_FORMATS = ("npz", "vtu")
NORM_NAMES = ("L2", "H1", "H1_seminorm", "Linf")


class CaseConfigError(ValueError):
    """Raised for malformed or out-of-range configuration values."""


def _as_vec3(value, name: str) -> Vec3:
    try:
        arr = np.asarray(value, dtype=np.float64).reshape(-1)
    except Exception as exc:
        raise CaseConfigError(f"{name}: expected three floats, got {value!r}") from exc
    if arr.shape != (3,) or not np.all(np.isfinite(arr)):
        raise CaseConfigError(f"{name}: expected three finite floats, got {value!r}")
    return (float(arr[0]), float(arr[1]), float(arr[2]))


@dataclass(slots=True)
class CaseMeta:
    """Metadata for the case block."""

    id: str
    title: str = ""
    version: int = 1
    notes: Optional[str] = None

    def __post_init__(self) -> None:
        if not str(self.id).strip():
            raise CaseConfigError("case.id must be a non-empty string.")


@dataclass(slots=True)
class CasePaths:
    """Case-level paths (resolved by the loader).

    Attributes
    ----------
    output_root : Path
        Root directory for all runs of this case.
    case_dir : Path
        Directory of the current run (set by the driver).
    mesh_file : Path, optional
        Gmsh mesh file, required when mesh.source == "file".
    """

    output_root: Path
    case_dir: Path
    mesh_file: Optional[Path] = None

    def __post_init__(self) -> None:
        for name in ("output_root", "case_dir"):
            v = getattr(self, name)
            if not isinstance(v, Path):
                raise TypeError(f"{name} must be pathlib.Path (loader must convert str -> Path).")
        if self.mesh_file is not None and not isinstance(self.mesh_file, Path):
            raise TypeError("mesh_file must be pathlib.Path or None.")


@dataclass(slots=True)
class CaseMesh:
    """Mesh and finite element settings."""

    source: str = "box"
    degree: int = 1
    n_cells: int = 4
    box_min: Vec3 = (0.0, 0.0, 0.0)
    box_max: Vec3 = (1.0, 1.0, 1.0)

    def __post_init__(self) -> None:
        if self.source not in ("box", "file"):
            raise CaseConfigError(f"mesh.source must be 'box' or 'file', got {self.source!r}")
        if int(self.degree) < 1:
            raise CaseConfigError(f"mesh.degree must be >= 1, got {self.degree}")
        if int(self.degree) not in SUPPORTED_DEGREES:
            raise CaseConfigError(
                f"mesh.degree={self.degree} not supported (supported: {list(SUPPORTED_DEGREES)})"
            )
        self.degree = int(self.degree)
        if int(self.n_cells) < 1:
            raise CaseConfigError(f"mesh.n_cells must be >= 1, got {self.n_cells}")
        self.n_cells = int(self.n_cells)
        self.box_min = _as_vec3(self.box_min, "mesh.box_min")
        self.box_max = _as_vec3(self.box_max, "mesh.box_max")
        if any(hi <= lo for lo, hi in zip(self.box_min, self.box_max)):
            raise CaseConfigError(f"mesh.box_max {self.box_max} must exceed box_min {self.box_min}")


@dataclass(slots=True)
class CaseDiffusion:
    """Diffusion tensor D = d_ext * I + d_axn * n (x) n (n depends on tensor_type)."""

    tensor_type: str = "isotropic"
    d_ext: float = 1.0
    d_axn: float = 10.0
    center: Vec3 = (0.0, 0.0, 0.0)
    axon_direction: Vec3 = (1.0, 0.0, 0.0)

    def __post_init__(self) -> None:
        self.tensor_type = str(self.tensor_type).strip().lower()
        if self.tensor_type not in DIFFUSION_TENSOR_TYPES:
            raise CaseConfigError(
                f"physics.diffusion.tensor_type={self.tensor_type!r}, allowed={list(DIFFUSION_TENSOR_TYPES)}"
            )
        for name in ("d_ext", "d_axn"):
            v = float(getattr(self, name))
            if not np.isfinite(v) or v < 0.0:
                raise CaseConfigError(f"physics.diffusion.{name} must be >= 0, got {v}")
            setattr(self, name, v)
        self.center = _as_vec3(self.center, "physics.diffusion.center")
        self.axon_direction = _as_vec3(self.axon_direction, "physics.diffusion.axon_direction")
        if self.tensor_type == "axonal" and np.linalg.norm(self.axon_direction) == 0.0:
            raise CaseConfigError("physics.diffusion.axon_direction must be non-zero.")


@dataclass(slots=True)
class CaseInitial:
    """Initial condition u0."""

    kind: str = "constant"
    value: float = 0.5
    center: Vec3 = (0.0, 0.0, 0.0)
    radius: float = 0.1

    def __post_init__(self) -> None:
        self.kind = str(self.kind).strip().lower()
        if self.kind not in INITIAL_KINDS:
            raise CaseConfigError(f"physics.initial.kind={self.kind!r}, allowed={list(INITIAL_KINDS)}")
        self.value = float(self.value)
        if not np.isfinite(self.value):
            raise CaseConfigError("physics.initial.value must be finite.")
        self.center = _as_vec3(self.center, "physics.initial.center")
        self.radius = float(self.radius)
        if self.kind != "constant" and not self.radius > 0.0:
            raise CaseConfigError(f"physics.initial.radius must be > 0, got {self.radius}")


@dataclass(slots=True)
class CasePhysics:
    """Reaction rate, forcing and coefficient settings."""

    alpha: float = 0.1
    forcing: float = 0.0
    diffusion: CaseDiffusion = field(default_factory=CaseDiffusion)
    initial: CaseInitial = field(default_factory=CaseInitial)

    def __post_init__(self) -> None:
        self.alpha = float(self.alpha)
        if not np.isfinite(self.alpha) or self.alpha < 0.0:
            raise CaseConfigError(f"physics.alpha must be >= 0, got {self.alpha}")
        self.forcing = float(self.forcing)
        if not np.isfinite(self.forcing):
            raise CaseConfigError("physics.forcing must be finite.")


@dataclass(slots=True)
class CaseTime:
    """Time control settings."""

    T: float = 1.0
    dt: float = 0.1
    theta: float = 1.0

    def __post_init__(self) -> None:
        self.T = float(self.T)
        self.dt = float(self.dt)
        self.theta = float(self.theta)
        if not np.isfinite(self.T) or self.T <= 0.0:
            raise CaseConfigError(f"time.T must be positive, got {self.T}")
        if not np.isfinite(self.dt) or self.dt <= 0.0:
            raise CaseConfigError(f"time.dt must be positive, got {self.dt}")
        if not (0.0 <= self.theta <= 1.0):
            raise CaseConfigError(f"time.theta must lie in [0, 1], got {self.theta}")


@dataclass(slots=True)
class CaseNewton:
    """Newton iteration controls."""

    max_iterations: int = 1000
    tolerance: float = 1.0e-6

    def __post_init__(self) -> None:
        if int(self.max_iterations) < 1:
            raise CaseConfigError(f"newton.max_iterations must be >= 1, got {self.max_iterations}")
        self.max_iterations = int(self.max_iterations)
        self.tolerance = float(self.tolerance)
        if not np.isfinite(self.tolerance) or self.tolerance < 0.0:
            raise CaseConfigError(f"newton.tolerance must be >= 0, got {self.tolerance}")


@dataclass(slots=True)
class CaseLinear:
    """Krylov solver controls (CG with a fixed-relaxation preconditioner)."""

    backend: str = "scipy"
    preconditioner: str = "ssor"
    max_iterations: int = 1000
    tolerance_factor: float = 1.0e-6
    relaxation: float = 1.0
    options_prefix: str = ""

    def __post_init__(self) -> None:
        self.backend = str(self.backend).strip().lower()
        if self.backend not in LINEAR_BACKENDS:
            raise CaseConfigError(f"linear.backend={self.backend!r}, allowed={list(LINEAR_BACKENDS)}")
        self.preconditioner = str(self.preconditioner).strip().lower()
        if self.preconditioner not in PRECONDITIONERS:
            raise CaseConfigError(
                f"linear.preconditioner={self.preconditioner!r}, allowed={list(PRECONDITIONERS)}"
            )
        if int(self.max_iterations) < 1:
            raise CaseConfigError(f"linear.max_iterations must be >= 1, got {self.max_iterations}")
        self.max_iterations = int(self.max_iterations)
        self.tolerance_factor = float(self.tolerance_factor)
        if not np.isfinite(self.tolerance_factor) or self.tolerance_factor <= 0.0:
            raise CaseConfigError(f"linear.tolerance_factor must be > 0, got {self.tolerance_factor}")
        self.relaxation = float(self.relaxation)
        if not (0.0 < self.relaxation < 2.0):
            raise CaseConfigError(f"linear.relaxation must lie in (0, 2), got {self.relaxation}")


@dataclass(slots=True)
class CaseOutput:
    """Output controls."""

    enabled: bool = True
    format: str = "npz"
    every: int = 1
    scalars: bool = True

    def __post_init__(self) -> None:
        self.format = str(self.format).strip().lower()
        if self.format not in OUTPUT_FORMATS:
            raise CaseConfigError(f"output.format={self.format!r}, allowed={list(OUTPUT_FORMATS)}")
        if int(self.every) < 0:
            raise CaseConfigError(f"output.every must be >= 0, got {self.every}")
        self.every = int(self.every)


@dataclass(slots=True)
class CaseVerification:
    """Manufactured-solution verification."""

    manufactured: bool = False
    norms: List[str] = field(default_factory=lambda: ["L2", "H1"])

    def __post_init__(self) -> None:
        bad = [n for n in self.norms if n not in NORM_NAMES]
        if bad:
            raise CaseConfigError(f"verification.norms contains {bad}, allowed={list(NORM_NAMES)}")


@dataclass(slots=True)
class CaseConfig:
    """Top-level case configuration."""

    case: CaseMeta
    paths: CasePaths
    mesh: CaseMesh
    physics: CasePhysics
    time: CaseTime
    newton: CaseNewton
    linear: CaseLinear
    output: CaseOutput
    verification: CaseVerification = field(default_factory=CaseVerification)

    def __post_init__(self) -> None:
        if self.mesh.source == "file" and self.paths.mesh_file is None:
            raise CaseConfigError("mesh.source='file' requires paths.mesh_file.")
        if self.verification.manufactured and self.physics.diffusion.tensor_type != "isotropic":
            raise CaseConfigError("Manufactured verification requires an isotropic diffusion tensor.")
