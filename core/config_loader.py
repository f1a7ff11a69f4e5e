"""
Load a CaseConfig from a YAML case file or a deal.II-style .prm parameter file.

Relative paths are resolved against the directory of the config file. Every
failure (unreadable file, unknown key, bad value) surfaces as CaseConfigError.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional

import yaml

from .prm import read_prm
from .types import (
    CaseConfig,
    CaseConfigError,
    CaseDiffusion,
    CaseInitial,
    CaseLinear,
    CaseMesh,
    CaseMeta,
    CaseNewton,
    CaseOutput,
    CasePaths,
    CasePhysics,
    CaseTime,
    CaseVerification,
)

logger = logging.getLogger(__name__)

_YAML_SECTIONS = {"case", "paths", "mesh", "physics", "time", "newton", "linear", "output", "verification"}


def _resolve_path(base: Path, value: str | Path) -> Path:
    """Resolve a possibly relative path against base."""
    path = Path(value).expanduser()
    return path if path.is_absolute() else (base / path).resolve()


def _read_yaml_text(cfg_file: Path) -> str:
    try:
        return cfg_file.read_text(encoding="utf-8-sig")
    except UnicodeDecodeError:
        return cfg_file.read_text()


def _section(raw: Mapping[str, Any], name: str) -> Dict[str, Any]:
    sec = raw.get(name, None)
    if sec is None:
        return {}
    if not isinstance(sec, Mapping):
        raise CaseConfigError(f"Section '{name}' must be a mapping, got {type(sec).__name__}")
    return dict(sec)


def _build(cls: Callable[..., Any], kwargs: Mapping[str, Any], where: str):
    """Instantiate a config block, turning unknown keys / bad types into CaseConfigError."""
    try:
        return cls(**kwargs)
    except CaseConfigError:
        raise
    except (TypeError, ValueError) as exc:
        raise CaseConfigError(f"{where}: {exc}") from exc


def _paths_block(base: Path, raw: Mapping[str, Any], case_id: str, mesh_file: Optional[str]) -> CasePaths:
    raw = dict(raw)
    unknown = set(raw) - {"output_root", "case_dir", "mesh_file"}
    if unknown:
        raise CaseConfigError(f"paths: unknown keys {sorted(unknown)}")
    output_root = _resolve_path(base, raw.get("output_root", "output"))
    case_dir = _resolve_path(base, raw.get("case_dir", output_root / case_id))
    mesh_raw = raw.get("mesh_file", mesh_file)
    return CasePaths(
        output_root=output_root,
        case_dir=case_dir,
        mesh_file=_resolve_path(base, mesh_raw) if mesh_raw else None,
    )


def _load_yaml_config(cfg_file: Path) -> CaseConfig:
    try:
        raw = yaml.safe_load(_read_yaml_text(cfg_file)) or {}
    except yaml.YAMLError as exc:
        raise CaseConfigError(f"{cfg_file}: invalid YAML: {exc}") from exc
    if not isinstance(raw, Mapping):
        raise CaseConfigError(f"{cfg_file}: top level must be a mapping")
    unknown = set(raw) - _YAML_SECTIONS
    if unknown:
        raise CaseConfigError(f"{cfg_file}: unknown sections {sorted(unknown)}")
    base = cfg_file.parent

    case_raw = _section(raw, "case")
    case_raw.setdefault("id", cfg_file.stem)
    case_cfg = _build(CaseMeta, case_raw, "case")

    paths_cfg = _paths_block(base, _section(raw, "paths"), case_cfg.id, None)
    mesh_cfg = _build(CaseMesh, _section(raw, "mesh"), "mesh")

    phys_raw = _section(raw, "physics")
    diffusion = _build(CaseDiffusion, dict(phys_raw.pop("diffusion", None) or {}), "physics.diffusion")
    initial = _build(CaseInitial, dict(phys_raw.pop("initial", None) or {}), "physics.initial")
    physics_cfg = _build(CasePhysics, {**phys_raw, "diffusion": diffusion, "initial": initial}, "physics")

    return _build(
        CaseConfig,
        dict(
            case=case_cfg,
            paths=paths_cfg,
            mesh=mesh_cfg,
            physics=physics_cfg,
            time=_build(CaseTime, _section(raw, "time"), "time"),
            newton=_build(CaseNewton, _section(raw, "newton"), "newton"),
            linear=_build(CaseLinear, _section(raw, "linear"), "linear"),
            output=_build(CaseOutput, _section(raw, "output"), "output"),
            verification=_build(CaseVerification, _section(raw, "verification"), "verification"),
        ),
        "case",
    )


# (.prm subsection, entry) -> (block, field, converter)
_PRM_ENTRIES = {
    ("Mesh & geometry parameters", "Degree"): ("mesh", "degree", int),
    ("Mesh & geometry parameters", "Number of cells"): ("mesh", "n_cells", int),
    ("Mesh & geometry parameters", "Mesh file"): ("paths", "mesh_file", str),
    ("Physical constants", "Dext"): ("diffusion", "d_ext", float),
    ("Physical constants", "Daxn"): ("diffusion", "d_axn", float),
    ("Physical constants", "Alpha coefficient"): ("physics", "alpha", float),
    ("Time stepping parameters", "T"): ("time", "T", float),
    ("Time stepping parameters", "deltat"): ("time", "dt", float),
    ("Time stepping parameters", "Theta"): ("time", "theta", float),
    ("Solver parameters", "Max Newton iterations"): ("newton", "max_iterations", int),
    ("Solver parameters", "Newton tolerance"): ("newton", "tolerance", float),
    ("Solver parameters", "Max CG iterations"): ("linear", "max_iterations", int),
    ("Solver parameters", "CG tolerance factor"): ("linear", "tolerance_factor", float),
    ("Diffusion tensor parameters", "Diffusion tensor type"): ("diffusion", "tensor_type", str),
}
_PRM_CENTER = {"Center X": 0, "Center Y": 1, "Center Z": 2}


def _load_prm_config(cfg_file: Path) -> CaseConfig:
    tree = read_prm(cfg_file)
    blocks: Dict[str, Dict[str, Any]] = {
        name: {} for name in ("mesh", "paths", "diffusion", "physics", "time", "newton", "linear")
    }
    center = [0.0, 0.0, 0.0]

    for section, entries in tree.items():
        if not isinstance(entries, dict):
            raise CaseConfigError(f"{cfg_file}: top-level 'set {section}' is not inside a subsection")
        for key, value in entries.items():
            if section == "Diffusion tensor parameters" and key in _PRM_CENTER:
                center[_PRM_CENTER[key]] = _convert(float, value, section, key)
                continue
            target = _PRM_ENTRIES.get((section, key))
            if target is None:
                raise CaseConfigError(f"{cfg_file}: unknown parameter '{section} / {key}'")
            block, name, conv = target
            blocks[block][name] = _convert(conv, value, section, key)

    diffusion_raw = blocks["diffusion"]
    if "tensor_type" in diffusion_raw:
        diffusion_raw["tensor_type"] = str(diffusion_raw["tensor_type"]).strip().lower()
    diffusion_raw["center"] = tuple(center)

    mesh_file = blocks["paths"].pop("mesh_file", None)
    if mesh_file:
        blocks["mesh"]["source"] = "file"

    case_cfg = CaseMeta(id=cfg_file.stem)
    diffusion = _build(CaseDiffusion, diffusion_raw, "Diffusion tensor parameters")
    return _build(
        CaseConfig,
        dict(
            case=case_cfg,
            paths=_paths_block(cfg_file.parent, {}, case_cfg.id, mesh_file),
            mesh=_build(CaseMesh, blocks["mesh"], "Mesh & geometry parameters"),
            physics=_build(CasePhysics, {**blocks["physics"], "diffusion": diffusion}, "Physical constants"),
            time=_build(CaseTime, blocks["time"], "Time stepping parameters"),
            newton=_build(CaseNewton, blocks["newton"], "Solver parameters"),
            linear=_build(CaseLinear, blocks["linear"], "Solver parameters"),
            output=CaseOutput(),
        ),
        str(cfg_file),
    )


def _convert(conv: Callable[[str], Any], value: str, section: str, key: str):
    try:
        return conv(value)
    except ValueError as exc:
        raise CaseConfigError(f"'{section} / {key}': cannot parse {value!r}") from exc


def load_case_config(path: str | Path) -> CaseConfig:
    """Load a case from .yaml/.yml or .prm."""
    cfg_file = Path(path).expanduser().resolve()
    if not cfg_file.is_file():
        raise CaseConfigError(f"Config file not found: {cfg_file}")
    suffix = cfg_file.suffix.lower()
    if suffix in (".yaml", ".yml"):
        cfg = _load_yaml_config(cfg_file)
    elif suffix == ".prm":
        cfg = _load_prm_config(cfg_file)
    else:
        raise CaseConfigError(f"Unsupported config format {suffix!r} (expected .yaml, .yml or .prm)")
    logger.debug("Loaded case '%s' from %s", cfg.case.id, cfg_file)
    return cfg
