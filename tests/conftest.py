"""
Shared fixtures: build a validated CaseConfig with per-block overrides.

    cfg = make_case(mesh={"n_cells": 2}, initial={"kind": "gaussian"})
"""

from __future__ import annotations

import pytest

from core.types import (
    CaseConfig,
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


def build_case(tmp_path, **blocks) -> CaseConfig:
    out_root = tmp_path / "out"
    physics_raw = dict(blocks.get("physics", {}))
    physics_raw["diffusion"] = CaseDiffusion(**blocks.get("diffusion", {}))
    physics_raw["initial"] = CaseInitial(**blocks.get("initial", {}))
    linear_raw = {"tolerance_factor": 1.0e-12, **blocks.get("linear", {})}
    newton_raw = {"tolerance": 1.0e-10, "max_iterations": 20, **blocks.get("newton", {})}
    return CaseConfig(
        case=CaseMeta(id=blocks.get("case_id", "test_case")),
        paths=CasePaths(output_root=out_root, case_dir=out_root / "run"),
        mesh=CaseMesh(**{"n_cells": 2, **blocks.get("mesh", {})}),
        physics=CasePhysics(**physics_raw),
        time=CaseTime(**blocks.get("time", {})),
        newton=CaseNewton(**newton_raw),
        linear=CaseLinear(**linear_raw),
        output=CaseOutput(**blocks.get("output", {})),
        verification=CaseVerification(**blocks.get("verification", {})),
    )


@pytest.fixture
def make_case(tmp_path):
    def _make(**blocks) -> CaseConfig:
        return build_case(tmp_path, **blocks)

    return _make
