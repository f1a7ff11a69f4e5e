"""
Output writers and the case drivers.

Tests:
1. Output cadence (step 0, every N-th step, disabled)
2. npz step files carry the field, DoF coordinates and connectivity
3. .pvd collection lists the written .vtu files (PyVista, optional)
4. scalars.csv gets a header plus one row per step
5. run_case: success (with run.log), configuration error and dry run exit codes
6. run_convergence writes convergence.csv
"""

from __future__ import annotations

import csv
import textwrap
from pathlib import Path

import numpy as np
import pytest

from core.discretization import build_discretization, interpolate
from driver.run_convergence import run_convergence
from driver.run_fk_case import EXIT_CONFIG, EXIT_OK, main, run_case
from outputs.writers import PvdCollection, ScalarsWriter, StepOutput, should_write, write_step_npz
from solvers.timestepper import run_time_loop


@pytest.mark.parametrize(
    "output, expected",
    [
        ({"every": 1}, [True, True, True, True, True]),
        ({"every": 2}, [True, False, True, False, True]),
        ({"every": 0}, [False] * 5),
        ({"enabled": False}, [False] * 5),
    ],
)
def test_should_write_cadence(make_case, output, expected):
    cfg = make_case(output=output)
    assert [should_write(cfg, s) for s in range(5)] == expected


@pytest.mark.parametrize("degree", [1, 2])
def test_npz_step_file(make_case, tmp_path, degree):
    cfg = make_case(mesh={"n_cells": 1, "degree": degree}, initial={"kind": "gaussian", "value": 0.3})
    disc = build_discretization(cfg)
    u = interpolate(disc, disc.coefficients.initial)

    path = write_step_npz(disc, u, 7, 0.35, tmp_path)
    assert path == tmp_path / "steps" / "step_000007.npz"
    data = np.load(path)
    assert int(data["step_id"]) == 7
    assert float(data["t"]) == pytest.approx(0.35)
    assert int(data["degree"]) == degree
    assert np.array_equal(data["u"], u.values)
    assert data["points"].shape == (disc.n_dofs, 3)
    assert data["cells"].shape == (disc.mesh.n_cells, disc.fe.dofs_per_cell)
    assert data["partition"].shape == (disc.mesh.n_cells,)


def test_step_output_follows_cadence(make_case, tmp_path):
    cfg = make_case(mesh={"n_cells": 1}, output={"every": 2})
    disc = build_discretization(cfg)
    u = interpolate(disc, disc.coefficients.initial)
    out = StepOutput(cfg, disc, tmp_path)
    written = [out(s, 0.1 * s, u) for s in range(4)]
    assert [p is not None for p in written] == [True, False, True, False]
    assert out.write_now(3, 0.3, u) == tmp_path / "steps" / "step_000003.npz"


def test_pvd_collection(tmp_path):
    pvd = PvdCollection(tmp_path / "solution.pvd")
    for k in range(2):
        pvd.add(0.5 * k, tmp_path / "steps" / f"step_{k:06d}.vtu")
    text = pvd.write().read_text()
    assert 'timestep="0.5"' in text
    assert 'file="steps/step_000001.vtu"' in text
    assert text.count("<DataSet") == 2


def test_vtu_output(make_case, tmp_path):
    pytest.importorskip("pyvista")
    cfg = make_case(mesh={"n_cells": 1, "degree": 2}, output={"format": "vtu"})
    disc = build_discretization(cfg)
    u = interpolate(disc, disc.coefficients.initial)
    out = StepOutput(cfg, disc, tmp_path)
    path = out(0, 0.0, u)
    assert path.suffix == ".vtu" and path.exists()
    assert (tmp_path / "solution.pvd").exists()


def test_scalars_writer(make_case, tmp_path):
    cfg = make_case(
        mesh={"n_cells": 1},
        time={"T": 0.2, "dt": 0.1},
        verification={"manufactured": True, "norms": ["L2"]},
    )
    disc = build_discretization(cfg)
    u = interpolate(disc, disc.coefficients.initial)
    writer = ScalarsWriter(cfg, out_dir=tmp_path)
    try:
        run_time_loop(disc, cfg, u, on_step=lambda step, t, sol, diag: writer.write(diag))
    finally:
        writer.close()

    with (tmp_path / "scalars.csv").open() as fh:
        rows = list(csv.DictReader(fh))
    assert [int(r["step"]) for r in rows] == [1, 2]
    assert rows[0]["newton_status"] == "converged"
    assert float(rows[1]["t"]) == pytest.approx(0.2)
    assert "err_L2" in rows[0] and float(rows[0]["err_L2"]) > 0.0


def _case_file(tmp_path: Path, body: str) -> Path:
    path = tmp_path / "case.yaml"
    path.write_text(textwrap.dedent(body))
    return path


_SMALL_CASE = """
case:
  id: small
paths:
  output_root: out
mesh:
  n_cells: 1
physics:
  initial:
    kind: gaussian
    value: 0.5
    center: [0.5, 0.5, 0.5]
    radius: 0.3
time:
  T: 0.3
  dt: 0.1
"""


def test_run_case_writes_outputs(tmp_path):
    path = _case_file(tmp_path, _SMALL_CASE)
    assert run_case(path, max_steps=2) == EXIT_OK

    runs = list((tmp_path / "out" / "small").iterdir())
    assert len(runs) == 1
    run_dir = runs[0]
    assert (run_dir / "case.yaml").exists()
    assert "Completed run" in (run_dir / "run.log").read_text()
    steps = sorted(p.name for p in (run_dir / "steps").iterdir())
    assert steps == ["step_000000.npz", "step_000001.npz", "step_000002.npz"]
    with (run_dir / "scalars.csv").open() as fh:
        assert len(list(csv.DictReader(fh))) == 2


def test_run_case_dry_run_writes_nothing(tmp_path):
    path = _case_file(tmp_path, _SMALL_CASE)
    assert main([str(path), "--dry-run"]) == EXIT_OK
    assert not (tmp_path / "out").exists()


def test_run_case_config_error(tmp_path):
    path = _case_file(tmp_path, "time:\n  dt: -1.0\n")
    assert run_case(path) == EXIT_CONFIG
    assert run_case(tmp_path / "missing.yaml") == EXIT_CONFIG


def test_run_convergence_writes_csv(tmp_path):
    path = _case_file(
        tmp_path,
        """
        case:
          id: mms
        paths:
          output_root: out
        verification:
          manufactured: true
          norms: [L2]
        time:
          T: 0.02
          dt: 0.01
        """,
    )
    assert run_convergence(path, [1, 2], dt_scaling="fixed") == EXIT_OK
    with (tmp_path / "out" / "mms" / "convergence.csv").open() as fh:
        rows = list(csv.DictReader(fh))
    assert [int(r["n_cells"]) for r in rows] == [1, 2]


def test_run_convergence_requires_manufactured(tmp_path):
    path = _case_file(tmp_path, _SMALL_CASE)
    assert run_convergence(path, [1, 2]) == EXIT_CONFIG
