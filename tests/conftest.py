import sys
from pathlib import Path

import numpy as np
import pytest


def pytest_configure():
    # Make the flat top-level modules importable (e.g. `import grid_spec`).
    root = Path(__file__).resolve().parents[1]
    if str(root) not in sys.path:
        sys.path.insert(0, str(root))


GRID_TEXT = """---
num_electrodes: {n}
dimx: {dx}
dimy: {dy}
dimz: {dz}
startx: {sx}
starty: {sy}
startz: {sz}
endx: {ex}
endy: {ey}
endz: {ez}
"""


def grid_text(n=3, dims=(2, 1, 1), start=(0.0, 0.0, 0.0), end=(1.0, 0.0, 0.0)):
    return GRID_TEXT.format(n=n, dx=dims[0], dy=dims[1], dz=dims[2],
                            sx=start[0], sy=start[1], sz=start[2],
                            ex=end[0], ey=end[1], ez=end[2])


class FakeGeometry:
    def __init__(self, path, fingerprint):
        self.path = path
        self.fingerprint = fingerprint


class FakeWorld:
    def __init__(self):
        self.voltages = {}


class FakeSolver:
    """
    Analytic stand-in for the numeric solver.

    Electrode i contributes V_i * (i + 1) * (1 + x + 10 y + 100 z), so every
    sample encodes both the position and which electrodes are driven.
    """

    def __init__(self):
        self.solve_count = 0
        self.imported = []
        self.fail_evaluations = 0

    def import_geometry(self, path):
        import solve_cache
        from field_errors import GeometryImportError
        path = Path(path)
        if not path.exists():
            raise GeometryImportError(f"{path} not found")
        self.imported.append(path)
        return FakeGeometry(path, solve_cache.geometry_fingerprint(path))

    def build_or_load_world(self, cache_path, geometry, electrode_names=None, allow_solve=True):
        import solve_cache
        if solve_cache.is_ready(cache_path, geometry.fingerprint):
            return FakeWorld()
        if not allow_solve:
            solve_cache.require_ready(cache_path, geometry.fingerprint)
        with solve_cache.BuildLock(cache_path):
            if solve_cache.is_ready(cache_path, geometry.fingerprint):
                return FakeWorld()
            self.solve_count += 1
            solve_cache.write_marker(cache_path, geometry.fingerprint, list(electrode_names or []))
        return FakeWorld()

    def set_voltage(self, world, electrode, value):
        world.voltages[electrode] = float(value)

    def evaluate_potential(self, world, x, y, z):
        if self.fail_evaluations:
            self.fail_evaluations -= 1
            raise RuntimeError("evaluation blew up")
        weight = sum(v * (i + 1) for i, v in world.voltages.items() if isinstance(i, int))
        return weight * (1.0 + np.asarray(x) + 10.0 * np.asarray(y) + 100.0 * np.asarray(z))


@pytest.fixture
def fake_solver():
    return FakeSolver()


@pytest.fixture
def workdir(tmp_path, monkeypatch):
    # isolated run directory: grid.txt + geometry file, no config files or env overrides
    monkeypatch.chdir(tmp_path)
    for name in ("FIELDGEN_CONFIG", "FIELDGEN_GRID", "FIELDGEN_GEOMETRY",
                 "FIELDGEN_CACHE_DIR", "FIELDGEN_OUTPUT_DIR", "FIELDGEN_WORKERS"):
        monkeypatch.delenv(name, raising=False)
    (tmp_path / "grid.txt").write_text(grid_text())
    (tmp_path / "layout.msh").write_text("fake geometry v1\n")
    return tmp_path


@pytest.fixture
def run_config(workdir):
    from run_config import DEFAULT_CFG
    cfg = dict(DEFAULT_CFG)
    cfg.update({
        "grid_spec": str(workdir / "grid.txt"),
        "geometry": str(workdir / "layout.msh"),
        "cache_dir": str(workdir / "gen.cache"),
        "output_dir": str(workdir / "out"),
    })
    return cfg
