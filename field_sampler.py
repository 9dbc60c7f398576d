import numpy as np
from typing import Callable, Optional

from grid_spec import GridSpec, grid_axes


def _emit_progress(progress_callback, current, total, message=""):
    if progress_callback:
        try:
            progress_callback(current, total, message)
        except Exception:
            pass


def sample_field(solver, world, spec: GridSpec,
                 progress_callback: Optional[Callable] = None,
                 log: Callable[[str], None] = print) -> np.ndarray:
    """
    Potential at every grid point, x outermost and z innermost.

    Returns a flat float64 array of dimx*dimy*dimz values. One solver call per
    x-plane; a single-sample axis sits at its start coordinate.
    """
    xs, ys, zs = grid_axes(spec)
    num_points = spec.num_points
    plane = spec.dimy * spec.dimz
    Y, Z = np.meshgrid(ys, zs, indexing="ij")

    values = np.empty(num_points, dtype=np.float64)
    for i, x in enumerate(xs):
        done = i * plane
        log(f"  Processing point {done} out of {num_points}")
        _emit_progress(progress_callback, done, num_points, f"x={x:.6g}")
        phi = solver.evaluate_potential(world, np.full(Y.shape, x), Y, Z)
        values[done:done + plane] = np.asarray(phi, dtype=np.float64).reshape(-1)
    _emit_progress(progress_callback, num_points, num_points, "Complete")

    outside = int(np.count_nonzero(~np.isfinite(values)))
    if outside:
        log(f"[sample] Warning: {outside} of {num_points} point(s) outside the solved region; written as nan.")
    return values
