import pathlib
import numpy as np


def field_filename(index: int, prefix: str = "field", suffix: str = ".txt") -> str:
    return f"{prefix}{index}{suffix}"


def write_field(path, values, fmt: str = "%.17g") -> pathlib.Path:
    """
    Write one value per line, truncating any existing file.

    The file is closed before returning; OSError propagates.
    """
    path = pathlib.Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    data = np.asarray(values, dtype=np.float64).reshape(-1)
    with open(path, "w") as f:
        np.savetxt(f, data, fmt=fmt)
    return path


def read_field(path) -> np.ndarray:
    # ndmin keeps single-value files 1D
    return np.loadtxt(path, dtype=np.float64, ndmin=1)
