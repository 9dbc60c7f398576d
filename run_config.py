import os, json, pathlib
from typing import Callable, Optional

DEFAULT_CFG = {
    "grid_spec": "grid.txt",          # grid spec file (header + 10 labeled lines)
    "geometry": "layout.msh",         # geometry description handed to the solver
    "cache_dir": "gen.cache",         # shared solve cache, written once
    "output_dir": ".",                # where field<i>.txt files go
    "field_prefix": "field",
    "field_suffix": ".txt",
    "value_format": "%.17g",          # lossless float text
    "workers": 1,                     # parallel electrode jobs (cache must exist)
    "max_retries": 0,                 # extra attempts for a failed electrode job
    "parallel_backend": "loky",       # joblib backend for workers > 1
    "mesh_size": 0.0,                 # gmsh characteristic length for CAD import, 0 = gmsh default
}

# env var -> (config key, type)
ENV_OVERRIDES = {
    "FIELDGEN_GRID": ("grid_spec", str),
    "FIELDGEN_GEOMETRY": ("geometry", str),
    "FIELDGEN_CACHE_DIR": ("cache_dir", str),
    "FIELDGEN_OUTPUT_DIR": ("output_dir", str),
    "FIELDGEN_WORKERS": ("workers", int),
}

NUMERIC_KEYS = {"workers": int, "max_retries": int, "mesh_size": float}


def _config_candidates(config_path=None):
    candidates = []
    if config_path:
        candidates.append(pathlib.Path(config_path).expanduser())
    env_path = os.environ.get("FIELDGEN_CONFIG")
    if env_path:
        candidates.append(pathlib.Path(env_path).expanduser())
    candidates.append(pathlib.Path.cwd() / "fieldgen.json")
    return candidates


def load_config(config_path=None, overrides: Optional[dict] = None,
                log: Callable[[str], None] = print):
    """
    Build the run configuration.

    Resolution order (later wins):
    1) DEFAULT_CFG
    2) first readable JSON file of: config_path, FIELDGEN_CONFIG env var, ./fieldgen.json
    3) FIELDGEN_* environment variables
    4) overrides (CLI flags); None values are ignored
    """
    cfg = dict(DEFAULT_CFG)

    for path in _config_candidates(config_path):
        if not path.exists():
            continue
        try:
            with open(path, "r") as f:
                data = json.load(f)
        except (OSError, ValueError) as exc:
            log(f"[config] Warning: Failed to read config {path}: {exc}")
            continue
        if not isinstance(data, dict):
            log(f"[config] Warning: {path} did not contain a JSON object; ignoring.")
            continue
        unknown = sorted(set(data) - set(DEFAULT_CFG))
        if unknown:
            log(f"[config] Warning: unknown keys in {path}: {', '.join(unknown)}")
        cfg.update({k: v for k, v in data.items() if k in DEFAULT_CFG})
        log(f"[config] Loaded overrides from: {path}")
        break

    for env_name, (key, cast) in ENV_OVERRIDES.items():
        raw = os.environ.get(env_name)
        if raw is None or not raw.strip():
            continue
        try:
            cfg[key] = cast(raw.strip())
        except ValueError:
            log(f"[config] Warning: ignoring {env_name}={raw!r} (expected {cast.__name__})")

    if overrides:
        cfg.update({k: v for k, v in overrides.items() if v is not None})

    #type casting, falling back to the default on bad values
    for key, cast in NUMERIC_KEYS.items():
        try:
            cfg[key] = cast(cfg[key])
        except (TypeError, ValueError):
            log(f"[config] Warning: ignoring {key}={cfg[key]!r} (expected {cast.__name__})")
            cfg[key] = DEFAULT_CFG[key]
    cfg["workers"] = max(1, cfg["workers"])
    cfg["max_retries"] = max(0, cfg["max_retries"])
    return cfg
