"""
On-disk solve cache bookkeeping.

The cache directory is written exactly once, by the cache-build job, and is
read-only afterwards. Completion is signalled by a readiness marker written
atomically after every other cache file; electrode jobs refuse to run
without it. A lock file keeps two cache builds from racing each other.
"""

import hashlib
import json
import os
import pathlib
from datetime import datetime
from typing import Any, Dict, Optional, Union

from field_errors import CacheNotReadyError

READY_MARKER = "READY.json"
BUILD_LOCK = "BUILD.lock"

PathLike = Union[str, pathlib.Path]


def geometry_fingerprint(geometry_path: PathLike) -> str:
    """
    Hash of the geometry file contents.

    A cache is only valid for the geometry it was solved for.
    """
    h = hashlib.sha256()
    with open(geometry_path, "rb") as f:
        for chunk in iter(lambda: f.read(1 << 20), b""):
            h.update(chunk)
    return h.hexdigest()[:16]


def read_marker(cache_dir: PathLike) -> Optional[Dict[str, Any]]:
    #Readiness marker contents, or None if the cache was never completed
    path = pathlib.Path(cache_dir) / READY_MARKER
    if not path.exists():
        return None
    try:
        with open(path, "r") as f:
            data = json.load(f)
    except (OSError, ValueError):
        return None
    return data if isinstance(data, dict) else None


def is_ready(cache_dir: PathLike, fingerprint: Optional[str] = None) -> bool:
    marker = read_marker(cache_dir)
    if marker is None:
        return False
    if fingerprint is not None and marker.get("fingerprint") != fingerprint:
        return False
    return True


def require_ready(cache_dir: PathLike, fingerprint: Optional[str] = None) -> Dict[str, Any]:
    """Return the marker or raise CacheNotReadyError."""
    marker = read_marker(cache_dir)
    if marker is None:
        raise CacheNotReadyError(
            f"Solve cache at {cache_dir} is not ready. "
            "Run the cache-build job (start == stop) to completion first.")
    if fingerprint is not None and marker.get("fingerprint") != fingerprint:
        raise CacheNotReadyError(
            f"Solve cache at {cache_dir} was built for a different geometry "
            f"(cache {marker.get('fingerprint')}, geometry {fingerprint}). "
            "Rebuild it with a cache-build run.")
    return marker


def write_marker(cache_dir: PathLike, fingerprint: str, electrodes, extra: Optional[dict] = None) -> pathlib.Path:
    #Atomically publish the cache; must be the last write of a build
    cache_dir = pathlib.Path(cache_dir)
    marker = {
        "fingerprint": fingerprint,
        "electrodes": list(electrodes),
        "completed": datetime.now().isoformat(),
    }
    if extra:
        marker.update(extra)
    final = cache_dir / READY_MARKER
    tmp = cache_dir / (READY_MARKER + f".{os.getpid()}.tmp")
    with open(tmp, "w") as f:
        json.dump(marker, f, indent=2)
        f.flush()
        os.fsync(f.fileno())
    os.replace(tmp, final)
    return final


def clear_marker(cache_dir: PathLike) -> None:
    path = pathlib.Path(cache_dir) / READY_MARKER
    if path.exists():
        path.unlink()


class BuildLock:
    """
    Exclusive lock for the cache-build step.

    Usage:
        with BuildLock(cache_dir):
            ...solve and write cache...
    """

    def __init__(self, cache_dir: PathLike):
        self.path = pathlib.Path(cache_dir) / BUILD_LOCK
        self._held = False

    def acquire(self):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError:
            raise CacheNotReadyError(
                f"Another cache build holds {self.path}. Wait for it to finish "
                "(or remove the lock file if that build died).") from None
        with os.fdopen(fd, "w") as f:
            f.write(f"{os.getpid()}\n")
        self._held = True
        return self

    def release(self):
        if self._held:
            self._held = False
            try:
                self.path.unlink()
            except FileNotFoundError:
                pass

    def __enter__(self):
        return self.acquire()

    def __exit__(self, exc_type, exc, tb):
        self.release()
        return False
