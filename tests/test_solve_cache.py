import json

import pytest

import solve_cache
from field_errors import CacheNotReadyError


def test_fingerprint_tracks_contents(tmp_path):
    a = tmp_path / "a.msh"
    b = tmp_path / "b.msh"
    a.write_text("geometry one")
    b.write_text("geometry one")
    assert solve_cache.geometry_fingerprint(a) == solve_cache.geometry_fingerprint(b)
    b.write_text("geometry two")
    assert solve_cache.geometry_fingerprint(a) != solve_cache.geometry_fingerprint(b)


def test_empty_cache_is_not_ready(tmp_path):
    assert not solve_cache.is_ready(tmp_path / "gen.cache")
    with pytest.raises(CacheNotReadyError):
        solve_cache.require_ready(tmp_path / "gen.cache")


def test_marker_round_trip(tmp_path):
    cache = tmp_path / "gen.cache"
    cache.mkdir()
    solve_cache.write_marker(cache, "abc123", ["0", "1"], extra={"geometry": "layout.msh"})

    assert solve_cache.is_ready(cache)
    assert solve_cache.is_ready(cache, "abc123")
    marker = solve_cache.require_ready(cache, "abc123")
    assert marker["electrodes"] == ["0", "1"]
    assert marker["geometry"] == "layout.msh"
    assert not list(cache.glob("*.tmp"))


def test_fingerprint_mismatch_is_not_ready(tmp_path):
    cache = tmp_path / "gen.cache"
    cache.mkdir()
    solve_cache.write_marker(cache, "abc123", [])
    assert not solve_cache.is_ready(cache, "other")
    with pytest.raises(CacheNotReadyError, match="different geometry"):
        solve_cache.require_ready(cache, "other")


def test_corrupt_marker_is_not_ready(tmp_path):
    cache = tmp_path / "gen.cache"
    cache.mkdir()
    (cache / solve_cache.READY_MARKER).write_text("{half written")
    assert solve_cache.read_marker(cache) is None


def test_clear_marker(tmp_path):
    cache = tmp_path / "gen.cache"
    cache.mkdir()
    solve_cache.write_marker(cache, "x", [])
    solve_cache.clear_marker(cache)
    assert not solve_cache.is_ready(cache)
    solve_cache.clear_marker(cache)


def test_build_lock_is_exclusive(tmp_path):
    cache = tmp_path / "gen.cache"
    with solve_cache.BuildLock(cache):
        assert (cache / solve_cache.BUILD_LOCK).exists()
        with pytest.raises(CacheNotReadyError, match="Another cache build"):
            solve_cache.BuildLock(cache).acquire()
    assert not (cache / solve_cache.BUILD_LOCK).exists()


def test_build_lock_released_on_error(tmp_path):
    cache = tmp_path / "gen.cache"
    with pytest.raises(RuntimeError):
        with solve_cache.BuildLock(cache):
            raise RuntimeError("solve failed")
    assert not (cache / solve_cache.BUILD_LOCK).exists()
    assert not solve_cache.is_ready(cache)


def test_marker_is_json(tmp_path):
    cache = tmp_path / "gen.cache"
    cache.mkdir()
    path = solve_cache.write_marker(cache, "f00", ["3"])
    with open(path) as f:
        data = json.load(f)
    assert data["fingerprint"] == "f00"
    assert "completed" in data
