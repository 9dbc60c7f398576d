import pytest

from electrode_set import build_electrode_set, electrode_voltages, total_electrodes


@pytest.mark.parametrize("n", [0, 1, 3, 17])
def test_feature_electrode_has_no_mirror(n):
    assert build_electrode_set(0, n) == {0}


@pytest.mark.parametrize("i,n", [(1, 3), (3, 3), (2, 10), (5, 1)])
def test_paired_electrode_includes_mirror(i, n):
    assert build_electrode_set(i, n) == {i, n + i}


def test_cache_build_job_activates_nothing():
    assert build_electrode_set(None, 4) == frozenset()


def test_index_bounds_are_not_checked_here():
    # the orchestrator validates the job range before dispatch
    assert build_electrode_set(50, 3) == {50, 53}


def test_total_electrodes():
    assert total_electrodes(0) == 2
    assert total_electrodes(3) == 8


def test_voltages_cover_every_electrode():
    volts = electrode_voltages(build_electrode_set(1, 3), 3)
    assert sorted(volts) == list(range(8))
    assert {i for i, v in volts.items() if v == 1.0} == {1, 4}
    assert all(v == 0.0 for i, v in volts.items() if i not in (1, 4))


def test_empty_set_grounds_everything():
    assert set(electrode_voltages(frozenset(), 2).values()) == {0.0}
