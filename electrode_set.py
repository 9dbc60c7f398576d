"""
Electrode activation sets.

Electrodes come in mirrored pairs: index i (1 <= i <= N) and N + i are the
two halves of one symmetric electrode and are driven together. Index 0 is
an unpaired feature electrode (center/RF) with no mirror. GROUND is never
driven.
"""

from typing import Dict, FrozenSet, Optional

GROUND = "GROUND"


def total_electrodes(electrode_count: int) -> int:
    #Number of non-ground electrodes in the geometry
    return 2 * electrode_count + 2


def electrode_name(index: int) -> str:
    return str(index)


def build_electrode_set(job_index: Optional[int], electrode_count: int) -> FrozenSet[int]:
    """
    Electrodes held at 1 V for one job.

    job_index None is the cache-build job and activates nothing. Bounds are
    not checked here; the caller validates the job range.
    """
    if job_index is None:
        return frozenset()
    electrodes = {job_index}
    if job_index > 0:
        electrodes.add(electrode_count + job_index)
    return frozenset(electrodes)


def electrode_voltages(active: FrozenSet[int], electrode_count: int) -> Dict[int, float]:
    #Full voltage assignment for every non-ground electrode
    return {
        i: (1.0 if i in active else 0.0)
        for i in range(total_electrodes(electrode_count))
    }
