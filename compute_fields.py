"""
Electrode field generation runs.

A run is either
- a cache-build run (start == stop): import the geometry and solve it once,
  persisting the solution in the shared cache, or
- an electrode run over [start, stop): for each electrode index, drive its
  activation set at 1 V (everything else at 0 V), sample the potential on the
  grid and write field<i>.txt.

Electrode runs may be parallel, but only once the cache-build run has
finished. That ordering is enforced through the cache readiness marker:
an electrode run against an unfinished cache fails with CacheNotReadyError
before doing any work.

Usage:
    python compute_fields.py 0 0          # build the solve cache
    python compute_fields.py 0 8 -j 4     # electrodes 0..7, four processes
"""

import argparse
import json
import pathlib
import sys
import time
import warnings
from dataclasses import dataclass, asdict, field
from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional

from joblib import Parallel, delayed

import solve_cache
from electrode_set import GROUND, build_electrode_set, electrode_name, electrode_voltages
from field_errors import FieldGenError, CacheNotReadyError, InvalidJobRangeError
from field_sampler import sample_field
from field_writer import field_filename, write_field
from grid_spec import GridSpec, grid_axes, read_grid_spec
from numeric_solver import SkfemSolver
from run_config import DEFAULT_CFG, load_config

SUMMARY_FILE = "fields_summary.json"


class RunState(Enum):
    INIT = "init"
    SPEC_LOADED = "spec_loaded"
    CACHE_BUILD = "cache_build"
    ELECTRODE_RUN = "electrode_run"
    DONE = "done"
    FAILED = "failed"


class JobStatus(Enum):
    DONE = "done"
    FAILED = "failed"
    CACHE_BUILT = "cache_built"


@dataclass
class JobResult:
    #Outcome of one job; job_index None is the cache-build job
    job_index: Optional[int]
    status: JobStatus
    output_path: Optional[str] = None
    num_points: int = 0
    attempts: int = 0
    computation_time: float = 0.0
    error_message: str = ""
    log_lines: List[str] = field(default_factory=list, repr=False)

    @property
    def ok(self) -> bool:
        return self.status != JobStatus.FAILED

    def to_dict(self) -> dict:
        d = asdict(self)
        d.pop("log_lines")
        d["status"] = self.status.value
        return d


def run_electrode_job(solver, spec: GridSpec, job_index: int, geometry, cache_dir,
                      output_path, value_format="%.17g", max_retries=0,
                      log: Optional[Callable[[str], None]] = print) -> JobResult:
    """
    Compute and write the field for one electrode index.

    Never solves: the world is loaded read-only from cache_dir. Failures are
    returned in the JobResult rather than raised so sibling jobs keep going;
    they are retried up to max_retries extra times, except a missing cache.

    With log=None the job's log lines are kept in JobResult.log_lines instead,
    for worker processes whose output the caller cannot see.
    """
    lines = []
    if log is None:
        log = lines.append
    start_time = time.time()
    attempts = 0
    error = ""
    while attempts <= max_retries:
        attempts += 1
        try:
            log(f"[compute] Starting on electrode {job_index}")
            world = solver.build_or_load_world(cache_dir, geometry, allow_solve=False)

            active = build_electrode_set(job_index, spec.electrode_count)
            for idx, volts in electrode_voltages(active, spec.electrode_count).items():
                solver.set_voltage(world, idx, volts)
            solver.set_voltage(world, GROUND, 0.0)
            log(f"[compute] Electrode {job_index}: active set {sorted(active)}")

            values = sample_field(solver, world, spec, log=log)
            log(f"[compute] Writing to '{output_path}'")
            write_field(output_path, values, fmt=value_format)
            log(f"[compute] Finished processing electrode {job_index}.")
            return JobResult(job_index, JobStatus.DONE, str(output_path), int(values.size),
                             attempts, time.time() - start_time, log_lines=lines)
        except CacheNotReadyError as e:
            error = str(e)
            log(f"[compute] Electrode {job_index} failed: {error}")
            break
        except Exception as e:
            error = f"{type(e).__name__}: {e}"
            retry = " (retrying)" if attempts <= max_retries else ""
            log(f"[compute] Electrode {job_index} failed on attempt {attempts}: {error}{retry}")

    return JobResult(job_index, JobStatus.FAILED, str(output_path), 0, attempts,
                     time.time() - start_time, error, log_lines=lines)


class FieldRun:
    """
    One invocation over the job range [start, stop).

    States: INIT -> SPEC_LOADED -> CACHE_BUILD | ELECTRODE_RUN -> DONE,
    FAILED from anywhere. Spec, geometry, range and cache-readiness errors
    are raised and abort the run before any field file is written; a single
    job's failure is recorded in its JobResult and leaves the others intact.
    """

    def __init__(self, start: int, stop: int, config: Optional[dict] = None, solver=None,
                 log: Callable[[str], None] = print, progress_callback: Optional[Callable] = None):
        self.start = int(start)
        self.stop = int(stop)
        if config is None:
            config = load_config(log=log)
        self.config = dict(DEFAULT_CFG)
        self.config.update(config)
        self.log = log
        self.progress_callback = progress_callback
        self.solver = solver if solver is not None else SkfemSolver(self.config["mesh_size"], log=log)

        self.state = RunState.INIT
        self.failure_reason = ""
        self.spec: Optional[GridSpec] = None
        self.results: List[JobResult] = []

    @property
    def is_cache_build(self) -> bool:
        return self.start == self.stop

    @property
    def cache_dir(self) -> pathlib.Path:
        return pathlib.Path(self.config["cache_dir"])

    def _emit_progress(self, current: int, total: int, message: str = ""):
        if self.progress_callback:
            try:
                self.progress_callback(current, total, message)
            except Exception:
                pass

    def _fail(self, reason: str):
        self.state = RunState.FAILED
        self.failure_reason = reason
        self.log(f"[compute] Run failed: {reason}")

    def output_path(self, job_index: int) -> pathlib.Path:
        name = field_filename(job_index, self.config["field_prefix"], self.config["field_suffix"])
        return pathlib.Path(self.config["output_dir"]) / name

    def load_spec(self) -> GridSpec:
        spec = read_grid_spec(self.config["grid_spec"], log=self.log)
        grid_axes(spec)  # degenerate axes abort here, not per job
        self.spec = spec
        self.state = RunState.SPEC_LOADED
        self.log(f"[compute] Grid {spec.dimx}x{spec.dimy}x{spec.dimz} ({spec.num_points} points), "
                 f"{spec.total_electrodes} electrodes")
        return spec

    def run(self) -> List[JobResult]:
        try:
            self.load_spec()
            if self.is_cache_build:
                self.results = [self._run_cache_build()]
            else:
                self.results = self._run_electrodes()
        except Exception as e:
            self._fail(f"{type(e).__name__}: {e}")
            raise

        failed = [r for r in self.results if not r.ok]
        if failed:
            self._fail("electrode job(s) failed: " + ", ".join(str(r.job_index) for r in failed))
        else:
            self.state = RunState.DONE
        return self.results

    def _run_cache_build(self) -> JobResult:
        self.state = RunState.CACHE_BUILD
        start_time = time.time()
        self.log("[compute] Writing solve cache")
        spec = self.spec

        # no electrode is driven while solving
        active = build_electrode_set(None, spec.electrode_count)
        self.log(f"[compute] Cache build: active set {sorted(active)}")
        names = [electrode_name(i) for i in range(spec.total_electrodes)]

        geometry = self.solver.import_geometry(self.config["geometry"])
        if solve_cache.is_ready(self.cache_dir, geometry.fingerprint):
            self.log(f"[cache] Reusing existing solve cache at {self.cache_dir}")
        self.solver.build_or_load_world(self.cache_dir, geometry, electrode_names=names, allow_solve=True)
        self._emit_progress(1, 1, "Cache built")
        return JobResult(None, JobStatus.CACHE_BUILT, str(self.cache_dir), 0, 1, time.time() - start_time)

    def _validate_range(self):
        total = self.spec.total_electrodes
        if self.start < 0 or self.stop < self.start or self.stop > total:
            raise InvalidJobRangeError(
                f"Job range [{self.start}, {self.stop}) outside electrode indices [0, {total}) "
                f"for num_electrodes={self.spec.electrode_count}")

    def _run_electrodes(self) -> List[JobResult]:
        self._validate_range()
        # fail fast before touching the geometry
        solve_cache.require_ready(self.cache_dir)
        geometry = self.solver.import_geometry(self.config["geometry"])
        solve_cache.require_ready(self.cache_dir, geometry.fingerprint)
        self.state = RunState.ELECTRODE_RUN

        jobs = list(range(self.start, self.stop))
        workers = min(int(self.config["workers"]), len(jobs))
        cfg = self.config
        started = datetime.now().isoformat()

        if workers > 1:
            self.log(f"[compute] Running {len(jobs)} electrode jobs on {workers} workers")
            results = Parallel(n_jobs=workers, backend=cfg["parallel_backend"])(
                delayed(run_electrode_job)(
                    self.solver, self.spec, i, geometry, self.cache_dir, self.output_path(i),
                    cfg["value_format"], cfg["max_retries"], None)
                for i in jobs)
            for n, r in enumerate(results, start=1):
                # worker output is collected and replayed here, in job order
                for line in r.log_lines:
                    self.log(line)
                self._emit_progress(n, len(jobs), f"electrode {r.job_index}: {r.status.value}")
        else:
            results = []
            for n, i in enumerate(jobs):
                self._emit_progress(n, len(jobs), f"electrode {i}")
                results.append(run_electrode_job(
                    self.solver, self.spec, i, geometry, self.cache_dir, self.output_path(i),
                    cfg["value_format"], cfg["max_retries"], self.log))
            self._emit_progress(len(jobs), len(jobs), "Complete")

        for r in results:
            status = " OK" if r.ok else "NO"
            self.log(f"[compute] electrode {r.job_index} -> {status} ({r.computation_time:.1f}s)"
                     + (f" {r.error_message}" if r.error_message else ""))
        self._save_summary(results, started)
        return results

    def _save_summary(self, results: List[JobResult], started: str):
        summary = {
            "start": self.start,
            "stop": self.stop,
            "grid": self.spec.to_dict(),
            "cache_dir": str(self.cache_dir),
            "jobs": [r.to_dict() for r in results],
            "failed": [r.job_index for r in results if not r.ok],
            "started": started,
            "completed": datetime.now().isoformat(),
        }
        try:
            output_dir = pathlib.Path(self.config["output_dir"])
            output_dir.mkdir(parents=True, exist_ok=True)
            with open(output_dir / SUMMARY_FILE, "w") as f:
                json.dump(summary, f, indent=2)
        except OSError as e:
            warnings.warn(f"Failed to save run summary: {e}")


def compute(start: int, stop: int, solver=None, log: Callable[[str], None] = print,
            config_path=None, **overrides) -> List[JobResult]:
    #Convenience wrapper: load config, run [start, stop), return job results
    cfg = load_config(config_path, overrides=overrides, log=log)
    return FieldRun(start, stop, config=cfg, solver=solver, log=log).run()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Compute electrode potential fields on a grid. START == STOP builds the solve cache.")
    parser.add_argument("start", type=int, help="First electrode index (inclusive).")
    parser.add_argument("stop", type=int, help="Last electrode index (exclusive); equal to START for a cache build.")
    parser.add_argument("--config", type=str, default=None, help="Path to a JSON config file.")
    parser.add_argument("--grid", dest="grid_spec", type=str, help="Grid spec file (default grid.txt).")
    parser.add_argument("--geometry", type=str, help="Geometry description (default layout.msh).")
    parser.add_argument("--cache-dir", dest="cache_dir", type=str, help="Solve cache directory (default gen.cache).")
    parser.add_argument("--output-dir", dest="output_dir", type=str, help="Directory for field files.")
    parser.add_argument("-j", "--workers", type=int, help="Parallel electrode jobs (cache must already exist).")
    parser.add_argument("--retries", dest="max_retries", type=int, help="Extra attempts per failed electrode job.")
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    overrides = {k: v for k, v in vars(args).items() if k not in ("start", "stop", "config")}
    try:
        cfg = load_config(args.config, overrides=overrides)
        run = FieldRun(args.start, args.stop, config=cfg)
        results = run.run()
    except (FieldGenError, OSError) as e:
        print(f"[compute] Error: {e}", file=sys.stderr)
        return 2
    return 0 if all(r.ok for r in results) else 1


if __name__ == "__main__":
    sys.exit(main())
