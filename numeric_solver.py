import json, pathlib, tempfile, hashlib
import numpy as np
import meshio
from dataclasses import dataclass, field
from scipy.spatial import cKDTree
from typing import Callable, Dict, List, Optional, Protocol, Union
from skfem import MeshTet, Basis, asm, condense, ElementTetP1, solve as fem_solve
from skfem.io.meshio import from_meshio as skfem_from_meshio
from skfem.models.poisson import laplace

import solve_cache
from electrode_set import GROUND, electrode_name
from field_errors import GeometryImportError, CacheNotReadyError

PathLike = Union[str, pathlib.Path]

# boundary groups held at 0 V in every basis solve
GROUNDED_GROUPS = (GROUND, "outer_box")
# suffix -> meshio file_format
MESH_FORMATS = {".msh": "gmsh", ".vtu": "vtu", ".vtk": "vtk", ".xdmf": "xdmf", ".med": "med"}
CAD_SUFFIXES = {".geo", ".step", ".stp", ".brep", ".iges", ".igs"}


@dataclass
class GeometryHandle:
    #Imported geometry: tetra mesh of the vacuum region + named boundary facets
    path: Optional[pathlib.Path]
    mesh: MeshTet
    boundaries: Dict[str, np.ndarray]
    fingerprint: str

    @property
    def electrode_names(self) -> List[str]:
        names = [n for n in self.boundaries if n not in GROUNDED_GROUPS]
        # numeric names first in index order, anything else after
        return sorted(names, key=lambda n: (0, int(n), "") if n.isdigit() else (1, 0, n))

    @classmethod
    def from_mesh(cls, mesh: MeshTet, path: Optional[PathLike] = None):
        """Wrap an in-memory skfem mesh whose boundaries name the electrodes."""
        boundaries = {str(k): np.asarray(v) for k, v in (mesh.boundaries or {}).items()}
        h = hashlib.sha256()
        h.update(np.ascontiguousarray(mesh.p).tobytes())
        h.update(np.ascontiguousarray(mesh.t).tobytes())
        for name in sorted(boundaries):
            h.update(name.encode())
            h.update(np.ascontiguousarray(boundaries[name]).tobytes())
        if not any(n not in GROUNDED_GROUPS for n in boundaries):
            raise GeometryImportError("Geometry has no electrode boundaries (named physical surfaces).")
        return cls(pathlib.Path(path) if path else None, mesh, boundaries, h.hexdigest()[:16])


@dataclass
class NumericWorld:
    """Solved geometry: per-electrode unit potentials phi_i on the mesh nodes.
    Potential for a voltage set is sum V_i * phi_i (P1, linear inside each tetra)."""
    cache_dir: pathlib.Path
    nodes: np.ndarray                   # (n_nodes, 3)
    tets: np.ndarray                    # (n_elem, 4)
    bases: Dict[str, np.ndarray]        # electrode name -> phi at nodes
    voltages: Dict[str, float] = field(default_factory=dict)
    _phi_nodes: Optional[np.ndarray] = field(default=None, repr=False)
    _tree: Optional[cKDTree] = field(default=None, repr=False)

    def __post_init__(self):
        centroids = self.nodes[self.tets].mean(axis=1)
        self._tree = cKDTree(centroids) #tree to scan for nearest tet

    @property
    def electrodes(self) -> List[str]:
        return sorted(self.bases)

    def combined_potential(self) -> np.ndarray:
        if self._phi_nodes is None:
            phi = np.zeros(self.nodes.shape[0], dtype=np.float64)
            for name, v in self.voltages.items():
                if v != 0.0 and name in self.bases:
                    phi += v * self.bases[name]
            self._phi_nodes = phi
        return self._phi_nodes

    def find_elements(self, points, k_neighbors=24):
        #Containing tetra per point, -1 if outside the mesh
        points = np.atleast_2d(np.asarray(points, dtype=np.float64))
        N = points.shape[0]
        if N == 0:
            return np.full(0, -1, dtype=int)

        k = min(k_neighbors, len(self.tets))
        _, neighbor_idxs = self._tree.query(points, k=k, workers=-1)
        neighbor_idxs = np.asarray(neighbor_idxs).reshape(N, -1)

        # Vectorized barycentric check for all (point, neighbor) pairs.
        tet_nodes = self.tets[neighbor_idxs]  # (N, k, 4)
        a = self.nodes[tet_nodes[..., 0]]
        M = np.stack((
            self.nodes[tet_nodes[..., 1]] - a,
            self.nodes[tet_nodes[..., 2]] - a,
            self.nodes[tet_nodes[..., 3]] - a,
        ), axis=-1)  # (N, k, 3, 3)
        vp = points[:, None, :] - a

        M_flat = M.reshape(-1, 3, 3)
        vp_flat = vp.reshape(-1, 3)
        valid = np.abs(np.linalg.det(M_flat)) > 1e-15
        w_flat = np.zeros_like(vp_flat)
        if np.any(valid):
            w_flat[valid] = np.linalg.solve(M_flat[valid], vp_flat[valid, :, np.newaxis]).squeeze(-1)
        w = w_flat.reshape(N, -1, 3)
        valid = valid.reshape(N, -1)

        l0 = 1.0 - w.sum(axis=-1)
        inside = valid & (l0 >= -1e-9) & (w >= -1e-9).all(axis=-1)
        first = inside.argmax(axis=1)
        return np.where(inside.any(axis=1), neighbor_idxs[np.arange(N), first], -1).astype(int)

    def evaluate(self, points) -> np.ndarray:
        pts = np.atleast_2d(np.asarray(points, dtype=np.float64))
        phi = np.full(pts.shape[0], np.nan, dtype=np.float64)
        element_ids = self.find_elements(pts)
        valid_mask = element_ids >= 0
        if not np.any(valid_mask):
            return phi

        PHI_nodes = self.combined_potential()
        valid_tets = self.tets[element_ids[valid_mask]]
        corners = self.nodes[valid_tets]  # (M, 4, 3)
        M = (corners[:, 1:] - corners[:, 0:1]).transpose(0, 2, 1)  # columns are edges
        w = np.linalg.solve(M, (pts[valid_mask] - corners[:, 0])[..., np.newaxis]).squeeze(-1)
        bary = np.column_stack([1.0 - w.sum(axis=1), w])  # (M, 4)
        phi[valid_mask] = np.einsum("mi,mi->m", bary, PHI_nodes[valid_tets])
        return phi


class SolverFacade(Protocol):
    """What the run orchestration needs from a field solver."""

    def import_geometry(self, path: PathLike) -> GeometryHandle: ...

    def build_or_load_world(self, cache_path: PathLike, geometry: GeometryHandle,
                            electrode_names=None, allow_solve: bool = True): ...

    def set_voltage(self, world, electrode, value: float) -> None: ...

    def evaluate_potential(self, world, x, y, z): ...


def _prepare_mesh(m: meshio.Mesh): #convert meshio mesh to skfem
    if "tetra" not in m.cells_dict or "triangle" not in m.cells_dict:
        kinds = ", ".join(m.cells_dict.keys())
        raise GeometryImportError(
            "Mesh must contain tetra (3D) and triangle (surface) cells. "
            f"Found: {kinds or 'none'}. "
            "Check that the geometry meshes a 3D vacuum volume with tagged electrode surfaces.")
    return skfem_from_meshio(m)


def _mesh_with_gmsh(cad_path: pathlib.Path, out_path: pathlib.Path, mesh_size: float = 0.0):
    import gmsh
    # Avoid signal handling errors when running from a worker.
    gmsh.initialize(interruptible=False)
    try:
        gmsh.option.setNumber("General.Terminal", 0)
        gmsh.option.setNumber("Mesh.Algorithm3D", 1)  # 1=Delaunay
        gmsh.option.setNumber("Mesh.ElementOrder", 1)
        gmsh.option.setNumber("Mesh.RandomFactor", 1e-9)  # repeatable meshes
        if mesh_size > 0:
            gmsh.option.setNumber("Mesh.CharacteristicLengthMax", mesh_size)
        gmsh.open(str(cad_path))
        gmsh.model.mesh.generate(3)
        gmsh.write(str(out_path))
    finally:
        gmsh.finalize()


class SkfemSolver:
    """
    Finite-element stand-in for the boundary-element engine.

    Electrode surfaces are physical groups named "0", "1", ..., plus "GROUND"
    (and optionally "outer_box"), both grounded. The expensive part is one
    Laplace solve per electrode; it runs once and is cached as basis files.
    """

    def __init__(self, mesh_size: float = 0.0, log: Callable[[str], None] = print):
        self.mesh_size = float(mesh_size or 0.0)
        self.log = log
        self._warned_missing = set()

    # -- geometry --------------------------------------------------------
    def import_geometry(self, path: PathLike) -> GeometryHandle:
        path = pathlib.Path(path)
        if not path.exists():
            raise GeometryImportError(f"Geometry description {path} not found.")
        suffix = path.suffix.lower()
        self.log(f"[mesh] Importing {path.name}...")
        try:
            if suffix in CAD_SUFFIXES:
                with tempfile.TemporaryDirectory() as tmp:
                    msh_path = pathlib.Path(tmp) / "geometry.msh"
                    _mesh_with_gmsh(path, msh_path, self.mesh_size)
                    m = meshio.read(str(msh_path), file_format="gmsh")
            else:
                if suffix not in MESH_FORMATS:
                    self.log(f"[mesh] Warning: unrecognised extension '{suffix}', trying meshio anyway")
                m = meshio.read(str(path), file_format=MESH_FORMATS.get(suffix))
        except GeometryImportError:
            raise
        except (Exception, SystemExit) as exc:
            # meshio exits the interpreter on some unreadable files
            raise GeometryImportError(f"Failed to import {path.name}: {exc}") from exc

        try:
            mesh = _prepare_mesh(m)
        except GeometryImportError:
            raise
        except Exception as exc:
            raise GeometryImportError(f"Failed to convert {path.name} to a tetra mesh: {exc}") from exc

        geometry = GeometryHandle.from_mesh(mesh, path)
        geometry.fingerprint = solve_cache.geometry_fingerprint(path)
        self.log(f"[mesh] {mesh.t.shape[1]} tetra, electrodes: {', '.join(geometry.electrode_names)}")
        return geometry

    # -- solve / load ----------------------------------------------------
    def build_or_load_world(self, cache_path: PathLike, geometry: GeometryHandle,
                            electrode_names=None, allow_solve: bool = True) -> NumericWorld:
        """
        Load the solved world from cache_path, solving first if the cache is empty.

        allow_solve=False never solves: a missing or mismatched cache raises
        CacheNotReadyError. With allow_solve=True a cache built for another
        geometry is re-solved.
        """
        cache_dir = pathlib.Path(cache_path)
        if solve_cache.is_ready(cache_dir, geometry.fingerprint):
            return self._load_world(cache_dir)
        if not allow_solve:
            solve_cache.require_ready(cache_dir, geometry.fingerprint)

        if solve_cache.read_marker(cache_dir) is not None:
            self.log(f"[cache] Cache at {cache_dir} belongs to another geometry; re-solving")
        with solve_cache.BuildLock(cache_dir):
            # another builder may have published since the check above
            if solve_cache.is_ready(cache_dir, geometry.fingerprint):
                return self._load_world(cache_dir)
            solve_cache.clear_marker(cache_dir)
            names = self._solve_bases(cache_dir, geometry, electrode_names)
            solve_cache.write_marker(cache_dir, geometry.fingerprint, names,
                                     extra={"geometry": str(geometry.path) if geometry.path else None})
        self.log(f"[cache] Solve cache written to {cache_dir}")
        return self._load_world(cache_dir)

    def _solve_bases(self, cache_dir: pathlib.Path, geometry: GeometryHandle, electrode_names=None):
        mesh = geometry.mesh
        boundary_facets = geometry.boundaries

        wanted = list(electrode_names) if electrode_names is not None else geometry.electrode_names
        electrode_facets = {}
        for name in wanted:
            name = str(name)
            if name in boundary_facets:
                electrode_facets[name] = boundary_facets[name]
            else:
                self.log(f"[solve] Warning: Could not find facets for electrode '{name}' in mesh.")
        if not electrode_facets:
            raise GeometryImportError("No electrode boundaries found in mesh; nothing to solve.")

        V = Basis(mesh, ElementTetP1())
        A = asm(laplace, V) #finite element assembly
        rhs = np.zeros(V.N) #right-hand side zero for Laplace

        ground = [V.get_dofs(facets=boundary_facets[g]).all() for g in GROUNDED_GROUPS if g in boundary_facets]
        if not ground:
            self.log("[solve] Warning: no GROUND/outer_box group; only other electrodes pin the potential.")
        ground_dofs = np.concatenate(ground) if ground else np.array([], dtype=int)
        elec_dofs = {name: V.get_dofs(facets=f).all() for name, f in electrode_facets.items()}

        cache_dir.mkdir(parents=True, exist_ok=True)
        for stale in cache_dir.glob("basis__*.npz"):
            stale.unlink()
        np.savez(cache_dir / "mesh_topology.npz", nodes=mesh.p.T, tets=mesh.t.T)

        self.log("[solve] Started solving...")
        for name, e_dofs in elec_dofs.items():
            # This electrode = 1.0, every other electrode and ground = 0.0
            others = [d for other, d in elec_dofs.items() if other != name]
            zero_dofs = np.unique(np.concatenate([ground_dofs] + others)).astype(int)
            D_idx = np.unique(np.concatenate([e_dofs, zero_dofs])).astype(int)

            x = np.zeros(V.N)
            x[e_dofs] = 1.0
            x[zero_dofs] = 0.0  # shared edges stay grounded

            phi = fem_solve(*condense(A, rhs, x=x, D=D_idx))
            np.savez(cache_dir / f"basis__{name}.npz", phi=phi)
            self.log(f"[solve] Solved basis for {name}")

        with open(cache_dir / "world.json", "w") as f:
            json.dump({"electrodes": list(elec_dofs), "n_nodes": int(V.N),
                       "n_elems": int(mesh.t.shape[1])}, f, indent=2)
        self.log("[solve] Done solving")
        return list(elec_dofs)

    def _load_world(self, cache_dir: pathlib.Path) -> NumericWorld:
        try:
            topo = np.load(cache_dir / "mesh_topology.npz")
            bases = {}
            for f in cache_dir.glob("basis__*.npz"):
                name = f.stem.split("__", 1)[1]
                bases[name] = np.load(f)["phi"]
        except OSError as exc:
            raise CacheNotReadyError(f"Solve cache at {cache_dir} is incomplete: {exc}") from exc
        if not bases:
            raise CacheNotReadyError(f"No basis files in {cache_dir}.")
        return NumericWorld(cache_dir, topo["nodes"], topo["tets"], bases)

    # -- evaluation ------------------------------------------------------
    def set_voltage(self, world: NumericWorld, electrode, value: float) -> None:
        name = electrode if isinstance(electrode, str) else electrode_name(electrode)
        value = float(value)
        if name in GROUNDED_GROUPS:
            if value != 0.0:
                raise ValueError(f"{name} is fixed at 0 V, cannot set {value} V")
            return
        if name not in world.bases and value != 0.0 and name not in self._warned_missing:
            self.log(f"[numeric] Warning: electrode '{name}' is not in the solved geometry; its voltage is ignored.")
            self._warned_missing.add(name)
        if world.voltages.get(name) != value:
            world.voltages[name] = value
            world._phi_nodes = None

    def evaluate_potential(self, world: NumericWorld, x, y, z):
        """Potential at (x, y, z); arrays broadcast. NaN outside the mesh."""
        xb, yb, zb = np.broadcast_arrays(np.asarray(x, dtype=np.float64),
                                         np.asarray(y, dtype=np.float64),
                                         np.asarray(z, dtype=np.float64))
        pts = np.column_stack([xb.ravel(), yb.ravel(), zb.ravel()])
        phi = world.evaluate(pts).reshape(xb.shape)
        if phi.ndim == 0:
            return float(phi)
        return phi
