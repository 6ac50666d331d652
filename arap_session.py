"""Stateful ARAP deformation session.

A session owns everything that is precomputed for one mesh (topology,
edge weights, the partitioned and factorized system) together with the
solver state mutated by every frame. Lifecycle::

    UNINITIALIZED --create--> READY --step--> READY --dispose--> DISPOSED

Creation either completes or raises; no half-built session is handed out.
Step calls on one session must be serialized by the caller.
"""

from __future__ import annotations

import enum
import logging

import numpy as np

from arap import DynamicsIntegrator, arap_energy, cell_scales, solve_arap
from exceptions import BufferSizeError, UseAfterDisposeError
from util import (
    build_laplacian,
    build_topology,
    compute_cotangent_weights,
    compute_lumped_mass,
    compute_uniform_weights,
    factorize,
    setup_constrained_system,
)

logger = logging.getLogger("arap.session")

WEIGHTINGS = ("cotangent", "uniform")


class SessionState(enum.Enum):
    UNINITIALIZED = "uninitialized"
    READY = "ready"
    DISPOSED = "disposed"


def as_points(values, count: int, name: str) -> np.ndarray:
    """Return ``values`` as a (count, 3) float64 array (flat buffers accepted)."""
    arr = np.asarray(values, dtype=np.float64)
    if arr.size != 3 * count:
        raise BufferSizeError(name, 3 * count, int(arr.size))
    return arr.reshape(count, 3)


class ARAPSession:
    """As-rigid-as-possible deformation of one mesh with fixed handles.

    Parameters
    ----------
    vertices:
        Rest pose, (N, 3) or flat with 3 values per vertex.
    faces:
        Triangles, (F, 3) or flat with 3 indices per triangle.
    constrained_indices:
        Handle vertices, distinct, in the order targets will be supplied.
    max_iter:
        Local/global rounds per :meth:`step` (>= 1).
    weighting:
        ``"cotangent"`` or ``"uniform"`` edge weights.
    tol:
        Optional early exit threshold on the per-round coordinate change.
    with_dynamics, time_step, mass_weight, external_force:
        Inertia term, see :class:`arap.DynamicsIntegrator`.
    degenerate_tol:
        Relative covariance norm (against the rest cell) below which a cell
        keeps the identity rotation.
    singular_tol:
        Relative pivot threshold used when factorizing.
    """

    def __init__(
        self,
        vertices,
        faces,
        constrained_indices,
        max_iter: int = 10,
        *,
        weighting: str = "cotangent",
        tol: float | None = None,
        with_dynamics: bool = False,
        time_step: float = 1.0,
        mass_weight: float = 1.0,
        external_force=None,
        degenerate_tol: float = 1e-12,
        singular_tol: float = 1e-12,
    ) -> None:
        self._state = SessionState.UNINITIALIZED

        if int(max_iter) != max_iter or max_iter < 1:
            raise ValueError(f"max_iter must be a positive integer, got {max_iter}")
        if weighting not in WEIGHTINGS:
            raise ValueError(f"weighting must be one of {WEIGHTINGS}, got {weighting!r}")
        if tol is not None and tol < 0:
            raise ValueError(f"tol must be non-negative, got {tol}")

        verts = np.asarray(vertices, dtype=np.float64)
        if verts.ndim == 1:
            if verts.size % 3 != 0:
                raise ValueError(f"flat vertex buffer length {verts.size} is not a multiple of 3")
            verts = verts.reshape(-1, 3)
        if verts.ndim != 2 or verts.shape[1] != 3:
            raise ValueError(f"vertices must have shape (N, 3), got {verts.shape}")
        if not np.all(np.isfinite(verts)):
            raise ValueError("vertices contain non-finite values")

        self.max_iter = int(max_iter)
        self.weighting = weighting
        self.tol = tol
        self.degenerate_tol = degenerate_tol
        num_verts = verts.shape[0]

        # 1) topology
        topology = build_topology(num_verts, faces)

        # 2) weights and Laplacian
        if weighting == "cotangent":
            weights = compute_cotangent_weights(verts, topology)
        else:
            weights = compute_uniform_weights(topology)
        L = build_laplacian(num_verts, topology.edges, weights)

        # 3) free / constrained partition
        free_idx, fixed_idx, K_UU, K_UF = setup_constrained_system(L, constrained_indices, num_verts)

        # 4) optional inertia term, then factorize once
        dynamics = None
        A = K_UU
        if with_dynamics:
            mass = compute_lumped_mass(verts, topology.faces)
            dynamics = DynamicsIntegrator(
                mass,
                free_idx,
                time_step=time_step,
                mass_weight=mass_weight,
                external_force=external_force,
            )
            A = (K_UU + dynamics.system_term()).tocsc()
        solve_U = factorize(A, tol=singular_tol)

        self._rest = verts.copy()
        self._rest.setflags(write=False)
        self._topology = topology
        self._weights = weights
        self._cell_scale = cell_scales(verts, topology.edges, weights)
        self._laplacian = L
        self._free_idx = free_idx
        self._fixed_idx = fixed_idx
        self._K_UF = K_UF
        self._solve_U = solve_U
        self._dynamics = dynamics

        self._solution = verts.copy()
        self._previous = verts.copy()
        self._rotations = np.tile(np.eye(3, dtype=np.float64), (num_verts, 1, 1))
        self._last_num_iter = 0

        self._state = SessionState.READY
        logger.info(
            "Session ready: %d vertices, %d triangles, %d constraints, %s weights, max_iter=%d%s",
            num_verts,
            topology.faces.shape[0],
            fixed_idx.size,
            weighting,
            self.max_iter,
            ", dynamics" if dynamics is not None else "",
        )

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------
    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def disposed(self) -> bool:
        return self._state is SessionState.DISPOSED

    def _check_ready(self) -> None:
        if self._state is not SessionState.READY:
            raise UseAfterDisposeError("ARAP session has been disposed")

    def dispose(self) -> None:
        """Release all owned state. Further calls raise UseAfterDisposeError."""
        self._check_ready()
        self._topology = None
        self._weights = None
        self._laplacian = None
        self._K_UF = None
        self._solve_U = None
        self._dynamics = None
        self._solution = None
        self._previous = None
        self._rotations = None
        self._state = SessionState.DISPOSED
        logger.debug("Session disposed")

    def __enter__(self) -> "ARAPSession":
        self._check_ready()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if self._state is SessionState.READY:
            self.dispose()

    # ------------------------------------------------------------------
    # solving
    # ------------------------------------------------------------------
    def step(self, constrained_positions) -> np.ndarray:
        """Move the handles to ``constrained_positions`` and solve.

        Targets are given in constraint order, (C, 3) or flat. Returns a copy
        of the updated (N, 3) vertex positions.
        """
        self._check_ready()
        targets = as_points(constrained_positions, self._fixed_idx.size, "constrained_positions")
        if not np.all(np.isfinite(targets)):
            raise ValueError("constrained_positions contain non-finite values")

        extra_rhs = None
        if self._dynamics is not None:
            extra_rhs = self._dynamics.inertia_rhs(self._solution, self._previous)

        p_new, R, num_iter = solve_arap(
            self._rest,
            self._solution,
            self._topology.edges,
            self._weights,
            self._free_idx,
            self._fixed_idx,
            self._K_UF,
            self._solve_U,
            targets,
            self.max_iter,
            tol=self.tol,
            extra_rhs=extra_rhs,
            eps=self.degenerate_tol,
            scale=self._cell_scale,
        )

        # history window moves by one frame
        self._previous = self._solution
        self._solution = p_new
        self._rotations = R
        self._last_num_iter = num_iter
        return p_new.copy()

    def reset(self) -> None:
        """Back to the rest pose, history cleared."""
        self._check_ready()
        self._solution = self._rest.copy()
        self._previous = self._rest.copy()
        self._rotations = np.tile(np.eye(3, dtype=np.float64), (self.num_vertices, 1, 1))
        self._last_num_iter = 0

    def energy(self) -> float:
        """ARAP energy of the current solution, rotations refitted."""
        self._check_ready()
        return arap_energy(self._rest, self._solution, self._topology.edges, self._weights)

    # ------------------------------------------------------------------
    # read-only views
    # ------------------------------------------------------------------
    @property
    def num_vertices(self) -> int:
        return self._rest.shape[0]

    @property
    def rest_vertices(self) -> np.ndarray:
        return self._rest

    @property
    def solution(self) -> np.ndarray:
        self._check_ready()
        return self._solution.copy()

    @property
    def rotations(self) -> np.ndarray:
        self._check_ready()
        return self._rotations.copy()

    @property
    def free_indices(self) -> np.ndarray:
        return self._free_idx.copy()

    @property
    def constrained_indices(self) -> np.ndarray:
        return self._fixed_idx.copy()

    @property
    def with_dynamics(self) -> bool:
        return self._dynamics is not None

    @property
    def last_num_iter(self) -> int:
        return self._last_num_iter

    @property
    def edge_weights(self) -> np.ndarray:
        self._check_ready()
        return self._weights.copy()

    @property
    def topology(self):
        self._check_ready()
        return self._topology

    @property
    def laplacian(self):
        self._check_ready()
        return self._laplacian
