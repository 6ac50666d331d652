"""Host-side driver: groups of handle vertices moved by rigid transforms.

Each :class:`ConstrainedSection` pins a set of vertices and carries a 4x4
homogeneous transform; its targets are the transformed rest positions.
:class:`RigidSimulator` concatenates all sections into one constraint set
and re-creates the underlying session whenever sections are added or
removed.
"""

import logging

import numpy as np

import interop

logger = logging.getLogger("arap.simulator")


class ConstrainedSection:
    """
    A group of mesh vertices (by index) and the transformation applied to them.
    """

    def __init__(self, indices, transformation=None):
        self._indices = [int(i) for i in indices]
        self.transformation = np.eye(4) if transformation is None else transformation

    @property
    def transformation(self):
        return self._transformation

    @transformation.setter
    def transformation(self, value):
        value = np.asarray(value, dtype=np.float64)
        if value.shape != (4, 4):
            raise ValueError(f"transformation must be a 4x4 matrix, got {value.shape}")
        self._transformation = value

    @property
    def indices(self):
        return list(self._indices)

    def __len__(self):
        return len(self._indices)

    def transform_points(self, points):
        """Apply the homogeneous transform to (K, 3) points."""
        points = np.asarray(points, dtype=np.float64).reshape(-1, 3)
        T = self._transformation
        p = points @ T[:3, :3].T + T[:3, 3]
        w = points @ T[3, :3] + T[3, 3]
        return p / w[:, None]

    def write_indices(self, buffer, indexer):
        for i in self._indices:
            buffer[indexer] = i
            indexer += 1
        return indexer

    def write_positions(self, buffer, undeformed_positions, indexer):
        rest = np.asarray(undeformed_positions, dtype=np.float64).reshape(-1, 3)
        p = self.transform_points(rest[self._indices])
        n = p.size
        buffer[indexer:indexer + n] = p.ravel()
        return indexer + n


class RigidSimulator:
    """
    Deforms a mesh so that every constrained section follows its transform.
    The rest of the mesh is solved as rigidly as possible.

    Sessions are static unless ``with_dynamics=True`` is passed through
    ``session_options``: without the inertia term the mesh follows the
    sections without lag; with it the mesh trails fast moving sections. Other
    ``session_options`` (weighting, tol, ...) are forwarded to every session
    the simulator creates.
    """

    def __init__(self, points, triangles, max_iter=100, **session_options):
        self._points = np.asarray(points, dtype=np.float64).ravel().copy()
        self._tris = np.asarray(triangles).ravel().copy()
        if self._points.size % 3 != 0 or self._tris.size % 3 != 0:
            raise ValueError("points and triangles must hold 3 values per entry")
        self.max_iter = max_iter
        self.session_options = session_options

        self._constrained_sections = []
        self._handle = None
        self._boundary_conditions = None
        self._solution = np.zeros_like(self._points)
        self._constraint_config_changed = False

    @property
    def num_points(self):
        return self._points.size // 3

    @property
    def sections(self):
        return list(self._constrained_sections)

    @property
    def handle(self):
        return self._handle

    def add_constraint(self, section):
        self._constrained_sections.append(section)
        self._constraint_config_changed = True

    def remove_constraint(self, section):
        for i, s in enumerate(self._constrained_sections):
            if s is section:
                del self._constrained_sections[i]
                self._constraint_config_changed = True
                return True
        return False

    def reset(self):
        self._constrained_sections.clear()
        self._constraint_config_changed = True

    def dispose(self):
        if self._handle is not None:
            interop.dispose(self._handle)
            self._handle = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.dispose()

    def num_constraints(self):
        return sum(len(s) for s in self._constrained_sections)

    def define_constrained_nodes(self, node_indices):
        self.dispose()
        self._handle = interop.initialize(
            self._points,
            self.num_points,
            self._tris,
            self._tris.size // 3,
            node_indices,
            len(node_indices),
            self.max_iter,
            **self.session_options,
        )
        return self._handle

    def update_constraint_configuration(self):
        node_indices = np.zeros(self.num_constraints(), dtype=np.int64)
        indexer = 0
        for section in self._constrained_sections:
            indexer = section.write_indices(node_indices, indexer)

        if node_indices.size > 0:
            self.define_constrained_nodes(node_indices)
        else:
            self.dispose()
        self._constraint_config_changed = False
        logger.debug("Constraint configuration: %d sections, %d vertices",
                     len(self._constrained_sections), node_indices.size)

    def perform_simulation_step(self):
        """
        One frame. return: (N, 3) positions
        """
        if self._constraint_config_changed:
            self.update_constraint_configuration()

        num_constraints = self.num_constraints()
        if self._boundary_conditions is None or self._boundary_conditions.size != 3 * num_constraints:
            self._boundary_conditions = np.zeros(3 * num_constraints, dtype=np.float64)

        indexer = 0
        for section in self._constrained_sections:
            indexer = section.write_positions(self._boundary_conditions, self._points, indexer)

        if num_constraints > 0:
            interop.step(self._handle, self._boundary_conditions, self._solution)
        else:
            # nothing pinned: the rest pose
            self._solution[:] = self._points

        return self._solution.reshape(-1, 3).copy()
