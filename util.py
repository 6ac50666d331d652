import logging

import numpy as np
import scipy.sparse as sp
import scipy.sparse.linalg as spla

from exceptions import (
    EmptyConstraintSetError,
    InvalidConstraintIndexError,
    InvalidTopologyError,
    SingularSystemError,
)

logger = logging.getLogger("arap.util")


# -----------------------------
# Topology
# -----------------------------
class MeshTopology:
    """
    Connectivity derived once from the triangle list.

    num_verts:      N
    faces:          (F, 3) int64 triangle indices
    edges:          (E, 2) unique undirected edges, edges[e] = (i, j) with i < j
    face_edges:     (F, 3) face_edges[f, c] = edge opposite corner c of face f
    neighbors:      list[list[int]] sorted 1-ring of every vertex
    vertex_faces:   list[list[int]] incident triangles of every vertex
    edge_opposites: list[list[int]] one or two vertices opposite each edge
    """

    def __init__(self, num_verts, faces, edges, face_edges, neighbors, vertex_faces, edge_opposites):
        self.num_verts = num_verts
        self.faces = faces
        self.edges = edges
        self.face_edges = face_edges
        self.neighbors = neighbors
        self.vertex_faces = vertex_faces
        self.edge_opposites = edge_opposites

    @property
    def num_edges(self):
        return self.edges.shape[0]

    def boundary_edges(self):
        """Indices of edges with a single incident triangle."""
        return np.array([e for e, opp in enumerate(self.edge_opposites) if len(opp) == 1], dtype=int)


def validate_faces(num_verts, faces):
    """
    Check the triangle list and return it as an (F, 3) int64 array.
    Raises InvalidTopologyError on out-of-range or repeated indices.
    """
    faces = np.asarray(faces)
    if faces.size == 0:
        return np.zeros((0, 3), dtype=np.int64)
    if faces.ndim == 1:
        if faces.size % 3 != 0:
            raise InvalidTopologyError(f"flat triangle list length {faces.size} is not a multiple of 3")
        faces = faces.reshape(-1, 3)
    if faces.ndim != 2 or faces.shape[1] != 3:
        raise InvalidTopologyError(f"triangles must have shape (F, 3), got {faces.shape}")
    if not np.issubdtype(faces.dtype, np.integer):
        if not np.all(np.equal(np.mod(faces, 1), 0)):
            raise InvalidTopologyError("triangle indices must be integers")
    faces = faces.astype(np.int64)

    bad = np.where((faces < 0) | (faces >= num_verts))
    if bad[0].size > 0:
        f = int(bad[0][0])
        raise InvalidTopologyError(
            f"index {int(faces[f, bad[1][0]])} outside vertex range [0, {num_verts})", triangle=f
        )

    repeated = (faces[:, 0] == faces[:, 1]) | (faces[:, 1] == faces[:, 2]) | (faces[:, 2] == faces[:, 0])
    if np.any(repeated):
        f = int(np.argmax(repeated))
        raise InvalidTopologyError(f"degenerate triangle {faces[f].tolist()}", triangle=f)

    return faces


def build_one_ring_neighbors(num_verts, faces):
    # Use sets to avoid duplicates.
    neighbors = [set() for _ in range(num_verts)]

    for f in faces:
        i, j, k = int(f[0]), int(f[1]), int(f[2])

        # Triangle edges: (i, j), (j, k), (k, i)
        neighbors[i].add(j)
        neighbors[j].add(i)

        neighbors[j].add(k)
        neighbors[k].add(j)

        neighbors[k].add(i)
        neighbors[i].add(k)

    return [sorted(nbs) for nbs in neighbors]


def build_topology(num_verts, faces):
    """
    Topology preprocessing: validate triangles, collect unique edges,
    per-vertex adjacency and the opposite vertices of every edge.
    """
    faces = validate_faces(num_verts, faces)

    # Edge opposite corner c is (faces[:, c+1], faces[:, c+2]).
    opp = np.stack([faces[:, [1, 2]], faces[:, [2, 0]], faces[:, [0, 1]]], axis=1)  # (F, 3, 2)
    opp = np.sort(opp, axis=2).reshape(-1, 2)
    if opp.shape[0] > 0:
        edges, inverse = np.unique(opp, axis=0, return_inverse=True)
    else:
        edges, inverse = np.zeros((0, 2), dtype=np.int64), np.zeros(0, dtype=np.int64)
    face_edges = np.asarray(inverse).reshape(-1, 3)

    edge_opposites = [[] for _ in range(edges.shape[0])]
    vertex_faces = [[] for _ in range(num_verts)]
    for f, tri in enumerate(faces):
        for c in range(3):
            edge_opposites[face_edges[f, c]].append(int(tri[c]))
            vertex_faces[int(tri[c])].append(f)

    neighbors = build_one_ring_neighbors(num_verts, faces)

    return MeshTopology(num_verts, faces, edges, face_edges, neighbors, vertex_faces, edge_opposites)


# -----------------------------
# Weights
# -----------------------------
def corner_cotangents(verts, faces, eps=1e-12):
    """
    cot of the interior angle at every corner, (F, 3).
    Corners with sin(angle) < eps (collinear or zero-length sides) get 0;
    the test is on the angle, so it does not depend on the mesh scale.
    """
    a = verts[faces[:, 0]]
    b = verts[faces[:, 1]]
    c = verts[faces[:, 2]]

    def cotangent(apex, p, q):
        u = p - apex
        v = q - apex
        cross = np.linalg.norm(np.cross(u, v), axis=1)
        dot = np.einsum("ij,ij->i", u, v)
        lengths = np.linalg.norm(u, axis=1) * np.linalg.norm(v, axis=1)
        cot = np.zeros_like(dot)
        ok = (cross > 0.0) & (cross >= eps * lengths)
        cot[ok] = dot[ok] / cross[ok]
        return cot

    return np.stack([cotangent(a, b, c), cotangent(b, c, a), cotangent(c, a, b)], axis=1)


def compute_cotangent_weights(verts, topology):
    """
    verts:    (N, 3) rest positions
    topology: MeshTopology
    return:   (E,) w_ij = 0.5 * sum of cot of the angles opposite edge (i, j).
              Interior edges average their two cotangents, boundary edges
              take half the single one. Obtuse angles give negative values.
    """
    verts = np.asarray(verts, dtype=np.float64)
    if topology.num_edges == 0:
        return np.zeros(0, dtype=np.float64)
    cots = corner_cotangents(verts, topology.faces)
    return np.bincount(
        topology.face_edges.ravel(), weights=0.5 * cots.ravel(), minlength=topology.num_edges
    )


def compute_uniform_weights(topology):
    """
    uniform weight: w_ij = 1 for every mesh edge (symmetric by construction).
    """
    return np.ones(topology.num_edges, dtype=np.float64)


def build_laplacian(num_verts, edges, weights):
    """
    num_verts: N
    edges:     (E, 2) undirected edges
    weights:   (E,) edge weights
    return: L (N x N) sparse symmetric matrix (CSC),
            L[i, j] = w_ij, L[i, i] = -sum_j w_ij
    """
    i = edges[:, 0]
    j = edges[:, 1]
    rows = np.concatenate([i, j, i, j])
    cols = np.concatenate([j, i, i, j])
    vals = np.concatenate([weights, weights, -weights, -weights])
    # Duplicates are summed on conversion.
    L = sp.coo_matrix((vals, (rows, cols)), shape=(num_verts, num_verts), dtype=np.float64)
    return L.tocsc()


def compute_lumped_mass(verts, faces):
    """
    Barycentric lumped mass: one third of every incident triangle's area.
    return: (N, N) sparse diagonal matrix
    """
    n = verts.shape[0]
    M_diag = np.zeros(n, dtype=np.float64)
    if len(faces) > 0:
        v0 = verts[faces[:, 0]]
        v1 = verts[faces[:, 1]]
        v2 = verts[faces[:, 2]]
        face_areas = 0.5 * np.linalg.norm(np.cross(v1 - v0, v2 - v0), axis=1)
        np.add.at(M_diag, faces, (face_areas / 3.0)[:, None])
    return sp.diags(M_diag).tocsc()


# -----------------------------
# Constraints / factorization
# -----------------------------
def validate_constraints(fixed_idx, num_verts):
    fixed_idx = np.asarray(fixed_idx).ravel()
    if fixed_idx.size == 0:
        raise EmptyConstraintSetError()
    if not np.issubdtype(fixed_idx.dtype, np.integer):
        fractional = ~np.equal(np.mod(fixed_idx, 1), 0)
        if np.any(fractional):
            bad = float(fixed_idx[np.argmax(fractional)])
            raise InvalidConstraintIndexError(bad, f"Constraint index {bad} is not an integer.")
    fixed_idx = fixed_idx.astype(np.int64)

    for idx in fixed_idx:
        if idx < 0 or idx >= num_verts:
            raise InvalidConstraintIndexError(
                int(idx), f"Constraint index {int(idx)} outside vertex range [0, {num_verts})."
            )
    _, first, counts = np.unique(fixed_idx, return_index=True, return_counts=True)
    if np.any(counts > 1):
        dup = int(fixed_idx[first[np.argmax(counts > 1)]])
        raise InvalidConstraintIndexError(dup, f"Constraint index {dup} is given more than once.")
    return fixed_idx


def setup_constrained_system(L, fixed_idx, num_verts):
    """
    L: (N, N) sparse Laplacian (negative semi-definite convention)
    fixed_idx: constrained vertex indices F, in caller order
    num_verts: N
    return:
        free_idx: free vertex indices U (ascending)
        fixed_idx: F, validated, order preserved
        K_UU: -L[U, U]  reduced system matrix
        K_UF: -L[U, F]  coupling block moved to the right-hand side
    """
    fixed_idx = validate_constraints(fixed_idx, num_verts)
    all_idx = np.arange(num_verts, dtype=np.int64)

    # U = all - F
    free_idx = np.setdiff1d(all_idx, fixed_idx)

    K = -L.tocsr()
    K_UU = K[free_idx][:, free_idx].tocsc()   # (|U|, |U|)
    K_UF = K[free_idx][:, fixed_idx].tocsr()  # (|U|, |F|)

    return free_idx, fixed_idx, K_UU, K_UF


def factorize(A, tol=1e-12):
    """
    Sparse LU of the reduced system, done once per session.
    LU rather than Cholesky: negative cotangent weights can make A indefinite.
    return: solve(b) for b of shape (|U|,) or (|U|, k)
    """
    n = A.shape[0]
    if n == 0:
        return lambda b: np.zeros_like(b, dtype=np.float64)

    try:
        lu = spla.splu(A.tocsc())
    except RuntimeError as exc:
        raise SingularSystemError(f"Reduced system is exactly singular: {exc}") from exc

    pivots = np.abs(lu.U.diagonal())
    largest = pivots.max()
    smallest = pivots.min()
    if not np.isfinite(largest) or largest == 0.0 or smallest / largest < tol:
        raise SingularSystemError(
            f"Reduced system is numerically singular (pivot ratio {smallest / largest if largest else 0.0:.3e} < {tol:.1e}); "
            "every connected component needs at least one constrained vertex."
        )
    logger.debug("[Factor] n=%d nnz(L)=%d nnz(U)=%d pivot ratio=%.3e",
                 n, lu.L.nnz, lu.U.nnz, smallest / largest)
    return lu.solve


def compute_b(verts, edges, weights, R):
    """
    Right-hand side of the global step.
    verts:   (N, 3) original p
    edges:   (E, 2)
    weights: (E,) w_ij
    R:       (N, 3, 3) rotation matrix per vertex i
    return:  b (N, 3), b_i = sum_j w_ij/2 (R_i + R_j)(p_i - p_j)
    """
    num_verts = verts.shape[0]
    b = np.zeros((num_verts, 3), dtype=np.float64)
    if edges.shape[0] == 0:
        return b

    i = edges[:, 0]
    j = edges[:, 1]
    pij = verts[i] - verts[j]
    term = 0.5 * weights[:, None] * np.einsum("eab,eb->ea", R[i] + R[j], pij)

    # Sequential, order-stable accumulation.
    np.add.at(b, i, term)
    np.add.at(b, j, -term)
    return b
