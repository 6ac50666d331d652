import logging

import numpy as np

from util import compute_b

logger = logging.getLogger("arap.solver")


# -----------------------------
# ARAP Local Step: best-fit rotation R_i of every cell via SVD.
# -----------------------------
#   S_i = sum_j w_ij (p'_i - p'_j) (p_i - p_j)^T
#   SVD(S_i) = U Sigma V^T
#   R_i = U V^T   (reflection fixed when det < 0)
def compute_covariances(verts, p_deformed, edges, weights):
    """
    Per-cell weighted covariance between rest and deformed edge vectors.

    Every undirected edge (i, j) contributes the same outer product to both
    cells, since (p_j - p_i) (x) (p'_j - p'_i) == (p_i - p_j) (x) (p'_i - p'_j).
    return: S (N, 3, 3)
    """
    num_verts = verts.shape[0]
    S = np.zeros((num_verts, 3, 3), dtype=np.float64)
    if edges.shape[0] == 0:
        return S

    i = edges[:, 0]
    j = edges[:, 1]
    e = verts[i] - verts[j]
    e_def = p_deformed[i] - p_deformed[j]
    outer = weights[:, None, None] * np.einsum("ea,eb->eab", e_def, e)

    np.add.at(S, i, outer)
    np.add.at(S, j, outer)
    return S


def cell_scales(verts, edges, weights):
    """
    Reference magnitude of every cell, (N,): sum_j |w_ij| ||p_i - p_j||^2.
    A rest-pose covariance has about this norm whatever the mesh units.
    """
    scale = np.zeros(verts.shape[0], dtype=np.float64)
    if edges.shape[0] == 0:
        return scale
    e = verts[edges[:, 0]] - verts[edges[:, 1]]
    contrib = np.abs(weights) * np.einsum("ij,ij->i", e, e)
    np.add.at(scale, edges[:, 0], contrib)
    np.add.at(scale, edges[:, 1], contrib)
    return scale


def fit_rotations(S, eps=1e-12, scale=None):
    """
    Closest proper rotation to every covariance matrix (orthogonal Procrustes).

    S:     (N, 3, 3)
    eps:   cells with ||S_i||_F < eps * scale_i are degenerate and get the identity
    scale: (N,) per-cell reference magnitude, see cell_scales; 1 when omitted
    return:
        R: (N, 3, 3), orthogonal with det = +1
        num_degenerate: number of cells that fell back to identity
    """
    num_cells = S.shape[0]
    R = np.tile(np.eye(3, dtype=np.float64), (num_cells, 1, 1))
    if num_cells == 0:
        return R, 0

    norms = np.linalg.norm(S, axis=(1, 2))
    threshold = eps if scale is None else eps * scale
    valid = np.isfinite(norms) & (norms > 0.0) & (norms >= threshold)
    num_degenerate = int(num_cells - np.count_nonzero(valid))
    if not np.any(valid):
        return R, num_degenerate

    U, _, Vt = np.linalg.svd(S[valid])
    Rv = U @ Vt

    # det(R_i) < 0 means a reflection: flip the smallest singular direction.
    flip = np.linalg.det(Rv) < 0
    if np.any(flip):
        Vt[flip, -1, :] *= -1
        Rv[flip] = U[flip] @ Vt[flip]

    R[valid] = Rv
    return R, num_degenerate


def compute_rotations(verts, p_deformed, edges, weights, eps=1e-12, scale=None):
    """
    ARAP local step.

    verts:      (N, 3) rest positions p_i
    p_deformed: (N, 3) current positions p'_i
    edges:      (E, 2) undirected edges
    weights:    (E,) w_ij
    scale:      (N,) cell_scales of the rest pose, computed when omitted
    return:
        R: (N, 3, 3) rotation per cell
    """
    if scale is None:
        scale = cell_scales(verts, edges, weights)
    S = compute_covariances(verts, p_deformed, edges, weights)
    R, num_degenerate = fit_rotations(S, eps=eps, scale=scale)
    if num_degenerate:
        logger.debug("[Local] %d degenerate cell(s) fell back to identity", num_degenerate)
    return R


# -----------------------------
# ARAP Global Step: positions for fixed rotations, constraints folded in.
# -----------------------------
def arap_global_step_constrained(
    verts,
    edges,
    weights,
    R,
    free_idx,
    fixed_idx,
    K_UF,
    solve_U,
    fixed_positions,
    extra_rhs=None,
):
    """
    verts:           (N, 3) rest positions p
    edges, weights:  cell edges and w_ij
    R:               (N, 3, 3) rotations from the local step
    free_idx:        free vertex indices (U)
    fixed_idx:       constrained vertex indices (F)
    K_UF:            free x constrained block of -L
    solve_U:         factorized solver for the reduced system
    fixed_positions: (|F|, 3) targets p'_F
    extra_rhs:       optional (|U|, 3) term added to the free right-hand side
    return:
        p_new: (N, 3)
    """
    b = compute_b(verts, edges, weights, R)  # (N, 3)

    # b~ = b_U - K_UF c_F
    b_tilde = b[free_idx, :] - K_UF @ fixed_positions
    if extra_rhs is not None:
        b_tilde = b_tilde + extra_rhs

    num_verts = verts.shape[0]
    p_new = np.zeros((num_verts, 3), dtype=np.float64)

    # Constrained vertices are placed, not solved.
    p_new[fixed_idx, :] = fixed_positions

    if free_idx.size > 0:
        p_new[free_idx, :] = solve_U(b_tilde)

    return p_new


def arap_energy(verts, p_deformed, edges, weights, R=None):
    """
    sum_i sum_{j in N(i)} w_ij ||(p'_i - p'_j) - R_i (p_i - p_j)||^2

    R defaults to the rotations fitted to p_deformed.
    """
    if edges.shape[0] == 0:
        return 0.0
    if R is None:
        R = compute_rotations(verts, p_deformed, edges, weights)

    i = edges[:, 0]
    j = edges[:, 1]
    e = verts[i] - verts[j]
    e_def = p_deformed[i] - p_deformed[j]
    # Cell i sees e, cell j sees -e; the squared residual is sign invariant.
    r_i = e_def - np.einsum("eab,eb->ea", R[i], e)
    r_j = e_def - np.einsum("eab,eb->ea", R[j], e)
    return float(np.sum(weights * (np.sum(r_i ** 2, axis=1) + np.sum(r_j ** 2, axis=1))))


# -----------------------------
# Dynamics
# -----------------------------
class DynamicsIntegrator:
    """
    Inertia term blended into the static ARAP objective.

    With lumped mass M, time step h and weight mu the global step solves

        (K_UU + mu / h^2 M_UU) p'_U = b~ + mu / h^2 M_U y_U + M_U f_ext

    where y = 2 U_0 - U_-1 extrapolates the two previous frames.
    """

    def __init__(self, mass, free_idx, time_step=1.0, mass_weight=1.0, external_force=None):
        if time_step <= 0:
            raise ValueError(f"time_step must be positive, got {time_step}")
        if mass_weight < 0:
            raise ValueError(f"mass_weight must be non-negative, got {mass_weight}")

        self.time_step = float(time_step)
        self.mass_weight = float(mass_weight)
        self.free_idx = free_idx
        self.mass_U = mass.tocsr()[free_idx][:, free_idx].tocsc()
        self.mass_diag_U = self.mass_U.diagonal()

        if external_force is None:
            external_force = np.zeros(3, dtype=np.float64)
        self.external_force = np.asarray(external_force, dtype=np.float64).reshape(3)

    @property
    def inertia_coefficient(self):
        return self.mass_weight / (self.time_step * self.time_step)

    def system_term(self):
        """Matrix added to the reduced system before factorization."""
        return self.inertia_coefficient * self.mass_U

    def extrapolate(self, current, previous):
        return 2.0 * current - previous

    def inertia_rhs(self, current, previous):
        """(|U|, 3) right-hand side term, constant across the iterations of a step."""
        y_U = self.extrapolate(current, previous)[self.free_idx]
        m = self.mass_diag_U[:, None]
        return self.inertia_coefficient * m * y_U + m * self.external_force[None, :]


# -----------------------------
# Local / global iteration
# -----------------------------
def solve_arap(
    verts,
    p_init,
    edges,
    weights,
    free_idx,
    fixed_idx,
    K_UF,
    solve_U,
    fixed_positions,
    max_iter,
    tol=None,
    extra_rhs=None,
    eps=1e-12,
    scale=None,
):
    """
    Alternate local and global steps, at most max_iter rounds.
    With tol set, stop once the largest coordinate change of a round is below it.

    return:
        p_deformed: (N, 3)
        R: (N, 3, 3) rotations used by the last global step
        num_iter: rounds performed
    """
    if scale is None:
        scale = cell_scales(verts, edges, weights)
    p_deformed = p_init
    R = None
    num_iter = 0
    for it in range(max_iter):
        # (Local) rotations R_i
        R = compute_rotations(verts, p_deformed, edges, weights, eps=eps, scale=scale)

        # (Global) positions p'
        p_new = arap_global_step_constrained(
            verts=verts,
            edges=edges,
            weights=weights,
            R=R,
            free_idx=free_idx,
            fixed_idx=fixed_idx,
            K_UF=K_UF,
            solve_U=solve_U,
            fixed_positions=fixed_positions,
            extra_rhs=extra_rhs,
        )

        diff = float(np.max(np.abs(p_new - p_deformed))) if p_new.size else 0.0
        p_deformed = p_new
        num_iter = it + 1
        logger.debug("[ARAP] iter %02d | diff = %.6e", it, diff)

        if tol is not None and diff < tol:
            logger.debug("[ARAP] converged at iter %02d | diff = %.6e", it, diff)
            break

    return p_deformed, R, num_iter
