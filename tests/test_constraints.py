import numpy as np
import pytest
import scipy.sparse as sp

from exceptions import (
    EmptyConstraintSetError,
    InvalidConstraintIndexError,
    SingularSystemError,
)
from util import (
    build_laplacian,
    build_topology,
    compute_cotangent_weights,
    factorize,
    setup_constrained_system,
    validate_constraints,
)

from sample_meshes import grid, two_triangles_apart


def grid_laplacian(nx=4, ny=4):
    verts, faces = grid(nx, ny)
    topo = build_topology(nx * ny, faces)
    return build_laplacian(nx * ny, topo.edges, compute_cotangent_weights(verts, topo))


def test_partition_preserves_constraint_order():
    L = grid_laplacian()
    free_idx, fixed_idx, K_UU, K_UF = setup_constrained_system(L, [15, 0, 3], 16)

    assert fixed_idx.tolist() == [15, 0, 3]
    assert free_idx.tolist() == [i for i in range(16) if i not in (0, 3, 15)]
    assert K_UU.shape == (13, 13)
    assert K_UF.shape == (13, 3)

    K = -L.toarray()
    assert np.allclose(K_UU.toarray(), K[np.ix_(free_idx, free_idx)])
    assert np.allclose(K_UF.toarray(), K[np.ix_(free_idx, [15, 0, 3])])
    assert np.allclose(K_UU.toarray(), K_UU.toarray().T)


def test_empty_constraint_set():
    with pytest.raises(EmptyConstraintSetError):
        validate_constraints([], 5)


def test_duplicate_constraint():
    with pytest.raises(InvalidConstraintIndexError) as excinfo:
        validate_constraints([1, 4, 1], 5)
    assert excinfo.value.index == 1


@pytest.mark.parametrize("bad", [5, -1])
def test_constraint_out_of_range(bad):
    with pytest.raises(InvalidConstraintIndexError) as excinfo:
        validate_constraints([0, bad], 5)
    assert excinfo.value.index == bad


def test_factorized_solver_matches_dense_solve():
    L = grid_laplacian()
    free_idx, fixed_idx, K_UU, K_UF = setup_constrained_system(L, [0, 15], 16)
    solve = factorize(K_UU)

    rng = np.random.default_rng(3)
    rhs = rng.normal(size=(free_idx.size, 3))
    expected = np.linalg.solve(K_UU.toarray(), rhs)
    assert np.allclose(solve(rhs), expected)


def test_component_without_handle_is_singular():
    verts, faces = two_triangles_apart()
    topo = build_topology(6, faces)
    L = build_laplacian(6, topo.edges, compute_cotangent_weights(verts, topo))
    _, _, K_UU, _ = setup_constrained_system(L, [0], 6)
    with pytest.raises(SingularSystemError):
        factorize(K_UU)


def test_isolated_free_vertex_is_singular():
    L = grid_laplacian(2, 2)
    # pad with a vertex that no triangle references
    L = sp.block_diag([L, sp.csc_matrix((1, 1))]).tocsc()
    _, _, K_UU, _ = setup_constrained_system(L, [0], 5)
    with pytest.raises(SingularSystemError):
        factorize(K_UU)


def test_all_vertices_constrained():
    L = grid_laplacian(2, 2)
    free_idx, _, K_UU, K_UF = setup_constrained_system(L, [0, 1, 2, 3], 4)
    assert free_idx.size == 0
    solve = factorize(K_UU)
    assert solve(np.zeros((0, 3))).shape == (0, 3)
