import numpy as np
import pytest

from util import (
    build_laplacian,
    build_topology,
    compute_cotangent_weights,
    compute_lumped_mass,
    compute_uniform_weights,
)

from sample_meshes import equilateral_triangle, grid, obtuse_quad, right_triangle


def test_equilateral_weights():
    verts, faces = equilateral_triangle()
    topo = build_topology(3, faces)
    w = compute_cotangent_weights(verts, topo)
    assert w == pytest.approx([0.5 / np.sqrt(3.0)] * 3)


def test_right_triangle_hypotenuse_has_zero_weight():
    verts, faces = right_triangle()
    topo = build_topology(3, faces)
    w = dict(zip(map(tuple, topo.edges.tolist()), compute_cotangent_weights(verts, topo)))
    assert w[(1, 2)] == pytest.approx(0.0, abs=1e-12)
    assert w[(0, 1)] == pytest.approx(0.5)
    assert w[(0, 2)] == pytest.approx(0.5)


def test_interior_edge_sums_both_sides():
    verts, faces = grid(3, 3)
    topo = build_topology(9, faces)
    w = dict(zip(map(tuple, topo.edges.tolist()), compute_cotangent_weights(verts, topo)))
    # interior axis edge, one 45 degree angle on each side
    assert w[(1, 4)] == pytest.approx(1.0)
    # boundary axis edge
    assert w[(0, 1)] == pytest.approx(0.5)
    # diagonals face right angles
    assert w[(0, 4)] == pytest.approx(0.0, abs=1e-12)


def test_obtuse_angle_gives_negative_weight():
    verts, faces = obtuse_quad()
    topo = build_topology(4, faces)
    w = dict(zip(map(tuple, topo.edges.tolist()), compute_cotangent_weights(verts, topo)))
    assert w[(0, 1)] < 0.0
    assert w[(0, 1)] == pytest.approx(-1.2)


def test_laplacian_structure():
    verts, faces = grid(4, 4)
    topo = build_topology(16, faces)
    w = compute_cotangent_weights(verts, topo)
    L = build_laplacian(16, topo.edges, w).toarray()

    assert np.allclose(L, L.T)
    assert np.allclose(L.sum(axis=1), 0.0)
    i, j = topo.edges[0]
    assert L[i, j] == pytest.approx(w[0])
    assert np.all(np.diag(L) <= 0.0)


def test_laplacian_is_linear_precise_on_planar_mesh():
    verts, faces = grid(4, 4)
    topo = build_topology(16, faces)
    L = build_laplacian(16, topo.edges, compute_cotangent_weights(verts, topo)).toarray()
    interior = [5, 6, 9, 10]
    assert np.allclose((L @ verts)[interior], 0.0)


def test_uniform_weights():
    verts, faces = grid(3, 3)
    topo = build_topology(9, faces)
    w = compute_uniform_weights(topo)
    assert w.shape == (16,)
    L = build_laplacian(9, topo.edges, w).toarray()
    assert L[4, 4] == pytest.approx(-6.0)


def test_lumped_mass_sums_to_area():
    verts, faces = grid(3, 4, spacing=0.5)
    M = compute_lumped_mass(verts, faces)
    assert M.diagonal().sum() == pytest.approx(1.0 * 1.5)
    assert np.all(M.diagonal() > 0.0)


@pytest.mark.parametrize("scale", [1e-8, 1e6])
def test_weights_do_not_depend_on_mesh_scale(scale):
    verts, faces = grid(3, 3)
    topo = build_topology(9, faces)
    w = compute_cotangent_weights(verts, topo)
    w_scaled = compute_cotangent_weights(verts * scale, topo)
    assert np.allclose(w_scaled, w)


def test_collinear_corner_gets_zero_weight():
    verts = np.array([[0.0, 0.0, 0.0], [1.0, 0.0, 0.0], [2.0, 0.0, 0.0]])
    topo = build_topology(3, np.array([[0, 1, 2]]))
    assert np.allclose(compute_cotangent_weights(verts, topo), 0.0)
