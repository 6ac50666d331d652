import numpy as np
import pytest

from exceptions import InvalidTopologyError
from util import build_one_ring_neighbors, build_topology, validate_faces

from sample_meshes import equilateral_triangle, grid


def test_single_triangle_topology():
    verts, faces = equilateral_triangle()
    topo = build_topology(3, faces)

    assert topo.num_edges == 3
    assert topo.edges.tolist() == [[0, 1], [0, 2], [1, 2]]
    assert topo.neighbors == [[1, 2], [0, 2], [0, 1]]
    assert topo.vertex_faces == [[0], [0], [0]]
    # edge (1, 2) is opposite corner 0
    assert topo.edge_opposites[2] == [0]
    assert topo.face_edges[0].tolist() == [2, 1, 0]
    assert len(topo.boundary_edges()) == 3


def test_grid_edges_and_opposites():
    verts, faces = grid(3, 3)
    topo = build_topology(9, faces)

    # 12 axis edges + 4 diagonals
    assert topo.num_edges == 16
    counts = sorted(len(opp) for opp in topo.edge_opposites)
    assert counts.count(1) == 8
    assert counts.count(2) == 8
    assert np.all(topo.edges[:, 0] < topo.edges[:, 1])
    assert topo.neighbors[4] == sorted(topo.neighbors[4])
    assert len(topo.neighbors[4]) == 6


def test_neighbors_are_symmetric():
    verts, faces = grid(4, 3)
    neighbors = build_one_ring_neighbors(12, faces)
    for i, nbs in enumerate(neighbors):
        for j in nbs:
            assert i in neighbors[j]


def test_unreferenced_vertex_has_no_neighbors():
    faces = np.array([[0, 1, 2]])
    topo = build_topology(4, faces)
    assert topo.neighbors[3] == []
    assert topo.vertex_faces[3] == []


@pytest.mark.parametrize(
    "faces",
    [
        [[0, 1, 3]],
        [[0, 1, -1]],
        [[0, 1, 2], [2, 1, 7]],
    ],
)
def test_out_of_range_index_raises(faces):
    with pytest.raises(InvalidTopologyError):
        build_topology(3, faces)


def test_error_names_offending_triangle():
    with pytest.raises(InvalidTopologyError) as excinfo:
        validate_faces(3, [[0, 1, 2], [2, 1, 7]])
    assert excinfo.value.triangle == 1
    assert "outside vertex range" in str(excinfo.value)


def test_repeated_index_is_degenerate():
    with pytest.raises(InvalidTopologyError) as excinfo:
        build_topology(3, [[0, 1, 1]])
    assert "degenerate" in str(excinfo.value)


def test_flat_triangle_list():
    faces = validate_faces(4, [0, 1, 2, 0, 2, 3])
    assert faces.shape == (2, 3)
    with pytest.raises(InvalidTopologyError):
        validate_faces(4, [0, 1, 2, 3])


def test_empty_triangle_list():
    topo = build_topology(2, [])
    assert topo.num_edges == 0
    assert topo.neighbors == [[], []]
