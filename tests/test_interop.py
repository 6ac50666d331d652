from array import array

import numpy as np
import pytest

import interop
from exceptions import (
    BufferSizeError,
    EmptyConstraintSetError,
    InvalidConstraintIndexError,
    InvalidTopologyError,
    UseAfterDisposeError,
)

from sample_meshes import grid


def flat_grid():
    verts, faces = grid(3, 3)
    return verts.ravel().tolist(), faces.ravel().tolist(), verts


def test_array_to_matrix_is_row_major():
    M = interop.array_to_matrix([1, 2, 3, 4, 5, 6], 2, 3)
    assert M.tolist() == [[1.0, 2.0, 3.0], [4.0, 5.0, 6.0]]
    with pytest.raises(BufferSizeError):
        interop.array_to_matrix([1, 2, 3, 4], 2, 3)


def test_matrix_to_array_fills_buffer_in_place():
    M = np.arange(6, dtype=np.float64).reshape(2, 3)
    out = np.zeros(6)
    result = interop.matrix_to_array(M, out=out)
    assert result is out
    assert out.tolist() == [0.0, 1.0, 2.0, 3.0, 4.0, 5.0]

    buf = array("d", [0.0] * 6)
    interop.matrix_to_array(M, out=buf)
    assert list(buf) == [0.0, 1.0, 2.0, 3.0, 4.0, 5.0]

    with pytest.raises(BufferSizeError):
        interop.matrix_to_array(M, out=np.zeros(5))


def test_handle_lifecycle():
    points, tris, verts = flat_grid()
    handle = interop.initialize(points, 9, tris, 8, [0, 8], 2, 5)
    assert handle in interop.live_handles()

    t = np.array([0.0, 0.0, 2.0])
    targets = (verts[[0, 8]] + t).ravel()
    solution = np.zeros(27)
    interop.step(handle, targets, solution)
    assert np.allclose(solution.reshape(9, 3), verts + t)

    interop.dispose(handle)
    assert handle not in interop.live_handles()
    with pytest.raises(UseAfterDisposeError):
        interop.step(handle, targets, solution)
    with pytest.raises(UseAfterDisposeError):
        interop.dispose(handle)


def test_step_without_output_buffer_returns_flat_solution():
    points, tris, verts = flat_grid()
    handle = interop.initialize(points, 9, tris, 8, [4], 1, 2)
    try:
        flat = interop.step(handle, verts[4].tolist())
        assert flat.shape == (27,)
        assert np.allclose(flat, verts.ravel())
    finally:
        interop.dispose(handle)


def test_failed_initialize_registers_nothing():
    points, tris, _ = flat_grid()
    before = interop.live_handles()
    with pytest.raises(EmptyConstraintSetError):
        interop.initialize(points, 9, tris, 8, [], 0, 5)
    assert interop.live_handles() == before


def test_buffer_counts_are_checked():
    points, tris, _ = flat_grid()
    with pytest.raises(BufferSizeError):
        interop.initialize(points, 10, tris, 8, [0], 1, 5)
    with pytest.raises(BufferSizeError):
        interop.initialize(points, 9, tris, 8, [0, 1], 1, 5)

    handle = interop.initialize(points, 9, tris, 8, [0], 1, 5)
    try:
        with pytest.raises(BufferSizeError):
            interop.step(handle, [0.0, 0.0])
    finally:
        interop.dispose(handle)


def test_handles_are_independent():
    points, tris, verts = flat_grid()
    a = interop.initialize(points, 9, tris, 8, [0], 1, 3)
    b = interop.initialize(points, 9, tris, 8, [0], 1, 3)
    assert a != b
    try:
        sa = interop.step(a, (verts[0] + 1.0).tolist())
        sb = interop.step(b, verts[0].tolist())
        assert np.allclose(sa, verts.ravel() + 1.0)
        assert np.allclose(sb, verts.ravel())
    finally:
        interop.dispose(a)
        interop.dispose(b)


def test_fractional_indices_are_rejected_not_truncated():
    points, tris, _ = flat_grid()
    before = interop.live_handles()
    with pytest.raises(InvalidConstraintIndexError) as excinfo:
        interop.initialize(points, 9, tris, 8, [0.0, 1.7], 2, 5)
    assert excinfo.value.index == pytest.approx(1.7)

    bad_tris = [float(t) for t in tris]
    bad_tris[4] = 3.5
    with pytest.raises(InvalidTopologyError):
        interop.initialize(points, 9, bad_tris, 8, [0], 1, 5)
    assert interop.live_handles() == before


def test_whole_valued_float_indices_are_accepted():
    points, tris, verts = flat_grid()
    handle = interop.initialize(points, 9, [float(t) for t in tris], 8, [0.0, 8.0], 2, 3)
    try:
        flat = interop.step(handle, verts[[0, 8]].ravel())
        assert np.allclose(flat, verts.ravel())
    finally:
        interop.dispose(handle)


def test_solution_buffer_must_be_writable_in_place():
    M = np.arange(6, dtype=np.float64).reshape(2, 3)
    with pytest.raises(TypeError):
        interop.matrix_to_array(M, out=[0.0] * 6)

    frozen = np.zeros(6)
    frozen.setflags(write=False)
    with pytest.raises(TypeError):
        interop.matrix_to_array(M, out=frozen)

    strided = np.zeros(12)[::2]
    interop.matrix_to_array(M, out=strided)
    assert strided.tolist() == [0.0, 1.0, 2.0, 3.0, 4.0, 5.0]
