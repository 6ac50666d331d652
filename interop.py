"""Flat-buffer boundary around :class:`arap_session.ARAPSession`.

Hosts that only exchange raw numeric buffers create a session, step it
once per frame and dispose it through integer handles. Buffers are
row-major with 3 components per vertex, triangle or constraint.
"""

from __future__ import annotations

import itertools
import logging
import threading

import numpy as np

from arap_session import ARAPSession
from exceptions import BufferSizeError, UseAfterDisposeError

logger = logging.getLogger("arap.interop")

_sessions: dict[int, ARAPSession] = {}
_handles = itertools.count(1)
_lock = threading.Lock()


def _as_flat(values, dtype):
    # dtype=None keeps the caller's element type so index checks still see fractions.
    if dtype is None:
        return np.asarray(values).ravel()
    return np.asarray(values, dtype=dtype).ravel()


def array_to_matrix(values, rows: int, cols: int = 3, dtype=np.float64, name: str = "buffer") -> np.ndarray:
    """Read a flat buffer into a (rows, cols) matrix, row by row."""
    flat = _as_flat(values, dtype)
    if flat.size != rows * cols:
        raise BufferSizeError(name, rows * cols, int(flat.size))
    return flat.reshape(rows, cols).copy()


def array_to_vector(values, size: int, dtype=None, name: str = "buffer") -> np.ndarray:
    flat = _as_flat(values, dtype)
    if flat.size != size:
        raise BufferSizeError(name, size, int(flat.size))
    return flat.copy()


def matrix_to_array(matrix, out=None) -> np.ndarray:
    """Write a matrix into a flat buffer, row by row.

    ``out`` is filled in place and must be a writable ndarray or expose a
    writable buffer (``array.array``, ctypes arrays); a plain list raises
    TypeError.
    """
    flat = np.ascontiguousarray(matrix, dtype=np.float64).ravel()
    if out is None:
        return flat.copy()
    if isinstance(out, np.ndarray):
        target = out
    else:
        try:
            view = memoryview(out)
        except TypeError:
            raise TypeError(f"solution buffer of type {type(out).__name__} cannot be written in place") from None
        if view.readonly:
            raise TypeError("solution buffer is read-only")
        target = np.asarray(view)
    if not target.flags.writeable:
        raise TypeError("solution buffer is read-only")
    if target.size != flat.size:
        raise BufferSizeError("solution", int(flat.size), int(target.size))
    target[...] = flat.reshape(target.shape)
    return target


def initialize(points, num_points, triangles, num_tris, constrained_indices, num_constraints, max_iter, **options) -> int:
    """Create a session from flat buffers and return its handle."""
    V = array_to_matrix(points, num_points, 3, name="points")
    F = array_to_matrix(triangles, num_tris, 3, dtype=None, name="triangles")
    b = array_to_vector(constrained_indices, num_constraints, name="constrained_indices")

    session = ARAPSession(V, F, b, max_iter, **options)
    with _lock:
        handle = next(_handles)
        _sessions[handle] = session
    logger.debug("Handle %d -> session (%d points, %d constraints)", handle, num_points, num_constraints)
    return handle


def get_session(handle: int) -> ARAPSession:
    with _lock:
        session = _sessions.get(handle)
    if session is None:
        raise UseAfterDisposeError(f"Handle {handle} does not refer to a live session")
    return session


def step(handle: int, constrained_position_values, solution=None) -> np.ndarray:
    """Solve one frame; the flat vertex positions are written to ``solution``."""
    session = get_session(handle)
    targets = array_to_matrix(
        constrained_position_values,
        session.constrained_indices.size,
        3,
        name="constrained_position_values",
    )
    U = session.step(targets)
    return matrix_to_array(U, out=solution)


def dispose(handle: int) -> None:
    """Release the session behind ``handle``; the handle is dead afterwards."""
    with _lock:
        session = _sessions.pop(handle, None)
    if session is None:
        raise UseAfterDisposeError(f"Handle {handle} was already disposed or never created")
    session.dispose()
    logger.debug("Handle %d disposed", handle)


def live_handles() -> list[int]:
    with _lock:
        return sorted(_sessions)
