"""Carry a deformation of a simplified mesh over to the full-resolution mesh.

The session runs on a decimated copy of the input. Every high-res point is
bound once to its closest low-res triangle: barycentric coordinates of the
closest point plus an offset expressed in a frame built on the interpolated
vertex normal. After each step the high-res points are rebuilt from the
deformed low-res positions, so the identity deformation returns the input
points and a rigid motion moves them rigidly.
"""

import logging

import numpy as np
import trimesh

logger = logging.getLogger("arap.mapping")


def simplify_mesh(verts, faces, target_faces):
    """
    Quadric decimation down to about target_faces triangles.
    return: (V, 3) float64, (F, 3) int64
    """
    mesh = trimesh.Trimesh(vertices=verts, faces=faces, process=False)
    if target_faces >= len(mesh.faces):
        return np.asarray(mesh.vertices, dtype=np.float64), np.asarray(mesh.faces, dtype=np.int64)
    low = mesh.simplify_quadric_decimation(face_count=int(target_faces))
    # drop vertices the decimation left behind
    low.remove_unreferenced_vertices()
    logger.info("[Simplify] %d -> %d faces, %d vertices", len(mesh.faces), len(low.faces), len(low.vertices))
    return np.asarray(low.vertices, dtype=np.float64), np.asarray(low.faces, dtype=np.int64)


def vertex_normals(verts, faces):
    mesh = trimesh.Trimesh(vertices=verts, faces=faces, process=False)
    return np.asarray(mesh.vertex_normals, dtype=np.float64)


def _surface_frames(triangles, corner_normals, bary):
    """
    Orthonormal frame per bound point: tangent along the first triangle edge,
    normal interpolated from the corner normals.
    triangles, corner_normals: (H, 3, 3); bary: (H, 3)
    return: (H, 3, 3) rows t1, t2, n
    """
    n = np.einsum("hc,hca->ha", bary, corner_normals)
    face_n, valid = trimesh.triangles.normals(triangles)
    flat_n = np.zeros_like(n)
    flat_n[valid] = face_n
    length = np.linalg.norm(n, axis=1)
    # opposite corner normals can cancel; use the face normal there
    weak = length < 1e-8
    n[weak] = flat_n[weak]
    length[weak] = np.linalg.norm(n[weak], axis=1)
    n = n / np.where(length > 0.0, length, 1.0)[:, None]

    edge = triangles[:, 1] - triangles[:, 0]
    t1 = edge - np.einsum("ha,ha->h", edge, n)[:, None] * n
    t1 = t1 / np.maximum(np.linalg.norm(t1, axis=1), 1e-300)[:, None]
    t2 = np.cross(n, t1)
    return np.stack([t1, t2, n], axis=1)


class HighResMapping:
    """
    Binding of high-res points to a low-res triangle mesh.

    low_verts, low_faces: the mesh the session deforms
    high_points:          (H, 3) points to carry along
    """

    def __init__(self, low_verts, low_faces, high_points):
        low_verts = np.asarray(low_verts, dtype=np.float64)
        self.low_faces = np.asarray(low_faces, dtype=np.int64)
        high_points = np.asarray(high_points, dtype=np.float64).reshape(-1, 3)
        if self.low_faces.shape[0] == 0:
            raise ValueError("the low resolution mesh has no triangles")

        mesh = trimesh.Trimesh(vertices=low_verts, faces=self.low_faces, process=False)
        closest, distance, tri_id = trimesh.proximity.closest_point(mesh, high_points)
        self.triangle_ids = np.asarray(tri_id, dtype=np.int64)

        triangles = low_verts[self.low_faces[self.triangle_ids]]
        self.barycentric = trimesh.triangles.points_to_barycentric(triangles, closest)

        normals = vertex_normals(low_verts, self.low_faces)
        frames = _surface_frames(triangles, normals[self.low_faces[self.triangle_ids]], self.barycentric)
        base = np.einsum("hc,hca->ha", self.barycentric, triangles)
        # offset in (t1, t2, n) coordinates
        self.offsets = np.einsum("hka,ha->hk", frames, high_points - base)

        logger.info(
            "[Mapping] %d points bound to %d triangles, max distance %.3e",
            high_points.shape[0],
            np.unique(self.triangle_ids).size,
            float(np.max(distance)) if distance.size else 0.0,
        )

    @property
    def num_points(self):
        return self.triangle_ids.size

    def apply(self, low_deformed):
        """
        low_deformed: (V, 3) deformed low-res positions
        return: (H, 3) high-res positions
        """
        low_deformed = np.asarray(low_deformed, dtype=np.float64).reshape(-1, 3)
        corners = self.low_faces[self.triangle_ids]
        triangles = low_deformed[corners]
        normals = vertex_normals(low_deformed, self.low_faces)
        frames = _surface_frames(triangles, normals[corners], self.barycentric)
        base = np.einsum("hc,hca->ha", self.barycentric, triangles)
        return base + np.einsum("hk,hka->ha", self.offsets, frames)

    def apply_frames(self, frames):
        return [self.apply(U) for U in frames]
