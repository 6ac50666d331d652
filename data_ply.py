import trimesh
import numpy as np


def load_ply(path):
    """
    Load a triangle mesh (PLY, OBJ, STL ... anything trimesh reads).
    return: verts (N, 3) float64, faces (F, 3) int64
    """
    mesh = trimesh.load(path, process=False, force="mesh")
    verts = np.asarray(mesh.vertices, dtype=np.float64)
    faces = np.asarray(mesh.faces, dtype=np.int64)
    return verts, faces


def save_ply(path, verts, faces):
    """Write the (deformed) mesh, vertex order untouched."""
    mesh = trimesh.Trimesh(vertices=np.asarray(verts, dtype=np.float64),
                           faces=np.asarray(faces, dtype=np.int64),
                           process=False)
    mesh.export(path)
    return path
