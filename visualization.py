import logging

import numpy as np
import open3d as o3d
from open3d.visualization import gui, rendering

logger = logging.getLogger("arap.visualization")


def to_o3d_mesh(verts, faces):
    mesh = o3d.geometry.TriangleMesh()
    mesh.vertices = o3d.utility.Vector3dVector(np.asarray(verts, dtype=np.float64))
    mesh.triangles = o3d.utility.Vector3iVector(np.asarray(faces, dtype=np.int32))
    mesh.compute_vertex_normals()
    return mesh


def select_in_rect(verts, view, proj, width, height, start, end, pad=2):
    """
    Indices of vertices whose screen projection falls in the drag rectangle.

    verts:       (N, 3)
    view, proj:  4x4 camera matrices
    start, end:  (x, y) pixel corners of the rectangle
    """
    x0, y0 = start
    x1, y1 = end
    min_x, max_x = sorted((x0, x1))
    min_y, max_y = sorted((y0, y1))

    # A click is a tiny box.
    if max_x - min_x < 2 * pad:
        min_x -= pad
        max_x += pad
    if max_y - min_y < 2 * pad:
        min_y -= pad
        max_y += pad

    verts_h = np.hstack([verts, np.ones((verts.shape[0], 1), dtype=np.float64)])
    clip = (proj @ view @ verts_h.T).T
    w = clip[:, 3:4]
    valid = w[:, 0] > 0
    ndc = clip[:, :3] / np.where(w == 0, 1.0, w)

    in_view = np.all((ndc >= -1.0) & (ndc <= 1.0), axis=1)

    x = (ndc[:, 0] * 0.5 + 0.5) * width
    y = (1.0 - (ndc[:, 1] * 0.5 + 0.5)) * height

    in_rect = (x >= min_x) & (x <= max_x) & (y >= min_y) & (y <= max_y)
    return np.where(valid & in_view & in_rect)[0]


class HandlePicker:
    """
    Open3D window for choosing handle vertices.

    Controls:
        - Shift + Left Drag: box-select vertices
        - Shift + Left Click: pick a vertex (small box)
        - C: clear selection
        - Q or Esc: finish selection
    """

    def __init__(self, verts, faces):
        self.verts = np.asarray(verts, dtype=np.float64)
        self.faces = np.asarray(faces, dtype=np.int32)
        self.selected = set()
        self._dragging = False
        self._drag_start = (0, 0)

        app = gui.Application.instance
        self.window = app.create_window("Pick handles (Shift+Drag)", 1024, 768)
        self.scene = gui.SceneWidget()
        self.scene.scene = rendering.Open3DScene(self.window.renderer)
        self.window.add_child(self.scene)

        mat = rendering.MaterialRecord()
        mat.shader = "defaultLit"
        mat.base_color = (0.7, 0.7, 0.75, 1.0)
        mesh = to_o3d_mesh(self.verts, self.faces)
        self.scene.scene.add_geometry("mesh", mesh, mat)
        bounds = mesh.get_axis_aligned_bounding_box()
        self.scene.setup_camera(60.0, bounds, bounds.get_center())

        self.scene.set_on_mouse(self._on_mouse)
        self.window.set_on_key(self._on_key)

    def _on_key(self, event):
        if event.type != gui.KeyEvent.Type.DOWN:
            return False

        if event.key in (gui.KeyName.Q, gui.KeyName.ESCAPE):
            self.window.close()
            return True

        if event.key == gui.KeyName.C:
            self.selected.clear()
            self._update_selection_geometry()
            print("Selection cleared.")
            return True

        return False

    def _on_mouse(self, event):
        if not event.is_modifier_down(gui.KeyModifier.SHIFT):
            return False

        if event.type == gui.MouseEvent.Type.BUTTON_DOWN and event.is_button_down(gui.MouseButton.LEFT):
            self._dragging = True
            self._drag_start = (event.x, event.y)
            return True

        if event.type == gui.MouseEvent.Type.BUTTON_UP and self._dragging:
            self._dragging = False
            self._pick(self._drag_start, (event.x, event.y))
            return True

        return False

    def _camera_matrices(self):
        cam = self.scene.scene.camera
        view = np.asarray(cam.get_view_matrix())
        try:
            proj = np.asarray(cam.get_projection_matrix())
        except TypeError:
            frame = self.scene.frame
            proj = np.asarray(cam.get_projection_matrix(frame.width, frame.height))
        return view, proj

    def _pick(self, start, end):
        frame = self.scene.frame
        view, proj = self._camera_matrices()
        picked = select_in_rect(self.verts, view, proj, max(1, frame.width), max(1, frame.height), start, end)
        if picked.size == 0:
            print("No vertices in the selection box.")
            return

        self.selected.update(picked.tolist())
        print(f"Selected {len(picked)} vertices. Total selected: {len(self.selected)}")
        self._update_selection_geometry()

    def _update_selection_geometry(self):
        if self.scene.scene.has_geometry("selection"):
            self.scene.scene.remove_geometry("selection")

        if not self.selected:
            return

        pcd = o3d.geometry.PointCloud()
        pcd.points = o3d.utility.Vector3dVector(self.verts[np.array(sorted(self.selected), dtype=int)])

        mat = rendering.MaterialRecord()
        mat.shader = "defaultUnlit"
        mat.point_size = 6.0
        mat.base_color = (1.0, 0.1, 0.1, 1.0)
        self.scene.scene.add_geometry("selection", pcd, mat)


def pick_handles(verts, faces):
    """
    Run the picker window and return the chosen handle vertex indices (sorted).
    """
    print(f"Total vertices: {verts.shape[0]}")
    print("Shift+LMB drag to box-select, C to clear, Q/Esc to finish.")

    app = gui.Application.instance
    app.initialize()

    picker = HandlePicker(verts, faces)
    app.run()

    if not picker.selected:
        print("No handle vertices were picked.")
        return np.array([], dtype=int)

    picked = sorted(picker.selected)
    print(f"Picked {len(picked)} handle vertices.")
    return np.array(picked, dtype=int)


def ask_handle_translation():
    """
    Ask for a translation vector (dx, dy, dz) for the selected handles.
    Example: 0 0.2 0
    """
    while True:
        txt = input("Enter dx dy dz for handle translation (e.g., 0 0.2 0): ")
        try:
            dx, dy, dz = map(float, txt.strip().split())
        except ValueError:
            print("Parse failed. Please try again. (e.g., 0 0.2 0)")
            continue
        return np.array([dx, dy, dz], dtype=np.float64)


def play_frames(faces, frames, window_name="ARAP Deformation"):
    """
    Replay a sequence of (N, 3) solutions, one per session step.
    """
    frames = list(frames)
    if not frames:
        return
    vis = o3d.visualization.Visualizer()
    vis.create_window(window_name=window_name)
    mesh = to_o3d_mesh(frames[0], faces)
    vis.add_geometry(mesh)
    for k, U in enumerate(frames):
        mesh.vertices = o3d.utility.Vector3dVector(U)
        mesh.compute_vertex_normals()
        vis.update_geometry(mesh)
        vis.poll_events()
        vis.update_renderer()
        logger.debug("frame %d / %d", k + 1, len(frames))
    vis.run()
    vis.destroy_window()
