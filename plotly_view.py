import numpy as np
import plotly.graph_objects as go


def build_mesh_figure(verts, faces, color='lightblue', handle_idx=None):
    """
    verts: (n, 3) vertex positions
    faces: (m, 3) 0-based triangle indices
    handle_idx: optional constrained vertices drawn as red markers
    """
    V = np.asarray(verts, dtype=np.float64)
    F = np.asarray(faces, dtype=np.int64)

    mesh = go.Mesh3d(
        x=V[:, 0],
        y=V[:, 1],
        z=V[:, 2],
        i=F[:, 0],
        j=F[:, 1],
        k=F[:, 2],
        color=color,
        opacity=1.0,
        flatshading=True,
    )
    data = [mesh]

    if handle_idx is not None and len(handle_idx) > 0:
        H = V[np.asarray(handle_idx, dtype=int)]
        data.append(go.Scatter3d(
            x=H[:, 0],
            y=H[:, 1],
            z=H[:, 2],
            mode='markers',
            marker=dict(size=3, color='red'),
            name='handles',
        ))

    fig = go.Figure(data=data)
    fig.update_layout(
        scene=dict(
            xaxis=dict(visible=False),
            yaxis=dict(visible=False),
            zaxis=dict(visible=False),
            aspectmode='data'
        ),
        margin=dict(l=0, r=0, t=0, b=0)
    )
    return fig


def show_deformation(faces, p_deformed, handle_idx=None):
    build_mesh_figure(p_deformed, faces, handle_idx=handle_idx).show()
