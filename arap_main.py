import argparse
import logging

import numpy as np

from arap_session import ARAPSession
from data_ply import load_ply, save_ply
from exceptions import ARAPError
from high_res_mapping import HighResMapping, simplify_mesh
from logging_config import setup_logging

logger = logging.getLogger("arap.main")


# -----------------------------
# Anchors: pin part of the bottom so the mesh does not just follow the handles rigidly.
# -----------------------------
def choose_anchor_vertices(verts, anchor_percent=0.02, exclude=None):
    """
    Vertices in the lowest anchor_percent fraction along y.
    exclude: indices (e.g. handles) that must not become anchors
    """
    y = verts[:, 1]
    thresh = np.quantile(y, anchor_percent)
    anchor_idx = np.where(y <= thresh)[0]
    if anchor_idx.size == 0:
        anchor_idx = np.array([int(np.argmin(y))], dtype=int)
    if exclude is not None:
        anchor_idx = np.setdiff1d(anchor_idx, np.asarray(exclude, dtype=int))
    return anchor_idx.astype(int)


def interpolate_targets(start, end, num_frames):
    """
    Handle targets for frames 1..num_frames, moving linearly from start to end.
    """
    for k in range(1, num_frames + 1):
        t = k / num_frames
        yield (1.0 - t) * start + t * end


def run_frames(session, start_targets, end_targets, num_frames):
    """
    Drive one session step per frame. return: list of (N, 3) solutions
    """
    frames = []
    for k, targets in enumerate(interpolate_targets(start_targets, end_targets, num_frames)):
        U = session.step(targets)
        frames.append(U)
        logger.info("[Frame] %02d | iters = %d | energy = %.6e", k, session.last_num_iter, session.energy())
    return frames


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Interactive as-rigid-as-possible mesh deformation.")
    parser.add_argument("mesh", nargs="?", default="./data/armadillo_simplified.ply",
                        help="mesh file readable by trimesh")
    parser.add_argument("--weight", type=str, default="cot", choices=["cot", "uniform"],
                        help="edge weights: cot (cotangent) or uniform")
    parser.add_argument("--iters", type=int, default=10, help="local/global rounds per frame")
    parser.add_argument("--tol", type=float, default=None, help="optional early-exit tolerance")
    parser.add_argument("--frames", type=int, default=10, help="frames to reach the handle translation")
    parser.add_argument("--dynamics", action="store_true", help="blend in the inertia term")
    parser.add_argument("--time-step", type=float, default=1.0)
    parser.add_argument("--mass-weight", type=float, default=1.0)
    parser.add_argument("--anchor-percent", type=float, default=0.02)
    parser.add_argument("--simplify", type=int, default=None, metavar="FACES",
                        help="deform a decimated copy with about FACES triangles and map it back")
    parser.add_argument("--handles", type=int, nargs="*", default=None,
                        help="handle vertex indices (skips the interactive picker)")
    parser.add_argument("--translate", type=float, nargs=3, default=None, metavar=("DX", "DY", "DZ"),
                        help="handle translation (skips the prompt)")
    parser.add_argument("--viewer", choices=["open3d", "plotly", "none"], default="open3d")
    parser.add_argument("--output", default=None, help="write the final mesh here")
    parser.add_argument("--log-file", default="arap.log")
    parser.add_argument("--quiet", action="store_true")
    args = parser.parse_args(argv)
    if args.frames < 1:
        parser.error("--frames must be at least 1")
    if args.simplify is not None and args.simplify < 1:
        parser.error("--simplify must be at least 1")
    return args


def main(argv=None):
    args = parse_args(argv)
    setup_logging(args.log_file, quiet=args.quiet)

    # 1) mesh
    verts, faces = load_ply(args.mesh)
    logger.info("Loaded %s: %d vertices, %d faces", args.mesh, verts.shape[0], faces.shape[0])

    # 1b) optional low-res proxy; handles index the proxy
    mapping = None
    if args.simplify is not None:
        high_verts, high_faces = verts, faces
        verts, faces = simplify_mesh(high_verts, high_faces, args.simplify)
        mapping = HighResMapping(verts, faces, high_verts)

    # 2) handles, picked with Open3D unless given
    if args.handles is None:
        from visualization import pick_handles
        handle_idx = pick_handles(verts, faces)
    else:
        handle_idx = np.array(args.handles, dtype=int)
    if len(handle_idx) == 0:
        print("No handles selected, exiting.")
        return 1

    # 3) translation
    if args.translate is None:
        from visualization import ask_handle_translation
        delta = ask_handle_translation()
    else:
        delta = np.array(args.translate, dtype=np.float64)

    # 4) anchors
    anchor_idx = choose_anchor_vertices(verts, args.anchor_percent, exclude=handle_idx)
    logger.info("[Anchor] Anchoring %d vertices (lowest y %.1f%%).", len(anchor_idx), 100 * args.anchor_percent)

    # constraint order: handles, then anchors
    fixed_idx = np.concatenate([handle_idx, anchor_idx], axis=0)
    start = verts[fixed_idx].copy()
    end = start.copy()
    end[:len(handle_idx)] += delta

    # 5) session, frames
    try:
        session = ARAPSession(
            verts,
            faces,
            fixed_idx,
            args.iters,
            weighting="cotangent" if args.weight == "cot" else "uniform",
            tol=args.tol,
            with_dynamics=args.dynamics,
            time_step=args.time_step,
            mass_weight=args.mass_weight,
        )
    except ARAPError as exc:
        logger.error("Session creation failed: %s", exc)
        return 2

    with session:
        frames = run_frames(session, start, end, args.frames)

    shown_idx = fixed_idx
    if mapping is not None:
        frames = mapping.apply_frames(frames)
        faces = high_faces
        shown_idx = None

    p_deformed = frames[-1]
    if args.output:
        save_ply(args.output, p_deformed, faces)
        logger.info("Wrote %s", args.output)

    # 6) view
    if args.viewer == "open3d":
        from visualization import play_frames
        play_frames(faces, frames)
    elif args.viewer == "plotly":
        from plotly_view import show_deformation
        show_deformation(faces, p_deformed, handle_idx=shown_idx)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
