import logging
from typing import Iterable, Optional

import numpy as np
import matplotlib.pyplot as plt

from vertex_reco.track_graph import Track, TrackGraph

logger = logging.getLogger(__name__)


def _show_and_close(fig, *, do_show: bool = True) -> None:
    r"""
    Show a Matplotlib figure (optionally) and always close it.

    Safe in headless mode where ``plt.show()`` may be patched to a no-op.
    """
    try:
        fig.tight_layout()
    except Exception:
        pass
    if do_show:
        try:
            plt.show()
        except Exception:
            pass
    plt.close(fig)


def plot_tracks_3d(
    graph: TrackGraph,
    tracks: Optional[Iterable[Track]] = None,
    *,
    vertices: Optional[np.ndarray] = None,
    truth: Optional[np.ndarray] = None,
    show_hits: bool = False,
    title: str = "Tracks and vertices",
    show: bool = True,
    save_path: Optional[str] = None,
) -> None:
    r"""
    3D view of track polylines with reconstructed and true vertices.

    Parameters
    ----------
    graph : TrackGraph
        Graph the tracks belong to.
    tracks : iterable of Track, optional
        Tracks to draw (default: all tracks of the graph).
    vertices : (V, 3) ndarray, optional
        Reconstructed vertices, drawn as red crosses.
    truth : (T, 3) ndarray, optional
        True vertices, drawn as hollow black circles.
    show_hits : bool
        Also scatter the hits of every track.
    save_path : str, optional
        If given, the figure is written there before showing.
    """
    fig = plt.figure(figsize=(7, 7))
    ax = fig.add_subplot(111, projection="3d")

    for trk in (graph.tracks if tracks is None else tracks):
        pts = trk.points()
        if len(pts) < 2:
            continue
        ax.plot(pts[:, 0], pts[:, 1], pts[:, 2], "-", lw=1.2)
        ax.scatter(pts[:, 0], pts[:, 1], pts[:, 2], s=6)
        if show_hits and trk.size():
            h = trk.hits
            ax.scatter(h[:, 0], h[:, 1], h[:, 2], s=1, alpha=0.2, c="gray")

    if truth is not None and len(truth):
        t = np.asarray(truth, dtype=np.float64).reshape(-1, 3)
        ax.scatter(t[:, 0], t[:, 1], t[:, 2], s=80, facecolors="none", edgecolors="k", label="true vertex")
    if vertices is not None and len(vertices):
        v = np.asarray(vertices, dtype=np.float64).reshape(-1, 3)
        ax.scatter(v[:, 0], v[:, 1], v[:, 2], s=60, marker="x", c="r", label="vertex")

    ax.set_xlabel("x")
    ax.set_ylabel("y")
    ax.set_zlabel("z")
    ax.set_title(title)
    if vertices is not None or truth is not None:
        ax.legend(loc="upper left")
    if save_path:
        fig.savefig(save_path, dpi=120)
        logger.info("Saved plot to %s", save_path)
    _show_and_close(fig, do_show=show)
