#!/usr/bin/env python3
r"""
Vertex reconstruction runner on synthetic star events (headless-safe).

The script generates an event of straight tracks radiating from random
vertices, runs :class:`vertex_reco.vertexing.VertexBuilder` on it, and
reports the found vertices against the truth.

For true vertices :math:`\{t_j\}` and reconstructed vertices :math:`\{f_i\}`
the residual of a reconstructed vertex is

.. math::

    r_i = \min_j \|f_i - t_j\|_2,

and a true vertex counts as found when some :math:`f_i` lies within
``--tol`` of it.

CLI overview
------------
.. code-block:: bash

   vertex-reco -n 3 -t 4 --sigma 0.05 --seed 1
   vertex-reco --config vertex.json --plot -v
"""

from __future__ import annotations

import argparse
import logging
import os
import time
from pathlib import Path

import numpy as np

from vertex_reco.config import VertexConfig, load_config
from vertex_reco.metrics import vertex_efficiency, vertex_residuals
from vertex_reco.track_graph import TrackCandidate, TrackGraph
from vertex_reco.utils import make_star_event
from vertex_reco.vertexing import VertexBuilder


def build_parser() -> argparse.ArgumentParser:
    r"""
    Construct the command-line interface of the vertex runner.

    Returns
    -------
    argparse.ArgumentParser
    """
    p = argparse.ArgumentParser(description="Run 3D vertex finding on a synthetic event.")
    p.add_argument("--config", type=str, default=None,
                   help="Path to JSON file with VertexConfig fields (default: built-in values).")
    p.add_argument("-n", "--n-vertices", type=int, default=3,
                   help="Number of true vertices (default: 3).")
    p.add_argument("-t", "--tracks-per-vertex", type=int, default=3,
                   help="Tracks radiating from each vertex (default: 3).")
    p.add_argument("--spread", type=float, default=200.0,
                   help="Vertices are drawn uniformly in a cube of this size (default: 200).")
    p.add_argument("--length", type=float, default=30.0,
                   help="Track length (default: 30).")
    p.add_argument("--nodes", type=int, default=4,
                   help="Nodes per track (default: 4).")
    p.add_argument("--sigma", type=float, default=0.0,
                   help="Gaussian jitter of inner nodes and hits (default: 0).")
    p.add_argument("--tol", type=float, default=1.0,
                   help="Matching distance for efficiency (default: 1.0).")
    p.add_argument("--seed", type=int, default=None,
                   help="Random seed.")
    p.add_argument("--plot", action="store_true", default=False,
                   help="Show a 3D plot of tracks and vertices (default: False).")
    p.add_argument("--plot-out", type=str, default=None,
                   help="If set, save the 3D plot to this path.")
    p.add_argument("--out", type=str, default=None,
                   help="If set, write found vertices to this CSV file.")
    p.add_argument("-v", "--verbose", action="store_true",
                   help="Enable verbose logging.")
    return p


def setup_logging(verbose: bool = False) -> None:
    r"""
    Configure process-wide logging.

    Parameters
    ----------
    verbose : bool, optional
        If ``True``, set level to ``DEBUG``; otherwise ``INFO``.

    Notes
    -----
    Format is ``'%(asctime)s | %(levelname)-8s | %(message)s'`` with ``%H:%M:%S`` timestamps.
    """
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-8s | %(message)s",
        datefmt="%H:%M:%S",
    )
    # numba compilation chatter is not useful at DEBUG
    logging.getLogger("numba").setLevel(logging.WARNING)


def apply_plotting_guard(enable_plots: bool) -> None:
    r"""
    Enforce a headless-safe Matplotlib configuration when plotting is disabled.

    Must be called before importing :mod:`vertex_reco.plotting`.
    """
    if enable_plots:
        return
    os.environ.setdefault("MPLBACKEND", "Agg")
    import matplotlib
    matplotlib.use("Agg", force=True)
    import matplotlib.pyplot as _plt
    _plt.ioff()
    _plt.show = lambda *a, **k: None  # type: ignore[assignment]


def main() -> None:
    r"""
    End-to-end run: **config → synthetic event → vertexing → report**.

    Pipeline
    --------
    1. Parse CLI (:func:`build_parser`) and set up logging (:func:`setup_logging`).
    2. Load :class:`VertexConfig` from ``--config`` (or defaults).
    3. Draw ``--n-vertices`` vertices and build a star event
       (:func:`vertex_reco.utils.make_star_event`).
    4. Run :class:`VertexBuilder` and log the found vertices with their
       residuals and the efficiency summary.
    5. Optionally write a CSV and plot.
    """
    parser = build_parser()
    args = parser.parse_args()
    setup_logging(args.verbose)
    apply_plotting_guard(args.plot)

    if args.config:
        cfg_path = Path(args.config)
        logging.info("Reading config from %s", cfg_path)
        config = load_config(cfg_path)
    else:
        config = VertexConfig()

    rng = np.random.default_rng(args.seed)
    truth_pos = rng.uniform(-0.5 * args.spread, 0.5 * args.spread, size=(args.n_vertices, 3))

    graph = TrackGraph(config=config)
    tracks, truth = make_star_event(
        graph, truth_pos, args.tracks_per_vertex,
        length=args.length, n_nodes=args.nodes, sigma=args.sigma, rng=rng,
    )
    logging.info("Generated %d tracks around %d vertices", len(tracks), len(truth))

    src = [TrackCandidate(t, k) for k, t in enumerate(tracks)]
    builder = VertexBuilder(graph, config)
    t0 = time.perf_counter()
    out_tracks = builder.run(src)
    elapsed = time.perf_counter() - t0
    logging.info("Vertexing took %.3f s, %d output tracks", elapsed, len(out_tracks))

    frame = builder.vertices_frame()
    frame["residual"] = vertex_residuals(frame[["x", "y", "z"]].to_numpy(), truth)
    if len(frame):
        logging.info("Found vertices:\n%s", frame.to_string(index=False, float_format=lambda v: f"{v:.3f}"))
    else:
        logging.info("No vertices found.")

    summary = vertex_efficiency(frame[["x", "y", "z"]].to_numpy(), truth, tol=args.tol)
    logging.info(
        "Efficiency: %.3f | fake rate: %.3f | mean residual: %.4f | found %d / true %d",
        summary["efficiency"], summary["fake_rate"], summary["mean_residual"],
        int(summary["n_found"]), int(summary["n_true"]),
    )

    if args.out:
        frame.to_csv(args.out, index=False)
        logging.info("Wrote %s", args.out)

    if args.plot or args.plot_out:
        import vertex_reco.plotting as vtx_plot
        vtx_plot.plot_tracks_3d(
            graph, [c.track for c in out_tracks],
            vertices=builder.vertices(), truth=truth,
            show=args.plot, save_path=args.plot_out,
        )


if __name__ == "__main__":
    main()
