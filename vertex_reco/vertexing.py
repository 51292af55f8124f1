from __future__ import annotations

import logging
import math
from typing import List, Optional, Sequence

import numpy as np
import pandas as pd

from vertex_reco.config import VertexConfig
from vertex_reco.track_graph import Track, TrackCandidate, TrackGraph
from vertex_reco.vtx_candidate import VertexCandidate

logger = logging.getLogger(__name__)

__all__ = ["VertexBuilder", "find_vertices"]


class VertexBuilder:
    r"""
    Find vertices among the tracks of a :class:`TrackGraph` and join them.

    Pipeline
    --------
    1. **Pairs.** For every ordered track pair :math:`(t, u),\ t<u` a
       two-track :class:`VertexCandidate` is built; it is kept when both
       ``add`` calls succeed and :math:`\sqrt{\mathrm{mse}} <`
       ``pair_max_rms``. A kept pair then grows with ``add`` over the
       remaining tracks, each addition kept only while the residual stays
       below ``pair_max_rms``; candidates sharing a track never merge.

    2. **Merging.** Candidates whose tracks are all contained in another
       candidate are dropped; then the pair with the smallest error-weighted
       distance

       .. math:: d_w = \sqrt{\textstyle\sum_k e_k e'_k (c_k-c'_k)^2} < \texttt{merge\_max\_test}

       is merged (``merge_with``), until no pair merges any more.

    3. **Selection & commit.** The loop-free candidate not attached to an
       already committed vertex with most tracks longer than
       ``2 * min_track_length`` (ties: larger ``max_angle``) is committed
       with ``join_tracks``; repeat until no candidate qualifies.

    Parameters
    ----------
    graph : TrackGraph
        Graph holding the tracks; modified in place by the commits.
    config : VertexConfig, optional
        Thresholds (defaults to ``graph.config``).

    Attributes
    ----------
    candidates : list of VertexCandidate
        Candidates left after merging (kept for inspection).
    committed : list of VertexCandidate
        Successfully joined candidates, in commit order.
    """

    def __init__(self, graph: TrackGraph, config: VertexConfig | None = None) -> None:
        self.graph = graph
        self.config = config if config is not None else graph.config
        self.candidates: List[VertexCandidate] = []
        self.committed: List[VertexCandidate] = []
        self._vertex_tracks: List[int] = []

    # ------------------------------------------------------------- stages
    def first_pass(self, src: Sequence[TrackCandidate]) -> List[VertexCandidate]:
        """Candidates seeded by every track pair and grown with the other tracks."""
        cfg = self.config
        out: List[VertexCandidate] = []
        for t in range(len(src) - 1):
            for u in range(t + 1, len(src)):
                cand = VertexCandidate(cfg)
                if not cand.add(src[t]):
                    # no usable segment: nothing to pair with this track
                    break
                if not (cand.add(src[u]) and math.sqrt(cand.mse) < cfg.pair_max_rms):
                    continue
                for w in range(len(src)):
                    if w in (t, u):
                        continue
                    trial = cand.copy()
                    if trial.add(src[w]) and math.sqrt(trial.mse) < cfg.pair_max_rms:
                        cand = trial
                out.append(cand)
        logger.debug("First pass: %d candidates from %d tracks", len(out), len(src))
        return out

    def merge_candidates(self, candidates: List[VertexCandidate]) -> List[VertexCandidate]:
        """Drop contained candidates, then merge closest pairs while possible."""
        cfg = self.config
        cands = list(candidates)

        k = 0
        while k < len(cands):
            if any(j != k and cands[j].has(cands[k]) and (j < k or len(cands[j]) > len(cands[k]))
                   for j in range(len(cands))):
                cands[k].discard()
                del cands[k]
            else:
                k += 1

        merged = True
        while merged and len(cands) > 1:
            merged = False
            pairs = []
            for i in range(len(cands) - 1):
                for j in range(i + 1, len(cands)):
                    d = cands[i].test(cands[j])
                    if d < cfg.merge_max_test:
                        pairs.append((d, i, j))
            for _, i, j in sorted(pairs):
                if cands[i].merge_with(cands[j]):
                    cands[j].discard()
                    del cands[j]
                    merged = True
                    break
        logger.debug("After merging: %d candidates", len(cands))
        return cands

    def _select(self, candidates: List[VertexCandidate], joined: List[Track]) -> Optional[int]:
        cfg = self.config
        best: Optional[int] = None
        best_size, best_angle = 0, 0.0
        for i, cand in enumerate(candidates):
            if cand.has_loops():
                continue
            if any(cand.is_attached(t) for t in joined if t in self.graph):
                continue
            size = cand.size(2.0 * cfg.min_track_length)
            if size < 2:
                continue
            if best is None or size > best_size:
                best, best_size, best_angle = i, size, cand.max_angle(cfg.max_angle_min_length)
            elif size == best_size:
                angle = cand.max_angle(cfg.max_angle_min_length)
                if angle > best_angle:
                    best, best_angle = i, angle
        return best

    # --------------------------------------------------------------- driver
    def run(self, src: List[TrackCandidate]) -> List[TrackCandidate]:
        r"""
        Run the full vertexing stage.

        Parameters
        ----------
        src : list of TrackCandidate
            Input tracks. Tracks taking part in a vertex are moved out of it;
            on return it is empty.

        Returns
        -------
        list of TrackCandidate
            Output track collection: joined tracks (and the pieces created by
            splitting) followed by the tracks left in ``src``.
        """
        self.candidates = self.merge_candidates(self.first_pass(src))
        self.committed = []
        self._vertex_tracks = []

        tracks: List[TrackCandidate] = []
        pending = list(self.candidates)
        joined: List[Track] = []
        while pending:
            i = self._select(pending, joined)
            if i is None:
                break
            cand = pending.pop(i)
            n_tracks = len(cand)
            members = cand.tracks
            if cand.join_tracks(tracks, src):
                self.committed.append(cand)
                self._vertex_tracks.append(n_tracks)
                joined.extend(members)
                logger.debug("Vertex %d committed with %d tracks", len(self.committed), n_tracks)
            pending = [c for c in pending if all(t in self.graph for t in c.tracks)]

        for cand in pending:
            cand.discard()

        tracks.extend(src)
        src.clear()
        logger.info("Vertexing: %d vertices from %d candidates", len(self.committed), len(self.candidates))
        return tracks

    # -------------------------------------------------------------- results
    def vertices(self) -> np.ndarray:
        """``(V, 3)`` positions of the committed vertices."""
        if not self.committed:
            return np.empty((0, 3), dtype=np.float64)
        return np.stack([c.center for c in self.committed])

    def vertices_frame(self) -> pd.DataFrame:
        """Committed vertices as a table with columns ``x, y, z, n_tracks``."""
        pos = self.vertices()
        return pd.DataFrame({
            "x": pos[:, 0],
            "y": pos[:, 1],
            "z": pos[:, 2],
            "n_tracks": np.asarray(self._vertex_tracks, dtype=np.int64),
        })


def find_vertices(graph: TrackGraph, tracks: Sequence[Track] | None = None,
                  config: VertexConfig | None = None) -> pd.DataFrame:
    """Convenience wrapper: run :class:`VertexBuilder` on ``tracks`` (default: all) of ``graph``."""
    src = [TrackCandidate(t, k) for k, t in enumerate(graph.tracks if tracks is None else tracks)]
    builder = VertexBuilder(graph, config)
    builder.run(src)
    return builder.vertices_frame()

