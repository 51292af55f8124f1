from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Tuple

import numpy as np

from vertex_reco.config import VertexConfig
from vertex_reco.errors import BrokenTrackError, CandidateStateError, RepeatedCommitError
from vertex_reco.kernels import dist2, project_to_line, segment_proj_fraction, segment_weight
from vertex_reco.solver import solve_least_squares_3d
from vertex_reco.track_graph import Track, TrackCandidate

logger = logging.getLogger(__name__)

__all__ = ["CandidateState", "Assignment", "VertexCandidate"]


class CandidateState(Enum):
    """Lifecycle state of a vertex candidate."""
    BUILDING = "building"
    MERGING = "merging"
    COMMITTING = "committing"
    COMMITTED = "committed"
    DISCARDED = "discarded"


_TERMINAL = (CandidateState.COMMITTING, CandidateState.COMMITTED, CandidateState.DISCARDED)


@dataclass(slots=True)
class Assignment:
    """A track taking part in the vertex and the segment it crosses the vertex with."""
    candidate: TrackCandidate
    segment: int

    @property
    def track(self) -> Track:
        return self.candidate.track


class VertexCandidate:
    r"""
    Candidate 3D vertex joining several tracks.

    The candidate keeps an ordered list of assigned ``(track, segment)``
    pairs; the fitted ``center``, per-axis ``error`` and the residuals ``mse``
    (3D line-intersection fit) and ``mse2d`` (center projected to the readout
    views) are derived from it and recomputed after every change.

    Lifecycle
    ---------
    ``BUILDING`` (tracks are added one by one with :meth:`add`) →
    ``MERGING`` (candidates absorb each other with :meth:`merge_with`) →
    ``COMMITTING`` → ``COMMITTED`` or ``DISCARDED``. :meth:`join_tracks`
    runs exactly once; afterwards the candidate is terminal and the vertex
    lives on as a shared node of the track graph.

    Parameters
    ----------
    config : VertexConfig, optional
        Thresholds (defaults to :class:`VertexConfig`).
    seg_min_length : float, optional
        Override of ``config.seg_min_length``.
    """

    def __init__(self, config: VertexConfig | None = None, seg_min_length: float | None = None) -> None:
        self.config = config if config is not None else VertexConfig()
        self.seg_min_length = float(self.config.seg_min_length if seg_min_length is None else seg_min_length)
        self._assigned: List[Assignment] = []
        self._center = np.zeros(3, dtype=np.float64)
        self._err = np.zeros(3, dtype=np.float64)
        self._mse = 0.0
        self._mse2d = 0.0
        self._state = CandidateState.BUILDING

    def __repr__(self) -> str:
        c = self._center
        return (f"VertexCandidate(n={len(self._assigned)}, center=({c[0]:.2f}, {c[1]:.2f}, {c[2]:.2f}), "
                f"mse={self._mse:.4g}, state={self._state.value})")

    def __len__(self) -> int:
        return len(self._assigned)

    def copy(self) -> "VertexCandidate":
        """Independent candidate with the same assignments and fit state."""
        out = VertexCandidate(self.config, self.seg_min_length)
        out._assigned = [Assignment(a.candidate, a.segment) for a in self._assigned]
        out._center = self._center.copy()
        out._err = self._err.copy()
        out._mse = self._mse
        out._mse2d = self._mse2d
        out._state = self._state
        return out

    # ------------------------------------------------------------- accessors
    @property
    def state(self) -> CandidateState:
        return self._state

    @property
    def center(self) -> np.ndarray:
        return self._center.copy()

    @property
    def error(self) -> np.ndarray:
        return self._err.copy()

    @property
    def mse(self) -> float:
        return self._mse

    @property
    def mse2d(self) -> float:
        return self._mse2d

    @property
    def assigned(self) -> Tuple[Tuple[Track, int], ...]:
        return tuple((a.track, a.segment) for a in self._assigned)

    @property
    def tracks(self) -> List[Track]:
        return [a.track for a in self._assigned]

    def discard(self) -> None:
        """Mark a candidate that will never be committed."""
        if self._state in _TERMINAL:
            raise CandidateStateError(f"Cannot discard a candidate in state {self._state.value}.")
        self._state = CandidateState.DISCARDED

    # ----------------------------------------------------------- membership
    def has(self, other: Track | TrackCandidate | "VertexCandidate") -> bool:
        r"""
        Membership test.

        For a track (or track candidate): whether it is assigned, by identity.
        For another vertex candidate: whether every one of its tracks is
        assigned here.
        """
        if isinstance(other, VertexCandidate):
            return all(self.has(a.track) for a in other._assigned)
        trk = other.track if isinstance(other, TrackCandidate) else other
        return any(a.track is trk for a in self._assigned)

    @staticmethod
    def _root(trk: Track) -> Track:
        root = trk.root()
        if root is None:
            raise BrokenTrackError(f"Broken track {trk.id}: no root.")
        return root

    def is_attached(self, other: Track | TrackCandidate | "VertexCandidate") -> bool:
        r"""
        Whether a track (or any track of another candidate) is connected in
        the track graph to any assigned track.

        Raises
        ------
        BrokenTrackError
            If a root cannot be found.
        """
        if isinstance(other, VertexCandidate):
            return any(self.is_attached(a.track) for a in other._assigned)
        trk = other.track if isinstance(other, TrackCandidate) else other
        root_trk = self._root(trk)
        for a in self._assigned:
            if root_trk.is_attached_to(self._root(a.track)):
                return True
        return False

    def has_loops(self) -> bool:
        """Whether two assigned tracks already hang in the same track tree."""
        roots = [self._root(a.track) for a in self._assigned]
        for t, root_t in enumerate(roots):
            for u, root_u in enumerate(roots):
                if t != u and root_t.is_attached_to(root_u):
                    return True
        return False

    def size(self, min_length: float = 0.0) -> int:
        """Number of assigned tracks longer than ``min_length``."""
        return sum(1 for a in self._assigned if a.track.length() > min_length)

    def _direction(self, a: Assignment) -> np.ndarray:
        p0, p1 = a.track.segment(a.segment).endpoints()
        d = p1 - p0
        return d / np.linalg.norm(d)

    def max_angle(self, min_length: float = 0.0) -> float:
        r"""
        Largest angle (degrees) between the longest track and the other tracks.

        Directions are those of the assigned segments. The orientation of a
        segment is arbitrary, so the angle is taken between lines,
        :math:`\arccos\min_j |\hat d_{ref}\cdot\hat d_j|`. Only tracks longer
        than ``min_length`` are compared against the reference.
        """
        if not self._assigned:
            return 0.0
        lengths = [a.track.length() for a in self._assigned]
        ref = int(np.argmax(lengths))
        dir_ref = self._direction(self._assigned[ref])

        cos_min = 1.0
        for j, a in enumerate(self._assigned):
            if j == ref or lengths[j] <= min_length:
                continue
            c = abs(float(dir_ref @ self._direction(a)))
            cos_min = min(cos_min, c)
        return math.degrees(math.acos(min(cos_min, 1.0)))

    # --------------------------------------------------------------- solver
    def compute(self) -> float:
        r"""
        Fit the vertex position to the assigned segments.

        Each assigned segment at least ``seg_min_length`` long enters a
        least-squares line intersection. The fitted point is projected back on
        every segment line and the projections are averaged: X weighted with
        the steepness weight :math:`w_s`, Y and Z unweighted,

        .. math::

            c_x = \frac{\sum_s w_s\,x_s}{\sum_s w_s},\qquad
            c_{y,z} = \frac{1}{S}\sum_s (y_s, z_s),\qquad
            e = \sqrt{\tfrac{1}{S}\big(\textstyle\sum_s w_s^2,\ S,\ S\big)}.

        Returns
        -------
        float
            Residual of the intersection fit, or ``config.fit_failure_mse``
            when the fit fails (the center is then left at the origin).
        """
        cfg = self.config
        lines: List[Tuple[np.ndarray, np.ndarray]] = []
        weights: List[float] = []
        for a in self._assigned:
            seg = a.track.segment(a.segment)
            p0, p1 = seg.endpoints()
            if seg.length() >= self.seg_min_length:
                lines.append((p0, p1))
                weights.append(segment_weight(p0, p1, cfg.weight_power, cfg.weight_floor))

        self._center = np.zeros(3, dtype=np.float64)
        self._err = np.zeros(3, dtype=np.float64)

        result, result_mse = solve_least_squares_3d(lines)
        if result_mse < 0.0:
            logger.warning("Cannot compute crossing point.")
            return cfg.fit_failure_mse

        center = np.zeros(3, dtype=np.float64)
        err = np.zeros(3, dtype=np.float64)
        wsum = 0.0
        for (p0, p1), w in zip(lines, weights):
            pproj = project_to_line(result, p0, p1)
            err[0] += w * w
            err[1] += 1.0
            err[2] += 1.0
            center[0] += w * pproj[0]
            center[1] += pproj[1]
            center[2] += pproj[2]
            wsum += w
        n = len(lines)
        if wsum > 0.0:
            center[0] /= wsum
        else:
            center[0] = float(np.mean([project_to_line(result, p0, p1)[0] for p0, p1 in lines]))
        center[1] /= n
        center[2] /= n
        self._center = center
        self._err = np.sqrt(err / n)
        return result_mse

    def compute_mse2d(self) -> float:
        r"""
        Mean squared 2D distance of the center to the assigned segments.

        For each assigned pair, the center is projected to every view read out
        in the volume of the segment's start node; the squared distances are
        averaged over those views, then over the assigned tracks.
        """
        if not self._assigned:
            return 0.0
        mse = 0.0
        for a in self._assigned:
            trk = a.track
            seg = trk.segment(a.segment)
            geom = trk.graph.geometry
            tpc, cryo = trk.graph.volume(seg.start)
            m, k = 0.0, 0
            for view in geom.views(tpc, cryo):
                center2d = geom.project(self._center, view, tpc, cryo)
                m += seg.distance2_to_2d(center2d, view)
                k += 1
            if k:
                mse += m / k
        return mse / len(self._assigned)

    def _refit(self) -> None:
        self._mse = self.compute()
        self._mse2d = self.compute_mse2d()

    def _reset_fit(self) -> None:
        self._center = np.zeros(3, dtype=np.float64)
        self._err = np.zeros(3, dtype=np.float64)
        self._mse = 0.0
        self._mse2d = 0.0

    def _usable_segments(self, trk: Track) -> List[Tuple[int, float]]:
        out = []
        for seg in trk.segments():
            length = seg.length()
            if length >= self.seg_min_length:
                out.append((seg.index, length))
        return out

    # -------------------------------------------------------------- builder
    def add(self, trk: TrackCandidate | Track) -> bool:
        r"""
        Try to add a track to the vertex.

        The first track is accepted if it has at least one segment long
        enough for the fit. For the second track, all pairs of usable
        segments of both tracks are scanned for the smallest 2D residual
        :math:`d=\sqrt{\mathrm{mse}_{2D}}`; a closer pair replaces the best
        one unless it is much shorter (``lm + ln <= 0.8 * Δd/d_best *
        l_best``). For later tracks only the new track's segment is scanned,
        keeping the one closest (3D) to the refitted center among fits with
        ``mse < max_dist_to_track**2``. The track is accepted when the best
        distance is below ``max_dist_to_track``.

        Returns
        -------
        bool
            ``False`` (with the candidate restored) if rejected.

        Raises
        ------
        CandidateStateError
            If the candidate is no longer in the building state.
        """
        if self._state is not CandidateState.BUILDING:
            raise CandidateStateError(f"Cannot add tracks in state {self._state.value}.")
        cand = trk if isinstance(trk, TrackCandidate) else TrackCandidate(trk)
        if self.is_attached(cand.track):
            return False

        cfg = self.config
        self._assigned.append(Assignment(cand, 0))
        new_segs = self._usable_segments(cand.track)

        if len(self._assigned) > 2:
            n_best = 0
            d_best = cfg.max_dist_to_track
            min_mse = cfg.max_mse_to_track
            for n, _ in new_segs:
                self._assigned[-1].segment = n
                mse = self.compute()
                if mse < min_mse:
                    d = math.sqrt(cand.track.segment(n).distance2_to(self._center))
                    if d < d_best:
                        min_mse, n_best, d_best = mse, n, d

            if d_best < cfg.max_dist_to_track:
                self._assigned[-1].segment = n_best
                self._refit()
                logger.debug("Track %d added as #%d, d=%.3f", cand.track.id, len(self._assigned), d_best)
                return True
            self._assigned.pop()
            self._refit()
            return False

        if len(self._assigned) == 2:
            first = self._assigned[0]
            m_best = n_best = 0
            d_best = cfg.max_dist_to_track
            l_best = 0.0
            for m, lm in self._usable_segments(first.track):
                first.segment = m
                for n, ln in new_segs:
                    self._assigned[-1].segment = n
                    mse = self.compute()
                    if mse >= cfg.fit_failure_mse:
                        continue
                    d = math.sqrt(self.compute_mse2d())
                    if d < d_best:
                        d_dist = (d_best - d) / d_best
                        # take closer if not much shorter
                        if lm + ln > 0.8 * d_dist * l_best:
                            m_best, n_best = m, n
                            d_best, l_best = d, lm + ln

            if d_best < cfg.max_dist_to_track:
                first.segment = m_best
                self._assigned[-1].segment = n_best
                self._refit()
                return True
            self._assigned.pop()
            first.segment = 0
            self._reset_fit()
            return False

        if new_segs:
            return True
        self._assigned.pop()
        self._reset_fit()
        return False

    # ---------------------------------------------------------- comparisons
    def test(self, other: "VertexCandidate") -> float:
        r"""
        Error-weighted distance between two candidate centers.

        .. math::

            d_w = \sqrt{\sum_{k\in\{x,y,z\}} e_k\,e'_k\,(c_k - c'_k)^2}
        """
        d = self._center - other._center
        return float(np.sqrt(np.sum(self._err * other._err * d * d)))

    def merge_with(self, other: "VertexCandidate") -> bool:
        r"""
        Absorb the tracks of another candidate.

        Rejected when the centers are further apart than
        ``config.merge_max_dist``, when any track of ``other`` is already
        connected to this candidate in the track graph (a shared track counts,
        so overlapping candidates never merge), when ``other`` brings no new
        track, or when the refit residual is not below
        ``config.merge_max_mse``. ``other`` is never modified; on rejection
        this candidate, including its state, is restored exactly.
        """
        if self._state not in (CandidateState.BUILDING, CandidateState.MERGING):
            raise CandidateStateError(f"Cannot merge in state {self._state.value}.")
        cfg = self.config

        d = math.sqrt(dist2(self._center, other._center))
        if d > cfg.merge_max_dist:
            logger.debug("too far.. (%.3f)", d)
            return False

        dw = self.test(other)

        incoming: List[Assignment] = []
        for a in other._assigned:
            if self.is_attached(a.track):
                logger.debug("already attached.. (track %d)", a.track.id)
                return False
            if self.has(a.track) or any(b.track is a.track for b in incoming):
                continue
            incoming.append(Assignment(a.candidate, a.segment))

        if not incoming:
            logger.debug("no tracks..")
            return False

        logger.debug("try: %.3f mse0: %.4g mse1: %.4g", d, math.sqrt(self._mse), math.sqrt(other._mse))
        self._assigned.extend(incoming)
        mse = self.compute()
        logger.debug("out: %d mse: %.4g dw: %.4g", len(self._assigned), math.sqrt(mse), dw)

        if mse < cfg.merge_max_mse:
            self._mse = mse
            self._mse2d = self.compute_mse2d()
            self._state = CandidateState.MERGING
            return True

        logger.debug("high mse..")
        del self._assigned[-len(incoming):]
        self._refit()
        return False

    # ------------------------------------------------------------ committer
    def join_tracks(self, tracks: List[TrackCandidate], src: List[TrackCandidate]) -> bool:
        r"""
        Turn the candidate into a shared node of the track graph.

        The assigned tracks are moved from ``src`` to ``tracks``. Then, in
        order, each track is spliced into the vertex:

        - vertex near its first node: the node is reused (first track) or the
          track front is attached to the vertex node;
        - vertex near its last node: the track is flipped if possible, then
          reused or attached the same way;
        - otherwise the vertex node is placed inside the segment (a new node
          when further than ``min_dist_to_node`` from both ends) and either
          the track is split there (the new piece is appended to ``tracks``)
          or the node becomes the new vertex and the branches of the previous
          vertex node are re-attached to it.

        The tree hanging from the final vertex node must be loop-free and at
        least two attachments must succeed; the root track is then re-tuned.
        On failure every track of that tree is removed from ``tracks`` (and
        ``src``) and released from the graph.

        Returns
        -------
        bool
            ``True`` on a successful commit.

        Raises
        ------
        RepeatedCommitError
            If the candidate was already committed (or is being committed).
        BrokenTrackError
            If the final vertex node has no segment attached.
        """
        if self._state in _TERMINAL:
            logger.error("Tracks already attached to the vertex.")
            raise RepeatedCommitError("join_tracks already performed on this candidate.")
        self._state = CandidateState.COMMITTING
        cfg = self.config
        min_dist = cfg.min_dist_to_node
        center = self._center.copy()

        logger.debug("JoinTracks (%d) at: vx: %.3f vy: %.3f vz: %.3f",
                     len(self._assigned), center[0], center[1], center[2])

        for a in self._assigned:
            for t, c in enumerate(src):
                if c.track is a.track:
                    tracks.append(src.pop(t))
                    break

        graph = self._assigned[0].track.graph if self._assigned else None
        vtx: Optional[int] = None
        has_inner = False
        n_ok = 0
        for i, a in enumerate(self._assigned):
            trk, idx = a.track, a.segment
            nodes = trk.nodes
            logger.debug("----------> track #%d (id %d, nodes: %d)", i, trk.id, len(nodes))
            if idx + 1 >= len(nodes):
                logger.warning("Segment %d no longer in track %d, skipped.", idx, trk.id)
                continue

            p0 = graph.point(nodes[idx])
            p1 = graph.point(nodes[idx + 1])
            d0 = math.sqrt(dist2(p0, center))
            d1 = math.sqrt(dist2(p1, center))
            ds = math.sqrt(dist2(p0, p1))
            f = segment_proj_fraction(center, p0, p1)

            if idx == 0 and f * ds <= min_dist:
                if vtx is None:
                    logger.debug("  new at front")
                    vtx = nodes[0]
                    graph.set_point(vtx, center)
                    n_ok += 1
                else:
                    logger.debug("  front to center")
                    if trk.attach_to(vtx):
                        n_ok += 1

            elif idx + 2 == len(nodes) and (1.0 - f) * ds <= min_dist:
                if vtx is None:
                    if trk.can_flip():
                        logger.debug("  flip trk to make new center")
                        trk.flip()
                        vtx = trk.nodes[0]
                    else:
                        logger.debug("  new center at the endpoint")
                        vtx = trk.nodes[-1]
                    graph.set_point(vtx, center)
                    n_ok += 1
                elif graph.prev_segment(vtx) is not None and trk.can_flip():
                    logger.debug("  flip trk to attach to inner")
                    trk.flip()
                    if trk.attach_to(vtx):
                        n_ok += 1
                else:
                    logger.debug("  endpoint to center")
                    if trk.attach_back_to(vtx):
                        n_ok += 1

            else:
                can_flip_prev = True
                if vtx is not None:
                    seg = graph.prev_segment(vtx)
                    if seg is not None:
                        if seg.track.next_segment(vtx) is not None:
                            can_flip_prev = False
                        else:
                            can_flip_prev = seg.track.can_flip()

                if 0.0 <= f <= 1.0 and f * ds > min_dist and (1.0 - f) * ds > min_dist:
                    logger.debug("  add center inside segment")
                    tpc, cryo = graph.volume(nodes[idx] if f < 0.5 else nodes[idx + 1])
                    idx += 1
                    trk.insert_node(center, idx, tpc, cryo)
                elif d1 < d0:
                    logger.debug("  add center at end of segment")
                    idx += 1
                else:
                    logger.debug("  center at start of segment - no action")

                if has_inner or not can_flip_prev:
                    logger.debug("  split track")
                    split_node = trk.nodes[idx]
                    t0 = trk.split(idx)
                    if t0 is not None:
                        trk.make_projection()
                        t0.make_projection()
                        tracks.append(TrackCandidate(t0, a.candidate.key))
                        if vtx is None:
                            logger.debug("  center at trk0 back")
                            vtx = split_node
                            n_ok += 2
                        else:
                            logger.debug("  attach trk to trk0")
                            anchor = trk if trk.nodes[0] == split_node else t0
                            if anchor.attach_to(vtx):
                                n_ok += 2
                else:
                    logger.debug("  inner center")
                    has_inner = True
                    inner = trk.nodes[idx]
                    if vtx is not None:
                        seg = graph.prev_segment(vtx)
                        if seg is not None:
                            seg.track.flip()
                        # every branch of the old vertex moves to the inner node
                        for branch in graph.branches_at(vtx):
                            branch.attach_to(inner, no_flip=True)
                    vtx = inner
                    n_ok += 1
            logger.debug("  done")

        result = False
        if vtx is None:
            logger.error("Cannot create common vertex")
            self._state = CandidateState.DISCARDED
            return False

        nexts = graph.next_segments(vtx)
        if nexts:
            root_seg = nexts[0]
        else:
            root_seg = graph.prev_segment(vtx)
            if root_seg is None:
                self._state = CandidateState.DISCARDED
                raise BrokenTrackError("Vertex with no segments attached.")

        root_trk = root_seg.track.root() or root_seg.track
        no_loops, branches = root_trk.branches()
        no_loops = no_loops and graph.is_tree(branches)

        if no_loops and n_ok > 1:
            self._assigned.clear()
            self._center = graph.point(vtx).copy()
            self._mse = 0.0
            self._mse2d = 0.0
            g = root_trk.tune_full_tree()
            if g > cfg.tune_inf_value:
                result = True
            else:
                logger.warning("Tree re-fit diverged (g=%.4g), removing tracks.", g)
        elif not no_loops:
            logger.warning("Loop in track tree after vertex join, removing tracks.")
        else:
            logger.debug("Only %d successful attachment(s), removing tracks.", n_ok)

        if not result:
            logger.debug("  remove tracks: %d", len(branches))
            for b in branches:
                for coll in (tracks, src):
                    for t, c in enumerate(coll):
                        if c.track is b:
                            del coll[t]
                            break
                graph.release(b)

        self._state = CandidateState.COMMITTED if result else CandidateState.DISCARDED
        return result
