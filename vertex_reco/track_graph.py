from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Set, Tuple

import networkx as nx
import numpy as np
from scipy.spatial import cKDTree

from vertex_reco.config import VertexConfig
from vertex_reco.detector import DetectorGeometry, View
from vertex_reco.errors import BrokenTrackError
from vertex_reco.kernels import dist2_to_segment

logger = logging.getLogger(__name__)

__all__ = ["TrackGraph", "Track", "Segment", "TrackCandidate"]


@dataclass(slots=True)
class _Node:
    point: np.ndarray   # (3,)
    tpc: int
    cryo: int


@dataclass(frozen=True, slots=True)
class Segment:
    r"""
    Directed edge ``track.nodes[index] → track.nodes[index + 1]``.

    A segment is a *view* on its track: after the track is flipped, split or
    gets a node inserted, the same ``(track, index)`` may denote a different
    pair of nodes.
    """
    track: "Track"
    index: int

    @property
    def start(self) -> int:
        return self.track.nodes[self.index]

    @property
    def end(self) -> int:
        return self.track.nodes[self.index + 1]

    def endpoints(self) -> Tuple[np.ndarray, np.ndarray]:
        g = self.track.graph
        return g.point(self.start), g.point(self.end)

    def length(self) -> float:
        p0, p1 = self.endpoints()
        return float(np.linalg.norm(p1 - p0))

    def distance2_to(self, point: np.ndarray) -> float:
        """Squared 3D distance from ``point`` to this segment (clamped at the ends)."""
        p0, p1 = self.endpoints()
        return float(dist2_to_segment(np.asarray(point, dtype=np.float64), p0, p1))

    def distance2_to_2d(self, point2d: np.ndarray, view: View) -> float:
        r"""
        Squared 2D distance in a readout view.

        Both endpoints are projected with the volume of the segment's start node.
        """
        g = self.track.graph
        tpc, cryo = g.volume(self.start)
        p0, p1 = self.endpoints()
        a = g.geometry.project(p0, view, tpc, cryo)
        b = g.geometry.project(p1, view, tpc, cryo)
        return float(dist2_to_segment(np.asarray(point2d, dtype=np.float64), a, b))


@dataclass(slots=True)
class TrackCandidate:
    """Element of the track collections passed around the vertexing stage."""
    track: "Track"
    key: int = -1


class TrackGraph:
    r"""
    Arena of 3D nodes shared by a set of polyline tracks.

    Nodes are addressed by stable integer ids. A :class:`Track` is an ordered
    list of node ids; two tracks are attached when they share a node. The
    graph is kept **tree-shaped**: every node has at most one predecessor
    segment, and walking predecessors from any track ends at a single root
    track.

    Node adjacency (predecessor and successor segments) is never stored on the
    nodes; it is derived from the track node lists and cached until the next
    topology change, so attach/split/flip are plain list rewrites.

    Parameters
    ----------
    geometry : DetectorGeometry, optional
        Readout-plane lookup (default :meth:`DetectorGeometry.default`).
    config : VertexConfig, optional
        Thresholds used by :meth:`Track.tune_full_tree`.
    """

    def __init__(self, geometry: DetectorGeometry | None = None, config: VertexConfig | None = None) -> None:
        self.geometry = geometry if geometry is not None else DetectorGeometry.default()
        self.config = config if config is not None else VertexConfig()
        self._nodes: Dict[int, _Node] = {}
        self._tracks: Dict[int, Track] = {}
        self._next_node_id = 0
        self._next_track_id = 0
        self._version = 0
        self._adj_version = -1
        self._prev: Dict[int, Segment] = {}
        self._next: Dict[int, List[Segment]] = {}

    # ------------------------------------------------------------------ arena
    def add_node(self, point: Sequence[float], tpc: Optional[int] = None, cryo: Optional[int] = None) -> int:
        p = np.array(point, dtype=np.float64).reshape(3)
        if tpc is None or cryo is None:
            tpc, cryo = self.geometry.find_volume(p)
        nid = self._next_node_id
        self._next_node_id += 1
        self._nodes[nid] = _Node(p, int(tpc), int(cryo))
        return nid

    def add_track(self, points: Sequence[Sequence[float]], hits: Optional[np.ndarray] = None) -> "Track":
        r"""
        Create a track from an ordered polyline.

        Parameters
        ----------
        points : (N, 3) array_like
            Node positions, ``N >= 2``.
        hits : (M, 3) array_like, optional
            Measured points the track was reconstructed from.

        Returns
        -------
        Track
        """
        pts = np.asarray(points, dtype=np.float64)
        if pts.ndim != 2 or pts.shape[1] != 3 or pts.shape[0] < 2:
            raise ValueError("points must have shape (N, 3) with N >= 2.")
        ids = [self.add_node(p) for p in pts]
        return self._new_track(ids, hits)

    def _new_track(self, node_ids: List[int], hits: Optional[np.ndarray] = None) -> "Track":
        tid = self._next_track_id
        self._next_track_id += 1
        trk = Track(self, tid, list(node_ids), hits)
        self._tracks[tid] = trk
        self._touch()
        return trk

    def release(self, track: "Track") -> None:
        r"""
        Delete a track from the graph.

        Nodes no longer referenced by any track are dropped; the released
        track is left without nodes.
        """
        if self._tracks.pop(track.id, None) is None:
            return
        still_used: Set[int] = set()
        for t in self._tracks.values():
            still_used.update(t.nodes)
        for nid in track.nodes:
            if nid not in still_used:
                self._nodes.pop(nid, None)
        track.nodes = []
        self._touch()

    def merge_node(self, old: int, new: int) -> None:
        r"""
        Replace node ``old`` by ``new`` in every track and drop ``old``.

        No topology checks are made here; callers (``Track.attach_to``,
        ``Track.attach_back_to``) make sure ``new`` keeps a single predecessor.
        """
        if old == new:
            return
        for t in self._tracks.values():
            t.nodes = [new if n == old else n for n in t.nodes]
        self._nodes.pop(old, None)
        self._touch()

    def _touch(self) -> None:
        self._version += 1

    @property
    def version(self) -> int:
        return self._version

    # ---------------------------------------------------------------- queries
    def point(self, node: int) -> np.ndarray:
        return self._nodes[node].point

    def set_point(self, node: int, point: Sequence[float]) -> None:
        self._nodes[node].point = np.array(point, dtype=np.float64).reshape(3)
        self._touch()

    def volume(self, node: int) -> Tuple[int, int]:
        n = self._nodes[node]
        return n.tpc, n.cryo

    def has_node(self, node: int) -> bool:
        return node in self._nodes

    @property
    def tracks(self) -> List["Track"]:
        return list(self._tracks.values())

    def __contains__(self, track: object) -> bool:
        return isinstance(track, Track) and self._tracks.get(track.id) is track

    def __len__(self) -> int:
        return len(self._tracks)

    def _adjacency(self) -> None:
        if self._adj_version == self._version:
            return
        prev: Dict[int, Segment] = {}
        nxt: Dict[int, List[Segment]] = defaultdict(list)
        for trk in self._tracks.values():
            nodes = trk.nodes
            for i in range(len(nodes) - 1):
                seg = Segment(trk, i)
                nxt[nodes[i]].append(seg)
                prev.setdefault(nodes[i + 1], seg)
        self._prev = prev
        self._next = dict(nxt)
        self._adj_version = self._version

    def prev_segment(self, node: int) -> Optional[Segment]:
        """Segment ending at ``node``, or ``None``."""
        self._adjacency()
        return self._prev.get(node)

    def next_segments(self, node: int) -> List[Segment]:
        """Segments starting at ``node``."""
        self._adjacency()
        return list(self._next.get(node, ()))

    def is_isolated(self, node: int) -> bool:
        return self.prev_segment(node) is None and not self.next_segments(node)

    def branches_at(self, node: int) -> List["Track"]:
        """Distinct tracks leaving ``node``."""
        out: List[Track] = []
        for seg in self.next_segments(node):
            if all(seg.track is not t for t in out):
                out.append(seg.track)
        return out

    def to_networkx(self, tracks: Optional[Iterable["Track"]] = None) -> nx.MultiDiGraph:
        r"""
        Node graph of the given tracks (all tracks by default).

        Each segment becomes one directed edge ``start → end`` carrying the
        owning ``track`` id and segment ``index``.
        """
        G = nx.MultiDiGraph()
        for trk in (self._tracks.values() if tracks is None else tracks):
            G.add_nodes_from(trk.nodes)
            for i in range(len(trk.nodes) - 1):
                G.add_edge(trk.nodes[i], trk.nodes[i + 1], track=trk.id, index=i)
        return G

    def is_tree(self, tracks: Iterable["Track"]) -> bool:
        r"""
        Whether the node graph spanned by ``tracks`` is loop-free.

        Requires an undirected forest (no cycles, no doubled edges) in which
        every node has at most one incoming segment.
        """
        G = self.to_networkx(tracks)
        if G.number_of_nodes() == 0:
            return True
        if any(d > 1 for _, d in G.in_degree()):
            return False
        return nx.is_forest(nx.MultiGraph(G))


class Track:
    r"""
    Polyline track living in a :class:`TrackGraph`.

    Attributes
    ----------
    graph : TrackGraph
        Owning arena.
    id : int
        Stable identifier within the graph.
    nodes : list of int
        Ordered node ids; segment ``i`` joins ``nodes[i]`` and ``nodes[i+1]``.
    hits : ndarray, shape (M, 3)
        Measured points used by :meth:`tune_full_tree` (may be empty).
    """

    __slots__ = ("graph", "id", "nodes", "hits", "_proj", "_proj_version")

    def __init__(self, graph: TrackGraph, track_id: int, nodes: List[int], hits: Optional[np.ndarray] = None) -> None:
        self.graph = graph
        self.id = int(track_id)
        self.nodes = nodes
        if hits is None or len(hits) == 0:
            self.hits = np.empty((0, 3), dtype=np.float64)
        else:
            self.hits = np.asarray(hits, dtype=np.float64).reshape(-1, 3)
        self._proj: Dict[View, np.ndarray] = {}
        self._proj_version = -1

    def __repr__(self) -> str:
        return f"Track(id={self.id}, nodes={len(self.nodes)}, length={self.length():.2f})"

    # ---------------------------------------------------------------- basics
    def size(self) -> int:
        """Number of hits."""
        return int(self.hits.shape[0])

    def points(self) -> np.ndarray:
        if not self.nodes:
            return np.empty((0, 3), dtype=np.float64)
        return np.stack([self.graph.point(n) for n in self.nodes])

    def length(self) -> float:
        pts = self.points()
        if len(pts) < 2:
            return 0.0
        return float(np.linalg.norm(np.diff(pts, axis=0), axis=1).sum())

    def segment(self, index: int) -> Segment:
        if not 0 <= index < len(self.nodes) - 1:
            raise IndexError(f"segment {index} out of range for track {self.id}")
        return Segment(self, index)

    def segments(self) -> Iterator[Segment]:
        for i in range(len(self.nodes) - 1):
            yield Segment(self, i)

    def next_segment(self, node: int) -> Optional[Segment]:
        """This track's segment leaving ``node``, or ``None`` if ``node`` is its last (or absent)."""
        try:
            i = self.nodes.index(node)
        except ValueError:
            return None
        return Segment(self, i) if i < len(self.nodes) - 1 else None

    # -------------------------------------------------------------- topology
    def root(self) -> Optional["Track"]:
        r"""
        Top-most track of the tree this track hangs in.

        Follows the predecessor segment of each front node. Returns ``None``
        for an empty track or when the walk revisits a track (cycle).
        """
        trk: Track = self
        seen = {trk.id}
        while True:
            if not trk.nodes:
                return None
            seg = self.graph.prev_segment(trk.nodes[0])
            if seg is None:
                return trk
            trk = seg.track
            if trk.id in seen:
                return None
            seen.add(trk.id)

    def branches(self) -> Tuple[bool, List["Track"]]:
        r"""
        This track and every track hanging below it.

        Returns
        -------
        no_loops : bool
            ``False`` when a track is reached twice (the tree has a loop).
        branches : list of Track
            Tracks collected so far, this track first.
        """
        out: List[Track] = []
        seen: Set[int] = set()
        stack: List[Tuple[Track, bool]] = [(self, False)]
        while stack:
            trk, skip_first = stack.pop()
            if trk.id in seen:
                return False, out
            seen.add(trk.id)
            out.append(trk)
            for i in range(1 if skip_first else 0, len(trk.nodes)):
                for seg in self.graph.next_segments(trk.nodes[i]):
                    if seg.track is not trk:
                        stack.append((seg.track, True))
        return True, out

    def is_attached_to(self, other: "Track") -> bool:
        r"""
        Whether the subtrees of ``self`` and ``other`` share a track.

        A loop in either subtree counts as attached.
        """
        if other is self:
            return True
        ok_other, b_other = other.branches()
        if not ok_other:
            return True
        ok_this, b_this = self.branches()
        if not ok_this:
            return True
        ids = {t.id for t in b_other}
        return any(t.id in ids for t in b_this)

    def can_flip(self) -> bool:
        r"""
        Whether the track can be reversed without breaking the tree.

        The predecessor chain above the front node must consist of tracks
        ending exactly at the shared nodes, so that each of them can be
        reversed in turn.
        """
        trk: Track = self
        seen: Set[int] = set()
        while True:
            if not trk.nodes or trk.id in seen:
                return False
            seen.add(trk.id)
            front = trk.nodes[0]
            seg = self.graph.prev_segment(front)
            if seg is None:
                return True
            if seg.track.next_segment(front) is not None:
                return False
            trk = seg.track

    def flip(self) -> bool:
        r"""
        Reverse the node order.

        The predecessor track ending at the front node is flipped first (and
        so on up the tree), so that the reversed track does not end in a node
        that already has a predecessor. Returns ``False`` when
        :meth:`can_flip` is ``False``.
        """
        if len(self.nodes) < 2:
            return True
        if not self.can_flip():
            return False
        seg = self.graph.prev_segment(self.nodes[0])
        if seg is not None:
            seg.track.flip()
        self.nodes.reverse()
        self.graph._touch()
        return True

    def _attach_guard(self, node: int) -> bool:
        g = self.graph
        if not g.has_node(node) or g.is_isolated(node):
            logger.error("Isolated vertex, cannot attach track %d.", self.id)
            return False
        if node in self.nodes:
            logger.error("Vertex is already in track %d.", self.id)
            return False
        seg = g.prev_segment(node) or g.next_segments(node)[0]
        root_node = seg.track.root()
        root_this = self.root()
        if root_node is None or root_this is None:
            raise BrokenTrackError(f"Broken track tree while attaching track {self.id}.")
        if root_node.is_attached_to(root_this):
            logger.debug("Track %d already attached to the tree of the vertex.", self.id)
            return False
        return True

    def attach_to(self, node: int, no_flip: bool = False) -> bool:
        r"""
        Make ``node`` the front node of this track.

        The current front node is merged into ``node``: every track sharing
        it follows. If the front node has a predecessor, the preceding track
        is flipped away first, unless ``node`` itself has no predecessor (the
        merged node then simply keeps the old one) or ``no_flip`` is set.

        Returns
        -------
        bool
            ``False`` when the attachment would create a cycle or a node with
            two predecessors.
        """
        vtx = self.nodes[0]
        if vtx == node:
            return True
        if not self._attach_guard(node):
            return False
        g = self.graph
        prev = g.prev_segment(vtx)
        if prev is not None:
            tp = prev.track
            if tp.next_segment(vtx) is not None:
                logger.debug("Front of track %d is an inner node of track %d.", self.id, tp.id)
                return False
            if g.prev_segment(node) is not None:
                if no_flip or not tp.can_flip():
                    logger.debug("Flip not possible, cannot attach track %d.", self.id)
                    return False
                tp.flip()
        g.merge_node(vtx, node)
        return True

    def attach_back_to(self, node: int) -> bool:
        r"""
        Make ``node`` the last node of this track.

        If ``node`` already has a predecessor track ending there, that track
        is flipped so ``node`` becomes its front. Attaching back to an inner
        node of another track is refused.
        """
        vtx = self.nodes[-1]
        if vtx == node:
            return True
        if not self._attach_guard(node):
            return False
        g = self.graph
        prev = g.prev_segment(node)
        if prev is not None:
            tp = prev.track
            if tp.next_segment(node) is not None:
                logger.error("Cannot attach back to inner node of other track.")
                return False
            if not tp.can_flip():
                logger.error("Flip not possible, cannot attach.")
                return False
            tp.flip()
        g.merge_node(vtx, node)
        return True

    def split(self, idx: int) -> Optional["Track"]:
        r"""
        Split the track at node ``idx``; both parts keep sharing that node.

        If the track can be flipped, the new track receives nodes
        ``0..idx`` and is flipped, so that both parts start at node ``idx``;
        otherwise the new track receives nodes ``idx..end``. Hits go to the
        part whose polyline is closer.

        Returns
        -------
        Track or None
            The new track, or ``None`` when ``idx`` is an end node.
        """
        if idx <= 0 or idx + 1 >= len(self.nodes):
            return None
        g = self.graph
        nodes = self.nodes
        if self.can_flip():
            logger.debug("Split track %d at %d, flip and keep the second part.", self.id, idx)
            self.nodes = nodes[idx:]
            t0 = g._new_track(nodes[:idx + 1])
            t0.flip()
        else:
            logger.debug("Split track %d at %d, keep the first part.", self.id, idx)
            self.nodes = nodes[:idx + 1]
            t0 = g._new_track(nodes[idx:])
        g._touch()

        if self.size():
            d_this = self._hit_dist2()
            d_t0 = t0._hit_dist2(self.hits)
            mine = d_this <= d_t0
            t0.hits = self.hits[~mine]
            self.hits = self.hits[mine]
        return t0

    def insert_node(self, point: Sequence[float], idx: int, tpc: int, cryo: int) -> int:
        r"""
        Insert a new node at position ``idx`` (``1 <= idx < len(nodes)``).

        Returns
        -------
        int
            Id of the new node.
        """
        if not 0 < idx < len(self.nodes):
            raise ValueError(f"insert index {idx} must be inside track {self.id}")
        nid = self.graph.add_node(point, tpc, cryo)
        self.nodes.insert(idx, nid)
        self.graph._touch()
        return nid

    # ------------------------------------------------------------ projections
    def make_projection(self) -> None:
        r"""
        Recompute the 2D projection of all nodes in every readout view.

        Nodes whose volume does not read out a view are stored as NaN.
        """
        g = self.graph
        proj: Dict[View, np.ndarray] = {}
        for view in View:
            arr = np.full((len(self.nodes), 2), np.nan, dtype=np.float64)
            for i, nid in enumerate(self.nodes):
                tpc, cryo = g.volume(nid)
                if g.geometry.has_view(view, tpc, cryo):
                    arr[i] = g.geometry.project(g.point(nid), view, tpc, cryo)
            proj[view] = arr
        self._proj = proj
        self._proj_version = g.version

    def projection(self, view: View) -> np.ndarray:
        """``(N, 2)`` projected nodes in ``view``, refreshed when the graph changed."""
        if self._proj_version != self.graph.version:
            self.make_projection()
        return self._proj[view]

    # ----------------------------------------------------------------- tuning
    def _hit_dist2(self, hits: Optional[np.ndarray] = None) -> np.ndarray:
        h = self.hits if hits is None else hits
        pts = self.points()
        out = np.full(len(h), np.inf, dtype=np.float64)
        for i in range(len(pts) - 1):
            for k in range(len(h)):
                d = dist2_to_segment(h[k], pts[i], pts[i + 1])
                if d < out[k]:
                    out[k] = d
        return out

    def _relax_nodes(self, fixed: Set[int]) -> None:
        if self.size() == 0 or len(self.nodes) < 3:
            return
        pts = self.points()
        _, nearest = cKDTree(pts).query(self.hits, k=1)
        for i in range(1, len(self.nodes) - 1):
            nid = self.nodes[i]
            if nid in fixed:
                continue
            sel = self.hits[nearest == i]
            if len(sel) == 0:
                continue
            self.graph.set_point(nid, 0.5 * (pts[i] + sel.mean(axis=0)))

    def tune_full_tree(self) -> float:
        r"""
        Re-optimize all tracks of the tree below this track.

        Node positions are relaxed towards the hits closest to them for
        ``config.tune_iterations`` passes; nodes shared by several tracks
        (vertices) and track ends stay fixed. The goodness of the tree is

        .. math::

            g \;=\; \frac{1}{M}\sum_{k=1}^{M} d^2\big(h_k, \text{track}(h_k)\big),

        the mean squared hit-to-polyline distance (``0`` without hits).

        Returns
        -------
        float
            ``g``; ``-1.0`` if ``g > config.tune_max_g``;
            ``config.tune_inf_value`` if ``g`` is not finite or the tree has a loop.
        """
        cfg = self.graph.config
        ok, branches = self.branches()
        if not ok:
            return cfg.tune_inf_value

        count: Dict[int, int] = defaultdict(int)
        for trk in branches:
            for nid in trk.nodes:
                count[nid] += 1
        fixed = {nid for nid, c in count.items() if c > 1}

        for _ in range(cfg.tune_iterations):
            for trk in branches:
                trk._relax_nodes(fixed)

        total, n = 0.0, 0
        for trk in branches:
            if trk.size():
                total += float(trk._hit_dist2().sum())
                n += trk.size()
        g = total / n if n else 0.0
        if not np.isfinite(g):
            return cfg.tune_inf_value
        if g > cfg.tune_max_g:
            return -1.0
        return g
