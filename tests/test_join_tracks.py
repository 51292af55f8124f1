import sys
from pathlib import Path
sys.path.append(str(Path(__file__).resolve().parents[1]))

import numpy as np
from vertex_reco.track_graph import TrackCandidate, TrackGraph
from vertex_reco.vtx_candidate import CandidateState, VertexCandidate


AXES = np.eye(3)


def _ray(graph, d, reverse=False, origin=(0.0, 0.0, 0.0)):
    s = np.array([0.5, 10.0, 20.0])
    pts = np.asarray(origin, dtype=float) + s[:, None] * np.asarray(d, dtype=float)[None, :]
    return graph.add_track(pts[::-1] if reverse else pts)


def _build(tracks):
    cand = VertexCandidate()
    for t in tracks:
        assert cand.add(t)
    return cand


def test_star_joined_at_track_fronts():
    g = TrackGraph()
    rays = [_ray(g, d) for d in AXES]
    cand = _build(rays)
    np.testing.assert_allclose(cand.center, np.zeros(3), atol=1e-9)
    src = [TrackCandidate(t, k) for k, t in enumerate(rays)]
    tracks = []

    assert cand.join_tracks(tracks, src)
    vtx = rays[0].nodes[0]
    assert all(t.nodes[0] == vtx for t in rays)
    np.testing.assert_allclose(g.point(vtx), np.zeros(3), atol=1e-9)
    assert len(tracks) == 3 and src == []
    assert g.is_tree(rays)
    assert len(g) == 3


def test_track_ending_at_vertex_is_flipped():
    g = TrackGraph()
    back = _ray(g, AXES[0], reverse=True)
    others = [_ray(g, AXES[1]), _ray(g, AXES[2])]
    cand = _build([back] + others)
    assert cand.assigned[0][1] == 1

    assert cand.join_tracks([], [TrackCandidate(t) for t in [back] + others])
    vtx = back.nodes[0]
    np.testing.assert_allclose(g.point(vtx), np.zeros(3), atol=1e-9)
    np.testing.assert_allclose(g.point(back.nodes[-1]), [20.0, 0.0, 0.0])
    assert all(t.nodes[0] == vtx for t in others)


def test_vertex_inside_long_segment_splits_track():
    g = TrackGraph()
    through = g.add_track([[-20.0, 0.0, 0.0], [20.0, 0.0, 0.0]])
    rays = [_ray(g, AXES[1]), _ray(g, AXES[2])]
    cand = _build([through] + rays)
    tracks = []
    assert cand.join_tracks(tracks, [TrackCandidate(t) for t in [through] + rays])

    # the crossing track gets a node at the vertex, the others hang from it
    assert len(through.nodes) == 3
    vtx = through.nodes[1]
    np.testing.assert_allclose(g.point(vtx), np.zeros(3), atol=1e-9)
    assert all(t.nodes[0] == vtx for t in rays)
    assert len(tracks) == 3
    assert cand.state is CandidateState.COMMITTED


def test_failed_join_releases_tree():
    g = TrackGraph()
    a = _ray(g, AXES[0])
    b = _ray(g, AXES[1])
    cand = _build([a, b])
    # make the tracks share a tree behind the candidate's back
    assert b.attach_back_to(a.nodes[-1])
    tracks = []
    src = [TrackCandidate(a), TrackCandidate(b)]

    assert not cand.join_tracks(tracks, src)
    assert cand.state is CandidateState.DISCARDED
    assert a not in g and b not in g
    assert tracks == [] and src == []


def test_track_ending_at_front_vertex_attached_by_its_back():
    g = TrackGraph()
    x = _ray(g, AXES[0])
    y = _ray(g, AXES[1], reverse=True)
    z = _ray(g, AXES[2])
    cand = _build([x, y, z])
    assert cand.assigned[1][1] == 1

    assert cand.join_tracks([], [TrackCandidate(t) for t in (x, y, z)])
    vtx = x.nodes[0]
    np.testing.assert_allclose(g.point(vtx), np.zeros(3), atol=1e-9)
    # y keeps its direction and ends at the vertex
    assert y.nodes[-1] == vtx
    np.testing.assert_allclose(g.point(y.nodes[0]), [0.0, 20.0, 0.0])
    assert z.nodes[0] == vtx
    assert x.root() is y and z.root() is y
    assert cand.state is CandidateState.COMMITTED


def test_later_through_tracks_split_at_inner_vertex():
    g = TrackGraph()
    through = [g.add_track([-20.0 * d, 20.0 * d]) for d in AXES]
    src = [TrackCandidate(t, k) for k, t in enumerate(through)]
    cand = _build(src)
    tracks = []

    assert cand.join_tracks(tracks, src)
    x, y, z = through
    # x gets the vertex as inner node, y and z are cut in two there
    assert len(x.nodes) == 3
    vtx = x.nodes[1]
    np.testing.assert_allclose(g.point(vtx), np.zeros(3), atol=1e-9)
    assert len(tracks) == 5 and src == []
    pieces = [c for c in tracks if c.track not in through]
    assert len(pieces) == 2
    assert sorted(c.key for c in pieces) == [1, 2]
    for t in [y, z] + [c.track for c in pieces]:
        assert t.nodes[0] == vtx
        assert len(t.nodes) == 2
    ends = sorted(tuple(np.round(g.point(c.track.nodes[-1]), 6)) for c in pieces)
    assert ends == [(0.0, -20.0, 0.0), (0.0, 0.0, -20.0)]
    assert g.is_tree([c.track for c in tracks])
    assert len(g) == 5
