import sys
from pathlib import Path
sys.path.append(str(Path(__file__).resolve().parents[1]))

import numpy as np
import pytest
from vertex_reco.detector import View
from vertex_reco.track_graph import TrackGraph


def _line_track(graph, p0, p1, n=3, hits=None):
    pts = np.linspace(np.asarray(p0, float), np.asarray(p1, float), n)
    return graph.add_track(pts, hits)


def test_basics():
    g = TrackGraph()
    t = _line_track(g, [0, 0, 0], [2, 0, 0])
    assert len(g) == 1 and t in g
    assert t.length() == pytest.approx(2.0)
    assert len(list(t.segments())) == 2
    assert t.segment(1).length() == pytest.approx(1.0)
    with pytest.raises(IndexError):
        t.segment(2)
    with pytest.raises(ValueError):
        g.add_track([[0.0, 0.0, 0.0]])
    assert t.root() is t
    assert t.branches() == (True, [t])


def test_attach_to_inner_node_and_refuse_cycle():
    g = TrackGraph()
    a = _line_track(g, [0, 0, 0], [2, 0, 0])
    b = _line_track(g, [1, 1, 0], [1, 5, 0], n=2)
    assert not a.is_attached_to(b)

    assert b.attach_to(a.nodes[1])
    assert b.nodes[0] == a.nodes[1]
    assert b.root() is a
    assert a.is_attached_to(b) and b.is_attached_to(a)
    assert g.is_tree([a, b])
    # already there
    assert b.attach_to(a.nodes[1])

    # front on an inner node: cannot be reversed
    assert not b.can_flip()
    assert not b.flip()

    c = _line_track(g, [0, -3, 0], [0, -1, 0], n=2)
    assert c.attach_back_to(a.nodes[0])
    assert c.nodes[-1] == a.nodes[0]
    # closing a loop is refused
    d = _line_track(g, [5, 5, 5], [6, 6, 6], n=2)
    assert d.attach_to(b.nodes[-1])
    assert not d.attach_back_to(c.nodes[0])


def test_flip_reverses_nodes():
    g = TrackGraph()
    t = _line_track(g, [0, 0, 0], [3, 0, 0], n=4)
    nodes = list(t.nodes)
    assert t.can_flip()
    assert t.flip()
    assert t.nodes == nodes[::-1]


def test_split_shares_node_and_hits():
    g = TrackGraph()
    hits = np.array([[0.5, 0.0, 0.0], [2.5, 0.0, 0.0]])
    t = _line_track(g, [0, 0, 0], [3, 0, 0], n=4, hits=hits)
    nodes = list(t.nodes)
    assert t.split(0) is None
    assert t.split(3) is None

    t0 = t.split(2)
    assert t0 is not None and len(g) == 2
    assert t.nodes == nodes[2:]
    assert t0.nodes == [nodes[2], nodes[1], nodes[0]]
    np.testing.assert_allclose(t.hits, [[2.5, 0.0, 0.0]])
    np.testing.assert_allclose(t0.hits, [[0.5, 0.0, 0.0]])
    assert t.is_attached_to(t0)
    assert g.is_tree([t, t0])


def test_insert_node_and_release():
    g = TrackGraph()
    t = _line_track(g, [0, 0, 0], [2, 0, 0])
    with pytest.raises(ValueError):
        t.insert_node([0.5, 0.0, 0.0], 0, 0, 0)
    nid = t.insert_node([0.5, 0.0, 0.0], 1, 0, 0)
    assert t.nodes[1] == nid and len(t.nodes) == 4
    np.testing.assert_allclose(g.point(nid), [0.5, 0.0, 0.0])

    old = list(t.nodes)
    g.release(t)
    assert t not in g and t.nodes == []
    assert not any(g.has_node(n) for n in old)


def test_projection_follows_graph_changes():
    g = TrackGraph()
    t = g.add_track([[1.0, 2.0, 3.0], [1.0, 2.0, 6.0]])
    np.testing.assert_allclose(t.projection(View.Z)[0], [3.0, 1.0])
    g.set_point(t.nodes[0], [4.0, 2.0, 3.0])
    np.testing.assert_allclose(t.projection(View.Z)[0], [3.0, 4.0])


def test_networkx_view_and_tune():
    g = TrackGraph()
    hits = np.column_stack([np.linspace(0.1, 1.9, 10), np.zeros(10), np.zeros(10)])
    a = _line_track(g, [0, 0, 0], [2, 0, 0], hits=hits)
    b = _line_track(g, [1, 1, 0], [1, 4, 0], n=2)
    b.attach_to(a.nodes[1])
    G = g.to_networkx()
    assert G.number_of_edges() == 3
    assert G.number_of_nodes() == 4
    g_val = a.tune_full_tree()
    assert 0.0 <= g_val < 1e-12
