import sys
from pathlib import Path
sys.path.append(str(Path(__file__).resolve().parents[1]))

import numpy as np
import pytest
from vertex_reco.metrics import vertex_efficiency, vertex_residuals
from vertex_reco.track_graph import TrackGraph
from vertex_reco.utils import jitter_points, make_star_event, spread_directions


def test_jitter_points():
    pts = np.array([[0.0, 0.0, 0.0, 7.0], [1.0, 1.0, 1.0, 8.0]])
    np.testing.assert_array_equal(jitter_points(pts, 0.0), pts)
    out = jitter_points(pts, 0.1, rng=np.random.default_rng(0))
    assert out.shape == pts.shape
    np.testing.assert_array_equal(out[:, 3], pts[:, 3])
    with pytest.raises(ValueError):
        jitter_points(np.zeros((3, 2)))


def test_spread_directions_are_separated():
    d = spread_directions(4, 30.0, rng=np.random.default_rng(1))
    np.testing.assert_allclose(np.linalg.norm(d, axis=1), 1.0)
    cos = np.abs(d @ d.T)[~np.eye(4, dtype=bool)]
    assert np.all(cos < np.cos(np.radians(30.0)))


def test_star_event_layout():
    g = TrackGraph()
    truth = [[0.0, 0.0, 0.0], [100.0, 0.0, 0.0]]
    tracks, tv = make_star_event(g, truth, [2, 3], gap=0.5, sigma=0.05, rng=np.random.default_rng(3))
    assert len(tracks) == 5 and len(g) == 5
    assert tv.shape == (2, 3)
    for t, v in zip(tracks, [tv[0]] * 2 + [tv[1]] * 3):
        assert np.linalg.norm(t.points()[0] - v) == pytest.approx(0.5)
        assert len(t.nodes) == 4
        assert t.size() == 30
    with pytest.raises(ValueError):
        make_star_event(g, truth, [1, 2, 3])


def test_vertex_residuals():
    r = vertex_residuals([[0.0, 0.0, 0.0], [10.0, 0.0, 0.0]], [[0.0, 0.0, 1.0]])
    np.testing.assert_allclose(r, [1.0, np.sqrt(101.0)])
    assert vertex_residuals(np.empty((0, 3)), [[0.0, 0.0, 0.0]]).shape == (0,)
    assert np.all(np.isinf(vertex_residuals([[1.0, 2.0, 3.0]], None)))


def test_vertex_efficiency():
    s = vertex_efficiency([[0.0, 0.0, 0.5]], [[0.0, 0.0, 0.0], [50.0, 0.0, 0.0]], tol=1.0)
    assert s["efficiency"] == pytest.approx(0.5)
    assert s["fake_rate"] == pytest.approx(0.0)
    assert s["mean_residual"] == pytest.approx(0.5)

    s = vertex_efficiency([[20.0, 0.0, 0.0]], [[0.0, 0.0, 0.0]], tol=1.0)
    assert s["efficiency"] == 0.0 and s["fake_rate"] == 1.0
    assert np.isnan(s["mean_residual"])

    s = vertex_efficiency([], [[0.0, 0.0, 0.0]])
    assert s["efficiency"] == 0.0 and s["n_true"] == 1.0
