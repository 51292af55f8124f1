import sys
from pathlib import Path
sys.path.append(str(Path(__file__).resolve().parents[1]))

import numpy as np
import pandas as pd
import pytest
from vertex_reco.detector import DetectorGeometry, View


def test_default_geometry_views_and_projection():
    geom = DetectorGeometry.default()
    assert geom.volumes == [(0, 0)]
    assert geom.views(0, 0) == (View.U, View.V, View.Z)
    np.testing.assert_allclose(geom.project(np.array([1.0, 2.0, 3.0]), View.Z, 0, 0), [3.0, 1.0])

    u = geom.project(np.array([1.0, 2.0, 3.0]), View.U, 0, 0)
    t = np.deg2rad(35.7)
    np.testing.assert_allclose(u, [3.0 * np.cos(t) + 2.0 * np.sin(t), 1.0])


def test_unknown_volume_and_view():
    geom = DetectorGeometry.from_records([
        {"cryo": 0, "tpc": 0, "view": "Z", "angle_deg": 0.0},
        {"cryo": 0, "tpc": 1, "view": "U", "angle_deg": 60.0},
    ])
    assert geom.views(1, 0) == (View.U,)
    assert not geom.has_view(View.Z, 1, 0)
    assert geom.has_view(View.Z, 0, 0)
    with pytest.raises(KeyError):
        geom.views(5, 0)
    with pytest.raises(KeyError):
        geom.project(np.zeros(3), View.V, 0, 0)
    # no bounds: the first volume
    assert geom.find_volume(np.array([1e4, 0.0, 0.0])) == (0, 0)


def test_bad_tables():
    with pytest.raises(KeyError):
        DetectorGeometry(pd.DataFrame({"cryo": [0], "tpc": [0], "view": ["Z"]}))
    dup = pd.DataFrame({"cryo": [0, 0], "tpc": [0, 0], "view": ["Z", "Z"], "angle_deg": [0.0, 0.0]})
    with pytest.raises(ValueError):
        DetectorGeometry(dup)


def test_find_volume_uses_bounds():
    rows = []
    for tpc, (x0, x1) in enumerate([(-100.0, 0.0), (0.0, 100.0)]):
        rows.append({"cryo": 0, "tpc": tpc, "view": "Z", "angle_deg": 0.0,
                     "x_min": x0, "x_max": x1, "y_min": -50.0, "y_max": 50.0,
                     "z_min": -50.0, "z_max": 50.0})
    geom = DetectorGeometry.from_records(rows)
    assert geom.find_volume(np.array([-20.0, 0.0, 0.0])) == (0, 0)
    assert geom.find_volume(np.array([20.0, 0.0, 0.0])) == (1, 0)
    assert geom.find_volume(np.array([500.0, 0.0, 0.0])) == (1, 0)
