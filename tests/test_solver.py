import sys
from pathlib import Path
sys.path.append(str(Path(__file__).resolve().parents[1]))

import numpy as np
import pytest
from vertex_reco.solver import solve_least_squares_3d


def _line(p, d, s=10.0):
    p = np.asarray(p, dtype=float)
    d = np.asarray(d, dtype=float)
    return p - s * d, p + s * d


def test_crossing_lines_meet_at_point():
    P = np.array([1.0, 2.0, 3.0])
    x, mse = solve_least_squares_3d([_line(P, [1, 0.5, 0]), _line(P, [0, 0.3, 1])])
    np.testing.assert_allclose(x, P, atol=1e-9)
    assert mse == pytest.approx(0.0, abs=1e-12)


def test_skew_lines_midpoint_and_residual():
    lines = [_line([0, 0, 0], [1, 0, 0]), _line([0, 0, 2], [0, 1, 0])]
    x, mse = solve_least_squares_3d(lines)
    np.testing.assert_allclose(x, [0.0, 0.0, 1.0], atol=1e-9)
    assert mse == pytest.approx(1.0)

    xw, msew = solve_least_squares_3d(lines, weights=[1.0, 1.0])
    np.testing.assert_allclose(xw, x)
    assert msew == pytest.approx(mse)


def test_failures_report_negative_residual():
    _, mse = solve_least_squares_3d([_line([0, 0, 0], [1, 0, 0])])
    assert mse < 0

    # parallel lines: singular system
    _, mse = solve_least_squares_3d([_line([0, 0, 0], [1, 0, 0]), _line([0, 1, 0], [1, 0, 0])])
    assert mse < 0

    # zero-length line is skipped, leaving a single line
    p = np.array([1.0, 1.0, 1.0])
    _, mse = solve_least_squares_3d([(p, p.copy()), _line([0, 0, 0], [0, 0, 1])])
    assert mse < 0


def test_weights_length_mismatch():
    with pytest.raises(ValueError):
        solve_least_squares_3d([_line([0, 0, 0], [1, 0, 0]), _line([0, 0, 0], [0, 1, 0])], weights=[1.0])
