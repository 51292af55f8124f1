from __future__ import annotations

import logging
from typing import Optional, Sequence, Tuple

import numpy as np

from vertex_reco.kernels import dist2, project_to_line

logger = logging.getLogger(__name__)

__all__ = ["solve_least_squares_3d"]

# normal matrices worse than this are treated as singular (parallel lines)
_MAX_CONDITION = 1.0e12


def solve_least_squares_3d(
    lines: Sequence[Tuple[np.ndarray, np.ndarray]],
    weights: Optional[Sequence[float]] = None,
) -> Tuple[np.ndarray, float]:
    r"""
    Point of closest approach to a set of 3D lines (weighted least squares).

    Each line :math:`v` is given by two points :math:`(a_v, b_v)`; with
    :math:`p_v = a_v` and unit direction :math:`u_v = (b_v-a_v)/\|b_v-a_v\|`
    the squared distance of :math:`x` to the line is
    :math:`\|(I-u_v u_v^\top)(x-p_v)\|^2`. Minimising the weighted sum gives
    the normal equations (solved with :func:`numpy.linalg.solve`)

    .. math::

        \Big(\sum_v w_v (I - u_v u_v^\top)\Big)\,x
        \;=\; \sum_v w_v (I - u_v u_v^\top)\,p_v .

    Parameters
    ----------
    lines : sequence of (ndarray(3,), ndarray(3,))
        Endpoint pairs defining the lines.
    weights : sequence of float, optional
        Per-line weights :math:`w_v` (default all ones).

    Returns
    -------
    point : ndarray, shape (3,)
        Least-squares intersection, or the origin on failure.
    mse : float
        Mean squared distance of ``point`` to all input lines, or ``-1.0``
        when fewer than two lines are usable or the system is singular.

    Notes
    -----
    Zero-length lines are skipped (a warning is logged). The residual is the
    plain (unweighted) mean over the usable lines.
    """
    origin = np.zeros(3, dtype=np.float64)
    if weights is not None and len(weights) != len(lines):
        raise ValueError("weights must have one entry per line.")

    A = np.zeros((3, 3), dtype=np.float64)
    y = np.zeros(3, dtype=np.float64)
    used = []
    eye = np.eye(3, dtype=np.float64)
    for v, (a, b) in enumerate(lines):
        p = np.asarray(a, dtype=np.float64)
        d = np.asarray(b, dtype=np.float64) - p
        m = float(np.linalg.norm(d))
        if m <= 0.0:
            logger.warning("Line undefined (zero length), skipped.")
            continue
        u = d / m
        w = 1.0 if weights is None else float(weights[v])
        proj = eye - np.outer(u, u)
        A += w * proj
        y += w * (proj @ p)
        used.append((p, p + d))

    if len(used) < 2:
        logger.debug("Need min. two lines, got %d.", len(used))
        return origin, -1.0

    if not np.isfinite(A).all() or np.linalg.cond(A) > _MAX_CONDITION:
        logger.debug("Singular line system (parallel lines?).")
        return origin, -1.0

    try:
        x = np.linalg.solve(A, y)
    except np.linalg.LinAlgError:
        return origin, -1.0

    mse = 0.0
    for p0, p1 in used:
        mse += dist2(x, project_to_line(x, p0, p1))
    return x, mse / len(used)
