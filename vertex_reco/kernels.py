from __future__ import annotations

import math

import numpy as np
from numba import njit

__all__ = [
    "dist2",
    "segment_proj_fraction",
    "project_to_line",
    "dist2_to_segment",
    "steepness_weight",
    "segment_weight",
]


@njit(cache=True)
def dist2(a: np.ndarray, b: np.ndarray) -> float:
    r"""
    Squared Euclidean distance :math:`\|a-b\|_2^2` for 2D or 3D points.
    """
    s = 0.0
    for k in range(a.shape[0]):
        d = a[k] - b[k]
        s += d * d
    return s


@njit(cache=True)
def segment_proj_fraction(p: np.ndarray, p0: np.ndarray, p1: np.ndarray) -> float:
    r"""
    Fraction :math:`f` of the projection of ``p`` along the segment ``p0 → p1``.

    .. math::

        f \;=\; \frac{(p - p_0)\cdot(p_1 - p_0)}{\|p_1 - p_0\|^2},

    so that :math:`f\in[0,1]` when the projection falls between the endpoints.
    A zero-length segment returns ``0.0``.
    """
    num = 0.0
    den = 0.0
    for k in range(p.shape[0]):
        v1 = p1[k] - p0[k]
        num += (p[k] - p0[k]) * v1
        den += v1 * v1
    if den == 0.0:
        return 0.0
    return num / den


@njit(cache=True)
def project_to_line(p: np.ndarray, p0: np.ndarray, p1: np.ndarray) -> np.ndarray:
    r"""
    Orthogonal projection of ``p`` onto the infinite line through ``p0`` and ``p1``.

    The projection is **not** clamped to the segment; see
    :func:`dist2_to_segment` for the clamped distance.
    """
    f = segment_proj_fraction(p, p0, p1)
    out = np.empty(p.shape[0], dtype=np.float64)
    for k in range(p.shape[0]):
        out[k] = p0[k] + f * (p1[k] - p0[k])
    return out


@njit(cache=True)
def dist2_to_segment(p: np.ndarray, p0: np.ndarray, p1: np.ndarray) -> float:
    r"""
    Squared distance from ``p`` to the closed segment :math:`[p_0, p_1]`.

    The projection fraction is clamped to :math:`[0,1]`, so points beyond an
    end are measured to that endpoint.
    """
    f = segment_proj_fraction(p, p0, p1)
    if f < 0.0:
        f = 0.0
    elif f > 1.0:
        f = 1.0
    s = 0.0
    for k in range(p.shape[0]):
        d = p[k] - (p0[k] + f * (p1[k] - p0[k]))
        s += d * d
    return s


@njit(cache=True)
def steepness_weight(fy_norm: float, power: int, floor: float) -> float:
    r"""
    Weight of a segment given its normalized steepness.

    .. math::

        w \;=\; \max\!\big(1 - (f_y - 1)^{p},\ w_{\min}\big).

    Flat segments (:math:`f_y\to 0`) and any out-of-range input end on the
    floor; vertical ones (:math:`f_y = 1`) get :math:`w=1`.
    """
    w = 1.0 - (fy_norm - 1.0) ** power
    if not (w >= floor):
        w = floor
    return w


@njit(cache=True)
def segment_weight(p0: np.ndarray, p1: np.ndarray, power: int, floor: float) -> float:
    r"""
    Steepness weight of the 3D segment ``p0 → p1``.

    With :math:`\Delta y` the vertical separation and :math:`L` the length,

    .. math::

        f_y \;=\; \frac{\arcsin(|\Delta y| / L)}{\pi/2}.

    The ratio is clamped to 1 before ``asin``; a degenerate segment gets the
    floor weight.
    """
    seg_len = math.sqrt(dist2(p0, p1))
    if seg_len == 0.0:
        return floor
    r = abs(p0[1] - p1[1]) / seg_len
    if r > 1.0:
        r = 1.0
    fy_norm = math.asin(r) / (0.5 * math.pi)
    return steepness_weight(fy_norm, power, floor)
