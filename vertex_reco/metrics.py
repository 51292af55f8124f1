from __future__ import annotations
from typing import Dict, Optional, Sequence

import numpy as np
from scipy.spatial import cKDTree


def _as_xyz(a: np.ndarray | Sequence[Sequence[float]] | None) -> np.ndarray:
    r"""
    Coerce input to a ``(N, 3)`` array of ``float64`` positions.

    ``None`` or anything that is not 2-D with at least three columns gives an
    empty ``(0, 3)`` array; downstream metrics treat it as "no data".
    """
    if a is None:
        return np.empty((0, 3), dtype=np.float64)
    a = np.asarray(a, dtype=np.float64)
    if a.ndim != 2 or a.shape[1] < 3:
        return np.empty((0, 3), dtype=np.float64)
    return a[:, :3]


def vertex_residuals(
    found: np.ndarray | Sequence[Sequence[float]],
    truth: np.ndarray | Sequence[Sequence[float]],
    *,
    tree: Optional[cKDTree] = None,
) -> np.ndarray:
    r"""
    Distance from each reconstructed vertex to the nearest true vertex.

    .. math::

        r_i \;=\; \min_j \|f_i - t_j\|_2

    Parameters
    ----------
    found : (NF, 3) array_like
        Reconstructed vertex positions.
    truth : (NT, 3) array_like
        True vertex positions.
    tree : cKDTree, optional
        Prebuilt tree on ``truth`` to reuse.

    Returns
    -------
    ndarray, shape (NF,)
        ``+inf`` everywhere if ``truth`` is empty.
    """
    F, T = _as_xyz(found), _as_xyz(truth)
    if len(F) == 0:
        return np.empty((0,), dtype=np.float64)
    if len(T) == 0:
        return np.full((len(F),), np.inf, dtype=np.float64)
    if tree is None:
        tree = cKDTree(T)
    d, _ = tree.query(F, k=1)
    return np.asarray(d, dtype=np.float64)


def vertex_efficiency(
    found: np.ndarray | Sequence[Sequence[float]],
    truth: np.ndarray | Sequence[Sequence[float]],
    tol: float = 1.0,
) -> Dict[str, float]:
    r"""
    Matching summary between reconstructed and true vertices.

    A true vertex is *found* if some reconstructed vertex lies within ``tol``;
    a reconstructed vertex is *fake* if no true vertex lies within ``tol``.

    Returns
    -------
    dict
        ``efficiency`` (found / true), ``fake_rate`` (fakes / reconstructed),
        ``mean_residual`` (over matched reconstructed vertices, NaN if none),
        ``n_true`` and ``n_found``.
    """
    F, T = _as_xyz(found), _as_xyz(truth)
    out = {
        "efficiency": 0.0,
        "fake_rate": 0.0,
        "mean_residual": float("nan"),
        "n_true": float(len(T)),
        "n_found": float(len(F)),
    }
    if len(F) == 0 or len(T) == 0:
        out["fake_rate"] = 1.0 if len(F) else 0.0
        return out

    res = vertex_residuals(F, T)
    d_truth, _ = cKDTree(F).query(T, k=1)
    matched = res <= tol
    out["efficiency"] = float(np.mean(np.asarray(d_truth) <= tol))
    out["fake_rate"] = float(1.0 - np.mean(matched))
    if matched.any():
        out["mean_residual"] = float(res[matched].mean())
    return out
