from __future__ import annotations

from typing import List, Optional, Sequence, Tuple

import numpy as np

from vertex_reco.track_graph import Track, TrackGraph


def jitter_points(
    points: np.ndarray,
    sigma: float = 1e-3,
    *,
    rng: Optional[np.random.Generator] = None,
) -> np.ndarray:
    r"""
    Add i.i.d. Gaussian jitter :math:`\mathcal{N}(0,\sigma^2)` to the first
    three columns of ``points``.

    Parameters
    ----------
    points : (N,3) or (N,M>=3) array_like
        Point coordinates.
    sigma : float, optional
        Standard deviation of the isotropic noise.
    rng : numpy.random.Generator, optional
        Random generator; a default generator is used if omitted.

    Returns
    -------
    ndarray
        Jittered copy (``float64``). With ``sigma <= 0`` the copy is unchanged.

    Raises
    ------
    ValueError
        If ``points`` is not 2D with at least 3 columns.
    """
    pts = np.asarray(points, dtype=np.float64, order="C")
    if pts.ndim != 2 or pts.shape[1] < 3:
        raise ValueError("points must have shape (N, 3) or (N, M>=3).")
    if sigma <= 0.0:
        return pts.copy()

    rng = np.random.default_rng() if rng is None else rng
    out = pts.copy()
    out[:, :3] += rng.normal(loc=0.0, scale=float(sigma), size=pts[:, :3].shape)
    return out


def random_directions(n: int, *, rng: Optional[np.random.Generator] = None) -> np.ndarray:
    r"""
    ``n`` unit vectors uniformly distributed on the sphere.

    Drawn as normalized standard normal triplets.
    """
    rng = np.random.default_rng() if rng is None else rng
    v = rng.normal(size=(int(n), 3))
    return v / np.linalg.norm(v, axis=1, keepdims=True)


def spread_directions(n: int, min_angle_deg: float = 20.0, *,
                      rng: Optional[np.random.Generator] = None, max_tries: int = 1000) -> np.ndarray:
    r"""
    ``n`` random unit vectors, pairwise separated (as lines) by at least
    ``min_angle_deg``.

    Raises
    ------
    RuntimeError
        If no such set is found within ``max_tries`` draws.
    """
    rng = np.random.default_rng() if rng is None else rng
    cos_max = np.cos(np.radians(min_angle_deg))
    out: List[np.ndarray] = []
    tries = 0
    while len(out) < n:
        tries += 1
        if tries > max_tries:
            raise RuntimeError(f"Cannot draw {n} directions separated by {min_angle_deg} deg.")
        d = random_directions(1, rng=rng)[0]
        if all(abs(float(d @ o)) < cos_max for o in out):
            out.append(d)
    return np.stack(out) if out else np.empty((0, 3), dtype=np.float64)


def make_star_track(
    graph: TrackGraph,
    vertex: Sequence[float],
    direction: Sequence[float],
    *,
    length: float = 30.0,
    n_nodes: int = 4,
    gap: float = 0.5,
    hits_per_segment: int = 10,
    sigma: float = 0.0,
    rng: Optional[np.random.Generator] = None,
) -> Track:
    r"""
    Add one straight track radiating from ``vertex``.

    Nodes are placed at :math:`v + s\,\hat d` for ``n_nodes`` values of
    :math:`s` evenly spaced in :math:`[\text{gap}, \text{gap}+\text{length}]`,
    so the track starts a little away from the vertex. Hits are sampled
    uniformly along the polyline; ``sigma`` jitters the inner nodes and all
    hits.
    """
    if n_nodes < 2:
        raise ValueError("n_nodes must be >= 2.")
    rng = np.random.default_rng() if rng is None else rng
    v = np.asarray(vertex, dtype=np.float64).reshape(3)
    d = np.asarray(direction, dtype=np.float64).reshape(3)
    d = d / np.linalg.norm(d)

    s = np.linspace(gap, gap + length, n_nodes)
    nodes = v[None, :] + s[:, None] * d[None, :]
    truth_nodes = nodes.copy()
    if sigma > 0.0 and n_nodes > 2:
        nodes[1:-1] = jitter_points(nodes[1:-1], sigma, rng=rng)

    hits = []
    if hits_per_segment > 0:
        for i in range(n_nodes - 1):
            t = rng.uniform(0.0, 1.0, size=hits_per_segment)
            hits.append(truth_nodes[i] + t[:, None] * (truth_nodes[i + 1] - truth_nodes[i]))
    hit_arr = np.concatenate(hits) if hits else np.empty((0, 3), dtype=np.float64)
    if sigma > 0.0 and len(hit_arr):
        hit_arr = jitter_points(hit_arr, sigma, rng=rng)
    return graph.add_track(nodes, hit_arr)


def make_star_event(
    graph: TrackGraph,
    vertices: Sequence[Sequence[float]],
    tracks_per_vertex: int | Sequence[int] = 3,
    *,
    length: float = 30.0,
    n_nodes: int = 4,
    gap: float = 0.5,
    hits_per_segment: int = 10,
    sigma: float = 0.0,
    min_angle_deg: float = 20.0,
    rng: Optional[np.random.Generator] = None,
) -> Tuple[List[Track], np.ndarray]:
    r"""
    Populate ``graph`` with star-shaped track bundles around known vertices.

    Parameters
    ----------
    graph : TrackGraph
        Target graph.
    vertices : (V, 3) array_like
        True vertex positions.
    tracks_per_vertex : int or sequence of int
        Number of tracks per vertex.
    length, n_nodes, gap, hits_per_segment, sigma
        Forwarded to :func:`make_star_track`.
    min_angle_deg : float
        Minimal angle between tracks of the same vertex.
    rng : numpy.random.Generator, optional

    Returns
    -------
    tracks : list of Track
        Created tracks, grouped by vertex.
    truth : ndarray, shape (V, 3)
        Vertex positions.
    """
    rng = np.random.default_rng() if rng is None else rng
    truth = np.asarray(vertices, dtype=np.float64).reshape(-1, 3)
    if np.isscalar(tracks_per_vertex):
        counts = [int(tracks_per_vertex)] * len(truth)
    else:
        counts = [int(c) for c in tracks_per_vertex]
        if len(counts) != len(truth):
            raise ValueError("tracks_per_vertex must have one entry per vertex.")

    tracks: List[Track] = []
    for v, n in zip(truth, counts):
        for d in spread_directions(n, min_angle_deg, rng=rng):
            tracks.append(make_star_track(
                graph, v, d,
                length=length, n_nodes=n_nodes, gap=gap,
                hits_per_segment=hits_per_segment, sigma=sigma, rng=rng,
            ))
    return tracks, truth
