from __future__ import annotations

import logging
from enum import Enum
from typing import Dict, Iterable, List, Mapping, Tuple

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)

__all__ = ["View", "DetectorGeometry"]


class View(Enum):
    """Readout-plane views of a TPC."""
    U = "U"
    V = "V"
    Z = "Z"


_REQUIRED = ("cryo", "tpc", "view", "angle_deg")
_BOUNDS = ("x_min", "x_max", "y_min", "y_max", "z_min", "z_max")


class DetectorGeometry:
    r"""
    Readout-plane lookup for a set of TPC volumes.

    The geometry is described by a table with one row per
    ``(cryo, tpc, view)``; each row gives the wire orientation of the view
    and (optionally) the TPC bounding box. A 3D point
    :math:`(x, y, z)` is projected to a view with wire angle :math:`\theta` as

    .. math::

        (w, d) \;=\; (z\cos\theta + y\sin\theta,\; x),

    i.e. the wire coordinate followed by the drift coordinate.

    Parameters
    ----------
    table : pandas.DataFrame
        Columns ``cryo, tpc, view, angle_deg`` and, for volume location,
        ``x_min, x_max, y_min, y_max, z_min, z_max``. ``view`` holds
        :class:`View` members or their names.

    Raises
    ------
    KeyError
        If a required column is missing.
    ValueError
        If a ``(cryo, tpc, view)`` row is duplicated or a view name is unknown.
    """

    __slots__ = ("_views", "_angles", "_bounds")

    def __init__(self, table: pd.DataFrame) -> None:
        missing = [c for c in _REQUIRED if c not in table.columns]
        if missing:
            raise KeyError(f"Missing required column: {missing[0]}")
        if table.duplicated(subset=["cryo", "tpc", "view"]).any():
            raise ValueError("Duplicated (cryo, tpc, view) rows in geometry table.")

        self._views: Dict[Tuple[int, int], Tuple[View, ...]] = {}
        self._angles: Dict[Tuple[int, int, View], Tuple[float, float]] = {}
        self._bounds: Dict[Tuple[int, int], np.ndarray] = {}

        has_bounds = all(c in table.columns for c in _BOUNDS)
        for (cryo, tpc), grp in table.groupby(["cryo", "tpc"], sort=True):
            key = (int(tpc), int(cryo))
            views: List[View] = []
            for row in grp.itertuples(index=False):
                view = row.view if isinstance(row.view, View) else View(str(row.view))
                theta = np.deg2rad(float(row.angle_deg))
                self._angles[(key[0], key[1], view)] = (float(np.cos(theta)), float(np.sin(theta)))
                views.append(view)
            # keep U, V, Z order regardless of row order
            self._views[key] = tuple(v for v in View if v in views)
            if has_bounds:
                self._bounds[key] = grp.iloc[0][list(_BOUNDS)].to_numpy(dtype=np.float64)

    @classmethod
    def from_records(cls, records: Iterable[Mapping]) -> "DetectorGeometry":
        """Build from an iterable of row dictionaries (e.g. parsed JSON)."""
        return cls(pd.DataFrame.from_records(list(records)))

    @classmethod
    def default(cls, half_size: float = 500.0) -> "DetectorGeometry":
        r"""
        Single cryostat with one TPC read out by three views.

        Wire angles are :math:`+35.7^\circ` (U), :math:`-35.7^\circ` (V) and
        :math:`0^\circ` (Z, collection). The TPC spans
        :math:`[-h, h]^3` with :math:`h` = ``half_size``.
        """
        h = float(half_size)
        rows = [
            {"cryo": 0, "tpc": 0, "view": v, "angle_deg": a,
             "x_min": -h, "x_max": h, "y_min": -h, "y_max": h, "z_min": -h, "z_max": h}
            for v, a in (("U", 35.7), ("V", -35.7), ("Z", 0.0))
        ]
        return cls(pd.DataFrame(rows))

    @property
    def volumes(self) -> List[Tuple[int, int]]:
        """Known ``(tpc, cryo)`` keys."""
        return list(self._views)

    def views(self, tpc: int, cryo: int) -> Tuple[View, ...]:
        r"""
        Views read out in a TPC volume.

        Raises
        ------
        KeyError
            If the volume is unknown.
        """
        try:
            return self._views[(int(tpc), int(cryo))]
        except KeyError:
            raise KeyError(f"Unknown TPC volume tpc={tpc} cryo={cryo}") from None

    def has_view(self, view: View, tpc: int, cryo: int) -> bool:
        return view in self._views.get((int(tpc), int(cryo)), ())

    def project(self, point: np.ndarray, view: View, tpc: int, cryo: int) -> np.ndarray:
        r"""
        Project a 3D point to the 2D ``(wire, drift)`` plane of a view.

        Parameters
        ----------
        point : array_like, shape (3,)
        view : View
        tpc, cryo : int

        Returns
        -------
        ndarray, shape (2,)

        Raises
        ------
        KeyError
            If the view is not read out in the volume.
        """
        try:
            c, s = self._angles[(int(tpc), int(cryo), view)]
        except KeyError:
            raise KeyError(f"View {view.value} not available in tpc={tpc} cryo={cryo}") from None
        return np.array([point[2] * c + point[1] * s, point[0]], dtype=np.float64)

    def find_volume(self, point: np.ndarray) -> Tuple[int, int]:
        r"""
        ``(tpc, cryo)`` of the volume containing ``point``.

        Points outside every bounding box are assigned to the nearest box
        (distance to the box surface); with no bounds known the first volume
        is returned.
        """
        if not self._bounds:
            return next(iter(self._views))
        p = np.asarray(point, dtype=np.float64)
        best, best_d = None, np.inf
        for key, b in self._bounds.items():
            lo, hi = b[0::2], b[1::2]
            gap = np.maximum(np.maximum(lo - p, p - hi), 0.0)
            d = float(gap @ gap)
            if d == 0.0:
                return key
            if d < best_d:
                best, best_d = key, d
        logger.debug("Point %s outside all TPCs, using nearest %s", p, best)
        return best
