from __future__ import annotations

import dataclasses
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Mapping

import orjson

__all__ = ["VertexConfig", "load_config"]


@dataclass(frozen=True, slots=True)
class VertexConfig:
    r"""
    Thresholds and tuning knobs of the vertex finder.

    Distances are in the detector length unit (cm for the default geometry).

    Attributes
    ----------
    max_dist_to_track : float
        Largest distance between a track segment and the fitted center for the
        track to join a vertex. Its square is also the residual cut used while
        scanning segments of the third and later tracks.
    min_dist_to_node : float
        Closer than this to an existing node, the vertex reuses the node
        instead of inserting a new one.
    seg_min_length : float
        Segments shorter than this are ignored by the fit.
    merge_max_dist : float
        Hard gate on the center-to-center distance of two candidates.
    merge_max_mse : float
        Largest 3D fit residual accepted after merging two candidates.
    weight_floor, weight_power : float, int
        Steepness weight :math:`w = \max(1 - (f_y - 1)^{p},\ w_{min})`.
    fit_failure_mse : float
        Residual reported when the line-intersection solve fails.
    tune_inf_value : float
        ``tune_full_tree`` results at or below this value mean the re-fit diverged.
    tune_max_g : float
        ``tune_full_tree`` goodness above this is reported as ``-1.0``.
    tune_iterations : int
        Relaxation passes of ``tune_full_tree``.
    min_track_length : float
        Driver: candidates are ranked by the number of tracks longer than
        ``2 * min_track_length``.
    pair_max_rms : float
        Driver: largest :math:`\sqrt{\mathrm{mse}}` of a first-pass pair.
    merge_max_test : float
        Driver: largest weighted distance (``VertexCandidate.test``) of a merge.
    max_angle_min_length : float
        Driver: minimum track length entering ``VertexCandidate.max_angle``.
    """

    max_dist_to_track: float = 4.0
    min_dist_to_node: float = 2.0
    seg_min_length: float = 0.5
    merge_max_dist: float = 10.0
    merge_max_mse: float = 1.0
    weight_floor: float = 0.3
    weight_power: int = 12
    fit_failure_mse: float = 1.0e6
    tune_inf_value: float = -2.0
    tune_max_g: float = 1.0e3
    tune_iterations: int = 5
    min_track_length: float = 2.0
    pair_max_rms: float = 1.0
    merge_max_test: float = 1.0
    max_angle_min_length: float = 1.0

    def __post_init__(self) -> None:
        for name in ("max_dist_to_track", "min_dist_to_node", "merge_max_dist",
                     "merge_max_mse", "fit_failure_mse", "pair_max_rms", "merge_max_test"):
            if not getattr(self, name) > 0.0:
                raise ValueError(f"{name} must be > 0, got {getattr(self, name)!r}")
        if self.seg_min_length < 0.0:
            raise ValueError("seg_min_length must be >= 0.")
        if not (0.0 <= self.weight_floor <= 1.0):
            raise ValueError("weight_floor must be in [0,1].")
        if self.tune_iterations < 0:
            raise ValueError("tune_iterations must be >= 0.")

    @property
    def max_mse_to_track(self) -> float:
        """Squared ``max_dist_to_track``."""
        return self.max_dist_to_track * self.max_dist_to_track

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "VertexConfig":
        r"""
        Build a configuration from a plain mapping.

        Parameters
        ----------
        data : mapping
            Field name to value. Missing fields keep their defaults.

        Returns
        -------
        VertexConfig

        Raises
        ------
        ValueError
            If ``data`` holds unknown keys or out-of-range values.
        """
        known = {f.name: f for f in fields(cls)}
        unknown = sorted(set(data) - set(known))
        if unknown:
            raise ValueError(f"Unknown vertex config keys: {', '.join(unknown)}")
        kwargs = {}
        for k, v in data.items():
            kwargs[k] = int(v) if known[k].type in (int, "int") else float(v)
        return cls(**kwargs)

    def replace(self, **changes: Any) -> "VertexConfig":
        """Copy with selected fields changed (validated again)."""
        return dataclasses.replace(self, **changes)

    def to_dict(self) -> dict:
        return {f.name: getattr(self, f.name) for f in fields(self)}


def load_config(config_path: Path | str) -> VertexConfig:
    r"""
    Load a :class:`VertexConfig` from a JSON file.

    The file may either hold the fields at top level or nest them in a
    ``"vertex_config"`` block (other top-level blocks are then ignored).

    Parameters
    ----------
    config_path : pathlib.Path or str
        Path to the JSON file.

    Returns
    -------
    VertexConfig

    Raises
    ------
    ValueError
        If the file cannot be parsed or holds invalid settings.
    """
    path = Path(config_path)
    try:
        raw = orjson.loads(path.read_bytes())
    except (OSError, orjson.JSONDecodeError) as e:
        raise ValueError(f"Failed to parse {path}: {e}") from e
    if not isinstance(raw, dict):
        raise ValueError(f"{path}: expected a JSON object at top level.")
    block = raw.get("vertex_config", raw)
    return VertexConfig.from_mapping(block)
