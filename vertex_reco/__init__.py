__all__ = [
    "VertexConfig", "load_config",
    "VertexingError", "BrokenTrackError", "RepeatedCommitError", "CandidateStateError",
    "View", "DetectorGeometry",
    "TrackGraph", "Track", "Segment", "TrackCandidate",
    "solve_least_squares_3d",
    "CandidateState", "VertexCandidate",
    "VertexBuilder", "find_vertices",
    "jitter_points", "make_star_track", "make_star_event",
    "vertex_residuals", "vertex_efficiency",
]

# Configuration & errors
from .config import VertexConfig, load_config
from .errors import VertexingError, BrokenTrackError, RepeatedCommitError, CandidateStateError

# Geometry & track graph
from .detector import View, DetectorGeometry
from .track_graph import TrackGraph, Track, Segment, TrackCandidate

# Fitting & vertexing
from .solver import solve_least_squares_3d
from .vtx_candidate import CandidateState, VertexCandidate
from .vertexing import VertexBuilder, find_vertices

# Utilities & metrics (plotting is imported lazily by the CLI)
from .utils import jitter_points, make_star_track, make_star_event
from .metrics import vertex_residuals, vertex_efficiency
