from __future__ import annotations

__all__ = [
    "VertexingError",
    "BrokenTrackError",
    "RepeatedCommitError",
    "CandidateStateError",
]


class VertexingError(RuntimeError):
    """Base class for failures raised by the vertexing core."""


class BrokenTrackError(VertexingError):
    r"""
    The track graph violates a structural invariant.

    Raised when a track has no discoverable root (empty node list or a cycle
    on the way up), or when a finalized vertex node has no segment attached.
    The candidate being processed must be abandoned.
    """


class RepeatedCommitError(VertexingError):
    """``join_tracks`` was called on a candidate that already went through a commit."""


class CandidateStateError(VertexingError):
    """Operation not permitted in the current lifecycle state of a candidate."""
