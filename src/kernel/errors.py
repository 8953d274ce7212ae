"""Error taxonomy for the BREP-to-mesh pipeline.

``StepMeshError`` and ``ParseError`` live with the entity-graph parser so
that ``stepgraph`` does not depend on the kernel; they are re-exported here
so callers import the whole taxonomy from one place.
"""

from __future__ import annotations

from stepgraph.errors import ParseError, StepMeshError


class TopologyError(StepMeshError):
    """Raised when the entity graph does not describe a valid BREP."""

    pass


class TessellationError(StepMeshError):
    """Raised when a face cannot be tessellated without producing bad geometry."""

    pass


class SimplifyError(StepMeshError):
    """Raised when simplification parameters or the input mesh are invalid."""

    pass


class PipelineCancelled(StepMeshError):
    """Raised when a run is cancelled between face-tessellation units."""

    pass


class BackendNotAvailableError(StepMeshError):
    """Raised when the selected backend's native library is not installed."""

    pass


class ConfigurationError(StepMeshError, ValueError):
    """Raised for invalid tessellation options."""

    pass


__all__ = [
    "StepMeshError",
    "ParseError",
    "TopologyError",
    "TessellationError",
    "SimplifyError",
    "PipelineCancelled",
    "BackendNotAvailableError",
    "ConfigurationError",
]
