"""Kernel package for BREP-to-mesh conversion.

This package reconstructs BREP topology from parsed STEP entity graphs,
tessellates trimmed surfaces within a chord tolerance, welds seams so
neighbouring faces share vertices, and optionally simplifies the result.
"""

from .config import PRESETS, TessellationOptions, get_preset
from .errors import (
    BackendNotAvailableError,
    ConfigurationError,
    ParseError,
    PipelineCancelled,
    SimplifyError,
    StepMeshError,
    TessellationError,
    TopologyError,
)
from .export import ExportError, export_mesh
from .mesh import TriangleMesh
from .occt_io import get_occt_info
from .optimize import optimize_vertex_cache
from .pipeline import CancellationToken, tessellate_step
from .simplify import simplify
from .summary import GeometrySummary, MeshSummary, summarize_mesh, summarize_model
from .topology import Topology, build_topology

__version__ = "0.1.0"
__all__ = [
    "TessellationOptions", "PRESETS", "get_preset",
    "StepMeshError", "ParseError", "TopologyError", "TessellationError",
    "SimplifyError", "PipelineCancelled", "BackendNotAvailableError", "ConfigurationError",
    "TriangleMesh", "tessellate_step", "CancellationToken",
    "simplify", "optimize_vertex_cache",
    "build_topology", "Topology",
    "summarize_model", "summarize_mesh", "GeometrySummary", "MeshSummary",
    "export_mesh", "ExportError", "get_occt_info",
]
