"""Model and mesh summaries.

``summarize_model`` reports what a STEP file contains (schema, units,
topology counts, surface and curve kinds) without tessellating it;
``summarize_mesh`` reports the quality checks of a finished mesh.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import asdict, dataclass, field
from typing import Any

import structlog

from stepgraph.entities import EntityGraph
from stepgraph.units import detect_units

from .mesh import TriangleMesh
from .topology import Topology, build_topology

logger = structlog.get_logger(__name__)


@dataclass
class GeometrySummary:
    """Summary of a STEP model's topology and geometry."""

    model_id: str
    units: dict[str, str]
    schema: str | None = None
    entities: int = 0

    # Topological counts
    solids: int = 0
    shells: int = 0
    closed_shells: int = 0
    faces: int = 0
    edges: int = 0
    vertices: int = 0

    surface_kinds: dict[str, int] = field(default_factory=dict)
    curve_kinds: dict[str, int] = field(default_factory=dict)
    non_manifold_edges: int = 0
    analysis_warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class MeshSummary:
    """Quality report for a triangle mesh."""

    vertices: int
    triangles: int
    watertight: bool
    boundary_loops: int
    degenerate_triangles: int
    surface_area: float
    volume: float
    bounding_box: dict[str, float] | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def summarize_topology(topology: Topology, graph: EntityGraph, model_id: str = "model") -> GeometrySummary:
    """Summarize an already-built topology."""
    warnings = list(topology.warnings)
    shells = topology.shells
    if not any(shell.closed for shell in shells):
        warnings.append("Model contains surface geometry but no closed shells")

    summary = GeometrySummary(
        model_id=model_id,
        units=detect_units(graph),
        schema=graph.schema,
        entities=len(graph),
        solids=len(topology.solids),
        shells=len(shells),
        closed_shells=sum(1 for shell in shells if shell.closed),
        faces=len(topology.faces),
        edges=len(topology.edges),
        vertices=len(topology.vertices),
        surface_kinds=dict(sorted(Counter(f.surface.kind for f in topology.faces).items())),
        curve_kinds=dict(sorted(Counter(e.curve.kind for e in topology.edges.values()).items())),
        non_manifold_edges=len(topology.non_manifold_edges()),
        analysis_warnings=warnings,
    )
    return summary


def summarize_model(graph: EntityGraph, model_id: str = "model", non_manifold: str = "warn") -> GeometrySummary:
    """Build topology from ``graph`` and summarize it.

    Non-manifold edges are reported rather than rejected by default.

    Raises:
        TopologyError: If the graph is not a valid BREP
        ParseError: If reachable geometry is unsupported
    """
    logger.info("Generating geometry summary", model_id=model_id)
    summary = summarize_topology(build_topology(graph, non_manifold=non_manifold), graph, model_id)
    logger.info(
        "Geometry summary completed",
        model_id=model_id,
        faces=summary.faces,
        edges=summary.edges,
        vertices=summary.vertices,
        warnings_count=len(summary.analysis_warnings),
    )
    return summary


def summarize_mesh(mesh: TriangleMesh, area_epsilon: float = 1e-12) -> MeshSummary:
    """Report counts, closure and measurements of ``mesh``."""
    bounding_box = None
    if mesh.vertex_count:
        lo, hi = mesh.bounding_box()
        bounding_box = {
            "min_x": lo[0], "min_y": lo[1], "min_z": lo[2],
            "max_x": hi[0], "max_y": hi[1], "max_z": hi[2],
        }
    return MeshSummary(
        vertices=mesh.vertex_count,
        triangles=mesh.triangle_count,
        watertight=mesh.is_watertight(),
        boundary_loops=len(mesh.boundary_loops()),
        degenerate_triangles=int(len(mesh.degenerate_triangles(area_epsilon))),
        surface_area=mesh.surface_area(),
        volume=mesh.signed_volume(),
        bounding_box=bounding_box,
    )
