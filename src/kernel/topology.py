"""BREP topology reconstruction from a parsed entity graph.

Walks ``MANIFOLD_SOLID_BREP`` / ``BREP_WITH_VOIDS`` roots (or, when a file
has none, ``SHELL_BASED_SURFACE_MODEL`` roots) down to vertices and builds
Solid -> Shell -> Face -> Loop -> Edge -> Vertex. Orientation flags are
folded in while walking, so every loop use carries an absolute direction
and every face carries its resolved sense.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Set

import numpy as np
import structlog

from stepgraph.entities import EntityGraph, EntityRecord, Ref
from stepgraph.units import detect_units, get_conversion_factor

from .config import NON_MANIFOLD_POLICIES
from .errors import ConfigurationError, TopologyError
from .geometry import Curve, GeometryDecoder, Surface

logger = structlog.get_logger(__name__)

SOLID_ROOTS = ("MANIFOLD_SOLID_BREP", "BREP_WITH_VOIDS")
SURFACE_MODEL_ROOTS = ("SHELL_BASED_SURFACE_MODEL",)
SHELL_TYPES = ("CLOSED_SHELL", "OPEN_SHELL", "ORIENTED_CLOSED_SHELL", "ORIENTED_OPEN_SHELL")
FACE_TYPES = ("ADVANCED_FACE", "FACE_SURFACE", "ORIENTED_FACE")


@dataclass(eq=False)
class Vertex:
    id: int
    point: np.ndarray
    edges: Set[int] = field(default_factory=set)


@dataclass(eq=False)
class Edge:
    """A curve restricted to the stretch between two vertices."""

    id: int
    curve: Curve
    start: Vertex
    end: Vertex
    same_sense: bool = True
    faces: List[int] = field(default_factory=list)

    @property
    def closed(self) -> bool:
        return self.start is self.end


@dataclass(frozen=True, eq=False)
class OrientedEdge:
    """One use of an edge in a loop; ``forward`` is the absolute direction."""

    edge: Edge
    forward: bool

    @property
    def start(self) -> Vertex:
        return self.edge.start if self.forward else self.edge.end

    @property
    def end(self) -> Vertex:
        return self.edge.end if self.forward else self.edge.start


@dataclass(eq=False)
class Loop:
    id: int
    edges: List[OrientedEdge] = field(default_factory=list)
    vertex: Optional[Vertex] = None
    outer: bool = False

    @property
    def is_vertex_loop(self) -> bool:
        return self.vertex is not None


@dataclass(eq=False)
class Face:
    """A trimmed surface; ``same_sense`` is the resolved orientation."""

    id: int
    index: int
    surface: Surface
    same_sense: bool
    loops: List[Loop] = field(default_factory=list)
    shell_id: int = 0

    @property
    def sign(self) -> float:
        return 1.0 if self.same_sense else -1.0

    def edge_ids(self) -> Set[int]:
        return {oe.edge.id for loop in self.loops for oe in loop.edges}


@dataclass(eq=False)
class Shell:
    id: int
    closed: bool
    faces: List[Face] = field(default_factory=list)


@dataclass(eq=False)
class Solid:
    id: int
    shells: List[Shell] = field(default_factory=list)


@dataclass
class Topology:
    """Reconstructed BREP; faces are listed in traversal order."""

    solids: List[Solid] = field(default_factory=list)
    faces: List[Face] = field(default_factory=list)
    edges: Dict[int, Edge] = field(default_factory=dict)
    vertices: Dict[int, Vertex] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)

    @property
    def shells(self) -> List[Shell]:
        return [shell for solid in self.solids for shell in solid.shells]

    def non_manifold_edges(self) -> List[Edge]:
        return [e for _, e in sorted(self.edges.items()) if len(set(e.faces)) > 2]


class _TopologyBuilder:
    def __init__(self, graph: EntityGraph, decoder: GeometryDecoder, non_manifold: str) -> None:
        self.graph = graph
        self.decoder = decoder
        self.non_manifold = non_manifold
        self.topology = Topology()
        self._faces_seen: Set[int] = set()

    # -- helpers -------------------------------------------------------

    def _expect(self, ref: Any, types: Iterable[str], context: str) -> EntityRecord:
        types = tuple(types)
        if not isinstance(ref, Ref):
            raise TopologyError(f"{context}: expected a reference to {' or '.join(types)}, got {ref!r}")
        record = self.graph.resolve(ref)
        if not any(record.is_a(t) for t in types):
            raise TopologyError(
                f"{context}: expected {' or '.join(types)}, got {'/'.join(record.type_names)}",
                entity_id=record.id,
            )
        return record

    def _first_part(self, record: EntityRecord, types: Iterable[str]) -> tuple:
        for name in types:
            if record.is_a(name):
                return record.part(name)
        raise TopologyError(f"unexpected entity {'/'.join(record.type_names)}", entity_id=record.id)

    # -- roots ---------------------------------------------------------

    def build(self, roots: List[EntityRecord]) -> Topology:
        for root in roots:
            if root.is_a("SHELL_BASED_SURFACE_MODEL"):
                self._surface_model(root)
            else:
                self._solid(root)
        self._apply_non_manifold_policy()
        return self.topology

    def _solid(self, record: EntityRecord) -> None:
        solid = Solid(id=record.id)
        if record.is_a("BREP_WITH_VOIDS"):
            params = record.part("BREP_WITH_VOIDS")
            outer_ref = params[1] if len(params) > 2 else record.part("MANIFOLD_SOLID_BREP")[1]
            voids = params[-1]
        else:
            outer_ref = record.part("MANIFOLD_SOLID_BREP")[1]
            voids = ()
        solid.shells.append(self._shell(outer_ref, "solid outer shell"))
        for void in voids:
            solid.shells.append(self._shell(void, "solid void"))
        self.topology.solids.append(solid)

    def _surface_model(self, record: EntityRecord) -> None:
        solid = Solid(id=record.id)
        for shell_ref in record.part("SHELL_BASED_SURFACE_MODEL")[1]:
            solid.shells.append(self._shell(shell_ref, "surface model shell"))
        self.topology.solids.append(solid)

    def _shell(self, ref: Any, context: str) -> Shell:
        record = self._expect(ref, SHELL_TYPES, context)
        flip = False
        if record.is_a("ORIENTED_CLOSED_SHELL") or record.is_a("ORIENTED_OPEN_SHELL"):
            name = "ORIENTED_CLOSED_SHELL" if record.is_a("ORIENTED_CLOSED_SHELL") else "ORIENTED_OPEN_SHELL"
            _, _, element, orientation = record.part(name)
            flip = orientation is False
            record = self._expect(element, ("CLOSED_SHELL", "OPEN_SHELL"), "oriented shell element")
        closed = record.is_a("CLOSED_SHELL")
        _, face_refs = self._first_part(record, ("CLOSED_SHELL", "OPEN_SHELL"))
        shell = Shell(id=record.id, closed=closed)
        for face_ref in face_refs:
            shell.faces.append(self._face(face_ref, shell, flip))
        return shell

    # -- faces and loops -----------------------------------------------

    def _face(self, ref: Any, shell: Shell, flip: bool) -> Face:
        record = self._expect(ref, FACE_TYPES, f"shell #{shell.id} face")
        if record.is_a("ORIENTED_FACE"):
            _, _, element, orientation = record.part("ORIENTED_FACE")
            flip = flip != (orientation is False)
            record = self._expect(element, ("ADVANCED_FACE", "FACE_SURFACE"), "oriented face element")
        if record.id in self._faces_seen:
            raise TopologyError("face is used by more than one shell", entity_id=record.id)
        self._faces_seen.add(record.id)

        _, bounds, surface_ref, same_sense = self._first_part(record, ("ADVANCED_FACE", "FACE_SURFACE"))
        if not bounds:
            raise TopologyError("face has no bounding loops", entity_id=record.id)
        face = Face(
            id=record.id,
            index=len(self.topology.faces),
            surface=self.decoder.surface(surface_ref),
            same_sense=(same_sense is not False) != flip,
            shell_id=shell.id,
        )
        for bound_ref in bounds:
            face.loops.append(self._loop(bound_ref, face))
        self.topology.faces.append(face)
        return face

    def _loop(self, ref: Any, face: Face) -> Loop:
        bound = self._expect(ref, ("FACE_OUTER_BOUND", "FACE_BOUND"), f"face #{face.id} bound")
        outer = bound.is_a("FACE_OUTER_BOUND")
        _, loop_ref, bound_sense = self._first_part(bound, ("FACE_OUTER_BOUND", "FACE_BOUND"))
        record = self._expect(loop_ref, ("EDGE_LOOP", "VERTEX_LOOP"), f"face #{face.id} loop")
        loop = Loop(id=record.id, outer=outer)

        if record.is_a("VERTEX_LOOP"):
            loop.vertex = self._vertex(record.part("VERTEX_LOOP")[1])
            return loop

        forward_bound = bound_sense is not False
        uses: List[OrientedEdge] = []
        for oe_ref in record.part("EDGE_LOOP")[1]:
            oe = self._expect(oe_ref, ("ORIENTED_EDGE",), f"loop #{record.id} member")
            _, _, _, edge_ref, orientation = oe.part("ORIENTED_EDGE")
            edge = self._edge(edge_ref)
            uses.append(OrientedEdge(edge, (orientation is not False) == forward_bound))
        if not uses:
            raise TopologyError("edge loop has no edges", entity_id=record.id)
        if not forward_bound:
            uses.reverse()

        for current, following in zip(uses, uses[1:] + uses[:1]):
            if current.end is not following.start:
                raise TopologyError(
                    f"loop is not closed: edge #{current.edge.id} ends at vertex "
                    f"#{current.end.id} but edge #{following.edge.id} starts at #{following.start.id}",
                    entity_id=record.id,
                )
        for use in uses:
            if face.index not in use.edge.faces:
                use.edge.faces.append(face.index)
        loop.edges = uses
        return loop

    def _edge(self, ref: Any) -> Edge:
        record = self._expect(ref, ("EDGE_CURVE",), "oriented edge element")
        existing = self.topology.edges.get(record.id)
        if existing is not None:
            return existing
        _, start_ref, end_ref, curve_ref, same_sense = record.part("EDGE_CURVE")
        edge = Edge(
            id=record.id,
            curve=self.decoder.curve(curve_ref),
            start=self._vertex(start_ref),
            end=self._vertex(end_ref),
            same_sense=same_sense is not False,
        )
        edge.start.edges.add(edge.id)
        edge.end.edges.add(edge.id)
        self.topology.edges[edge.id] = edge
        return edge

    def _vertex(self, ref: Any) -> Vertex:
        record = self._expect(ref, ("VERTEX_POINT",), "edge vertex")
        existing = self.topology.vertices.get(record.id)
        if existing is not None:
            return existing
        vertex = Vertex(id=record.id, point=self.decoder.point(record.part("VERTEX_POINT")[1]))
        self.topology.vertices[record.id] = vertex
        return vertex

    # -- manifoldness --------------------------------------------------

    def _apply_non_manifold_policy(self) -> None:
        topology = self.topology
        offending = topology.non_manifold_edges()
        if not offending:
            return
        if self.non_manifold == "reject":
            edge = offending[0]
            raise TopologyError(
                f"non-manifold edge used by {len(set(edge.faces))} faces", entity_id=edge.id
            )
        if self.non_manifold == "warn":
            for edge in offending:
                message = f"edge #{edge.id} is used by {len(set(edge.faces))} faces"
                topology.warnings.append(message)
                logger.warning("Non-manifold edge", edge_id=edge.id, faces=sorted(set(edge.faces)))
            return

        dropped: Set[int] = set()
        for edge in offending:
            users = sorted(set(edge.faces) - dropped)
            for face_index in users[2:]:
                dropped.add(face_index)
        for face_index in sorted(dropped):
            face = topology.faces[face_index]
            topology.warnings.append(f"face #{face.id} skipped: shares a non-manifold edge")
            logger.warning("Skipping face on non-manifold edge", face_id=face.id)

        kept = [f for f in topology.faces if f.index not in dropped]
        for shell in topology.shells:
            shell.faces = [f for f in shell.faces if f.index not in dropped]
        for new_index, face in enumerate(kept):
            face.index = new_index
        topology.faces = kept
        for edge in topology.edges.values():
            edge.faces = []
        for face in kept:
            for edge_id in sorted(face.edge_ids()):
                topology.edges[edge_id].faces.append(face.index)


def find_roots(graph: EntityGraph) -> List[EntityRecord]:
    """Return solid roots, falling back to surface-model roots."""
    roots = graph.of_type(*SOLID_ROOTS)
    if not roots:
        roots = graph.of_type(*SURFACE_MODEL_ROOTS)
    return roots


def build_topology(graph: EntityGraph, roots: Optional[List[int]] = None,
                   non_manifold: str = "reject") -> Topology:
    """Reconstruct BREP topology from an entity graph.

    Args:
        graph: Parsed entity graph
        roots: Entity ids to start from; defaults to every solid root
            (or surface-model root when the file has no solids)
        non_manifold: ``reject``, ``skip`` or ``warn`` for edges used by
            more than two faces

    Returns:
        Topology with faces in traversal order

    Raises:
        TopologyError: If no root exists or the graph is not a valid BREP
        ParseError: If a reachable curve or surface type is unsupported
    """
    if non_manifold not in NON_MANIFOLD_POLICIES:
        raise ConfigurationError(f"Unknown non-manifold policy {non_manifold!r}")

    if roots is None:
        root_records = find_roots(graph)
    else:
        root_records = []
        for root_id in roots:
            record = graph.get(root_id)
            if record is None or not any(record.is_a(t) for t in SOLID_ROOTS + SURFACE_MODEL_ROOTS):
                raise TopologyError("entity is not a solid or surface-model root", entity_id=root_id)
            root_records.append(record)
    if not root_records:
        raise TopologyError("no root solid found (MANIFOLD_SOLID_BREP, BREP_WITH_VOIDS or SHELL_BASED_SURFACE_MODEL)")

    units = detect_units(graph)
    decoder = GeometryDecoder(graph, angle_factor=get_conversion_factor(units["angle"], "rad", "angle"))
    topology = _TopologyBuilder(graph, decoder, non_manifold).build(root_records)

    logger.info(
        "Built topology",
        solids=len(topology.solids),
        faces=len(topology.faces),
        edges=len(topology.edges),
        vertices=len(topology.vertices),
        warnings=len(topology.warnings),
    )
    return topology
