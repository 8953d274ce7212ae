"""The BREP-to-mesh pipeline entry point.

``tessellate_step`` is a blocking pure transformation from STEP bytes to a
``TriangleMesh``. The native backend runs parse -> topology -> per-face
tessellation (optionally on a thread pool) -> assembly; optional
simplification, vertex-cache reordering and unit conversion run after any
backend.
"""

from __future__ import annotations

import math
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from typing import List, Optional, Union

import structlog

from stepgraph.entities import EntityGraph
from stepgraph.parser import parse_step
from stepgraph.units import UnitConversionError, detect_units, get_conversion_factor

from .assemble import assemble
from .backends import get_backend
from .config import TessellationOptions
from .errors import ConfigurationError, PipelineCancelled
from .mesh import TriangleMesh
from .optimize import optimize_vertex_cache
from .simplify import simplify
from .stitch import EdgeSampleCache
from .tessellate import MeshPatch, tessellate_face
from .topology import Topology, build_topology

logger = structlog.get_logger(__name__)


class CancellationToken:
    """Cooperative cancellation flag, checked between face-tessellation units."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise PipelineCancelled("tessellation cancelled")


def _check(cancel: Optional[CancellationToken]) -> None:
    if cancel is not None:
        cancel.raise_if_cancelled()


def tessellate_topology(topology: Topology, options: TessellationOptions,
                        cancel: Optional[CancellationToken] = None) -> List[MeshPatch]:
    """Tessellate every face, returning patches in face order.

    Edge samples are shared through one ``EdgeSampleCache`` so neighbouring
    faces agree on their seams regardless of which thread samples first.
    """
    cache = EdgeSampleCache(options.chord_tolerance, options.angular_tolerance)
    faces = topology.faces

    if options.workers <= 1 or len(faces) <= 1:
        patches = []
        for face in faces:
            _check(cancel)
            patches.append(tessellate_face(face, cache, options))
        return patches

    def work(face):
        _check(cancel)
        return tessellate_face(face, cache, options)

    with ThreadPoolExecutor(max_workers=options.workers, thread_name_prefix="tessellate") as pool:
        futures = [pool.submit(work, face) for face in faces]
        try:
            return [future.result() for future in futures]
        except BaseException:
            for future in futures:
                future.cancel()
            raise


def build_mesh(graph: EntityGraph, options: TessellationOptions,
               cancel: Optional[CancellationToken] = None) -> TriangleMesh:
    """Run topology reconstruction, tessellation and assembly on a parsed graph."""
    topology = build_topology(graph, non_manifold=options.non_manifold)
    _check(cancel)
    patches = tessellate_topology(topology, options, cancel)
    _check(cancel)
    units = detect_units(graph)
    metadata = {
        "backend": "native",
        "schema": graph.schema,
        "length_unit": units["length"],
        "angle_unit": units["angle"],
        "chord_tolerance": options.chord_tolerance,
        "angular_tolerance": options.angular_tolerance,
        "solids": len(topology.solids),
        "faces": len(topology.faces),
        "warnings": list(topology.warnings),
    }
    return assemble(patches, metadata)


def run_native(data: Union[bytes, str], options: TessellationOptions,
               cancel: Optional[CancellationToken] = None) -> TriangleMesh:
    graph = parse_step(data)
    _check(cancel)
    return build_mesh(graph, options, cancel)


def convert_units(mesh: TriangleMesh, target_unit: str) -> TriangleMesh:
    """Rescale positions from the mesh's recorded length unit to ``target_unit``."""
    source = mesh.metadata.get("length_unit", "mm")
    try:
        factor = get_conversion_factor(source, target_unit, "length")
    except UnitConversionError as e:
        raise ConfigurationError(str(e)) from e
    result = mesh.copy()
    result.positions = mesh.positions * factor
    result.metadata["length_unit"] = target_unit
    result.metadata["unit_scale"] = factor
    return result


def postprocess(mesh: TriangleMesh, options: TessellationOptions) -> TriangleMesh:
    """Apply unit conversion, simplification and cache reordering as configured."""
    if options.target_length_unit:
        mesh = convert_units(mesh, options.target_length_unit)
    if options.simplify_ratio < 1.0 or not math.isinf(options.simplify_max_error):
        mesh = simplify(mesh, options.simplify_ratio, options.simplify_max_error)
    if options.optimize_vertex_cache:
        mesh = optimize_vertex_cache(mesh)
    return mesh


def tessellate_step(data: Union[bytes, bytearray, str], backend: Optional[str] = None,
                    options: Optional[TessellationOptions] = None,
                    cancel: Optional[CancellationToken] = None) -> TriangleMesh:
    """Convert STEP data into a triangle mesh.

    Args:
        data: Raw STEP file content
        backend: Backend name; defaults to ``options.backend`` (``native``)
        options: Tessellation options (defaults when omitted)
        cancel: Token checked between faces

    Returns:
        Welded triangle mesh with metadata

    Raises:
        ParseError: Malformed STEP data or unsupported reachable geometry
        TopologyError: The entity graph is not a valid BREP
        TessellationError: A face could not be tessellated
        PipelineCancelled: ``cancel`` fired during the run
        BackendNotAvailableError: The backend's native library is missing
        ConfigurationError: Invalid options or backend name
    """
    options = (options or TessellationOptions()).validate()
    if backend is not None and backend != options.backend:
        options = replace(options, backend=backend)
    if isinstance(data, (bytearray, memoryview)):
        data = bytes(data)

    started = time.perf_counter()
    logger.info("Tessellating STEP data", backend=options.backend, size_bytes=len(data),
                chord_tolerance=options.chord_tolerance, workers=options.workers)
    mesh = get_backend(options.backend).tessellate(data, options, cancel)
    _check(cancel)
    mesh = postprocess(mesh, options)
    logger.info(
        "Tessellation complete",
        backend=options.backend,
        vertices=mesh.vertex_count,
        triangles=mesh.triangle_count,
        elapsed_ms=round((time.perf_counter() - started) * 1000, 2),
    )
    return mesh
