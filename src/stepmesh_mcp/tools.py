"""MCP tools implementation with session management.

This module provides the core tools for the stepmesh MCP server: a bounded
session of tessellated meshes plus tessellate, simplify, export and
session-info operations over it.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import structlog

from kernel.config import TessellationOptions, get_preset
from kernel.errors import StepMeshError
from kernel.export import EXPORT_FORMATS, ExportError, export_mesh
from kernel.mesh import TriangleMesh
from kernel.pipeline import tessellate_step
from kernel.simplify import simplify
from kernel.summary import summarize_mesh
from stepmesh.logging_setup import error_context

logger = structlog.get_logger(__name__)


class SessionError(Exception):
    """Raised when session operations fail."""
    pass


@dataclass
class SessionMesh:
    """A mesh held by the session together with where it came from."""

    mesh_id: str
    mesh: TriangleMesh
    source: str
    options: Dict[str, Any] = field(default_factory=dict)
    parent_id: Optional[str] = None


class MeshSession:
    """Session manager for tessellated meshes."""

    def __init__(self, max_meshes: int = 10):
        """Initialize session.

        Args:
            max_meshes: Maximum number of meshes to keep in memory
        """
        self._meshes: Dict[str, SessionMesh] = {}
        self._max_meshes = max_meshes
        self._load_times: Dict[str, float] = {}
        self._counter = 0

        logger.info("stepmesh session initialized", max_meshes=max_meshes)

    def _next_id(self, stem: str) -> str:
        self._counter += 1
        return f"{stem}_{self._counter}"

    def cleanup_old_meshes(self) -> None:
        """Remove oldest meshes if we exceed the limit."""
        if len(self._meshes) <= self._max_meshes:
            return

        sorted_meshes = sorted(self._load_times.items(), key=lambda x: x[1])
        for mesh_id, _ in sorted_meshes[:-self._max_meshes]:
            self.remove_mesh(mesh_id)

    def remove_mesh(self, mesh_id: str) -> None:
        """Remove a mesh from the session."""
        if self._meshes.pop(mesh_id, None) is not None:
            logger.debug("Removed mesh from session", mesh_id=mesh_id)
        self._load_times.pop(mesh_id, None)

    def has_mesh(self, mesh_id: str) -> bool:
        return mesh_id in self._meshes

    def get(self, mesh_id: str) -> SessionMesh:
        """Get a session mesh by ID.

        Raises:
            SessionError: If the mesh is not in the session
        """
        try:
            return self._meshes[mesh_id]
        except KeyError:
            raise SessionError(f"Mesh not found in session: {mesh_id}") from None

    def list_meshes(self) -> List[str]:
        return list(self._meshes.keys())

    def get_session_stats(self) -> Dict[str, Any]:
        """Get session statistics."""
        return {
            "loaded_meshes": len(self._meshes),
            "max_meshes": self._max_meshes,
            "mesh_ids": list(self._meshes.keys()),
        }

    def add(self, entry: SessionMesh) -> SessionMesh:
        self._meshes[entry.mesh_id] = entry
        self._load_times[entry.mesh_id] = time.time()
        self.cleanup_old_meshes()
        return entry

    def tessellate(self, file_path: str, options: TessellationOptions,
                   mesh_id: Optional[str] = None) -> SessionMesh:
        """Tessellate a STEP file and add the mesh to the session.

        Raises:
            SessionError: If reading or tessellation fails
        """
        path = Path(file_path)
        mesh_id = mesh_id or self._next_id(path.stem)
        try:
            logger.info("Tessellating STEP file", file_path=file_path, mesh_id=mesh_id)
            mesh = tessellate_step(path.read_bytes(), options=options)
        except (StepMeshError, OSError) as e:
            logger.error("Failed to tessellate STEP file", file_path=file_path, **error_context(e))
            raise SessionError(f"Failed to tessellate STEP file: {e}") from e

        entry = self.add(SessionMesh(mesh_id, mesh, source=str(path), options=options.to_dict()))
        logger.info("Mesh added to session", mesh_id=mesh_id,
                    vertices=mesh.vertex_count, triangles=mesh.triangle_count)
        return entry

    def simplify(self, mesh_id: str, ratio: float, max_error: float,
                 new_id: Optional[str] = None) -> SessionMesh:
        """Simplify a session mesh into a new session entry.

        Raises:
            SessionError: If the mesh is missing or simplification fails
        """
        parent = self.get(mesh_id)
        try:
            result = simplify(parent.mesh, ratio, max_error)
        except StepMeshError as e:
            logger.error("Failed to simplify mesh", mesh_id=mesh_id, **error_context(e))
            raise SessionError(f"Failed to simplify mesh: {e}") from e
        return self.add(SessionMesh(
            new_id or self._next_id(f"{mesh_id}_simplified"),
            result,
            source=parent.source,
            options={"ratio": ratio, "max_error": max_error},
            parent_id=mesh_id,
        ))

    def export(self, mesh_id: str, format: str = "glb",
               output_path: Optional[str] = None) -> Dict[str, Any]:
        """Export a session mesh.

        Raises:
            SessionError: If the mesh is missing or export fails
        """
        entry = self.get(mesh_id)
        try:
            return export_mesh(entry.mesh, format=format, output_path=output_path, name=mesh_id)
        except ExportError as e:
            logger.error("Failed to export mesh", mesh_id=mesh_id, format=format, **error_context(e))
            raise SessionError(f"Failed to export mesh: {e}") from e


# Global session instance for MCP tools
_session = MeshSession()


def _mesh_report(entry: SessionMesh) -> Dict[str, Any]:
    report = summarize_mesh(entry.mesh).to_dict()
    report.update({
        "mesh_id": entry.mesh_id,
        "source": entry.source,
        "parent_id": entry.parent_id,
        "length_unit": entry.mesh.metadata.get("length_unit"),
        "backend": entry.mesh.metadata.get("backend"),
    })
    return report


def _require(params: Dict[str, Any], name: str) -> Any:
    if name not in params:
        raise ValueError(f"Missing required parameter: {name}")
    value = params[name]
    if value in (None, ""):
        raise ValueError(f"Parameter '{name}' cannot be empty")
    return value


def tool_tessellate_step(params: Dict[str, Any]) -> Dict[str, Any]:
    """MCP tool: Tessellate a STEP file from disk into a session mesh.

    Args:
        params: ``path`` plus optional ``preset``, ``chord_tolerance``,
            ``angular_tolerance``, ``backend``, ``workers`` and ``mesh_id``

    Returns:
        Dictionary with the mesh report

    Raises:
        ValueError: If parameters are invalid
    """
    file_path = _require(params, "path")
    if not Path(file_path).exists():
        raise ValueError(f"File not found: {file_path}")

    options = get_preset(params.get("preset") or "default").with_overrides(
        chord_tolerance=params.get("chord_tolerance"),
        angular_tolerance=params.get("angular_tolerance"),
        backend=params.get("backend"),
        workers=params.get("workers"),
    )

    try:
        entry = _session.tessellate(file_path, options, mesh_id=params.get("mesh_id"))
    except SessionError as e:
        logger.error("tessellate_step tool failed", file_path=file_path, **error_context(e))
        return {
            "success": False,
            "error": str(e),
            "mesh_id": None,
            "file_path": file_path,
        }

    return {
        "success": True,
        "mesh": _mesh_report(entry),
        "warnings": list(entry.mesh.metadata.get("warnings", [])),
        "session_stats": _session.get_session_stats(),
    }


def tool_simplify_mesh(params: Dict[str, Any]) -> Dict[str, Any]:
    """MCP tool: Simplify a session mesh into a new session mesh."""
    mesh_id = _require(params, "mesh_id")
    ratio = float(params.get("ratio", 0.5))
    max_error = params.get("max_error")
    max_error = float("inf") if max_error is None else float(max_error)

    try:
        entry = _session.simplify(mesh_id, ratio, max_error, new_id=params.get("new_mesh_id"))
    except SessionError as e:
        logger.error("simplify_mesh tool failed", mesh_id=mesh_id, **error_context(e))
        return {"success": False, "error": str(e), "mesh_id": mesh_id}

    report = dict(entry.mesh.metadata["simplify"])
    if report["error"] == float("inf"):
        report["error"] = None
    return {
        "success": True,
        "mesh": _mesh_report(entry),
        "simplify": report,
    }


def tool_export_mesh(params: Dict[str, Any]) -> Dict[str, Any]:
    """MCP tool: Export a session mesh as GLB, glTF or OBJ."""
    mesh_id = _require(params, "mesh_id")
    format = (params.get("format") or "glb").lower()
    if format not in EXPORT_FORMATS:
        raise ValueError(f"Unsupported format: {format}. Use one of {', '.join(EXPORT_FORMATS)}")

    try:
        result = _session.export(mesh_id, format=format, output_path=params.get("out_path"))
    except SessionError as e:
        logger.error("export_mesh tool failed", mesh_id=mesh_id, format=format, **error_context(e))
        return {
            "success": False,
            "error": str(e),
            "mesh_id": mesh_id,
            "format": format,
            "uri": None,
        }

    return {
        "success": True,
        "mesh_id": mesh_id,
        "format": result["format"],
        "uri": result["uri"],
        "mime_type": result["mime_type"],
        "size_bytes": result.get("size_bytes"),
        "data_base64": result.get("data_base64"),
        "data": result.get("data"),
    }


def tool_session_info(params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """MCP tool: Get session information and held meshes."""
    stats = _session.get_session_stats()
    return {
        "success": True,
        "session_stats": stats,
        "meshes": [_mesh_report(_session.get(mesh_id)) for mesh_id in stats["mesh_ids"]],
        "available_tools": [
            "tessellate_step",
            "simplify_mesh",
            "export_mesh",
            "session_info",
        ],
    }
