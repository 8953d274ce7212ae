"""Mesh export to glTF 2.0 (binary and JSON) and Wavefront OBJ through trimesh."""

from __future__ import annotations

import base64
from pathlib import Path
from typing import Any, Dict, Optional, Union

import orjson
import structlog
import trimesh
from trimesh.exchange.gltf import export_gltf

from .mesh import TriangleMesh

logger = structlog.get_logger(__name__)

GENERATOR = "stepmesh"
EXPORT_FORMATS = ("glb", "gltf", "obj")


class ExportError(Exception):
    """Raised when export operations fail."""
    pass


def to_trimesh(mesh: TriangleMesh) -> trimesh.Trimesh:
    """Wrap a mesh as a ``trimesh.Trimesh`` without merging or reordering anything."""
    return trimesh.Trimesh(
        vertices=mesh.positions,
        faces=mesh.indices,
        vertex_normals=mesh.normals,
        process=False,
    )


def _scene(mesh: TriangleMesh, name: str) -> trimesh.Scene:
    scene = trimesh.Scene()
    scene.add_geometry(to_trimesh(mesh), node_name=name, geom_name=name)
    # non-finite values become null
    scene.metadata.update(orjson.loads(orjson.dumps(mesh.metadata, default=str)))
    return scene


def mesh_to_glb(mesh: TriangleMesh, name: str = "mesh") -> bytes:
    """Encode a mesh as a binary glTF (GLB) container."""
    return _scene(mesh, name).export(file_type="glb", include_normals=True)


def mesh_to_gltf(mesh: TriangleMesh, name: str = "mesh") -> Dict[str, Any]:
    """Encode a mesh as a glTF JSON document with embedded data URI buffers."""
    files = export_gltf(_scene(mesh, name), include_normals=True, embed_buffers=True)
    return orjson.loads(files["model.gltf"])


def mesh_to_obj(mesh: TriangleMesh, name: str = "mesh") -> str:
    """Encode a mesh as Wavefront OBJ text with per-vertex normals."""
    return to_trimesh(mesh).export(
        file_type="obj",
        include_normals=True,
        include_texture=False,
        header=f"generated by {GENERATOR}: {name}",
    )


def export_mesh(mesh: TriangleMesh, format: str = "glb",
                output_path: Optional[Union[str, Path]] = None,
                name: str = "mesh") -> Dict[str, Any]:
    """Export a mesh, optionally writing it to ``output_path``.

    Args:
        mesh: Mesh to export
        format: ``glb``, ``gltf`` or ``obj``
        output_path: Optional output file path
        name: Node and mesh name inside the file

    Returns:
        Dictionary with ``format``, ``uri``, ``size_bytes``, ``mime_type`` and
        the payload (``data_base64`` for GLB, ``data`` otherwise)

    Raises:
        ExportError: If the format is unsupported or writing fails
    """
    fmt = format.lower()
    if fmt not in EXPORT_FORMATS:
        raise ExportError(f"Unsupported export format: {format}")
    logger.info("Exporting mesh", format=fmt, triangles=mesh.triangle_count)

    if fmt == "glb":
        raw = mesh_to_glb(mesh, name)
        result: Dict[str, Any] = {"mime_type": "model/gltf-binary",
                                  "data_base64": base64.b64encode(raw).decode("ascii")}
    elif fmt == "gltf":
        document = mesh_to_gltf(mesh, name)
        raw = orjson.dumps(document, option=orjson.OPT_INDENT_2)
        result = {"mime_type": "model/gltf+json", "data": document}
    else:
        text = mesh_to_obj(mesh, name)
        raw = text.encode("utf-8")
        result = {"mime_type": "model/obj", "data": text}

    if output_path:
        path = Path(output_path)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(raw)
        except OSError as e:
            logger.error("Export failed", format=fmt, path=str(path), error=str(e))
            raise ExportError(f"Failed to write {fmt} to {path}: {e}") from e
        uri = f"file://{path.resolve()}"
    else:
        uri = f"memory://{name}.{fmt}"

    result.update({"format": fmt, "uri": uri, "size_bytes": len(raw)})
    logger.info("Mesh exported", format=fmt, uri=uri, size_bytes=len(raw))
    return result
