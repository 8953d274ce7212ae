"""stepmesh MCP server implementation.

Provides a stdio-based MCP server with error handling and logging. Logs go
to stderr because stdout carries the protocol.
"""

from __future__ import annotations

import sys
from typing import Any, Dict

import structlog
from mcp.server.fastmcp import FastMCP

from stepmesh.logging_setup import configure_for, error_context

from .tools import (
    tool_export_mesh,
    tool_session_info,
    tool_simplify_mesh,
    tool_tessellate_step,
)

logger = structlog.get_logger(__name__)

# Create FastMCP app
app = FastMCP("stepmesh")


@app.tool()
def tessellate_step(
    path: str,
    preset: str = "default",
    chord_tolerance: float | None = None,
    angular_tolerance: float | None = None,
    backend: str | None = None,
    workers: int | None = None,
    mesh_id: str | None = None,
) -> Dict[str, Any]:
    """Tessellate a STEP file from disk and keep the mesh in the session.

    Args:
        path: Absolute path to the STEP file
        preset: Tolerance preset (draft, default, fine)
        chord_tolerance: Maximum chord deviation in model units
        angular_tolerance: Maximum angle per segment in radians
        backend: ``native`` or ``occt``
        workers: Threads for per-face tessellation
        mesh_id: Identifier for the new mesh (generated when omitted)

    Returns:
        Dictionary containing the mesh report and session info

    Example:
        >>> tessellate_step("/path/to/part.step", chord_tolerance=0.05)
        {
            "success": True,
            "mesh": {"mesh_id": "part_1", "vertices": 412, "triangles": 820,
                     "watertight": True, ...},
            "warnings": [],
            "session_stats": {"loaded_meshes": 1, "max_meshes": 10, ...}
        }
    """
    try:
        logger.info("MCP tool: tessellate_step", path=path, preset=preset)
        result = tool_tessellate_step({
            "path": path,
            "preset": preset,
            "chord_tolerance": chord_tolerance,
            "angular_tolerance": angular_tolerance,
            "backend": backend,
            "workers": workers,
            "mesh_id": mesh_id,
        })
        logger.info("MCP tool: tessellate_step completed", success=result.get("success", False))
        return result
    except Exception as e:
        logger.error("MCP tool: tessellate_step failed", path=path, **error_context(e))
        return {
            "success": False,
            "error": f"Tool execution failed: {e}",
            "mesh_id": None,
            "file_path": path,
        }


@app.tool()
def simplify_mesh(mesh_id: str, ratio: float = 0.5, max_error: float | None = None,
                  new_mesh_id: str | None = None) -> Dict[str, Any]:
    """Simplify a session mesh by quadric-error edge collapse.

    The result is stored as a new session mesh; the input is kept.

    Args:
        mesh_id: Identifier of the mesh to simplify
        ratio: Fraction of triangles to keep, in (0, 1]
        max_error: Largest collapse error to accept (unbounded when omitted)
        new_mesh_id: Identifier for the simplified mesh

    Returns:
        Dictionary containing the new mesh report and the simplification report
    """
    try:
        logger.info("MCP tool: simplify_mesh", mesh_id=mesh_id, ratio=ratio, max_error=max_error)
        result = tool_simplify_mesh({
            "mesh_id": mesh_id,
            "ratio": ratio,
            "max_error": max_error,
            "new_mesh_id": new_mesh_id,
        })
        logger.info("MCP tool: simplify_mesh completed",
                    mesh_id=mesh_id, success=result.get("success", False))
        return result
    except Exception as e:
        logger.error("MCP tool: simplify_mesh failed", mesh_id=mesh_id, **error_context(e))
        return {
            "success": False,
            "error": f"Tool execution failed: {e}",
            "mesh_id": mesh_id,
        }


@app.tool()
def export_mesh(mesh_id: str, format: str = "glb", out_path: str | None = None) -> Dict[str, Any]:
    """Export a session mesh.

    Args:
        mesh_id: Identifier of the mesh
        format: ``glb``, ``gltf`` or ``obj``
        out_path: Optional file to write; the payload is returned either way

    Returns:
        Dictionary containing export results with URI and data

    Example:
        >>> export_mesh("part_1", "glb")
        {
            "success": True,
            "mesh_id": "part_1",
            "format": "glb",
            "uri": "memory://part_1.glb",
            "data_base64": "Z2xURg..."
        }
    """
    try:
        logger.info("MCP tool: export_mesh", mesh_id=mesh_id, format=format)
        result = tool_export_mesh({"mesh_id": mesh_id, "format": format, "out_path": out_path})
        logger.info("MCP tool: export_mesh completed",
                    mesh_id=mesh_id, format=format, success=result.get("success", False))
        return result
    except Exception as e:
        logger.error("MCP tool: export_mesh failed", mesh_id=mesh_id, format=format, **error_context(e))
        return {
            "success": False,
            "error": f"Tool execution failed: {e}",
            "mesh_id": mesh_id,
            "format": format,
            "uri": None,
        }


@app.tool()
def session_info() -> Dict[str, Any]:
    """Get information about the current session and held meshes."""
    try:
        logger.info("MCP tool: session_info")
        result = tool_session_info()
        logger.info("MCP tool: session_info completed", meshes=len(result.get("meshes", [])))
        return result
    except Exception as e:
        logger.error("MCP tool: session_info failed", **error_context(e))
        return {
            "success": False,
            "error": f"Tool execution failed: {e}",
            "session_stats": {},
            "meshes": [],
        }


def main() -> None:
    """Main entry point for the MCP server (stdio mode)."""
    configure_for("mcp")
    try:
        logger.info("Starting stepmesh MCP server")

        from kernel.backends import available_backends
        backends = available_backends()
        logger.info("Backend status", **backends)
        if not backends.get("occt"):
            logger.warning(
                "OCCT backend unavailable - only the native backend can be used. "
                "Install pythonocc-core or cadquery-ocp to enable it."
            )

        logger.info("stepmesh MCP server ready")
        app.run()

    except KeyboardInterrupt:
        logger.info("MCP server shutting down (keyboard interrupt)")
        sys.exit(0)
    except Exception as e:
        logger.error("MCP server startup failed", **error_context(e))
        sys.exit(1)


if __name__ == "__main__":
    main()
