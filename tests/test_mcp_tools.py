"""Tests for MCP tools and session management."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import Mock, patch

import pytest

from kernel.config import TessellationOptions
from kernel.errors import TessellationError
from kernel.mesh import TriangleMesh
from stepmesh_mcp.tools import (
    MeshSession,
    SessionError,
    SessionMesh,
    tool_export_mesh,
    tool_session_info,
    tool_simplify_mesh,
    tool_tessellate_step,
)

from conftest import capture, make_heightfield


def _tetrahedron() -> TriangleMesh:
    return TriangleMesh.from_arrays(
        [(0, 0, 0), (1, 0, 0), (0, 1, 0), (0, 0, 1)],
        [(0, 2, 1), (0, 1, 3), (0, 3, 2), (1, 2, 3)],
        {"backend": "native", "length_unit": "mm"},
    )


def _grid() -> TriangleMesh:
    positions, triangles = make_heightfield(10, 10)
    return TriangleMesh.from_arrays(positions, triangles, {"backend": "native", "length_unit": "mm"})


@pytest.fixture
def session():
    """Replace the module-level session with a fresh one."""
    fresh = MeshSession()
    with patch("stepmesh_mcp.tools._session", fresh):
        yield fresh


class TestMeshSession:
    """Test cases for MeshSession class."""

    def test_session_creation(self):
        """Test session creation with default settings."""
        session = MeshSession()
        assert session._max_meshes == 10
        assert len(session._meshes) == 0
        assert session.list_meshes() == []

    def test_session_stats(self):
        """Test session statistics."""
        session = MeshSession(max_meshes=5)
        stats = session.get_session_stats()

        assert stats["loaded_meshes"] == 0
        assert stats["max_meshes"] == 5
        assert stats["mesh_ids"] == []

    def test_add_and_get(self):
        """Test mesh storage and retrieval."""
        session = MeshSession()
        entry = session.add(SessionMesh("tet", _tetrahedron(), source="memory"))

        assert session.has_mesh("tet")
        assert session.get("tet") is entry
        assert not session.has_mesh("nonexistent")
        with pytest.raises(SessionError, match="Mesh not found in session: nonexistent"):
            session.get("nonexistent")

    def test_remove_mesh(self):
        """Test mesh removal."""
        session = MeshSession()
        session.add(SessionMesh("tet", _tetrahedron(), source="memory"))

        session.remove_mesh("tet")

        assert not session.has_mesh("tet")
        assert "tet" not in session._load_times

        # Removing a missing mesh is a no-op
        session.remove_mesh("nonexistent")

    def test_cleanup_old_meshes(self):
        """Test the oldest meshes are evicted past the limit."""
        session = MeshSession(max_meshes=2)
        for i in range(3):
            mesh_id = f"mesh_{i}"
            session._meshes[mesh_id] = SessionMesh(mesh_id, _tetrahedron(), source="memory")
            session._load_times[mesh_id] = i  # mesh_0 is oldest

        session.cleanup_old_meshes()

        assert session.list_meshes() == ["mesh_1", "mesh_2"]

    def test_add_evicts(self):
        session = MeshSession(max_meshes=2)
        for i in range(4):
            session.add(SessionMesh(f"mesh_{i}", _tetrahedron(), source="memory"))
        assert len(session.list_meshes()) == 2
        assert session.has_mesh("mesh_3")

    @patch("stepmesh_mcp.tools.tessellate_step")
    def test_tessellate_success(self, mock_tessellate, box_step_file: Path):
        """Test successful tessellation adds a mesh with a generated ID."""
        session = MeshSession()
        mesh = _tetrahedron()
        mock_tessellate.return_value = mesh
        options = TessellationOptions()

        entry = session.tessellate(str(box_step_file), options)

        assert entry.mesh is mesh
        assert entry.mesh_id == "box_1"
        assert entry.source == str(box_step_file)
        assert entry.options["chord_tolerance"] == 0.1
        assert session.has_mesh("box_1")
        mock_tessellate.assert_called_once_with(box_step_file.read_bytes(), options=options)

    @patch("stepmesh_mcp.tools.tessellate_step")
    def test_tessellate_failure(self, mock_tessellate, box_step_file: Path):
        """Test pipeline errors become session errors."""
        session = MeshSession()
        mock_tessellate.side_effect = TessellationError("bad face", face_index=3)

        with pytest.raises(SessionError, match="Failed to tessellate STEP file"):
            session.tessellate(str(box_step_file), TessellationOptions())

        assert session.list_meshes() == []
        (entry,) = capture("Failed to tessellate STEP file")
        assert entry["face_index"] == 3
        assert entry["error_type"] == "TessellationError"

    def test_tessellate_missing_file(self, temp_dir: Path):
        session = MeshSession()
        with pytest.raises(SessionError):
            session.tessellate(str(temp_dir / "missing.step"), TessellationOptions())

    def test_simplify_creates_child(self):
        """Test simplification stores a new mesh linked to its parent."""
        session = MeshSession()
        session.add(SessionMesh("grid", _grid(), source="memory"))

        child = session.simplify("grid", 0.5, float("inf"))

        assert child.parent_id == "grid"
        assert child.mesh_id == "grid_simplified_1"
        assert child.mesh.triangle_count < session.get("grid").mesh.triangle_count
        assert session.has_mesh("grid")

    def test_simplify_invalid_ratio(self):
        session = MeshSession()
        session.add(SessionMesh("grid", _grid(), source="memory"))
        with pytest.raises(SessionError, match="Failed to simplify mesh"):
            session.simplify("grid", 2.0, float("inf"))

    def test_export_unknown_format(self):
        session = MeshSession()
        session.add(SessionMesh("tet", _tetrahedron(), source="memory"))
        with pytest.raises(SessionError, match="Failed to export mesh"):
            session.export("tet", format="stl")


class TestMCPTools:
    """Test cases for MCP tool functions."""

    def test_tessellate_missing_path(self, session):
        with pytest.raises(ValueError, match="Missing required parameter: path"):
            tool_tessellate_step({})

    def test_tessellate_empty_path(self, session):
        with pytest.raises(ValueError, match="cannot be empty"):
            tool_tessellate_step({"path": ""})

    def test_tessellate_nonexistent_file(self, session):
        with pytest.raises(ValueError, match="File not found"):
            tool_tessellate_step({"path": "/nonexistent/file.step"})

    def test_tessellate_unknown_preset(self, session, box_step_file: Path):
        with pytest.raises(ValueError, match="Unknown preset"):
            tool_tessellate_step({"path": str(box_step_file), "preset": "ultra"})

    def test_tessellate_box(self, session, box_step_file: Path):
        """Test the full tool path on a real STEP file."""
        result = tool_tessellate_step({"path": str(box_step_file), "mesh_id": "box"})

        assert result["success"] is True
        report = result["mesh"]
        assert report["mesh_id"] == "box"
        assert report["triangles"] == 12
        assert report["vertices"] == 8
        assert report["watertight"] is True
        assert report["volume"] == pytest.approx(24.0)
        assert report["length_unit"] == "mm"
        assert result["warnings"] == []
        assert result["session_stats"]["mesh_ids"] == ["box"]

    @patch("stepmesh_mcp.tools.tessellate_step")
    def test_tessellate_overrides(self, mock_tessellate, session, box_step_file: Path):
        """Test tolerance parameters override the preset."""
        mock_tessellate.return_value = _tetrahedron()

        tool_tessellate_step({"path": str(box_step_file), "preset": "fine", "workers": 2})

        options = mock_tessellate.call_args.kwargs["options"]
        assert options.chord_tolerance == 0.01
        assert options.workers == 2

    @patch("stepmesh_mcp.tools.tessellate_step")
    def test_tessellate_failure(self, mock_tessellate, session, box_step_file: Path):
        mock_tessellate.side_effect = TessellationError("bad face")

        result = tool_tessellate_step({"path": str(box_step_file)})

        assert result["success"] is False
        assert "bad face" in result["error"]
        assert result["mesh_id"] is None

    def test_simplify_mesh(self, session):
        session.add(SessionMesh("grid", _grid(), source="memory"))

        result = tool_simplify_mesh({"mesh_id": "grid", "ratio": 0.5, "new_mesh_id": "grid_lod1"})

        assert result["success"] is True
        assert result["mesh"]["mesh_id"] == "grid_lod1"
        assert result["mesh"]["parent_id"] == "grid"
        assert result["simplify"]["original_triangles"] == 200
        assert result["simplify"]["target_triangles"] == 100

    def test_simplify_unknown_mesh(self, session):
        result = tool_simplify_mesh({"mesh_id": "nonexistent"})
        assert result["success"] is False
        assert "Mesh not found" in result["error"]

    def test_simplify_missing_id(self, session):
        with pytest.raises(ValueError, match="Missing required parameter: mesh_id"):
            tool_simplify_mesh({})

    def test_export_glb(self, session):
        session.add(SessionMesh("tet", _tetrahedron(), source="memory"))

        result = tool_export_mesh({"mesh_id": "tet"})

        assert result["success"] is True
        assert result["format"] == "glb"
        assert result["uri"] == "memory://tet.glb"
        assert result["data_base64"]

    def test_export_to_file(self, session, temp_dir: Path):
        session.add(SessionMesh("tet", _tetrahedron(), source="memory"))
        out_path = temp_dir / "tet.obj"

        result = tool_export_mesh({"mesh_id": "tet", "format": "OBJ", "out_path": str(out_path)})

        assert result["success"] is True
        assert out_path.exists()
        assert result["uri"].startswith("file://")

    def test_export_unsupported_format(self, session):
        with pytest.raises(ValueError, match="Unsupported format"):
            tool_export_mesh({"mesh_id": "tet", "format": "stl"})

    def test_export_unknown_mesh(self, session):
        result = tool_export_mesh({"mesh_id": "nonexistent", "format": "glb"})
        assert result["success"] is False
        assert result["uri"] is None

    def test_session_info(self, session):
        """Test session info lists held meshes."""
        session.add(SessionMesh("tet", _tetrahedron(), source="memory"))

        result = tool_session_info({})

        assert result["success"] is True
        assert result["session_stats"]["loaded_meshes"] == 1
        assert [m["mesh_id"] for m in result["meshes"]] == ["tet"]
        assert result["meshes"][0]["watertight"] is True
        assert "tessellate_step" in result["available_tools"]

    def test_session_info_uses_module_session(self):
        fake = Mock()
        fake.get_session_stats.return_value = {"loaded_meshes": 0, "max_meshes": 10, "mesh_ids": []}
        with patch("stepmesh_mcp.tools._session", fake):
            result = tool_session_info()
        assert result["meshes"] == []
        fake.get_session_stats.assert_called_once()
