"""Tests for quadric-error simplification."""

from __future__ import annotations

import math

import numpy as np
import pytest

from kernel.config import TessellationOptions
from kernel.errors import SimplifyError
from kernel.mesh import TriangleMesh
from kernel.pipeline import tessellate_step
from kernel.simplify import simplify

from conftest import make_heightfield


@pytest.fixture(scope="module")
def heightfield() -> TriangleMesh:
    positions, triangles = make_heightfield(100, 50)
    return TriangleMesh.from_arrays(positions, triangles)


@pytest.fixture
def small_grid() -> TriangleMesh:
    positions, triangles = make_heightfield(20, 20)
    return TriangleMesh.from_arrays(positions, triangles)


class TestSimplify:
    """Test cases for simplify."""

    def test_heightfield_size(self):
        """Test the grid builder counts cells, not grid points."""
        positions, triangles = make_heightfield(100, 50)
        assert len(positions) == 101 * 51
        assert len(triangles) == 10_000

    def test_reaches_half(self, heightfield: TriangleMesh):
        """Test 10 000 triangles at ratio 0.5 end at the target count."""
        assert heightfield.triangle_count == 10_000

        result = simplify(heightfield, 0.5)
        report = result.metadata["simplify"]

        assert result.triangle_count == 5_000
        assert report["target_reached"] is True
        assert report["target_triangles"] == 5_000
        assert report["original_triangles"] == 10_000
        assert report["collapses"] == 2_500
        assert result.validate() == []

    def test_boundary_is_preserved(self, heightfield: TriangleMesh):
        """Test locked boundary vertices keep the sheet outline."""
        result = simplify(heightfield, 0.5)
        lo, hi = result.bounding_box()
        base_lo, base_hi = heightfield.bounding_box()

        assert lo[:2] == base_lo[:2]
        assert hi[:2] == base_hi[:2]
        assert len(result.boundary_edges()) == len(heightfield.boundary_edges())

    def test_monotone_in_ratio(self, small_grid: TriangleMesh):
        """Test lower ratios never give more triangles or less error."""
        counts, errors = [], []
        for ratio in (0.9, 0.7, 0.5, 0.3):
            result = simplify(small_grid, ratio)
            counts.append(result.triangle_count)
            errors.append(result.metadata["simplify"]["error"])

        assert counts == sorted(counts, reverse=True)
        assert errors == sorted(errors)
        assert all(count <= small_grid.triangle_count for count in counts)

    def test_max_error_bounds_collapses(self, small_grid: TriangleMesh):
        result = simplify(small_grid, 0.1, max_error=0.005)
        assert result.metadata["simplify"]["error"] <= 0.005
        assert result.triangle_count >= simplify(small_grid, 0.1).triangle_count

    def test_ratio_one_is_identity(self, small_grid: TriangleMesh):
        result = simplify(small_grid, 1.0)
        assert result.triangle_count == small_grid.triangle_count
        assert result.metadata["simplify"]["collapses"] == 0
        assert result.metadata["simplify"]["target_reached"] is True

    def test_flat_sheet_collapses_at_zero_error(self):
        positions, triangles = make_heightfield(10, 10)
        positions[:, 2] = 0.0
        mesh = TriangleMesh.from_arrays(positions, triangles)

        result = simplify(mesh, 0.5, max_error=0.0)

        assert result.triangle_count < mesh.triangle_count
        assert np.allclose(result.positions[:, 2], 0.0)

    def test_input_is_not_modified(self, small_grid: TriangleMesh):
        positions = small_grid.positions.copy()
        indices = small_grid.indices.copy()
        simplify(small_grid, 0.3)
        assert np.array_equal(small_grid.positions, positions)
        assert np.array_equal(small_grid.indices, indices)
        assert "simplify" not in small_grid.metadata

    def test_metadata_is_merged(self, small_grid: TriangleMesh):
        small_grid.metadata["backend"] = "native"
        result = simplify(small_grid, 0.8, metadata={"note": "lod1"})
        assert result.metadata["backend"] == "native"
        assert result.metadata["note"] == "lod1"

    @pytest.mark.parametrize("ratio,max_error", [
        (0.0, math.inf),
        (1.5, math.inf),
        (-0.2, math.inf),
        (0.5, -1.0),
        (0.5, math.nan),
        ("half", math.inf),
    ])
    def test_invalid_parameters(self, small_grid: TriangleMesh, ratio, max_error):
        with pytest.raises(SimplifyError):
            simplify(small_grid, ratio, max_error)

    def test_invalid_mesh(self):
        mesh = TriangleMesh(np.zeros((3, 3)), np.zeros((3, 3)), [(0, 1, 4)])
        with pytest.raises(SimplifyError, match="invalid input mesh"):
            simplify(mesh, 0.5)

    def test_closed_mesh_stays_closed(self, cylinder_step: str):
        """Test collapsing a watertight mesh keeps it watertight."""
        mesh = tessellate_step(cylinder_step, options=TessellationOptions(chord_tolerance=0.05))
        result = simplify(mesh, 0.5)

        assert result.is_watertight()
        assert result.triangle_count < mesh.triangle_count
        assert result.signed_volume() > 0
