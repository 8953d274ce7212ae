"""End-to-end tests for tessellate_step."""

from __future__ import annotations

import math
from unittest.mock import patch

import numpy as np
import pytest

from kernel import pipeline
from kernel.config import TessellationOptions
from kernel.errors import (
    BackendNotAvailableError,
    ConfigurationError,
    ParseError,
    PipelineCancelled,
    TopologyError,
)
from kernel.mesh import TriangleMesh
from kernel.pipeline import CancellationToken, convert_units, tessellate_step

from conftest import capture, make_box, make_cone, make_cylinder, make_fin, make_sphere


class TestBox:
    """Test cases for the planar box."""

    def test_box_mesh(self, box_step: str):
        mesh = tessellate_step(box_step)

        assert mesh.triangle_count == 12
        assert mesh.vertex_count == 8
        assert mesh.is_watertight()
        assert mesh.signed_volume() == pytest.approx(24.0)
        assert mesh.surface_area() == pytest.approx(2 * (6 + 8 + 12))
        assert mesh.validate() == []

    def test_box_metadata(self, box_step: str):
        metadata = tessellate_step(box_step).metadata

        assert metadata["backend"] == "native"
        assert metadata["schema"] == "AUTOMOTIVE_DESIGN"
        assert metadata["length_unit"] == "mm"
        assert metadata["angle_unit"] == "rad"
        assert metadata["chord_tolerance"] == 0.1
        assert metadata["solids"] == 1
        assert metadata["faces"] == 6
        assert metadata["warnings"] == []

    def test_accepts_bytes(self, box_step: str):
        from_text = tessellate_step(box_step)
        from_bytes = tessellate_step(box_step.encode("latin-1"))
        from_bytearray = tessellate_step(bytearray(box_step.encode("latin-1")))

        assert np.array_equal(from_text.indices, from_bytes.indices)
        assert np.array_equal(from_text.indices, from_bytearray.indices)

    def test_logs_completion(self, box_step: str):
        tessellate_step(box_step)
        (entry,) = capture("Tessellation complete")
        assert entry["triangles"] == 12
        assert entry["backend"] == "native"


class TestCurvedModels:
    """Test cases for models with periodic surfaces."""

    def test_cylinder_is_watertight(self, cylinder_step: str):
        mesh = tessellate_step(cylinder_step)
        exact = math.pi * 25 * 10

        assert mesh.is_watertight()
        assert 0.95 * exact < mesh.signed_volume() <= exact
        assert mesh.validate() == []

    def test_finer_tolerance_gives_more_triangles(self, cylinder_step: str):
        coarse = tessellate_step(cylinder_step, options=TessellationOptions(chord_tolerance=0.1))
        fine = tessellate_step(cylinder_step, options=TessellationOptions(chord_tolerance=0.01))

        assert fine.triangle_count > coarse.triangle_count
        exact = math.pi * 25 * 10
        assert abs(fine.signed_volume() - exact) < abs(coarse.signed_volume() - exact)

    def test_vertices_lie_on_cylinder(self, cylinder_step: str):
        mesh = tessellate_step(cylinder_step)
        radial = np.linalg.norm(mesh.positions[:, :2], axis=1)
        side = (mesh.positions[:, 2] > 1e-9) & (mesh.positions[:, 2] < 10 - 1e-9)
        assert np.allclose(radial[side], 5.0)
        assert radial.max() == pytest.approx(5.0)

    def test_cylinder_without_seam(self):
        """Test a side face bounded only by its two circles still closes."""
        mesh = tessellate_step(make_cylinder(seam=False))
        assert mesh.is_watertight()
        assert mesh.signed_volume() > 0

    def test_dome(self, dome_step: str):
        mesh = tessellate_step(dome_step)
        exact = 2.0 / 3.0 * math.pi * 125

        assert mesh.is_watertight()
        assert mesh.signed_volume() == pytest.approx(exact, rel=0.1)
        assert mesh.bounding_box()[1][2] == pytest.approx(5.0)

    def test_full_sphere(self):
        """Test a sphere cut by one pole-to-pole seam closes at both poles."""
        mesh = tessellate_step(make_sphere())
        exact = 4.0 / 3.0 * math.pi * 125

        assert mesh.is_watertight()
        assert mesh.validate() == []
        assert 0.9 * exact < mesh.signed_volume() <= exact
        assert np.allclose(np.linalg.norm(mesh.positions, axis=1), 5.0)
        lo, hi = mesh.bounding_box()
        assert lo[2] == pytest.approx(-5.0)
        assert hi[2] == pytest.approx(5.0)

    @pytest.mark.parametrize("start", [0, 1, 2])
    def test_pointed_cone(self, start: int):
        """Test a cone whose seam runs into the apex, whichever edge use comes first."""
        mesh = tessellate_step(make_cone(start=start))
        exact = math.pi * 25 * 10 / 3

        assert mesh.is_watertight()
        assert mesh.validate() == []
        assert 0.9 * exact < mesh.signed_volume() <= exact
        assert mesh.bounding_box()[1][2] == pytest.approx(10.0)

    def test_holed_plate(self, holed_plate_step: str):
        """Test an open sheet keeps its outer boundary and hole boundary."""
        mesh = tessellate_step(holed_plate_step)
        loops = mesh.boundary_loops()

        assert not mesh.is_watertight()
        assert sorted(len(loop) for loop in loops) == [4, 4]
        assert mesh.surface_area() == pytest.approx(84.0)


class TestDeterminism:
    """Test cases for repeatable output."""

    def test_repeated_runs_match(self, cylinder_step: str):
        first = tessellate_step(cylinder_step)
        second = tessellate_step(cylinder_step)
        assert np.array_equal(first.positions, second.positions)
        assert np.array_equal(first.indices, second.indices)

    def test_workers_match_sequential(self, cylinder_step: str):
        """Test a thread pool produces the same mesh as a sequential run."""
        sequential = tessellate_step(cylinder_step)
        threaded = tessellate_step(cylinder_step, options=TessellationOptions(workers=4))
        assert np.array_equal(sequential.positions, threaded.positions)
        assert np.array_equal(sequential.indices, threaded.indices)


class TestCancellation:
    """Test cases for cooperative cancellation."""

    def test_token(self):
        token = CancellationToken()
        assert not token.cancelled
        token.raise_if_cancelled()
        token.cancel()
        assert token.cancelled
        with pytest.raises(PipelineCancelled):
            token.raise_if_cancelled()

    def test_cancelled_before_start(self, box_step: str):
        token = CancellationToken()
        token.cancel()
        with pytest.raises(PipelineCancelled):
            tessellate_step(box_step, cancel=token)

    def test_cancelled_between_faces(self, box_step: str):
        """Test cancelling during one face stops before the next face."""
        token = CancellationToken()
        real = pipeline.tessellate_face

        def cancelling(face, cache, options):
            token.cancel()
            return real(face, cache, options)

        with patch("kernel.pipeline.tessellate_face", side_effect=cancelling) as mocked:
            with pytest.raises(PipelineCancelled):
                tessellate_step(box_step, cancel=token)
        assert mocked.call_count == 1


class TestOptionsAndBackends:
    """Test cases for option handling and backend selection."""

    def test_invalid_options(self, box_step: str):
        with pytest.raises(ConfigurationError):
            tessellate_step(box_step, options=TessellationOptions(chord_tolerance=0))

    def test_unknown_backend(self, box_step: str):
        with pytest.raises(ConfigurationError, match="Unknown backend"):
            tessellate_step(box_step, backend="bogus")

    @patch("kernel.occt_io.is_available", return_value=False)
    def test_occt_unavailable(self, mock_available, box_step: str):
        with pytest.raises(BackendNotAvailableError):
            tessellate_step(box_step, backend="occt")
        mock_available.assert_called_once()

    def test_garbage_input(self):
        with pytest.raises(ParseError):
            tessellate_step(b"this is not a STEP file")

    def test_non_manifold_rejected_by_default(self):
        with pytest.raises(TopologyError, match="non-manifold"):
            tessellate_step(make_fin())

    def test_non_manifold_warn(self):
        mesh = tessellate_step(make_fin(), options=TessellationOptions(non_manifold="warn"))
        assert mesh.triangle_count == 3
        assert mesh.metadata["faces"] == 3
        assert len(mesh.metadata["warnings"]) == 1

    def test_non_manifold_skip(self):
        mesh = tessellate_step(make_fin(), options=TessellationOptions(non_manifold="skip"))
        assert mesh.triangle_count == 2
        assert mesh.metadata["faces"] == 2

    def test_simplify_option(self, cylinder_step: str):
        options = TessellationOptions(chord_tolerance=0.05, simplify_ratio=0.5)
        full = tessellate_step(cylinder_step, options=TessellationOptions(chord_tolerance=0.05))
        reduced = tessellate_step(cylinder_step, options=options)

        assert reduced.triangle_count < full.triangle_count
        assert reduced.metadata["simplify"]["original_triangles"] == full.triangle_count

    def test_optimize_option(self, cylinder_step: str):
        mesh = tessellate_step(cylinder_step, options=TessellationOptions(optimize_vertex_cache=True))
        report = mesh.metadata["vertex_cache"]
        assert report["acmr_after"] <= report["acmr_before"]


class TestUnits:
    """Test cases for output unit conversion."""

    def test_convert_to_metres(self, box_step: str):
        mesh = tessellate_step(box_step, options=TessellationOptions(target_length_unit="m"))

        assert mesh.metadata["length_unit"] == "m"
        assert mesh.metadata["unit_scale"] == pytest.approx(0.001)
        assert np.allclose(mesh.bounding_box()[1], [0.002, 0.003, 0.004])

    def test_inch_model_to_mm(self):
        mesh = tessellate_step(make_box(length_unit="in"), options=TessellationOptions(target_length_unit="mm"))

        assert mesh.metadata["length_unit"] == "mm"
        assert np.allclose(mesh.bounding_box()[1], [50.8, 76.2, 101.6])

    def test_unknown_target_unit(self):
        mesh = TriangleMesh.from_arrays([(0, 0, 0), (1, 0, 0), (0, 1, 0)], [(0, 1, 2)], {"length_unit": "mm"})
        with pytest.raises(ConfigurationError):
            convert_units(mesh, "furlong")
