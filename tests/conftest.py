"""Pytest configuration and shared fixtures.

Provides STEP text builders for small BREP models (box, cylinder, holed
plate, dome, sphere, pointed cone) and common fixtures for the stepmesh
test suite.
"""

from __future__ import annotations

import math
import tempfile
from pathlib import Path
from typing import Dict, Generator, List, Optional, Sequence, Tuple

import numpy as np
import pytest
import structlog

from kernel.occt_io import get_occt_info


def configure_test_logging() -> None:
    """Route structlog events into a fresh ``LogCapture`` with no level filter."""
    structlog.reset_defaults()
    structlog.configure(
        processors=[
            structlog.testing.LogCapture(),
        ],
        logger_factory=structlog.testing.ReturnLoggerFactory(),
        cache_logger_on_first_use=False,
    )


# Configure test logging
configure_test_logging()


@pytest.fixture(autouse=True)
def reset_logging() -> Generator[None, None, None]:
    """Restore capture logging after tests that reconfigure structlog (CLI, MCP)."""
    yield
    configure_test_logging()


def _fmt(value: float) -> str:
    text = repr(float(value))
    return text if ("." in text or "e" in text) else text + "."


class StepBuilder:
    """Emit a minimal AP214 STEP file one entity at a time."""

    def __init__(self, length_unit: str = "mm") -> None:
        self.lines: List[str] = []
        self.next_id = 1
        self.vertices: Dict[Tuple[float, float, float], int] = {}
        self.edges: Dict[Tuple[int, int], int] = {}
        self.length_unit = length_unit

    def add(self, text: str) -> int:
        entity_id = self.next_id
        self.next_id += 1
        self.lines.append(f"#{entity_id} = {text};")
        return entity_id

    # -- geometry ------------------------------------------------------

    def point(self, xyz: Sequence[float]) -> int:
        return self.add(f"CARTESIAN_POINT('',({','.join(_fmt(c) for c in xyz)}))")

    def direction(self, xyz: Sequence[float]) -> int:
        return self.add(f"DIRECTION('',({','.join(_fmt(c) for c in xyz)}))")

    def placement(self, origin: Sequence[float], axis: Sequence[float] = (0, 0, 1),
                  ref: Sequence[float] = (1, 0, 0)) -> int:
        p = self.point(origin)
        a = self.direction(axis)
        r = self.direction(ref)
        return self.add(f"AXIS2_PLACEMENT_3D('',#{p},#{a},#{r})")

    def vertex(self, xyz: Sequence[float]) -> int:
        key = tuple(float(c) for c in xyz)
        if key not in self.vertices:
            self.vertices[key] = self.add(f"VERTEX_POINT('',#{self.point(key)})")
        return self.vertices[key]

    def line_edge(self, a: Sequence[float], b: Sequence[float]) -> int:
        va, vb = self.vertex(a), self.vertex(b)
        d = np.asarray(b, dtype=float) - np.asarray(a, dtype=float)
        length = float(np.linalg.norm(d))
        direction = self.direction(d / length)
        vector = self.add(f"VECTOR('',#{direction},{_fmt(length)})")
        line = self.add(f"LINE('',#{self.point(a)},#{vector})")
        edge = self.add(f"EDGE_CURVE('',#{va},#{vb},#{line},.T.)")
        self.edges[(va, vb)] = edge
        return edge

    def circle_edge(self, centre: Sequence[float], radius: float,
                    axis: Sequence[float] = (0, 0, 1)) -> int:
        """Closed circular edge whose single vertex lies on the frame's x axis."""
        frame = self.placement(centre, axis, (1, 0, 0))
        circle = self.add(f"CIRCLE('',#{frame},{_fmt(radius)})")
        v = self.vertex((centre[0] + radius, centre[1], centre[2]))
        return self.add(f"EDGE_CURVE('',#{v},#{v},#{circle},.T.)")

    def arc_edge(self, centre: Sequence[float], radius: float, axis: Sequence[float],
                 ref: Sequence[float], start: Sequence[float], end: Sequence[float]) -> int:
        """Circular arc from ``start`` to ``end``, counter-clockwise about ``axis``."""
        circle = self.add(f"CIRCLE('',#{self.placement(centre, axis, ref)},{_fmt(radius)})")
        return self.add(f"EDGE_CURVE('',#{self.vertex(start)},#{self.vertex(end)},#{circle},.T.)")

    def oriented(self, edge: int, forward: bool = True) -> int:
        return self.add(f"ORIENTED_EDGE('',*,*,#{edge},{'.T.' if forward else '.F.'})")

    def bound(self, uses: Sequence[Tuple[int, bool]], outer: bool = True, sense: bool = True) -> int:
        oriented = [self.oriented(edge, forward) for edge, forward in uses]
        loop = self.add(f"EDGE_LOOP('',({','.join(f'#{o}' for o in oriented)}))")
        kind = "FACE_OUTER_BOUND" if outer else "FACE_BOUND"
        return self.add(f"{kind}('',#{loop},{'.T.' if sense else '.F.'})")

    def polygon_bound(self, points: Sequence[Sequence[float]], outer: bool = True) -> int:
        """Bound through ``points`` in order, reusing edges created for earlier faces."""
        uses = []
        for a, b in zip(points, list(points[1:]) + [points[0]]):
            va, vb = self.vertex(a), self.vertex(b)
            if (va, vb) in self.edges:
                uses.append((self.edges[(va, vb)], True))
            elif (vb, va) in self.edges:
                uses.append((self.edges[(vb, va)], False))
            else:
                uses.append((self.line_edge(a, b), True))
        return self.bound(uses, outer=outer)

    def face(self, bounds: Sequence[int], surface: int, same_sense: bool = True) -> int:
        refs = ",".join(f"#{b}" for b in bounds)
        return self.add(f"ADVANCED_FACE('',({refs}),#{surface},{'.T.' if same_sense else '.F.'})")

    def plane(self, origin: Sequence[float], normal: Sequence[float], ref: Sequence[float]) -> int:
        return self.add(f"PLANE('',#{self.placement(origin, normal, ref)})")

    # -- roots ---------------------------------------------------------

    def closed_solid(self, faces: Sequence[int]) -> int:
        shell = self.add(f"CLOSED_SHELL('',({','.join(f'#{f}' for f in faces)}))")
        return self.add(f"MANIFOLD_SOLID_BREP('',#{shell})")

    def surface_model(self, faces: Sequence[int]) -> int:
        shell = self.add(f"OPEN_SHELL('',({','.join(f'#{f}' for f in faces)}))")
        return self.add(f"SHELL_BASED_SURFACE_MODEL('',(#{shell}))")

    def _units(self) -> None:
        if self.length_unit == "in":
            metre = self.add("(LENGTH_UNIT() NAMED_UNIT(*) SI_UNIT(.MILLI.,.METRE.))")
            measure = self.add(f"LENGTH_MEASURE_WITH_UNIT(LENGTH_MEASURE(25.4),#{metre})")
            length = self.add(f"(CONVERSION_BASED_UNIT('INCH',#{measure}) LENGTH_UNIT() NAMED_UNIT(*))")
        else:
            prefix = {"mm": ".MILLI.", "m": "$", "cm": ".CENTI."}[self.length_unit]
            length = self.add(f"(LENGTH_UNIT() NAMED_UNIT(*) SI_UNIT({prefix},.METRE.))")
        angle = self.add("(NAMED_UNIT(*) PLANE_ANGLE_UNIT() SI_UNIT($,.RADIAN.))")
        self.add(
            f"(GEOMETRIC_REPRESENTATION_CONTEXT(3) GLOBAL_UNIT_ASSIGNED_CONTEXT((#{length},#{angle})) "
            "REPRESENTATION_CONTEXT('',''))"
        )

    def text(self) -> str:
        self._units()
        return "\n".join([
            "ISO-10303-21;",
            "HEADER;",
            "FILE_DESCRIPTION(('stepmesh test model'),'2;1');",
            "FILE_NAME('test.step','2024-01-01T12:00:00',('Test'),('stepmesh'),'','','');",
            "FILE_SCHEMA(('AUTOMOTIVE_DESIGN'));",
            "ENDSEC;",
            "DATA;",
            *self.lines,
            "ENDSEC;",
            "END-ISO-10303-21;",
            "",
        ])


def wrap(*data_lines: str, schema: str = "AUTOMOTIVE_DESIGN") -> str:
    """Wrap DATA section lines in a minimal STEP file."""
    return "\n".join([
        "ISO-10303-21;",
        "HEADER;",
        "FILE_DESCRIPTION(('test'),'2;1');",
        f"FILE_SCHEMA(('{schema}'));",
        "ENDSEC;",
        "DATA;",
        *data_lines,
        "ENDSEC;",
        "END-ISO-10303-21;",
    ])


def make_box(size: Tuple[float, float, float] = (2.0, 3.0, 4.0), length_unit: str = "mm") -> str:
    """Axis-aligned box with outward-facing planar faces."""
    lx, ly, lz = size
    v = [
        (0, 0, 0), (lx, 0, 0), (lx, ly, 0), (0, ly, 0),
        (0, 0, lz), (lx, 0, lz), (lx, ly, lz), (0, ly, lz),
    ]
    cycles = [
        ((0, 3, 2, 1), (0, 0, -1)),
        ((4, 5, 6, 7), (0, 0, 1)),
        ((0, 1, 5, 4), (0, -1, 0)),
        ((3, 7, 6, 2), (0, 1, 0)),
        ((0, 4, 7, 3), (-1, 0, 0)),
        ((1, 2, 6, 5), (1, 0, 0)),
    ]
    b = StepBuilder(length_unit)
    faces = []
    for cycle, normal in cycles:
        points = [v[i] for i in cycle]
        ref = np.subtract(points[1], points[0])
        bound = b.polygon_bound(points)
        faces.append(b.face([bound], b.plane(points[0], normal, ref / np.linalg.norm(ref))))
    b.closed_solid(faces)
    return b.text()


def make_cylinder(radius: float = 5.0, height: float = 10.0, seam: bool = True) -> str:
    """Closed cylinder; the side face is cut along a seam edge unless ``seam`` is False."""
    b = StepBuilder()
    bottom = b.circle_edge((0, 0, 0), radius)
    top = b.circle_edge((0, 0, height), radius)
    surface = b.add(f"CYLINDRICAL_SURFACE('',#{b.placement((0, 0, 0))},{_fmt(radius)})")
    if seam:
        seam_edge = b.line_edge((radius, 0, 0), (radius, 0, height))
        side_bounds = [b.bound([(bottom, True), (seam_edge, True), (top, False), (seam_edge, False)])]
    else:
        side_bounds = [b.bound([(bottom, True)]), b.bound([(top, False)], outer=False)]
    side = b.face(side_bounds, surface)
    top_face = b.face([b.bound([(top, True)])], b.plane((0, 0, height), (0, 0, 1), (1, 0, 0)))
    bottom_face = b.face([b.bound([(bottom, False)])], b.plane((0, 0, 0), (0, 0, -1), (1, 0, 0)))
    b.closed_solid([side, top_face, bottom_face])
    return b.text()


def make_holed_plate(size: float = 10.0, hole: Tuple[float, float] = (3.0, 7.0)) -> str:
    """Square planar sheet with a square hole, as an open surface model."""
    b = StepBuilder()
    lo, hi = hole
    outer = b.polygon_bound([(0, 0, 0), (size, 0, 0), (size, size, 0), (0, size, 0)])
    inner = b.polygon_bound([(lo, lo, 0), (lo, hi, 0), (hi, hi, 0), (hi, lo, 0)], outer=False)
    face = b.face([outer, inner], b.plane((0, 0, 0), (0, 0, 1), (1, 0, 0)))
    b.surface_model([face])
    return b.text()


def make_dome(radius: float = 5.0) -> str:
    """Hemisphere closed by a planar disk; the spherical face is bounded by its equator only."""
    b = StepBuilder()
    equator = b.circle_edge((0, 0, 0), radius)
    sphere = b.add(f"SPHERICAL_SURFACE('',#{b.placement((0, 0, 0))},{_fmt(radius)})")
    cap = b.face([b.bound([(equator, True)])], sphere)
    disk = b.face([b.bound([(equator, False)])], b.plane((0, 0, 0), (0, 0, -1), (1, 0, 0)))
    b.closed_solid([cap, disk])
    return b.text()


def make_sphere(radius: float = 5.0) -> str:
    """Full sphere as one face bounded by a pole-to-pole seam used in both directions."""
    b = StepBuilder()
    seam = b.arc_edge((0, 0, 0), radius, (0, -1, 0), (0, 0, -1), (0, 0, -radius), (0, 0, radius))
    sphere = b.add(f"SPHERICAL_SURFACE('',#{b.placement((0, 0, 0))},{_fmt(radius)})")
    face = b.face([b.bound([(seam, True), (seam, False)])], sphere)
    b.closed_solid([face])
    return b.text()


def make_cone(radius: float = 5.0, height: float = 10.0, start: int = 0) -> str:
    """Pointed cone on a disk; the side is cut by a seam from the base circle to the apex.

    ``start`` rotates the side loop so a different edge use comes first.
    """
    b = StepBuilder()
    base = b.circle_edge((0, 0, 0), radius)
    seam = b.line_edge((radius, 0, 0), (0, 0, height))
    # placed at the base and opening downwards, so the apex lies above it
    frame = b.placement((0, 0, 0), (0, 0, -1), (1, 0, 0))
    cone = b.add(f"CONICAL_SURFACE('',#{frame},{_fmt(radius)},{_fmt(math.atan2(radius, height))})")
    uses = [(base, True), (seam, True), (seam, False)]
    uses = uses[start:] + uses[:start]
    side = b.face([b.bound(uses)], cone)
    disk = b.face([b.bound([(base, False)])], b.plane((0, 0, 0), (0, 0, -1), (1, 0, 0)))
    b.closed_solid([side, disk])
    return b.text()


def make_fin(faces: int = 3) -> str:
    """Up to three triangles hinged on one edge, as an open surface model."""
    b = StepBuilder()
    hinge = [(0, 0, 0), (1, 0, 0)]
    triangles = [
        ([hinge[0], hinge[1], (0.5, 1, 0)], (0, 0, 1)),
        ([hinge[1], hinge[0], (0.5, -1, 0)], (0, 0, 1)),
        ([hinge[0], hinge[1], (0.5, 0, 1)], (0, -1, 0)),
    ][:faces]
    built = []
    for points, normal in triangles:
        bound = b.polygon_bound(points)
        built.append(b.face([bound], b.plane(points[0], normal, (1, 0, 0))))
    b.surface_model(built)
    return b.text()


def make_heightfield(nx: int = 100, ny: int = 50) -> Tuple[np.ndarray, np.ndarray]:
    """Gently curved open grid with ``2 * nx * ny`` triangles."""
    xs, ys = np.meshgrid(np.linspace(0.0, 10.0, nx + 1), np.linspace(0.0, 5.0, ny + 1), indexing="ij")
    zs = 0.2 * np.sin(xs) * np.cos(ys)
    positions = np.stack([xs.ravel(), ys.ravel(), zs.ravel()], axis=-1)
    triangles = []
    for i in range(nx):
        for j in range(ny):
            a = i * (ny + 1) + j
            b = (i + 1) * (ny + 1) + j
            triangles.append((a, b, b + 1))
            triangles.append((a, b + 1, a + 1))
    return positions, np.array(triangles, dtype=np.int64)


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Provide a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def box_step() -> str:
    return make_box()


@pytest.fixture
def cylinder_step() -> str:
    return make_cylinder()


@pytest.fixture
def holed_plate_step() -> str:
    return make_holed_plate()


@pytest.fixture
def dome_step() -> str:
    return make_dome()


@pytest.fixture
def box_step_file(temp_dir: Path, box_step: str) -> Path:
    """Write the box model to disk."""
    step_file = temp_dir / "box.step"
    step_file.write_text(box_step, encoding="latin-1")
    return step_file


@pytest.fixture
def cylinder_step_file(temp_dir: Path, cylinder_step: str) -> Path:
    step_file = temp_dir / "cylinder.step"
    step_file.write_text(cylinder_step, encoding="latin-1")
    return step_file


@pytest.fixture
def skip_if_no_occt():
    """Skip test if no OCCT binding is available."""
    occt_info = get_occt_info()
    if not occt_info["OCP_available"] and not occt_info["pythonOCC_available"]:
        pytest.skip("No OCCT binding available (OCP or pythonOCC required)")


def regular_polygon(n: int, radius: float = 1.0) -> List[Tuple[float, float, float]]:
    return [(radius * math.cos(2 * math.pi * k / n), radius * math.sin(2 * math.pi * k / n), 0.0)
            for k in range(n)]


def capture(event: Optional[str] = None):
    """Return the LogCapture processor installed above."""
    processor = structlog.get_config()["processors"][0]
    if event is not None:
        return [e for e in processor.entries if e.get("event") == event]
    return processor
