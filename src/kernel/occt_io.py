"""Open CASCADE backend.

Reads STEP data with ``STEPControl_Reader``, meshes the resulting shape with
``BRepMesh_IncrementalMesh`` using the same chord and angular tolerances as
the native pipeline, and welds the per-face triangulations into a
``TriangleMesh``. Both the OCP (CadQuery) and the ``OCC.Core``
(pythonocc-core) bindings are supported; whichever imports first is used.
"""

from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass
from typing import Any, Callable, Optional

import numpy as np
import structlog

from .config import TessellationOptions
from .errors import BackendNotAvailableError, ParseError, PipelineCancelled
from .mesh import TriangleMesh, vertex_normals

logger = structlog.get_logger(__name__)

INSTALL_HINT = (
    "No OCCT Python binding available. Install one of:\n"
    "  conda install -c conda-forge pythonocc-core\n"
    "  OR\n"
    "  pip install cadquery-ocp"
)


@dataclass
class _Binding:
    """Handles to the OCCT classes used here, resolved for one binding."""

    name: str
    version: str
    reader: Callable[[], Any]
    ret_done: Any
    interface_static: Any
    incremental_mesh: Callable[..., Any]
    explorer: Callable[..., Any]
    face_kind: Any
    reversed_orientation: Any
    location: Callable[[], Any]
    triangulation: Callable[[Any, Any], Any]
    to_face: Callable[[Any], Any]


def _try_ocp() -> Optional[_Binding]:
    try:
        import OCP
        from OCP.BRep import BRep_Tool
        from OCP.BRepMesh import BRepMesh_IncrementalMesh
        from OCP.IFSelect import IFSelect_RetDone
        from OCP.Interface import Interface_Static
        from OCP.STEPControl import STEPControl_Reader
        from OCP.TopAbs import TopAbs_FACE, TopAbs_REVERSED
        from OCP.TopExp import TopExp_Explorer
        from OCP.TopLoc import TopLoc_Location
        from OCP.TopoDS import TopoDS
    except ImportError:
        logger.debug("OCP not available")
        return None
    return _Binding(
        name="OCP",
        version=str(getattr(OCP, "__version__", "unknown")),
        reader=STEPControl_Reader,
        ret_done=IFSelect_RetDone,
        interface_static=Interface_Static,
        incremental_mesh=BRepMesh_IncrementalMesh,
        explorer=TopExp_Explorer,
        face_kind=TopAbs_FACE,
        reversed_orientation=TopAbs_REVERSED,
        location=TopLoc_Location,
        triangulation=BRep_Tool.Triangulation_s,
        to_face=TopoDS.Face_s,
    )


def _try_pythonocc() -> Optional[_Binding]:
    try:
        from OCC.Core import VERSION
        from OCC.Core.BRep import BRep_Tool
        from OCC.Core.BRepMesh import BRepMesh_IncrementalMesh
        from OCC.Core.IFSelect import IFSelect_RetDone
        from OCC.Core.Interface import Interface_Static
        from OCC.Core.STEPControl import STEPControl_Reader
        from OCC.Core.TopAbs import TopAbs_FACE, TopAbs_REVERSED
        from OCC.Core.TopExp import TopExp_Explorer
        from OCC.Core.TopLoc import TopLoc_Location
        from OCC.Core.TopoDS import topods
    except ImportError:
        logger.debug("pythonocc-core not available")
        return None
    return _Binding(
        name="pythonOCC",
        version=str(VERSION),
        reader=STEPControl_Reader,
        ret_done=IFSelect_RetDone,
        interface_static=Interface_Static,
        incremental_mesh=BRepMesh_IncrementalMesh,
        explorer=TopExp_Explorer,
        face_kind=TopAbs_FACE,
        reversed_orientation=TopAbs_REVERSED,
        location=TopLoc_Location,
        triangulation=BRep_Tool.Triangulation,
        to_face=topods.Face,
    )


def _load_binding() -> _Binding:
    for loader in (_try_ocp, _try_pythonocc):
        binding = loader()
        if binding is not None:
            return binding
    raise BackendNotAvailableError(INSTALL_HINT)


def get_occt_info() -> dict[str, Any]:
    """Report which OCCT bindings can be imported.

    Returns:
        Dictionary with per-binding availability, the binding that would be
        used and its version
    """
    info: dict[str, Any] = {
        "OCP_available": False,
        "pythonOCC_available": False,
        "recommended_binding": None,
        "occt_version": None,
    }
    for key, loader in (("OCP_available", _try_ocp), ("pythonOCC_available", _try_pythonocc)):
        binding = loader()
        if binding is None:
            continue
        info[key] = True
        if info["recommended_binding"] is None:
            info["recommended_binding"] = binding.name
            info["occt_version"] = binding.version
            logger.info("OCCT binding detected", binding=binding.name, version=binding.version)
    return info


def is_available() -> bool:
    return _try_ocp() is not None or _try_pythonocc() is not None


def _read_shape(binding: _Binding, data: bytes) -> Any:
    binding.interface_static.SetCVal("xstep.cascade.unit", "MM")
    fd, path = tempfile.mkstemp(suffix=".step")
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)
        reader = binding.reader()
        status = reader.ReadFile(path)
        if status != binding.ret_done:
            raise ParseError(f"OCCT STEP reader failed with status {status}")
        roots = reader.NbRootsForTransfer()
        if roots == 0:
            raise ParseError("no transferable geometry roots in STEP data")
        reader.TransferRoots()
        shape = reader.OneShape()
        if shape.IsNull():
            raise ParseError("OCCT produced an empty shape from STEP data")
        logger.debug("Read STEP shape with OCCT", binding=binding.name, roots=roots)
        return shape
    finally:
        os.unlink(path)


def _collect_triangles(binding: _Binding, shape: Any, cancel: Any) -> tuple[np.ndarray, np.ndarray]:
    positions: list[tuple[float, float, float]] = []
    triangles: list[tuple[int, int, int]] = []
    explorer = binding.explorer(shape, binding.face_kind)
    while explorer.More():
        if cancel is not None and cancel.cancelled:
            raise PipelineCancelled("tessellation cancelled")
        face = binding.to_face(explorer.Current())
        location = binding.location()
        triangulation = binding.triangulation(face, location)
        explorer.Next()
        if triangulation is None:
            continue
        transform = location.Transformation()
        base = len(positions)
        for i in range(1, triangulation.NbNodes() + 1):
            p = triangulation.Node(i).Transformed(transform)
            positions.append((p.X(), p.Y(), p.Z()))
        flip = face.Orientation() == binding.reversed_orientation
        for i in range(1, triangulation.NbTriangles() + 1):
            a, b, c = triangulation.Triangle(i).Get()
            if flip:
                b, c = c, b
            triangles.append((base + a - 1, base + b - 1, base + c - 1))
    return np.array(positions, dtype=float).reshape(-1, 3), np.array(triangles, dtype=np.int64).reshape(-1, 3)


def _weld_by_position(positions: np.ndarray, indices: np.ndarray, epsilon: float) -> tuple[np.ndarray, np.ndarray]:
    """Merge coincident nodes; OCCT meshes each face separately."""
    if not len(positions):
        return positions, indices
    scale = max(float(np.ptp(positions, axis=0).max()), 1.0)
    quantum = max(epsilon, 1e-12) * scale
    keys = np.round(positions / quantum).astype(np.int64)
    _, first, inverse = np.unique(keys, axis=0, return_index=True, return_inverse=True)
    inverse = inverse.reshape(-1)
    welded = inverse[indices]
    keep = (welded[:, 0] != welded[:, 1]) & (welded[:, 1] != welded[:, 2]) & (welded[:, 0] != welded[:, 2])
    return positions[first], welded[keep]


def tessellate_with_occt(data: bytes, options: TessellationOptions, cancel: Any = None) -> TriangleMesh:
    """Tessellate STEP data with OpenCASCADE.

    Raises:
        BackendNotAvailableError: If no OCCT binding is installed
        ParseError: If OCCT cannot read the data
        PipelineCancelled: If ``cancel`` fires between faces
    """
    binding = _load_binding()
    shape = _read_shape(binding, data)
    binding.incremental_mesh(shape, options.chord_tolerance, False, options.angular_tolerance, True)
    raw_positions, raw_indices = _collect_triangles(binding, shape, cancel)
    positions, indices = _weld_by_position(raw_positions, raw_indices, options.point_epsilon)
    mesh = TriangleMesh(
        positions,
        vertex_normals(positions, indices),
        indices,
        {"backend": "occt", "occt_binding": binding.name, "occt_version": binding.version,
         "length_unit": "mm"},
    )
    logger.info("OCCT tessellation complete", binding=binding.name, triangles=mesh.triangle_count)
    return mesh
