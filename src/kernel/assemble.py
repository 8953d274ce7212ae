"""Mesh assembly: weld per-face patches into one indexed triangle mesh."""

from __future__ import annotations

from typing import Any, Dict, Hashable, List, Optional

import numpy as np
import structlog

from .errors import TessellationError
from .mesh import TriangleMesh, vertex_normals
from .tessellate import MeshPatch

logger = structlog.get_logger(__name__)


def assemble(patches: List[MeshPatch], metadata: Optional[Dict[str, Any]] = None) -> TriangleMesh:
    """Concatenate patches in face order through the weld map.

    Positions with the same weld key become one global vertex; the first
    patch to mention a key supplies its position. Interior positions always
    get fresh indices.

    Raises:
        TessellationError: If the output triangle count does not match the
            patches (an internal invariant)
    """
    weld: Dict[Hashable, int] = {}
    positions: List[np.ndarray] = []
    index_chunks: List[np.ndarray] = []
    count = 0

    for patch in sorted(patches, key=lambda p: p.face_index):
        local_to_global = np.empty(len(patch.positions), dtype=np.int64)
        fresh = []
        for i, key in enumerate(patch.keys):
            if key is None:
                local_to_global[i] = count
                fresh.append(i)
                count += 1
                continue
            index = weld.get(key)
            if index is None:
                index = weld[key] = count
                fresh.append(i)
                count += 1
            local_to_global[i] = index
        positions.append(patch.positions[fresh])
        index_chunks.append(local_to_global[patch.triangles])

    expected = sum(p.triangle_count for p in patches)
    all_positions = np.vstack(positions) if positions else np.zeros((0, 3))
    indices = np.vstack(index_chunks) if index_chunks else np.zeros((0, 3), dtype=np.int64)
    if len(indices) != expected:
        raise TessellationError(f"assembled {len(indices)} triangles from patches holding {expected}")

    mesh = TriangleMesh(all_positions, vertex_normals(all_positions, indices), indices, dict(metadata or {}))
    logger.debug(
        "Assembled mesh",
        patches=len(patches),
        vertices=mesh.vertex_count,
        triangles=mesh.triangle_count,
        welded_keys=len(weld),
    )
    return mesh
