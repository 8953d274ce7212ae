"""Triangle mesh value type and mesh-level checks."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, List, Tuple

import numpy as np


def vertex_normals(positions: np.ndarray, indices: np.ndarray) -> np.ndarray:
    """Area-weighted per-vertex normals.

    Each triangle contributes its unnormalized cross product (twice its
    area times its unit normal) to its three corners.
    """
    normals = np.zeros_like(positions, dtype=float)
    if len(indices):
        p = positions[indices]
        n = np.cross(p[:, 1] - p[:, 0], p[:, 2] - p[:, 0])
        for corner in range(3):
            np.add.at(normals, indices[:, corner], n)
    length = np.linalg.norm(normals, axis=1, keepdims=True)
    unit = np.divide(normals, length, out=np.zeros_like(normals), where=length > 1e-30)
    unit[length[:, 0] <= 1e-30] = (0.0, 0.0, 1.0)
    return unit


@dataclass
class TriangleMesh:
    """Positions, parallel normals and triangle index triples.

    Attributes:
        positions: ``(n, 3)`` float array
        normals: ``(n, 3)`` unit vectors, parallel to ``positions``
        indices: ``(m, 3)`` int array of counter-clockwise triangles
        metadata: Backend, units, tolerance and processing reports
    """

    positions: np.ndarray
    normals: np.ndarray
    indices: np.ndarray
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.positions = np.asarray(self.positions, dtype=float).reshape(-1, 3)
        self.normals = np.asarray(self.normals, dtype=float).reshape(-1, 3)
        self.indices = np.asarray(self.indices, dtype=np.int64).reshape(-1, 3)

    @classmethod
    def from_arrays(cls, positions: Any, indices: Any, metadata: Dict[str, Any] | None = None) -> "TriangleMesh":
        """Build a mesh and compute its area-weighted normals."""
        positions = np.asarray(positions, dtype=float).reshape(-1, 3)
        indices = np.asarray(indices, dtype=np.int64).reshape(-1, 3)
        return cls(positions, vertex_normals(positions, indices), indices, dict(metadata or {}))

    @property
    def vertex_count(self) -> int:
        return int(len(self.positions))

    @property
    def triangle_count(self) -> int:
        return int(len(self.indices))

    def copy(self) -> "TriangleMesh":
        return TriangleMesh(self.positions.copy(), self.normals.copy(), self.indices.copy(),
                            dict(self.metadata))

    def triangle_areas(self) -> np.ndarray:
        if not self.triangle_count:
            return np.zeros(0)
        p = self.positions[self.indices]
        return 0.5 * np.linalg.norm(np.cross(p[:, 1] - p[:, 0], p[:, 2] - p[:, 0]), axis=1)

    def face_normals(self) -> np.ndarray:
        p = self.positions[self.indices]
        n = np.cross(p[:, 1] - p[:, 0], p[:, 2] - p[:, 0])
        length = np.linalg.norm(n, axis=1, keepdims=True)
        return np.divide(n, length, out=np.zeros_like(n), where=length > 1e-30)

    def recompute_normals(self) -> None:
        self.normals = vertex_normals(self.positions, self.indices)

    # -- topology checks -----------------------------------------------

    def edge_use_counts(self) -> Counter:
        """Number of triangles using each undirected edge ``(min, max)``."""
        counts: Counter = Counter()
        for a, b, c in self.indices.tolist():
            for u, v in ((a, b), (b, c), (c, a)):
                counts[(u, v) if u < v else (v, u)] += 1
        return counts

    def boundary_edges(self) -> List[Tuple[int, int]]:
        """Directed edges (as they appear in their triangle) used by exactly one triangle."""
        counts = self.edge_use_counts()
        edges = []
        for a, b, c in self.indices.tolist():
            for u, v in ((a, b), (b, c), (c, a)):
                if counts[(u, v) if u < v else (v, u)] == 1:
                    edges.append((u, v))
        return edges

    def boundary_loops(self) -> List[List[int]]:
        """Chain boundary edges into closed vertex loops."""
        successor: Dict[int, List[int]] = {}
        for u, v in self.boundary_edges():
            successor.setdefault(u, []).append(v)
        loops = []
        for start in sorted(successor):
            while successor.get(start):
                loop = [start]
                current = successor[start].pop()
                while current != start:
                    loop.append(current)
                    nxt = successor.get(current)
                    if not nxt:
                        break
                    current = nxt.pop()
                loops.append(loop)
        return loops

    def is_watertight(self) -> bool:
        counts = self.edge_use_counts()
        return bool(counts) and all(n == 2 for n in counts.values())

    def degenerate_triangles(self, area_epsilon: float = 1e-12) -> np.ndarray:
        """Indices of triangles with repeated corners or area at or below ``area_epsilon``."""
        idx = self.indices
        repeated = (idx[:, 0] == idx[:, 1]) | (idx[:, 1] == idx[:, 2]) | (idx[:, 0] == idx[:, 2])
        return np.flatnonzero(repeated | (self.triangle_areas() <= area_epsilon))

    def signed_volume(self) -> float:
        """Enclosed volume (positive for outward-facing closed meshes)."""
        if not self.triangle_count:
            return 0.0
        p = self.positions[self.indices]
        return float(np.einsum("ij,ij->i", p[:, 0], np.cross(p[:, 1], p[:, 2])).sum() / 6.0)

    def surface_area(self) -> float:
        return float(self.triangle_areas().sum())

    def bounding_box(self) -> Tuple[List[float], List[float]]:
        if not self.vertex_count:
            return [0.0, 0.0, 0.0], [0.0, 0.0, 0.0]
        return self.positions.min(axis=0).tolist(), self.positions.max(axis=0).tolist()

    def validate(self, area_epsilon: float = 0.0) -> List[str]:
        """Return a list of invariant violations (empty when the mesh is valid)."""
        problems = []
        if self.normals.shape != self.positions.shape:
            problems.append("normals are not parallel to positions")
        if self.triangle_count:
            if self.indices.min() < 0 or self.indices.max() >= self.vertex_count:
                problems.append("triangle index out of bounds")
                return problems
            if not np.isfinite(self.positions).all():
                problems.append("non-finite positions")
            bad = self.degenerate_triangles(area_epsilon)
            if len(bad):
                problems.append(f"{len(bad)} degenerate triangles")
        return problems
