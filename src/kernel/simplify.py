"""Quadric-error edge-collapse simplification (Garland and Heckbert).

Each vertex carries the sum of the plane quadrics of its incident
triangles; collapsing an edge merges the quadrics and places the surviving
vertex at the best of the two endpoints and their midpoint. Collapses run
cheapest first with ties broken by the lowest vertex indices, so results
are deterministic.
"""

from __future__ import annotations

import heapq
import math
from typing import List, Optional, Set, Tuple

import numpy as np
import structlog

from .errors import SimplifyError
from .mesh import TriangleMesh, vertex_normals

logger = structlog.get_logger(__name__)

_AREA_EPSILON = 1e-12


def _plane_quadrics(positions: np.ndarray, indices: np.ndarray) -> np.ndarray:
    quadrics = np.zeros((len(positions), 4, 4))
    if not len(indices):
        return quadrics
    p = positions[indices]
    n = np.cross(p[:, 1] - p[:, 0], p[:, 2] - p[:, 0])
    length = np.linalg.norm(n, axis=1, keepdims=True)
    n = np.divide(n, length, out=np.zeros_like(n), where=length > 1e-30)
    d = -np.einsum("ij,ij->i", n, p[:, 0])
    planes = np.concatenate([n, d[:, None]], axis=1)
    kp = np.einsum("ij,ik->ijk", planes, planes)
    for corner in range(3):
        np.add.at(quadrics, indices[:, corner], kp)
    return quadrics


def _quadric_cost(q: np.ndarray, point: np.ndarray) -> float:
    h = np.append(point, 1.0)
    return max(float(h @ q @ h), 0.0)


class _Simplifier:
    def __init__(self, mesh: TriangleMesh) -> None:
        self.positions = mesh.positions.astype(float).copy()
        self.triangles: List[List[int]] = mesh.indices.tolist()
        self.alive = [True] * len(self.triangles)
        self.live_count = len(self.triangles)
        self.vertex_triangles: List[Set[int]] = [set() for _ in range(len(self.positions))]
        for t, tri in enumerate(self.triangles):
            for v in tri:
                self.vertex_triangles[v].add(t)
        self.quadrics = _plane_quadrics(self.positions, mesh.indices)
        self.version = [0] * len(self.positions)
        self.locked = self._boundary_vertices(mesh)
        self.heap: List[Tuple[float, int, int, int, int, Tuple[float, float, float]]] = []
        self.max_error = 0.0
        self.collapses = 0

    @staticmethod
    def _boundary_vertices(mesh: TriangleMesh) -> List[bool]:
        locked = [False] * mesh.vertex_count
        for (a, b), uses in mesh.edge_use_counts().items():
            if uses != 2:
                locked[a] = locked[b] = True
        return locked

    def neighbours(self, v: int) -> Set[int]:
        out: Set[int] = set()
        for t in self.vertex_triangles[v]:
            out.update(self.triangles[t])
        out.discard(v)
        return out

    def push(self, a: int, b: int) -> None:
        if a > b:
            a, b = b, a
        if self.locked[a] and self.locked[b]:
            return
        q = self.quadrics[a] + self.quadrics[b]
        pa, pb = self.positions[a], self.positions[b]
        if self.locked[a]:
            candidates = [pa]
        elif self.locked[b]:
            candidates = [pb]
        else:
            candidates = [pa, pb, 0.5 * (pa + pb)]
        best_cost, best = math.inf, candidates[0]
        for candidate in candidates:
            cost = _quadric_cost(q, candidate)
            if cost < best_cost:
                best_cost, best = cost, candidate
        heapq.heappush(
            self.heap,
            (best_cost, a, b, self.version[a], self.version[b], tuple(float(x) for x in best)),
        )

    def legal(self, a: int, b: int, target: np.ndarray) -> bool:
        shared = self.vertex_triangles[a] & self.vertex_triangles[b]
        if not shared:
            return False
        # link condition: common neighbours are exactly the opposite corners of the shared triangles
        opposite = {v for t in shared for v in self.triangles[t] if v != a and v != b}
        if self.neighbours(a) & self.neighbours(b) != opposite:
            return False
        for v in (a, b):
            for t in self.vertex_triangles[v] - shared:
                tri = self.triangles[t]
                before = self.positions[tri]
                after = before.copy()
                after[tri.index(v)] = target
                n0 = np.cross(before[1] - before[0], before[2] - before[0])
                n1 = np.cross(after[1] - after[0], after[2] - after[0])
                if 0.5 * np.linalg.norm(n1) <= _AREA_EPSILON:
                    return False
                if float(n0 @ n1) <= 0.0:
                    return False
        return True

    def collapse(self, a: int, b: int, target: np.ndarray) -> None:
        """Merge ``b`` into ``a`` at ``target``."""
        shared = self.vertex_triangles[a] & self.vertex_triangles[b]
        for t in shared:
            self.alive[t] = False
            self.live_count -= 1
            for v in self.triangles[t]:
                self.vertex_triangles[v].discard(t)
        for t in list(self.vertex_triangles[b]):
            tri = self.triangles[t]
            tri[tri.index(b)] = a
            self.vertex_triangles[a].add(t)
        self.vertex_triangles[b] = set()
        self.positions[a] = target
        self.quadrics[a] = self.quadrics[a] + self.quadrics[b]
        self.locked[a] = self.locked[a] or self.locked[b]
        self.version[a] += 1
        self.version[b] += 1
        for n in sorted(self.neighbours(a)):
            self.push(a, n)

    def run(self, target_count: int, max_error: float) -> bool:
        edges = set()
        for a, b, c in self.triangles:
            for u, v in ((a, b), (b, c), (c, a)):
                edges.add((u, v) if u < v else (v, u))
        for a, b in sorted(edges):
            self.push(a, b)

        while self.live_count > target_count and self.heap:
            cost, a, b, va, vb, target = heapq.heappop(self.heap)
            if va != self.version[a] or vb != self.version[b]:
                continue
            error = math.sqrt(cost)
            if error > max_error:
                break
            target = np.array(target)
            if not self.legal(a, b, target):
                continue
            self.collapse(a, b, target)
            self.max_error = max(self.max_error, error)
            self.collapses += 1
        return self.live_count <= target_count

    def result(self, metadata: dict) -> TriangleMesh:
        live = [tri for tri, ok in zip(self.triangles, self.alive) if ok]
        indices = np.array(live, dtype=np.int64).reshape(-1, 3)
        used = np.unique(indices)
        remap = np.full(len(self.positions), -1, dtype=np.int64)
        remap[used] = np.arange(len(used))
        positions = self.positions[used]
        indices = remap[indices]
        return TriangleMesh(positions, vertex_normals(positions, indices), indices, metadata)


def simplify(mesh: TriangleMesh, target_ratio: float, max_error: float = math.inf,
             metadata: Optional[dict] = None) -> TriangleMesh:
    """Reduce the triangle count by quadric-error edge collapse.

    Stops when the triangle count reaches ``floor(target_ratio * original)``
    or when the cheapest remaining collapse would move the surface by more
    than ``max_error`` (model units). Boundary vertices never move.

    Args:
        mesh: Input mesh (not modified)
        target_ratio: Fraction of triangles to keep, in (0, 1]
        max_error: Largest collapse error to accept, >= 0
        metadata: Extra metadata to merge into the result

    Returns:
        New mesh whose ``metadata["simplify"]`` reports ``error`` (largest
        collapse error), ``original_triangles``, ``target_triangles`` and
        ``target_reached``

    Raises:
        SimplifyError: On parameters out of range or an invalid input mesh
    """
    if not isinstance(target_ratio, (int, float)) or not 0 < target_ratio <= 1:
        raise SimplifyError(f"target_ratio must be in (0, 1], got {target_ratio!r}")
    if not isinstance(max_error, (int, float)) or math.isnan(max_error) or max_error < 0:
        raise SimplifyError(f"max_error must be >= 0, got {max_error!r}")
    problems = mesh.validate(area_epsilon=-1.0)
    if problems:
        raise SimplifyError(f"invalid input mesh: {'; '.join(problems)}")

    original = mesh.triangle_count
    target_count = int(math.floor(target_ratio * original))
    simplifier = _Simplifier(mesh)
    reached = simplifier.run(target_count, max_error)

    report = {
        "error": simplifier.max_error,
        "original_triangles": original,
        "target_triangles": target_count,
        "target_reached": reached,
        "collapses": simplifier.collapses,
    }
    merged = dict(mesh.metadata)
    merged.update(metadata or {})
    merged["simplify"] = report
    result = simplifier.result(merged)
    logger.info(
        "Simplified mesh",
        original_triangles=original,
        triangles=result.triangle_count,
        target_reached=reached,
        max_error=simplifier.max_error,
    )
    return result
