"""Shared edge sampling.

Every edge is discretized exactly once and all faces that use it consume the
same sample sequence (reversed for backward uses), so adjacent patches agree
on their common boundary position for position. Sample endpoints are the
exact topological vertex positions.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Dict, Hashable, List, Optional, Tuple

import numpy as np
import structlog

from .topology import Edge, OrientedEdge

logger = structlog.get_logger(__name__)

# ("v", vertex_id) | ("e", edge_id, sample_index) | face-local keys; None = interior
WeldKey = Optional[Tuple[Hashable, ...]]

_MIN_CLOSED_SEGMENTS = 3


@dataclass(frozen=True)
class EdgeSamples:
    """Immutable discretization of one edge, in edge direction."""

    edge_id: int
    params: np.ndarray
    points: np.ndarray
    keys: Tuple[WeldKey, ...]

    def __len__(self) -> int:
        return len(self.keys)

    def oriented(self, forward: bool) -> Tuple[np.ndarray, List[WeldKey]]:
        """Points and weld keys in loop-use order."""
        if forward:
            return self.points, list(self.keys)
        return self.points[::-1], list(reversed(self.keys))


def sample_edge(edge: Edge, tolerance: float, max_angle: float) -> EdgeSamples:
    """Discretize ``edge`` within the chord ``tolerance``."""
    curve = edge.curve
    t0, t1 = curve.edge_range(edge.start.point, edge.end.point, edge.same_sense, edge.closed)
    params = np.asarray(curve.sample(t0, t1, tolerance, max_angle), dtype=float)
    if edge.closed and len(params) < _MIN_CLOSED_SEGMENTS + 1:
        params = np.linspace(t0, t1, _MIN_CLOSED_SEGMENTS + 1)
    points = np.array(curve.points(params), dtype=float)
    points[0] = edge.start.point
    points[-1] = edge.end.point

    keys: List[WeldKey] = [("v", edge.start.id)]
    keys.extend(("e", edge.id, i) for i in range(1, len(params) - 1))
    keys.append(("v", edge.end.id))

    params.setflags(write=False)
    points.setflags(write=False)
    return EdgeSamples(edge_id=edge.id, params=params, points=points, keys=tuple(keys))


class EdgeSampleCache:
    """Compute-once memo of edge samples keyed by edge entity id.

    Safe for concurrent use: the first caller for an edge computes its samples
    while holding that edge's lock, later callers block on the lock and then
    read the published result.
    """

    def __init__(self, tolerance: float, max_angle: float) -> None:
        self.tolerance = tolerance
        self.max_angle = max_angle
        self._samples: Dict[int, EdgeSamples] = {}
        self._locks: Dict[int, threading.Lock] = {}
        self._guard = threading.Lock()
        self.computed = 0

    def __len__(self) -> int:
        return len(self._samples)

    def __contains__(self, edge_id: object) -> bool:
        return edge_id in self._samples

    def get(self, edge: Edge) -> EdgeSamples:
        samples = self._samples.get(edge.id)
        if samples is not None:
            return samples
        with self._guard:
            lock = self._locks.setdefault(edge.id, threading.Lock())
        with lock:
            samples = self._samples.get(edge.id)
            if samples is None:
                samples = sample_edge(edge, self.tolerance, self.max_angle)
                self._samples[edge.id] = samples
                with self._guard:
                    self.computed += 1
                logger.debug("Sampled edge", edge_id=edge.id, samples=len(samples))
        return samples

    def loop_points(self, uses: List[OrientedEdge]) -> Tuple[np.ndarray, List[WeldKey]]:
        """Concatenate the samples of a closed loop, without repeating shared endpoints."""
        chunks: List[np.ndarray] = []
        keys: List[WeldKey] = []
        for use in uses:
            points, use_keys = self.get(use.edge).oriented(use.forward)
            chunks.append(points[:-1])
            keys.extend(use_keys[:-1])
        return np.concatenate(chunks, axis=0), keys
