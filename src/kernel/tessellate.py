"""Per-face surface tessellation.

A face's loops are projected into the surface parameter plane, closed into
a polygon with holes, triangulated with a constrained Delaunay
triangulation (``triangle``) and refined until every triangle lies within
the chord tolerance of the surface.

Periodic surfaces need extra care: loop parameters are unwrapped
continuously, holes are moved into the outer loop's period window, and
loops that wind once around the period (a cylinder bounded by two circles,
a sphere cap) are joined along a synthetic seam or closed at the pole.
Loops that run through a pole along a seam edge (a full sphere, a pointed
cone) are unwrapped piecewise and closed by a row of points at the pole.
"""

from __future__ import annotations

import itertools
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
import shapely
import structlog
import triangle
from shapely.geometry import Polygon
from shapely.validation import explain_validity

from .config import TessellationOptions
from .errors import TessellationError
from .geometry import Curve, Surface
from .stitch import EdgeSampleCache, WeldKey
from .topology import Face, Loop

logger = structlog.get_logger(__name__)


@dataclass
class MeshPatch:
    """Triangulated patch for one face.

    ``keys`` names, per position, the topological vertex or edge sample it
    came from; interior points have key ``None``.
    """

    face_index: int
    face_id: int
    positions: np.ndarray
    uv: np.ndarray
    triangles: np.ndarray
    keys: List[WeldKey] = field(default_factory=list)

    @property
    def triangle_count(self) -> int:
        return int(len(self.triangles))


@dataclass
class _Ring:
    uv: np.ndarray
    xyz: np.ndarray
    keys: List[WeldKey]
    outer: bool = False
    winding: Tuple[int, int] = (0, 0)

    def __len__(self) -> int:
        return len(self.keys)

    def rotated(self, start: int) -> "_Ring":
        order = np.roll(np.arange(len(self)), -start)
        return _Ring(self.uv[order], self.xyz[order], [self.keys[i] for i in order],
                     self.outer, self.winding)

    def shifted(self, axis: int, amount: float) -> "_Ring":
        uv = self.uv.copy()
        uv[:, axis] += amount
        return _Ring(uv, self.xyz, list(self.keys), self.outer, self.winding)

    def signed_area(self) -> float:
        x, y = self.uv[:, 0], self.uv[:, 1]
        return 0.5 * float(np.dot(x, np.roll(y, -1)) - np.dot(np.roll(x, -1), y))


class _IsoSegment(Curve):
    """Straight parameter-space segment lifted onto a surface."""

    def __init__(self, surface: Surface, uv0: np.ndarray, uv1: np.ndarray) -> None:
        self.surface = surface
        self.uv0 = np.asarray(uv0, dtype=float)
        self.uv1 = np.asarray(uv1, dtype=float)

    def initial_segments(self, t0: float, t1: float, max_angle: float) -> int:
        return 1

    def uv(self, t: np.ndarray) -> np.ndarray:
        t = np.asarray(t, dtype=float)[..., None]
        return self.uv0 * (1 - t) + self.uv1 * t

    def points(self, t: Any) -> np.ndarray:
        uv = self.uv(t)
        return self.surface.points(uv[..., 0], uv[..., 1])


def _period(surface: Surface, axis: int) -> Optional[float]:
    return surface.period_u if axis == 0 else surface.period_v


def _unwrap(values: np.ndarray, period: float) -> np.ndarray:
    out = values.copy()
    prev = None
    for i, value in enumerate(out):
        if np.isnan(value):
            continue
        if prev is not None:
            out[i] = value - period * np.round((value - prev) / period)
        prev = out[i]
    return out


def _winding(values: np.ndarray, period: float) -> int:
    valid = values[~np.isnan(values)]
    if len(valid) < 2:
        return 0
    closing = valid[0] - valid[-1]
    closing -= period * np.round(closing / period)
    return int(np.round((valid[-1] - valid[0] + closing) / period))


def _fill_poles(ring: _Ring, period: Optional[float], eps: float, step: float) -> _Ring:
    """Replace each point with undefined ``u`` by a row of points spanning the neighbouring ``u`` values.

    Rows are spaced at most ``step`` apart in ``u``; a pole between equal
    neighbours becomes a single point.
    """
    u = ring.uv[:, 0]
    if not np.isnan(u).any():
        return ring
    valid = np.flatnonzero(~np.isnan(u))
    if len(valid) == 0:
        raise TessellationError("loop collapses to a singular point of its surface")
    ring = ring.rotated(int(valid[0]))
    u = ring.uv[:, 0]
    valid = np.flatnonzero(~np.isnan(u))
    # wrapping past the end continues at the start, one winding further on
    u_wrap = u[0] + (ring.winding[0] * period if period else 0.0)
    uv_out: List[np.ndarray] = []
    xyz_out: List[np.ndarray] = []
    keys_out: List[WeldKey] = []
    for i in range(len(ring)):
        if not np.isnan(u[i]):
            uv_out.append(ring.uv[i])
            xyz_out.append(ring.xyz[i])
            keys_out.append(ring.keys[i])
            continue
        before = valid[valid < i]
        after = valid[valid > i]
        u_prev = u[before[-1]]
        u_next = u[after[0]] if len(after) else u_wrap
        span = abs(u_next - u_prev)
        count = 1 if span <= eps else max(2, int(math.ceil(span / step)) + 1)
        for value in np.linspace(u_prev, u_next, count):
            uv_out.append(np.array([value, ring.uv[i, 1]]))
            xyz_out.append(ring.xyz[i])
            keys_out.append(ring.keys[i])
    return _Ring(np.array(uv_out), np.array(xyz_out), keys_out, ring.outer, ring.winding)


def _dedupe(ring: _Ring, eps: float) -> _Ring:
    keep = [0]
    for i in range(1, len(ring)):
        if np.linalg.norm(ring.uv[i] - ring.uv[keep[-1]]) > eps:
            keep.append(i)
    while len(keep) > 1 and np.linalg.norm(ring.uv[keep[-1]] - ring.uv[keep[0]]) <= eps:
        keep.pop()
    return _Ring(ring.uv[keep], ring.xyz[keep], [ring.keys[i] for i in keep], ring.outer, ring.winding)


class _FaceTessellator:
    def __init__(self, face: Face, cache: EdgeSampleCache, options: TessellationOptions) -> None:
        self.face = face
        self.surface = face.surface
        self.cache = cache
        self.options = options

    def fail(self, message: str) -> TessellationError:
        return TessellationError(message, entity_id=self.face.id, face_index=self.face.index)

    # -- loops -> parameter-space rings --------------------------------

    def project_loop(self, loop: Loop) -> _Ring:
        xyz, keys = self.cache.loop_points(loop.edges)
        uv = np.array(self.surface.project(xyz), dtype=float).reshape(-1, 2)
        if np.isnan(uv[:, 1]).any():
            raise self.fail(f"could not project loop #{loop.id} onto the surface")
        ring = _Ring(uv, np.array(xyz, dtype=float), keys, outer=loop.outer)
        winding = [0, 0]
        for axis in (0, 1):
            period = _period(self.surface, axis)
            if period is None:
                continue
            if axis == 0 and np.isnan(ring.uv[:, 0]).any():
                # a loop through a pole closes there and does not wind
                ring = self.unwrap_through_poles(ring, period)
            else:
                ring.uv[:, axis] = _unwrap(ring.uv[:, axis], period)
                winding[axis] = _winding(ring.uv[:, axis], period)
        ring.winding = tuple(winding)
        ring = _fill_poles(ring, self.surface.period_u, self.options.point_epsilon,
                           self.options.angular_tolerance)
        return _dedupe(ring, self.options.point_epsilon)

    def unwrap_through_poles(self, ring: _Ring, period: float) -> _Ring:
        """Unwrap ``u`` along a loop that passes through one or more poles.

        ``u`` is free at a pole, so every run of defined ``u`` between poles is
        unwrapped on its own and the ring closes through its poles. With more
        than one run (a seam from pole to pole used in both directions, as in a
        full sphere) the later runs may sit a period away from their nearest
        placement; the placement kept is the first that gives a simple ring
        one period wide at most, preferring the face's orientation.
        """
        defined = ~np.isnan(ring.uv[:, 0])
        if not defined.any():
            raise self.fail("loop collapses to a singular point of its surface")
        ring = ring.rotated(int(np.flatnonzero(defined & ~np.roll(defined, 1))[0]))
        u = ring.uv[:, 0]
        defined = ~np.isnan(u)
        starts = np.flatnonzero(defined & ~np.roll(defined, 1)).tolist()
        ends = (np.flatnonzero(defined & ~np.roll(defined, -1)) + 1).tolist()
        runs = list(zip(starts, ends))
        for i, (start, end) in enumerate(runs):
            u[start:end] = _unwrap(u[start:end], period)
            if i:
                u[start:end] -= period * np.round((u[start] - u[runs[i - 1][1] - 1]) / period)
        if len(runs) == 1:
            return ring

        eps = self.options.point_epsilon
        orientation = 1.0 if self.face.same_sense else -1.0
        fallback = None
        for shifts in itertools.product((0, -1, 1), repeat=len(runs) - 1):
            uv = ring.uv.copy()
            for (start, end), k in zip(runs[1:], shifts):
                uv[start:end, 0] += k * period
            candidate = _Ring(uv, ring.xyz, list(ring.keys), ring.outer)
            filled = _dedupe(_fill_poles(candidate, period, eps, self.options.angular_tolerance), eps)
            if len(filled) < 3 or np.ptp(filled.uv[:, 0]) > period + eps:
                continue
            polygon = Polygon(filled.uv)
            if not polygon.is_valid or polygon.area <= self.options.area_epsilon:
                continue
            if filled.signed_area() * orientation > 0:
                return candidate
            if fallback is None:
                fallback = candidate
        return fallback if fallback is not None else ring

    def seam_points(self, uv0: np.ndarray, uv1: np.ndarray, tag: Tuple[Any, ...]
                    ) -> Tuple[np.ndarray, np.ndarray, List[WeldKey]]:
        """Interior samples of a synthetic seam from ``uv0`` to ``uv1``."""
        segment = _IsoSegment(self.surface, uv0, uv1)
        ts = segment.sample(0.0, 1.0, self.options.chord_tolerance, self.options.angular_tolerance)[1:-1]
        uv = segment.uv(ts).reshape(-1, 2)
        xyz = segment.points(ts).reshape(-1, 3)
        keys: List[WeldKey] = [("s", self.face.id) + tag + (i,) for i in range(len(ts))]
        return uv, xyz, keys

    def join_winding(self, a: _Ring, b: _Ring, axis: int) -> _Ring:
        """Cut two loops that each wind once around ``axis`` into one simple ring."""
        period = _period(self.surface, axis)
        wa, wb = a.winding[axis], b.winding[axis]
        if abs(wa) != 1 or wa + wb != 0:
            raise self.fail("periodic loops do not bound an annulus")
        span = wa * period
        start = a.uv[0, axis]
        offset = (b.uv[:, axis] - start + period / 2) % period - period / 2
        j = int(np.argmin(np.abs(offset)))
        b = b.rotated(j)
        b = b.shifted(axis, period * np.round((start + offset[j] - b.uv[0, axis]) / period))

        seam_uv, seam_xyz, seam_keys = self.seam_points(a.uv[0], b.uv[0], ("seam", axis))
        shift = np.zeros(2)
        shift[axis] = span

        uv = [a.uv, (a.uv[0] + shift)[None], seam_uv + shift, b.uv + shift,
              b.uv[:1], seam_uv[::-1]]
        xyz = [a.xyz, a.xyz[:1], seam_xyz, b.xyz, b.xyz[:1], seam_xyz[::-1]]
        keys = (a.keys + a.keys[:1] + seam_keys + b.keys + b.keys[:1] + seam_keys[::-1])
        return _Ring(np.vstack(uv), np.vstack(xyz), keys, outer=True)

    def close_at_pole(self, ring: _Ring, vertex_loops: List[Loop]) -> _Ring:
        """Close a loop that winds once around ``u`` through the surface pole on its material side."""
        period = self.surface.period_u
        w = ring.winding[0]
        if abs(w) != 1:
            raise self.fail("loop winds more than once around the periodic direction")
        high = (w > 0) == self.face.same_sense
        pole = self.surface.pole_v(high)
        if pole is None:
            raise self.fail("loop winds around the periodic direction with no seam or pole to close it")

        u0, v0 = ring.uv[0]
        u1 = u0 + w * period
        pole_xyz = self.surface.points(np.float64(u0), np.float64(pole))
        pole_key: WeldKey = ("p", self.face.id, high)
        for loop in vertex_loops:
            if np.linalg.norm(loop.vertex.point - pole_xyz) <= self.options.chord_tolerance:
                pole_xyz = loop.vertex.point
                pole_key = ("v", loop.vertex.id)
                vertex_loops.remove(loop)
                break

        seam_uv, seam_xyz, seam_keys = self.seam_points(np.array([u0, v0]), np.array([u0, pole]), ("pole",))
        shift = np.array([u1 - u0, 0.0])
        n_pole = max(1, int(math.ceil(abs(u1 - u0) / self.options.angular_tolerance)))
        pole_u = np.linspace(u1, u0, n_pole + 1)
        pole_uv = np.stack([pole_u, np.full_like(pole_u, pole)], axis=-1)

        uv = [ring.uv, ring.uv[:1] + shift, seam_uv + shift, pole_uv, seam_uv[::-1]]
        xyz = [ring.xyz, ring.xyz[:1], seam_xyz, np.repeat(pole_xyz[None], len(pole_uv), axis=0),
               seam_xyz[::-1]]
        keys = (ring.keys + ring.keys[:1] + seam_keys + [pole_key] * len(pole_uv) + seam_keys[::-1])
        return _Ring(np.vstack(uv), np.vstack(xyz), keys, outer=True)

    def arrange(self, rings: List[_Ring], vertex_loops: List[Loop]) -> Tuple[_Ring, List[_Ring]]:
        """Pick (or build) the outer ring and move holes into its period window."""
        winding = [r for r in rings if r.winding != (0, 0)]
        plain = [r for r in rings if r.winding == (0, 0)]
        if winding:
            axes = {axis for r in winding for axis in (0, 1) if r.winding[axis]}
            if len(axes) > 1:
                raise self.fail("loops wind around both periodic directions")
            axis = axes.pop()
            if len(winding) == 2:
                outer = self.join_winding(winding[0], winding[1], axis)
            elif len(winding) == 1 and axis == 0:
                outer = self.close_at_pole(winding[0], vertex_loops)
            else:
                raise self.fail(f"{len(winding)} loops wind around the periodic direction")
            holes = plain
        else:
            declared = [r for r in plain if r.outer]
            if len(declared) == 1:
                outer = declared[0]
            else:
                outer = max(plain, key=lambda r: abs(r.signed_area()))
            holes = [r for r in plain if r is not outer]

        lo = outer.uv.min(axis=0)
        hi = outer.uv.max(axis=0)
        placed = []
        for hole in holes:
            for axis in (0, 1):
                period = _period(self.surface, axis)
                if period is None:
                    continue
                centre = 0.5 * (hole.uv[:, axis].min() + hole.uv[:, axis].max())
                target = 0.5 * (lo[axis] + hi[axis])
                hole = hole.shifted(axis, -period * np.round((centre - target) / period))
            placed.append(hole)
        return outer, placed

    # -- triangulation -------------------------------------------------

    def metric_scale(self, polygon: Polygon) -> np.ndarray:
        umin, vmin, umax, vmax = polygon.bounds
        cu, cv = 0.5 * (umin + umax), 0.5 * (vmin + vmax)
        h = 1e-6 * max(umax - umin, vmax - vmin, 1e-9)
        s = self.surface.points(np.array([cu + h, cu - h, cu, cu]), np.array([cv, cv, cv + h, cv - h]))
        scale = np.array([np.linalg.norm(s[0] - s[1]), np.linalg.norm(s[2] - s[3])]) / (2 * h)
        scale[~(scale > 1e-12)] = 1.0
        return scale

    def interior_seeds(self, polygon: Polygon) -> np.ndarray:
        if self.surface.is_planar:
            return np.empty((0, 2))
        umin, vmin, umax, vmax = polygon.bounds
        nu, nv = self.surface.grid_steps((umin, umax), (vmin, vmax),
                                         self.options.chord_tolerance, self.options.angular_tolerance)
        us = np.linspace(umin, umax, nu + 1)[1:-1]
        vs = np.linspace(vmin, vmax, nv + 1)[1:-1]
        if not len(us) or not len(vs):
            return np.empty((0, 2))
        if len(us) * len(vs) > self.options.max_face_points:
            raise self.fail(f"seed grid of {len(us) * len(vs)} points exceeds the point budget")
        uu, vv = np.meshgrid(us, vs, indexing="ij")
        seeds = np.stack([uu.ravel(), vv.ravel()], axis=-1)
        inside = shapely.contains_xy(polygon, seeds[:, 0], seeds[:, 1])
        seeds = seeds[inside]
        if not len(seeds):
            return seeds
        gap = 0.25 * min((umax - umin) / nu, (vmax - vmin) / nv)
        distance = shapely.distance(polygon.boundary, shapely.points(seeds))
        return seeds[distance > gap]

    def triangulate(self, uv: np.ndarray, segments: np.ndarray, scale: np.ndarray,
                    polygon: Polygon) -> Tuple[np.ndarray, np.ndarray]:
        result = triangle.triangulate({"vertices": uv * scale, "segments": segments.astype(np.int32)}, "pQ")
        vertices = np.asarray(result["vertices"], dtype=float) / scale
        tris = np.asarray(result.get("triangles", np.empty((0, 3), dtype=int)), dtype=np.int64).reshape(-1, 3)
        if len(tris):
            centroids = vertices[tris].mean(axis=1)
            tris = tris[shapely.contains_xy(polygon, centroids[:, 0], centroids[:, 1])]
        return vertices, tris

    def refinement_points(self, uv: np.ndarray, xyz: np.ndarray, tris: np.ndarray,
                          boundary: set) -> np.ndarray:
        tol = self.options.chord_tolerance
        corners_uv = uv[tris]
        corners_xyz = xyz[tris]
        centroid_uv = corners_uv.mean(axis=1)
        deviation = np.linalg.norm(
            self.surface.points(centroid_uv[:, 0], centroid_uv[:, 1]) - corners_xyz.mean(axis=1), axis=1
        )
        new = [centroid_uv[deviation > tol]]

        pairs = {}
        for tri in tris.tolist():
            for a, b in ((tri[0], tri[1]), (tri[1], tri[2]), (tri[2], tri[0])):
                key = (a, b) if a < b else (b, a)
                if key not in boundary:
                    pairs[key] = None
        if pairs:
            edges = np.array(sorted(pairs), dtype=np.int64)
            mid_uv = 0.5 * (uv[edges[:, 0]] + uv[edges[:, 1]])
            mid_xyz = 0.5 * (xyz[edges[:, 0]] + xyz[edges[:, 1]])
            deviation = np.linalg.norm(self.surface.points(mid_uv[:, 0], mid_uv[:, 1]) - mid_xyz, axis=1)
            new.append(mid_uv[deviation > tol])
        return np.vstack(new)

    def run(self) -> MeshPatch:
        face = self.face
        options = self.options
        vertex_loops = [loop for loop in face.loops if loop.is_vertex_loop]
        rings = [self.project_loop(loop) for loop in face.loops if not loop.is_vertex_loop]
        if not rings:
            raise self.fail("face has no edge loops")

        outer, holes = self.arrange(rings, vertex_loops)
        outer = _dedupe(outer, options.point_epsilon)
        for ring in [outer] + holes:
            if len(ring) < 3:
                raise self.fail("degenerate parameter-space loop (fewer than 3 distinct points)")
        polygon = Polygon(outer.uv, [hole.uv for hole in holes])
        if not polygon.is_valid:
            raise self.fail(f"invalid parameter-space loop: {explain_validity(polygon)}")
        if polygon.area <= options.area_epsilon:
            raise self.fail("degenerate parameter-space loop (zero area)")

        boundary_uv = [outer.uv] + [h.uv for h in holes]
        boundary_xyz = [outer.xyz] + [h.xyz for h in holes]
        keys: List[WeldKey] = list(outer.keys)
        segments = []
        start = 0
        for ring in [outer] + holes:
            n = len(ring)
            idx = np.arange(start, start + n)
            segments.append(np.stack([idx, np.roll(idx, -1)], axis=1))
            if ring is not outer:
                keys.extend(ring.keys)
            start += n
        segments = np.vstack(segments)
        boundary = {(min(a, b), max(a, b)) for a, b in segments.tolist()}

        uv = np.vstack(boundary_uv)
        xyz = np.vstack(boundary_xyz)
        n_boundary = len(uv)

        extra_uv = [self.interior_seeds(polygon)]
        extra_xyz: List[np.ndarray] = []
        extra_keys: List[WeldKey] = []
        for loop in vertex_loops:
            point_uv = np.array(self.surface.project(loop.vertex.point[None]), dtype=float).reshape(-1, 2)
            if not np.isnan(point_uv).any() and shapely.contains_xy(polygon, point_uv[0, 0], point_uv[0, 1]):
                extra_uv.append(point_uv)
                extra_xyz.append(loop.vertex.point[None])
                extra_keys.append(("v", loop.vertex.id))
        steiner_uv = np.vstack(extra_uv[1:]) if len(extra_uv) > 1 else np.empty((0, 2))
        interior = extra_uv[0]

        scale = self.metric_scale(polygon)
        passes = 0
        while True:
            all_uv = np.vstack([uv, steiner_uv, interior])
            if len(all_uv) > options.max_face_points:
                raise self.fail(f"{len(all_uv)} points exceed the per-face budget of {options.max_face_points}")
            vertices, tris = self.triangulate(all_uv, segments, scale, polygon)
            n_fixed = n_boundary + len(steiner_uv)
            positions = np.vstack([xyz] + extra_xyz + [
                self.surface.points(vertices[n_fixed:, 0], vertices[n_fixed:, 1]).reshape(-1, 3)
            ])
            if self.surface.is_planar or passes >= options.max_refinement_passes or not len(tris):
                break
            new = self.refinement_points(vertices, positions, tris, boundary)
            if not len(new):
                break
            interior = np.vstack([vertices[n_fixed:], new])
            passes += 1

        all_keys = keys + extra_keys + [None] * (len(vertices) - n_fixed)
        return self.finish(vertices, positions, tris, all_keys, passes)

    def finish(self, uv: np.ndarray, xyz: np.ndarray, tris: np.ndarray,
               keys: List[WeldKey], passes: int) -> MeshPatch:
        face = self.face
        keep = []
        for t, (a, b, c) in enumerate(tris.tolist()):
            ka, kb, kc = keys[a], keys[b], keys[c]
            if (ka is not None and (ka == kb or ka == kc)) or (kb is not None and kb == kc):
                continue
            keep.append(t)
        tris = tris[keep]
        if len(tris):
            p = xyz[tris]
            area = 0.5 * np.linalg.norm(np.cross(p[:, 1] - p[:, 0], p[:, 2] - p[:, 0]), axis=1)
            tris = tris[area > self.options.area_epsilon]
        if not len(tris):
            raise self.fail("face produced no triangles")

        q = uv[tris]
        orient = ((q[:, 1, 0] - q[:, 0, 0]) * (q[:, 2, 1] - q[:, 0, 1])
                  - (q[:, 1, 1] - q[:, 0, 1]) * (q[:, 2, 0] - q[:, 0, 0]))
        flip = (orient < 0) if face.same_sense else (orient > 0)
        tris[flip] = tris[flip][:, [0, 2, 1]]

        used = np.unique(tris)
        remap = np.full(len(uv), -1, dtype=np.int64)
        remap[used] = np.arange(len(used))
        patch = MeshPatch(
            face_index=face.index,
            face_id=face.id,
            positions=xyz[used],
            uv=uv[used],
            triangles=remap[tris],
            keys=[keys[i] for i in used.tolist()],
        )
        logger.debug(
            "Tessellated face",
            face_id=face.id,
            surface=self.surface.kind,
            triangles=patch.triangle_count,
            refinement_passes=passes,
        )
        return patch


def tessellate_face(face: Face, cache: EdgeSampleCache, options: TessellationOptions) -> MeshPatch:
    """Triangulate one face within ``options.chord_tolerance``.

    Raises:
        TessellationError: On degenerate or self-intersecting parameter-space
            loops, projection failure, or when the point budget is exceeded
    """
    return _FaceTessellator(face, cache, options).run()


def max_centroid_deviation(patch: MeshPatch, surface: Surface) -> float:
    """Largest distance between a triangle centroid's surface point and the flat centroid."""
    if not patch.triangle_count:
        return 0.0
    centroid_uv = patch.uv[patch.triangles].mean(axis=1)
    flat = patch.positions[patch.triangles].mean(axis=1)
    return float(np.max(np.linalg.norm(surface.points(centroid_uv[:, 0], centroid_uv[:, 1]) - flat, axis=1)))


def patch_summary(patches: List[MeshPatch]) -> Dict[str, int]:
    return {
        "patches": len(patches),
        "triangles": sum(p.triangle_count for p in patches),
        "positions": sum(len(p.positions) for p in patches),
    }
