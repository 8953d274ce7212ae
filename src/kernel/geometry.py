"""Analytic curves and surfaces decoded from STEP geometry entities.

Curves evaluate ``t -> xyz`` and invert ``xyz -> t``; surfaces evaluate
``(u, v) -> xyz`` and invert ``xyz -> (u, v)``. Inversion is exact for the
elementary types and uses a seeded Newton projection for B-splines and
swept surfaces. All evaluation is vectorized over numpy arrays.

``GeometryDecoder`` turns entity records into these objects, memoizing by
entity id so edges and faces that reference the same curve or surface share
one instance.
"""

from __future__ import annotations

import math
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np
import structlog

from stepgraph.entities import EntityGraph, EntityRecord, Ref

from .errors import ParseError, TopologyError

logger = structlog.get_logger(__name__)

TWO_PI = 2.0 * math.pi
_MAX_SUBDIVISION_DEPTH = 16
_NEWTON_ITERATIONS = 12


def _unit(vector: Sequence[float]) -> np.ndarray:
    v = np.asarray(vector, dtype=float)
    norm = float(np.linalg.norm(v))
    if norm < 1e-15:
        raise ValueError("zero-length direction")
    return v / norm


def _arc_step(radius: float, tol: float, max_angle: float) -> float:
    """Largest angular step whose chord stays within ``tol`` of a circle of ``radius``."""
    if radius <= 0:
        return max_angle
    ratio = 1.0 - tol / radius
    step = TWO_PI if ratio <= -1.0 else 2.0 * math.acos(ratio)
    return min(step, max_angle)


def _segment_distance(points: np.ndarray, a: np.ndarray, b: np.ndarray) -> np.ndarray:
    ab = b - a
    denom = float(ab @ ab)
    if denom < 1e-30:
        return np.linalg.norm(points - a, axis=-1)
    t = np.clip((points - a) @ ab / denom, 0.0, 1.0)
    return np.linalg.norm(points - (a + t[..., None] * ab), axis=-1)


class Frame:
    """Right-handed placement (``AXIS2_PLACEMENT_3D``)."""

    def __init__(self, origin: Sequence[float], axis: Optional[Sequence[float]] = None,
                 ref_direction: Optional[Sequence[float]] = None) -> None:
        self.origin = np.asarray(origin, dtype=float)
        self.z = _unit(axis if axis is not None else (0.0, 0.0, 1.0))
        ref = np.asarray(ref_direction if ref_direction is not None else (1.0, 0.0, 0.0), dtype=float)
        x = ref - (ref @ self.z) * self.z
        if np.linalg.norm(x) < 1e-12:
            helper = np.array([1.0, 0.0, 0.0]) if abs(self.z[0]) < 0.9 else np.array([0.0, 1.0, 0.0])
            x = helper - (helper @ self.z) * self.z
        self.x = _unit(x)
        self.y = np.cross(self.z, self.x)

    def to_local(self, points: np.ndarray) -> np.ndarray:
        d = np.asarray(points, dtype=float) - self.origin
        return np.stack([d @ self.x, d @ self.y, d @ self.z], axis=-1)

    def to_world(self, lx: Any, ly: Any, lz: Any) -> np.ndarray:
        lx, ly, lz = np.broadcast_arrays(np.asarray(lx, float), np.asarray(ly, float), np.asarray(lz, float))
        return (self.origin + lx[..., None] * self.x + ly[..., None] * self.y
                + lz[..., None] * self.z)


# ---------------------------------------------------------------------------
# B-spline basis
# ---------------------------------------------------------------------------

def expand_knots(multiplicities: Sequence[int], knots: Sequence[float]) -> np.ndarray:
    """Expand STEP's (multiplicities, distinct knots) pair into a full knot vector."""
    if len(multiplicities) != len(knots):
        raise ValueError("knot multiplicities and knot values differ in length")
    return np.repeat(np.asarray(knots, dtype=float), np.asarray(multiplicities, dtype=int))


def _find_span(knots: np.ndarray, degree: int, n_ctrl: int, t: float) -> int:
    span = int(np.searchsorted(knots, t, side="right")) - 1
    return min(max(span, degree), n_ctrl - 1)


def _basis(knots: np.ndarray, degree: int, span: int, t: float) -> np.ndarray:
    """Non-zero basis functions N[span-degree .. span] at ``t`` (Cox-de Boor)."""
    n = np.zeros(degree + 1)
    left = np.zeros(degree + 1)
    right = np.zeros(degree + 1)
    n[0] = 1.0
    for j in range(1, degree + 1):
        left[j] = t - knots[span + 1 - j]
        right[j] = knots[span + j] - t
        saved = 0.0
        for r in range(j):
            denom = right[r + 1] + left[j - r]
            temp = n[r] / denom if denom != 0.0 else 0.0
            n[r] = saved + right[r + 1] * temp
            saved = left[j - r] * temp
        n[j] = saved
    return n


# ---------------------------------------------------------------------------
# Curves
# ---------------------------------------------------------------------------

class Curve:
    """Parametric 3D curve.

    Subclasses implement ``points``; ``param`` defaults to a seeded Newton
    projection and ``sample`` to adaptive midpoint subdivision.
    """

    kind = "curve"
    period: Optional[float] = None

    @property
    def domain(self) -> Tuple[float, float]:
        return (0.0, 1.0)

    def points(self, t: Any) -> np.ndarray:
        raise NotImplementedError

    def point(self, t: float) -> np.ndarray:
        return self.points(np.array([t], dtype=float))[0]

    def param(self, p: Sequence[float]) -> float:
        """Parameter of the curve point closest to ``p``."""
        p = np.asarray(p, dtype=float)
        a, b = self.domain
        ts = np.linspace(a, b, self._seed_count() + 1)
        t = float(ts[int(np.argmin(np.linalg.norm(self.points(ts) - p, axis=1)))])
        h = (b - a) * 1e-6
        for _ in range(_NEWTON_ITERATIONS):
            c0, cm, cp = self.points(np.array([t, t - h, t + h]))
            d1 = (cp - cm) / (2 * h)
            d2 = (cp - 2 * c0 + cm) / (h * h)
            diff = c0 - p
            f = float(d1 @ diff)
            fp = float(d2 @ diff + d1 @ d1)
            if abs(fp) < 1e-30:
                break
            step = f / fp
            t_next = t - step
            if self.period is None:
                t_next = min(max(t_next, a), b)
            if abs(t_next - t) < 1e-14 * max(1.0, abs(b - a)):
                t = t_next
                break
            t = t_next
        return t

    def _seed_count(self) -> int:
        return 64

    def initial_segments(self, t0: float, t1: float, max_angle: float) -> int:
        return 4

    def edge_range(self, p_start: Sequence[float], p_end: Sequence[float],
                   same_sense: bool, closed: bool) -> Tuple[float, float]:
        """Parameter range traversed by an edge from ``p_start`` to ``p_end``.

        The range runs in the edge direction: increasing when the edge agrees
        with the curve (``same_sense``), decreasing otherwise.
        """
        if self.period is not None:
            period = self.period
            t0 = self.param(p_start)
            if closed:
                return (t0, t0 + period) if same_sense else (t0, t0 - period)
            t1 = self.param(p_end)
            if same_sense:
                delta = (t1 - t0) % period
                return t0, t0 + (delta if delta > 1e-12 else period)
            delta = (t0 - t1) % period
            return t0, t0 - (delta if delta > 1e-12 else period)
        if closed:
            a, b = self.domain
            return (a, b) if same_sense else (b, a)
        return self.param(p_start), self.param(p_end)

    def sample(self, t0: float, t1: float, tol: float, max_angle: float) -> np.ndarray:
        """Parameters from ``t0`` to ``t1`` whose polyline is within ``tol`` of the curve."""
        n0 = max(1, self.initial_segments(t0, t1, max_angle))
        seeds = np.linspace(t0, t1, n0 + 1)
        seed_points = self.points(seeds)
        out: List[float] = [float(seeds[0])]
        for i in range(n0):
            stack = [(float(seeds[i]), float(seeds[i + 1]), seed_points[i], seed_points[i + 1], 0)]
            while stack:
                a, b, pa, pb, depth = stack.pop()
                quarters = np.array([a + (b - a) * f for f in (0.25, 0.5, 0.75)])
                deviation = float(np.max(_segment_distance(self.points(quarters), pa, pb)))
                if deviation > tol and depth < _MAX_SUBDIVISION_DEPTH:
                    m = 0.5 * (a + b)
                    pm = self.point(m)
                    # right half pushed first so the left half is emitted first
                    stack.append((m, b, pm, pb, depth + 1))
                    stack.append((a, m, pa, pm, depth + 1))
                else:
                    out.append(b)
        return np.asarray(out)


class Line(Curve):
    kind = "line"

    def __init__(self, origin: Sequence[float], vector: Sequence[float]) -> None:
        self.origin = np.asarray(origin, dtype=float)
        self.vector = np.asarray(vector, dtype=float)
        if float(self.vector @ self.vector) < 1e-30:
            raise ValueError("zero-length line direction")

    @property
    def domain(self) -> Tuple[float, float]:
        return (-1e100, 1e100)

    def points(self, t: Any) -> np.ndarray:
        t = np.asarray(t, dtype=float)
        return self.origin + t[..., None] * self.vector

    def param(self, p: Sequence[float]) -> float:
        return float((np.asarray(p, dtype=float) - self.origin) @ self.vector / (self.vector @ self.vector))

    def sample(self, t0: float, t1: float, tol: float, max_angle: float) -> np.ndarray:
        return np.array([t0, t1], dtype=float)


class Circle(Curve):
    kind = "circle"
    period = TWO_PI

    def __init__(self, frame: Frame, radius: float) -> None:
        if radius <= 0:
            raise ValueError("circle radius must be positive")
        self.frame = frame
        self.radius = float(radius)

    @property
    def domain(self) -> Tuple[float, float]:
        return (0.0, TWO_PI)

    def points(self, t: Any) -> np.ndarray:
        t = np.asarray(t, dtype=float)
        r = self.radius
        return self.frame.to_world(r * np.cos(t), r * np.sin(t), np.zeros_like(t))

    def param(self, p: Sequence[float]) -> float:
        local = self.frame.to_local(p)
        return float(math.atan2(local[1], local[0]) % TWO_PI)

    def sample(self, t0: float, t1: float, tol: float, max_angle: float) -> np.ndarray:
        step = _arc_step(self.radius, tol, max_angle)
        n = max(1, int(math.ceil(abs(t1 - t0) / step - 1e-9)))
        if abs(abs(t1 - t0) - TWO_PI) < 1e-9:
            n = max(n, 3)
        return np.linspace(t0, t1, n + 1)


class Ellipse(Curve):
    kind = "ellipse"
    period = TWO_PI

    def __init__(self, frame: Frame, semi_axis_1: float, semi_axis_2: float) -> None:
        if semi_axis_1 <= 0 or semi_axis_2 <= 0:
            raise ValueError("ellipse semi-axes must be positive")
        self.frame = frame
        self.a = float(semi_axis_1)
        self.b = float(semi_axis_2)

    @property
    def domain(self) -> Tuple[float, float]:
        return (0.0, TWO_PI)

    def points(self, t: Any) -> np.ndarray:
        t = np.asarray(t, dtype=float)
        return self.frame.to_world(self.a * np.cos(t), self.b * np.sin(t), np.zeros_like(t))

    def param(self, p: Sequence[float]) -> float:
        # Seed from the eccentric angle, then polish with Newton
        local = self.frame.to_local(p)
        t = math.atan2(local[1] / self.b, local[0] / self.a)
        for _ in range(_NEWTON_ITERATIONS):
            c, s = math.cos(t), math.sin(t)
            f = (self.b ** 2 - self.a ** 2) * c * s + self.a * local[0] * s - self.b * local[1] * c
            fp = (self.b ** 2 - self.a ** 2) * (c * c - s * s) + self.a * local[0] * c + self.b * local[1] * s
            if abs(fp) < 1e-30:
                break
            step = f / fp
            t -= step
            if abs(step) < 1e-14:
                break
        return float(t % TWO_PI)

    def sample(self, t0: float, t1: float, tol: float, max_angle: float) -> np.ndarray:
        # minimum radius of curvature b^2/a bounds the chord error from above
        radius = max(self.a, self.b) ** 2 / min(self.a, self.b)
        step = _arc_step(radius, tol, max_angle)
        n = max(1, int(math.ceil(abs(t1 - t0) / step - 1e-9)))
        if abs(abs(t1 - t0) - TWO_PI) < 1e-9:
            n = max(n, 3)
        return np.linspace(t0, t1, n + 1)


class BSplineCurve(Curve):
    """Non-uniform (optionally rational) B-spline curve."""

    kind = "bspline"

    def __init__(self, degree: int, control_points: Sequence[Sequence[float]],
                 knots: Sequence[float], weights: Optional[Sequence[float]] = None,
                 closed: bool = False) -> None:
        self.degree = int(degree)
        self.control_points = np.asarray(control_points, dtype=float)
        self.knots = np.asarray(knots, dtype=float)
        n = len(self.control_points)
        if len(self.knots) != n + self.degree + 1:
            raise ValueError(
                f"knot vector length {len(self.knots)} != {n} control points + degree {self.degree} + 1"
            )
        self.weights = None if weights is None else np.asarray(weights, dtype=float)
        self.closed = closed

    @property
    def domain(self) -> Tuple[float, float]:
        return float(self.knots[self.degree]), float(self.knots[-self.degree - 1])

    def _seed_count(self) -> int:
        return max(64, 8 * len(self.control_points))

    def initial_segments(self, t0: float, t1: float, max_angle: float) -> int:
        return max(4, 2 * len(self.control_points))

    def points(self, t: Any) -> np.ndarray:
        ts = np.atleast_1d(np.asarray(t, dtype=float))
        a, b = self.domain
        p = self.degree
        n = len(self.control_points)
        out = np.empty((len(ts), 3))
        for i, ti in enumerate(np.clip(ts, a, b)):
            span = _find_span(self.knots, p, n, ti)
            basis = _basis(self.knots, p, span, ti)
            ctrl = self.control_points[span - p:span + 1]
            if self.weights is None:
                out[i] = basis @ ctrl
            else:
                w = basis * self.weights[span - p:span + 1]
                out[i] = (w @ ctrl) / w.sum()
        return out.reshape(np.shape(t) + (3,))


class Polyline(Curve):
    kind = "polyline"

    def __init__(self, points: Sequence[Sequence[float]]) -> None:
        self.vertices = np.asarray(points, dtype=float)
        if len(self.vertices) < 2:
            raise ValueError("polyline needs at least two points")

    @property
    def domain(self) -> Tuple[float, float]:
        return 0.0, float(len(self.vertices) - 1)

    def points(self, t: Any) -> np.ndarray:
        t = np.clip(np.asarray(t, dtype=float), *self.domain)
        i = np.minimum(np.floor(t).astype(int), len(self.vertices) - 2)
        f = (t - i)[..., None]
        return self.vertices[i] * (1 - f) + self.vertices[i + 1] * f

    def param(self, p: Sequence[float]) -> float:
        p = np.asarray(p, dtype=float)
        best_t, best_d = 0.0, math.inf
        for i in range(len(self.vertices) - 1):
            a, b = self.vertices[i], self.vertices[i + 1]
            ab = b - a
            f = float(np.clip((p - a) @ ab / max(ab @ ab, 1e-30), 0.0, 1.0))
            d = float(np.linalg.norm(a + f * ab - p))
            if d < best_d:
                best_t, best_d = i + f, d
        return best_t

    def sample(self, t0: float, t1: float, tol: float, max_angle: float) -> np.ndarray:
        lo, hi = sorted((t0, t1))
        inner = [float(k) for k in range(int(math.floor(lo)) + 1, int(math.ceil(hi))) if lo < k < hi]
        ts = [t0] + (inner if t1 >= t0 else inner[::-1]) + [t1]
        return np.asarray(ts)


# ---------------------------------------------------------------------------
# Surfaces
# ---------------------------------------------------------------------------

class Surface:
    """Parametric surface ``(u, v) -> xyz``.

    ``project`` returns raw parameters (periodic ones in their principal
    range) and NaN for ``u`` where it is undefined (poles, apexes).
    """

    kind = "surface"
    period_u: Optional[float] = None
    period_v: Optional[float] = None
    is_planar = False

    def points(self, u: Any, v: Any) -> np.ndarray:
        raise NotImplementedError

    def project(self, points: np.ndarray) -> np.ndarray:
        raise NotImplementedError

    def pole_v(self, high: bool) -> Optional[float]:
        """The ``v`` at which the surface collapses to a point, on the high or low side."""
        return None

    def normals(self, u: Any, v: Any) -> np.ndarray:
        """Unit normals in the natural orientation (dS/du x dS/dv)."""
        u = np.asarray(u, dtype=float)
        v = np.asarray(v, dtype=float)
        h = 1e-6
        du = (self.points(u + h, v) - self.points(u - h, v)) / (2 * h)
        dv = (self.points(u, v + h) - self.points(u, v - h)) / (2 * h)
        n = np.cross(du, dv)
        norm = np.linalg.norm(n, axis=-1, keepdims=True)
        return n / np.where(norm < 1e-30, 1.0, norm)

    def grid_steps(self, u_range: Tuple[float, float], v_range: Tuple[float, float],
                   tol: float, max_angle: float) -> Tuple[int, int]:
        """Number of seed-grid intervals along u and v for the given parameter box."""
        return (self._isoline_steps(u_range, v_range, tol, along_u=True),
                self._isoline_steps(u_range, v_range, tol, along_u=False))

    def _isoline_steps(self, u_range: Tuple[float, float], v_range: Tuple[float, float],
                       tol: float, along_u: bool) -> int:
        (u0, u1), (v0, v1) = u_range, v_range
        fixed = np.linspace(v0, v1, 3) if along_u else np.linspace(u0, u1, 3)
        span = (u0, u1) if along_u else (v0, v1)
        n = 1
        while n < 64:
            ts = np.linspace(span[0], span[1], 2 * n + 1)
            worst = 0.0
            for c in fixed:
                cs = np.full_like(ts, c)
                pts = self.points(ts, cs) if along_u else self.points(cs, ts)
                mids = 0.5 * (pts[0:-2:2] + pts[2::2])
                worst = max(worst, float(np.max(np.linalg.norm(mids - pts[1::2], axis=1))))
            if worst <= tol:
                break
            n *= 2
        return n


class Plane(Surface):
    kind = "plane"
    is_planar = True

    def __init__(self, frame: Frame) -> None:
        self.frame = frame

    def points(self, u: Any, v: Any) -> np.ndarray:
        u = np.asarray(u, dtype=float)
        return self.frame.to_world(u, v, np.zeros_like(u))

    def project(self, points: np.ndarray) -> np.ndarray:
        return self.frame.to_local(points)[..., :2]

    def normals(self, u: Any, v: Any) -> np.ndarray:
        shape = np.broadcast(np.asarray(u), np.asarray(v)).shape
        return np.broadcast_to(self.frame.z, shape + (3,)).copy()

    def grid_steps(self, u_range, v_range, tol, max_angle) -> Tuple[int, int]:
        return 1, 1


class _Revolved(Surface):
    """Shared helpers for surfaces of revolution around a frame's z axis."""

    period_u = TWO_PI
    frame: Frame

    def _angle(self, local: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        rho = np.hypot(local[..., 0], local[..., 1])
        u = np.arctan2(local[..., 1], local[..., 0]) % TWO_PI
        return np.where(rho < 1e-12, np.nan, u), rho


class Cylinder(_Revolved):
    kind = "cylinder"

    def __init__(self, frame: Frame, radius: float) -> None:
        if radius <= 0:
            raise ValueError("cylinder radius must be positive")
        self.frame = frame
        self.radius = float(radius)

    def points(self, u: Any, v: Any) -> np.ndarray:
        u, v = np.broadcast_arrays(np.asarray(u, float), np.asarray(v, float))
        r = self.radius
        return self.frame.to_world(r * np.cos(u), r * np.sin(u), v)

    def normals(self, u: Any, v: Any) -> np.ndarray:
        u, v = np.broadcast_arrays(np.asarray(u, float), np.asarray(v, float))
        return self.frame.to_world(np.cos(u), np.sin(u), np.zeros_like(u)) - self.frame.origin

    def project(self, points: np.ndarray) -> np.ndarray:
        local = self.frame.to_local(points)
        u, _ = self._angle(local)
        return np.stack([u, local[..., 2]], axis=-1)

    def grid_steps(self, u_range, v_range, tol, max_angle) -> Tuple[int, int]:
        step = _arc_step(self.radius, tol, max_angle)
        return max(1, int(math.ceil(abs(u_range[1] - u_range[0]) / step))), 1


class Cone(_Revolved):
    kind = "cone"

    def __init__(self, frame: Frame, radius: float, semi_angle: float) -> None:
        self.frame = frame
        self.radius = float(radius)
        self.semi_angle = float(semi_angle)
        self._tan = math.tan(self.semi_angle)

    def _rho(self, v: np.ndarray) -> np.ndarray:
        return self.radius + v * self._tan

    def pole_v(self, high: bool) -> Optional[float]:
        if abs(self._tan) < 1e-15:
            return None
        apex = -self.radius / self._tan
        # apex lies below the placement plane when the cone widens upward
        if (self._tan > 0) != high:
            return apex
        return None

    def points(self, u: Any, v: Any) -> np.ndarray:
        u, v = np.broadcast_arrays(np.asarray(u, float), np.asarray(v, float))
        rho = self._rho(v)
        return self.frame.to_world(rho * np.cos(u), rho * np.sin(u), v)

    def normals(self, u: Any, v: Any) -> np.ndarray:
        u, v = np.broadcast_arrays(np.asarray(u, float), np.asarray(v, float))
        c, s = math.cos(self.semi_angle), math.sin(self.semi_angle)
        sign = np.where(self._rho(v) < 0, -1.0, 1.0)
        n = self.frame.to_world(c * np.cos(u), c * np.sin(u), np.full_like(u, -s)) - self.frame.origin
        return n * sign[..., None]

    def project(self, points: np.ndarray) -> np.ndarray:
        local = self.frame.to_local(points)
        u, _ = self._angle(local)
        return np.stack([u, local[..., 2]], axis=-1)

    def grid_steps(self, u_range, v_range, tol, max_angle) -> Tuple[int, int]:
        rho = max(abs(float(self._rho(np.float64(v)))) for v in v_range)
        step = _arc_step(rho, tol, max_angle)
        return max(1, int(math.ceil(abs(u_range[1] - u_range[0]) / step))), 1


class Sphere(_Revolved):
    kind = "sphere"

    def __init__(self, frame: Frame, radius: float) -> None:
        if radius <= 0:
            raise ValueError("sphere radius must be positive")
        self.frame = frame
        self.radius = float(radius)

    def points(self, u: Any, v: Any) -> np.ndarray:
        u, v = np.broadcast_arrays(np.asarray(u, float), np.asarray(v, float))
        r = self.radius
        return self.frame.to_world(r * np.cos(v) * np.cos(u), r * np.cos(v) * np.sin(u), r * np.sin(v))

    def normals(self, u: Any, v: Any) -> np.ndarray:
        return (self.points(u, v) - self.frame.origin) / self.radius

    def pole_v(self, high: bool) -> Optional[float]:
        return math.pi / 2 if high else -math.pi / 2

    def project(self, points: np.ndarray) -> np.ndarray:
        local = self.frame.to_local(points)
        u, rho = self._angle(local)
        return np.stack([u, np.arctan2(local[..., 2], rho)], axis=-1)

    def grid_steps(self, u_range, v_range, tol, max_angle) -> Tuple[int, int]:
        step = _arc_step(self.radius, tol, max_angle)
        return (max(1, int(math.ceil(abs(u_range[1] - u_range[0]) / step))),
                max(1, int(math.ceil(abs(v_range[1] - v_range[0]) / step))))


class Torus(_Revolved):
    kind = "torus"
    period_v = TWO_PI

    def __init__(self, frame: Frame, major_radius: float, minor_radius: float) -> None:
        if minor_radius <= 0 or major_radius <= 0:
            raise ValueError("torus radii must be positive")
        self.frame = frame
        self.major_radius = float(major_radius)
        self.minor_radius = float(minor_radius)

    def points(self, u: Any, v: Any) -> np.ndarray:
        u, v = np.broadcast_arrays(np.asarray(u, float), np.asarray(v, float))
        rho = self.major_radius + self.minor_radius * np.cos(v)
        return self.frame.to_world(rho * np.cos(u), rho * np.sin(u), self.minor_radius * np.sin(v))

    def normals(self, u: Any, v: Any) -> np.ndarray:
        u, v = np.broadcast_arrays(np.asarray(u, float), np.asarray(v, float))
        return self.frame.to_world(np.cos(v) * np.cos(u), np.cos(v) * np.sin(u), np.sin(v)) - self.frame.origin

    def project(self, points: np.ndarray) -> np.ndarray:
        local = self.frame.to_local(points)
        u, rho = self._angle(local)
        v = np.arctan2(local[..., 2], rho - self.major_radius) % TWO_PI
        return np.stack([u, v], axis=-1)

    def grid_steps(self, u_range, v_range, tol, max_angle) -> Tuple[int, int]:
        step_u = _arc_step(self.major_radius + self.minor_radius, tol, max_angle)
        step_v = _arc_step(self.minor_radius, tol, max_angle)
        return (max(1, int(math.ceil(abs(u_range[1] - u_range[0]) / step_u))),
                max(1, int(math.ceil(abs(v_range[1] - v_range[0]) / step_v))))


class _NewtonProjection:
    """Seeded Gauss-Newton point inversion for surfaces without a closed form."""

    _seed_grid: Optional[Tuple[np.ndarray, np.ndarray]] = None

    def _seed_shape(self) -> Tuple[int, int]:
        return 24, 24

    def _domain(self) -> Tuple[Tuple[float, float], Tuple[float, float]]:
        raise NotImplementedError

    def _seeds(self) -> Tuple[np.ndarray, np.ndarray]:
        if self._seed_grid is None:
            (u0, u1), (v0, v1) = self._domain()
            nu, nv = self._seed_shape()
            uu, vv = np.meshgrid(np.linspace(u0, u1, nu + 1), np.linspace(v0, v1, nv + 1), indexing="ij")
            uv = np.stack([uu.ravel(), vv.ravel()], axis=-1)
            self._seed_grid = (uv, self.points(uv[:, 0], uv[:, 1]))
        return self._seed_grid

    def project(self, points: np.ndarray) -> np.ndarray:
        points = np.atleast_2d(np.asarray(points, dtype=float))
        seeds_uv, seeds_xyz = self._seeds()
        (u0, u1), (v0, v1) = self._domain()
        h = 1e-7 * max(u1 - u0, v1 - v0, 1e-9)
        out = np.empty((len(points), 2))
        for i, p in enumerate(points):
            u, v = seeds_uv[int(np.argmin(np.linalg.norm(seeds_xyz - p, axis=1)))]
            for _ in range(_NEWTON_ITERATIONS):
                s = self.points(np.array([u, u + h, u, u - h, u]), np.array([v, v, v + h, v, v - h]))
                jac = np.stack([(s[1] - s[3]) / (2 * h), (s[2] - s[4]) / (2 * h)], axis=1)
                delta, *_ = np.linalg.lstsq(jac, p - s[0], rcond=None)
                u_next = float(u + delta[0])
                v_next = float(v + delta[1])
                if self.period_u is None:
                    u_next = min(max(u_next, u0), u1)
                if self.period_v is None:
                    v_next = min(max(v_next, v0), v1)
                converged = abs(u_next - u) + abs(v_next - v) < 1e-13
                u, v = u_next, v_next
                if converged:
                    break
            out[i] = (u, v)
        if self.period_u is not None:
            out[:, 0] = u0 + (out[:, 0] - u0) % self.period_u
        if self.period_v is not None:
            out[:, 1] = v0 + (out[:, 1] - v0) % self.period_v
        return out


class BSplineSurface(_NewtonProjection, Surface):
    """Tensor-product (optionally rational) B-spline surface."""

    kind = "bspline"

    def __init__(self, u_degree: int, v_degree: int, control_points: Any,
                 u_knots: Sequence[float], v_knots: Sequence[float],
                 weights: Any = None, u_closed: bool = False, v_closed: bool = False) -> None:
        self.u_degree = int(u_degree)
        self.v_degree = int(v_degree)
        self.control_points = np.asarray(control_points, dtype=float)
        if self.control_points.ndim != 3:
            raise ValueError("B-spline surface control points must form a grid")
        self.u_knots = np.asarray(u_knots, dtype=float)
        self.v_knots = np.asarray(v_knots, dtype=float)
        nu, nv = self.control_points.shape[:2]
        if len(self.u_knots) != nu + self.u_degree + 1 or len(self.v_knots) != nv + self.v_degree + 1:
            raise ValueError("B-spline surface knot vectors do not match the control grid")
        self.weights = None if weights is None else np.asarray(weights, dtype=float)
        (a, b), (c, d) = self._domain()
        self.period_u = (b - a) if u_closed else None
        self.period_v = (d - c) if v_closed else None

    def _domain(self) -> Tuple[Tuple[float, float], Tuple[float, float]]:
        return ((float(self.u_knots[self.u_degree]), float(self.u_knots[-self.u_degree - 1])),
                (float(self.v_knots[self.v_degree]), float(self.v_knots[-self.v_degree - 1])))

    def _seed_shape(self) -> Tuple[int, int]:
        nu, nv = self.control_points.shape[:2]
        return min(64, max(16, 4 * nu)), min(64, max(16, 4 * nv))

    def points(self, u: Any, v: Any) -> np.ndarray:
        u, v = np.broadcast_arrays(np.asarray(u, float), np.asarray(v, float))
        shape = u.shape
        (u0, u1), (v0, v1) = self._domain()
        us, vs = u.ravel(), v.ravel()
        if self.period_u is not None:
            us = u0 + (us - u0) % self.period_u
        if self.period_v is not None:
            vs = v0 + (vs - v0) % self.period_v
        us = np.clip(us, u0, u1)
        vs = np.clip(vs, v0, v1)
        pu, pv = self.u_degree, self.v_degree
        nu, nv = self.control_points.shape[:2]
        out = np.empty((len(us), 3))
        for i, (ui, vi) in enumerate(zip(us, vs)):
            su = _find_span(self.u_knots, pu, nu, ui)
            sv = _find_span(self.v_knots, pv, nv, vi)
            bu = _basis(self.u_knots, pu, su, ui)
            bv = _basis(self.v_knots, pv, sv, vi)
            ctrl = self.control_points[su - pu:su + 1, sv - pv:sv + 1]
            w = np.outer(bu, bv)
            if self.weights is not None:
                w = w * self.weights[su - pu:su + 1, sv - pv:sv + 1]
                out[i] = np.einsum("ij,ijk->k", w, ctrl) / w.sum()
            else:
                out[i] = np.einsum("ij,ijk->k", w, ctrl)
        return out.reshape(shape + (3,))


class LinearExtrusion(Surface):
    """``SURFACE_OF_LINEAR_EXTRUSION``: S(u, v) = C(u) + v * V."""

    kind = "extrusion"

    def __init__(self, curve: Curve, vector: Sequence[float]) -> None:
        self.curve = curve
        self.vector = np.asarray(vector, dtype=float)
        if float(self.vector @ self.vector) < 1e-30:
            raise ValueError("zero-length extrusion vector")
        self.period_u = curve.period

    def points(self, u: Any, v: Any) -> np.ndarray:
        u, v = np.broadcast_arrays(np.asarray(u, float), np.asarray(v, float))
        return self.curve.points(u) + v[..., None] * self.vector

    def project(self, points: np.ndarray) -> np.ndarray:
        points = np.atleast_2d(np.asarray(points, dtype=float))
        vv = float(self.vector @ self.vector)
        out = np.empty((len(points), 2))
        for i, p in enumerate(points):
            v = 0.0
            for _ in range(4):
                u = self.curve.param(p - v * self.vector)
                v = float((p - self.curve.point(u)) @ self.vector / vv)
            out[i] = (u, v)
        return out


class Revolution(Surface):
    """``SURFACE_OF_REVOLUTION``: the profile C(v) rotated by angle u about an axis."""

    kind = "revolution"
    period_u = TWO_PI

    def __init__(self, curve: Curve, origin: Sequence[float], axis: Sequence[float]) -> None:
        self.curve = curve
        self.origin = np.asarray(origin, dtype=float)
        self.axis = _unit(axis)
        a, b = curve.domain if curve.period is None else (0.0, curve.period)
        if abs(a) > 1e50:
            a, b = -1.0, 1.0
        samples = curve.points(np.linspace(a, b, 17)) - self.origin
        radial = samples - np.outer(samples @ self.axis, self.axis)
        k = int(np.argmax(np.linalg.norm(radial, axis=1)))
        self.ref = _unit(radial[k])
        self.side = np.cross(self.axis, self.ref)

    def _rotate(self, d: np.ndarray, angle: np.ndarray) -> np.ndarray:
        k = self.axis
        c = np.cos(angle)[..., None]
        s = np.sin(angle)[..., None]
        along = (d @ k)[..., None] * k
        return d * c + np.cross(k, d) * s + along * (1 - c)

    def points(self, u: Any, v: Any) -> np.ndarray:
        u, v = np.broadcast_arrays(np.asarray(u, float), np.asarray(v, float))
        d = self.curve.points(v) - self.origin
        return self.origin + self._rotate(d, u)

    def project(self, points: np.ndarray) -> np.ndarray:
        points = np.atleast_2d(np.asarray(points, dtype=float))
        d = points - self.origin
        x = d @ self.ref
        y = d @ self.side
        rho = np.hypot(x, y)
        u = np.arctan2(y, x) % TWO_PI
        back = self._rotate(d, -u)
        v = np.array([self.curve.param(self.origin + q) for q in back])
        u = np.where(rho < 1e-12, np.nan, u)
        return np.stack([u, v], axis=-1)


# ---------------------------------------------------------------------------
# Entity decoding
# ---------------------------------------------------------------------------

CURVE_TYPES = (
    "LINE", "CIRCLE", "ELLIPSE", "B_SPLINE_CURVE_WITH_KNOTS", "POLYLINE",
    "SURFACE_CURVE", "SEAM_CURVE", "TRIMMED_CURVE",
)
SURFACE_TYPES = (
    "PLANE", "CYLINDRICAL_SURFACE", "CONICAL_SURFACE", "SPHERICAL_SURFACE",
    "TOROIDAL_SURFACE", "B_SPLINE_SURFACE_WITH_KNOTS", "SURFACE_OF_LINEAR_EXTRUSION",
    "SURFACE_OF_REVOLUTION",
)


def _looks_like(record: EntityRecord, suffix: str) -> bool:
    return any(name.endswith(suffix) for name in record.type_names)


class GeometryDecoder:
    """Decode geometry entities into curve/surface objects, once per entity id."""

    def __init__(self, graph: EntityGraph, angle_factor: float = 1.0) -> None:
        self.graph = graph
        self.angle_factor = angle_factor
        self._curves: Dict[int, Curve] = {}
        self._surfaces: Dict[int, Surface] = {}

    # -- primitives ----------------------------------------------------

    def _record(self, ref: Any, *types: str, context: str) -> EntityRecord:
        if not isinstance(ref, Ref):
            raise TopologyError(f"{context}: expected an entity reference, got {ref!r}")
        record = self.graph.resolve(ref)
        if types and not any(record.is_a(t) for t in types):
            raise TopologyError(
                f"{context}: expected {' or '.join(types)}, got {'/'.join(record.type_names)}",
                entity_id=record.id,
            )
        return record

    def point(self, ref: Any) -> np.ndarray:
        record = self._record(ref, "CARTESIAN_POINT", context="point")
        coords = [float(c) for c in record.part("CARTESIAN_POINT")[-1]]
        return np.array((coords + [0.0, 0.0, 0.0])[:3])

    def direction(self, ref: Any) -> np.ndarray:
        record = self._record(ref, "DIRECTION", context="direction")
        ratios = [float(c) for c in record.part("DIRECTION")[-1]]
        try:
            return _unit((ratios + [0.0, 0.0, 0.0])[:3])
        except ValueError:
            raise TopologyError("zero-length direction", entity_id=record.id) from None

    def vector(self, ref: Any) -> np.ndarray:
        record = self._record(ref, "VECTOR", context="vector")
        _, orientation, magnitude = record.part("VECTOR")
        return self.direction(orientation) * float(magnitude)

    def frame(self, ref: Any) -> Frame:
        record = self._record(ref, "AXIS2_PLACEMENT_3D", context="placement")
        _, location, axis, ref_direction = record.part("AXIS2_PLACEMENT_3D")
        return Frame(
            self.point(location),
            self.direction(axis) if axis is not None else None,
            self.direction(ref_direction) if ref_direction is not None else None,
        )

    # -- curves --------------------------------------------------------

    def curve(self, ref: Any) -> Curve:
        record = self._record(ref, context="edge geometry")
        cached = self._curves.get(record.id)
        if cached is not None:
            return cached
        try:
            curve = self._build_curve(record)
        except ValueError as e:
            raise TopologyError(f"invalid curve: {e}", entity_id=record.id) from e
        self._curves[record.id] = curve
        return curve

    def _build_curve(self, record: EntityRecord) -> Curve:
        if record.is_a("SURFACE_CURVE") or record.is_a("SEAM_CURVE"):
            name = "SEAM_CURVE" if record.is_a("SEAM_CURVE") else "SURFACE_CURVE"
            return self.curve(record.part(name)[1])
        if record.is_a("TRIMMED_CURVE"):
            return self.curve(record.part("TRIMMED_CURVE")[1])
        if record.is_a("LINE"):
            _, origin, vector = record.part("LINE")
            return Line(self.point(origin), self.vector(vector))
        if record.is_a("CIRCLE"):
            _, position, radius = record.part("CIRCLE")
            return Circle(self.frame(position), float(radius))
        if record.is_a("ELLIPSE"):
            _, position, a, b = record.part("ELLIPSE")
            return Ellipse(self.frame(position), float(a), float(b))
        if record.is_a("B_SPLINE_CURVE_WITH_KNOTS"):
            return self._bspline_curve(record)
        if record.is_a("POLYLINE"):
            _, pts = record.part("POLYLINE")
            return Polyline([self.point(p) for p in pts])
        if _looks_like(record, "CURVE") or _looks_like(record, "LINE"):
            raise ParseError(
                f"unsupported entity type {'/'.join(record.type_names)}",
                entity_id=record.id, offset=record.offset,
            )
        raise TopologyError(
            f"edge geometry: expected a curve, got {'/'.join(record.type_names)}",
            entity_id=record.id,
        )

    def _bspline_curve(self, record: EntityRecord) -> BSplineCurve:
        if record.is_complex:
            degree, ctrl, _form, closed, _self_int = record.part("B_SPLINE_CURVE")
            mults, knots, _knot_spec = record.part("B_SPLINE_CURVE_WITH_KNOTS")
        else:
            (_name, degree, ctrl, _form, closed, _self_int,
             mults, knots, _knot_spec) = record.params
        weights = None
        if record.is_a("RATIONAL_B_SPLINE_CURVE"):
            weights = [float(w) for w in record.part("RATIONAL_B_SPLINE_CURVE")[-1]]
        return BSplineCurve(
            int(degree), [self.point(p) for p in ctrl], expand_knots(mults, knots),
            weights=weights, closed=bool(closed),
        )

    # -- surfaces ------------------------------------------------------

    def surface(self, ref: Any) -> Surface:
        record = self._record(ref, context="face geometry")
        cached = self._surfaces.get(record.id)
        if cached is not None:
            return cached
        try:
            surface = self._build_surface(record)
        except ValueError as e:
            raise TopologyError(f"invalid surface: {e}", entity_id=record.id) from e
        self._surfaces[record.id] = surface
        return surface

    def _build_surface(self, record: EntityRecord) -> Surface:
        if record.is_a("PLANE"):
            return Plane(self.frame(record.part("PLANE")[1]))
        if record.is_a("CYLINDRICAL_SURFACE"):
            _, position, radius = record.part("CYLINDRICAL_SURFACE")
            return Cylinder(self.frame(position), float(radius))
        if record.is_a("CONICAL_SURFACE"):
            _, position, radius, semi_angle = record.part("CONICAL_SURFACE")
            return Cone(self.frame(position), float(radius), float(semi_angle) * self.angle_factor)
        if record.is_a("SPHERICAL_SURFACE"):
            _, position, radius = record.part("SPHERICAL_SURFACE")
            return Sphere(self.frame(position), float(radius))
        if record.is_a("TOROIDAL_SURFACE"):
            _, position, major, minor = record.part("TOROIDAL_SURFACE")
            return Torus(self.frame(position), float(major), float(minor))
        if record.is_a("B_SPLINE_SURFACE_WITH_KNOTS"):
            return self._bspline_surface(record)
        if record.is_a("SURFACE_OF_LINEAR_EXTRUSION"):
            _, curve, vector = record.part("SURFACE_OF_LINEAR_EXTRUSION")
            return LinearExtrusion(self.curve(curve), self.vector(vector))
        if record.is_a("SURFACE_OF_REVOLUTION"):
            _, curve, axis_ref = record.part("SURFACE_OF_REVOLUTION")
            axis_record = self._record(axis_ref, "AXIS1_PLACEMENT", context="revolution axis")
            _, location, axis = axis_record.part("AXIS1_PLACEMENT")
            direction = self.direction(axis) if axis is not None else np.array([0.0, 0.0, 1.0])
            return Revolution(self.curve(curve), self.point(location), direction)
        if _looks_like(record, "SURFACE") or record.is_a("SURFACE"):
            raise ParseError(
                f"unsupported entity type {'/'.join(record.type_names)}",
                entity_id=record.id, offset=record.offset,
            )
        raise TopologyError(
            f"face geometry: expected a surface, got {'/'.join(record.type_names)}",
            entity_id=record.id,
        )

    def _bspline_surface(self, record: EntityRecord) -> BSplineSurface:
        if record.is_complex:
            (u_deg, v_deg, ctrl, _form, u_closed, v_closed,
             _self_int) = record.part("B_SPLINE_SURFACE")
            (u_mults, v_mults, u_knots, v_knots,
             _knot_spec) = record.part("B_SPLINE_SURFACE_WITH_KNOTS")
        else:
            (_name, u_deg, v_deg, ctrl, _form, u_closed, v_closed, _self_int,
             u_mults, v_mults, u_knots, v_knots, _knot_spec) = record.params
        grid = [[self.point(p) for p in row] for row in ctrl]
        weights = None
        if record.is_a("RATIONAL_B_SPLINE_SURFACE"):
            weights = [[float(w) for w in row] for row in record.part("RATIONAL_B_SPLINE_SURFACE")[-1]]
        return BSplineSurface(
            int(u_deg), int(v_deg), grid,
            expand_knots(u_mults, u_knots), expand_knots(v_mults, v_knots),
            weights=weights, u_closed=bool(u_closed), v_closed=bool(v_closed),
        )
