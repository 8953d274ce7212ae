"""Tessellation options and named presets.

All tolerances used by the pipeline come from ``TessellationOptions``;
nothing in the algorithms hardcodes them. Lengths are in the file's model
units.
"""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass, fields, replace
from typing import Any, Dict, Optional

from .errors import ConfigurationError

NON_MANIFOLD_POLICIES = ("reject", "skip", "warn")


@dataclass(frozen=True)
class TessellationOptions:
    """Options for one pipeline invocation.

    Attributes:
        chord_tolerance: Maximum distance between curve/surface and its
            piecewise-linear approximation
        angular_tolerance: Maximum angle (radians) subtended by one segment
            of a sampled circle or arc
        area_epsilon: Triangles with smaller area are degenerate
        point_epsilon: Parameter-space distance under which points coincide
        max_refinement_passes: Surface refinement passes per face
        max_face_points: Point budget per face before failing
        non_manifold: ``reject``, ``skip`` or ``warn`` for edges used by more
            than two faces
        workers: Thread count for per-face tessellation (1 = sequential)
        backend: Backend name (``native`` or ``occt``)
        simplify_ratio: Target triangle ratio for the optional simplify pass
        simplify_max_error: Maximum collapse error for the simplify pass
        optimize_vertex_cache: Reorder triangles for vertex-cache locality
        target_length_unit: Rescale output positions to this unit
    """

    chord_tolerance: float = 0.1
    angular_tolerance: float = 0.5
    area_epsilon: float = 1e-12
    point_epsilon: float = 1e-9
    max_refinement_passes: int = 8
    max_face_points: int = 200_000
    non_manifold: str = "reject"
    workers: int = 1
    backend: str = "native"
    simplify_ratio: float = 1.0
    simplify_max_error: float = math.inf
    optimize_vertex_cache: bool = False
    target_length_unit: Optional[str] = None

    def validate(self) -> "TessellationOptions":
        """Check option values, returning ``self`` for chaining.

        Raises:
            ConfigurationError: If any option is out of range
        """
        if not self.chord_tolerance > 0:
            raise ConfigurationError(f"chord_tolerance must be > 0, got {self.chord_tolerance}")
        if not 0 < self.angular_tolerance <= math.pi:
            raise ConfigurationError(
                f"angular_tolerance must be in (0, pi], got {self.angular_tolerance}"
            )
        if self.area_epsilon < 0 or self.point_epsilon < 0:
            raise ConfigurationError("epsilons must be >= 0")
        if self.max_refinement_passes < 0:
            raise ConfigurationError("max_refinement_passes must be >= 0")
        if self.max_face_points < 3:
            raise ConfigurationError("max_face_points must be >= 3")
        if self.non_manifold not in NON_MANIFOLD_POLICIES:
            raise ConfigurationError(
                f"non_manifold must be one of {NON_MANIFOLD_POLICIES}, got {self.non_manifold!r}"
            )
        if self.workers < 1:
            raise ConfigurationError(f"workers must be >= 1, got {self.workers}")
        if not 0 < self.simplify_ratio <= 1:
            raise ConfigurationError(f"simplify_ratio must be in (0, 1], got {self.simplify_ratio}")
        if self.simplify_max_error < 0:
            raise ConfigurationError("simplify_max_error must be >= 0")
        return self

    def with_overrides(self, **overrides: Any) -> "TessellationOptions":
        """Return a validated copy with ``overrides`` applied (``None`` values are ignored)."""
        changes = {k: v for k, v in overrides.items() if v is not None}
        return replace(self, **changes).validate()

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any], strict: bool = True) -> "TessellationOptions":
        """Build options from a mapping.

        Args:
            data: Option values by field name
            strict: Reject unknown keys instead of ignoring them

        Raises:
            ConfigurationError: On unknown keys (strict) or invalid values
        """
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown and strict:
            raise ConfigurationError(f"Unknown tessellation options: {', '.join(unknown)}")
        return cls(**{k: v for k, v in data.items() if k in known}).validate()


PRESETS: Dict[str, TessellationOptions] = {
    "draft": TessellationOptions(chord_tolerance=0.5, angular_tolerance=0.8, max_refinement_passes=4),
    "default": TessellationOptions(),
    "fine": TessellationOptions(chord_tolerance=0.01, angular_tolerance=0.2, max_refinement_passes=12),
}


def get_preset(name: str) -> TessellationOptions:
    """Return a named preset.

    Raises:
        ConfigurationError: If the preset does not exist
    """
    try:
        return PRESETS[name]
    except KeyError:
        raise ConfigurationError(
            f"Unknown preset {name!r}; choose from {', '.join(PRESETS)}"
        ) from None
