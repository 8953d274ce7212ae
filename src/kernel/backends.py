"""Tessellation backend registry.

A backend is any object with a ``name``, an ``available()`` check and a
``tessellate(data, options, cancel)`` method returning a ``TriangleMesh``.
Backends are looked up by name from ``TessellationOptions.backend``.
"""

from __future__ import annotations

from typing import Any, Dict, Optional, Protocol

from . import occt_io
from .config import TessellationOptions
from .errors import BackendNotAvailableError, ConfigurationError
from .mesh import TriangleMesh


class Backend(Protocol):
    name: str

    def available(self) -> bool:
        ...

    def tessellate(self, data: bytes, options: TessellationOptions,
                   cancel: Optional[Any] = None) -> TriangleMesh:
        ...


class NativeBackend:
    """Pure-Python pipeline: parse, topology, tessellate, stitch, assemble."""

    name = "native"

    def available(self) -> bool:
        return True

    def tessellate(self, data: bytes, options: TessellationOptions,
                   cancel: Optional[Any] = None) -> TriangleMesh:
        from .pipeline import run_native

        return run_native(data, options, cancel)


class OcctBackend:
    """OpenCASCADE ``BRepMesh`` via OCP or pythonocc-core."""

    name = "occt"

    def available(self) -> bool:
        return occt_io.is_available()

    def tessellate(self, data: bytes, options: TessellationOptions,
                   cancel: Optional[Any] = None) -> TriangleMesh:
        return occt_io.tessellate_with_occt(data, options, cancel)


BACKENDS: Dict[str, Backend] = {
    NativeBackend.name: NativeBackend(),
    OcctBackend.name: OcctBackend(),
}


def get_backend(name: str) -> Backend:
    """Return the backend registered as ``name``.

    Raises:
        ConfigurationError: If no backend has that name
        BackendNotAvailableError: If the backend's native library is missing
    """
    try:
        backend = BACKENDS[name]
    except KeyError:
        raise ConfigurationError(
            f"Unknown backend {name!r}; choose from {', '.join(sorted(BACKENDS))}"
        ) from None
    if not backend.available():
        raise BackendNotAvailableError(f"Backend {name!r} is not available on this system")
    return backend


def available_backends() -> Dict[str, bool]:
    return {name: backend.available() for name, backend in sorted(BACKENDS.items())}
