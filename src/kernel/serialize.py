"""Deterministic JSON serialization for triangle meshes.

Meshes serialize to a flat dictionary with sorted metadata so identical
meshes always produce identical bytes.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, Iterator, List, Union

import numpy as np
import orjson

from .mesh import TriangleMesh, vertex_normals

FORMAT_VERSION = "1.0"


def _sort_dict_recursive(obj: Any) -> Any:
    """Recursively sort dictionaries for deterministic output."""
    if isinstance(obj, dict):
        return {str(k): _sort_dict_recursive(v) for k, v in sorted(obj.items(), key=lambda kv: str(kv[0]))}
    elif isinstance(obj, (list, tuple)):
        return [_sort_dict_recursive(item) for item in obj]
    elif isinstance(obj, np.generic):
        return obj.item()
    else:
        return obj


def to_json_dict(mesh: TriangleMesh) -> Dict[str, Any]:
    """Convert a mesh to a JSON-serializable dictionary."""
    return {
        "format_version": FORMAT_VERSION,
        "vertex_count": mesh.vertex_count,
        "triangle_count": mesh.triangle_count,
        "positions": mesh.positions.tolist(),
        "normals": mesh.normals.tolist(),
        "indices": mesh.indices.tolist(),
        "metadata": _sort_dict_recursive(mesh.metadata),
    }


def to_json_string(mesh: TriangleMesh, pretty: bool = False) -> str:
    data = to_json_dict(mesh)
    if pretty:
        return json.dumps(data, indent=2, ensure_ascii=False)
    return orjson.dumps(data).decode("utf-8")


def from_json_dict(data: Dict[str, Any]) -> TriangleMesh:
    """Rebuild a mesh from ``to_json_dict`` output.

    Raises:
        ValueError: If required fields are missing or malformed
    """
    try:
        positions = np.asarray(data["positions"], dtype=float).reshape(-1, 3)
        indices = np.asarray(data["indices"], dtype=np.int64).reshape(-1, 3)
    except (KeyError, TypeError, ValueError) as e:
        raise ValueError(f"Invalid mesh data: {e}") from e
    normals = data.get("normals")
    if normals is None or len(normals) != len(positions):
        normals = vertex_normals(positions, indices)
    return TriangleMesh(positions, np.asarray(normals, dtype=float), indices, dict(data.get("metadata") or {}))


def save_mesh(mesh: TriangleMesh, path: Union[str, Path]) -> Path:
    """Write a mesh as a single JSON document."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(orjson.dumps(to_json_dict(mesh)))
    return path


def load_mesh(path: Union[str, Path]) -> TriangleMesh:
    """Read a mesh written by ``save_mesh``.

    Raises:
        FileNotFoundError: If the file doesn't exist
        ValueError: If the JSON or mesh data is invalid
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Mesh file not found: {path}")
    try:
        data = orjson.loads(path.read_bytes())
    except orjson.JSONDecodeError as e:
        raise ValueError(f"Failed to parse {path}: {e}") from e
    return from_json_dict(data)


def dump_jsonl(meshes: List[TriangleMesh], path: Union[str, Path]) -> None:
    """Write meshes to a JSONL file, one mesh per line."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "wb") as f:
        for mesh in meshes:
            f.write(orjson.dumps(to_json_dict(mesh)))
            f.write(b"\n")


def load_jsonl(path: Union[str, Path]) -> Iterator[TriangleMesh]:
    """Load meshes from a JSONL file.

    Raises:
        FileNotFoundError: If the file doesn't exist
        ValueError: If a line cannot be parsed
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"JSONL file not found: {path}")
    with open(path, "rb") as f:
        for line_num, line in enumerate(f, 1):
            line = line.strip()
            if not line:
                continue
            try:
                yield from_json_dict(orjson.loads(line))
            except (orjson.JSONDecodeError, ValueError) as e:
                raise ValueError(f"Failed to parse line {line_num}: {e}") from e
