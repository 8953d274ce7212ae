"""stepmesh CLI for local development and testing.

Provides command-line interface for STEP inspection, tessellation to
welded triangle meshes, and mesh simplification.
"""

from __future__ import annotations

import math
from pathlib import Path
from typing import Optional

import structlog
import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from kernel.backends import available_backends
from kernel.config import PRESETS, get_preset
from kernel.errors import StepMeshError
from kernel.export import EXPORT_FORMATS, ExportError, export_mesh
from kernel.mesh import TriangleMesh
from kernel.occt_io import get_occt_info
from kernel.pipeline import tessellate_step
from kernel.serialize import load_mesh, save_mesh
from kernel.simplify import simplify as simplify_mesh
from kernel.summary import GeometrySummary, summarize_mesh, summarize_model
from stepgraph.parser import parse_step

from .logging_setup import configure_for, error_context

logger = structlog.get_logger(__name__)

# Create Typer app
app = typer.Typer(
    name="stepmesh",
    help="stepmesh CLI for converting STEP BREP models into triangle meshes",
    add_completion=False,
)

console = Console()

OUTPUT_FORMATS = ("json",) + EXPORT_FORMATS


def _display_error(message: str, error: Optional[Exception] = None) -> None:
    """Display error message with styling."""
    error_text = Text(f"❌ {message}", style="bold red")
    if error:
        error_text.append(f"\n   {str(error)}", style="red")
    console.print(Panel(error_text, title="Error", border_style="red"))


def _display_success(message: str) -> None:
    """Display success message with styling."""
    success_text = Text(f"✅ {message}", style="bold green")
    console.print(Panel(success_text, title="Success", border_style="green"))


def _display_warning(message: str) -> None:
    """Display warning message with styling."""
    warning_text = Text(f"⚠️  {message}", style="bold yellow")
    console.print(Panel(warning_text, title="Warning", border_style="yellow"))


def _format_file_size(size: float) -> str:
    """Format file size in human-readable units."""
    for unit in ["B", "KB", "MB", "GB"]:
        if size < 1024:
            return f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} TB"


def _read_step(path: Path) -> bytes:
    if not path.exists():
        raise FileNotFoundError(f"STEP file not found: {path}")
    return path.read_bytes()


def _output_format(output: Path, format: Optional[str]) -> str:
    fmt = (format or output.suffix.lstrip(".") or "json").lower()
    if fmt not in OUTPUT_FORMATS:
        raise typer.BadParameter(
            f"Unsupported format {fmt!r}; choose from {', '.join(OUTPUT_FORMATS)}"
        )
    return fmt


def _write_mesh(mesh: TriangleMesh, output: Path, fmt: str) -> int:
    """Write ``mesh`` as serialized JSON or an export format, returning the size."""
    if fmt == "json":
        save_mesh(mesh, output)
        return output.stat().st_size
    result = export_mesh(mesh, format=fmt, output_path=output, name=output.stem)
    return result["size_bytes"]


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
    json_logs: bool = typer.Option(False, "--json-logs", help="Emit logs as JSON lines"),
) -> None:
    """Configure logging before any command runs."""
    configure_for("cli", verbose=verbose, json_logs=json_logs)


@app.command()
def info() -> None:
    """Display stepmesh information, backends and presets."""
    console.print(Panel(
        "stepmesh\n"
        "STEP BREP tessellation into welded triangle meshes",
        title="stepmesh",
        border_style="blue"
    ))

    backend_table = Table(title="Backends")
    backend_table.add_column("Backend", style="cyan")
    backend_table.add_column("Available", style="green")
    for name, available in available_backends().items():
        backend_table.add_row(name, "✅" if available else "❌")
    console.print(backend_table)

    occt_info = get_occt_info()
    occt_table = Table(title="OCCT Binding Status")
    occt_table.add_column("Binding", style="cyan")
    occt_table.add_column("Available", style="green")
    occt_table.add_column("Version", style="yellow")
    for binding, key in (("OCP", "OCP_available"), ("pythonOCC", "pythonOCC_available")):
        occt_table.add_row(
            binding,
            "✅" if occt_info[key] else "❌",
            occt_info.get("occt_version") or "unknown" if occt_info[key] else "N/A",
        )
    console.print(occt_table)

    preset_table = Table(title="Presets")
    preset_table.add_column("Preset", style="cyan")
    preset_table.add_column("Chord tolerance", style="yellow")
    preset_table.add_column("Angular tolerance", style="yellow")
    for name, preset in PRESETS.items():
        preset_table.add_row(name, f"{preset.chord_tolerance:g}", f"{preset.angular_tolerance:g}")
    console.print(preset_table)

    if occt_info["recommended_binding"]:
        _display_success(f"Recommended OCCT binding: {occt_info['recommended_binding']}")


@app.command()
def inspect(
    path: str = typer.Argument(..., help="Path to STEP file"),
    non_manifold: str = typer.Option("warn", "--non-manifold", help="reject, skip or warn"),
) -> None:
    """Parse a STEP file and report its topology without tessellating."""
    file_path = Path(path)

    try:
        console.print(f"🔄 Inspecting STEP file: {file_path}")
        data = _read_step(file_path)
        graph = parse_step(data)
        summary = summarize_model(graph, model_id=file_path.stem, non_manifold=non_manifold)
    except (StepMeshError, OSError) as e:
        logger.error("Inspection failed", path=str(file_path), **error_context(e))
        _display_error("Failed to inspect STEP file", e)
        raise typer.Exit(1)

    _display_summary(summary, len(data))
    _display_success(f"Inspected {summary.faces} faces in {summary.solids} solids")


@app.command()
def tessellate(
    path: str = typer.Argument(..., help="Path to STEP file"),
    output: Optional[str] = typer.Option(None, "--output", "-o", help="Output path for the mesh"),
    format: Optional[str] = typer.Option(None, "--format", help="json, glb, gltf or obj (default from suffix)"),
    preset: str = typer.Option("default", "--preset", help="Tolerance preset"),
    tolerance: Optional[float] = typer.Option(None, "--tolerance", "-t", help="Chord tolerance in model units"),
    angular_tolerance: Optional[float] = typer.Option(None, "--angular-tolerance", help="Angular tolerance in radians"),
    backend: Optional[str] = typer.Option(None, "--backend", "-b", help="native or occt"),
    workers: Optional[int] = typer.Option(None, "--workers", "-w", help="Threads for per-face tessellation"),
    simplify_ratio: Optional[float] = typer.Option(None, "--simplify-ratio", help="Keep this fraction of triangles"),
    max_error: Optional[float] = typer.Option(None, "--max-error", help="Largest simplification error"),
    optimize_cache: bool = typer.Option(False, "--optimize-cache", help="Reorder triangles for vertex-cache locality"),
    unit: Optional[str] = typer.Option(None, "--unit", help="Rescale output to this length unit"),
) -> None:
    """Tessellate a STEP file into a welded triangle mesh."""
    file_path = Path(path)
    output_path = Path(output) if output else file_path.with_suffix(".mesh.json")
    fmt = _output_format(output_path, format)

    try:
        options = get_preset(preset).with_overrides(
            chord_tolerance=tolerance,
            angular_tolerance=angular_tolerance,
            backend=backend,
            workers=workers,
            simplify_ratio=simplify_ratio,
            simplify_max_error=max_error,
            optimize_vertex_cache=optimize_cache or None,
            target_length_unit=unit,
        )
        console.print(f"🔄 Tessellating {file_path} with backend {options.backend}")
        mesh = tessellate_step(_read_step(file_path), options=options)
        size = _write_mesh(mesh, output_path, fmt)
    except (StepMeshError, ExportError, OSError) as e:
        logger.error("Tessellation failed", path=str(file_path), **error_context(e))
        _display_error("Failed to tessellate STEP file", e)
        raise typer.Exit(1)

    _display_mesh(mesh)
    for warning in mesh.metadata.get("warnings", []):
        _display_warning(warning)
    _display_success(f"Mesh written to: {output_path} ({_format_file_size(size)})")


@app.command()
def simplify(
    mesh_path: str = typer.Argument(..., help="Path to a mesh JSON file"),
    ratio: float = typer.Option(0.5, "--ratio", "-r", help="Fraction of triangles to keep"),
    max_error: float = typer.Option(math.inf, "--max-error", help="Largest collapse error to accept"),
    output: Optional[str] = typer.Option(None, "--output", "-o", help="Output path"),
    format: Optional[str] = typer.Option(None, "--format", help="json, glb, gltf or obj (default from suffix)"),
) -> None:
    """Simplify a saved mesh by quadric-error edge collapse."""
    input_path = Path(mesh_path)
    output_path = Path(output) if output else input_path.with_name(f"{input_path.stem}.simplified.json")
    fmt = _output_format(output_path, format)

    try:
        mesh = load_mesh(input_path)
        result = simplify_mesh(mesh, ratio, max_error)
        _write_mesh(result, output_path, fmt)
    except (StepMeshError, ExportError, OSError, ValueError) as e:
        logger.error("Simplification failed", path=str(input_path), **error_context(e))
        _display_error("Failed to simplify mesh", e)
        raise typer.Exit(1)

    report = result.metadata["simplify"]
    table = Table(title="Simplification")
    table.add_column("Property", style="cyan")
    table.add_column("Value", style="white")
    table.add_row("Triangles", f"{report['original_triangles']} → {result.triangle_count}")
    table.add_row("Target", str(report["target_triangles"]))
    table.add_row("Max error", f"{report['error']:.6g}")
    console.print(table)

    if not report["target_reached"]:
        _display_warning("Stopped before the target triangle count (error bound reached)")
    _display_success(f"Simplified mesh written to: {output_path}")


def _display_summary(summary: GeometrySummary, file_size: int) -> None:
    """Display model summary in formatted tables."""
    topology_table = Table(title="Topology")
    topology_table.add_column("Entity", style="cyan")
    topology_table.add_column("Count", style="yellow")

    topology_table.add_row("Entities", str(summary.entities))
    topology_table.add_row("Solids", str(summary.solids))
    topology_table.add_row("Shells", f"{summary.shells} ({summary.closed_shells} closed)")
    topology_table.add_row("Faces", str(summary.faces))
    topology_table.add_row("Edges", str(summary.edges))
    topology_table.add_row("Vertices", str(summary.vertices))
    topology_table.add_row("Non-manifold edges", str(summary.non_manifold_edges))
    console.print(topology_table)

    props_table = Table(title="Properties")
    props_table.add_column("Property", style="cyan")
    props_table.add_column("Value", style="white")
    props_table.add_row("Schema", summary.schema or "unknown")
    props_table.add_row("File Size", _format_file_size(file_size))
    props_table.add_row("Units", ", ".join(f"{k}: {v}" for k, v in summary.units.items()))
    props_table.add_row("Surfaces", ", ".join(f"{k}: {v}" for k, v in summary.surface_kinds.items()))
    props_table.add_row("Curves", ", ".join(f"{k}: {v}" for k, v in summary.curve_kinds.items()))
    console.print(props_table)

    if summary.analysis_warnings:
        console.print("\n[bold yellow]Warnings:[/bold yellow]")
        for warning in summary.analysis_warnings:
            console.print(f"  ⚠️  {warning}")


def _display_mesh(mesh: TriangleMesh) -> None:
    """Display mesh statistics in a formatted table."""
    report = summarize_mesh(mesh)
    table = Table(title="Mesh")
    table.add_column("Property", style="cyan")
    table.add_column("Value", style="white")

    table.add_row("Backend", str(mesh.metadata.get("backend", "unknown")))
    table.add_row("Vertices", str(report.vertices))
    table.add_row("Triangles", str(report.triangles))
    table.add_row("Watertight", "✅" if report.watertight else "❌")
    table.add_row("Boundary loops", str(report.boundary_loops))
    table.add_row("Surface Area", f"{report.surface_area:.4g}")
    table.add_row("Volume", f"{report.volume:.4g}")
    if report.bounding_box:
        bbox = report.bounding_box
        table.add_row("Bounding Box", (
            f"({bbox['min_x']:.2f}, {bbox['min_y']:.2f}, {bbox['min_z']:.2f}) → "
            f"({bbox['max_x']:.2f}, {bbox['max_y']:.2f}, {bbox['max_z']:.2f})"
        ))
    console.print(table)


if __name__ == "__main__":
    app()
