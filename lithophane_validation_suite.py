#!/usr/bin/env python3
"""
Validation pack for the lithophane generator.

Why this script exists:
- Generate a small, repeatable set of panels (STL + OpenSCAD) from synthetic
  images with known luminance.
- Re-load every STL with trimesh and report objective metrics (triangle count,
  size, bounds, watertightness, shell closure) before a test print.
- Make slicer experiments reproducible with one command.

This script does NOT replace a slicer preview:
it prepares a consistent "test pack" for that verification step.
"""

from __future__ import annotations

import argparse
import json
from dataclasses import asdict, dataclass
from datetime import datetime
from pathlib import Path

import numpy as np
import trimesh

from lithophane_pipeline import (
    DEFAULT_PARAMETERS,
    RADIAL_EDGE_POLICIES,
    PanelLayout,
    PanelParameters,
    PixelBuffer,
    build_panel_mesh,
    count_shared_edges,
    encode_binary_stl,
    extract_height_grid,
    load_pixel_buffer,
)
from lithophane_scad import render_scad


DEFAULT_SIZE = 48


@dataclass
class CaseSummary:
    case: str
    radial_edge: str
    resolution: int
    triangles: int
    predicted: int
    degenerate: int
    stl_bytes: int
    stl_file: str
    scad_file: str
    loaded_faces: int
    panel_watertight: bool
    stand_watertight: bool
    open_panel_edges: int
    open_stand_edges: int
    min_z: float
    max_z: float
    width_mm: float


def synthetic_images(size: int) -> dict[str, np.ndarray]:
    """
    Grayscale test patterns with predictable heights.
    """
    ramp = np.tile(np.linspace(0.0, 255.0, size), (size, 1))
    yy, xx = np.mgrid[0:size, 0:size].astype(np.float64)
    centre = (size - 1) / 2.0
    radius = np.hypot(xx - centre, yy - centre)
    rings = 127.5 + 127.5 * np.cos(radius * (2.0 * np.pi / max(size / 6.0, 1.0)))
    return {
        "uniform_gray": np.full((size, size), 128, dtype=np.uint8),
        "black": np.zeros((size, size), dtype=np.uint8),
        "white": np.full((size, size), 255, dtype=np.uint8),
        "ramp": ramp.round().astype(np.uint8),
        "rings": rings.round().astype(np.uint8),
    }


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Generate a repeatable lithophane validation pack (STL + SCAD + report)."
    )
    parser.add_argument(
        "--images",
        nargs="*",
        type=Path,
        default=None,
        help="Optional image files. If omitted, synthetic patterns are used.",
    )
    parser.add_argument(
        "--out-dir",
        type=Path,
        default=Path(__file__).resolve().parent / "out" / "validation",
        help="Output directory for generated panels and report.",
    )
    parser.add_argument("--size", type=int, default=DEFAULT_SIZE, help="Synthetic image side in pixels")
    parser.add_argument("--resolution", type=int, default=None, help="Optional grid resolution cap")
    parser.add_argument("--max-height", type=float, default=DEFAULT_PARAMETERS["max_height"])
    parser.add_argument("--min-height", type=float, default=DEFAULT_PARAMETERS["min_height"])
    parser.add_argument("--outer-diameter", type=float, default=DEFAULT_PARAMETERS["outer_diameter"])
    parser.add_argument("--inner-diameter", type=float, default=DEFAULT_PARAMETERS["inner_diameter"])
    parser.add_argument("--wall-height", type=float, default=DEFAULT_PARAMETERS["wall_height"])
    parser.add_argument("--wall-distance", type=float, default=DEFAULT_PARAMETERS["wall_distance"])
    return parser.parse_args()


def resolve_cases(args: argparse.Namespace, params: PanelParameters) -> dict[str, PixelBuffer]:
    """
    Image files when given, synthetic patterns otherwise.
    """
    if args.images:
        missing = [p for p in args.images if not p.exists()]
        if missing:
            raise FileNotFoundError(f"Missing images: {', '.join(str(m) for m in missing)}")
        return {p.stem: load_pixel_buffer(p.resolve(), disc_params=params) for p in args.images}
    return {
        name: PixelBuffer.from_array(pixels)
        for name, pixels in synthetic_images(int(args.size)).items()
    }


def open_edge_count(triangles: np.ndarray) -> int:
    """
    Edges not shared by exactly two triangles.
    """
    counts = count_shared_edges(triangles)
    return int(np.count_nonzero(counts != 2))


def load_stl_mesh(stl_path: Path) -> trimesh.Trimesh:
    """
    Re-load a generated STL exactly as written (no vertex merge, no cleanup).

    Degenerate faces are kept on purpose so the loaded face count can be
    compared with the predicted triangle count.
    """
    loaded = trimesh.load(stl_path, force="mesh", process=False)
    if isinstance(loaded, trimesh.Scene):
        if not loaded.geometry:
            raise ValueError(f"No geometry found in {stl_path}")
        loaded = trimesh.util.concatenate(tuple(loaded.geometry.values()))
    if not isinstance(loaded, trimesh.Trimesh):
        raise TypeError(f"{stl_path} does not contain a triangular mesh.")
    return loaded


def shell_is_watertight(loaded: trimesh.Trimesh, start: int, stop: int) -> bool:
    """
    trimesh watertightness of faces `[start, stop)` after merging vertices.
    """
    shell = trimesh.Trimesh(vertices=loaded.vertices, faces=loaded.faces[start:stop], process=True)
    return bool(shell.is_watertight)


def validate_case(
    name: str,
    pixels: PixelBuffer,
    params: PanelParameters,
    radial_edge: str,
    resolution: int | None,
    out_dir: Path,
) -> CaseSummary:
    """
    Generate one panel with the production pipeline and measure it.
    """
    grid = extract_height_grid(pixels, resolution)
    layout = PanelLayout(grid.resolution)
    mesh = build_panel_mesh(grid, params, radial_edge=radial_edge)
    data = encode_binary_stl(mesh, layout)

    stl_path = out_dir / f"{name}__{radial_edge}.stl"
    scad_path = out_dir / f"{name}__{radial_edge}.scad"
    stl_path.write_bytes(data)
    scad_path.write_text(render_scad(grid, params), encoding="utf-8")

    loaded = load_stl_mesh(stl_path)
    bounds = np.asarray(loaded.bounds, dtype=np.float64)

    blocks = {block: (start, count) for block, start, count in layout.blocks()}
    panel_end = blocks["outer_wall"][0] + blocks["outer_wall"][1]
    stand_start = blocks["stand_top"][0]

    return CaseSummary(
        case=name,
        radial_edge=radial_edge,
        resolution=grid.resolution,
        triangles=len(mesh),
        predicted=layout.triangle_count,
        degenerate=mesh.degenerate_count,
        stl_bytes=len(data),
        stl_file=stl_path.name,
        scad_file=scad_path.name,
        loaded_faces=int(len(loaded.faces)),
        panel_watertight=shell_is_watertight(loaded, 0, panel_end),
        stand_watertight=shell_is_watertight(loaded, stand_start, len(mesh)),
        open_panel_edges=open_edge_count(mesh.triangles[:panel_end]),
        open_stand_edges=open_edge_count(mesh.triangles[stand_start:]),
        min_z=float(bounds[0, 2]),
        max_z=float(bounds[1, 2]),
        width_mm=float(bounds[1, 0] - bounds[0, 0]),
    )


def write_markdown_report(
    report_path: Path,
    cases: list[CaseSummary],
    config: dict[str, float | int | str | None],
) -> None:
    """
    Human-readable report + print checklist.
    """
    lines: list[str] = []
    lines.append("# Lithophane Validation Report")
    lines.append("")
    lines.append(f"- Generated: {datetime.now().isoformat(timespec='seconds')}")
    lines.append("- Goal: validate triangle counts, dimensions and shell closure before slicing.")
    lines.append("")
    lines.append("## Configuration")
    lines.append("")
    for k, v in config.items():
        lines.append(f"- `{k}`: `{v}`")
    lines.append("")
    lines.append("## Cases")
    lines.append("")
    lines.append("| Case | Radial edge | R | Triangles | Predicted | Degenerate | Bytes | Loaded | Panel watertight | Stand watertight | Open panel edges | Open stand edges | Z range (mm) | Width (mm) |")
    lines.append("|---|---|---:|---:|---:|---:|---:|---:|---|---|---:|---:|---:|---:|")
    for c in cases:
        z_range = f"{c.min_z:.2f} .. {c.max_z:.2f}"
        lines.append(
            f"| `{c.case}` | `{c.radial_edge}` | {c.resolution} | {c.triangles} | {c.predicted} | "
            f"{c.degenerate} | {c.stl_bytes} | {c.loaded_faces} | {'yes' if c.panel_watertight else 'no'} | {'yes' if c.stand_watertight else 'no'} | "
            f"{c.open_panel_edges} | {c.open_stand_edges} | {z_range} | {c.width_mm:.2f} |"
        )
    lines.append("")
    lines.append("## Slicer Checklist")
    lines.append("")
    lines.append("1. Import each `.stl` and confirm the disc diameter matches `Width (mm)`.")
    lines.append("2. Confirm the stand sits below the panel and reaches `-wall_height`.")
    lines.append("3. `white` panels have zero relief thickness; expect the slicer to drop them.")
    lines.append("4. Compare `wrap` and `clamp` panels along the outer rim.")
    lines.append("5. Render each `.scad` in OpenSCAD and compare its silhouette with the STL.")
    lines.append("")
    report_path.write_text("\n".join(lines), encoding="utf-8")


def run() -> int:
    args = parse_args()
    params = PanelParameters(
        max_height=float(args.max_height),
        min_height=float(args.min_height),
        outer_diameter=float(args.outer_diameter),
        inner_diameter=float(args.inner_diameter),
        wall_height=float(args.wall_height),
        wall_distance=float(args.wall_distance),
    )

    images = resolve_cases(args, params)
    out_dir = args.out_dir.resolve()
    out_dir.mkdir(parents=True, exist_ok=True)

    cases: list[CaseSummary] = []
    for name, pixels in images.items():
        for radial_edge in RADIAL_EDGE_POLICIES:
            cases.append(
                validate_case(
                    name=name,
                    pixels=pixels,
                    params=params,
                    radial_edge=radial_edge,
                    resolution=args.resolution,
                    out_dir=out_dir,
                )
            )

    report_md = out_dir / "validation_report.md"
    report_json = out_dir / "validation_report.json"

    config = {
        **asdict(params),
        "size": args.size,
        "resolution": args.resolution,
    }

    write_markdown_report(report_md, cases, config=config)
    report_json.write_text(
        json.dumps(
            {
                "generated_at": datetime.now().isoformat(timespec="seconds"),
                "config": config,
                "cases": [asdict(c) for c in cases],
            },
            indent=2,
        ),
        encoding="utf-8",
    )

    print(f"[OK] Validation pack saved in: {out_dir}")
    print(f"[OK] Markdown report: {report_md.name}")
    print(f"[OK] JSON report: {report_json.name}")
    for c in cases:
        print(
            f" - {c.case:12s} | {c.radial_edge:5s} | tris={c.triangles:7d} | "
            f"degenerate={c.degenerate:6d} | open={c.open_panel_edges + c.open_stand_edges:4d} | "
            f"z={c.min_z:6.2f}..{c.max_z:5.2f}"
        )
    return 0


if __name__ == "__main__":
    raise SystemExit(run())
