"""
OpenSCAD rendering of a lithophane panel.

This is the procedural-solid counterpart of the binary STL path in
`lithophane_pipeline`. It consumes the same `HeightGrid` and
`PanelParameters`, and describes the panel as a tree of cylinders combined
with `union()` / `difference()` and `translate()` / `rotate()`:

- one square pillar (`cylinder($fn=4)`) per grid cell with non-zero relief,
  standing on the back plane at `z = min_height`;
- the centre bore and an outer trimming tube subtracted from the pillars;
- the support stand as the difference of two coaxial cylinders.

The result approximates the STL solid; it is not triangle-identical.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field

import numpy as np

from lithophane_pipeline import (
    HeightGrid,
    PanelParameters,
    PixelBuffer,
    extract_height_grid,
)


logger = logging.getLogger("lithophane.scad")

INDENT = "  "
# Cells whose relief is thinner than this are not emitted as pillars.
MIN_PILLAR_HEIGHT = 1.0e-6
MIN_CIRCLE_SEGMENTS = 32
# Clearance added to cutting solids so their faces never coincide with the
# faces they cut.
CUT_CLEARANCE = 1.0


def _fmt(value: float) -> str:
    text = f"{float(value):.4f}".rstrip("0").rstrip(".")
    if text in ("-0", ""):
        return "0"
    return text


def _vector(values: tuple[float, float, float]) -> str:
    return "[" + ", ".join(_fmt(v) for v in values) + "]"


@dataclass
class ScadNode:
    """Base class of the OpenSCAD node tree."""

    comment: str | None = field(default=None, kw_only=True)

    def head(self) -> str:
        raise NotImplementedError

    def render(self, depth: int = 0) -> list[str]:
        raise NotImplementedError

    def _comment_lines(self, depth: int) -> list[str]:
        if self.comment is None:
            return []
        return [f"{INDENT * depth}// {self.comment}"]


@dataclass
class Cylinder(ScadNode):
    height: float
    radius: float
    segments: int

    def head(self) -> str:
        return f"cylinder(h={_fmt(self.height)}, r={_fmt(self.radius)}, $fn={self.segments});"

    def render(self, depth: int = 0) -> list[str]:
        return self._comment_lines(depth) + [INDENT * depth + self.head()]


@dataclass
class Transform(ScadNode):
    """`translate` or `rotate` applied to its children."""

    op: str
    vector: tuple[float, float, float]
    children: list[ScadNode]

    def head(self) -> str:
        return f"{self.op}({_vector(self.vector)})"

    def render(self, depth: int = 0) -> list[str]:
        lines = self._comment_lines(depth)
        if len(self.children) == 1 and self.children[0].comment is None:
            # Chain single-child transforms on one line: rotate(..) translate(..) cylinder(..);
            child_lines = self.children[0].render(depth)
            first = child_lines[0].lstrip()
            return lines + [f"{INDENT * depth}{self.head()} {first}"] + child_lines[1:]
        lines.append(f"{INDENT * depth}{self.head()} {{")
        for child in self.children:
            lines.extend(child.render(depth + 1))
        lines.append(f"{INDENT * depth}}}")
        return lines


@dataclass
class Boolean(ScadNode):
    """`union` or `difference` of its children (first child minus the rest)."""

    op: str
    children: list[ScadNode]

    def head(self) -> str:
        return f"{self.op}()"

    def render(self, depth: int = 0) -> list[str]:
        lines = self._comment_lines(depth)
        lines.append(f"{INDENT * depth}{self.head()} {{")
        for child in self.children:
            lines.extend(child.render(depth + 1))
        lines.append(f"{INDENT * depth}}}")
        return lines


def translate(vector: tuple[float, float, float], *children: ScadNode, comment: str | None = None) -> Transform:
    return Transform("translate", vector, list(children), comment=comment)


def rotate(vector: tuple[float, float, float], *children: ScadNode, comment: str | None = None) -> Transform:
    return Transform("rotate", vector, list(children), comment=comment)


def relief_pillars(grid: HeightGrid, params: PanelParameters) -> list[ScadNode]:
    """
    One square pillar per polar cell, covering the cell's radial and
    tangential extent at its mid radius.
    """
    res = grid.resolution
    heights = grid.heights(params)
    ring_width = (params.outer_radius - params.inner_radius) / res
    step_deg = 360.0 / res
    step_rad = 2.0 * math.pi / res

    pillars: list[ScadNode] = []
    for i in range(res):
        r_mid = params.inner_radius + (i + 0.5) * ring_width
        # A $fn=4 cylinder turned by 45 degrees is a square of side radius * sqrt(2).
        half_diag = max(ring_width, r_mid * step_rad) / math.sqrt(2.0)
        for j in range(res):
            relief = float(heights[i, j]) - params.min_height
            if relief <= MIN_PILLAR_HEIGHT:
                continue
            pillars.append(
                rotate(
                    (0.0, 0.0, (j + 0.5) * step_deg),
                    translate(
                        (r_mid, 0.0, params.min_height),
                        rotate((0.0, 0.0, 45.0), Cylinder(relief, half_diag, 4)),
                    ),
                )
            )
    return pillars


def build_scad_tree(grid: HeightGrid, params: PanelParameters) -> Boolean:
    """
    Build the OpenSCAD node tree for one panel.

    Parameters
    ----------
    grid : HeightGrid
        Luminance grid shared with the STL renderer.
    params : PanelParameters
        Validated panel dimensions.

    Returns
    -------
    Boolean
        Root `union()` of the relief and the support stand.
    """

    segments = max(MIN_CIRCLE_SEGMENTS, grid.resolution)
    pillars = relief_pillars(grid, params)
    span = params.max_height + params.wall_height + 2.0 * CUT_CLEARANCE
    cut_z = -params.wall_height - CUT_CLEARANCE
    ring_width = (params.outer_radius - params.inner_radius) / grid.resolution
    tangent_step = params.outer_radius * 2.0 * math.pi / grid.resolution
    trim_radius = params.outer_radius + max(ring_width, tangent_step) + CUT_CLEARANCE

    bore = translate(
        (0.0, 0.0, cut_z),
        Cylinder(span, params.inner_radius, segments),
        comment="centre bore",
    )
    outer_trim = translate(
        (0.0, 0.0, cut_z),
        Boolean(
            "difference",
            [
                Cylinder(span, trim_radius, segments),
                translate((0.0, 0.0, -CUT_CLEARANCE), Cylinder(span + 2.0 * CUT_CLEARANCE, params.outer_radius, segments)),
            ],
        ),
        comment="trim pillars overhanging the outer edge",
    )

    children: list[ScadNode] = []
    if pillars:
        children.append(
            Boolean(
                "difference",
                [Boolean("union", pillars), bore, outer_trim],
                comment=f"relief: {len(pillars)} pillars on a {grid.resolution}x{grid.resolution} grid",
            )
        )

    stand_height = params.wall_height + params.min_height
    children.append(
        translate(
            (0.0, 0.0, -params.wall_height),
            Boolean(
                "difference",
                [
                    Cylinder(stand_height, params.outer_radius, segments),
                    translate(
                        (0.0, 0.0, -CUT_CLEARANCE),
                        Cylinder(stand_height + 2.0 * CUT_CLEARANCE, params.wall_distance, segments),
                    ),
                ],
            ),
            comment="support stand",
        )
    )
    logger.debug("OpenSCAD tree: %d pillars, $fn=%d", len(pillars), segments)
    return Boolean("union", children)


def render_scad(grid: HeightGrid, params: PanelParameters) -> str:
    """
    Render the panel as OpenSCAD source text.
    """
    header = [
        "// Lithophane panel",
        f"// outer_diameter={_fmt(params.outer_diameter)} inner_diameter={_fmt(params.inner_diameter)}",
        f"// min_height={_fmt(params.min_height)} max_height={_fmt(params.max_height)}",
        f"// wall_height={_fmt(params.wall_height)} wall_distance={_fmt(params.wall_distance)}",
        "",
    ]
    lines = header + build_scad_tree(grid, params).render()
    return "\n".join(lines) + "\n"


def generate_scad(
    source: HeightGrid | PixelBuffer | np.ndarray,
    params: PanelParameters,
    resolution: int | None = None,
) -> str:
    """Pixels (or an existing grid) to OpenSCAD text."""
    grid = source if isinstance(source, HeightGrid) else extract_height_grid(source, resolution)
    return render_scad(grid, params)
