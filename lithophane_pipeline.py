#!/usr/bin/env python3
"""
Lithophane panel mesh pipeline.

Pipeline stage
--------------
This module turns a raster image into a disc-shaped lithophane panel. The image
is reduced to a square grayscale height grid, the grid is revolved into a polar
triangle mesh with a back support stand, and the mesh is packed into a binary
STL buffer whose size is fixed before the first triangle is written.

Input / output
--------------
Input is an RGBA pixel buffer plus a `PanelParameters` record in millimetres.
Output is the raw bytes of a binary STL file. The OpenSCAD rendering of the
same height grid lives in `lithophane_scad`.

Key parameters
--------------
`resolution` is the grid side length; it sets both the number of radial rings
and the number of angular segments, so the triangle count grows with its
square. `radial_edge` selects which grid row feeds the outer boundary ring
(`"wrap"` or `"clamp"`).

Coordinate conventions
----------------------
Millimetres, right-handed, `+z` up. The panel is centred on the z axis. The
relief occupies `min_height <= z <= max_height` above the flat back plane at
`z = min_height`, and the support stand hangs below it down to
`z = -wall_height`. The angle `theta` is measured counter-clockwise from `+x`.
Grid index `i` is radial (image x) and `j` is angular (image y).
"""

from __future__ import annotations

import argparse
import logging
import math
import struct
import sys
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Callable, Mapping

import numpy as np
from PIL import Image, ImageDraw

from logging_config import setup_logging


logger = logging.getLogger("lithophane.pipeline")

# WARNING: the stand wall thickness is part of the printed geometry contract,
# not a tuning knob; `PanelParameters` rejects any other value.
WALL_THICKNESS_MM = 0.5
LUMINANCE_WEIGHTS = (0.299, 0.587, 0.114)
# WARNING: degeneracy is judged on the sine of the angle between the two
# triangle edges, so the threshold is independent of the panel size.
DEGENERATE_SINE = 1.0e-9
# Triangles promoted to float64 at a time while computing normals; bounds the
# temporary memory independently of the mesh size.
NORMAL_CHUNK_TRIANGLES = 16384

STL_HEADER_SIZE = 80
STL_COUNT_SIZE = 4
STL_RECORD_SIZE = 50
STL_RECORD_DTYPE = np.dtype(
    [
        ("normal", "<f4", (3,)),
        ("vertices", "<f4", (3, 3)),
        ("attribute", "<u2"),
    ]
)

RADIAL_WRAP = "wrap"
RADIAL_CLAMP = "clamp"
RADIAL_EDGE_POLICIES = (RADIAL_WRAP, RADIAL_CLAMP)

PARAMETER_RANGES: dict[str, tuple[float, float]] = {
    "max_height": (1.0, 10.0),
    "min_height": (0.1, 2.0),
    "outer_diameter": (50.0, 200.0),
    "inner_diameter": (10.0, 50.0),
    "wall_height": (1.0, 10.0),
    "wall_distance": (20.0, 90.0),
}

# Keys used by the web front-end parameter bag.
CAMEL_CASE_KEYS = {
    "maxHeight": "max_height",
    "minHeight": "min_height",
    "outerDiameter": "outer_diameter",
    "innerDiameter": "inner_diameter",
    "wallHeight": "wall_height",
    "wallDistance": "wall_distance",
    "wallThickness": "wall_thickness",
}

DEFAULT_PARAMETERS: dict[str, float] = {
    "max_height": 3.0,
    "min_height": 0.5,
    "outer_diameter": 100.0,
    "inner_diameter": 30.0,
    "wall_height": 5.0,
    "wall_distance": 40.0,
}


class LithophaneError(Exception):
    """Base class for every failure raised by the generation engine."""


class InvalidImage(LithophaneError, ValueError):
    """The pixel buffer is empty, malformed, or cannot be decoded."""


class InvalidParameters(LithophaneError, ValueError):
    """A panel dimension violates its range or a cross-field invariant."""


class DegenerateGeometry(LithophaneError):
    """A triangle has a zero-length normal and strict normals were requested."""


class SizeMismatch(LithophaneError):
    """The emitted triangle or byte count disagrees with the predicted layout."""


class GenerationCancelled(LithophaneError):
    """The caller asked the mesh builder to stop."""


@dataclass(frozen=True)
class PanelParameters:
    """
    Physical dimensions of one lithophane panel.

    Parameters
    ----------
    max_height : float
        Relief height for black pixels, in millimetres.
    min_height : float
        Relief height for white pixels and z of the flat back plane, in
        millimetres.
    outer_diameter : float
        Outer diameter of the disc, in millimetres.
    inner_diameter : float
        Diameter of the centre bore, in millimetres.
    wall_height : float
        The support stand reaches down to `z = -wall_height`, in millimetres.
    wall_distance : float
        Radius of the support wall face, in millimetres.
    wall_thickness : float, optional
        Minimum radial width of the stand, fixed at 0.5 mm.

    Returns
    -------
    None
        Frozen dataclass container.

    Notes
    -----
    Validation runs in `__post_init__`, so an instance that exists is always
    valid and the engine never re-checks it.

    Assumptions
    -----------
    Values are plain floats; use `from_mapping` for loosely typed input.
    """

    max_height: float
    min_height: float
    outer_diameter: float
    inner_diameter: float
    wall_height: float
    wall_distance: float
    wall_thickness: float = WALL_THICKNESS_MM

    def __post_init__(self) -> None:
        validate_parameters(self)

    @property
    def inner_radius(self) -> float:
        return self.inner_diameter / 2.0

    @property
    def outer_radius(self) -> float:
        return self.outer_diameter / 2.0

    @classmethod
    def from_mapping(cls, values: Mapping[str, object]) -> PanelParameters:
        """
        Build parameters from a dict using snake_case or camelCase keys.
        """
        known = {f.name for f in fields(cls)}
        kwargs: dict[str, float] = {}
        for key, value in values.items():
            name = CAMEL_CASE_KEYS.get(key, key)
            if name not in known:
                raise InvalidParameters(f"Unknown panel parameter: {key}")
            try:
                kwargs[name] = float(value)  # type: ignore[arg-type]
            except (TypeError, ValueError) as exc:
                raise InvalidParameters(f"{key} must be a number, got {value!r}") from exc

        missing = [name for name in PARAMETER_RANGES if name not in kwargs]
        if missing:
            raise InvalidParameters(f"Missing panel parameters: {', '.join(missing)}")
        return cls(**kwargs)


def validate_parameters(params: PanelParameters) -> None:
    """
    Check cross-field invariants and the accepted range of every dimension.

    Parameters
    ----------
    params : PanelParameters
        Record to validate.

    Returns
    -------
    None

    Notes
    -----
    Cross-field invariants are checked before ranges so that the reported
    error names the real conflict (e.g. an inner bore wider than the disc).

    Assumptions
    -----------
    Called from `PanelParameters.__post_init__`.
    """

    for name in (*PARAMETER_RANGES, "wall_thickness"):
        if not math.isfinite(getattr(params, name)):
            raise InvalidParameters(f"{name} must be finite")

    if params.inner_diameter <= 0.0:
        raise InvalidParameters("inner_diameter must be > 0")
    if params.inner_diameter >= params.outer_diameter:
        raise InvalidParameters(
            f"inner_diameter ({params.inner_diameter}) must be smaller than "
            f"outer_diameter ({params.outer_diameter})"
        )
    if params.min_height >= params.max_height:
        raise InvalidParameters(
            f"min_height ({params.min_height}) must be smaller than "
            f"max_height ({params.max_height})"
        )
    outer_radius = params.outer_diameter / 2.0
    if not 0.0 < params.wall_distance < outer_radius:
        raise InvalidParameters(
            f"wall_distance ({params.wall_distance}) must lie in (0, {outer_radius})"
        )

    for name, (low, high) in PARAMETER_RANGES.items():
        value = getattr(params, name)
        if not low <= value <= high:
            raise InvalidParameters(f"{name} must be in [{low}, {high}], got {value}")

    if params.wall_thickness != WALL_THICKNESS_MM:
        raise InvalidParameters(f"wall_thickness is fixed at {WALL_THICKNESS_MM} mm")
    if outer_radius - params.wall_distance < params.wall_thickness:
        raise InvalidParameters(
            f"support stand between wall_distance ({params.wall_distance}) and the "
            f"outer edge ({outer_radius}) is thinner than {params.wall_thickness} mm"
        )


@dataclass(frozen=True)
class PixelBuffer:
    """
    Read-only RGBA raster handed to the height field extractor.

    Parameters
    ----------
    rgba : np.ndarray
        Array of shape `(height, width, 4)` and dtype `uint8`.

    Returns
    -------
    None
        Frozen dataclass container.

    Notes
    -----
    The array is copied and flagged read-only on construction so the caller
    cannot mutate the buffer while a generation is running.

    Assumptions
    -----------
    Row 0 is the top image row, as decoded by Pillow.
    """

    rgba: np.ndarray

    def __post_init__(self) -> None:
        rgba = np.asarray(self.rgba)
        if rgba.ndim != 3 or rgba.shape[2] != 4 or rgba.dtype != np.uint8:
            raise InvalidImage("Pixel buffer must be an (H, W, 4) uint8 array.")
        if rgba.shape[0] == 0 or rgba.shape[1] == 0:
            raise InvalidImage(
                f"Pixel buffer has zero size: {rgba.shape[1]}x{rgba.shape[0]}"
            )
        rgba = rgba.copy()
        rgba.setflags(write=False)
        object.__setattr__(self, "rgba", rgba)

    @property
    def width(self) -> int:
        return int(self.rgba.shape[1])

    @property
    def height(self) -> int:
        return int(self.rgba.shape[0])

    @classmethod
    def from_array(cls, array: np.ndarray) -> PixelBuffer:
        """
        Promote a grayscale `(H, W)`, RGB or RGBA array to a pixel buffer.
        """
        arr = np.asarray(array)
        if arr.ndim == 2:
            arr = np.stack([arr, arr, arr], axis=-1)
        if arr.ndim != 3 or arr.shape[2] not in (3, 4):
            raise InvalidImage(f"Unsupported pixel array shape: {arr.shape}")
        if arr.size and (arr.min() < 0 or arr.max() > 255):
            raise InvalidImage("Pixel values must lie in [0, 255].")
        arr = arr.astype(np.uint8)
        if arr.shape[2] == 3:
            alpha = np.full(arr.shape[:2] + (1,), 255, dtype=np.uint8)
            arr = np.concatenate([arr, alpha], axis=-1)
        return cls(rgba=arr)

    @classmethod
    def from_image(cls, image: Image.Image) -> PixelBuffer:
        return cls.from_array(np.asarray(image.convert("RGBA")))


@dataclass(frozen=True)
class HeightGrid:
    """
    Square grid of grayscale luminance samples in `[0, 255]`.

    Parameters
    ----------
    luminance : np.ndarray
        Float array of shape `(resolution, resolution)`, indexed `[i, j]` with
        `i` radial and `j` angular.

    Returns
    -------
    None
        Frozen dataclass container.

    Notes
    -----
    Both output renderers consume this grid, so it stays free of any panel
    dimension; heights are mapped on demand with `heights`.

    Assumptions
    -----------
    Built by `extract_height_grid` or directly from test fixtures.
    """

    luminance: np.ndarray

    def __post_init__(self) -> None:
        lum = np.array(self.luminance, dtype=np.float64)
        if lum.ndim != 2 or lum.shape[0] != lum.shape[1] or lum.shape[0] == 0:
            raise InvalidImage(f"Height grid must be square and non-empty, got {lum.shape}")
        if not np.all(np.isfinite(lum)) or lum.min() < 0.0 or lum.max() > 255.0:
            raise InvalidImage("Height grid luminance must lie in [0, 255].")
        lum.setflags(write=False)
        object.__setattr__(self, "luminance", lum)

    @property
    def resolution(self) -> int:
        return int(self.luminance.shape[0])

    def heights(self, params: PanelParameters) -> np.ndarray:
        return map_height(self.luminance, params.min_height, params.max_height)


def luminance(rgba: np.ndarray) -> np.ndarray:
    """
    Rec. 601 luminance of an `(H, W, 3|4)` array; alpha is ignored.
    """
    rgb = np.asarray(rgba, dtype=np.float64)[..., :3]
    wr, wg, wb = LUMINANCE_WEIGHTS
    # The weights sum to 1 only up to rounding; pure white can land a hair above 255.
    return np.clip(wr * rgb[..., 0] + wg * rgb[..., 1] + wb * rgb[..., 2], 0.0, 255.0)


def extract_height_grid(
    pixels: PixelBuffer | np.ndarray,
    resolution: int | None = None,
) -> HeightGrid:
    """
    Downsample a pixel buffer into a square luminance grid.

    Parameters
    ----------
    pixels : PixelBuffer | np.ndarray
        Source raster. Plain arrays are promoted with `PixelBuffer.from_array`.
    resolution : int, optional
        Grid side length. Defaults to `min(width, height)`; smaller values cap
        the mesh density.

    Returns
    -------
    HeightGrid
        Grid whose cell `(i, j)` holds the luminance of source pixel
        `(floor(i * width / resolution), floor(j * height / resolution))`.

    Notes
    -----
    Nearest-neighbour sampling with integer arithmetic; no interpolation, so
    the same pixel always lands in the same cell.

    Assumptions
    -----------
    None beyond a non-empty raster.
    """

    if not isinstance(pixels, PixelBuffer):
        pixels = PixelBuffer.from_array(pixels)

    width, height = pixels.width, pixels.height
    native = min(width, height)
    res = native if resolution is None else int(resolution)
    if res < 1 or res > native:
        raise InvalidImage(f"resolution must be in [1, {native}] for a {width}x{height} image")

    idx = np.arange(res, dtype=np.int64)
    xs = (idx * width) // res
    ys = (idx * height) // res
    # Sample first so only the R x R cells are promoted to float.
    return HeightGrid(luminance=luminance(pixels.rgba[ys[None, :], xs[:, None]]))


def map_height(
    grayscale: float | np.ndarray,
    min_height: float,
    max_height: float,
) -> float | np.ndarray:
    """
    Map grayscale to relief height; darker pixels give thicker material.

    Parameters
    ----------
    grayscale : float | np.ndarray
        Luminance in `[0, 255]`.
    min_height, max_height : float
        Relief extremes in millimetres.

    Returns
    -------
    float | np.ndarray
        `min_height + ((255 - g) / 255) * (max_height - min_height)`, with the
        same shape as `grayscale`.
    """

    gray = np.asarray(grayscale, dtype=np.float64)
    heights = min_height + ((255.0 - gray) / 255.0) * (max_height - min_height)
    if heights.ndim == 0:
        return float(heights)
    return heights


def load_pixel_buffer(
    image_path: Path,
    disc_params: PanelParameters | None = None,
) -> PixelBuffer:
    """
    Decode an image file, optionally masking it to the panel's disc shape.
    """
    if not image_path.exists():
        raise InvalidImage(f"Image file not found: {image_path}")
    try:
        with Image.open(image_path) as img:
            image = img.convert("RGBA")
    except OSError as exc:
        raise InvalidImage(f"Cannot decode image {image_path}: {exc}") from exc

    if disc_params is not None:
        image = prepare_disc_image(image, disc_params)
    return PixelBuffer.from_image(image)


def prepare_disc_image(image: Image.Image, params: PanelParameters) -> Image.Image:
    """
    Flatten, square-crop and mask an image to the panel's annulus.

    Parameters
    ----------
    image : Image.Image
        Source image in any Pillow mode.
    params : PanelParameters
        Supplies the inner/outer diameter ratio of the centre hole.

    Returns
    -------
    Image.Image
        RGBA square image: the centred crop composited onto white, painted
        black outside the inscribed circle and inside the centre hole.

    Notes
    -----
    Black maps to `max_height`, so the masked regions print at full
    thickness. The hole radius in pixels is `size * inner / (2 * outer)`.

    Assumptions
    -----------
    The image has non-zero width and height.
    """

    rgba = image.convert("RGBA")
    if rgba.width == 0 or rgba.height == 0:
        raise InvalidImage("Cannot prepare an empty image.")

    background = Image.new("RGBA", rgba.size, (255, 255, 255, 255))
    flattened = Image.alpha_composite(background, rgba).convert("RGB")

    size = min(flattened.size)
    left = (flattened.width - size) // 2
    top = (flattened.height - size) // 2
    square = flattened.crop((left, top, left + size, top + size))

    mask = Image.new("L", (size, size), 0)
    draw = ImageDraw.Draw(mask)
    draw.ellipse((0, 0, size - 1, size - 1), fill=255)
    centre = size / 2.0
    hole = size * params.inner_diameter / (2.0 * params.outer_diameter)
    draw.ellipse((centre - hole, centre - hole, centre + hole, centre + hole), fill=0)

    black = Image.new("RGB", (size, size), (0, 0, 0))
    return Image.composite(square, black, mask).convert("RGBA")


def angular_neighbor(j: int, resolution: int) -> int:
    """Next angular segment; the circle always closes."""
    return (j + 1) % resolution


def radial_neighbor(i: int, resolution: int, policy: str = RADIAL_WRAP) -> int:
    """
    Grid row feeding the outer edge of radial cell `i`.

    `"wrap"` returns `(i + 1) % resolution`, so the outer boundary ring reuses
    row 0. `"clamp"` returns `min(i + 1, resolution - 1)`, repeating the last
    row instead.
    """
    if policy == RADIAL_WRAP:
        return (i + 1) % resolution
    if policy == RADIAL_CLAMP:
        return min(i + 1, resolution - 1)
    raise ValueError(f"Unknown radial edge policy: {policy!r}")


def predict_triangle_count(resolution: int) -> int:
    """
    Triangles emitted for a grid of side `resolution`.

    `2R^2` top + `2R^2` bottom + `2R` inner wall + `2R` outer wall + `8R`
    support stand.
    """
    if resolution < 1:
        raise ValueError("resolution must be >= 1")
    return 4 * resolution * resolution + 12 * resolution


@dataclass(frozen=True)
class PanelLayout:
    """
    Precomputed arena layout of every surface block in emission order.

    Parameters
    ----------
    resolution : int
        Grid side length.

    Returns
    -------
    None
        Frozen dataclass container.

    Notes
    -----
    Each block owns a contiguous, disjoint triangle range, and each quad cell
    owns two consecutive triangles inside its block. Any cell can therefore
    compute its triangle index (and STL byte offset) without knowing how many
    triangles other cells produced.

    Assumptions
    -----------
    Block order is the emission order of `build_panel_mesh`.
    """

    resolution: int

    def block_sizes(self) -> tuple[tuple[str, int], ...]:
        r = self.resolution
        return (
            ("top", 2 * r * r),
            ("bottom", 2 * r * r),
            ("inner_wall", 2 * r),
            ("outer_wall", 2 * r),
            ("stand_top", 2 * r),
            ("stand_outer", 2 * r),
            ("stand_wall", 2 * r),
            ("stand_bottom", 2 * r),
        )

    def blocks(self) -> list[tuple[str, int, int]]:
        """`(name, first_triangle, triangle_count)` for every block."""
        out: list[tuple[str, int, int]] = []
        cursor = 0
        for name, count in self.block_sizes():
            out.append((name, cursor, count))
            cursor += count
        return out

    def block_slice(self, name: str) -> slice:
        for block, start, count in self.blocks():
            if block == name:
                return slice(start, start + count)
        raise KeyError(name)

    def cell_offset(self, surface: str, segment: int, ring: int = 0) -> int:
        """
        First triangle index of quad `(ring, segment)` inside `surface`.

        Single-ring blocks (walls and stand faces) only use `segment`.
        """
        return self.block_slice(surface).start + 2 * (ring * self.resolution + segment)

    @property
    def triangle_count(self) -> int:
        return predict_triangle_count(self.resolution)

    @property
    def byte_size(self) -> int:
        return self.byte_offset(self.triangle_count)

    @staticmethod
    def byte_offset(triangle_index: int) -> int:
        return STL_HEADER_SIZE + STL_COUNT_SIZE + STL_RECORD_SIZE * triangle_index


@dataclass
class TriangleMesh:
    """
    Triangle soup produced by the mesh builder or read back from STL.

    Parameters
    ----------
    triangles : np.ndarray
        Vertex array of shape `(N, 3, 3)`, float32 millimetres.
    normals : np.ndarray
        Unit normals of shape `(N, 3)`, float32; zero for degenerate faces.
    degenerate : np.ndarray
        Boolean mask of shape `(N,)`.

    Returns
    -------
    None
        Dataclass container.
    """

    triangles: np.ndarray
    normals: np.ndarray
    degenerate: np.ndarray

    def __len__(self) -> int:
        return int(self.triangles.shape[0])

    @property
    def degenerate_count(self) -> int:
        return int(np.count_nonzero(self.degenerate))


def compute_triangle_normals(
    triangles: np.ndarray,
    strict: bool = False,
    chunk_size: int = NORMAL_CHUNK_TRIANGLES,
) -> tuple[np.ndarray, np.ndarray]:
    """
    Compute unit normals `normalize((v2 - v1) x (v3 - v1))` for a batch.

    Parameters
    ----------
    triangles : np.ndarray
        Vertex array of shape `(N, 3, 3)`.
    strict : bool, optional
        Raise `DegenerateGeometry` instead of emitting the sentinel.
    chunk_size : int, optional
        Triangles processed per float64 pass.

    Returns
    -------
    tuple[np.ndarray, np.ndarray]
        Float32 normals of shape `(N, 3)` and the degenerate mask `(N,)`.

    Notes
    -----
    Degenerate triangles (duplicate or collinear vertices) keep their slot in
    the mesh and get the zero vector, so the triangle count stays equal to
    the prediction and no NaN reaches the STL. Only one chunk at a time is
    promoted to float64; the outputs are written in place.

    Assumptions
    -----------
    Vertex coordinates are finite.
    """

    if chunk_size < 1:
        raise ValueError("chunk_size must be >= 1")

    tri = np.asarray(triangles).reshape(-1, 3, 3)
    count = int(tri.shape[0])
    normals = np.zeros((count, 3), dtype=np.float32)
    degenerate = np.zeros((count,), dtype=bool)

    for start in range(0, count, chunk_size):
        stop = min(start + chunk_size, count)
        chunk = tri[start:stop].astype(np.float64)
        edge_a = chunk[:, 1] - chunk[:, 0]
        edge_b = chunk[:, 2] - chunk[:, 0]
        cross = np.cross(edge_a, edge_b)
        lengths = np.linalg.norm(cross, axis=1)
        scale = np.linalg.norm(edge_a, axis=1) * np.linalg.norm(edge_b, axis=1)
        flat = lengths <= DEGENERATE_SINE * scale

        if strict and np.any(flat):
            first = start + int(np.flatnonzero(flat)[0])
            raise DegenerateGeometry(f"Triangle {first} has a zero-length normal.")

        valid = ~flat
        out = normals[start:stop]
        out[valid] = cross[valid] / lengths[valid, None]
        degenerate[start:stop] = flat
    return normals, degenerate


def triangle_normal(
    v1: tuple[float, float, float],
    v2: tuple[float, float, float],
    v3: tuple[float, float, float],
    strict: bool = False,
) -> tuple[float, float, float]:
    """Unit normal of one triangle, `(0, 0, 0)` when degenerate."""
    normals, _degenerate = compute_triangle_normals(
        np.asarray([[v1, v2, v3]], dtype=np.float64),
        strict=strict,
    )
    n = normals[0]
    return float(n[0]), float(n[1]), float(n[2])


@dataclass(frozen=True)
class _PolarFrame:
    """Shared ring radii, segment angles and ring heights for one build."""

    resolution: int
    radii: np.ndarray
    cos: np.ndarray
    sin: np.ndarray
    next_segment: np.ndarray
    ring_heights: np.ndarray
    floor_z: float
    stand_z: float
    wall_radius: float
    outer_radius: float

    @classmethod
    def build(cls, grid: HeightGrid, params: PanelParameters, radial_edge: str) -> _PolarFrame:
        res = grid.resolution
        segments = np.arange(res, dtype=np.int64)
        # Wrapped index for both position and height keeps the theta = 2*pi seam
        # bit-identical to theta = 0.
        next_segment = np.asarray([angular_neighbor(j, res) for j in range(res)], dtype=np.int64)
        theta = 2.0 * math.pi * segments / res

        heights = grid.heights(params)
        rows = list(range(res)) + [radial_neighbor(res - 1, res, radial_edge)]
        return cls(
            resolution=res,
            radii=np.linspace(params.inner_radius, params.outer_radius, res + 1),
            cos=np.cos(theta),
            sin=np.sin(theta),
            next_segment=next_segment,
            ring_heights=heights[rows],
            floor_z=float(params.min_height),
            stand_z=-float(params.wall_height),
            wall_radius=float(params.wall_distance),
            outer_radius=float(params.outer_radius),
        )

    def points(self, radius: float, z: float | np.ndarray, advance: bool) -> np.ndarray:
        """Ring points at every segment start (or end when `advance`)."""
        idx = self.next_segment if advance else slice(None)
        x = radius * self.cos[idx]
        y = radius * self.sin[idx]
        return np.stack([x, y, np.broadcast_to(z, x.shape)], axis=-1)

    def ring_z(self, ring: int, advance: bool) -> np.ndarray:
        heights = self.ring_heights[ring]
        return heights[self.next_segment] if advance else heights


def _quad_pair(
    a: np.ndarray,
    b: np.ndarray,
    c: np.ndarray,
    d: np.ndarray,
    flip: bool = False,
) -> np.ndarray:
    """
    Split quads along the a-d diagonal into two triangles each.

    `a` is the low/low corner, `b` advances along the first axis (radius or
    height), `c` advances in theta and `d` in both. Unflipped quads emit
    `(a, b, d), (a, d, c)`; flipped quads emit `(a, d, b), (a, c, d)`.
    Returns shape `(M * 2, 3, 3)`.
    """
    if flip:
        first, second = (a, d, b), (a, c, d)
    else:
        first, second = (a, b, d), (a, d, c)
    pair = np.stack([np.stack(first, axis=1), np.stack(second, axis=1)], axis=1)
    return pair.reshape(-1, 3, 3)


def _write_block(arena: np.ndarray, start: int, triangles: np.ndarray) -> int:
    arena[start:start + triangles.shape[0]] = triangles
    return int(triangles.shape[0])


def _fill_relief_ring(
    arena: np.ndarray,
    layout: PanelLayout,
    frame: _PolarFrame,
    surface: str,
    ring: int,
) -> int:
    r1 = frame.radii[ring]
    r2 = frame.radii[ring + 1]
    if surface == "top":
        z_a = frame.ring_z(ring, advance=False)
        z_b = frame.ring_z(ring + 1, advance=False)
        z_c = frame.ring_z(ring, advance=True)
        z_d = frame.ring_z(ring + 1, advance=True)
    else:
        z_a = z_b = z_c = z_d = frame.floor_z

    quads = _quad_pair(
        frame.points(r1, z_a, advance=False),
        frame.points(r2, z_b, advance=False),
        frame.points(r1, z_c, advance=True),
        frame.points(r2, z_d, advance=True),
        flip=surface == "bottom",
    )
    return _write_block(arena, layout.cell_offset(surface, 0, ring), quads)


def _fill_ring_block(
    arena: np.ndarray,
    layout: PanelLayout,
    frame: _PolarFrame,
    surface: str,
) -> int:
    last = frame.resolution
    if surface in ("inner_wall", "outer_wall"):
        ring = 0 if surface == "inner_wall" else last
        radius = frame.radii[ring]
        quads = _quad_pair(
            frame.points(radius, frame.floor_z, advance=False),
            frame.points(radius, frame.ring_z(ring, advance=False), advance=False),
            frame.points(radius, frame.floor_z, advance=True),
            frame.points(radius, frame.ring_z(ring, advance=True), advance=True),
            flip=surface == "outer_wall",
        )
    elif surface in ("stand_top", "stand_bottom"):
        z = frame.floor_z if surface == "stand_top" else frame.stand_z
        quads = _quad_pair(
            frame.points(frame.wall_radius, z, advance=False),
            frame.points(frame.outer_radius, z, advance=False),
            frame.points(frame.wall_radius, z, advance=True),
            frame.points(frame.outer_radius, z, advance=True),
            flip=surface == "stand_bottom",
        )
    elif surface in ("stand_outer", "stand_wall"):
        radius = frame.outer_radius if surface == "stand_outer" else frame.wall_radius
        quads = _quad_pair(
            frame.points(radius, frame.stand_z, advance=False),
            frame.points(radius, frame.floor_z, advance=False),
            frame.points(radius, frame.stand_z, advance=True),
            frame.points(radius, frame.floor_z, advance=True),
            flip=surface == "stand_outer",
        )
    else:
        raise ValueError(f"Unknown surface block: {surface!r}")
    return _write_block(arena, layout.cell_offset(surface, 0), quads)


def build_panel_mesh(
    grid: HeightGrid,
    params: PanelParameters,
    radial_edge: str = RADIAL_WRAP,
    progress: Callable[[float], None] | None = None,
    should_cancel: Callable[[], bool] | None = None,
    workers: int = 1,
    strict_normals: bool = False,
) -> TriangleMesh:
    """
    Build the full triangle list of one lithophane panel.

    Parameters
    ----------
    grid : HeightGrid
        Luminance grid; its side length is the mesh resolution.
    params : PanelParameters
        Validated panel dimensions.
    radial_edge : str, optional
        Row policy for the outer boundary ring, `"wrap"` or `"clamp"`.
    progress : Callable[[float], None], optional
        Called with the completed fraction after every work unit.
    should_cancel : Callable[[], bool], optional
        Polled on the calling thread before every work unit (between completed
        rings when threaded); a true result aborts the build.
    workers : int, optional
        Thread count for the relief rings.
    strict_normals : bool, optional
        Raise `DegenerateGeometry` on zero-length normals.

    Returns
    -------
    TriangleMesh
        Triangles in emission order: top, bottom, inner wall, outer wall,
        then the stand's connecting face, outer face, wall face and bottom.

    Notes
    -----
    The output arena is allocated once from `predict_triangle_count`. Every
    work unit writes a disjoint slice located through `PanelLayout`, which is
    what makes the threaded fill lock-free. Per-block and total counts are
    checked against the layout before normals are computed. On cancellation
    or a failing ring, queued rings are cancelled before the error propagates.

    Assumptions
    -----------
    `params` was validated on construction.
    """

    if radial_edge not in RADIAL_EDGE_POLICIES:
        raise ValueError(f"radial_edge must be one of {RADIAL_EDGE_POLICIES}")
    if workers < 1:
        raise ValueError("workers must be >= 1")

    layout = PanelLayout(grid.resolution)
    expected = dict(layout.block_sizes())
    if sum(expected.values()) != layout.triangle_count:
        raise SizeMismatch("Surface blocks do not add up to the predicted triangle count.")

    frame = _PolarFrame.build(grid, params, radial_edge)
    arena = np.empty((layout.triangle_count, 3, 3), dtype=np.float32)
    written = {name: 0 for name in expected}

    relief_units = [(surface, ring) for surface in ("top", "bottom") for ring in range(frame.resolution)]
    block_units = ["inner_wall", "outer_wall", "stand_top", "stand_outer", "stand_wall", "stand_bottom"]
    total_units = len(relief_units) + len(block_units)
    done = 0

    def check_cancel() -> None:
        if should_cancel is not None and should_cancel():
            raise GenerationCancelled(f"Mesh generation cancelled after {done}/{total_units} units.")

    def report() -> None:
        nonlocal done
        done += 1
        if progress is not None:
            progress(done / total_units)

    logger.debug(
        "Building panel: resolution=%d, triangles=%d, radial_edge=%s, workers=%d",
        frame.resolution,
        layout.triangle_count,
        radial_edge,
        workers,
    )

    if workers == 1:
        for surface, ring in relief_units:
            check_cancel()
            written[surface] += _fill_relief_ring(arena, layout, frame, surface, ring)
            report()
    else:
        # Callbacks stay on the calling thread; workers only see the stop flag.
        stopped = threading.Event()

        def relief_unit(surface: str, ring: int) -> int:
            if stopped.is_set():
                return 0
            return _fill_relief_ring(arena, layout, frame, surface, ring)

        check_cancel()
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = {
                pool.submit(relief_unit, surface, ring): surface
                for surface, ring in relief_units
            }
            try:
                for future in as_completed(futures):
                    written[futures[future]] += future.result()
                    report()
                    if done < len(relief_units):
                        check_cancel()
            except BaseException:
                stopped.set()
                pool.shutdown(wait=True, cancel_futures=True)
                raise

    for surface in block_units:
        check_cancel()
        written[surface] += _fill_ring_block(arena, layout, frame, surface)
        report()

    for name, count in expected.items():
        if written[name] != count:
            raise SizeMismatch(f"Surface {name!r} emitted {written[name]} triangles, expected {count}.")
    total = sum(written.values())
    if total != layout.triangle_count:
        raise SizeMismatch(f"Emitted {total} triangles, predicted {layout.triangle_count}.")

    normals, degenerate = compute_triangle_normals(arena, strict=strict_normals)
    if np.any(degenerate):
        logger.debug("%d degenerate triangles emitted with zero normals", int(np.count_nonzero(degenerate)))
    return TriangleMesh(triangles=arena, normals=normals, degenerate=degenerate)


def allocate_stl_buffer(triangle_count: int) -> bytearray:
    """Zeroed buffer of exactly `84 + 50 * triangle_count` bytes."""
    if triangle_count < 0:
        raise ValueError("triangle_count must be >= 0")
    return bytearray(PanelLayout.byte_offset(triangle_count))


def write_stl_header(buffer: bytearray, offset: int, triangle_count: int) -> int:
    """
    Write the 80-byte zero header and the little-endian count at `offset`.

    Returns the cursor positioned on the first triangle record.
    """
    end = offset + STL_HEADER_SIZE + STL_COUNT_SIZE
    if end > len(buffer):
        raise SizeMismatch(f"STL header ends at byte {end}, buffer holds {len(buffer)}.")
    buffer[offset:offset + STL_HEADER_SIZE] = bytes(STL_HEADER_SIZE)
    struct.pack_into("<I", buffer, offset + STL_HEADER_SIZE, triangle_count)
    return end


def write_stl_records(
    buffer: bytearray,
    offset: int,
    normals: np.ndarray,
    triangles: np.ndarray,
) -> int:
    """
    Pack triangle records at `offset` and return the cursor after them.

    Parameters
    ----------
    buffer : bytearray
        Pre-allocated STL buffer.
    offset : int
        Byte offset of the first record to write.
    normals : np.ndarray
        Normals of shape `(M, 3)`.
    triangles : np.ndarray
        Vertices of shape `(M, 3, 3)`.

    Returns
    -------
    int
        `offset + 50 * M`.

    Notes
    -----
    Records are written through a structured numpy view of the buffer, so
    disjoint ranges can be filled independently.

    Assumptions
    -----------
    Values are representable as float32.
    """

    tri = np.asarray(triangles, dtype=np.float32).reshape(-1, 3, 3)
    nrm = np.asarray(normals, dtype=np.float32).reshape(-1, 3)
    if tri.shape[0] != nrm.shape[0]:
        raise ValueError(f"{tri.shape[0]} triangles but {nrm.shape[0]} normals")

    count = int(tri.shape[0])
    end = offset + STL_RECORD_SIZE * count
    if end > len(buffer):
        raise SizeMismatch(f"STL records end at byte {end}, buffer holds {len(buffer)}.")
    if count == 0:
        return offset

    records = np.frombuffer(buffer, dtype=STL_RECORD_DTYPE, count=count, offset=offset)
    records["normal"] = nrm
    records["vertices"] = tri
    records["attribute"] = 0
    return end


def encode_binary_stl(mesh: TriangleMesh, layout: PanelLayout | None = None) -> bytearray:
    """
    Serialize a mesh into a binary STL buffer sized from the prediction.

    Parameters
    ----------
    mesh : TriangleMesh
        Triangles and normals to pack.
    layout : PanelLayout, optional
        Panel layout; when given the buffer is sized from its prediction and
        filled block by block at the precomputed byte offsets.

    Returns
    -------
    bytearray
        Exactly `84 + 50 * N` bytes; the pre-sized buffer itself, not a copy.

    Notes
    -----
    A mesh whose length disagrees with the layout is rejected before any
    buffer is allocated.

    Assumptions
    -----------
    `mesh.normals` are already computed.
    """

    expected = layout.triangle_count if layout is not None else len(mesh)
    if len(mesh) != expected:
        raise SizeMismatch(f"Mesh holds {len(mesh)} triangles, predicted {expected}.")

    buffer = allocate_stl_buffer(expected)
    cursor = write_stl_header(buffer, 0, expected)
    if layout is None:
        cursor = write_stl_records(buffer, cursor, mesh.normals, mesh.triangles)
    else:
        for name, start, count in layout.blocks():
            if cursor != layout.byte_offset(start):
                raise SizeMismatch(f"Block {name!r} starts at byte {cursor}, expected {layout.byte_offset(start)}.")
            cursor = write_stl_records(
                buffer,
                cursor,
                mesh.normals[start:start + count],
                mesh.triangles[start:start + count],
            )

    if cursor != len(buffer):
        raise SizeMismatch(f"STL cursor stopped at byte {cursor} of {len(buffer)}.")
    return buffer


def read_binary_stl(data: bytes | bytearray | memoryview) -> TriangleMesh:
    """
    Parse a binary STL buffer back into a `TriangleMesh`.
    """
    view = memoryview(data)
    if len(view) < STL_HEADER_SIZE + STL_COUNT_SIZE:
        raise SizeMismatch(f"STL buffer of {len(view)} bytes is shorter than its header.")
    (count,) = struct.unpack_from("<I", view, STL_HEADER_SIZE)
    expected = PanelLayout.byte_offset(count)
    if len(view) != expected:
        raise SizeMismatch(f"STL declares {count} triangles ({expected} bytes) but holds {len(view)} bytes.")

    if count == 0:
        return TriangleMesh(
            triangles=np.zeros((0, 3, 3), dtype=np.float32),
            normals=np.zeros((0, 3), dtype=np.float32),
            degenerate=np.zeros((0,), dtype=bool),
        )

    records = np.frombuffer(
        view,
        dtype=STL_RECORD_DTYPE,
        count=count,
        offset=STL_HEADER_SIZE + STL_COUNT_SIZE,
    )
    normals = records["normal"].astype(np.float32)
    return TriangleMesh(
        triangles=records["vertices"].astype(np.float32),
        normals=normals,
        degenerate=~np.any(normals != 0.0, axis=1),
    )


def count_shared_edges(triangles: np.ndarray, decimals: int = 6) -> np.ndarray:
    """
    Number of triangles using each distinct edge of a triangle soup.

    Parameters
    ----------
    triangles : np.ndarray
        Vertex array of shape `(N, 3, 3)`.
    decimals : int, optional
        Rounding applied before merging coincident vertices.

    Returns
    -------
    np.ndarray
        One count per unique edge; a closed 2-manifold gives all 2.

    Notes
    -----
    Edges whose endpoints merge into one vertex are ignored; they only occur
    on degenerate triangles.
    """

    tri = np.asarray(triangles, dtype=np.float64).reshape(-1, 3)
    if tri.shape[0] == 0:
        return np.zeros((0,), dtype=np.int64)

    # Adding 0.0 folds -0.0 into +0.0 before merging.
    rounded = np.round(tri, decimals) + 0.0
    _unique, inverse = np.unique(rounded, axis=0, return_inverse=True)
    vertex_ids = np.asarray(inverse).reshape(-1, 3)

    edges = np.concatenate(
        [vertex_ids[:, [0, 1]], vertex_ids[:, [1, 2]], vertex_ids[:, [2, 0]]],
        axis=0,
    )
    edges = np.sort(edges, axis=1)
    edges = edges[edges[:, 0] != edges[:, 1]]
    if edges.shape[0] == 0:
        return np.zeros((0,), dtype=np.int64)
    _edges, counts = np.unique(edges, axis=0, return_counts=True)
    return counts


def generate_stl(
    source: HeightGrid | PixelBuffer | np.ndarray,
    params: PanelParameters,
    resolution: int | None = None,
    radial_edge: str = RADIAL_WRAP,
    progress: Callable[[float], None] | None = None,
    should_cancel: Callable[[], bool] | None = None,
    workers: int = 1,
    strict_normals: bool = False,
) -> bytearray:
    """
    Run the full pixels-to-STL pipeline and return the file bytes.
    """
    grid = source if isinstance(source, HeightGrid) else extract_height_grid(source, resolution)
    layout = PanelLayout(grid.resolution)
    mesh = build_panel_mesh(
        grid,
        params,
        radial_edge=radial_edge,
        progress=progress,
        should_cancel=should_cancel,
        workers=workers,
        strict_normals=strict_normals,
    )
    return encode_binary_stl(mesh, layout)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """
    Define and parse the command-line interface for the pipeline.

    Parameters
    ----------
    argv : list[str], optional
        Argument list; defaults to `sys.argv[1:]`.

    Returns
    -------
    argparse.Namespace
        Parsed command-line arguments.

    Notes
    -----
    Panel dimension defaults match the web front-end sliders.

    Assumptions
    -----------
    Validation is deferred to `validate_args` and `PanelParameters`.
    """

    parser = argparse.ArgumentParser(
        description="Generate a disc lithophane STL (and optional OpenSCAD script) from an image"
    )

    parser.add_argument("--image", type=Path, required=True, help="Input image file")
    parser.add_argument("--stl", type=Path, default=Path("lithophane.stl"), help="Output STL path")
    parser.add_argument("--scad", type=Path, default=None, help="Optional OpenSCAD script path")

    parser.add_argument("--max-height", type=float, default=DEFAULT_PARAMETERS["max_height"], help="Relief height for black (mm)")
    parser.add_argument("--min-height", type=float, default=DEFAULT_PARAMETERS["min_height"], help="Relief height for white (mm)")
    parser.add_argument("--outer-diameter", type=float, default=DEFAULT_PARAMETERS["outer_diameter"], help="Disc diameter (mm)")
    parser.add_argument("--inner-diameter", type=float, default=DEFAULT_PARAMETERS["inner_diameter"], help="Centre bore diameter (mm)")
    parser.add_argument("--wall-height", type=float, default=DEFAULT_PARAMETERS["wall_height"], help="Support stand depth (mm)")
    parser.add_argument(
        "--wall-distance",
        type=float,
        default=DEFAULT_PARAMETERS["wall_distance"],
        help="Support wall radius from the centre (mm)",
    )

    parser.add_argument(
        "--resolution",
        type=int,
        default=None,
        help="Grid side length; defaults to the smaller image dimension.",
    )
    parser.add_argument(
        "--radial-edge",
        type=str,
        default=RADIAL_WRAP,
        choices=RADIAL_EDGE_POLICIES,
        help="Heights used by the outer boundary ring: reuse row 0 (wrap) or the last row (clamp).",
    )
    parser.add_argument("--workers", type=int, default=1, help="Threads used to fill relief rings")
    parser.add_argument(
        "--no-disc-mask",
        action="store_true",
        help="Skip the square crop and black annulus mask applied before sampling.",
    )
    parser.add_argument(
        "--strict-normals",
        action="store_true",
        help="Fail on degenerate triangles instead of writing zero normals.",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default="WARNING",
        choices=("DEBUG", "INFO", "WARNING", "ERROR"),
    )
    parser.add_argument("--log-file", type=Path, default=None, help="Optional log file")
    return parser.parse_args(argv)


def validate_args(args: argparse.Namespace) -> None:
    """
    Validate CLI-only values; panel dimensions are checked by `PanelParameters`.
    """
    if args.resolution is not None and args.resolution < 1:
        raise ValueError("--resolution must be >= 1")
    if args.workers < 1:
        raise ValueError("--workers must be >= 1")


def _progress_logger(step: float = 0.1) -> Callable[[float], None]:
    next_mark = [step]

    def report(fraction: float) -> None:
        if fraction + 1.0e-12 >= next_mark[0]:
            logger.info("Mesh generation %3.0f%%", fraction * 100.0)
            while next_mark[0] <= fraction + 1.0e-12:
                next_mark[0] += step

    return report


def run(args: argparse.Namespace) -> int:
    """
    Execute the image-to-STL pipeline for one command-line invocation.

    Parameters
    ----------
    args : argparse.Namespace
        Parsed command-line arguments.

    Returns
    -------
    int
        Process exit code (`0` on success).

    Notes
    -----
    The OpenSCAD script is rendered from the same height grid as the STL, so
    the image is decoded and sampled only once.

    Assumptions
    -----------
    The output directories are writable.
    """

    validate_args(args)
    setup_logging(level=getattr(logging, args.log_level), log_file=args.log_file)

    params = PanelParameters(
        max_height=float(args.max_height),
        min_height=float(args.min_height),
        outer_diameter=float(args.outer_diameter),
        inner_diameter=float(args.inner_diameter),
        wall_height=float(args.wall_height),
        wall_distance=float(args.wall_distance),
    )

    pixels = load_pixel_buffer(args.image, disc_params=None if args.no_disc_mask else params)
    grid = extract_height_grid(pixels, args.resolution)
    layout = PanelLayout(grid.resolution)
    logger.info(
        "Image %dx%d -> grid %d, %d triangles",
        pixels.width,
        pixels.height,
        grid.resolution,
        layout.triangle_count,
    )

    mesh = build_panel_mesh(
        grid,
        params,
        radial_edge=str(args.radial_edge),
        progress=_progress_logger(),
        workers=int(args.workers),
        strict_normals=bool(args.strict_normals),
    )
    data = encode_binary_stl(mesh, layout)
    args.stl.parent.mkdir(parents=True, exist_ok=True)
    args.stl.write_bytes(data)

    if args.scad is not None:
        from lithophane_scad import render_scad

        args.scad.parent.mkdir(parents=True, exist_ok=True)
        args.scad.write_text(render_scad(grid, params), encoding="utf-8")

    print(f"[OK] Image loaded: {args.image} ({pixels.width}x{pixels.height})")
    print(f"[OK] Grid resolution: {grid.resolution}")
    print(f"[OK] Triangles: {len(mesh)} ({mesh.degenerate_count} degenerate)")
    print(f"[OK] STL saved: {args.stl} ({len(data)} bytes)")
    if args.scad is not None:
        print(f"[OK] OpenSCAD saved: {args.scad}")
    return 0


def main(argv: list[str] | None = None) -> int:
    """
    Command-line entry point for the lithophane pipeline.

    Parameters
    ----------
    argv : list[str], optional
        Argument list; defaults to `sys.argv[1:]`.

    Returns
    -------
    int
        Process exit code.

    Notes
    -----
    Exceptions are converted into a non-zero exit code after a readable stderr
    message; a failed run must be re-invoked with corrected input.
    """

    args = parse_args(argv)
    try:
        return run(args)
    except Exception as exc:
        print(f"[ERROR] {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
