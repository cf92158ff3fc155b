import math
import threading
import time

import numpy as np
import pytest

import lithophane_pipeline
from lithophane_pipeline import (
    GenerationCancelled,
    HeightGrid,
    PanelLayout,
    SizeMismatch,
    angular_neighbor,
    build_panel_mesh,
    count_shared_edges,
    predict_triangle_count,
    radial_neighbor,
)


def radial_alignment(mesh, block: slice) -> np.ndarray:
    """Dot product of each normal with the outward radial direction at its centroid."""
    centroids = mesh.triangles[block].astype(np.float64).mean(axis=1)
    radial = centroids[:, :2] / np.linalg.norm(centroids[:, :2], axis=1, keepdims=True)
    return np.sum(mesh.normals[block][:, :2] * radial, axis=1)


@pytest.mark.parametrize("resolution", [1, 2, 3, 5, 8])
def test_triangle_count_matches_prediction(params, uniform_grid, resolution):
    mesh = build_panel_mesh(uniform_grid(resolution), params)
    assert len(mesh) == predict_triangle_count(resolution)
    assert len(mesh) == 4 * resolution**2 + 12 * resolution


def test_predict_triangle_count_rejects_empty_grid():
    with pytest.raises(ValueError):
        predict_triangle_count(0)


def test_layout_blocks_are_contiguous_and_ordered():
    layout = PanelLayout(3)
    names = [name for name, _start, _count in layout.blocks()]
    assert names == [
        "top",
        "bottom",
        "inner_wall",
        "outer_wall",
        "stand_top",
        "stand_outer",
        "stand_wall",
        "stand_bottom",
    ]
    cursor = 0
    for _name, start, count in layout.blocks():
        assert start == cursor
        cursor += count
    assert cursor == layout.triangle_count == 72
    assert layout.cell_offset("top", 2, 1) == 2 * (1 * 3 + 2)
    assert layout.cell_offset("bottom", 0, 0) == 18
    assert layout.byte_offset(0) == 84
    assert layout.byte_size == 84 + 50 * 72


def test_neighbor_indices():
    assert angular_neighbor(3, 4) == 0
    assert angular_neighbor(1, 4) == 2
    assert radial_neighbor(3, 4, "wrap") == 0
    assert radial_neighbor(3, 4, "clamp") == 3
    assert radial_neighbor(1, 4, "wrap") == radial_neighbor(1, 4, "clamp") == 2
    with pytest.raises(ValueError):
        radial_neighbor(0, 4, "mirror")


def test_first_top_triangle_uses_a_b_d_diagonal(params, uniform_grid):
    mesh = build_panel_mesh(uniform_grid(5), params)
    a, b, d = mesh.triangles[0].astype(np.float64)
    step = 2.0 * math.pi / 5
    z = 0.5 + (127.0 / 255.0) * 2.5

    assert a == pytest.approx([15.0, 0.0, z], abs=1e-5)
    assert b == pytest.approx([22.0, 0.0, z], abs=1e-5)
    assert d == pytest.approx([22.0 * math.cos(step), 22.0 * math.sin(step), z], abs=1e-5)


def test_surface_orientation(params, uniform_grid):
    mesh = build_panel_mesh(uniform_grid(6), params)
    layout = PanelLayout(6)

    for name, sign in [("top", 1.0), ("bottom", -1.0), ("stand_top", 1.0), ("stand_bottom", -1.0)]:
        normals = mesh.normals[layout.block_slice(name)]
        assert np.allclose(normals[:, 2], sign, atol=1e-6), name

    for name, outward in [
        ("inner_wall", False),
        ("outer_wall", True),
        ("stand_outer", True),
        ("stand_wall", False),
    ]:
        block = layout.block_slice(name)
        alignment = radial_alignment(mesh, block)
        assert np.all(alignment > 0) if outward else np.all(alignment < 0), name
        assert np.allclose(mesh.normals[block][:, 2], 0.0, atol=1e-6), name


def test_vertices_stay_inside_the_panel_envelope(params, random_grid):
    mesh = build_panel_mesh(random_grid(6, 0.0, 255.0), params)
    layout = PanelLayout(6)
    vertices = mesh.triangles.reshape(-1, 3).astype(np.float64)
    radius = np.hypot(vertices[:, 0], vertices[:, 1])

    assert radius.min() >= params.inner_radius - 1e-3
    assert radius.max() <= params.outer_radius + 1e-3
    assert vertices[:, 2].min() == pytest.approx(-params.wall_height)
    assert vertices[:, 2].max() <= params.max_height + 1e-5

    top = mesh.triangles[layout.block_slice("top")]
    assert top[..., 2].min() >= params.min_height - 1e-5
    assert np.all(mesh.triangles[layout.block_slice("bottom")][..., 2] == np.float32(params.min_height))
    assert np.all(mesh.triangles[layout.block_slice("stand_bottom")][..., 2] == np.float32(-params.wall_height))


def test_panel_and_stand_shells_are_each_closed(params, random_grid):
    mesh = build_panel_mesh(random_grid(5), params)
    layout = PanelLayout(5)
    panel_end = layout.block_slice("outer_wall").stop
    stand_start = layout.block_slice("stand_top").start

    panel_counts = count_shared_edges(mesh.triangles[:panel_end])
    stand_counts = count_shared_edges(mesh.triangles[stand_start:])
    assert panel_counts.size > 0 and np.all(panel_counts == 2)
    assert stand_counts.size > 0 and np.all(stand_counts == 2)

    # The two shells meet only along the outer rim of the back plane.
    combined = count_shared_edges(mesh.triangles)
    assert set(np.unique(combined).tolist()) <= {2, 4}
    assert np.count_nonzero(combined == 4) == 5


def test_angular_seam_is_bit_identical(params, random_grid):
    mesh = build_panel_mesh(random_grid(4), params)
    layout = PanelLayout(4)
    # Cell (ring 0, segment 3) ends on the theta = 2*pi seam; its c corner is
    # the second triangle's third vertex and must equal cell (0, 0)'s a corner.
    last = layout.cell_offset("top", 3, 0)
    seam_corner = mesh.triangles[last + 1, 2]
    first_corner = mesh.triangles[layout.cell_offset("top", 0, 0), 0]
    assert seam_corner.tobytes() == first_corner.tobytes()


@pytest.mark.parametrize("policy, expected", [("wrap", 3.0), ("clamp", 0.5 + (105.0 / 255.0) * 2.5)])
def test_radial_edge_policy_selects_outer_ring_heights(params, policy, expected):
    grid = HeightGrid(np.repeat(50.0 * np.arange(4, dtype=np.float64)[:, None], 4, axis=1))
    mesh = build_panel_mesh(grid, params, radial_edge=policy)
    outer = mesh.triangles[PanelLayout(4).block_slice("outer_wall")]
    assert float(outer[..., 2].max()) == pytest.approx(expected, rel=1e-6)


def test_white_walls_are_degenerate_but_keep_their_slots(params, uniform_grid):
    mesh = build_panel_mesh(uniform_grid(4, 255.0), params)
    layout = PanelLayout(4)
    for name in ("inner_wall", "outer_wall"):
        block = layout.block_slice(name)
        assert np.all(mesh.degenerate[block])
        assert np.all(mesh.normals[block] == 0.0)
    assert len(mesh) == predict_triangle_count(4)


def test_invalid_build_options(params, uniform_grid):
    with pytest.raises(ValueError):
        build_panel_mesh(uniform_grid(3), params, radial_edge="mirror")
    with pytest.raises(ValueError):
        build_panel_mesh(uniform_grid(3), params, workers=0)


def test_progress_is_monotonic_and_finishes_at_one(params, uniform_grid):
    seen = []
    build_panel_mesh(uniform_grid(4), params, progress=seen.append)

    assert len(seen) == 2 * 4 + 6
    assert all(b > a for a, b in zip(seen, seen[1:]))
    assert seen[-1] == 1.0


def test_cancellation_stops_the_build(params, uniform_grid):
    polls = []

    def should_cancel():
        polls.append(1)
        return len(polls) >= 3

    with pytest.raises(GenerationCancelled):
        build_panel_mesh(uniform_grid(4), params, should_cancel=should_cancel)
    assert len(polls) == 3


def test_threaded_fill_matches_sequential(params, random_grid):
    grid = random_grid(7)
    sequential = build_panel_mesh(grid, params, workers=1)
    threaded = build_panel_mesh(grid, params, workers=3)

    assert np.array_equal(sequential.triangles, threaded.triangles)
    assert np.array_equal(sequential.normals, threaded.normals)


def test_short_block_raises_size_mismatch(params, uniform_grid, monkeypatch):
    original = lithophane_pipeline._fill_ring_block
    monkeypatch.setattr(
        lithophane_pipeline,
        "_fill_ring_block",
        lambda *args: original(*args) - 1,
    )
    with pytest.raises(SizeMismatch):
        build_panel_mesh(uniform_grid(3), params)


def test_threaded_cancellation_drops_queued_rings(params, uniform_grid, monkeypatch):
    original = lithophane_pipeline._fill_relief_ring
    filled = []
    polls = []

    def slow_fill(*args):
        filled.append(args[3:])
        time.sleep(0.01)
        return original(*args)

    def should_cancel():
        polls.append(threading.current_thread())
        return len(polls) >= 2

    monkeypatch.setattr(lithophane_pipeline, "_fill_relief_ring", slow_fill)

    with pytest.raises(GenerationCancelled):
        build_panel_mesh(uniform_grid(32), params, workers=2, should_cancel=should_cancel)

    # 64 relief rings were queued; only those already running may finish.
    assert len(filled) <= 8
    assert set(polls) == {threading.main_thread()}
