import numpy as np
import pytest

import lithophane_pipeline
import lithophane_scad
from lithophane_pipeline import extract_height_grid, generate_stl
from lithophane_scad import (
    Boolean,
    Cylinder,
    _fmt,
    build_scad_tree,
    generate_scad,
    relief_pillars,
    render_scad,
    rotate,
    translate,
)


@pytest.mark.parametrize(
    "value, text",
    [(2.0, "2"), (1.5, "1.5"), (-0.0, "0"), (-0.00001, "0"), (1.245098, "1.2451")],
)
def test_number_formatting(value, text):
    assert _fmt(value) == text


def test_nodes_render_nested_blocks():
    tree = Boolean(
        "difference",
        [
            Cylinder(2.0, 10.0, 32),
            translate((0.0, 0.0, -1.0), Cylinder(4.0, 5.0, 32), comment="hole"),
        ],
    )
    assert tree.render() == [
        "difference() {",
        "  cylinder(h=2, r=10, $fn=32);",
        "  // hole",
        "  translate([0, 0, -1]) cylinder(h=4, r=5, $fn=32);",
        "}",
    ]


def test_chained_transforms_share_one_line():
    node = rotate((0.0, 0.0, 45.0), translate((1.0, 2.0, 3.0), Cylinder(1.0, 1.0, 4)))
    assert node.render(1) == ["  rotate([0, 0, 45]) translate([1, 2, 3]) cylinder(h=1, r=1, $fn=4);"]


def test_uniform_gray_panel_emits_one_pillar_per_cell(params, uniform_grid):
    text = render_scad(uniform_grid(4), params)

    assert text.count("$fn=4)") == 16
    assert "h=1.2451" in text
    assert "relief: 16 pillars on a 4x4 grid" in text
    assert "rotate([0, 0, 45]) translate([19.375, 0, 0.5]) rotate([0, 0, 45]) cylinder(" in text
    assert text.count("{") == text.count("}")
    assert text.startswith("// Lithophane panel\n")


def test_stand_is_difference_of_two_cylinders(params, uniform_grid):
    text = render_scad(uniform_grid(4), params)

    assert "// support stand" in text
    assert "translate([0, 0, -5]) difference() {" in text
    assert "cylinder(h=5.5, r=50, $fn=32);" in text
    assert "cylinder(h=7.5, r=40, $fn=32);" in text
    assert "cylinder(h=10, r=15, $fn=32);" in text


def test_white_panel_has_no_relief(params, uniform_grid):
    grid = uniform_grid(4, 255.0)
    assert relief_pillars(grid, params) == []

    text = render_scad(grid, params)
    assert "$fn=4)" not in text
    assert "relief:" not in text
    assert "// support stand" in text


def test_root_is_union_of_relief_and_stand(params, uniform_grid):
    tree = build_scad_tree(uniform_grid(3), params)
    assert tree.op == "union"
    assert [child.comment for child in tree.children] == [
        "relief: 9 pillars on a 3x3 grid",
        "support stand",
    ]


def test_generate_scad_samples_like_the_stl_path(params):
    pixels = np.random.default_rng(5).integers(0, 256, size=(9, 12), dtype=np.uint8)
    assert generate_scad(pixels, params) == render_scad(extract_height_grid(pixels), params)


def test_both_outputs_come_from_one_grid(params, random_grid, monkeypatch):
    grid = random_grid(4)

    def refuse(*_args, **_kwargs):
        raise AssertionError("grid was extracted again")

    monkeypatch.setattr(lithophane_pipeline, "extract_height_grid", refuse)
    monkeypatch.setattr(lithophane_scad, "extract_height_grid", refuse)

    assert len(generate_stl(grid, params)) == 84 + 50 * (4 * 16 + 48)
    assert generate_scad(grid, params).count("$fn=4)") == 16
