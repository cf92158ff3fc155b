import json

import pytest

from lithophane_pipeline import PixelBuffer
from lithophane_validation_suite import (
    synthetic_images,
    validate_case,
    write_markdown_report,
)


def test_synthetic_patterns_are_square_gray_images():
    images = synthetic_images(8)
    assert set(images) == {"uniform_gray", "black", "white", "ramp", "rings"}
    for pixels in images.values():
        assert pixels.shape == (8, 8)
        assert pixels.dtype.name == "uint8"


def test_uniform_gray_case_is_closed_and_complete(params, tmp_path):
    pixels = PixelBuffer.from_array(synthetic_images(6)["uniform_gray"])

    case = validate_case("uniform_gray", pixels, params, "wrap", None, tmp_path)

    assert case.resolution == 6
    assert case.triangles == case.predicted == case.loaded_faces == 4 * 36 + 12 * 6
    assert case.stl_bytes == 84 + 50 * case.triangles
    assert case.degenerate == 0
    assert case.open_panel_edges == 0 and case.open_stand_edges == 0
    assert case.panel_watertight and case.stand_watertight
    assert case.min_z == pytest.approx(-params.wall_height)
    assert case.max_z == pytest.approx(1.745, abs=1e-3)
    assert case.width_mm == pytest.approx(params.outer_diameter, abs=1e-3)
    assert (tmp_path / case.stl_file).exists()
    assert (tmp_path / case.scad_file).exists()


def test_markdown_report_lists_every_case(params, tmp_path):
    cases = [
        validate_case(name, PixelBuffer.from_array(pixels), params, "clamp", 3, tmp_path)
        for name, pixels in synthetic_images(6).items()
        if name in ("black", "ramp")
    ]
    report = tmp_path / "report.md"

    write_markdown_report(report, cases, config={"resolution": 3})

    text = report.read_text(encoding="utf-8")
    assert text.startswith("# Lithophane Validation Report")
    assert "| `black` | `clamp` | 3 |" in text
    assert "| `ramp` | `clamp` | 3 |" in text
    assert "- `resolution`: `3`" in text
    json.dumps([case.__dict__ for case in cases])
