"""Tests for label-driven field detection and anchor validation."""

import pytest

from conftest import make_template_pdf, run_script
from coordinate_map import CoordinateMap, LabelAnchor
from detect_fields import (
    compare_anchors,
    detect_coordinates,
    discover_input_boxes,
    validate_anchors,
)
from form_data import FieldKey, FormType
from form_errors import AnchorDriftError

PW, PH = 595.28, 841.89


def anchor(x, y, width=60, height=9, text="label"):
    return LabelAnchor(text=text, x=x, y=y, width=width, height=height, confidence=0.9)


# ---------------------------------------------------------------------------
# Input box rules
# ---------------------------------------------------------------------------

class TestDiscoverInputBoxes:

    def test_signature_above_caption(self):
        caption = anchor(100, 300)
        box = discover_input_boxes({FieldKey.SIGNATURE: caption}, PW, PH)[FieldKey.SIGNATURE]
        assert (box.x, box.y, box.width, box.height) == (100, 319, 200, 50)
        assert box.y >= caption.y + caption.height
        assert box.x <= caption.x

    def test_signature_near_top_stays_on_page(self):
        box = discover_input_boxes({FieldKey.SIGNATURE: anchor(500, 800)}, PW, PH)[FieldKey.SIGNATURE]
        assert box.x == pytest.approx(PW - 210)
        assert box.y == pytest.approx(PH - 60)

    def test_checkbox_right_of_label(self):
        boxes = discover_input_boxes({
            FieldKey.RESIDENT_YES: anchor(100, 500),
            FieldKey.RESIDENT_NO: anchor(100, 480),
        }, PW, PH)
        assert boxes[FieldKey.RESIDENT_YES].x == 170
        assert boxes[FieldKey.RESIDENT_NO].x == 230
        assert boxes[FieldKey.RESIDENT_YES].width == boxes[FieldKey.RESIDENT_YES].height == 12

    def test_multiline_below_label(self):
        box = discover_input_boxes({FieldKey.ADDRESS: anchor(70, 690)}, PW, PH)[FieldKey.ADDRESS]
        assert (box.x, box.y, box.width, box.height) == (70, 620, 400, 60)
        assert box.y + box.height < 690

    def test_text_right_of_label(self):
        box = discover_input_boxes({FieldKey.NAME: anchor(60, 760)}, PW, PH)[FieldKey.NAME]
        assert (box.x, box.y, box.width, box.height) == (130, 760, 150, 20)

    def test_text_flips_left_near_edge(self):
        box = discover_input_boxes({FieldKey.PAN: anchor(500, 700)}, PW, PH)[FieldKey.PAN]
        assert box.x + box.width <= 500
        assert box.width == 150

    def test_boxes_clamped_to_margins(self):
        boxes = discover_input_boxes({
            FieldKey.SIGNATURE: anchor(5, 20),
            FieldKey.ADDRESS: anchor(400, 830),
        }, PW, PH)
        for box in boxes.values():
            assert box.x >= 10 and box.y >= 10
            assert box.x + box.width <= PW - 10 + 1e-6
            assert box.y + box.height <= PH - 10 + 1e-6

    def test_percent_matches_points(self):
        box = discover_input_boxes({FieldKey.NAME: anchor(60, 760)}, PW, PH)[FieldKey.NAME]
        assert box.x_pct == pytest.approx(box.x / PW)
        assert box.h_pct == pytest.approx(box.height / PH)


# ---------------------------------------------------------------------------
# Detection on a template
# ---------------------------------------------------------------------------

class TestDetectCoordinates:

    def test_detects_labelled_fields(self, reference_pdf):
        coord_map = detect_coordinates(reference_pdf, "15G")
        assert coord_map.source == "detected"
        assert coord_map.form_type is FormType.FORM_15G
        assert FieldKey.NAME in coord_map.anchors
        assert FieldKey.NAME in coord_map.fields
        assert FieldKey.INCOME_AMOUNT in coord_map.fields
        assert coord_map.anchors[FieldKey.NAME].x == pytest.approx(60, abs=0.5)

    def test_only_form_keys(self, reference_pdf):
        coord_map = detect_coordinates(reference_pdf, "15H")
        assert FieldKey.STATUS_HUF not in coord_map.fields

    def test_map_rejects_box_outside_page(self):
        from coordinate_map import InputBox
        from affine import Rect

        box = InputBox.from_rect(Rect(x=500, y=10, width=200, height=20), PW, PH)
        with pytest.raises(ValueError):
            CoordinateMap(pdf_hash="x", form_type="15G", page_width=PW, page_height=PH,
                          fields={FieldKey.NAME: box})


# ---------------------------------------------------------------------------
# Drift
# ---------------------------------------------------------------------------

class TestAnchorDrift:

    def test_move_beyond_tolerance(self):
        drifts = compare_anchors({FieldKey.NAME: anchor(100, 100)}, {FieldKey.NAME: anchor(108, 100)})
        assert len(drifts) == 1
        assert isinstance(drifts[0], AnchorDriftError)
        assert drifts[0].details["dx"] == 8

    def test_move_within_tolerance(self):
        assert compare_anchors({FieldKey.NAME: anchor(100, 100)}, {FieldKey.NAME: anchor(103, 104)}) == []

    def test_missing_anchor(self):
        drifts = compare_anchors({FieldKey.PAN: anchor(100, 100)}, {})
        assert len(drifts) == 1
        assert "not found" in str(drifts[0])

    def test_unchanged_template_validates(self, reference_pdf):
        coord_map = detect_coordinates(reference_pdf, "15G")
        assert validate_anchors(reference_pdf, coord_map).valid

    def test_moved_template_drifts(self, reference_pdf):
        coord_map = detect_coordinates(reference_pdf, "15G")
        moved = make_template_pdf(translate=(20, 0))
        validation = validate_anchors(moved, coord_map)
        assert not validation.valid
        assert all(d.code == "ANCHOR_DRIFT" for d in validation.drifts)

    def test_unreadable_template_is_invalid_not_raised(self, reference_pdf, image_only_pdf):
        coord_map = detect_coordinates(reference_pdf, "15G")
        validation = validate_anchors(image_only_pdf, coord_map)
        assert not validation.valid


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

class TestDetectFieldsCLI:

    def test_returns_coordinate_map(self, reference_pdf, tmp_output):
        path = tmp_output / "template.pdf"
        path.write_bytes(reference_pdf)
        result, _ = run_script("detect_fields.py", [path, "--form-type", "15G", "--pretty"])
        assert result["form_type"] == "15G"
        assert "name" in result["fields"]
        for box in result["fields"].values():
            assert 0 <= box["x_pct"] <= 1

    def test_annotate_writes_png(self, reference_pdf, tmp_output):
        path = tmp_output / "template.pdf"
        path.write_bytes(reference_pdf)
        png = tmp_output / "annotated.png"
        run_script("detect_fields.py", [path, "--annotate", png])
        assert png.exists() and png.stat().st_size > 0

    def test_grid_overlay(self, reference_pdf, tmp_output):
        path = tmp_output / "template.pdf"
        path.write_bytes(reference_pdf)
        png = tmp_output / "grid.png"
        result, _ = run_script("detect_fields.py", [path, "--grid-overlay", png])
        assert result["grid_step"] == 50
        assert png.exists()
